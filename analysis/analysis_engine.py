#!/usr/bin/env python3
"""Candidate correlation and risk assessment.

This module is intentionally pure (no direct DB access). The services pass in
devices, connections and candidate records as Python objects and persist
whatever comes back.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

import constants as C
from models import Connection, Device, NetworkInterface
from parsers.sysdescr import normalize_mac
from toolkit.utils import new_id, parse_ts, utc_now, utc_now_iso

# Lower index wins when two candidates disagree on a field.
SOURCE_PRIORITY = (
    C.SOURCE_SYSTEM_DESCRIPTION,
    C.SOURCE_ADDRESS_TABLE,
    C.SOURCE_MAC_TABLE,
    C.SOURCE_LOG_MESSAGE,
    C.SOURCE_FLOW_RECORD,
)

DEFAULT_STALENESS_MINUTES = 15
HIGH_RISK_DEVICE_SCORE = 70
RECOMMENDATION_FACTOR_SCORE = 70

_MERGE_FIELDS = ("name", "hostname", "vendor", "model", "firmware_version", "serial_number", "type")


@dataclass
class DeviceCandidate:
    """Partial device evidence from one telemetry source."""

    source: str
    observed_at: str
    confidence: float = 100.0
    name: Optional[str] = None
    hostname: Optional[str] = None
    type: Optional[str] = None
    vendor: Optional[str] = None
    model: Optional[str] = None
    firmware_version: Optional[str] = None
    serial_number: Optional[str] = None
    mac_addresses: List[str] = field(default_factory=list)
    ip_addresses: List[str] = field(default_factory=list)
    interfaces: List[NetworkInterface] = field(default_factory=list)


@dataclass
class CorrelationResult:
    device: Device
    sources: List[str]
    correlated_by: List[str]
    confidence: float
    candidate_count: int


def _source_rank(source: str) -> int:
    try:
        return SOURCE_PRIORITY.index(source)
    except ValueError:
        return len(SOURCE_PRIORITY)


def _observed(c: DeviceCandidate) -> datetime:
    return parse_ts(c.observed_at) or datetime.min.replace(tzinfo=timezone.utc)


def _keys(c: DeviceCandidate) -> List[str]:
    keys = []
    macs = set(normalize_mac(m) for m in c.mac_addresses)
    macs.update(normalize_mac(i.mac_address) for i in c.interfaces)
    keys.extend(f"mac:{m}" for m in sorted(macs) if m)
    ips = set(c.ip_addresses)
    ips.update(i.ip_address for i in c.interfaces if i.ip_address)
    keys.extend(f"ip:{ip}" for ip in sorted(ips) if ip)
    for n in (c.hostname, c.name):
        if n:
            keys.append(f"host:{n.strip().lower()}")
    return keys


def _group(candidates: List[DeviceCandidate]) -> List[List[int]]:
    # Union-find over shared identifiers.
    parent = list(range(len(candidates)))

    def find(i: int) -> int:
        while parent[i] != i:
            parent[i] = parent[parent[i]]
            i = parent[i]
        return i

    owner: Dict[str, int] = {}
    for idx, cand in enumerate(candidates):
        for key in _keys(cand):
            if key in owner:
                a, b = find(idx), find(owner[key])
                if a != b:
                    parent[max(a, b)] = min(a, b)
            else:
                owner[key] = idx

    groups: Dict[int, List[int]] = defaultdict(list)
    for idx in range(len(candidates)):
        groups[find(idx)].append(idx)
    return [groups[k] for k in sorted(groups)]


def _correlated_by(group: List[DeviceCandidate]) -> List[str]:
    if len(group) < 2:
        return []
    seen: Dict[str, int] = defaultdict(int)
    for c in group:
        for key in set(_keys(c)):
            seen[key] += 1
    kinds = {key.split(":", 1)[0] for key, n in seen.items() if n > 1}
    order = {"mac": 0, "ip": 1, "host": 2}
    return sorted(kinds, key=lambda k: order[k])


def correlation_confidence(
    candidates: List[DeviceCandidate],
    correlated_by: List[str],
    *,
    now: Optional[datetime] = None,
    staleness_minutes: int = DEFAULT_STALENESS_MINUTES,
) -> float:
    """Confidence 0..100 from fresh evidence count, matched identifiers and source confidence."""
    now = now or utc_now()
    window = max(1.0, float(staleness_minutes) * 60.0)
    effective = 0.0
    weighted = 0.0
    for c in candidates:
        age = max(0.0, (now - _observed(c)).total_seconds())
        freshness = max(0.0, 1.0 - age / window)
        effective += freshness
        weighted += float(c.confidence or 0.0) * freshness
    weighted_conf = (weighted / effective) if effective > 0 else 0.0
    score = min(effective * 15.0, 45.0) + len(correlated_by) * 15.0 + weighted_conf * 0.4
    return round(min(score, 100.0), 2)


def _merge(group: List[DeviceCandidate]) -> Device:
    ordered = sorted(group, key=lambda c: (_source_rank(c.source), -_observed(c).timestamp()))
    values: Dict[str, Any] = {}
    for attr in _MERGE_FIELDS:
        for c in ordered:
            v = getattr(c, attr)
            if v and v != C.UNKNOWN:
                values[attr] = v
                break

    interfaces: List[NetworkInterface] = []
    seen_macs = set()
    for c in ordered:
        for iface in c.interfaces:
            mac = normalize_mac(iface.mac_address)
            if mac and mac in seen_macs:
                continue
            if mac:
                seen_macs.add(mac)
            interfaces.append(iface)
        for mac in c.mac_addresses:
            mac = normalize_mac(mac)
            if mac and mac not in seen_macs:
                seen_macs.add(mac)
                interfaces.append(NetworkInterface(name=f"eth{len(interfaces)}", mac_address=mac))
    known_ips = {i.ip_address for i in interfaces if i.ip_address}
    for c in ordered:
        for ip in c.ip_addresses:
            if ip and ip not in known_ips:
                known_ips.add(ip)
                interfaces.append(NetworkInterface(name=f"eth{len(interfaces)}", ip_address=ip))

    dtype = values.get("type") or C.UNKNOWN
    level = C.DEVICE_TYPE_PURDUE_LEVEL.get(dtype, 5)
    observed = sorted(_observed(c) for c in group)
    name = values.get("name") or values.get("hostname") or (interfaces[0].ip_address if interfaces else "") or "unknown"
    return Device(
        id=new_id(),
        name=name,
        type=dtype,
        purdue_level=level,
        security_zone=C.PURDUE_TO_ZONE.get(level, C.ZONE_UNTRUSTED),
        status=C.STATUS_ONLINE,
        hostname=values.get("hostname"),
        vendor=values.get("vendor"),
        model=values.get("model"),
        firmware_version=values.get("firmware_version"),
        serial_number=values.get("serial_number"),
        interfaces=interfaces,
        metadata={"sources": sorted({c.source for c in group}, key=_source_rank)},
        discovered_at=observed[0].isoformat(),
        last_seen_at=observed[-1].isoformat(),
    )


def correlate_candidates(
    candidates: Iterable[DeviceCandidate],
    *,
    now: Optional[datetime] = None,
    staleness_minutes: int = DEFAULT_STALENESS_MINUTES,
) -> List[CorrelationResult]:
    """Group candidates sharing a MAC, IP or hostname and merge each group into one device.

    Field values come from the highest-priority source, then the most recent
    observation; the first non-empty value wins. Interfaces are de-duplicated
    by MAC.
    """
    items = [c for c in candidates or [] if isinstance(c, DeviceCandidate)]
    out: List[CorrelationResult] = []
    for idxs in _group(items):
        group = [items[i] for i in idxs]
        by = _correlated_by(group)
        out.append(
            CorrelationResult(
                device=_merge(group),
                sources=sorted({c.source for c in group}, key=_source_rank),
                correlated_by=by,
                confidence=correlation_confidence(group, by, now=now, staleness_minutes=staleness_minutes),
                candidate_count=len(group),
            )
        )
    out.sort(key=lambda r: -r.confidence)
    return out


# ---------------------------------------------------------------------------
# Risk
# ---------------------------------------------------------------------------


def risk_level(score: float) -> str:
    if score >= C.RISK_THRESHOLDS["critical"]:
        return C.CRITICAL
    if score >= C.RISK_THRESHOLDS["high"]:
        return C.HIGH
    if score >= C.RISK_THRESHOLDS["medium"]:
        return C.MEDIUM
    return C.LOW


def _vulnerability(device: Device) -> Dict[str, Any]:
    score, reasons = 0, []
    if device.type in (C.PLC, C.RTU):
        score += 30
        reasons.append("Controller-class device")
    if not device.firmware_version:
        score += 20
        reasons.append("Firmware version unknown")
    if not device.vendor or device.vendor.lower() == C.UNKNOWN:
        score += 15
        reasons.append("Vendor unknown")
    return {"score": min(score, 100), "reasons": reasons}


def _configuration(device: Device, connections: List[Connection]) -> Dict[str, Any]:
    score, reasons = 0, []
    insecure = [c for c in connections if not c.is_secure]
    if insecure:
        score += 25
        reasons.append(f"{len(insecure)} insecure connection(s)")
    if connections and len(insecure) > len(connections) / 2:
        score += 20
        reasons.append("Most connections unencrypted")
    if any(c.port in C.DEFAULT_INDUSTRIAL_PORTS for c in connections):
        score += 15
        reasons.append("Default industrial ports in use")
    return {"score": min(score, 100), "reasons": reasons}


def _exposure(device: Device, connections: List[Connection]) -> Dict[str, Any]:
    score, reasons = 0, []
    if device.purdue_level <= 1:
        score += 20
        reasons.append("Located in process/control levels")
    if len(connections) > 10:
        score += 15
        reasons.append("High connection count")
    if device.purdue_level < 4 and device.security_zone != C.ZONE_DMZ:
        score += 10
        reasons.append("Not segmented behind a DMZ")
    return {"score": min(score, 100), "reasons": reasons}


def _compliance(device: Device) -> Dict[str, Any]:
    score, reasons = 0, []
    if not device.vendor or not device.model:
        score += 15
        reasons.append("Incomplete asset inventory (vendor/model)")
    if not device.location:
        score += 10
        reasons.append("No physical location recorded")
    if device.security_zone == C.ZONE_UNTRUSTED:
        score += 25
        reasons.append("Device placed in untrusted zone")
    return {"score": min(score, 100), "reasons": reasons}


_RECOMMENDATIONS = {
    "vulnerability": "Record firmware versions and review vendor advisories for this device",
    "configuration": "Replace plaintext protocols with secure alternatives or tunnel them",
    "exposure": "Restrict reachability with zone firewalls and conduits",
    "compliance": "Complete the asset inventory and assign the device to a proper zone",
}


def assess_device_risk(device: Device, connections: Iterable[Connection]) -> Dict[str, object]:
    """Weighted four-factor risk score for one device (0..100)."""
    conns = [
        c for c in connections or []
        if c.source_device_id == device.id or c.target_device_id == device.id
    ]
    factors = {
        "vulnerability": _vulnerability(device),
        "configuration": _configuration(device, conns),
        "exposure": _exposure(device, conns),
        "compliance": _compliance(device),
    }
    overall = sum(C.RISK_WEIGHTS[name] * f["score"] for name, f in factors.items())
    overall = round(max(0.0, min(overall, 100.0)), 2)
    recommendations = [
        _RECOMMENDATIONS[name] for name, f in factors.items() if f["score"] >= RECOMMENDATION_FACTOR_SCORE
    ]
    return {
        "device_id": device.id,
        "device_name": device.name,
        "overall_score": overall,
        "risk_level": risk_level(overall),
        "factors": factors,
        "recommendations": recommendations,
        "assessed_at": utc_now_iso(),
    }


def assess_topology_risk(devices: List[Device], connections: List[Connection]) -> Dict[str, object]:
    assessments = [assess_device_risk(d, connections) for d in devices]
    by_zone: Dict[str, List[float]] = defaultdict(list)
    zone_of = {d.id: d.security_zone for d in devices}
    for a in assessments:
        by_zone[zone_of[a["device_id"]]].append(float(a["overall_score"]))

    zone_risks = {}
    for zone, scores in sorted(by_zone.items()):
        avg = sum(scores) / len(scores)
        zone_risks[zone] = {"average_score": round(avg, 2), "risk_level": risk_level(avg), "device_count": len(scores)}

    high_risk = [a for a in assessments if float(a["overall_score"]) >= HIGH_RISK_DEVICE_SCORE]
    high_risk.sort(key=lambda a: -float(a["overall_score"]))

    findings = []
    insecure = [c for c in connections if not c.is_secure]
    if insecure:
        findings.append(f"{len(insecure)} of {len(connections)} connections are unencrypted")
    levels = {d.id: d.purdue_level for d in devices}
    cross = [
        c for c in connections
        if c.source_device_id in levels and c.target_device_id in levels
        and levels[c.source_device_id] != levels[c.target_device_id]
    ]
    if cross:
        findings.append(f"{len(cross)} connections cross security zones")
    if high_risk:
        findings.append(f"{len(high_risk)} devices at high risk or above")
    untrusted = by_zone.get(C.ZONE_UNTRUSTED) or []
    if untrusted:
        findings.append(f"{len(untrusted)} devices are in the untrusted zone")

    overall = (sum(float(a["overall_score"]) for a in assessments) / len(assessments)) if assessments else 0.0
    return {
        "overall_score": round(overall, 2),
        "risk_level": risk_level(overall),
        "device_count": len(devices),
        "zone_risks": zone_risks,
        "high_risk_devices": high_risk,
        "findings": findings,
    }

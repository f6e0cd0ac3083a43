#!/usr/bin/env python3
"""Graph views over the canonical model: zone topology, snapshots and diffs."""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, Iterable, List

import constants as C
from models import Connection, Device, TopologySnapshot
from toolkit.utils import new_id, utc_now_iso
from topology.zones import level_for_zone


@dataclass
class ZoneTopology:
    zone: str
    devices: List[Device] = field(default_factory=list)
    internal_connections: List[Connection] = field(default_factory=list)
    external_connections: List[Connection] = field(default_factory=list)


@dataclass
class TopologyDiff:
    added_devices: List[Device] = field(default_factory=list)
    removed_devices: List[Device] = field(default_factory=list)
    added_connections: List[Connection] = field(default_factory=list)
    removed_connections: List[Connection] = field(default_factory=list)
    modified_devices: List[Dict[str, object]] = field(default_factory=list)


def zone_topology(zone: str, devices: Iterable[Device], connections: Iterable[Connection]) -> ZoneTopology:
    members = [d for d in devices if d.security_zone == zone]
    ids = {d.id for d in members}
    out = ZoneTopology(zone=zone, devices=members)
    for c in connections:
        src_in = c.source_device_id in ids
        dst_in = c.target_device_id in ids
        if src_in and dst_in:
            out.internal_connections.append(c)
        elif src_in or dst_in:
            out.external_connections.append(c)
    return out


def zone_definitions(devices: Iterable[Device]) -> List[Dict[str, object]]:
    grouped: Dict[str, List[str]] = defaultdict(list)
    for d in devices:
        grouped[d.security_zone].append(d.id)
    zones = []
    for zone in sorted(grouped):
        zones.append({
            "id": zone,
            "name": zone.replace("_", " ").title(),
            "purdue_level": level_for_zone(zone),
            "security_zone": zone,
            "trust_level": C.ZONE_TRUST_LEVELS.get(zone, 0),
            "subnets": [],
            "devices": sorted(grouped[zone]),
        })
    return zones


def build_snapshot(devices: List[Device], connections: List[Connection], *, sources: Iterable[str] = ()) -> TopologySnapshot:
    return TopologySnapshot(
        id=new_id(),
        timestamp=utc_now_iso(),
        devices=list(devices),
        connections=list(connections),
        zones=zone_definitions(devices),
        metadata={
            "device_count": len(devices),
            "connection_count": len(connections),
            "sources": sorted(set(sources)),
        },
    )


TRACKED_ATTRIBUTES = ("status", "purdue_level", "security_zone", "firmware_version", "vendor", "model", "type")


def detect_device_changes(before: Device, after: Device, attrs: Iterable[str] = TRACKED_ATTRIBUTES) -> List[str]:
    changes = []
    for attr in attrs:
        a = getattr(before, attr)
        b = getattr(after, attr)
        if a != b:
            changes.append(f"{attr}: {a} -> {b}")
    return changes


def diff_snapshots(a: TopologySnapshot, b: TopologySnapshot) -> TopologyDiff:
    devices_a = {d.id: d for d in a.devices}
    devices_b = {d.id: d for d in b.devices}
    conns_a = {c.id: c for c in a.connections}
    conns_b = {c.id: c for c in b.connections}

    diff = TopologyDiff(
        added_devices=[d for i, d in devices_b.items() if i not in devices_a],
        removed_devices=[d for i, d in devices_a.items() if i not in devices_b],
        added_connections=[c for i, c in conns_b.items() if i not in conns_a],
        removed_connections=[c for i, c in conns_a.items() if i not in conns_b],
    )
    for i, after in devices_b.items():
        before = devices_a.get(i)
        if before is None:
            continue
        changes = detect_device_changes(before, after)
        if changes:
            diff.modified_devices.append({"device": after, "changes": changes})
    return diff


def overview_health(device_count: int, offline_count: int) -> str:
    ratio = (offline_count / device_count) if device_count > 0 else 0.0
    if ratio > 0.3:
        return "critical"
    if ratio > 0.1:
        return "warning"
    return "healthy"

#!/usr/bin/env python3
"""System-description normalizer.

Turns a device self-description payload (system name/description/object id/uptime
plus the interface table) into a ``SystemDescription`` with inferred vendor,
device type and model. Vendor and type inference are ordered (pattern, result)
tables evaluated top to bottom; the first match wins.

Expected payload::

    {"type": "system", "sysName": "plc-01", "sysDescr": "Siemens SIMATIC S7-1500",
     "sysObjectID": "1.3.6.1.4.1.4329", "sysUpTime": 12345,
     "interfaces": [{"index": 1, "name": "X1", "physAddress": "00:1A:4B:..",
                     "speed": 100000000, "operStatus": 1}]}
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Pattern, Sequence, Tuple

import constants as C
from models import Device, NetworkInterface
from toolkit.utils import new_id, to_int, utc_now_iso


# ---------------------------------------------------------------------------
# Inference tables
# ---------------------------------------------------------------------------

def _rx(pattern: str) -> Pattern[str]:
    return re.compile(pattern, re.IGNORECASE)


# Short tokens are word-bounded so "ge" does not fire inside "manager".
VENDOR_RULES: Sequence[Tuple[Pattern[str], str]] = (
    (_rx(r"cisco"), "Cisco"),
    (_rx(r"siemens"), "Siemens"),
    (_rx(r"schneider"), "Schneider Electric"),
    (_rx(r"rockwell"), "Rockwell Automation"),
    (_rx(r"allen-bradley"), "Rockwell Automation"),
    (_rx(r"honeywell"), "Honeywell"),
    (_rx(r"\babb\b"), "ABB"),
    (_rx(r"emerson"), "Emerson"),
    (_rx(r"\bge\b"), "General Electric"),
    (_rx(r"yokogawa"), "Yokogawa"),
    (_rx(r"mitsubishi"), "Mitsubishi"),
    (_rx(r"omron"), "Omron"),
    (_rx(r"beckhoff"), "Beckhoff"),
    (_rx(r"phoenix"), "Phoenix Contact"),
    (_rx(r"moxa"), "Moxa"),
    (_rx(r"hirschmann"), "Hirschmann"),
    (_rx(r"juniper"), "Juniper"),
    (_rx(r"\bhp\b"), "Hewlett-Packard"),
    (_rx(r"dell"), "Dell"),
    (_rx(r"linux"), "Linux"),
)

DEVICE_TYPE_RULES: Sequence[Tuple[Pattern[str], str]] = (
    (_rx(r"\b(plc|programmable.?logic.?controller|s7-[0-9]+|controllogix)\b"), C.PLC),
    (_rx(r"\b(rtu|remote.?terminal.?unit)\b"), C.RTU),
    (_rx(r"\b(dcs|distributed.?control)\b"), C.DCS),
    (_rx(r"\b(scada|supervisory)\b"), C.SCADA_SERVER),
    (_rx(r"\b(hmi|human.?machine|panel)\b"), C.HMI),
    (_rx(r"\b(historian|pi.?server)\b"), C.HISTORIAN),
    # Catalyst 9200-9600, legacy WS-C, Cisco IE and SCALANCE X model families
    (_rx(r"\b(switch|catalyst|nexus|c9[2-6]\d{2}\w*|ws-c\d{4}\w*|ie-\d{4}\w*|scalance\s?x\w*)\b"), C.SWITCH),
    (_rx(r"\b(router|isr|asr)\b"), C.ROUTER),
    (_rx(r"\b(firewall|asa|fortigate|pfsense)\b"), C.FIREWALL),
    (_rx(r"\b(sensor|transmitter|detector)\b"), C.SENSOR),
    (_rx(r"\b(actuator|valve|motor)\b"), C.ACTUATOR),
    (_rx(r"\b(drive|vfd|inverter)\b"), C.VARIABLE_DRIVE),
)

MODEL_PATTERNS: Sequence[Tuple[Pattern[str], int]] = (
    (re.compile(r"model[:\s]+([A-Z0-9-]+)", re.IGNORECASE), 1),
    (re.compile(r"([A-Z]{2,}[0-9]{2,}[A-Z0-9-]*)"), 1),
    (re.compile(r"S7-(\d+)", re.IGNORECASE), 0),
)


def first_match(rules: Sequence[Tuple[Pattern[str], str]], text: str) -> Optional[str]:
    for pattern, result in rules:
        if pattern.search(text):
            return result
    return None


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

@dataclass
class SystemDescription:
    sys_name: str
    sys_descr: str
    sys_object_id: str = ""
    sys_location: str = ""
    sys_contact: str = ""
    sys_uptime: int = 0
    vendor: Optional[str] = None
    model: Optional[str] = None
    device_type: str = C.UNKNOWN
    interfaces: List[NetworkInterface] = field(default_factory=list)

    def ip_addresses(self) -> List[str]:
        return [i.ip_address for i in self.interfaces if i.ip_address]


def normalize_mac(mac: Any) -> str:
    """Lowercase colon-separated MAC, or "" when the value is not a 48-bit address."""
    if not mac:
        return ""
    digits = re.sub(r"[^0-9a-f]", "", str(mac).lower())
    if len(digits) != 12:
        return ""
    return ":".join(digits[i:i + 2] for i in range(0, 12, 2))


def detect_vendor(sys_descr: str) -> Optional[str]:
    return first_match(VENDOR_RULES, sys_descr or "")


def detect_device_type(sys_descr: str, sys_name: str = "") -> str:
    combined = f"{sys_descr or ''} {sys_name or ''}"
    return first_match(DEVICE_TYPE_RULES, combined) or C.UNKNOWN


def extract_model(sys_descr: str) -> Optional[str]:
    for pattern, group in MODEL_PATTERNS:
        m = pattern.search(sys_descr or "")
        if m:
            return m.group(group)
    return None


def parse_interfaces(raw: Any) -> List[NetworkInterface]:
    if not isinstance(raw, list):
        return []
    out: List[NetworkInterface] = []
    for iface in raw:
        if not isinstance(iface, dict):
            continue
        index = iface.get("index")
        name = str(iface.get("name") or f"eth{index if index is not None else len(out)}")
        speed = iface.get("speed") or 0
        try:
            speed_mbps = float(speed) / 1_000_000
        except (TypeError, ValueError):
            speed_mbps = 0.0
        out.append(
            NetworkInterface(
                name=name,
                mac_address=normalize_mac(iface.get("physAddress") or iface.get("macAddress")),
                ip_address=str(iface.get("ipAddress") or ""),
                vlan_id=to_int(iface.get("vlanId")),
                speed_mbps=speed_mbps,
                status="up" if to_int(iface.get("operStatus")) == 1 else "down",
            )
        )
    return out


def parse_system_description(payload: Any) -> Optional[SystemDescription]:
    """Parse a system-description payload; anything of the wrong shape yields None."""
    if not isinstance(payload, dict):
        return None
    if payload.get("type", "system") != "system":
        return None
    if not (payload.get("sysName") or payload.get("sysDescr")):
        return None

    sys_descr = str(payload.get("sysDescr") or "")
    sys_name = str(payload.get("sysName") or "unknown")
    return SystemDescription(
        sys_name=sys_name,
        sys_descr=sys_descr,
        sys_object_id=str(payload.get("sysObjectID") or ""),
        sys_location=str(payload.get("sysLocation") or ""),
        sys_contact=str(payload.get("sysContact") or ""),
        sys_uptime=to_int(payload.get("sysUpTime"), 0) or 0,
        vendor=detect_vendor(sys_descr),
        model=extract_model(sys_descr),
        device_type=detect_device_type(sys_descr, sys_name),
        interfaces=parse_interfaces(payload.get("interfaces")),
    )


def to_device(parsed: SystemDescription, *, device_id: Optional[str] = None, seen_at: Optional[str] = None) -> Device:
    """Build a Device; the id is only generated here when the caller has none yet."""
    level = C.DEVICE_TYPE_PURDUE_LEVEL.get(parsed.device_type, 5)
    now = seen_at or utc_now_iso()
    metadata: Dict[str, Any] = {
        "sysDescr": parsed.sys_descr,
        "sysObjectID": parsed.sys_object_id,
        "sysUpTime": parsed.sys_uptime,
        "sysContact": parsed.sys_contact,
    }
    return Device(
        id=device_id or new_id(),
        name=parsed.sys_name,
        hostname=parsed.sys_name if parsed.sys_name != "unknown" else None,
        type=parsed.device_type,
        vendor=parsed.vendor,
        model=parsed.model,
        purdue_level=level,
        security_zone=C.PURDUE_TO_ZONE[level],
        status=C.STATUS_ONLINE,
        location={"description": parsed.sys_location} if parsed.sys_location else None,
        interfaces=list(parsed.interfaces),
        metadata=metadata,
        discovered_at=now,
        last_seen_at=now,
    )

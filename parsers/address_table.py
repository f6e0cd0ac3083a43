#!/usr/bin/env python3
"""Address-resolution and MAC-table normalizer.

Two payload shapes arrive on the wire:

    {"type": "arp", "entries": [{"ipAddress": "10.1.0.5", "macAddress": "00:1A:4B:00:00:01",
                                  "interface": "Vlan10", "vlanId": 10}]}
    {"type": "mac", "entries": [{"macAddress": "00-1a-4b-00-00-01", "vlanId": 10, "port": "Gi1/0/3"}]}

Entries missing a required key (ip+mac for ARP, mac+port for MAC tables) are
dropped silently. MACs come out lowercase and colon-separated.
"""

from __future__ import annotations

import ipaddress
from dataclasses import dataclass
from typing import Any, List, Optional, Tuple

from constants import VENDOR_OUI_PREFIXES
from parsers.sysdescr import normalize_mac
from toolkit.utils import to_int


@dataclass(frozen=True)
class ArpEntry:
    ip_address: str
    mac_address: str
    interface: str = ""
    vlan_id: Optional[int] = None


@dataclass(frozen=True)
class MacTableEntry:
    mac_address: str
    port: str
    vlan_id: Optional[int] = None


def vendor_from_mac(mac: str) -> Optional[str]:
    """OUI lookup; unknown prefixes return None."""
    digits = "".join(ch for ch in str(mac or "").upper() if ch in "0123456789ABCDEF")
    if len(digits) < 6:
        return None
    oui = f"{digits[0:2]}:{digits[2:4]}:{digits[4:6]}"
    return VENDOR_OUI_PREFIXES.get(oui)


def _valid_ip(value: Any) -> str:
    try:
        return str(ipaddress.ip_address(str(value).strip()))
    except ValueError:
        return ""


def _entries(payload: Any) -> List[dict]:
    if not isinstance(payload, dict):
        return []
    raw = payload.get("entries")
    if not isinstance(raw, list):
        return []
    return [e for e in raw if isinstance(e, dict)]


def parse_arp_entries(raw: List[dict]) -> List[ArpEntry]:
    out: List[ArpEntry] = []
    for e in raw:
        ip = _valid_ip(e.get("ipAddress") or e.get("ip") or "")
        mac = normalize_mac(e.get("macAddress") or e.get("mac"))
        if not ip or not mac:
            continue
        out.append(ArpEntry(ip_address=ip, mac_address=mac, interface=str(e.get("interface") or ""), vlan_id=to_int(e.get("vlanId"))))
    return out


def parse_mac_entries(raw: List[dict]) -> List[MacTableEntry]:
    out: List[MacTableEntry] = []
    for e in raw:
        mac = normalize_mac(e.get("macAddress") or e.get("mac"))
        port = str(e.get("port") or "").strip()
        if not mac or not port:
            continue
        out.append(MacTableEntry(mac_address=mac, port=port, vlan_id=to_int(e.get("vlanId"))))
    return out


def parse_address_table(payload: Any, *, kind: Optional[str] = None) -> Tuple[List[ArpEntry], List[MacTableEntry]]:
    """Return (arp_entries, mac_entries); one of the two is always empty.

    ``kind`` overrides the payload's own ``type`` discriminator ("arp" or "mac").
    """
    if not isinstance(payload, dict):
        return [], []
    table = kind or payload.get("type")
    if table == "arp":
        return parse_arp_entries(_entries(payload)), []
    if table == "mac":
        return [], parse_mac_entries(_entries(payload))
    return [], []

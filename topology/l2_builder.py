#!/usr/bin/env python3
"""L2 topology builder.

Aggregates ARP and MAC-table evidence by normalized MAC into ``L2Device``
records (union of observed IPs, VLANs and switch ports, OUI vendor, first/last
seen) and yields adjacency candidates for downstream correlation. The builder
never creates connections itself.

Aggregation is a set union, so the result does not depend on submission order
and re-observing an identical tuple changes nothing. IP->MAC binding changes are
tracked the arpwatch way (new_binding / mac_change).
"""

from __future__ import annotations

import ipaddress
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set, Tuple

from models import NetworkInterface
from parsers.address_table import ArpEntry, MacTableEntry, vendor_from_mac
from toolkit.utils import utc_now_iso


@dataclass
class L2Device:
    mac_address: str
    ip_addresses: List[str] = field(default_factory=list)
    vlan_ids: List[int] = field(default_factory=list)
    ports: List[str] = field(default_factory=list)
    vendor: Optional[str] = None
    first_seen: str = ""
    last_seen: str = ""


@dataclass(frozen=True)
class AdjacencyCandidate:
    source_mac: str
    target_mac: str
    vlan_id: Optional[int]
    port: str


@dataclass(frozen=True)
class BindingEvent:
    ts: str
    event: str  # new_binding | mac_change
    ip: str
    mac: str
    prev_mac: str = ""


@dataclass
class L2Topology:
    devices: List[L2Device] = field(default_factory=list)
    adjacencies: List[AdjacencyCandidate] = field(default_factory=list)


def _ip_sort_key(ip: str):
    try:
        addr = ipaddress.ip_address(ip)
        return (addr.version, int(addr))
    except ValueError:
        return (9, 0)


class L2TopologyBuilder:
    """Incremental aggregator; ``build()`` can be called at any point."""

    def __init__(self):
        self._ips: Dict[str, Set[str]] = defaultdict(set)
        self._vlans: Dict[str, Set[int]] = defaultdict(set)
        self._ports: Dict[str, Set[str]] = defaultdict(set)
        self._first: Dict[str, str] = {}
        self._last: Dict[str, str] = {}
        self._port_macs: Dict[Tuple[Optional[int], str], Set[str]] = defaultdict(set)
        self._bindings: Dict[str, str] = {}
        self.binding_events: List[BindingEvent] = []

    def _touch(self, mac: str, ts: str) -> None:
        if mac not in self._first or ts < self._first[mac]:
            self._first[mac] = ts
        if mac not in self._last or ts > self._last[mac]:
            self._last[mac] = ts

    def add_arp(self, entries: Iterable[ArpEntry], *, observed_at: Optional[str] = None) -> None:
        ts = observed_at or utc_now_iso()
        for e in entries:
            mac = e.mac_address
            self._touch(mac, ts)
            self._ips[mac].add(e.ip_address)
            if e.vlan_id:
                self._vlans[mac].add(int(e.vlan_id))

            prev = self._bindings.get(e.ip_address)
            if prev is None:
                self.binding_events.append(BindingEvent(ts=ts, event="new_binding", ip=e.ip_address, mac=mac))
            elif prev != mac:
                self.binding_events.append(BindingEvent(ts=ts, event="mac_change", ip=e.ip_address, mac=mac, prev_mac=prev))
            self._bindings[e.ip_address] = mac

    def add_mac_table(self, entries: Iterable[MacTableEntry], *, observed_at: Optional[str] = None) -> None:
        ts = observed_at or utc_now_iso()
        for e in entries:
            mac = e.mac_address
            self._touch(mac, ts)
            self._ports[mac].add(e.port)
            if e.vlan_id:
                self._vlans[mac].add(int(e.vlan_id))
            self._port_macs[(e.vlan_id, e.port)].add(mac)

    def devices(self) -> List[L2Device]:
        out = []
        for mac in sorted(self._first):
            out.append(
                L2Device(
                    mac_address=mac,
                    ip_addresses=sorted(self._ips.get(mac, ()), key=_ip_sort_key),
                    vlan_ids=sorted(self._vlans.get(mac, ())),
                    ports=sorted(self._ports.get(mac, ())),
                    vendor=vendor_from_mac(mac),
                    first_seen=self._first[mac],
                    last_seen=self._last[mac],
                )
            )
        return out

    def adjacencies(self) -> List[AdjacencyCandidate]:
        """A port that has learned exactly two MACs is a point-to-point link candidate."""
        out = []
        for (vlan, port), macs in self._port_macs.items():
            if len(macs) != 2:
                continue
            a, b = sorted(macs)
            out.append(AdjacencyCandidate(source_mac=a, target_mac=b, vlan_id=vlan, port=port))
        out.sort(key=lambda c: (c.port, c.vlan_id or 0, c.source_mac))
        return out

    def build(self) -> L2Topology:
        return L2Topology(devices=self.devices(), adjacencies=self.adjacencies())


def build_l2_topology(
    arp_entries: Iterable[ArpEntry] = (),
    mac_entries: Iterable[MacTableEntry] = (),
    *,
    observed_at: Optional[str] = None,
) -> L2Topology:
    builder = L2TopologyBuilder()
    ts = observed_at or utc_now_iso()
    builder.add_arp(arp_entries, observed_at=ts)
    builder.add_mac_table(mac_entries, observed_at=ts)
    return builder.build()


def infer_adjacency(mac_entries: Iterable[MacTableEntry]) -> List[AdjacencyCandidate]:
    builder = L2TopologyBuilder()
    builder.add_mac_table(mac_entries)
    return builder.adjacencies()


def to_network_interface(device: L2Device) -> NetworkInterface:
    return NetworkInterface(
        name=device.ports[0] if device.ports else "eth0",
        mac_address=device.mac_address,
        ip_address=device.ip_addresses[0] if device.ip_addresses else "",
        vlan_id=device.vlan_ids[0] if device.vlan_ids else None,
        status="up",
    )

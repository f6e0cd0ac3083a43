#!/usr/bin/env python3
"""Bounded path enumeration over the device graph.

Pure in-memory computation: the caller loads devices and connections and
passes them in. ``find_all_paths`` returns every simple path (no device
repeated) of at most ``max_hops`` edges, breadth first, so results come out
shortest first. Parallel edges between the same pair (different protocols)
yield distinct paths.
"""

from __future__ import annotations

from collections import defaultdict, deque
from dataclasses import dataclass, field
from typing import Deque, Dict, Iterable, List, Mapping, Optional, Tuple

from models import Connection, Device

DEFAULT_MAX_HOPS = 5

Adjacency = Dict[str, List[Tuple[str, Connection]]]


@dataclass
class RawPath:
    device_ids: List[str]
    connections: List[Connection]

    @property
    def hop_count(self) -> int:
        return len(self.connections)


@dataclass
class PathDetail:
    hops: List[Device]
    connections: List[Connection]
    hop_count: int
    total_latency: float
    is_secure: bool
    crosses_zones: bool


@dataclass
class PathAnalysis:
    source: Device
    target: Device
    paths: List[PathDetail] = field(default_factory=list)
    shortest_path: int = 0
    secure_path_exists: bool = False


def build_adjacency(connections: Iterable[Connection]) -> Adjacency:
    """Undirected adjacency list; every connection is walkable both ways."""
    adj: Adjacency = defaultdict(list)
    for c in connections:
        if c.source_device_id == c.target_device_id:
            continue
        adj[c.source_device_id].append((c.target_device_id, c))
        adj[c.target_device_id].append((c.source_device_id, c))
    for neighbours in adj.values():
        neighbours.sort(key=lambda item: (item[0], item[1].id))
    return adj


def find_all_paths(source_id: str, target_id: str, adjacency: Mapping[str, List[Tuple[str, Connection]]], max_hops: int = DEFAULT_MAX_HOPS) -> List[RawPath]:
    max_hops = max(0, int(max_hops))
    if source_id == target_id:
        return [RawPath(device_ids=[source_id], connections=[])]

    paths: List[RawPath] = []
    queue: Deque[RawPath] = deque([RawPath(device_ids=[source_id], connections=[])])
    while queue:
        current = queue.popleft()
        last = current.device_ids[-1]
        if last == target_id:
            paths.append(current)
            continue
        if current.hop_count >= max_hops:
            continue
        for neighbour, conn in adjacency.get(last, ()):
            if neighbour in current.device_ids:
                continue
            queue.append(RawPath(device_ids=current.device_ids + [neighbour], connections=current.connections + [conn]))
    return paths


def describe_path(raw: RawPath, devices_by_id: Mapping[str, Device]) -> PathDetail:
    hops = [devices_by_id[d] for d in raw.device_ids if d in devices_by_id]
    crosses = any(a.security_zone != b.security_zone for a, b in zip(hops, hops[1:]))
    return PathDetail(
        hops=hops,
        connections=list(raw.connections),
        hop_count=raw.hop_count,
        total_latency=float(sum((c.latency or 0.0) for c in raw.connections)),
        is_secure=all(c.is_secure for c in raw.connections),
        crosses_zones=crosses,
    )


def analyze_paths(
    source_id: str,
    target_id: str,
    devices: Iterable[Device],
    connections: Iterable[Connection],
    *,
    max_hops: int = DEFAULT_MAX_HOPS,
) -> Optional[PathAnalysis]:
    """Path report between two devices, or None when either device is unknown."""
    by_id = {d.id: d for d in devices}
    source = by_id.get(source_id)
    target = by_id.get(target_id)
    if source is None or target is None:
        return None

    raw_paths = find_all_paths(source_id, target_id, build_adjacency(connections), max_hops)
    details = [describe_path(p, by_id) for p in raw_paths]
    return PathAnalysis(
        source=source,
        target=target,
        paths=details,
        shortest_path=min((p.hop_count for p in details), default=0),
        secure_path_exists=any(p.is_secure for p in details),
    )

#!/usr/bin/env python3
"""Flow-record normalizer.

Consumes already-decoded flow-export records::

    {"type": "netflow", "flows": [{"srcAddress": "10.1.0.10", "dstAddress": "10.1.0.20",
        "srcPort": 49152, "dstPort": 502, "protocol": 6, "bytes": 1000, "packets": 10,
        "startTime": "2024-01-01T00:00:00Z", "endTime": "2024-01-01T00:00:10Z"}]}

and produces ``ParsedFlow`` records with duration, throughput and industrial
protocol detection (destination-port table). ``summarize_flows`` is for
reporting only; correlation never reads it.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from constants import INDUSTRIAL_PORTS, IP_PROTOCOLS, SECURE_PORTS
from models import Connection
from toolkit.utils import iso, new_id, parse_ts, to_int


@dataclass
class ParsedFlow:
    src_address: str
    dst_address: str
    src_port: int
    dst_port: int
    protocol: str
    protocol_number: int
    bytes: int
    packets: int
    start_time: str
    end_time: str
    duration: float
    bytes_per_second: float
    is_industrial: bool = False
    industrial_protocol: Optional[str] = None
    tcp_flags: Optional[int] = None


def protocol_name(number: Optional[int]) -> str:
    if number is None:
        return "unknown"
    return IP_PROTOCOLS.get(int(number), "unknown")


def detect_industrial_protocol(dst_port: Optional[int]) -> Optional[str]:
    info = INDUSTRIAL_PORTS.get(int(dst_port or 0))
    return info[0] if info else None


def parse_flow(raw: Any) -> Optional[ParsedFlow]:
    if not isinstance(raw, dict):
        return None
    src = str(raw.get("srcAddress") or "").strip()
    dst = str(raw.get("dstAddress") or "").strip()
    if not src or not dst:
        return None

    start = parse_ts(raw.get("startTime"))
    end = parse_ts(raw.get("endTime"))
    if start and end:
        duration = max(0.0, (end - start).total_seconds())
    else:
        duration = 0.0
    if start is None:
        start = end

    number = to_int(raw.get("protocolNumber", raw.get("protocol")))
    n_bytes = max(0, to_int(raw.get("bytes"), 0) or 0)
    dst_port = to_int(raw.get("dstPort"), 0) or 0
    industrial = detect_industrial_protocol(dst_port)

    return ParsedFlow(
        src_address=src,
        dst_address=dst,
        src_port=to_int(raw.get("srcPort"), 0) or 0,
        dst_port=dst_port,
        protocol=protocol_name(number),
        protocol_number=number if number is not None else -1,
        bytes=n_bytes,
        packets=max(0, to_int(raw.get("packets"), 0) or 0),
        start_time=iso(start) or "",
        end_time=iso(end) or iso(start) or "",
        duration=duration,
        bytes_per_second=(n_bytes / duration) if duration > 0 else 0.0,
        is_industrial=industrial is not None,
        industrial_protocol=industrial,
        tcp_flags=to_int(raw.get("tcpFlags")),
    )


def parse_flow_records(payload: Any) -> List[ParsedFlow]:
    if not isinstance(payload, dict):
        return []
    if payload.get("type", "netflow") != "netflow":
        return []
    flows = payload.get("flows")
    if not isinstance(flows, list):
        return []
    return [f for f in (parse_flow(r) for r in flows) if f is not None]


def summarize_flows(flows: List[ParsedFlow], *, top_n: int = 10) -> Dict[str, Any]:
    by_source: Dict[str, int] = defaultdict(int)
    by_protocol: Dict[str, int] = defaultdict(int)
    sources = set()
    destinations = set()
    total_bytes = 0
    total_packets = 0
    industrial = 0
    for f in flows:
        sources.add(f.src_address)
        destinations.add(f.dst_address)
        total_bytes += f.bytes
        total_packets += f.packets
        if f.is_industrial:
            industrial += 1
        by_source[f.src_address] += f.bytes
        by_protocol[f.industrial_protocol or f.protocol] += f.bytes

    def _top(d: Dict[str, int], key: str) -> List[dict]:
        items = sorted(d.items(), key=lambda kv: (-kv[1], kv[0]))[:top_n]
        return [{key: k, "bytes": v} for k, v in items]

    return {
        "total_flows": len(flows),
        "total_bytes": total_bytes,
        "total_packets": total_packets,
        "unique_sources": len(sources),
        "unique_destinations": len(destinations),
        "industrial_flows": industrial,
        "top_talkers": _top(by_source, "address"),
        "top_protocols": _top(by_protocol, "protocol"),
    }


def is_secure_port(port: Optional[int]) -> bool:
    return int(port or 0) in SECURE_PORTS


def to_connection(flow: ParsedFlow, source_device_id: str, target_device_id: str) -> Connection:
    """Draft connection for a flow between two resolved devices (id is provisional)."""
    return Connection(
        id=new_id(),
        source_device_id=source_device_id,
        target_device_id=target_device_id,
        connection_type="ethernet",
        protocol=flow.industrial_protocol or flow.protocol,
        port=flow.dst_port or None,
        bandwidth=flow.bytes_per_second * 8 / 1_000_000,
        is_secure=is_secure_port(flow.dst_port),
        encryption_type="TLS" if flow.dst_port == 443 else None,
        metadata={"bytes": flow.bytes, "packets": flow.packets, "is_industrial": flow.is_industrial},
        discovered_at=flow.start_time,
        last_seen_at=flow.end_time,
    )

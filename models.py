"""
IcsMap data models.
Dataclasses for devices, interfaces, connections, alerts, telemetry records and snapshots.
"""

from dataclasses import asdict, dataclass, field, fields
from typing import Any, Dict, List, Optional


def _known(cls, data: dict) -> Dict[str, Any]:
    names = {f.name for f in fields(cls)}
    return {k: v for k, v in (data or {}).items() if k in names}


@dataclass
class NetworkInterface:
    """One interface of a device, as reported by any telemetry source."""

    name: str
    mac_address: str = ""
    ip_address: str = ""
    vlan_id: Optional[int] = None
    speed_mbps: float = 0.0
    status: str = "up"  # up, down

    @classmethod
    def from_dict(cls, data: dict) -> "NetworkInterface":
        return cls(**_known(cls, data))


@dataclass
class Device:
    """Canonical device in the topology graph."""

    id: str
    name: str
    type: str = "unknown"
    purdue_level: int = 5
    security_zone: str = "untrusted"
    status: str = "unknown"  # online, offline, degraded, maintenance, unknown
    hostname: Optional[str] = None
    vendor: Optional[str] = None
    model: Optional[str] = None
    firmware_version: Optional[str] = None
    serial_number: Optional[str] = None
    location: Optional[Dict[str, Any]] = None
    interfaces: List[NetworkInterface] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    discovered_at: str = ""
    last_seen_at: str = ""

    @classmethod
    def from_dict(cls, data: dict) -> "Device":
        values = _known(cls, data)
        values["interfaces"] = [NetworkInterface.from_dict(i) for i in data.get("interfaces") or []]
        return cls(**values)

    def ip_addresses(self) -> List[str]:
        return [i.ip_address for i in self.interfaces if i.ip_address]

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class Connection:
    """Logical edge between two devices; at most one per unordered pair and protocol."""

    id: str
    source_device_id: str
    target_device_id: str
    connection_type: str = "ethernet"
    protocol: Optional[str] = None
    port: Optional[int] = None
    vlan_id: Optional[int] = None
    bandwidth: Optional[float] = None  # Mbps
    latency: Optional[float] = None  # ms
    is_secure: bool = False
    encryption_type: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    discovered_at: str = ""
    last_seen_at: str = ""

    @classmethod
    def from_dict(cls, data: dict) -> "Connection":
        return cls(**_known(cls, data))

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class Alert:
    """Alert with a created -> acknowledged -> resolved lifecycle."""

    id: str
    type: str
    severity: str  # critical, high, medium, low, info
    title: str
    description: str = ""
    device_id: Optional[str] = None
    connection_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    remediation: str = ""
    acknowledged: bool = False
    acknowledged_by: Optional[str] = None
    acknowledged_at: Optional[str] = None
    resolved: bool = False
    resolved_by: Optional[str] = None
    resolved_at: Optional[str] = None
    dedup_key: str = ""
    created_at: str = ""

    @property
    def subject(self) -> str:
        return self.connection_id or self.device_id or ""

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class TelemetryRecord:
    """Raw telemetry as delivered by the transport, before normalization."""

    id: str
    source: str
    timestamp: str
    payload: Dict[str, Any] = field(default_factory=dict)
    device_id: Optional[str] = None
    processed: bool = False
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class TopologySnapshot:
    """Point-in-time copy of the device/connection graph."""

    id: str
    timestamp: str
    devices: List[Device] = field(default_factory=list)
    connections: List[Connection] = field(default_factory=list)
    zones: List[Dict[str, Any]] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict) -> "TopologySnapshot":
        values = _known(cls, data)
        values["devices"] = [Device.from_dict(d) for d in data.get("devices") or []]
        values["connections"] = [Connection.from_dict(c) for c in data.get("connections") or []]
        return cls(**values)

    def to_dict(self) -> dict:
        return asdict(self)

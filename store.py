"""
IcsMap persistence layer.
SQLite-backed DataStore for devices, interfaces, connections, alerts, telemetry and topology snapshots.
"""

import json
import sqlite3
import threading
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

from models import Alert, Connection, Device, NetworkInterface, TelemetryRecord, TopologySnapshot
from toolkit.utils import dumps, iso, loads, utc_now, utc_now_iso

DEVICE_FILTERS = ("type", "purdue_level", "security_zone", "status", "vendor")
DEVICE_UPDATABLE = (
    "name", "type", "purdue_level", "security_zone", "status", "hostname", "vendor",
    "model", "firmware_version", "serial_number", "location", "metadata", "last_seen_at",
)
CONNECTION_FILTERS = ("protocol", "connection_type", "is_secure")
ALERT_FILTERS = ("type", "severity", "device_id", "connection_id", "acknowledged", "resolved")
_JSON_COLUMNS = {"location": "location_json", "metadata": "metadata_json"}


def _page(page: Any, limit: Any) -> Tuple[int, int]:
    try:
        p = max(1, int(page))
    except (TypeError, ValueError):
        p = 1
    try:
        lim = max(1, min(int(limit), 1000))
    except (TypeError, ValueError):
        lim = 50
    return p, lim


def _where(criteria: Dict[str, Any], allowed: Iterable[str], prefix: str = "") -> Tuple[str, List[Any]]:
    clauses, values = [], []
    for key in allowed:
        if key not in criteria or criteria[key] is None:
            continue
        value = criteria[key]
        if isinstance(value, bool):
            value = int(value)
        clauses.append(f"{prefix}{key}=?")
        values.append(value)
    return (" WHERE " + " AND ".join(clauses)) if clauses else "", values


class DataStore:
    """Canonical device/connection graph plus alerts, raw telemetry and snapshots."""

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.lock = threading.Lock()
        self._init_db()

    def _connect(self):
        conn = sqlite3.connect(self.db_path, timeout=30, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        conn.execute("PRAGMA foreign_keys=ON")
        return conn

    def _init_db(self):
        with self._connect() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS devices (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    hostname TEXT UNIQUE,
                    type TEXT NOT NULL DEFAULT 'unknown',
                    vendor TEXT,
                    model TEXT,
                    firmware_version TEXT,
                    serial_number TEXT,
                    purdue_level INTEGER NOT NULL DEFAULT 5
                        CHECK (purdue_level IN (0, 1, 2, 3, 4, 5, 99)),
                    security_zone TEXT NOT NULL DEFAULT 'untrusted',
                    status TEXT NOT NULL DEFAULT 'unknown',
                    location_json TEXT,
                    metadata_json TEXT DEFAULT '{}',
                    discovered_at TEXT,
                    last_seen_at TEXT
                );
                CREATE INDEX IF NOT EXISTS idx_devices_name ON devices(name);
                CREATE INDEX IF NOT EXISTS idx_devices_last_seen ON devices(last_seen_at);

                CREATE TABLE IF NOT EXISTS interfaces (
                    device_id TEXT NOT NULL REFERENCES devices(id) ON DELETE CASCADE,
                    name TEXT NOT NULL,
                    mac_address TEXT DEFAULT '',
                    ip_address TEXT DEFAULT '',
                    vlan_id INTEGER,
                    speed_mbps REAL DEFAULT 0,
                    status TEXT DEFAULT 'up',
                    PRIMARY KEY (device_id, name)
                );
                CREATE INDEX IF NOT EXISTS idx_interfaces_mac ON interfaces(mac_address);
                CREATE INDEX IF NOT EXISTS idx_interfaces_ip ON interfaces(ip_address);

                CREATE TABLE IF NOT EXISTS connections (
                    id TEXT PRIMARY KEY,
                    source_device_id TEXT NOT NULL REFERENCES devices(id) ON DELETE CASCADE,
                    target_device_id TEXT NOT NULL REFERENCES devices(id) ON DELETE CASCADE,
                    device_low TEXT NOT NULL,
                    device_high TEXT NOT NULL,
                    protocol TEXT NOT NULL DEFAULT '',
                    connection_type TEXT DEFAULT 'ethernet',
                    port INTEGER,
                    vlan_id INTEGER,
                    bandwidth REAL,
                    latency REAL,
                    is_secure INTEGER DEFAULT 0,
                    encryption_type TEXT,
                    metadata_json TEXT DEFAULT '{}',
                    discovered_at TEXT,
                    last_seen_at TEXT,
                    UNIQUE (device_low, device_high, protocol),
                    CHECK (source_device_id <> target_device_id)
                );

                CREATE TABLE IF NOT EXISTS alerts (
                    id TEXT PRIMARY KEY,
                    type TEXT NOT NULL,
                    severity TEXT NOT NULL,
                    title TEXT,
                    description TEXT DEFAULT '',
                    device_id TEXT,
                    connection_id TEXT,
                    details_json TEXT DEFAULT '{}',
                    remediation TEXT DEFAULT '',
                    acknowledged INTEGER DEFAULT 0,
                    acknowledged_by TEXT,
                    acknowledged_at TEXT,
                    resolved INTEGER DEFAULT 0,
                    resolved_by TEXT,
                    resolved_at TEXT,
                    dedup_key TEXT DEFAULT '',
                    created_at TEXT
                );
                CREATE INDEX IF NOT EXISTS idx_alerts_open ON alerts(type, resolved);
                CREATE INDEX IF NOT EXISTS idx_alerts_created ON alerts(created_at);

                CREATE TABLE IF NOT EXISTS telemetry (
                    id TEXT PRIMARY KEY,
                    source TEXT NOT NULL,
                    device_id TEXT,
                    timestamp TEXT,
                    payload_json TEXT,
                    processed INTEGER DEFAULT 0,
                    processed_at TEXT,
                    metadata_json TEXT DEFAULT '{}'
                );
                CREATE INDEX IF NOT EXISTS idx_telemetry_processed ON telemetry(processed, timestamp);

                CREATE TABLE IF NOT EXISTS topology_snapshots (
                    id TEXT PRIMARY KEY,
                    timestamp TEXT,
                    snapshot_json TEXT
                );
                """
            )

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------

    @staticmethod
    def _interface_from_row(r) -> NetworkInterface:
        return NetworkInterface(
            name=r["name"],
            mac_address=r["mac_address"] or "",
            ip_address=r["ip_address"] or "",
            vlan_id=r["vlan_id"],
            speed_mbps=float(r["speed_mbps"] or 0.0),
            status=r["status"] or "up",
        )

    def _device_from_row(self, conn, r) -> Device:
        ifaces = conn.execute(
            "SELECT * FROM interfaces WHERE device_id=? ORDER BY name", (r["id"],)
        ).fetchall()
        return Device(
            id=r["id"],
            name=r["name"],
            hostname=r["hostname"],
            type=r["type"],
            vendor=r["vendor"],
            model=r["model"],
            firmware_version=r["firmware_version"],
            serial_number=r["serial_number"],
            purdue_level=int(r["purdue_level"]),
            security_zone=r["security_zone"],
            status=r["status"],
            location=loads(r["location_json"]),
            interfaces=[self._interface_from_row(i) for i in ifaces],
            metadata=loads(r["metadata_json"], {}),
            discovered_at=r["discovered_at"] or "",
            last_seen_at=r["last_seen_at"] or "",
        )

    @staticmethod
    def _connection_from_row(r) -> Connection:
        return Connection(
            id=r["id"],
            source_device_id=r["source_device_id"],
            target_device_id=r["target_device_id"],
            connection_type=r["connection_type"] or "ethernet",
            protocol=r["protocol"] or None,
            port=r["port"],
            vlan_id=r["vlan_id"],
            bandwidth=r["bandwidth"],
            latency=r["latency"],
            is_secure=bool(r["is_secure"]),
            encryption_type=r["encryption_type"],
            metadata=loads(r["metadata_json"], {}),
            discovered_at=r["discovered_at"] or "",
            last_seen_at=r["last_seen_at"] or "",
        )

    @staticmethod
    def _alert_from_row(r) -> Alert:
        return Alert(
            id=r["id"],
            type=r["type"],
            severity=r["severity"],
            title=r["title"] or "",
            description=r["description"] or "",
            device_id=r["device_id"],
            connection_id=r["connection_id"],
            details=loads(r["details_json"], {}),
            remediation=r["remediation"] or "",
            acknowledged=bool(r["acknowledged"]),
            acknowledged_by=r["acknowledged_by"],
            acknowledged_at=r["acknowledged_at"],
            resolved=bool(r["resolved"]),
            resolved_by=r["resolved_by"],
            resolved_at=r["resolved_at"],
            dedup_key=r["dedup_key"] or "",
            created_at=r["created_at"] or "",
        )

    @staticmethod
    def _telemetry_from_row(r) -> TelemetryRecord:
        return TelemetryRecord(
            id=r["id"],
            source=r["source"],
            timestamp=r["timestamp"] or "",
            payload=loads(r["payload_json"], {}),
            device_id=r["device_id"],
            processed=bool(r["processed"]),
            metadata=loads(r["metadata_json"], {}),
        )

    # ------------------------------------------------------------------
    # Devices
    # ------------------------------------------------------------------

    @staticmethod
    def _write_interfaces(conn, device_id: str, interfaces: Iterable[NetworkInterface]):
        for iface in interfaces:
            conn.execute(
                """
                INSERT INTO interfaces (device_id, name, mac_address, ip_address, vlan_id, speed_mbps, status)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(device_id, name) DO UPDATE SET
                    mac_address=CASE WHEN excluded.mac_address <> '' THEN excluded.mac_address ELSE interfaces.mac_address END,
                    ip_address=CASE WHEN excluded.ip_address <> '' THEN excluded.ip_address ELSE interfaces.ip_address END,
                    vlan_id=COALESCE(excluded.vlan_id, interfaces.vlan_id),
                    speed_mbps=excluded.speed_mbps,
                    status=excluded.status
                """,
                (
                    device_id,
                    iface.name,
                    iface.mac_address or "",
                    iface.ip_address or "",
                    iface.vlan_id,
                    float(iface.speed_mbps or 0.0),
                    iface.status or "up",
                ),
            )

    @staticmethod
    def _device_params(device: Device) -> tuple:
        now = utc_now_iso()
        return (
            device.id,
            device.name,
            device.hostname or None,
            device.type,
            device.vendor,
            device.model,
            device.firmware_version,
            device.serial_number,
            int(device.purdue_level),
            device.security_zone,
            device.status,
            dumps(device.location) if device.location is not None else None,
            dumps(device.metadata or {}),
            iso(device.discovered_at) or now,
            iso(device.last_seen_at) or now,
        )

    def create_device(self, device: Device) -> Device:
        with self.lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO devices (
                    id, name, hostname, type, vendor, model, firmware_version, serial_number,
                    purdue_level, security_zone, status, location_json, metadata_json,
                    discovered_at, last_seen_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                self._device_params(device),
            )
            self._write_interfaces(conn, device.id, device.interfaces)
            row = conn.execute("SELECT * FROM devices WHERE id=?", (device.id,)).fetchone()
            return self._device_from_row(conn, row)

    def upsert_device_by_hostname(self, device: Device) -> Tuple[Device, bool]:
        """Insert, or refresh last_seen_at/status of the row holding the same hostname.

        Returns (stored device, created). Interfaces are only written for new rows.
        """
        if not device.hostname:
            return self.create_device(device), True
        with self.lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO devices (
                    id, name, hostname, type, vendor, model, firmware_version, serial_number,
                    purdue_level, security_zone, status, location_json, metadata_json,
                    discovered_at, last_seen_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(hostname) DO UPDATE SET
                    status=excluded.status,
                    last_seen_at=MAX(COALESCE(last_seen_at, ''), excluded.last_seen_at)
                """,
                self._device_params(device),
            )
            row = conn.execute("SELECT * FROM devices WHERE hostname=?", (device.hostname,)).fetchone()
            created = row["id"] == device.id
            if created:
                self._write_interfaces(conn, device.id, device.interfaces)
            return self._device_from_row(conn, row), created

    def add_interfaces(self, device_id: str, interfaces: Iterable[NetworkInterface]):
        with self.lock, self._connect() as conn:
            self._write_interfaces(conn, device_id, interfaces)

    def get_device(self, device_id: str) -> Optional[Device]:
        with self.lock, self._connect() as conn:
            row = conn.execute("SELECT * FROM devices WHERE id=?", (device_id,)).fetchone()
            return self._device_from_row(conn, row) if row else None

    def find_device_by_name(self, name: str) -> Optional[Device]:
        """Match on hostname first, then on display name (case-insensitive)."""
        n = str(name or "").strip()
        if not n:
            return None
        with self.lock, self._connect() as conn:
            row = conn.execute("SELECT * FROM devices WHERE hostname=? COLLATE NOCASE", (n,)).fetchone()
            if not row:
                row = conn.execute(
                    "SELECT * FROM devices WHERE name=? COLLATE NOCASE ORDER BY discovered_at LIMIT 1", (n,)
                ).fetchone()
            return self._device_from_row(conn, row) if row else None

    def find_device_by_ip(self, ip: str) -> Optional[Device]:
        if not ip:
            return None
        with self.lock, self._connect() as conn:
            row = conn.execute(
                """
                SELECT d.* FROM devices d JOIN interfaces i ON i.device_id = d.id
                WHERE i.ip_address=? ORDER BY d.last_seen_at DESC LIMIT 1
                """,
                (ip,),
            ).fetchone()
            return self._device_from_row(conn, row) if row else None

    def find_device_by_mac(self, mac: str) -> Optional[Device]:
        if not mac:
            return None
        with self.lock, self._connect() as conn:
            row = conn.execute(
                """
                SELECT d.* FROM devices d JOIN interfaces i ON i.device_id = d.id
                WHERE i.mac_address=? ORDER BY d.last_seen_at DESC LIMIT 1
                """,
                (str(mac).lower(),),
            ).fetchone()
            return self._device_from_row(conn, row) if row else None

    def resolve_device(self, *, mac: str = "", ip: str = "", hostname: str = "") -> Optional[Device]:
        """Identity resolution order: MAC, then IP, then hostname."""
        return self.find_device_by_mac(mac) or self.find_device_by_ip(ip) or self.find_device_by_name(hostname)

    def device_has_ip(self, device_id: str, ip: str) -> bool:
        with self.lock, self._connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM interfaces WHERE device_id=? AND ip_address=? LIMIT 1", (device_id, ip)
            ).fetchone()
        return row is not None

    def device_exists(self, device_id: str) -> bool:
        with self.lock, self._connect() as conn:
            row = conn.execute("SELECT 1 FROM devices WHERE id=?", (device_id,)).fetchone()
        return row is not None

    def touch_device(self, device_id: str, *, seen_at: Optional[str] = None, status: Optional[str] = None) -> bool:
        """Move last_seen_at forward to ``seen_at``; an older timestamp leaves it unchanged."""
        seen = iso(seen_at) or utc_now_iso()
        with self.lock, self._connect() as conn:
            if status:
                cur = conn.execute(
                    "UPDATE devices SET last_seen_at=MAX(COALESCE(last_seen_at, ''), ?), status=? WHERE id=?",
                    (seen, status, device_id),
                )
            else:
                cur = conn.execute(
                    "UPDATE devices SET last_seen_at=MAX(COALESCE(last_seen_at, ''), ?) WHERE id=?", (seen, device_id)
                )
        return cur.rowcount > 0

    def update_device(self, device_id: str, **changes) -> Optional[Device]:
        fields = []
        values = []
        for key in DEVICE_UPDATABLE:
            if key not in changes:
                continue
            value = changes[key]
            if key in _JSON_COLUMNS:
                fields.append(f"{_JSON_COLUMNS[key]}=?")
                values.append(dumps(value) if value is not None else None)
            else:
                fields.append(f"{key}=?")
                values.append(value)
        if fields:
            values.append(device_id)
            query = f"UPDATE devices SET {', '.join(fields)} WHERE id=?"
            with self.lock, self._connect() as conn:
                conn.execute(query, values)
        return self.get_device(device_id)

    def delete_device(self, device_id: str) -> bool:
        with self.lock, self._connect() as conn:
            cur = conn.execute("DELETE FROM devices WHERE id=?", (device_id,))
        return cur.rowcount > 0

    def list_devices(self, limit: int = 5000) -> List[Device]:
        lim = max(1, int(limit))
        with self.lock, self._connect() as conn:
            rows = conn.execute("SELECT * FROM devices ORDER BY name LIMIT ?", (lim,)).fetchall()
            return [self._device_from_row(conn, r) for r in rows]

    def search_devices(self, criteria: Optional[Dict[str, Any]] = None, *, page: int = 1, limit: int = 50) -> Dict[str, Any]:
        criteria = criteria or {}
        p, lim = _page(page, limit)
        where, values = _where(criteria, DEVICE_FILTERS)
        q = str(criteria.get("q") or "").strip()
        if q:
            where += (" AND " if where else " WHERE ") + "(name LIKE ? OR hostname LIKE ? OR vendor LIKE ? OR model LIKE ?)"
            values.extend([f"%{q}%"] * 4)
        with self.lock, self._connect() as conn:
            total = conn.execute(f"SELECT COUNT(*) FROM devices{where}", values).fetchone()[0]
            rows = conn.execute(
                f"SELECT * FROM devices{where} ORDER BY name LIMIT ? OFFSET ?",
                values + [lim, (p - 1) * lim],
            ).fetchall()
            items = [self._device_from_row(conn, r) for r in rows]
        return {"items": items, "total": total, "page": p, "limit": lim, "pages": (total + lim - 1) // lim}

    def count_devices(self, **criteria) -> int:
        where, values = _where(criteria, DEVICE_FILTERS)
        with self.lock, self._connect() as conn:
            return int(conn.execute(f"SELECT COUNT(*) FROM devices{where}", values).fetchone()[0])

    def count_devices_by(self, column: str) -> Dict[str, int]:
        if column not in DEVICE_FILTERS:
            raise ValueError(f"cannot group devices by {column!r}")
        with self.lock, self._connect() as conn:
            rows = conn.execute(f"SELECT {column} AS k, COUNT(*) AS n FROM devices GROUP BY {column}").fetchall()
        return {str(r["k"]): int(r["n"]) for r in rows}

    def find_offline_devices(self, threshold_hours: float) -> List[Device]:
        """Devices not seen for longer than ``threshold_hours``."""
        cutoff = (utc_now() - timedelta(hours=float(threshold_hours))).isoformat()
        with self.lock, self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM devices WHERE last_seen_at < ? ORDER BY last_seen_at", (cutoff,)
            ).fetchall()
            return [self._device_from_row(conn, r) for r in rows]

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    def upsert_connection(self, connection: Connection) -> Tuple[Connection, bool]:
        """One row per unordered device pair and protocol; (A,B) and (B,A) converge.

        On conflict only the mutable fields (bandwidth, latency, is_secure,
        last_seen_at) are replaced. Returns (stored connection, created).
        """
        low, high = sorted((connection.source_device_id, connection.target_device_id))
        protocol = connection.protocol or ""
        now = utc_now_iso()
        with self.lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO connections (
                    id, source_device_id, target_device_id, device_low, device_high, protocol,
                    connection_type, port, vlan_id, bandwidth, latency, is_secure, encryption_type,
                    metadata_json, discovered_at, last_seen_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(device_low, device_high, protocol) DO UPDATE SET
                    bandwidth=excluded.bandwidth,
                    latency=excluded.latency,
                    is_secure=excluded.is_secure,
                    last_seen_at=MAX(COALESCE(last_seen_at, ''), excluded.last_seen_at)
                """,
                (
                    connection.id,
                    connection.source_device_id,
                    connection.target_device_id,
                    low,
                    high,
                    protocol,
                    connection.connection_type or "ethernet",
                    connection.port,
                    connection.vlan_id,
                    connection.bandwidth,
                    connection.latency,
                    int(bool(connection.is_secure)),
                    connection.encryption_type,
                    dumps(connection.metadata or {}),
                    iso(connection.discovered_at) or now,
                    iso(connection.last_seen_at) or now,
                ),
            )
            row = conn.execute(
                "SELECT * FROM connections WHERE device_low=? AND device_high=? AND protocol=?",
                (low, high, protocol),
            ).fetchone()
        return self._connection_from_row(row), row["id"] == connection.id

    def get_connection(self, connection_id: str) -> Optional[Connection]:
        with self.lock, self._connect() as conn:
            row = conn.execute("SELECT * FROM connections WHERE id=?", (connection_id,)).fetchone()
        return self._connection_from_row(row) if row else None

    def find_connection(self, device_a: str, device_b: str, protocol: Optional[str] = None) -> Optional[Connection]:
        low, high = sorted((device_a, device_b))
        with self.lock, self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM connections WHERE device_low=? AND device_high=? AND protocol=?",
                (low, high, protocol or ""),
            ).fetchone()
        return self._connection_from_row(row) if row else None

    def list_connections(self, limit: int = 20000) -> List[Connection]:
        lim = max(1, int(limit))
        with self.lock, self._connect() as conn:
            rows = conn.execute("SELECT * FROM connections ORDER BY last_seen_at DESC LIMIT ?", (lim,)).fetchall()
        return [self._connection_from_row(r) for r in rows]

    def connections_for_device(self, device_id: str) -> List[Connection]:
        with self.lock, self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM connections WHERE source_device_id=? OR target_device_id=? ORDER BY last_seen_at DESC",
                (device_id, device_id),
            ).fetchall()
        return [self._connection_from_row(r) for r in rows]

    def search_connections(self, criteria: Optional[Dict[str, Any]] = None, *, page: int = 1, limit: int = 50) -> Dict[str, Any]:
        criteria = criteria or {}
        p, lim = _page(page, limit)
        where, values = _where(criteria, CONNECTION_FILTERS)
        device_id = criteria.get("device_id")
        if device_id:
            where += (" AND " if where else " WHERE ") + "(source_device_id=? OR target_device_id=?)"
            values.extend([device_id, device_id])
        with self.lock, self._connect() as conn:
            total = conn.execute(f"SELECT COUNT(*) FROM connections{where}", values).fetchone()[0]
            rows = conn.execute(
                f"SELECT * FROM connections{where} ORDER BY last_seen_at DESC LIMIT ? OFFSET ?",
                values + [lim, (p - 1) * lim],
            ).fetchall()
        items = [self._connection_from_row(r) for r in rows]
        return {"items": items, "total": total, "page": p, "limit": lim, "pages": (total + lim - 1) // lim}

    def count_connections(self, **criteria) -> int:
        where, values = _where(criteria, CONNECTION_FILTERS)
        with self.lock, self._connect() as conn:
            return int(conn.execute(f"SELECT COUNT(*) FROM connections{where}", values).fetchone()[0])

    def find_insecure_connections(self, limit: int = 10) -> List[Connection]:
        """Insecure connections whose endpoints both still exist."""
        with self.lock, self._connect() as conn:
            rows = conn.execute(
                """
                SELECT c.* FROM connections c
                JOIN devices s ON s.id = c.source_device_id
                JOIN devices t ON t.id = c.target_device_id
                WHERE c.is_secure = 0
                ORDER BY c.last_seen_at DESC LIMIT ?
                """,
                (max(1, int(limit)),),
            ).fetchall()
        return [self._connection_from_row(r) for r in rows]

    def find_cross_zone_connections(self, limit: int = 10) -> List[Connection]:
        """Connections whose endpoints sit at different Purdue levels."""
        with self.lock, self._connect() as conn:
            rows = conn.execute(
                """
                SELECT c.* FROM connections c
                JOIN devices s ON s.id = c.source_device_id
                JOIN devices t ON t.id = c.target_device_id
                WHERE s.purdue_level <> t.purdue_level
                ORDER BY c.last_seen_at DESC LIMIT ?
                """,
                (max(1, int(limit)),),
            ).fetchall()
        return [self._connection_from_row(r) for r in rows]

    def delete_connection(self, connection_id: str) -> bool:
        with self.lock, self._connect() as conn:
            cur = conn.execute("DELETE FROM connections WHERE id=?", (connection_id,))
        return cur.rowcount > 0

    # ------------------------------------------------------------------
    # Alerts
    # ------------------------------------------------------------------

    @staticmethod
    def _insert_alert(conn, alert: Alert):
        conn.execute(
            """
            INSERT INTO alerts (
                id, type, severity, title, description, device_id, connection_id, details_json,
                remediation, acknowledged, acknowledged_by, acknowledged_at, resolved, resolved_by,
                resolved_at, dedup_key, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                alert.id,
                alert.type,
                alert.severity,
                alert.title,
                alert.description,
                alert.device_id,
                alert.connection_id,
                dumps(alert.details or {}),
                alert.remediation,
                int(alert.acknowledged),
                alert.acknowledged_by,
                alert.acknowledged_at,
                int(alert.resolved),
                alert.resolved_by,
                alert.resolved_at,
                alert.dedup_key or "",
                alert.created_at or utc_now_iso(),
            ),
        )

    @staticmethod
    def _open_alert_row(conn, alert_type: str, *, device_id=None, connection_id=None, dedup_key=""):
        if dedup_key:
            return conn.execute(
                "SELECT * FROM alerts WHERE type=? AND dedup_key=? AND resolved=0 LIMIT 1",
                (alert_type, dedup_key),
            ).fetchone()
        if connection_id:
            return conn.execute(
                "SELECT * FROM alerts WHERE type=? AND connection_id=? AND resolved=0 LIMIT 1",
                (alert_type, connection_id),
            ).fetchone()
        if device_id:
            return conn.execute(
                "SELECT * FROM alerts WHERE type=? AND device_id=? AND connection_id IS NULL AND resolved=0 LIMIT 1",
                (alert_type, device_id),
            ).fetchone()
        return None

    def create_alert(self, alert: Alert) -> Alert:
        with self.lock, self._connect() as conn:
            self._insert_alert(conn, alert)
        return alert

    def create_alert_once(self, alert: Alert) -> Tuple[Alert, bool]:
        """Insert unless an unresolved alert of the same type and subject exists.

        Check and insert share one immediate transaction. Returns (alert, created),
        where alert is the already-open one when nothing was inserted.
        """
        with self.lock, self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            row = self._open_alert_row(
                conn,
                alert.type,
                device_id=alert.device_id,
                connection_id=alert.connection_id,
                dedup_key=alert.dedup_key,
            )
            if row is not None:
                return self._alert_from_row(row), False
            self._insert_alert(conn, alert)
        return alert, True

    def find_open_alert(self, alert_type: str, *, device_id=None, connection_id=None, dedup_key="") -> Optional[Alert]:
        with self.lock, self._connect() as conn:
            row = self._open_alert_row(
                conn, alert_type, device_id=device_id, connection_id=connection_id, dedup_key=dedup_key
            )
        return self._alert_from_row(row) if row else None

    def get_alert(self, alert_id: str) -> Optional[Alert]:
        with self.lock, self._connect() as conn:
            row = conn.execute("SELECT * FROM alerts WHERE id=?", (alert_id,)).fetchone()
        return self._alert_from_row(row) if row else None

    def search_alerts(self, criteria: Optional[Dict[str, Any]] = None, *, page: int = 1, limit: int = 50) -> Dict[str, Any]:
        p, lim = _page(page, limit)
        where, values = _where(criteria or {}, ALERT_FILTERS)
        with self.lock, self._connect() as conn:
            total = conn.execute(f"SELECT COUNT(*) FROM alerts{where}", values).fetchone()[0]
            rows = conn.execute(
                f"SELECT * FROM alerts{where} ORDER BY created_at DESC LIMIT ? OFFSET ?",
                values + [lim, (p - 1) * lim],
            ).fetchall()
        items = [self._alert_from_row(r) for r in rows]
        return {"items": items, "total": total, "page": p, "limit": lim, "pages": (total + lim - 1) // lim}

    def list_alerts(self, limit: int = 1000) -> List[Alert]:
        lim = max(1, int(limit))
        with self.lock, self._connect() as conn:
            rows = conn.execute("SELECT * FROM alerts ORDER BY created_at DESC LIMIT ?", (lim,)).fetchall()
        return [self._alert_from_row(r) for r in rows]

    def count_alerts(self, **criteria) -> int:
        where, values = _where(criteria, ALERT_FILTERS)
        with self.lock, self._connect() as conn:
            return int(conn.execute(f"SELECT COUNT(*) FROM alerts{where}", values).fetchone()[0])

    def acknowledge_alert(self, alert_id: str, *, by: str, at: Optional[str] = None) -> bool:
        """Only open, unacknowledged alerts change. Returns whether a row changed."""
        with self.lock, self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE alerts SET acknowledged=1, acknowledged_by=?, acknowledged_at=?
                WHERE id=? AND resolved=0 AND acknowledged=0
                """,
                (by, iso(at) or utc_now_iso(), alert_id),
            )
        return cur.rowcount > 0

    def resolve_alert(self, alert_id: str, *, by: str, at: Optional[str] = None) -> bool:
        with self.lock, self._connect() as conn:
            cur = conn.execute(
                "UPDATE alerts SET resolved=1, resolved_by=?, resolved_at=? WHERE id=? AND resolved=0",
                (by, iso(at) or utc_now_iso(), alert_id),
            )
        return cur.rowcount > 0

    def alert_stats(self) -> Dict[str, Any]:
        now = utc_now()
        day = (now - timedelta(days=1)).isoformat()
        week = (now - timedelta(days=7)).isoformat()
        with self.lock, self._connect() as conn:
            total = conn.execute("SELECT COUNT(*) FROM alerts").fetchone()[0]
            unack = conn.execute("SELECT COUNT(*) FROM alerts WHERE acknowledged=0 AND resolved=0").fetchone()[0]
            unresolved = conn.execute("SELECT COUNT(*) FROM alerts WHERE resolved=0").fetchone()[0]
            by_sev = conn.execute("SELECT severity, COUNT(*) AS n FROM alerts GROUP BY severity").fetchall()
            by_type = conn.execute("SELECT type, COUNT(*) AS n FROM alerts GROUP BY type").fetchall()
            last_24h = conn.execute("SELECT COUNT(*) FROM alerts WHERE created_at >= ?", (day,)).fetchone()[0]
            last_7d = conn.execute("SELECT COUNT(*) FROM alerts WHERE created_at >= ?", (week,)).fetchone()[0]
        return {
            "total": int(total),
            "unacknowledged": int(unack),
            "unresolved": int(unresolved),
            "by_severity": {r["severity"]: int(r["n"]) for r in by_sev},
            "by_type": {r["type"]: int(r["n"]) for r in by_type},
            "last_24h": int(last_24h),
            "last_7d": int(last_7d),
        }

    def delete_resolved_alerts_before(self, cutoff_iso: str) -> int:
        with self.lock, self._connect() as conn:
            cur = conn.execute("DELETE FROM alerts WHERE resolved=1 AND resolved_at < ?", (cutoff_iso,))
        return int(cur.rowcount)

    # ------------------------------------------------------------------
    # Telemetry
    # ------------------------------------------------------------------

    def insert_telemetry(self, record: TelemetryRecord) -> bool:
        """Store a raw record; a redelivered id is ignored. Returns whether it was new."""
        with self.lock, self._connect() as conn:
            cur = conn.execute(
                """
                INSERT INTO telemetry (id, source, device_id, timestamp, payload_json, processed, metadata_json)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO NOTHING
                """,
                (
                    record.id,
                    record.source,
                    record.device_id,
                    record.timestamp or utc_now_iso(),
                    json.dumps(record.payload, default=str),
                    int(record.processed),
                    dumps(record.metadata or {}),
                ),
            )
        return cur.rowcount > 0

    def get_telemetry(self, record_id: str) -> Optional[TelemetryRecord]:
        with self.lock, self._connect() as conn:
            row = conn.execute("SELECT * FROM telemetry WHERE id=?", (record_id,)).fetchone()
        return self._telemetry_from_row(row) if row else None

    def mark_telemetry_processed(self, record_id: str, *, device_id: Optional[str] = None):
        with self.lock, self._connect() as conn:
            conn.execute(
                "UPDATE telemetry SET processed=1, processed_at=?, device_id=COALESCE(?, device_id) WHERE id=?",
                (utc_now_iso(), device_id, record_id),
            )

    def find_unprocessed_telemetry(self, *, source: Optional[str] = None, limit: int = 500) -> List[TelemetryRecord]:
        lim = max(1, int(limit))
        with self.lock, self._connect() as conn:
            if source:
                rows = conn.execute(
                    "SELECT * FROM telemetry WHERE processed=0 AND source=? ORDER BY timestamp LIMIT ?",
                    (source, lim),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM telemetry WHERE processed=0 ORDER BY timestamp LIMIT ?", (lim,)
                ).fetchall()
        return [self._telemetry_from_row(r) for r in rows]

    def count_telemetry(self, *, processed: Optional[bool] = None) -> int:
        with self.lock, self._connect() as conn:
            if processed is None:
                return int(conn.execute("SELECT COUNT(*) FROM telemetry").fetchone()[0])
            return int(
                conn.execute("SELECT COUNT(*) FROM telemetry WHERE processed=?", (int(processed),)).fetchone()[0]
            )

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    def save_snapshot(self, snapshot: TopologySnapshot) -> TopologySnapshot:
        with self.lock, self._connect() as conn:
            conn.execute(
                "INSERT INTO topology_snapshots (id, timestamp, snapshot_json) VALUES (?, ?, ?)",
                (snapshot.id, snapshot.timestamp, dumps(snapshot)),
            )
        return snapshot

    def get_snapshot(self, snapshot_id: str) -> Optional[TopologySnapshot]:
        with self.lock, self._connect() as conn:
            row = conn.execute("SELECT * FROM topology_snapshots WHERE id=?", (snapshot_id,)).fetchone()
        if not row:
            return None
        return TopologySnapshot.from_dict(loads(row["snapshot_json"], {}))

    def latest_snapshot(self) -> Optional[TopologySnapshot]:
        with self.lock, self._connect() as conn:
            row = conn.execute("SELECT * FROM topology_snapshots ORDER BY timestamp DESC LIMIT 1").fetchone()
        if not row:
            return None
        return TopologySnapshot.from_dict(loads(row["snapshot_json"], {}))

    def list_snapshots(self, limit: int = 50) -> List[dict]:
        lim = max(1, int(limit))
        with self.lock, self._connect() as conn:
            rows = conn.execute(
                "SELECT id, timestamp, snapshot_json FROM topology_snapshots ORDER BY timestamp DESC LIMIT ?", (lim,)
            ).fetchall()
        out = []
        for r in rows:
            meta = (loads(r["snapshot_json"], {}) or {}).get("metadata") or {}
            out.append({"id": r["id"], "timestamp": r["timestamp"], "metadata": meta})
        return out

    def clear(self, include_devices: bool = False):
        """Clear alerts, telemetry and snapshots. Optionally clear the device graph too."""
        with self.lock, self._connect() as conn:
            conn.execute("DELETE FROM alerts")
            conn.execute("DELETE FROM telemetry")
            conn.execute("DELETE FROM topology_snapshots")
            if include_devices:
                conn.execute("DELETE FROM connections")
                conn.execute("DELETE FROM interfaces")
                conn.execute("DELETE FROM devices")

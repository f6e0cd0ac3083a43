"""
IcsMap ingest orchestrator.
Persists raw telemetry, dispatches it by source tag to the normalizers and resolves
the results into the canonical device/connection graph.
"""

import logging
import sqlite3
import threading
from collections import OrderedDict
from typing import Any, Dict, Optional, Union

import constants as C
from models import Device, TelemetryRecord
from parsers import address_table, flow, log_message, sysdescr
from toolkit.utils import iso, new_id, utc_now_iso
from topology.graph import detect_device_changes
from topology.l2_builder import L2TopologyBuilder
from transport.events import TelemetryMessage

logger = logging.getLogger(__name__)

# Attributes whose change on a known device raises a configuration_change alert.
CONFIG_ATTRIBUTES = ("vendor", "model", "firmware_version", "type")


class IpCache:
    """Bounded LRU map of IP -> device id.

    Advisory only: entries may be stale, so every hit must be re-checked
    against storage before it is used for a write.
    """

    def __init__(self, max_size: int = 4096):
        self.max_size = max(1, int(max_size))
        self._data: "OrderedDict[str, str]" = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def get(self, ip: str) -> Optional[str]:
        with self._lock:
            device_id = self._data.get(ip)
            if device_id is None:
                self.misses += 1
                return None
            self._data.move_to_end(ip)
            self.hits += 1
            return device_id

    def put(self, ip: str, device_id: str) -> None:
        if not ip or not device_id:
            return
        with self._lock:
            self._data[ip] = device_id
            self._data.move_to_end(ip)
            while len(self._data) > self.max_size:
                self._data.popitem(last=False)

    def invalidate(self, ip: str) -> None:
        with self._lock:
            self._data.pop(ip, None)

    def invalidate_device(self, device_id: str) -> None:
        with self._lock:
            for ip in [k for k, v in self._data.items() if v == device_id]:
                del self._data[ip]

    def clear(self) -> None:
        with self._lock:
            self._data.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)

    def stats(self) -> dict:
        with self._lock:
            return {"size": len(self._data), "max_size": self.max_size, "hits": self.hits, "misses": self.misses}


class IngestOrchestrator:
    """Telemetry in, canonical graph out.

    Each record is stored first and marked processed only after its handler
    succeeds, so a storage fault leaves it available for ``replay_unprocessed``.
    """

    def __init__(self, datastore, alerts, bus=None, cache: Optional[IpCache] = None, *, new_device_alerts: bool = True):
        self.datastore = datastore
        self.alerts = alerts
        self.bus = bus
        self.cache = cache if cache is not None else IpCache()
        self.new_device_alerts = bool(new_device_alerts)
        self._handlers = {
            C.SOURCE_SYSTEM_DESCRIPTION: self.handle_system_description,
            C.SOURCE_ADDRESS_TABLE: lambda payload, **kw: self.handle_address_table(payload, kind="arp", **kw),
            C.SOURCE_MAC_TABLE: lambda payload, **kw: self.handle_address_table(payload, kind="mac", **kw),
            C.SOURCE_FLOW_RECORD: self.handle_flow_records,
            C.SOURCE_LOG_MESSAGE: self.handle_log_messages,
        }

    def attach(self, bus) -> None:
        """Subscribe to every telemetry source tag on ``bus``."""
        self.bus = bus
        for source in C.TELEMETRY_SOURCES:
            bus.subscribe(source, self.process)

    def _emit(self, event_type: str, entity: str, summary: str, data: Optional[dict] = None) -> None:
        if self.bus is not None:
            self.bus.emit(event_type, entity=entity, summary=summary, data=data)

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    @staticmethod
    def _to_record(message: Union[TelemetryMessage, TelemetryRecord, dict]) -> TelemetryRecord:
        if isinstance(message, TelemetryRecord):
            return message
        if isinstance(message, TelemetryMessage):
            return TelemetryRecord(
                id=message.id,
                source=message.source,
                timestamp=iso(message.ts) or utc_now_iso(),
                payload=message.payload,
                device_id=message.device_id,
                metadata=dict(message.metadata),
            )
        data = message if isinstance(message, dict) else {}
        payload = data.get("payload")
        return TelemetryRecord(
            id=str(data.get("id") or new_id()),
            source=str(data.get("source") or ""),
            timestamp=iso(data.get("timestamp")) or utc_now_iso(),
            payload=payload if isinstance(payload, dict) else {},
            device_id=data.get("device_id") or data.get("deviceId"),
            metadata=dict(data.get("metadata") or {}),
        )

    def process(self, message) -> Dict[str, Any]:
        """Store, dispatch and mark one telemetry message. Storage faults propagate."""
        record = self._to_record(message)
        try:
            if not self.datastore.insert_telemetry(record):
                existing = self.datastore.get_telemetry(record.id)
                if existing is not None and existing.processed:
                    logger.debug("telemetry %s already processed", record.id)
                    return {"status": "duplicate", "id": record.id, "source": record.source}
            result = self._dispatch(record)
            self.datastore.mark_telemetry_processed(record.id, device_id=result.get("device_id"))
        except sqlite3.Error:
            logger.exception("storage fault while processing %s telemetry %s", record.source, record.id)
            raise
        return result

    def _dispatch(self, record: TelemetryRecord) -> Dict[str, Any]:
        handler = self._handlers.get(record.source)
        if handler is None:
            logger.warning("ignoring telemetry %s with unknown source %r", record.id, record.source)
            return {"status": "ignored", "id": record.id, "source": record.source}
        result = handler(record.payload, seen_at=iso(record.timestamp) or utc_now_iso())
        result.setdefault("status", "processed")
        result["id"] = record.id
        result["source"] = record.source
        return result

    def replay_unprocessed(self, *, source: Optional[str] = None, limit: int = 500) -> Dict[str, Any]:
        """Re-run stored records that never got marked processed."""
        done = 0
        records = self.datastore.find_unprocessed_telemetry(source=source, limit=limit)
        for record in records:
            result = self._dispatch(record)
            self.datastore.mark_telemetry_processed(record.id, device_id=result.get("device_id"))
            done += 1
        if done:
            logger.info("replayed %d unprocessed telemetry records", done)
        return {"replayed": done, "pending": self.datastore.count_telemetry(processed=False)}

    # ------------------------------------------------------------------
    # Identity resolution
    # ------------------------------------------------------------------

    def resolve_device_id(self, ip: str) -> Optional[str]:
        """IP -> device id via the advisory cache, always confirmed against storage."""
        if not ip:
            return None
        cached = self.cache.get(ip)
        if cached is not None:
            if self.datastore.device_has_ip(cached, ip):
                return cached
            self.cache.invalidate(ip)
        device = self.datastore.find_device_by_ip(ip)
        if device is None:
            return None
        self.cache.put(ip, device.id)
        return device.id

    def _remember(self, device: Device) -> None:
        for ip in device.ip_addresses():
            self.cache.put(ip, device.id)

    # ------------------------------------------------------------------
    # Per-source handlers
    # ------------------------------------------------------------------

    def handle_system_description(self, payload: Any, *, seen_at: Optional[str] = None) -> Dict[str, Any]:
        """Create the device on first sight; afterwards only refresh last_seen_at and status."""
        parsed = sysdescr.parse_system_description(payload)
        if parsed is None:
            return {"status": "empty", "device_id": None, "created": False}

        seen = seen_at or utc_now_iso()
        candidate = sysdescr.to_device(parsed, seen_at=seen)
        existing = self.datastore.find_device_by_name(candidate.name)
        if existing is not None:
            self.datastore.touch_device(existing.id, seen_at=seen, status=C.STATUS_ONLINE)
            stored, created = existing, False
        else:
            stored, created = self.datastore.upsert_device_by_hostname(candidate)
        self._remember(stored)

        if created:
            logger.info("new device %s (%s, level %s)", stored.name, stored.type, stored.purdue_level)
            self._emit(
                "device.discovered",
                stored.id,
                f"{stored.name} ({stored.type})",
                {"device_id": stored.id, "purdue_level": stored.purdue_level, "vendor": stored.vendor},
            )
            if self.new_device_alerts:
                self.alerts.create_once(self.alerts.new_device_alert(stored))
        else:
            changes = detect_device_changes(stored, candidate, CONFIG_ATTRIBUTES)
            changes = [c for c in changes if not c.endswith((" -> None", " -> unknown"))]
            if changes:
                self.alerts.create_once(self.alerts.configuration_change_alert(stored, changes))
        return {"device_id": stored.id, "created": created}

    def handle_address_table(self, payload: Any, *, kind: Optional[str] = None, seen_at: Optional[str] = None) -> Dict[str, Any]:
        """Address evidence corroborates known devices; it never creates one."""
        arp, mac = address_table.parse_address_table(payload, kind=kind)
        seen = seen_at or utc_now_iso()
        builder = L2TopologyBuilder()
        builder.add_arp(arp, observed_at=seen)
        builder.add_mac_table(mac, observed_at=seen)
        topo = builder.build()

        refreshed = set()
        unmatched = 0
        for l2 in topo.devices:
            device = self.datastore.find_device_by_mac(l2.mac_address)
            device_id = device.id if device is not None else None
            if device_id is None:
                for ip in l2.ip_addresses:
                    device_id = self.resolve_device_id(ip)
                    if device_id:
                        break
            if device_id is None:
                unmatched += 1
                continue
            if device_id not in refreshed:
                self.datastore.touch_device(device_id, seen_at=seen)
                refreshed.add(device_id)

        for ev in builder.binding_events:
            if ev.event == "mac_change":
                self.cache.invalidate(ev.ip)
                self._emit("address.mac_change", ev.ip, f"{ev.ip} moved {ev.prev_mac} -> {ev.mac}", {"ip": ev.ip, "mac": ev.mac, "prev_mac": ev.prev_mac})

        return {
            "entries": len(arp) + len(mac),
            "l2_devices": len(topo.devices),
            "refreshed": len(refreshed),
            "unmatched": unmatched,
            "adjacencies": len(topo.adjacencies),
        }

    def handle_flow_records(self, payload: Any, *, seen_at: Optional[str] = None) -> Dict[str, Any]:
        flows = flow.parse_flow_records(payload)
        created = updated = skipped = 0
        for f in flows:
            src_id = self.resolve_device_id(f.src_address)
            dst_id = self.resolve_device_id(f.dst_address)
            if not src_id or not dst_id or src_id == dst_id:
                logger.debug("skipping flow %s -> %s (unresolved endpoint)", f.src_address, f.dst_address)
                skipped += 1
                continue
            conn, is_new = self.datastore.upsert_connection(flow.to_connection(f, src_id, dst_id))
            if is_new:
                created += 1
                self._emit(
                    "connection.discovered",
                    conn.id,
                    f"{f.src_address} -> {f.dst_address} {conn.protocol or ''}".strip(),
                    {"connection_id": conn.id, "protocol": conn.protocol, "port": conn.port, "is_secure": conn.is_secure},
                )
            else:
                updated += 1
        return {
            "flows": len(flows),
            "created": created,
            "updated": updated,
            "skipped": skipped,
            "summary": flow.summarize_flows(flows),
        }

    def handle_log_messages(self, payload: Any, *, seen_at: Optional[str] = None) -> Dict[str, Any]:
        events = log_message.parse_log_messages(payload)
        relevant = alerts = unresolved = 0
        for ev in events:
            if ev.is_security_relevant:
                relevant += 1
            draft = log_message.to_alert(ev)
            if draft is None:
                continue
            device = self.datastore.find_device_by_name(ev.hostname)
            if device is None:
                unresolved += 1
                continue
            draft.device_id = device.id
            _, is_new = self.alerts.create_once(draft)
            if is_new:
                alerts += 1
        return {"events": len(events), "relevant": relevant, "alerts": alerts, "unresolved": unresolved}

#!/usr/bin/env python3
"""
IcsMap - ICS asset and topology correlation engine
Flask API over the ingest orchestrator, topology service and alert engine.
"""

import logging
import sqlite3
from dataclasses import asdict
from typing import Optional

from flask import Flask, jsonify, request
from flask_cors import CORS
from flask_socketio import SocketIO

import constants as C
from analysis.analysis_engine import DeviceCandidate
from config import Settings
from models import NetworkInterface
from services.alerts import AlertEngine
from services.ingest import IngestOrchestrator, IpCache
from services.jobs import AutomatedCheckDaemon
from services.topology_service import TopologyService
from store import DEVICE_FILTERS, DEVICE_UPDATABLE, DataStore
from toolkit.utils import new_id, safe_json
from transport.events import TelemetryBus

logger = logging.getLogger(__name__)

PUBLIC_PATHS = ("/api/status",)


def _arg_int(name: str, default: int, lo: int = 1, hi: int = 1000) -> int:
    try:
        value = int(request.args.get(name, default))
    except (TypeError, ValueError):
        value = default
    return max(lo, min(hi, value))


def _arg_bool(name: str) -> Optional[bool]:
    raw = request.args.get(name)
    if raw is None or raw == "":
        return None
    return str(raw).strip().lower() in ("1", "true", "yes", "on")


def _body() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _actor(data: dict) -> str:
    return str(data.get("by") or data.get("user") or "api").strip() or "api"


def _paged(result: dict, key: str):
    return jsonify(
        {
            key: safe_json(result["items"]),
            "pagination": {
                "page": result["page"],
                "limit": result["limit"],
                "total": result["total"],
                "pages": result["pages"],
            },
        }
    )


def _candidate(data: dict) -> DeviceCandidate:
    interfaces = [NetworkInterface.from_dict(i) for i in (data.get("interfaces") or []) if isinstance(i, dict)]
    return DeviceCandidate(
        source=str(data.get("source") or ""),
        observed_at=str(data.get("observed_at") or data.get("observedAt") or ""),
        confidence=float(data.get("confidence") or 100.0),
        name=data.get("name"),
        hostname=data.get("hostname"),
        type=data.get("type"),
        vendor=data.get("vendor"),
        model=data.get("model"),
        firmware_version=data.get("firmware_version"),
        serial_number=data.get("serial_number"),
        mac_addresses=list(data.get("mac_addresses") or []),
        ip_addresses=list(data.get("ip_addresses") or []),
        interfaces=interfaces,
    )


def create_app(settings: Optional[Settings] = None, *, datastore: Optional[DataStore] = None):
    """Build the Flask app and wire every engine component into ``app.extensions['icsmap']``."""
    settings = settings or Settings()
    datastore = datastore or DataStore(settings.db_path)

    app = Flask(__name__)
    app.config["ICSMAP_SETTINGS"] = settings
    CORS(app)
    socketio = SocketIO(app, cors_allowed_origins="*", async_mode="threading")

    bus = TelemetryBus()
    alerts = AlertEngine(
        datastore,
        bus,
        offline_threshold_hours=settings.offline_threshold_hours,
        batch_size=settings.check_batch_size,
        retention_days=settings.alert_retention_days,
    )
    orchestrator = IngestOrchestrator(datastore, alerts, cache=IpCache(settings.ip_cache_size))
    orchestrator.attach(bus)
    topology = TopologyService(
        datastore,
        alerts,
        max_hops=settings.max_path_hops,
        staleness_minutes=settings.staleness_minutes,
    )
    daemon = AutomatedCheckDaemon(alerts, interval_seconds=settings.check_interval_seconds)

    bus.subscribe_events(lambda ev: socketio.emit("icsmap_event", {"event": asdict(ev)}))

    app.extensions["icsmap"] = {
        "settings": settings,
        "datastore": datastore,
        "bus": bus,
        "alerts": alerts,
        "orchestrator": orchestrator,
        "topology": topology,
        "daemon": daemon,
        "socketio": socketio,
    }

    @app.before_request
    def enforce_optional_api_key():
        if not settings.api_key:
            return None
        if request.method == "OPTIONS" or request.path in PUBLIC_PATHS:
            return None
        if not request.path.startswith("/api/"):
            return None
        if request.headers.get("X-API-Key", "") != settings.api_key:
            return jsonify({"error": "Unauthorized"}), 401
        return None

    @app.errorhandler(sqlite3.Error)
    def storage_unavailable(exc):
        logger.error("storage error on %s %s: %s", request.method, request.path, exc)
        return jsonify({"error": "Storage unavailable"}), 503

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    @app.route("/api/status")
    def get_status():
        return jsonify(
            {
                "status": "ok",
                "db_path": str(datastore.db_path),
                "api_key_enabled": bool(settings.api_key),
                "devices": datastore.count_devices(),
                "connections": datastore.count_connections(),
                "open_alerts": datastore.count_alerts(resolved=False),
                "pending_telemetry": datastore.count_telemetry(processed=False),
                "ip_cache": orchestrator.cache.stats(),
                "checks": daemon.status(),
                "telemetry_sources": list(C.TELEMETRY_SOURCES),
            }
        )

    # ------------------------------------------------------------------
    # Devices
    # ------------------------------------------------------------------

    @app.route("/api/devices")
    def list_devices():
        criteria = {k: request.args.get(k) for k in DEVICE_FILTERS if request.args.get(k)}
        q = request.args.get("q", "").strip()
        if q:
            criteria["q"] = q
        result = datastore.search_devices(
            criteria,
            page=_arg_int("page", 1, 1, 1_000_000),
            limit=_arg_int("limit", 50),
        )
        return _paged(result, "devices")

    @app.route("/api/devices/<device_id>")
    def get_device(device_id):
        device = datastore.get_device(device_id)
        if device is None:
            return jsonify({"error": "Device not found"}), 404
        return jsonify(
            {
                "device": safe_json(device),
                "connections": safe_json(datastore.connections_for_device(device_id)),
            }
        )

    @app.route("/api/devices/<device_id>", methods=["PATCH"])
    def update_device(device_id):
        if not datastore.device_exists(device_id):
            return jsonify({"error": "Device not found"}), 404
        data = _body()
        changes = {k: v for k, v in data.items() if k in DEVICE_UPDATABLE}
        if "purdue_level" in changes:
            try:
                level = int(changes["purdue_level"])
            except (TypeError, ValueError):
                level = -1
            if level not in C.VALID_PURDUE_LEVELS:
                return jsonify({"error": f"Invalid purdue_level: {changes['purdue_level']}"}), 400
            changes["purdue_level"] = level
            changes.setdefault("security_zone", C.PURDUE_TO_ZONE[level])
        if not changes:
            return jsonify({"error": "No updatable fields"}), 400
        device = datastore.update_device(device_id, **changes)
        orchestrator.cache.invalidate_device(device_id)
        return jsonify({"device": safe_json(device)})

    @app.route("/api/devices/<device_id>", methods=["DELETE"])
    def delete_device(device_id):
        if not datastore.delete_device(device_id):
            return jsonify({"error": "Device not found"}), 404
        orchestrator.cache.invalidate_device(device_id)
        return jsonify({"deleted": device_id})

    @app.route("/api/devices/<device_id>/risk")
    def device_risk(device_id):
        assessment = topology.device_risk(device_id, raise_alert=bool(_arg_bool("alert")))
        if assessment is None:
            return jsonify({"error": "Device not found"}), 404
        return jsonify({"device_id": device_id, "assessment": safe_json(assessment)})

    @app.route("/api/devices/<device_id>/classify", methods=["GET", "POST"])
    def classify_device(device_id):
        apply = request.method == "POST" and bool(_body().get("apply"))
        result = topology.classify_device(device_id, apply=apply)
        if result is None:
            return jsonify({"error": "Device not found"}), 404
        return jsonify({"classification": safe_json(result), "applied": apply})

    @app.route("/api/devices/placement")
    def device_placement():
        return jsonify({"problems": topology.placement_problems()})

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    @app.route("/api/connections")
    def list_connections():
        criteria = {}
        for key in ("protocol", "connection_type", "device_id"):
            if request.args.get(key):
                criteria[key] = request.args.get(key)
        secure = _arg_bool("is_secure")
        if secure is not None:
            criteria["is_secure"] = secure
        result = datastore.search_connections(
            criteria,
            page=_arg_int("page", 1, 1, 1_000_000),
            limit=_arg_int("limit", 50),
        )
        return _paged(result, "connections")

    @app.route("/api/connections/cross-zone")
    def cross_zone_connections():
        items = topology.cross_zone_connections(_arg_int("limit", 100))
        return jsonify({"connections": safe_json(items), "count": len(items)})

    # ------------------------------------------------------------------
    # Alerts
    # ------------------------------------------------------------------

    @app.route("/api/alerts")
    def list_alerts():
        criteria = {}
        for key in ("type", "severity", "device_id", "connection_id"):
            if request.args.get(key):
                criteria[key] = request.args.get(key)
        for key in ("acknowledged", "resolved"):
            flag = _arg_bool(key)
            if flag is not None:
                criteria[key] = flag
        result = datastore.search_alerts(
            criteria,
            page=_arg_int("page", 1, 1, 1_000_000),
            limit=_arg_int("limit", 50),
        )
        return _paged(result, "alerts")

    @app.route("/api/alerts/stats")
    def alert_stats():
        return jsonify({"stats": alerts.statistics()})

    @app.route("/api/alerts/<alert_id>")
    def get_alert(alert_id):
        alert = datastore.get_alert(alert_id)
        if alert is None:
            return jsonify({"error": "Alert not found"}), 404
        return jsonify({"alert": safe_json(alert)})

    @app.route("/api/alerts/<alert_id>/acknowledge", methods=["POST"])
    def acknowledge_alert(alert_id):
        alert = alerts.acknowledge(alert_id, _actor(_body()))
        if alert is None:
            return jsonify({"error": "Alert not found"}), 404
        return jsonify({"alert": safe_json(alert)})

    @app.route("/api/alerts/<alert_id>/resolve", methods=["POST"])
    def resolve_alert(alert_id):
        alert = alerts.resolve(alert_id, _actor(_body()))
        if alert is None:
            return jsonify({"error": "Alert not found"}), 404
        return jsonify({"alert": safe_json(alert)})

    @app.route("/api/alerts/bulk/<action>", methods=["POST"])
    def bulk_alerts(action):
        data = _body()
        ids = data.get("alert_ids") or data.get("ids") or []
        if not isinstance(ids, list) or not ids:
            return jsonify({"error": "alert_ids must be a non-empty list"}), 400
        if action == "acknowledge":
            count = alerts.bulk_acknowledge([str(i) for i in ids], _actor(data))
        elif action == "resolve":
            count = alerts.bulk_resolve([str(i) for i in ids], _actor(data))
        else:
            return jsonify({"error": f"Unknown action: {action}"}), 400
        return jsonify({"action": action, "requested": len(ids), "updated": count})

    @app.route("/api/alerts/cleanup", methods=["POST"])
    def cleanup_alerts():
        days = _body().get("days")
        try:
            days = int(days) if days is not None else None
        except (TypeError, ValueError):
            return jsonify({"error": "days must be an integer"}), 400
        return jsonify({"removed": alerts.cleanup_old_alerts(days)})

    # ------------------------------------------------------------------
    # Topology
    # ------------------------------------------------------------------

    @app.route("/api/paths")
    def analyze_path():
        source = request.args.get("source", "").strip()
        target = request.args.get("target", "").strip()
        if not source or not target:
            return jsonify({"error": "source and target are required"}), 400
        max_hops = request.args.get("max_hops")
        result = topology.analyze_path(
            source,
            target,
            max_hops=_arg_int("max_hops", settings.max_path_hops, 0, 32) if max_hops else None,
        )
        if result is None:
            return jsonify({"error": "Device not found"}), 404
        return jsonify({"analysis": safe_json(result)})

    @app.route("/api/zones")
    def list_zones():
        return jsonify({"zones": topology.zones()})

    @app.route("/api/zones/<zone>")
    def zone_detail(zone):
        if zone not in C.ZONE_TO_PURDUE:
            return jsonify({"error": f"Unknown zone: {zone}"}), 404
        return jsonify({"topology": safe_json(topology.zone_topology(zone))})

    @app.route("/api/topology/overview")
    def topology_overview():
        return jsonify(topology.overview())

    @app.route("/api/topology/risk")
    def topology_risk():
        return jsonify({"report": safe_json(topology.risk_report())})

    @app.route("/api/snapshots")
    def list_snapshots():
        return jsonify({"snapshots": datastore.list_snapshots(_arg_int("limit", 50))})

    @app.route("/api/snapshots", methods=["POST"])
    def create_snapshot():
        sources = _body().get("sources") or []
        snap = topology.create_snapshot(sources=[str(s) for s in sources] if isinstance(sources, list) else [])
        return jsonify({"snapshot": safe_json(snap)}), 201

    @app.route("/api/snapshots/diff")
    def diff_snapshots():
        a = request.args.get("a", "").strip()
        if not a:
            return jsonify({"error": "snapshot id 'a' is required"}), 400
        diff = topology.compare_snapshots(a, request.args.get("b", "").strip() or None)
        if diff is None:
            return jsonify({"error": "Snapshot not found"}), 404
        return jsonify({"diff": safe_json(diff)})

    @app.route("/api/snapshots/<snapshot_id>")
    def get_snapshot(snapshot_id):
        snap = datastore.get_snapshot(snapshot_id)
        if snap is None:
            return jsonify({"error": "Snapshot not found"}), 404
        return jsonify({"snapshot": safe_json(snap)})

    @app.route("/api/correlate", methods=["POST"])
    def correlate():
        raw = _body().get("candidates") or []
        if not isinstance(raw, list):
            return jsonify({"error": "candidates must be a list"}), 400
        try:
            candidates = [_candidate(c) for c in raw if isinstance(c, dict)]
        except (TypeError, ValueError) as exc:
            return jsonify({"error": f"Invalid candidate: {exc}"}), 400
        results = topology.correlate(candidates)
        return jsonify({"devices": safe_json(results), "count": len(results)})

    # ------------------------------------------------------------------
    # Telemetry ingest
    # ------------------------------------------------------------------

    @app.route("/api/ingest", methods=["POST"])
    def ingest():
        data = _body()
        source = str(data.get("source") or "").strip()
        if source not in C.TELEMETRY_SOURCES:
            return jsonify({"error": f"Invalid source: {source or '(missing)'}"}), 400
        payload = data.get("payload")
        if not isinstance(payload, dict):
            return jsonify({"error": "payload must be an object"}), 400
        message = {
            "id": str(data.get("id") or new_id()),
            "source": source,
            "timestamp": data.get("timestamp"),
            "payload": payload,
            "device_id": data.get("device_id"),
            "metadata": data.get("metadata") or {},
        }
        result = orchestrator.process(message)
        return jsonify({"result": safe_json(result)}), 202

    @app.route("/api/ingest/replay", methods=["POST"])
    def replay_ingest():
        data = _body()
        source = data.get("source") or None
        try:
            limit = max(1, min(5000, int(data.get("limit", 500))))
        except (TypeError, ValueError):
            limit = 500
        return jsonify(orchestrator.replay_unprocessed(source=source, limit=limit))

    @app.route("/api/events")
    def list_events():
        return jsonify(
            {
                "events": bus.list_events(
                    limit=_arg_int("limit", 200, 1, 2000),
                    event_type=request.args.get("type", "").strip(),
                )
            }
        )

    # ------------------------------------------------------------------
    # Automated checks
    # ------------------------------------------------------------------

    @app.route("/api/checks/run", methods=["POST"])
    def run_checks():
        return jsonify({"result": daemon.run_once()})

    @app.route("/api/checks/daemon/status")
    def checks_daemon_status():
        return jsonify({"daemon": daemon.status()})

    @app.route("/api/checks/daemon/start", methods=["POST"])
    def checks_daemon_start():
        interval = _body().get("interval_seconds")
        if interval is not None:
            try:
                daemon.configure(interval_seconds=int(interval))
            except (TypeError, ValueError):
                return jsonify({"error": "interval_seconds must be an integer"}), 400
        daemon.start()
        return jsonify({"daemon": daemon.status()})

    @app.route("/api/checks/daemon/stop", methods=["POST"])
    def checks_daemon_stop():
        daemon.stop()
        return jsonify({"daemon": daemon.status()})

    return app

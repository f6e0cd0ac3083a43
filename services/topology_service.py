"""
IcsMap topology service.
Loads the graph from storage and runs the pure path, zone, classification,
snapshot and risk computations over it.
"""

import logging
from typing import Any, Dict, Iterable, List, Optional

import constants as C
from analysis.analysis_engine import (
    DeviceCandidate,
    assess_device_risk,
    assess_topology_risk,
    correlate_candidates,
)
from models import TopologySnapshot
from topology import graph
from topology.classifier import reclassify_device
from topology.paths import DEFAULT_MAX_HOPS, PathAnalysis, analyze_paths
from topology.zones import cross_zone_severity, level_difference, validate_placement, zone_for_level

logger = logging.getLogger(__name__)


class TopologyService:
    def __init__(self, datastore, alerts=None, *, max_hops: int = DEFAULT_MAX_HOPS, staleness_minutes: int = 15):
        self.datastore = datastore
        self.alerts = alerts
        self.max_hops = max(1, int(max_hops))
        self.staleness_minutes = max(1, int(staleness_minutes))

    def _graph(self):
        return self.datastore.list_devices(), self.datastore.list_connections()

    def analyze_path(self, source_id: str, target_id: str, *, max_hops: Optional[int] = None) -> Optional[PathAnalysis]:
        """None when either device is unknown; an empty path list when unreachable."""
        devices, connections = self._graph()
        return analyze_paths(
            source_id,
            target_id,
            devices,
            connections,
            max_hops=self.max_hops if max_hops is None else max(0, int(max_hops)),
        )

    def zone_topology(self, zone: str) -> graph.ZoneTopology:
        devices, connections = self._graph()
        return graph.zone_topology(zone, devices, connections)

    def zones(self) -> List[Dict[str, Any]]:
        return graph.zone_definitions(self.datastore.list_devices())

    def cross_zone_connections(self, limit: int = 100) -> List[Dict[str, Any]]:
        out = []
        for conn in self.datastore.find_cross_zone_connections(limit):
            source = self.datastore.get_device(conn.source_device_id)
            target = self.datastore.get_device(conn.target_device_id)
            if source is None or target is None:
                continue
            out.append(
                {
                    "connection": conn,
                    "source": source,
                    "target": target,
                    "level_difference": level_difference(source.purdue_level, target.purdue_level),
                    "severity": cross_zone_severity(source.purdue_level, target.purdue_level),
                }
            )
        return out

    def overview(self) -> Dict[str, Any]:
        ds = self.datastore
        total = ds.count_devices()
        offline = ds.count_devices(status=C.STATUS_OFFLINE)
        by_level = {}
        for level, count in ds.count_devices_by("purdue_level").items():
            by_level[C.PURDUE_LEVEL_NAMES.get(int(level), str(level))] = count
        return {
            "devices": {
                "total": total,
                "online": ds.count_devices(status=C.STATUS_ONLINE),
                "offline": offline,
                "by_type": ds.count_devices_by("type"),
                "by_zone": ds.count_devices_by("security_zone"),
                "by_level": by_level,
            },
            "connections": {
                "total": ds.count_connections(),
                "insecure": ds.count_connections(is_secure=False),
                "cross_zone": len(ds.find_cross_zone_connections(1_000_000)),
            },
            "alerts": {
                "unresolved": ds.count_alerts(resolved=False),
                "critical": ds.count_alerts(resolved=False, severity=C.CRITICAL),
            },
            "health": graph.overview_health(total, offline),
        }

    def create_snapshot(self, *, sources: Iterable[str] = ()) -> TopologySnapshot:
        devices, connections = self._graph()
        snap = graph.build_snapshot(devices, connections, sources=sources)
        self.datastore.save_snapshot(snap)
        logger.info("topology snapshot %s: %d devices, %d connections", snap.id, len(devices), len(connections))
        return snap

    def compare_snapshots(self, snapshot_a: str, snapshot_b: Optional[str] = None) -> Optional[graph.TopologyDiff]:
        """Diff two stored snapshots; without ``snapshot_b`` the live graph is the right side."""
        a = self.datastore.get_snapshot(snapshot_a)
        if a is None:
            return None
        if snapshot_b:
            b = self.datastore.get_snapshot(snapshot_b)
            if b is None:
                return None
        else:
            devices, connections = self._graph()
            b = graph.build_snapshot(devices, connections)
        return graph.diff_snapshots(a, b)

    def classify_device(self, device_id: str, *, apply: bool = False):
        """Purdue suggestion for one device; ``apply`` writes the winning level and zone."""
        device = self.datastore.get_device(device_id)
        if device is None:
            return None
        neighbour_levels = []
        for conn in self.datastore.connections_for_device(device_id):
            other_id = conn.target_device_id if conn.source_device_id == device_id else conn.source_device_id
            other = self.datastore.get_device(other_id)
            if other is not None:
                neighbour_levels.append(other.purdue_level)
        result = reclassify_device(device, neighbour_levels)
        if apply and result.assigned_level != device.purdue_level:
            self.datastore.update_device(
                device_id,
                purdue_level=result.assigned_level,
                security_zone=zone_for_level(result.assigned_level),
            )
            logger.info("device %s moved to level %s", device.name, result.assigned_level)
        return result

    def placement_problems(self) -> List[Dict[str, Any]]:
        out = []
        for device in self.datastore.list_devices():
            problems = validate_placement(device)
            if problems:
                out.append({"device_id": device.id, "name": device.name, "problems": problems})
        return out

    def device_risk(self, device_id: str, *, raise_alert: bool = False) -> Optional[Dict[str, Any]]:
        device = self.datastore.get_device(device_id)
        if device is None:
            return None
        assessment = assess_device_risk(device, self.datastore.connections_for_device(device_id))
        if raise_alert and self.alerts is not None:
            alert = self.alerts.high_risk_alert(device, assessment)
            if alert is not None:
                self.alerts.create_once(alert)
        return assessment

    def risk_report(self) -> Dict[str, Any]:
        devices, connections = self._graph()
        return assess_topology_risk(devices, connections)

    def correlate(self, candidates: Iterable[DeviceCandidate]):
        return correlate_candidates(candidates, staleness_minutes=self.staleness_minutes)

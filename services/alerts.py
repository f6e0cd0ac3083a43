"""
IcsMap alert engine.
Alert builders, lifecycle (acknowledge/resolve) and the periodic automated checks.
"""

import logging
from datetime import timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple

import constants as C
from models import Alert, Connection, Device
from toolkit.utils import new_id, utc_now, utc_now_iso
from topology.zones import cross_zone_severity, level_difference

logger = logging.getLogger(__name__)


class AlertEngine:
    """Creates de-duplicated alerts and walks them through created -> acknowledged -> resolved."""

    def __init__(
        self,
        datastore,
        bus=None,
        *,
        offline_threshold_hours: float = 1.0,
        batch_size: int = 10,
        retention_days: int = 90,
    ):
        self.datastore = datastore
        self.bus = bus
        self.offline_threshold_hours = float(offline_threshold_hours)
        self.batch_size = max(1, int(batch_size))
        self.retention_days = max(1, int(retention_days))

    def _emit(self, event_type: str, alert: Alert) -> None:
        if self.bus is None:
            return
        self.bus.emit(
            event_type,
            entity=alert.subject,
            summary=alert.title,
            data={"alert_id": alert.id, "type": alert.type, "severity": alert.severity},
        )

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create_alert(self, alert: Alert) -> Alert:
        """Store unconditionally."""
        if not alert.created_at:
            alert.created_at = utc_now_iso()
        self.datastore.create_alert(alert)
        logger.info("alert created: %s [%s] %s", alert.type, alert.severity, alert.title)
        self._emit("alert.created", alert)
        return alert

    def create_once(self, alert: Alert) -> Tuple[Alert, bool]:
        """Store unless an unresolved alert of the same type already covers the same subject."""
        if not alert.created_at:
            alert.created_at = utc_now_iso()
        stored, created = self.datastore.create_alert_once(alert)
        if created:
            logger.info("alert created: %s [%s] %s", stored.type, stored.severity, stored.title)
            self._emit("alert.created", stored)
        else:
            logger.debug("open %s alert %s already covers %s", stored.type, stored.id, stored.subject)
        return stored, created

    @staticmethod
    def device_offline_alert(device: Device) -> Alert:
        return Alert(
            id=new_id(),
            type=C.ALERT_DEVICE_OFFLINE,
            severity=C.HIGH,
            title=f"Device Offline: {device.name}",
            description=(
                f"Device {device.name} ({device.hostname or device.id}) has gone offline. "
                f"Last seen: {device.last_seen_at or 'never'}"
            ),
            device_id=device.id,
            details={
                "device_name": device.name,
                "device_type": device.type,
                "purdue_level": device.purdue_level,
                "security_zone": device.security_zone,
                "last_seen_at": device.last_seen_at,
            },
            remediation="Verify network connectivity, check device power supply, and review device logs.",
        )

    @staticmethod
    def cross_zone_alert(connection: Connection, source: Device, target: Device) -> Alert:
        return Alert(
            id=new_id(),
            type=C.ALERT_SECURITY_VIOLATION,
            severity=cross_zone_severity(source.purdue_level, target.purdue_level),
            title="Cross-Zone Connection Detected",
            description=(
                f"Connection detected between {source.name} ({source.security_zone}) "
                f"and {target.name} ({target.security_zone})"
            ),
            connection_id=connection.id,
            details={
                "source_device": {
                    "id": source.id,
                    "name": source.name,
                    "zone": source.security_zone,
                    "purdue_level": source.purdue_level,
                },
                "target_device": {
                    "id": target.id,
                    "name": target.name,
                    "zone": target.security_zone,
                    "purdue_level": target.purdue_level,
                },
                "level_difference": level_difference(source.purdue_level, target.purdue_level),
                "protocol": connection.protocol,
            },
            remediation="Review network segmentation policies. Ensure this connection is authorized and properly secured.",
        )

    @staticmethod
    def insecure_protocol_alert(connection: Connection, source: Device, target: Device) -> Alert:
        protocol = connection.protocol or "unknown"
        return Alert(
            id=new_id(),
            type=C.ALERT_INSECURE_PROTOCOL,
            severity=C.MEDIUM,
            title=f"Insecure Protocol in Use: {protocol}",
            description=f"Unencrypted connection using {protocol} detected between {source.name} and {target.name}",
            connection_id=connection.id,
            details={
                "protocol": protocol,
                "port": connection.port,
                "source_device": source.name,
                "target_device": target.name,
            },
            remediation=f"Consider upgrading to a secure version of {protocol} or implementing TLS encryption.",
        )

    @staticmethod
    def new_device_alert(device: Device) -> Alert:
        return Alert(
            id=new_id(),
            type=C.ALERT_NEW_DEVICE,
            severity=C.LOW,
            title=f"New Device Discovered: {device.name}",
            description=f"A new device has been discovered on the network: {device.name} ({device.type})",
            device_id=device.id,
            details={
                "device_name": device.name,
                "device_type": device.type,
                "vendor": device.vendor,
                "purdue_level": device.purdue_level,
                "security_zone": device.security_zone,
                "discovered_at": device.discovered_at,
            },
            remediation="Verify this device is authorized. Update asset inventory if needed.",
        )

    @staticmethod
    def configuration_change_alert(device: Device, changes: List[str]) -> Alert:
        return Alert(
            id=new_id(),
            type=C.ALERT_CONFIGURATION_CHANGE,
            severity=C.MEDIUM,
            title=f"Configuration Change: {device.name}",
            description=f"Configuration changes detected on {device.name}: {', '.join(changes)}",
            device_id=device.id,
            details={"device_name": device.name, "changes": list(changes), "detected_at": utc_now_iso()},
            remediation="Review configuration changes and verify they are authorized.",
        )

    @staticmethod
    def high_risk_alert(device: Device, assessment: Dict[str, Any]) -> Optional[Alert]:
        """Alert for a risk assessment at or above the medium threshold; None below it."""
        score = float(assessment.get("overall_score") or 0.0)
        if score < C.RISK_THRESHOLDS["medium"]:
            return None
        if score >= C.RISK_THRESHOLDS["critical"]:
            severity = C.CRITICAL
        elif score >= C.RISK_THRESHOLDS["high"]:
            severity = C.HIGH
        else:
            severity = C.MEDIUM
        recommendations = list(assessment.get("recommendations") or [])
        return Alert(
            id=new_id(),
            type=C.ALERT_HIGH_RISK,
            severity=severity,
            title=f"Risk Assessment Alert: {device.name}",
            description=f"Device has elevated risk score of {score:g}",
            device_id=device.id,
            details={"factors": assessment.get("factors") or {}, "recommendations": recommendations},
            remediation="; ".join(recommendations),
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def acknowledge(self, alert_id: str, by: str) -> Optional[Alert]:
        """None for an unknown id; a resolved or already acknowledged alert is returned unchanged."""
        alert = self.datastore.get_alert(alert_id)
        if alert is None:
            return None
        if alert.resolved or alert.acknowledged:
            return alert
        if self.datastore.acknowledge_alert(alert_id, by=by):
            logger.info("alert acknowledged: %s by %s", alert_id, by)
        alert = self.datastore.get_alert(alert_id)
        self._emit("alert.acknowledged", alert)
        return alert

    def resolve(self, alert_id: str, by: str) -> Optional[Alert]:
        alert = self.datastore.get_alert(alert_id)
        if alert is None:
            return None
        if alert.resolved:
            return alert
        if self.datastore.resolve_alert(alert_id, by=by):
            logger.info("alert resolved: %s by %s", alert_id, by)
        alert = self.datastore.get_alert(alert_id)
        self._emit("alert.resolved", alert)
        return alert

    def bulk_acknowledge(self, alert_ids: Iterable[str], by: str) -> int:
        count = 0
        ids = list(alert_ids or [])
        for alert_id in ids:
            if self.datastore.acknowledge_alert(alert_id, by=by):
                count += 1
        logger.info("bulk acknowledge: %d of %d by %s", count, len(ids), by)
        return count

    def bulk_resolve(self, alert_ids: Iterable[str], by: str) -> int:
        count = 0
        ids = list(alert_ids or [])
        for alert_id in ids:
            if self.datastore.resolve_alert(alert_id, by=by):
                count += 1
        logger.info("bulk resolve: %d of %d by %s", count, len(ids), by)
        return count

    def statistics(self) -> Dict[str, Any]:
        return self.datastore.alert_stats()

    def cleanup_old_alerts(self, days: Optional[int] = None) -> int:
        """Delete resolved alerts older than the retention window. Open alerts are never deleted."""
        keep = max(1, int(days if days is not None else self.retention_days))
        cutoff = (utc_now() - timedelta(days=keep)).isoformat()
        removed = self.datastore.delete_resolved_alerts_before(cutoff)
        if removed:
            logger.info("removed %d resolved alerts older than %d days", removed, keep)
        return removed

    # ------------------------------------------------------------------
    # Automated checks
    # ------------------------------------------------------------------

    def _endpoints(self, connection: Connection) -> Tuple[Optional[Device], Optional[Device]]:
        return (
            self.datastore.get_device(connection.source_device_id),
            self.datastore.get_device(connection.target_device_id),
        )

    def check_offline_devices(self, threshold_hours: Optional[float] = None) -> List[Alert]:
        hours = self.offline_threshold_hours if threshold_hours is None else float(threshold_hours)
        created = []
        for device in self.datastore.find_offline_devices(hours):
            if device.status != C.STATUS_OFFLINE:
                self.datastore.update_device(device.id, status=C.STATUS_OFFLINE)
            alert, is_new = self.create_once(self.device_offline_alert(device))
            if is_new:
                created.append(alert)
        return created

    def check_insecure_connections(self, limit: Optional[int] = None) -> List[Alert]:
        created = []
        for conn in self.datastore.find_insecure_connections(limit or self.batch_size):
            source, target = self._endpoints(conn)
            if source is None or target is None:
                continue
            alert, is_new = self.create_once(self.insecure_protocol_alert(conn, source, target))
            if is_new:
                created.append(alert)
        return created

    def check_cross_zone_connections(self, limit: Optional[int] = None) -> List[Alert]:
        created = []
        for conn in self.datastore.find_cross_zone_connections(limit or self.batch_size):
            source, target = self._endpoints(conn)
            if source is None or target is None:
                continue
            alert, is_new = self.create_once(self.cross_zone_alert(conn, source, target))
            if is_new:
                created.append(alert)
        return created

    def run_automated_checks(self) -> Dict[str, Any]:
        """One pass of the three independent scans; returns per-scan counts of new alerts."""
        offline = self.check_offline_devices()
        insecure = self.check_insecure_connections()
        cross_zone = self.check_cross_zone_connections()
        result = {
            "offline_devices": len(offline),
            "insecure_connections": len(insecure),
            "cross_zone_connections": len(cross_zone),
            "total": len(offline) + len(insecure) + len(cross_zone),
            "ran_at": utc_now_iso(),
        }
        logger.info(
            "automated checks: %d offline, %d insecure, %d cross-zone",
            result["offline_devices"],
            result["insecure_connections"],
            result["cross_zone_connections"],
        )
        return result

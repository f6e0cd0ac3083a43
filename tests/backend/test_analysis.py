from datetime import timedelta

import pytest

import constants as C
from analysis.analysis_engine import (
    DeviceCandidate,
    assess_device_risk,
    assess_topology_risk,
    correlate_candidates,
    correlation_confidence,
    risk_level,
)
from models import Connection, Device
from services.topology_service import TopologyService
from toolkit.utils import utc_now

NOW = utc_now()


def _at(minutes_ago: float) -> str:
    return (NOW - timedelta(minutes=minutes_ago)).isoformat()


def test_candidates_sharing_a_mac_merge_by_source_priority():
    candidates = [
        DeviceCandidate(
            source=C.SOURCE_FLOW_RECORD,
            observed_at=_at(0),
            ip_addresses=["10.9.0.1"],
        ),
        DeviceCandidate(
            source=C.SOURCE_ADDRESS_TABLE,
            observed_at=_at(0),
            vendor="Siemens AG",
            mac_addresses=["00:1A:4B:00:00:01"],
            ip_addresses=["10.1.0.10"],
        ),
        DeviceCandidate(
            source=C.SOURCE_SYSTEM_DESCRIPTION,
            observed_at=_at(1),
            name="plc-01",
            hostname="plc-01",
            type=C.PLC,
            vendor="Siemens",
            mac_addresses=["00:1a:4b:00:00:01"],
        ),
    ]
    results = correlate_candidates(candidates, now=NOW)
    assert len(results) == 2

    merged = results[0]
    assert merged.candidate_count == 2
    assert merged.correlated_by == ["mac"]
    assert merged.sources == [C.SOURCE_SYSTEM_DESCRIPTION, C.SOURCE_ADDRESS_TABLE]
    assert merged.device.vendor == "Siemens"
    assert merged.device.name == "plc-01"
    assert merged.device.purdue_level == 1
    assert merged.device.ip_addresses() == ["10.1.0.10"]
    assert merged.confidence > results[1].confidence


def test_stale_evidence_loses_confidence():
    fresh = DeviceCandidate(source=C.SOURCE_FLOW_RECORD, observed_at=_at(0), ip_addresses=["10.0.0.1"])
    stale = DeviceCandidate(source=C.SOURCE_FLOW_RECORD, observed_at=_at(30), ip_addresses=["10.0.0.1"])
    assert correlation_confidence([fresh], [], now=NOW, staleness_minutes=15) == 55.0
    assert correlation_confidence([stale], [], now=NOW, staleness_minutes=15) == 0.0


def test_unrelated_candidates_stay_separate():
    results = correlate_candidates(
        [
            DeviceCandidate(source=C.SOURCE_LOG_MESSAGE, observed_at=_at(0), hostname="hmi-01"),
            DeviceCandidate(source=C.SOURCE_LOG_MESSAGE, observed_at=_at(0), hostname="hmi-02"),
        ],
        now=NOW,
    )
    assert len(results) == 2
    assert all(r.correlated_by == [] for r in results)


def test_risk_level_thresholds():
    assert risk_level(95) == C.CRITICAL
    assert risk_level(70) == C.HIGH
    assert risk_level(40) == C.MEDIUM
    assert risk_level(10) == C.LOW


def test_device_risk_weights_four_factors():
    plc = Device(id="p", name="plc", type=C.PLC, vendor="Siemens", purdue_level=1, security_zone=C.ZONE_CONTROL)
    conns = [Connection(id="c", source_device_id="h", target_device_id="p", protocol="Modbus", port=502)]
    result = assess_device_risk(plc, conns)

    assert result["factors"]["vulnerability"]["score"] == 50
    assert result["factors"]["configuration"]["score"] == 60
    assert result["factors"]["exposure"]["score"] == 30
    assert result["factors"]["compliance"]["score"] == 25
    assert result["overall_score"] == pytest.approx(43.75)
    assert result["risk_level"] == C.MEDIUM
    assert result["recommendations"] == []


def test_topology_risk_reports_zone_averages_and_findings():
    devices = [
        Device(id="p", name="plc", type=C.PLC, purdue_level=1, security_zone=C.ZONE_CONTROL),
        Device(id="u", name="laptop", purdue_level=5, security_zone=C.ZONE_UNTRUSTED),
    ]
    conns = [Connection(id="c", source_device_id="u", target_device_id="p", protocol="Modbus", port=502)]
    report = assess_topology_risk(devices, conns)
    assert report["device_count"] == 2
    assert set(report["zone_risks"]) == {C.ZONE_CONTROL, C.ZONE_UNTRUSTED}
    assert "1 of 1 connections are unencrypted" in report["findings"]
    assert "1 connections cross security zones" in report["findings"]
    assert "1 devices are in the untrusted zone" in report["findings"]


def test_topology_service_views(plant):
    orch, store, alerts = plant["orchestrator"], plant["store"], plant["alerts"]
    orch.handle_flow_records(
        {"flows": [{"srcAddress": "10.2.0.20", "dstAddress": "10.1.0.10", "dstPort": 502, "protocol": 6, "bytes": 1}]}
    )
    service = TopologyService(store, alerts, max_hops=5)

    analysis = service.analyze_path(plant["hmi"].id, plant["plc"].id)
    assert analysis.shortest_path == 1
    assert service.analyze_path(plant["hmi"].id, "missing") is None
    unreachable = service.analyze_path(plant["hmi"].id, plant["app"].id)
    assert unreachable.paths == []

    cross = service.cross_zone_connections()
    assert len(cross) == 1
    assert cross[0]["severity"] == C.MEDIUM

    overview = service.overview()
    assert overview["devices"]["total"] == 3
    assert overview["connections"]["insecure"] == 1
    assert overview["connections"]["cross_zone"] == 1
    assert overview["health"] == "healthy"
    assert overview["devices"]["by_level"]["Level 1 - Basic Control"] == 1


def test_topology_service_snapshot_compare_against_live(plant):
    orch, store = plant["orchestrator"], plant["store"]
    service = TopologyService(store)
    snap = service.create_snapshot(sources=["test"])

    orch.handle_system_description(
        {"type": "system", "sysName": "hist-01", "sysDescr": "OSIsoft PI historian",
         "interfaces": [{"name": "eth0", "ipAddress": "10.3.0.30", "physAddress": "00:0c:29:00:00:30"}]}
    )
    diff = service.compare_snapshots(snap.id)
    assert [d.name for d in diff.added_devices] == ["hist-01"]
    assert diff.removed_devices == []
    assert service.compare_snapshots("missing") is None


def test_topology_service_classify_and_raise_risk_alert(plant):
    store, alerts = plant["store"], plant["alerts"]
    service = TopologyService(store, alerts)

    result = service.classify_device(plant["hmi"].id, apply=False)
    assert result.assigned_level == 2
    assert service.classify_device("missing") is None

    assessment = service.device_risk(plant["app"].id, raise_alert=True)
    assert assessment["risk_level"] in (C.LOW, C.MEDIUM, C.HIGH, C.CRITICAL)
    expected = 1 if assessment["overall_score"] >= C.RISK_THRESHOLDS["medium"] else 0
    assert store.count_alerts(type=C.ALERT_HIGH_RISK) == expected

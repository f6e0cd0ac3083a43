import sqlite3
from datetime import timedelta, timezone

import pytest

import constants as C
from services.ingest import IpCache
from toolkit.utils import utc_now

from conftest import hours_ago, system_payload


def _flow(src, dst, *, dst_port=502, n_bytes=1000):
    return {
        "type": "netflow",
        "flows": [
            {
                "srcAddress": src,
                "dstAddress": dst,
                "srcPort": 49152,
                "dstPort": dst_port,
                "protocol": 6,
                "bytes": n_bytes,
                "packets": 10,
                "startTime": "2024-01-01T00:00:00Z",
                "endTime": "2024-01-01T00:00:10Z",
            }
        ],
    }


def test_system_description_creates_device_once(engine):
    orch, store, bus = engine["orchestrator"], engine["store"], engine["bus"]
    payload = system_payload("plc-01", "Siemens SIMATIC S7-1500 PLC", "10.1.0.10", "00:1a:4b:00:00:01")

    first = orch.handle_system_description(payload)
    second = orch.handle_system_description(payload)

    assert first["created"] is True
    assert second["created"] is False
    assert second["device_id"] == first["device_id"]
    assert store.count_devices() == 1

    device = store.get_device(first["device_id"])
    assert device.type == C.PLC
    assert device.vendor == "Siemens"
    assert device.security_zone == C.ZONE_CONTROL
    assert store.count_alerts(type=C.ALERT_NEW_DEVICE) == 1
    assert [e["type"] for e in bus.list_events(event_type="device.discovered")] == ["device.discovered"]


def test_known_device_vendor_change_raises_configuration_alert(plant):
    orch, store = plant["orchestrator"], plant["store"]
    orch.handle_system_description(
        system_payload("plc-01", "Schneider Electric Modicon PLC", "10.1.0.10", "00:1a:4b:00:00:01")
    )
    alerts = store.search_alerts({"type": C.ALERT_CONFIGURATION_CHANGE})["items"]
    assert len(alerts) == 1
    assert alerts[0].device_id == plant["plc"].id
    assert "vendor: Siemens -> Schneider Electric" in alerts[0].details["changes"]
    # the stored record keeps its identity and inventory
    assert store.get_device(plant["plc"].id).vendor == "Siemens"


def test_address_evidence_never_creates_devices(plant):
    orch, store = plant["orchestrator"], plant["store"]
    result = orch.handle_address_table(
        {
            "type": "arp",
            "entries": [
                {"ipAddress": "10.9.9.9", "macAddress": "00:0c:29:99:99:99"},
                {"ipAddress": "10.1.0.10", "macAddress": "00:1a:4b:00:00:01"},
            ],
        },
        seen_at="2030-01-01T00:00:00+00:00",
    )
    assert store.count_devices() == 3
    assert result["refreshed"] == 1
    assert result["unmatched"] == 1
    assert store.get_device(plant["plc"].id).last_seen_at == "2030-01-01T00:00:00+00:00"


def test_address_mac_change_emits_event(plant):
    orch, bus = plant["orchestrator"], plant["bus"]
    orch.handle_address_table(
        {
            "type": "arp",
            "entries": [
                {"ipAddress": "10.1.0.10", "macAddress": "00:1a:4b:00:00:01"},
                {"ipAddress": "10.1.0.10", "macAddress": "00:0c:29:66:66:66"},
            ],
        }
    )
    events = bus.list_events(event_type="address.mac_change")
    assert len(events) == 1
    assert events[0]["data"]["prev_mac"] == "00:1a:4b:00:00:01"


def test_flow_creates_then_updates_one_edge(plant):
    orch, store = plant["orchestrator"], plant["store"]
    first = orch.handle_flow_records(_flow("10.2.0.20", "10.1.0.10"))
    again = orch.handle_flow_records(_flow("10.1.0.10", "10.2.0.20", n_bytes=5000))

    assert (first["created"], first["updated"]) == (1, 0)
    assert (again["created"], again["updated"]) == (0, 1)
    assert store.count_connections() == 1

    conn = store.find_connection(plant["hmi"].id, plant["plc"].id, "Modbus")
    assert conn.is_secure is False
    assert conn.bandwidth == pytest.approx(5000 / 10 * 8 / 1_000_000)


def test_flow_with_unresolved_or_identical_endpoints_is_skipped(plant):
    orch, store = plant["orchestrator"], plant["store"]
    unresolved = orch.handle_flow_records(_flow("10.9.9.9", "10.1.0.10"))
    same = orch.handle_flow_records(_flow("10.1.0.10", "10.1.0.10"))
    assert unresolved["skipped"] == 1
    assert same["skipped"] == 1
    assert store.count_connections() == 0


def test_resolve_device_id_rechecks_stale_cache(plant):
    orch = plant["orchestrator"]
    orch.cache.put("10.1.0.10", "ghost-device")
    assert orch.resolve_device_id("10.1.0.10") == plant["plc"].id
    assert orch.cache.get("10.1.0.10") == plant["plc"].id
    assert orch.resolve_device_id("10.250.0.1") is None


def test_log_alert_attaches_to_resolved_device_once(plant):
    orch, store = plant["orchestrator"], plant["store"]
    payload = {
        "messages": [
            {
                "timestamp": "2024-01-01T00:00:00Z",
                "hostname": "hmi-01",
                "facility": 4,
                "severity": 3,
                "message": "Failed password for admin from 10.2.0.9 port 22",
            }
        ]
    }
    first = orch.handle_log_messages(payload)
    again = orch.handle_log_messages(payload)
    assert first["alerts"] == 1
    assert again["alerts"] == 0

    alerts = store.search_alerts({"type": C.ALERT_SECURITY})["items"]
    assert len(alerts) == 1
    assert alerts[0].device_id == plant["hmi"].id


def test_log_from_unknown_host_is_not_attached(plant):
    result = plant["orchestrator"].handle_log_messages(
        {"messages": [{"hostname": "ghost", "severity": 1, "facility": 4, "message": "malware detected on host"}]}
    )
    assert result["unresolved"] == 1
    assert plant["store"].count_alerts(type=C.ALERT_SECURITY) == 0


def test_redelivered_record_is_processed_once(plant):
    orch = plant["orchestrator"]
    message = {"id": "flow-1", "source": C.SOURCE_FLOW_RECORD, "payload": _flow("10.2.0.20", "10.1.0.10")}
    assert orch.process(message)["created"] == 1
    assert orch.process(message)["status"] == "duplicate"
    assert plant["store"].count_connections() == 1


def test_storage_fault_leaves_record_for_replay(plant, monkeypatch):
    orch, store = plant["orchestrator"], plant["store"]

    def broken(*args, **kwargs):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(store, "upsert_connection", broken)
    message = {"id": "flow-2", "source": C.SOURCE_FLOW_RECORD, "payload": _flow("10.2.0.20", "10.1.0.10")}
    with pytest.raises(sqlite3.OperationalError):
        orch.process(message)
    assert store.get_telemetry("flow-2").processed is False

    monkeypatch.undo()
    result = orch.replay_unprocessed()
    assert result == {"replayed": 1, "pending": 0}
    assert store.count_connections() == 1


def test_unknown_source_is_ignored_but_marked(engine):
    orch, store = engine["orchestrator"], engine["store"]
    result = orch.process({"id": "odd-1", "source": "snmp-trap", "payload": {"x": 1}})
    assert result["status"] == "ignored"
    assert store.get_telemetry("odd-1").processed is True


def test_bus_publish_reaches_orchestrator(engine):
    bus, store = engine["bus"], engine["store"]
    bus.publish(
        C.SOURCE_SYSTEM_DESCRIPTION,
        system_payload("hmi-02", "Wonderware HMI panel", "10.2.0.21", "00:0c:29:00:00:21"),
        message_id="sd-1",
    )
    assert store.find_device_by_name("hmi-02") is not None
    assert store.get_telemetry("sd-1").processed is True


def test_bus_subscriber_failure_does_not_reach_publisher(engine, monkeypatch):
    bus, store = engine["bus"], engine["store"]

    def broken(*args, **kwargs):
        raise sqlite3.OperationalError("disk I/O error")

    monkeypatch.setattr(store, "upsert_device_by_hostname", broken)
    msg = bus.publish(
        C.SOURCE_SYSTEM_DESCRIPTION,
        system_payload("rtu-01", "ABB RTU560 remote terminal unit", "10.1.0.30", "00:0c:29:00:00:30"),
        message_id="sd-2",
    )
    assert msg.id == "sd-2"
    assert store.get_telemetry("sd-2").processed is False


def test_ip_cache_evicts_least_recently_used():
    cache = IpCache(max_size=2)
    cache.put("10.0.0.1", "a")
    cache.put("10.0.0.2", "b")
    assert cache.get("10.0.0.1") == "a"
    cache.put("10.0.0.3", "c")

    assert cache.get("10.0.0.2") is None
    assert cache.get("10.0.0.1") == "a"
    assert len(cache) == 2

    cache.invalidate_device("a")
    assert cache.get("10.0.0.1") is None
    stats = cache.stats()
    assert stats["size"] == 1
    assert stats["hits"] == 2
    assert stats["misses"] == 2


def test_offset_timestamps_are_stored_in_utc(engine):
    orch, store, alerts = engine["orchestrator"], engine["store"], engine["alerts"]
    eastern = timezone(timedelta(hours=-5))
    orch.process(
        {
            "id": "sd-utc-1",
            "source": C.SOURCE_SYSTEM_DESCRIPTION,
            "timestamp": utc_now().astimezone(eastern).isoformat(),
            "payload": system_payload("plc-01", "Siemens SIMATIC S7-1500 PLC", "10.1.0.10", "00:1a:4b:00:00:01"),
        }
    )
    device = store.find_device_by_name("plc-01")
    assert device.last_seen_at.endswith("+00:00")
    assert store.get_telemetry("sd-utc-1").timestamp.endswith("+00:00")
    assert alerts.check_offline_devices(1.0) == []


def test_stale_offset_timestamp_is_still_offline(engine):
    orch, alerts = engine["orchestrator"], engine["alerts"]
    ahead = timezone(timedelta(hours=5))
    orch.process(
        {
            "id": "sd-utc-2",
            "source": C.SOURCE_SYSTEM_DESCRIPTION,
            "timestamp": (utc_now() - timedelta(hours=3)).astimezone(ahead).isoformat(),
            "payload": system_payload("rtu-01", "ABB RTU560 remote terminal unit", "10.1.0.30", "00:0c:29:00:00:30"),
        }
    )
    offline = alerts.check_offline_devices(1.0)
    assert [a.type for a in offline] == [C.ALERT_DEVICE_OFFLINE]


def test_late_redelivery_never_moves_last_seen_backwards(engine):
    orch, store, alerts = engine["orchestrator"], engine["store"], engine["alerts"]
    payload = system_payload("plc-01", "Siemens SIMATIC S7-1500 PLC", "10.1.0.10", "00:1a:4b:00:00:01")
    fresh = utc_now().isoformat()
    orch.process({"id": "new", "source": C.SOURCE_SYSTEM_DESCRIPTION, "timestamp": fresh, "payload": payload})
    before = store.find_device_by_name("plc-01").last_seen_at

    orch.process({"id": "old", "source": C.SOURCE_SYSTEM_DESCRIPTION, "timestamp": hours_ago(5), "payload": payload})
    orch.handle_address_table(
        {"type": "arp", "entries": [{"ipAddress": "10.1.0.10", "macAddress": "00:1a:4b:00:00:01"}]},
        seen_at=hours_ago(5),
    )

    assert store.find_device_by_name("plc-01").last_seen_at == before
    assert alerts.check_offline_devices(1.0) == []


def test_late_flow_keeps_newest_connection_last_seen(plant):
    orch, store = plant["orchestrator"], plant["store"]
    newer = _flow("10.2.0.20", "10.1.0.10")
    older = _flow("10.2.0.20", "10.1.0.10")
    older["flows"][0]["startTime"] = "2023-12-31T00:00:00Z"
    older["flows"][0]["endTime"] = "2023-12-31T00:00:10Z"
    orch.handle_flow_records(newer)
    orch.handle_flow_records(older)
    conn = store.find_connection(plant["hmi"].id, plant["plc"].id, "Modbus")
    assert conn.last_seen_at == "2024-01-01T00:00:10+00:00"

from pathlib import Path

import constants as C
from config import Settings
from services.jobs import AutomatedCheckDaemon
from transport.events import TelemetryBus

from conftest import hours_ago


def test_settings_from_env_parses_values():
    settings = Settings.from_env(
        {
            "ICSMAP_DB_PATH": "/tmp/icsmap-test.db",
            "ICSMAP_LOG_LEVEL": "debug",
            "ICSMAP_API_KEY": " secret ",
            "ICSMAP_DEBUG": "yes",
            "ICSMAP_IP_CACHE_SIZE": "32",
            "ICSMAP_OFFLINE_THRESHOLD_HOURS": "0.5",
            "ICSMAP_CHECK_INTERVAL_SECONDS": "1",
        }
    )
    assert settings.db_path == Path("/tmp/icsmap-test.db")
    assert settings.log_level == "DEBUG"
    assert settings.api_key == "secret"
    assert settings.debug is True
    assert settings.ip_cache_size == 32
    assert settings.offline_threshold_hours == 0.5
    assert settings.check_interval_seconds == 5


def test_settings_invalid_numbers_fall_back_to_defaults():
    settings = Settings.from_env({"ICSMAP_IP_CACHE_SIZE": "lots", "ICSMAP_MAX_PATH_HOPS": "", "ICSMAP_DEBUG": "0"})
    assert settings.ip_cache_size == 4096
    assert settings.max_path_hops == 5
    assert settings.debug is False
    assert settings.db_path == Settings().db_path


def test_bus_buffers_events_despite_failing_subscriber():
    bus = TelemetryBus(max_events=2)
    seen = []

    def broken(ev):
        raise RuntimeError("socket closed")

    bus.subscribe_events(broken)
    bus.subscribe_events(seen.append)
    for i in range(3):
        bus.emit("device.discovered", entity=f"d{i}")

    assert [e.entity for e in seen] == ["d0", "d1", "d2"]
    assert [e["entity"] for e in bus.list_events()] == ["d1", "d2"]
    assert bus.list_events(event_type="alert.created") == []


def test_bus_wildcard_subscriber_sees_every_source():
    bus = TelemetryBus()
    received = []
    bus.subscribe("*", lambda msg: received.append(msg.source))
    bus.publish(C.SOURCE_LOG_MESSAGE, {"messages": []})
    bus.publish(C.SOURCE_FLOW_RECORD, "not-a-dict")
    assert received == [C.SOURCE_LOG_MESSAGE, C.SOURCE_FLOW_RECORD]


def test_daemon_run_once_records_status_and_cleans_up(plant):
    store, alerts = plant["store"], plant["alerts"]
    store.update_device(plant["plc"].id, last_seen_at=hours_ago(5))
    daemon = AutomatedCheckDaemon(alerts, interval_seconds=1, cleanup_every=2)

    first = daemon.run_once()
    assert first["offline_devices"] == 1
    assert "cleaned_up" not in first

    second = daemon.run_once()
    assert second["offline_devices"] == 0
    assert second["cleaned_up"] == 0

    status = daemon.status()
    assert status["running"] is False
    assert status["interval_seconds"] == 5
    assert status["ticks"] == 2
    assert status["last_result"]["cleaned_up"] == 0
    assert status["last_error"] == ""


def test_daemon_start_stop_is_idempotent(plant):
    daemon = AutomatedCheckDaemon(plant["alerts"], interval_seconds=60)
    daemon.start()
    thread = daemon.thread
    daemon.start()
    assert daemon.thread is thread
    assert daemon.status()["running"] is True

    daemon.stop()
    assert daemon.status()["running"] is False
    assert not thread.is_alive()

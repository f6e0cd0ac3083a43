from datetime import timedelta
from pathlib import Path

import pytest

from config import Settings
from server import create_app
from services.alerts import AlertEngine
from services.ingest import IngestOrchestrator, IpCache
from store import DataStore
from toolkit.utils import utc_now
from transport.events import TelemetryBus


def system_payload(name, descr, ip, mac, **extra):
    """System-description payload with one interface."""
    payload = {
        "type": "system",
        "sysName": name,
        "sysDescr": descr,
        "sysUpTime": 1000,
        "interfaces": [
            {"index": 1, "name": "eth0", "physAddress": mac, "ipAddress": ip, "speed": 100000000, "operStatus": 1}
        ],
    }
    payload.update(extra)
    return payload


def hours_ago(hours: float) -> str:
    return (utc_now() - timedelta(hours=hours)).isoformat()


@pytest.fixture()
def isolated_store(tmp_path):
    """Fresh sqlite store per test."""
    return DataStore(Path(tmp_path) / "test_icsmap.db")


@pytest.fixture()
def engine(isolated_store):
    """Bus, alert engine and orchestrator over the isolated store."""
    bus = TelemetryBus()
    alerts = AlertEngine(isolated_store, bus, batch_size=50)
    orchestrator = IngestOrchestrator(isolated_store, alerts, cache=IpCache(16))
    orchestrator.attach(bus)
    return {"store": isolated_store, "bus": bus, "alerts": alerts, "orchestrator": orchestrator}


@pytest.fixture()
def plant(engine):
    """Three devices: an HMI (level 2), a PLC (level 1) and a Linux application server (level 5, untrusted)."""
    orch = engine["orchestrator"]
    orch.handle_system_description(
        system_payload("plc-01", "Siemens SIMATIC S7-1500 PLC", "10.1.0.10", "00:1a:4b:00:00:01")
    )
    orch.handle_system_description(
        system_payload("hmi-01", "Wonderware HMI panel", "10.2.0.20", "00:0c:29:00:00:02")
    )
    orch.handle_system_description(
        system_payload("app-01", "Linux application server", "10.5.0.50", "00:50:56:00:00:03")
    )
    store = engine["store"]
    return {
        **engine,
        "plc": store.find_device_by_name("plc-01"),
        "hmi": store.find_device_by_name("hmi-01"),
        "app": store.find_device_by_name("app-01"),
    }


@pytest.fixture()
def client_ctx(isolated_store):
    """
    Flask test client over a temp datastore.
    No API key and no background daemon.
    """
    settings = Settings(db_path=isolated_store.db_path)
    app = create_app(settings, datastore=isolated_store)
    app.config["TESTING"] = True
    parts = app.extensions["icsmap"]
    return {
        "client": app.test_client(),
        "app": app,
        "store": isolated_store,
        "orchestrator": parts["orchestrator"],
        "alerts": parts["alerts"],
        "bus": parts["bus"],
    }

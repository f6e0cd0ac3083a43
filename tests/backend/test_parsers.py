from parsers.address_table import parse_address_table, vendor_from_mac
from parsers.flow import parse_flow_records, summarize_flows, to_connection
from parsers.log_message import classify_event, parse_log_messages, to_alert
from parsers.sysdescr import normalize_mac, parse_system_description, to_device

import constants as C


def test_system_description_infers_cisco_switch_and_model():
    parsed = parse_system_description(
        {
            "type": "system",
            "sysName": "core-sw-01",
            "sysDescr": "Cisco IOS XE Software, Model: C9300-24P",
            "interfaces": [{"index": 1, "name": "Gi1/0/1", "physAddress": "00-1A-2B-3C-4D-5E", "operStatus": 1}],
        }
    )
    assert parsed is not None
    assert parsed.vendor == "Cisco"
    assert parsed.device_type == C.SWITCH
    assert parsed.model == "C9300-24P"
    assert parsed.interfaces[0].mac_address == "00:1a:2b:3c:4d:5e"
    assert parsed.interfaces[0].status == "up"


def test_system_description_unknown_text_yields_unknown_type():
    parsed = parse_system_description({"sysName": "box", "sysDescr": "something odd"})
    assert parsed.vendor is None
    assert parsed.device_type == C.UNKNOWN


def test_system_description_rejects_wrong_shape():
    assert parse_system_description(None) is None
    assert parse_system_description("plc") is None
    assert parse_system_description({"type": "netflow", "sysName": "x"}) is None
    assert parse_system_description({"type": "system"}) is None


def test_reparsing_identical_description_is_stable():
    payload = {
        "type": "system",
        "sysName": "plc-03",
        "sysDescr": "Siemens SIMATIC S7-1500 PLC, Model: CPU1516-3PN",
        "interfaces": [{"index": 1, "name": "eth0", "physAddress": "00:1A:4B:00:00:03", "ipAddress": "10.1.0.3"}],
    }
    first = parse_system_description(payload)
    second = parse_system_description(payload)
    assert first == second
    assert (first.vendor, first.device_type, first.model) == (second.vendor, second.device_type, second.model)
    assert first.vendor == "Siemens"
    assert first.device_type == C.PLC


def test_to_device_maps_type_to_level_and_zone():
    parsed = parse_system_description({"sysName": "plc-07", "sysDescr": "Siemens SIMATIC S7-1200 PLC"})
    device = to_device(parsed, seen_at="2024-01-01T00:00:00+00:00")
    assert device.type == C.PLC
    assert device.purdue_level == 1
    assert device.security_zone == C.ZONE_CONTROL
    assert device.hostname == "plc-07"
    assert device.last_seen_at == "2024-01-01T00:00:00+00:00"


def test_normalize_mac_rejects_short_values():
    assert normalize_mac("00:1a:2b") == ""
    assert normalize_mac("001A.2B3C.4D5E") == "00:1a:2b:3c:4d:5e"


def test_address_table_drops_incomplete_entries():
    arp, mac = parse_address_table(
        {
            "type": "arp",
            "entries": [
                {"ipAddress": "10.1.0.5", "macAddress": "00:1A:4B:00:00:05", "vlanId": 10},
                {"ipAddress": "not-an-ip", "macAddress": "00:1a:4b:00:00:06"},
                {"macAddress": "00:1a:4b:00:00:07"},
            ],
        }
    )
    assert mac == []
    assert len(arp) == 1
    assert arp[0].mac_address == "00:1a:4b:00:00:05"
    assert arp[0].vlan_id == 10


def test_mac_table_requires_port():
    arp, mac = parse_address_table(
        {"type": "mac", "entries": [{"macAddress": "00:1a:4b:00:00:05", "port": "Gi1/0/3"}, {"macAddress": "00:1a:4b:00:00:06"}]}
    )
    assert arp == []
    assert [(e.mac_address, e.port) for e in mac] == [("00:1a:4b:00:00:05", "Gi1/0/3")]


def test_address_table_unknown_kind_is_empty():
    assert parse_address_table({"type": "lldp", "entries": [{}]}) == ([], [])
    assert parse_address_table([]) == ([], [])


def test_vendor_from_mac_uses_oui_table():
    assert vendor_from_mac("00:1a:4b:00:00:05") == "Siemens"
    assert vendor_from_mac("ff:ff") is None


def test_modbus_flow_duration_throughput_and_detection():
    flows = parse_flow_records(
        {
            "type": "netflow",
            "flows": [
                {
                    "srcAddress": "10.2.0.20",
                    "dstAddress": "10.1.0.10",
                    "srcPort": 49152,
                    "dstPort": 502,
                    "protocol": 6,
                    "bytes": 1000,
                    "packets": 10,
                    "startTime": "2024-01-01T00:00:00Z",
                    "endTime": "2024-01-01T00:00:10Z",
                }
            ],
        }
    )
    assert len(flows) == 1
    f = flows[0]
    assert f.duration == 10.0
    assert f.bytes_per_second == 100.0
    assert f.is_industrial is True
    assert f.industrial_protocol == "Modbus"
    assert f.protocol == "TCP"

    conn = to_connection(f, "dev-a", "dev-b")
    assert conn.protocol == "Modbus"
    assert conn.port == 502
    assert conn.is_secure is False


def test_flow_without_timestamps_has_zero_throughput():
    flows = parse_flow_records({"flows": [{"srcAddress": "10.0.0.1", "dstAddress": "10.0.0.2", "bytes": 50, "dstPort": 443}]})
    assert flows[0].duration == 0.0
    assert flows[0].bytes_per_second == 0.0
    assert to_connection(flows[0], "a", "b").is_secure is True


def test_flow_records_reject_wrong_shape():
    assert parse_flow_records({"type": "sflow", "flows": []}) == []
    assert parse_flow_records({"flows": "nope"}) == []
    assert parse_flow_records({"flows": [{"srcAddress": "10.0.0.1"}]}) == []


def test_flow_summary_orders_top_talkers_by_bytes():
    flows = parse_flow_records(
        {
            "flows": [
                {"srcAddress": "10.0.0.1", "dstAddress": "10.0.0.9", "bytes": 10, "protocol": 17},
                {"srcAddress": "10.0.0.2", "dstAddress": "10.0.0.9", "bytes": 500, "protocol": 6, "dstPort": 102},
            ]
        }
    )
    summary = summarize_flows(flows)
    assert summary["total_flows"] == 2
    assert summary["total_bytes"] == 510
    assert summary["industrial_flows"] == 1
    assert summary["top_talkers"][0] == {"address": "10.0.0.2", "bytes": 500}
    assert summary["top_protocols"][0]["protocol"] == "S7comm"


def test_classify_event_priority_order():
    assert classify_event("ransomware detected after failed login") == "security"
    assert classify_event("user login ok") == "authentication"
    assert classify_event("access denied to /config") == "authorization"
    assert classify_event("connection from 10.0.0.1 blocked") == "network"
    assert classify_event("daemon restarted") == "system"
    assert classify_event("nothing to see") == "system"


def test_unauthorized_is_classified_as_authentication():
    assert classify_event("unauthorized write to holding register") == "authentication"
    assert classify_event("permission denied for operator") == "authorization"
    assert classify_event("forbidden: /api/config") == "authorization"


def test_failed_password_produces_alert():
    events = parse_log_messages(
        {
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
    )
    assert len(events) == 1
    ev = events[0]
    assert ev.event_type == "authentication"
    assert ev.is_security_relevant is True
    assert ev.category == "authentication_failure"
    assert ev.extracted["source_ip"] == "10.2.0.9"
    assert ev.extracted["port"] == "22"
    assert 30 <= ev.risk_score <= 100

    alert = to_alert(ev)
    assert alert is not None
    assert alert.type == C.ALERT_SECURITY
    assert alert.severity == C.CRITICAL
    assert alert.dedup_key.startswith("log:")


def test_benign_log_produces_no_alert():
    events = parse_log_messages(
        {"messages": [{"hostname": "hmi-01", "facility": 1, "severity": 6, "message": "service started"}]}
    )
    assert events[0].is_security_relevant is False
    assert to_alert(events[0]) is None


def test_log_messages_skip_empty_entries():
    assert parse_log_messages({"messages": [{"message": ""}, "junk", {"hostname": "x"}]}) == []
    assert parse_log_messages({"entries": []}) == []

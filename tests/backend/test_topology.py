import constants as C
from models import Connection, Device, NetworkInterface
from parsers.address_table import ArpEntry, MacTableEntry
from topology.classifier import classify_device, reclassify_device
from topology.graph import build_snapshot, detect_device_changes, diff_snapshots, overview_health, zone_topology
from topology.l2_builder import L2TopologyBuilder, build_l2_topology, infer_adjacency
from topology.paths import analyze_paths
from topology.zones import cross_zone_severity, is_cross_zone, level_difference, validate_placement


def _device(device_id, level, *, name=None, dtype=C.UNKNOWN, ip=""):
    return Device(
        id=device_id,
        name=name or device_id,
        type=dtype,
        purdue_level=level,
        security_zone=C.PURDUE_TO_ZONE[level],
        interfaces=[NetworkInterface(name="eth0", ip_address=ip)] if ip else [],
    )


def _conn(conn_id, a, b, *, secure=False, latency=1.0, protocol="TCP"):
    return Connection(
        id=conn_id, source_device_id=a, target_device_id=b, protocol=protocol, is_secure=secure, latency=latency
    )


# ---------------------------------------------------------------------------
# L2 builder
# ---------------------------------------------------------------------------

ARP = [
    ArpEntry(ip_address="10.1.0.5", mac_address="00:1a:4b:00:00:05", vlan_id=10),
    ArpEntry(ip_address="10.1.0.6", mac_address="00:1a:4b:00:00:05", vlan_id=10),
    ArpEntry(ip_address="10.1.0.7", mac_address="00:0c:29:00:00:07", vlan_id=20),
]
MACS = [
    MacTableEntry(mac_address="00:1a:4b:00:00:05", port="Gi1/0/1", vlan_id=10),
    MacTableEntry(mac_address="00:0c:29:00:00:07", port="Gi1/0/1", vlan_id=10),
    MacTableEntry(mac_address="00:0c:29:00:00:07", port="Gi1/0/2", vlan_id=20),
]


def test_l2_builder_unions_evidence_by_mac():
    topo = build_l2_topology(ARP, MACS, observed_at="2024-01-01T00:00:00+00:00")
    by_mac = {d.mac_address: d for d in topo.devices}
    assert set(by_mac) == {"00:1a:4b:00:00:05", "00:0c:29:00:00:07"}
    assert by_mac["00:1a:4b:00:00:05"].ip_addresses == ["10.1.0.5", "10.1.0.6"]
    assert by_mac["00:1a:4b:00:00:05"].vendor == "Siemens"
    assert by_mac["00:0c:29:00:00:07"].ports == ["Gi1/0/1", "Gi1/0/2"]
    assert by_mac["00:0c:29:00:00:07"].vlan_ids == [10, 20]


def test_l2_builder_is_order_independent_and_idempotent():
    ts = "2024-01-01T00:00:00+00:00"
    forward = build_l2_topology(ARP, MACS, observed_at=ts)
    backward = build_l2_topology(list(reversed(ARP)), list(reversed(MACS)) + MACS, observed_at=ts)
    assert forward == backward


def test_infer_adjacency_pairs_two_macs_on_one_port():
    adj = infer_adjacency(MACS)
    assert len(adj) == 1
    assert adj[0].port == "Gi1/0/1"
    assert {adj[0].source_mac, adj[0].target_mac} == {"00:1a:4b:00:00:05", "00:0c:29:00:00:07"}


def test_binding_events_flag_mac_change():
    builder = L2TopologyBuilder()
    builder.add_arp([ArpEntry(ip_address="10.1.0.5", mac_address="00:1a:4b:00:00:05")], observed_at="t1")
    builder.add_arp([ArpEntry(ip_address="10.1.0.5", mac_address="00:1a:4b:00:00:05")], observed_at="t2")
    builder.add_arp([ArpEntry(ip_address="10.1.0.5", mac_address="00:0c:29:00:00:07")], observed_at="t3")
    events = [(e.event, e.prev_mac) for e in builder.binding_events]
    assert events == [("new_binding", ""), ("mac_change", "00:1a:4b:00:00:05")]


# ---------------------------------------------------------------------------
# Zones
# ---------------------------------------------------------------------------

def test_process_to_enterprise_is_critical():
    assert is_cross_zone(0, 4) is True
    assert cross_zone_severity(0, 4) == C.CRITICAL


def test_cross_zone_severity_is_monotonic_in_level_difference():
    rank = {C.LOW: 0, C.MEDIUM: 1, C.HIGH: 2, C.CRITICAL: 3}
    previous = -1
    for diff in range(0, 6):
        current = rank[cross_zone_severity(0, diff)]
        assert current >= previous
        previous = current
    assert cross_zone_severity(1, 2) == C.MEDIUM
    assert cross_zone_severity(3, 1) == C.HIGH


def test_every_dmz_edge_is_critical():
    assert is_cross_zone(C.DMZ_LEVEL, 3) is True
    assert level_difference(C.DMZ_LEVEL, 3) == 96
    for level in (0, 1, 2, 3, 4, 5):
        assert cross_zone_severity(C.DMZ_LEVEL, level) == C.CRITICAL
        assert cross_zone_severity(level, C.DMZ_LEVEL) == C.CRITICAL


def test_cross_zone_edges_never_fall_to_low():
    levels = (0, 1, 2, 3, 4, 5, C.DMZ_LEVEL)
    for a in levels:
        for b in levels:
            if is_cross_zone(a, b):
                assert cross_zone_severity(a, b) != C.LOW


def test_validate_placement_reports_zone_mismatch():
    device = _device("plc", 1, dtype=C.PLC)
    assert validate_placement(device) == []
    device.security_zone = C.ZONE_ENTERPRISE
    assert len(validate_placement(device)) == 1


# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------

def test_disconnected_devices_have_no_path():
    devices = [_device("a", 1), _device("b", 2), _device("c", 3)]
    result = analyze_paths("a", "c", devices, [_conn("ab", "a", "b")])
    assert result.paths == []
    assert result.shortest_path == 0
    assert result.secure_path_exists is False


def test_unknown_device_is_not_found():
    assert analyze_paths("a", "zzz", [_device("a", 1)], []) is None


def test_paths_respect_hop_bound_and_never_revisit():
    # chain a-b-c-d-e-f-g plus a shortcut a-d
    ids = list("abcdefg")
    devices = [_device(i, 1) for i in ids]
    conns = [_conn(f"{x}{y}", x, y) for x, y in zip(ids, ids[1:])]
    conns.append(_conn("ad", "a", "d"))

    result = analyze_paths("a", "g", devices, conns, max_hops=5)
    assert [p.hop_count for p in result.paths] == [4]
    assert result.shortest_path == 4

    result = analyze_paths("a", "g", devices, conns, max_hops=6)
    assert sorted(p.hop_count for p in result.paths) == [4, 6]
    for p in result.paths:
        hop_ids = [d.id for d in p.hops]
        assert len(hop_ids) == len(set(hop_ids))
        assert p.hop_count <= 6


def test_path_security_and_zone_crossing():
    devices = [_device("hmi", 2), _device("plc", 1), _device("hist", 3)]
    conns = [
        _conn("c1", "hmi", "plc", secure=True, latency=2.0),
        _conn("c2", "hmi", "hist", secure=False, latency=3.0),
        _conn("c3", "hist", "plc", secure=True, latency=4.0),
    ]
    result = analyze_paths("hmi", "plc", devices, conns)
    assert result.shortest_path == 1
    assert result.secure_path_exists is True
    direct, detour = result.paths
    assert direct.total_latency == 2.0
    assert direct.crosses_zones is True
    assert detour.is_secure is False
    assert detour.total_latency == 7.0


# ---------------------------------------------------------------------------
# Classifier and graph views
# ---------------------------------------------------------------------------

def test_classifier_combines_type_name_and_subnet():
    device = _device("p1", 5, name="line1-plc", dtype=C.PLC, ip="10.1.3.4")
    device.vendor = "Siemens"
    result = classify_device(device)
    assert result.assigned_level == 1
    assert result.assigned_zone == C.ZONE_CONTROL
    assert result.confidence == 100.0
    assert result.suggested_levels[0].level == 1


def test_reclassify_adds_neighbour_suggestion():
    device = _device("x", 5)
    result = reclassify_device(device, [1, 3, C.DMZ_LEVEL])
    assert result.suggested_levels[0].level == 2
    assert any("Connected to devices" in r for r in result.reasons)


def test_zone_topology_splits_internal_and_external_edges():
    devices = [_device("p1", 1), _device("p2", 1), _device("h1", 2)]
    conns = [_conn("i", "p1", "p2"), _conn("e", "p1", "h1")]
    zone = zone_topology(C.ZONE_CONTROL, devices, conns)
    assert [d.id for d in zone.devices] == ["p1", "p2"]
    assert [c.id for c in zone.internal_connections] == ["i"]
    assert [c.id for c in zone.external_connections] == ["e"]


def test_snapshot_diff_reports_added_removed_and_modified():
    a_dev = [_device("p1", 1), _device("p2", 1)]
    before = build_snapshot(a_dev, [_conn("c1", "p1", "p2")])
    b_dev = [_device("p1", 2), _device("p3", 1)]
    after = build_snapshot(b_dev, [])
    diff = diff_snapshots(before, after)
    assert [d.id for d in diff.added_devices] == ["p3"]
    assert [d.id for d in diff.removed_devices] == ["p2"]
    assert [c.id for c in diff.removed_connections] == ["c1"]
    assert diff.modified_devices[0]["device"].id == "p1"
    assert "purdue_level: 1 -> 2" in diff.modified_devices[0]["changes"]


def test_detect_device_changes_limited_to_given_attributes():
    a = _device("p1", 1)
    b = _device("p1", 2)
    b.vendor = "Siemens"
    assert detect_device_changes(a, b, ("vendor",)) == ["vendor: None -> Siemens"]


def test_overview_health_thresholds():
    assert overview_health(0, 0) == "healthy"
    assert overview_health(10, 1) == "healthy"
    assert overview_health(10, 2) == "warning"
    assert overview_health(10, 4) == "critical"

"""IcsMap protocol normalizers.

Each module turns one telemetry shape (already decoded by a collector) into typed
intermediate records:
- sysdescr: device self-description (system group + interface table)
- address_table: ARP and switch MAC-table entries
- flow: flow-export records
- log_message: syslog messages

Normalizers are pure: no I/O, no shared state. Malformed input yields None or an
empty list instead of raising.
"""

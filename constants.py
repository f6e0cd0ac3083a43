"""
IcsMap fixed lookup tables.
Purdue levels, security zones, protocol/port tables, syslog codes and MAC OUI prefixes.
"""

# Device types
SENSOR = "sensor"
ACTUATOR = "actuator"
VARIABLE_DRIVE = "variable_drive"
INSTRUMENT = "instrument"
PLC = "plc"
RTU = "rtu"
DCS = "dcs"
CONTROLLER = "controller"
SCADA_SERVER = "scada_server"
HMI = "hmi"
ALARM_SERVER = "alarm_server"
DATA_LOGGER = "data_logger"
MES = "mes"
HISTORIAN = "historian"
ENGINEERING_WORKSTATION = "engineering_workstation"
ASSET_MANAGEMENT = "asset_management"
ERP = "erp"
EMAIL_SERVER = "email_server"
WEB_SERVER = "web_server"
DATABASE_SERVER = "database_server"
SWITCH = "switch"
ROUTER = "router"
FIREWALL = "firewall"
GATEWAY = "gateway"
DATA_DIODE = "data_diode"
JUMP_SERVER = "jump_server"
UNKNOWN = "unknown"

DMZ_LEVEL = 99
VALID_PURDUE_LEVELS = (0, 1, 2, 3, 4, 5, DMZ_LEVEL)

DEVICE_TYPE_PURDUE_LEVEL = {
    SENSOR: 0,
    ACTUATOR: 0,
    VARIABLE_DRIVE: 0,
    INSTRUMENT: 0,
    PLC: 1,
    RTU: 1,
    DCS: 1,
    CONTROLLER: 1,
    SCADA_SERVER: 2,
    HMI: 2,
    ALARM_SERVER: 2,
    DATA_LOGGER: 2,
    MES: 3,
    HISTORIAN: 3,
    ENGINEERING_WORKSTATION: 3,
    ASSET_MANAGEMENT: 3,
    ERP: 4,
    DATABASE_SERVER: 4,
    EMAIL_SERVER: 5,
    WEB_SERVER: 5,
    # Network infrastructure: placement varies, these are the usual homes.
    SWITCH: 2,
    ROUTER: 3,
    FIREWALL: DMZ_LEVEL,
    GATEWAY: DMZ_LEVEL,
    DATA_DIODE: DMZ_LEVEL,
    JUMP_SERVER: DMZ_LEVEL,
    UNKNOWN: 5,
}
DEVICE_TYPES = tuple(DEVICE_TYPE_PURDUE_LEVEL.keys())

# Security zones
ZONE_PROCESS = "process"
ZONE_CONTROL = "control"
ZONE_SUPERVISORY = "supervisory"
ZONE_OPERATIONS = "operations"
ZONE_ENTERPRISE = "enterprise"
ZONE_DMZ = "dmz"
ZONE_UNTRUSTED = "untrusted"

PURDUE_TO_ZONE = {
    0: ZONE_PROCESS,
    1: ZONE_CONTROL,
    2: ZONE_SUPERVISORY,
    3: ZONE_OPERATIONS,
    4: ZONE_ENTERPRISE,
    5: ZONE_UNTRUSTED,
    DMZ_LEVEL: ZONE_DMZ,
}

# DMZ shares level 3 with operations when levels are compared.
ZONE_TO_PURDUE = {
    ZONE_PROCESS: 0,
    ZONE_CONTROL: 1,
    ZONE_SUPERVISORY: 2,
    ZONE_OPERATIONS: 3,
    ZONE_DMZ: 3,
    ZONE_ENTERPRISE: 4,
    ZONE_UNTRUSTED: 5,
}
SECURITY_ZONES = tuple(ZONE_TO_PURDUE.keys())

ZONE_TRUST_LEVELS = {
    ZONE_PROCESS: 1,
    ZONE_CONTROL: 2,
    ZONE_SUPERVISORY: 3,
    ZONE_OPERATIONS: 4,
    ZONE_DMZ: 5,
    ZONE_ENTERPRISE: 6,
    ZONE_UNTRUSTED: 0,
}

PURDUE_LEVEL_NAMES = {
    0: "Level 0 - Process",
    1: "Level 1 - Basic Control",
    2: "Level 2 - Area Supervisory",
    3: "Level 3 - Site Operations",
    4: "Level 4 - Site Business",
    5: "Level 5 - Enterprise",
    DMZ_LEVEL: "Industrial DMZ",
}

# Device status
STATUS_ONLINE = "online"
STATUS_OFFLINE = "offline"
STATUS_DEGRADED = "degraded"
STATUS_MAINTENANCE = "maintenance"
STATUS_UNKNOWN = "unknown"
DEVICE_STATUSES = (STATUS_ONLINE, STATUS_OFFLINE, STATUS_DEGRADED, STATUS_MAINTENANCE, STATUS_UNKNOWN)

CONNECTION_TYPES = (
    "ethernet", "serial", "modbus", "profinet", "profibus",
    "fieldbus", "wireless", "fiber", "unknown",
)

# Alerts
ALERT_DEVICE_OFFLINE = "device_offline"
ALERT_SECURITY_VIOLATION = "security_violation"
ALERT_INSECURE_PROTOCOL = "insecure_protocol"
ALERT_NEW_DEVICE = "new_device"
ALERT_CONFIGURATION_CHANGE = "configuration_change"
ALERT_SECURITY = "security"
ALERT_HIGH_RISK = "high_risk"
ALERT_TYPES = (
    ALERT_DEVICE_OFFLINE,
    ALERT_SECURITY_VIOLATION,
    ALERT_INSECURE_PROTOCOL,
    ALERT_NEW_DEVICE,
    ALERT_CONFIGURATION_CHANGE,
    ALERT_SECURITY,
    ALERT_HIGH_RISK,
)

CRITICAL = "critical"
HIGH = "high"
MEDIUM = "medium"
LOW = "low"
INFO = "info"
SEVERITIES = (CRITICAL, HIGH, MEDIUM, LOW, INFO)

# Telemetry source tags
SOURCE_SYSTEM_DESCRIPTION = "system-description"
SOURCE_ADDRESS_TABLE = "address-table"
SOURCE_MAC_TABLE = "mac-table"
SOURCE_FLOW_RECORD = "flow-record"
SOURCE_LOG_MESSAGE = "log-message"
TELEMETRY_SOURCES = (
    SOURCE_SYSTEM_DESCRIPTION,
    SOURCE_ADDRESS_TABLE,
    SOURCE_MAC_TABLE,
    SOURCE_FLOW_RECORD,
    SOURCE_LOG_MESSAGE,
)

IP_PROTOCOLS = {
    1: "ICMP",
    6: "TCP",
    17: "UDP",
    47: "GRE",
    50: "ESP",
    51: "AH",
    58: "ICMPv6",
    89: "OSPF",
    132: "SCTP",
}

# dst port -> (protocol, description)
INDUSTRIAL_PORTS = {
    102: ("S7comm", "Siemens S7 Communication"),
    502: ("Modbus", "Modbus TCP"),
    2222: ("EtherNet/IP", "EtherNet/IP Explicit"),
    2404: ("IEC-60870-5-104", "IEC 104 SCADA"),
    4840: ("OPC UA", "OPC Unified Architecture"),
    18245: ("GE-SRTP", "GE Service Request Transport Protocol"),
    20000: ("DNP3", "Distributed Network Protocol"),
    34962: ("Profinet", "PROFINET IO RT"),
    34963: ("Profinet", "PROFINET IO RT"),
    34964: ("Profinet", "PROFINET IO Context Manager"),
    44818: ("EtherNet/IP", "EtherNet/IP Implicit I/O"),
    47808: ("BACnet", "Building Automation and Control"),
    55000: ("FL-net", "Factory Automation Network"),
    55001: ("FL-net", "Factory Automation Network"),
    55002: ("FL-net", "Factory Automation Network"),
    55003: ("FL-net", "Factory Automation Network"),
}

# HTTPS, MQTT over TLS, OPC UA
SECURE_PORTS = frozenset({443, 8883, 4840})
# Modbus, S7, EtherNet/IP
DEFAULT_INDUSTRIAL_PORTS = frozenset({502, 102, 44818})

SYSLOG_FACILITIES = {
    0: "kern", 1: "user", 2: "mail", 3: "daemon", 4: "auth", 5: "syslog",
    6: "lpr", 7: "news", 8: "uucp", 9: "cron", 10: "authpriv", 11: "ftp",
    12: "ntp", 13: "security", 14: "console", 15: "solaris-cron",
    16: "local0", 17: "local1", 18: "local2", 19: "local3",
    20: "local4", 21: "local5", 22: "local6", 23: "local7",
}
# auth, authpriv, security
SECURITY_FACILITIES = frozenset({4, 10, 13})

SYSLOG_SEVERITIES = {
    0: "emergency",
    1: "alert",
    2: "critical",
    3: "error",
    4: "warning",
    5: "notice",
    6: "informational",
    7: "debug",
}

RISK_THRESHOLDS = {
    "critical": 90,
    "high": 70,
    "medium": 40,
    "low": 20,
}

RISK_WEIGHTS = {
    "vulnerability": 0.35,
    "configuration": 0.25,
    "exposure": 0.25,
    "compliance": 0.15,
}

# Upper-case, colon-separated first three octets.
VENDOR_OUI_PREFIXES = {
    "00:00:5E": "IANA",
    "00:0A:E6": "Elitegroup",
    "00:0C:29": "VMware",
    "00:1A:4B": "Siemens",
    "00:1C:06": "Siemens",
    "00:30:6E": "Hewlett-Packard",
    "00:50:56": "VMware",
    "00:60:35": "Dallas Semiconductor",
    "00:80:F4": "Telemecanique",
    "00:A0:F8": "Zebra Technologies",
    "08:00:06": "Siemens",
    "08:00:27": "Oracle VirtualBox",
    "08:00:2B": "DEC",
    "28:63:36": "Siemens",
    "2C:A8:35": "Rockwell Automation",
    "34:64:A9": "Hewlett-Packard",
    "40:61:86": "Micro Innovations",
    "58:8D:09": "Cisco",
    "64:00:6A": "Dell",
    "68:DD:B7": "Honeywell",
    "70:B3:D5": "IEEE Registration Authority",
    "74:DA:EA": "Texas Instruments",
    "80:00:0B": "Intel",
    "84:2B:2B": "Dell",
    "8C:DC:D4": "Cisco",
    "90:B1:1C": "Dell",
    "98:5A:EB": "Texas Instruments",
    "A4:BF:01": "Intel",
    "A8:B9:B3": "Essys",
    "AC:1F:6B": "Super Micro",
    "B4:99:BA": "Hewlett-Packard",
    "B8:27:EB": "Raspberry Pi",
    "BC:30:5B": "Dell",
    "C4:65:16": "Hewlett-Packard",
    "C8:1F:66": "Cisco",
    "D4:BE:D9": "Dell",
    "D8:9E:F3": "Dell",
    "DC:A6:32": "Raspberry Pi",
    "E4:11:5B": "Hewlett-Packard",
    "EC:F4:BB": "Dell",
    "F0:1F:AF": "Dell",
    "F4:03:21": "Belden",
    "F8:B1:56": "Dell",
}

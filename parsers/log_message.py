#!/usr/bin/env python3
"""Log-message normalizer.

Classifies already-decoded syslog messages::

    {"messages": [{"timestamp": "...", "hostname": "hmi-01", "facility": 4,
                   "severity": 3, "message": "Failed password for admin from 10.2.0.9 port 22"}]}

into one event type through a fixed-priority keyword chain, extracts optional
fields (source/destination IP, username, port), scores risk and derives draft
alerts for security-relevant events.
"""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Pattern, Sequence, Tuple

import constants as C
from models import Alert
from toolkit.utils import iso, new_id, to_int, utc_now_iso


# ---------------------------------------------------------------------------
# Rule tables
# ---------------------------------------------------------------------------

# Evaluated top to bottom; first hit wins, "system" is the fallback.
# "auth" also hits inside "unauthorized", so those messages land in "authentication".
EVENT_TYPE_RULES: Sequence[Tuple[Pattern[str], str]] = (
    (re.compile(r"attack|intrusion|malware|exploit|virus|trojan|ransomware|breach", re.I), "security"),
    (re.compile(r"auth|login|password|credential", re.I), "authentication"),
    (re.compile(r"forbidden|unauthori[sz]ed|permission|access denied|not authori[sz]ed", re.I), "authorization"),
    (re.compile(r"connect|network|firewall|iptables|port\b|denied|blocked|refused", re.I), "network"),
    (re.compile(r"system|kernel|service|daemon", re.I), "system"),
)

# (pattern, category, severity); the first match feeds the risk score.
SECURITY_PATTERNS: Sequence[Tuple[Pattern[str], str, str]] = (
    (re.compile(r"failed\s+(password|login|auth)", re.I), "authentication_failure", C.MEDIUM),
    (re.compile(r"invalid\s+user", re.I), "invalid_user", C.MEDIUM),
    (re.compile(r"accepted\s+(password|publickey)", re.I), "successful_login", C.INFO),
    (re.compile(r"connection\s+(refused|denied|blocked)", re.I), "connection_blocked", C.LOW),
    (re.compile(r"(brute.?force|repeated.?failure)", re.I), "brute_force", C.HIGH),
    (re.compile(r"\b(root|admin|sudo)\b", re.I), "privileged_access", C.MEDIUM),
    (re.compile(r"(firewall|iptables|denied)", re.I), "firewall_event", C.LOW),
    (re.compile(r"(malware|virus|trojan|ransomware)", re.I), "malware_detected", C.CRITICAL),
    (re.compile(r"(intrusion|attack|exploit)", re.I), "intrusion_attempt", C.HIGH),
    (re.compile(r"(unauthorized|violation|breach)", re.I), "policy_violation", C.HIGH),
)

PATTERN_SEVERITY_SCORES = {C.CRITICAL: 40, C.HIGH: 30, C.MEDIUM: 20, C.LOW: 10, C.INFO: 5}

_IP = r"(\d{1,3}(?:\.\d{1,3}){3})"
EXTRACTORS: Sequence[Tuple[Pattern[str], str]] = (
    (re.compile(r"(?:from|src|source)[:=\s]+" + _IP, re.I), "source_ip"),
    (re.compile(r"(?:\bto|dst|destination)[:=\s]+" + _IP, re.I), "destination_ip"),
    (re.compile(r"(?:user|username)[:=\s]+([^\s,;]+)", re.I), "username"),
    (re.compile(r"\bport[:=\s]+(\d{1,5})", re.I), "port"),
)

# Syslog severities 0-3 (emergency..error) are security relevant on their own.
RELEVANT_SEVERITY_THRESHOLD = 3
ALERT_MIN_RISK_SCORE = 30


@dataclass
class LogEvent:
    timestamp: str
    hostname: str
    facility: str
    facility_code: int
    severity: str
    severity_code: int
    message: str
    event_type: str
    is_security_relevant: bool
    category: Optional[str] = None
    extracted: Dict[str, str] = field(default_factory=dict)
    risk_score: int = 0


def classify_event(message: str) -> str:
    for pattern, event_type in EVENT_TYPE_RULES:
        if pattern.search(message or ""):
            return event_type
    return "system"


def extract_fields(message: str) -> Dict[str, str]:
    out: Dict[str, str] = {}
    for pattern, key in EXTRACTORS:
        m = pattern.search(message or "")
        if m:
            out[key] = m.group(1)
    return out


def match_security_pattern(message: str) -> Optional[Tuple[str, str]]:
    for pattern, category, severity in SECURITY_PATTERNS:
        if pattern.search(message or ""):
            return category, severity
    return None


def is_security_relevant(event_type: str, severity_code: int, facility_code: int, message: str) -> bool:
    if event_type == "security":
        return True
    if severity_code <= RELEVANT_SEVERITY_THRESHOLD:
        return True
    if facility_code in C.SECURITY_FACILITIES:
        return True
    return match_security_pattern(message) is not None


def risk_score(severity_code: int, relevant: bool, message: str) -> int:
    """Bounded 0..100; grows as severity rises (lower code) and with relevance."""
    score = (7 - severity_code) * 10
    if relevant:
        score += 20
    hit = match_security_pattern(message)
    if hit:
        score += PATTERN_SEVERITY_SCORES.get(hit[1], 0)
    return max(0, min(score, 100))


def parse_message(raw: Any) -> Optional[LogEvent]:
    if not isinstance(raw, dict):
        return None
    message = raw.get("message")
    if not isinstance(message, str) or not message.strip():
        return None
    severity_code = min(7, max(0, to_int(raw.get("severity"), 6)))
    facility_code = to_int(raw.get("facility"), 1)
    event_type = classify_event(message)
    relevant = is_security_relevant(event_type, severity_code, facility_code, message)
    hit = match_security_pattern(message)
    return LogEvent(
        timestamp=iso(raw.get("timestamp")) or utc_now_iso(),
        hostname=str(raw.get("hostname") or "").strip(),
        facility=C.SYSLOG_FACILITIES.get(facility_code, "unknown"),
        facility_code=facility_code,
        severity=C.SYSLOG_SEVERITIES.get(severity_code, "unknown"),
        severity_code=severity_code,
        message=message,
        event_type=event_type,
        is_security_relevant=relevant,
        category=hit[0] if hit else None,
        extracted=extract_fields(message),
        risk_score=risk_score(severity_code, relevant, message),
    )


def parse_log_messages(payload: Any) -> List[LogEvent]:
    if not isinstance(payload, dict):
        return []
    messages = payload.get("messages")
    if not isinstance(messages, list):
        return []
    return [e for e in (parse_message(m) for m in messages) if e is not None]


def severity_for_score(score: int) -> str:
    if score >= 80:
        return C.CRITICAL
    if score >= 60:
        return C.HIGH
    if score >= 40:
        return C.MEDIUM
    return C.LOW


def event_fingerprint(event: LogEvent) -> str:
    raw = f"{event.hostname}|{event.timestamp}|{event.message}".encode("utf-8", "replace")
    return "log:" + hashlib.sha1(raw).hexdigest()


def to_alert(event: LogEvent) -> Optional[Alert]:
    """Draft alert for a security-relevant event; device_id is filled in by the resolver."""
    if not event.is_security_relevant or event.risk_score < ALERT_MIN_RISK_SCORE:
        return None
    details: Dict[str, Any] = dict(event.extracted)
    details.update({
        "risk_score": event.risk_score,
        "facility": event.facility,
        "severity": event.severity,
        "hostname": event.hostname,
        "category": event.category,
    })
    return Alert(
        id=new_id(),
        type=C.ALERT_SECURITY,
        severity=severity_for_score(event.risk_score),
        title=f"Security Event: {event.event_type}",
        description=event.message[:500],
        details=details,
        dedup_key=event_fingerprint(event),
        created_at=event.timestamp,
    )

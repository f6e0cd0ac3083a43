#!/usr/bin/env python3
"""Score-based Purdue level suggestion.

Evidence adds points to candidate levels: device type (+40), name/hostname
patterns (+25 each), vendor family (+20) and interface subnet (+15 each). The
best-scoring level wins; confidence is its share of the total. This never
writes anything; callers decide whether to act on a suggestion.
"""

from __future__ import annotations

import re
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

import constants as C
from models import Device
from topology.zones import zone_for_level

TYPE_SCORE = 40
NAME_SCORE = 25
VENDOR_SCORE = 20
SUBNET_SCORE = 15
NEIGHBOR_PROBABILITY = 30.0

LEVEL_NAME_PATTERNS = {
    0: [r"sensor", r"actuator", r"transmitter", r"valve", r"motor", r"drive", r"vfd"],
    1: [r"plc", r"rtu", r"dcs", r"controller", r"s7-\d+", r"controllogix", r"modicon"],
    2: [r"scada", r"hmi", r"wonderware", r"ignition", r"factorytalk", r"wincc"],
    3: [r"historian", r"\bmes\b", r"pi\s*server", r"aspen", r"osisoft"],
    4: [r"\berp\b", r"\bsap\b", r"oracle", r"business"],
    5: [r"corporate", r"internet", r"email", r"\bweb\b", r"office"],
    C.DMZ_LEVEL: [r"dmz", r"firewall", r"proxy", r"diode", r"jump", r"bastion"],
}
_COMPILED = {lvl: [re.compile(p, re.I) for p in pats] for lvl, pats in LEVEL_NAME_PATTERNS.items()}

VENDOR_LEVELS = (
    (re.compile(r"siemens|allen-bradley|rockwell|schneider|\babb\b|emerson|yokogawa|honeywell", re.I), 1),
    (re.compile(r"wonderware|aveva|\bge\b|general electric|iconics", re.I), 2),
    (re.compile(r"osisoft|aspentech", re.I), 3),
    (re.compile(r"cisco|juniper|fortinet|palo alto", re.I), C.DMZ_LEVEL),
)

# 10.<level>.x.x plant addressing convention
SUBNET_LEVELS = {0: 0, 1: 1, 2: 2, 3: 3}


@dataclass
class LevelSuggestion:
    level: int
    probability: float


@dataclass
class ClassificationResult:
    device_id: str
    assigned_level: int
    assigned_zone: str
    confidence: float
    reasons: List[str] = field(default_factory=list)
    suggested_levels: List[LevelSuggestion] = field(default_factory=list)


def score_name(text: str) -> Dict[int, int]:
    scores: Dict[int, int] = defaultdict(int)
    for level, patterns in _COMPILED.items():
        for p in patterns:
            if p.search(text or ""):
                scores[level] += NAME_SCORE
    return scores


def level_for_vendor(vendor: Optional[str]) -> Optional[int]:
    if not vendor:
        return None
    for pattern, level in VENDOR_LEVELS:
        if pattern.search(vendor):
            return level
    return None


def level_for_subnet(ip: Optional[str]) -> Optional[int]:
    parts = str(ip or "").split(".")
    if len(parts) != 4:
        return None
    try:
        octets = [int(p) for p in parts]
    except ValueError:
        return None
    if octets[0] == 10:
        return SUBNET_LEVELS.get(octets[1])
    return None


def classify_device(device: Device) -> ClassificationResult:
    scores: Dict[int, int] = {lvl: 0 for lvl in C.VALID_PURDUE_LEVELS}
    reasons: List[str] = []

    if device.type and device.type != C.UNKNOWN and device.type in C.DEVICE_TYPE_PURDUE_LEVEL:
        lvl = C.DEVICE_TYPE_PURDUE_LEVEL[device.type]
        scores[lvl] += TYPE_SCORE
        reasons.append(f"Device type {device.type} maps to Level {lvl}")

    for lvl, s in score_name(f"{device.name} {device.hostname or ''}").items():
        scores[lvl] += s
        reasons.append(f"Name pattern matches Level {lvl}")

    vendor_level = level_for_vendor(device.vendor)
    if vendor_level is not None:
        scores[vendor_level] += VENDOR_SCORE
        reasons.append(f"Vendor {device.vendor} associated with Level {vendor_level}")

    for iface in device.interfaces:
        lvl = level_for_subnet(iface.ip_address)
        if lvl is not None:
            scores[lvl] += SUBNET_SCORE
            reasons.append(f"Subnet {iface.ip_address} suggests Level {lvl}")

    best_level, best_score = device.purdue_level, 0
    for lvl in C.VALID_PURDUE_LEVELS:
        if scores[lvl] > best_score:
            best_level, best_score = lvl, scores[lvl]

    total = sum(scores.values())
    confidence = (best_score / total * 100.0) if total > 0 else 50.0
    suggested = [
        LevelSuggestion(level=lvl, probability=(s / total * 100.0))
        for lvl, s in scores.items()
        if s > 0
    ]
    suggested.sort(key=lambda s: -s.probability)

    return ClassificationResult(
        device_id=device.id,
        assigned_level=best_level,
        assigned_zone=zone_for_level(best_level),
        confidence=round(confidence, 2),
        reasons=reasons,
        suggested_levels=suggested,
    )


def reclassify_device(device: Device, connected_to_levels: Iterable[int]) -> ClassificationResult:
    """Classify, then add a neighbour-derived suggestion (devices talk to adjacent levels)."""
    result = classify_device(device)
    levels = [int(lv) for lv in connected_to_levels if int(lv) != C.DMZ_LEVEL]
    if levels:
        suggested = int(round(sum(levels) / len(levels)))
        result.suggested_levels.insert(0, LevelSuggestion(level=suggested, probability=NEIGHBOR_PROBABILITY))
        result.reasons.append("Connected to devices at levels: " + ", ".join(str(lv) for lv in levels))
    return result

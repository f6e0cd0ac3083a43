#!/usr/bin/env python3
"""Security-zone / Purdue-level model and cross-zone detection.

Cross-zone is decided on Purdue level divergence, not on zone names. Level
difference is taken on the raw levels, so any edge touching the DMZ (level 99)
is critical.
"""

from __future__ import annotations

from typing import List, Optional

import constants as C
from models import Device


def zone_for_level(level: int) -> str:
    return C.PURDUE_TO_ZONE.get(int(level), C.ZONE_UNTRUSTED)


def level_for_zone(zone: str) -> int:
    return C.ZONE_TO_PURDUE.get(str(zone), 5)


def level_for_device_type(device_type: str) -> int:
    return C.DEVICE_TYPE_PURDUE_LEVEL.get(str(device_type), 5)


def level_difference(level_a: int, level_b: int) -> int:
    return abs(int(level_a) - int(level_b))


def is_cross_zone(level_a: int, level_b: int) -> bool:
    return int(level_a) != int(level_b)


def cross_zone_severity(level_a: int, level_b: int) -> str:
    diff = level_difference(level_a, level_b)
    if diff >= 3:
        return C.CRITICAL
    if diff == 2:
        return C.HIGH
    if diff == 1:
        return C.MEDIUM
    return C.LOW


def devices_cross_zone(a: Device, b: Device) -> bool:
    return is_cross_zone(a.purdue_level, b.purdue_level)


def validate_placement(device: Device) -> List[str]:
    """Return human-readable problems with a device's level/zone assignment (empty when consistent)."""
    problems: List[str] = []
    if device.purdue_level not in C.VALID_PURDUE_LEVELS:
        problems.append(f"invalid purdue level {device.purdue_level}")
        return problems
    expected_zone = zone_for_level(device.purdue_level)
    if device.security_zone != expected_zone:
        problems.append(f"zone {device.security_zone} does not match level {device.purdue_level} ({expected_zone})")
    expected_level: Optional[int] = C.DEVICE_TYPE_PURDUE_LEVEL.get(device.type)
    if device.type != C.UNKNOWN and expected_level is not None and expected_level != device.purdue_level:
        problems.append(f"type {device.type} usually sits at level {expected_level}, found {device.purdue_level}")
    return problems

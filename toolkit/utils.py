#!/usr/bin/env python3
"""Common helpers shared by the IcsMap normalizers, store and services."""

from __future__ import annotations

import json
import uuid
from dataclasses import asdict, is_dataclass
from datetime import datetime, timezone
from typing import Any, Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def utc_now_iso() -> str:
    return utc_now().isoformat()


def new_id() -> str:
    return str(uuid.uuid4())


def new_session_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


def parse_ts(value: Any) -> Optional[datetime]:
    """Best-effort timestamp parsing; naive values are taken as UTC.

    Accepts datetimes, ISO-8601 strings (with or without a trailing ``Z``) and
    epoch seconds. Returns None when the value cannot be understood.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, bool):
        return None
    elif isinstance(value, (int, float)):
        try:
            dt = datetime.fromtimestamp(float(value), tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def iso(value: Any) -> Optional[str]:
    """ISO-8601 in UTC, so stored timestamps order correctly as strings."""
    dt = parse_ts(value)
    return dt.astimezone(timezone.utc).isoformat() if dt else None


def to_int(value: Any, default: Optional[int] = None) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        try:
            return int(float(value))
        except (TypeError, ValueError):
            return default


def safe_json(obj: Any) -> Any:
    """Convert dataclasses/datetimes/sets into JSON-serializable structures."""
    if is_dataclass(obj) and not isinstance(obj, type):
        return safe_json(asdict(obj))
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, dict):
        return {str(k): safe_json(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple, set)):
        return [safe_json(v) for v in obj]
    return obj


def dumps(obj: Any) -> str:
    return json.dumps(safe_json(obj), default=str)


def loads(text: Optional[str], default: Any = None) -> Any:
    try:
        return json.loads(text) if text else default
    except (TypeError, ValueError):
        return default

#!/usr/bin/env python3
"""Telemetry bus (publish/subscribe) + in-memory event buffer.

Collectors publish raw telemetry tagged with a source discriminator
(system-description, address-table, mac-table, flow-record, log-message); the
ingest orchestrator subscribes per tag. The engine publishes its own events
(device.discovered, connection.discovered, alert.created, ...) on the same bus
so the UI stream and any other consumer can follow along.

A bounded in-memory buffer lets the UI poll recent events without standing up
a separate message broker. Delivery is at-least-once from the collector's point
of view; consumers must be idempotent.
"""

from __future__ import annotations

import logging
import threading
from collections import defaultdict, deque
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, DefaultDict, Deque, Dict, List, Optional

from toolkit.utils import new_id, new_session_id, utc_now_iso

logger = logging.getLogger(__name__)

ANY_SOURCE = "*"


@dataclass(frozen=True)
class TelemetryMessage:
    id: str
    ts: str
    source: str
    payload: Dict[str, Any]
    device_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class EngineEvent:
    id: str
    ts: str
    type: str
    entity: str
    summary: str
    data: Dict[str, Any]


Subscriber = Callable[[TelemetryMessage], None]
EventSubscriber = Callable[[EngineEvent], None]


class TelemetryBus:
    def __init__(self, *, max_events: int = 2000):
        self._events: Deque[EngineEvent] = deque(maxlen=max(1, int(max_events)))
        self._subscribers: DefaultDict[str, List[Subscriber]] = defaultdict(list)
        self._event_subscribers: List[EventSubscriber] = []
        self._lock = threading.Lock()

    def subscribe(self, source: str, fn: Subscriber) -> None:
        """Register ``fn`` for one source tag, or for every tag with ``"*"``."""
        with self._lock:
            self._subscribers[str(source)].append(fn)

    def subscribe_events(self, fn: EventSubscriber) -> None:
        with self._lock:
            self._event_subscribers.append(fn)

    def publish(
        self,
        source: str,
        payload: Dict[str, Any],
        *,
        message_id: Optional[str] = None,
        device_id: Optional[str] = None,
        ts: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> TelemetryMessage:
        msg = TelemetryMessage(
            id=str(message_id or new_id()),
            ts=str(ts or utc_now_iso()),
            source=str(source),
            payload=payload if isinstance(payload, dict) else {},
            device_id=device_id,
            metadata=dict(metadata or {}),
        )
        with self._lock:
            subs = list(self._subscribers.get(msg.source, ())) + list(self._subscribers.get(ANY_SOURCE, ()))

        if not subs:
            logger.debug("no subscriber for telemetry source %s", msg.source)
        for fn in subs:
            try:
                fn(msg)
            except Exception:
                # A failing consumer leaves its record unprocessed for replay.
                logger.exception("telemetry subscriber failed for %s message %s", msg.source, msg.id)
        return msg

    def emit(
        self,
        event_type: str,
        *,
        entity: str = "",
        summary: str = "",
        data: Optional[Dict[str, Any]] = None,
    ) -> EngineEvent:
        ev = EngineEvent(
            id=new_session_id("evt"),
            ts=utc_now_iso(),
            type=str(event_type),
            entity=str(entity or ""),
            summary=str(summary or ""),
            data=dict(data or {}),
        )
        with self._lock:
            self._events.append(ev)
            subs = list(self._event_subscribers)

        for fn in subs:
            try:
                fn(ev)
            except Exception:
                logger.exception("event subscriber failed for %s", ev.type)
        return ev

    def list_events(self, *, limit: int = 200, event_type: str = "") -> List[Dict[str, Any]]:
        lim = max(1, int(limit))
        with self._lock:
            items = list(self._events)
        if event_type:
            items = [e for e in items if e.type == event_type]
        return [asdict(ev) for ev in items[-lim:]]

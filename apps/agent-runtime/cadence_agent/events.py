"""Append-only event sink shared by the supervisor, registry and control surface."""

from __future__ import annotations

import collections
import json
import logging
import pathlib
import threading
from datetime import datetime, timezone
from typing import Any, Callable

from cadence_agent.config import EVENT_LOG_LIMIT

logger = logging.getLogger(__name__)

LEVELS = ("success", "error", "warning", "info")


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def classify_line(text: str) -> str:
    """Keyword level for free-form worker output."""
    lowered = text.lower()
    if "error" in lowered or "failed" in lowered:
        return "error"
    if "warn" in lowered:
        return "warning"
    if "success" in lowered or "✓" in text:
        return "success"
    return "info"


class EventSink:
    def __init__(self, path: pathlib.Path | None = None, *, limit: int = EVENT_LOG_LIMIT):
        self.path = path
        self._events: collections.deque[dict[str, Any]] = collections.deque(maxlen=limit)
        self._subscribers: list[Callable[[dict[str, Any]], None]] = []
        self._mutex = threading.Lock()

    def emit(
        self,
        text: str,
        *,
        action_type: str | None = None,
        chain: str | None = None,
        identity: str | None = None,
        stream: str = "system",
        level: str | None = None,
        classification: str | None = None,
    ) -> dict[str, Any]:
        event = {
            "time": utc_now(),
            "actionType": action_type,
            "chain": chain,
            "identity": identity,
            "level": level or classify_line(text),
            "classification": classification,
            "stream": stream,
            "text": text,
        }
        with self._mutex:
            self._events.append(event)
            if self.path is not None:
                self._append(self.path, event)
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(event)
            except Exception:
                logger.exception("Event subscriber %r failed", callback)
        return event

    def _append(self, path: pathlib.Path, event: dict[str, Any]) -> None:
        try:
            path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
            with path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(event, separators=(",", ":")) + "\n")
        except OSError as exc:
            # The in-memory buffer still holds the event.
            logger.warning("Could not append to event log %s: %s", path, exc)

    def subscribe(self, callback: Callable[[dict[str, Any]], None]) -> Callable[[], None]:
        with self._mutex:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._mutex:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def recent(
        self,
        limit: int | None = None,
        *,
        action_type: str | None = None,
        chain: str | None = None,
        identity: str | None = None,
    ) -> list[dict[str, Any]]:
        with self._mutex:
            items = list(self._events)
        if action_type is not None:
            items = [e for e in items if e["actionType"] == action_type]
        if chain is not None:
            items = [e for e in items if e["chain"] == chain]
        if identity is not None:
            items = [e for e in items if e["identity"] == identity]
        if limit is not None:
            items = items[-limit:]
        return items

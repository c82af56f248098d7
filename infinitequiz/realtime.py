"""
Row-change notifications for the quiz tables.

ChangeFeed is the in-process pub/sub that the write path publishes to and the
WebSocket endpoint subscribes to. PollingFeed offers the same subscribe()
shape for clients that can only poll. When NATS_URL is configured every change
is also published to NATS; without it that path is a no-op.
"""
from __future__ import annotations

import asyncio
import json
import os
import threading
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from .config import settings
from .logging_utils import get_logger

logger = get_logger("infinitequiz.realtime")

try:
    import nats
except Exception:  # pragma: no cover - optional dep
    nats = None  # type: ignore

ChangeCallback = Callable[[Dict[str, Any]], None]

INSERT = "INSERT"
UPDATE = "UPDATE"
DELETE = "DELETE"


class Subscription:
    def __init__(self, owner, table: str, filters: Optional[Dict[str, Any]], callback: ChangeCallback):
        self._owner = owner
        self.table = table
        self.filters = dict(filters or {})
        self.callback = callback
        self.closed = False

    def matches(self, change: Dict[str, Any]) -> bool:
        if change.get("table") != self.table:
            return False
        row = change.get("new") or change.get("old") or {}
        return all(row.get(k) == v for k, v in self.filters.items())

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._owner.unsubscribe(self)


class ChangeFeed:
    """Thread-safe fan-out of change events to matching subscribers."""

    def __init__(self):
        self._subs: List[Subscription] = []
        self._lock = threading.Lock()

    def subscribe(self, table: str, filters: Optional[Dict[str, Any]], callback: ChangeCallback) -> Subscription:
        sub = Subscription(self, table, filters, callback)
        with self._lock:
            self._subs.append(sub)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        with self._lock:
            if sub in self._subs:
                self._subs.remove(sub)

    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subs)

    def clear(self) -> None:
        with self._lock:
            self._subs.clear()

    def publish(self, table: str, event: str, new: Optional[dict] = None, old: Optional[dict] = None) -> int:
        change = {
            "table": table,
            "event": event,
            "new": new,
            "old": old,
            "ts": datetime.now(timezone.utc).isoformat(),
        }
        with self._lock:
            targets = [s for s in self._subs if s.matches(change)]
        delivered = 0
        for sub in targets:
            try:
                sub.callback(change)
                delivered += 1
            except Exception as exc:
                logger.warning("change_callback_failed", extra={"error": str(exc)})
        room = (new or old or {}).get("room_code")
        if room and settings.NATS_URL:
            publish_room_update_sync(room, change)
        return delivered


_feed = ChangeFeed()


def get_feed() -> ChangeFeed:
    return _feed


class PollingFeed:
    """subscribe() by re-querying on an interval.

    fetch(table, filters) returns a snapshot; the callback fires whenever the
    snapshot differs from the previous one.
    """

    def __init__(self, fetch: Callable[[str, Dict[str, Any]], Any], interval: float = 2.0):
        self.fetch = fetch
        self.interval = interval
        self._subs: List[Subscription] = []
        self._last: Dict[int, Any] = {}
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def subscribe(self, table: str, filters: Optional[Dict[str, Any]], callback: ChangeCallback) -> Subscription:
        sub = Subscription(self, table, filters, callback)
        baseline = self._safe_fetch(sub)
        with self._lock:
            self._subs.append(sub)
            self._last[id(sub)] = baseline
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        with self._lock:
            if sub in self._subs:
                self._subs.remove(sub)
            self._last.pop(id(sub), None)

    def _safe_fetch(self, sub: Subscription):
        try:
            return self.fetch(sub.table, sub.filters)
        except Exception as exc:
            logger.warning("poll_failed", extra={"error": str(exc)})
            return None

    def poll_once(self) -> int:
        """Run one polling round; returns how many subscribers were notified"""
        with self._lock:
            subs = list(self._subs)
        fired = 0
        for sub in subs:
            snapshot = self._safe_fetch(sub)
            if snapshot is None:
                continue
            with self._lock:
                changed = self._last.get(id(sub)) != snapshot
                self._last[id(sub)] = snapshot
            if changed and not sub.closed:
                sub.callback({"table": sub.table, "event": UPDATE, "new": None, "old": None})
                fired += 1
        return fired

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            self.poll_once()

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="polling-feed", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=self.interval + 1)
            self._thread = None


def _envelope(room: str, payload: dict[str, Any]) -> dict[str, Any]:
    return {
        "v": 1,
        "type": "players_change",
        "room": room,
        "id": os.urandom(8).hex(),
        "ts": datetime.now(timezone.utc).isoformat(),
        "payload": payload,
    }


async def publish_room_update(room: str, payload: dict[str, Any]) -> None:
    """Publish a change envelope to room.<room>.players on NATS.

    Opens a short-lived connection so it is safe from any event loop.
    """
    if not nats or not settings.NATS_URL:
        return
    try:
        nc = await nats.connect(settings.NATS_URL, name="infinitequiz")
    except Exception as exc:
        logger.warning("nats_connect_failed", extra={"error": str(exc), "url": settings.NATS_URL})
        return
    try:
        data = json.dumps(_envelope(room, payload), default=str).encode("utf-8")
        await nc.publish(f"room.{room}.players", data)
        await nc.flush()
    except Exception as exc:
        logger.warning("nats_publish_failed", extra={"error": str(exc), "room": room})
    finally:
        await nc.close()


def publish_room_update_sync(room: str, payload: dict[str, Any]) -> None:
    """Sync helper that runs the async publisher. Safe if no loop or NATS."""
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        asyncio.run(publish_room_update(room, payload))
        return
    loop.create_task(publish_room_update(room, payload))

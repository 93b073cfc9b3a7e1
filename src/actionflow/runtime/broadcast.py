# src/actionflow/runtime/broadcast.py
"""Post-commit notification delivery.

Delivery is one-way and at-most-once. A dispatcher never raises into the
caller: every failure is logged as a BroadcastError and counted, and the
action that produced the message keeps its status.
"""

from __future__ import annotations

import itertools
import logging
import queue
import threading
from typing import Any, Callable, Dict, List, Optional, Protocol, Set

from actionflow.runtime.action_types import BroadcastMessage
from actionflow.runtime.errors import BroadcastError
from actionflow.runtime.metrics import inc_counter
from actionflow.runtime.structured_logging import log_event

Json = Dict[str, Any]
Subscriber = Callable[[Json], None]

log = logging.getLogger("actionflow.broadcast")


class Dispatcher(Protocol):
    def dispatch(self, message: BroadcastMessage) -> None: ...


class NullDispatcher:
    """Discards every message."""

    def dispatch(self, message: BroadcastMessage) -> None:
        inc_counter("broadcast_discarded_total", 1)


def _report_failure(message: BroadcastMessage, err: Exception, **fields: Any) -> None:
    be = BroadcastError(details={"type": message.type, "action_id": message.action_id, "error": str(err), **fields})
    inc_counter("broadcast_failed_total", 1)
    log_event(
        log,
        "broadcast_failed",
        level=logging.WARNING,
        code=be.code,
        reason=be.reason,
        details=be.details,
    )


class RoomBroadcaster:
    """In-process room fan-out.

    Subscribers join rooms ("global", "staking", "user:<actor>", ...). A
    message addressed to several rooms reaches each subscriber once, and one
    subscriber failing does not stop delivery to the others.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self._subscribers: Dict[int, Subscriber] = {}
        self._rooms: Dict[str, Set[int]] = {}

    def subscribe(self, rooms: List[str], callback: Subscriber) -> int:
        sid = next(self._ids)
        with self._lock:
            self._subscribers[sid] = callback
            for r in rooms:
                self._rooms.setdefault(str(r), set()).add(sid)
        return sid

    def unsubscribe(self, sid: int) -> None:
        with self._lock:
            self._subscribers.pop(int(sid), None)
            for members in self._rooms.values():
                members.discard(int(sid))

    def room_size(self, room: str) -> int:
        with self._lock:
            return len(self._rooms.get(str(room), ()))

    def dispatch(self, message: BroadcastMessage) -> None:
        with self._lock:
            targets: List[int] = []
            seen: Set[int] = set()
            for r in message.rooms:
                for sid in sorted(self._rooms.get(str(r), ())):
                    if sid not in seen:
                        seen.add(sid)
                        targets.append(sid)
            callbacks = [(sid, self._subscribers[sid]) for sid in targets if sid in self._subscribers]

        body = message.to_json()
        for sid, cb in callbacks:
            try:
                cb(body)
            except Exception as err:
                _report_failure(message, err, subscriber=sid)
                continue
            inc_counter("broadcast_delivered_total", 1)


class BackgroundDispatcher:
    """Bounded queue drained by one daemon thread.

    dispatch() never blocks: when the queue is full the message is dropped
    and counted.
    """

    def __init__(self, inner: Dispatcher, *, max_queue: int = 1000) -> None:
        self._inner = inner
        self._q: "queue.Queue[Optional[BroadcastMessage]]" = queue.Queue(maxsize=max(1, int(max_queue)))
        self._t: Optional[threading.Thread] = None
        self._stop = threading.Event()
        self._started = False

    @property
    def started(self) -> bool:
        return self._started

    def start(self) -> bool:
        if self._started:
            return True
        self._stop.clear()
        self._t = threading.Thread(target=self._run, name="actionflow-broadcast", daemon=True)
        self._t.start()
        self._started = True
        return True

    def stop(self, *, timeout: float = 2.0) -> None:
        self._stop.set()
        try:
            self._q.put_nowait(None)
        except queue.Full:
            pass
        t = self._t
        if t is not None:
            t.join(timeout=timeout)
        self._t = None
        self._started = False

    def dispatch(self, message: BroadcastMessage) -> None:
        try:
            self._q.put_nowait(message)
        except queue.Full:
            inc_counter("broadcast_dropped_total", 1)
            log_event(
                log,
                "broadcast_dropped",
                level=logging.WARNING,
                type=message.type,
                action_id=message.action_id,
            )

    def drain(self) -> None:
        """Block until every queued message has been handed to the inner dispatcher."""
        self._q.join()

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                msg = self._q.get(timeout=0.25)
            except queue.Empty:
                continue
            try:
                if msg is not None:
                    self._inner.dispatch(msg)
            except Exception as err:
                _report_failure(msg, err)  # type: ignore[arg-type]
            finally:
                self._q.task_done()

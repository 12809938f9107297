"""One live notification channel to a client.

Each session owns a bounded delivery queue drained by its own sender task, so
publishers never wait on a slow or dead client. The reconnect policy clients
must follow is defined here and advertised in the welcome frame; the server
never resumes a session, a reconnect always starts a fresh one.
"""
from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from collections.abc import Callable
from contextlib import suppress
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Protocol
from uuid import uuid4

from ..domain import Severity, now_utc

logger = logging.getLogger(__name__)

UNREAD_COUNT_KIND = "unread_count"
NOTIFICATION_KIND = "notification"
PING_KIND = "ping"
WELCOME_KIND = "welcome"

CLOSE_NORMAL = 1000
CLOSE_GOING_AWAY = 1001
CLOSE_HEARTBEAT_TIMEOUT = 4408


class SessionState(str, Enum):
    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"
    RECONNECTING = "RECONNECTING"
    CLOSED = "CLOSED"


@dataclass(frozen=True)
class ReconnectBackoff:
    """delay = min(base * 2 ** (attempt - 1), cap); gives up after max_attempts."""

    base_delay: float = 1.0
    max_delay: float = 30.0
    max_attempts: int = 10

    def delay_for(self, attempt: int) -> float | None:
        if attempt < 1:
            raise ValueError("attempt numbering starts at 1")
        if attempt > self.max_attempts:
            return None
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)

    def to_payload(self) -> dict[str, Any]:
        return {
            "baseDelaySeconds": self.base_delay,
            "maxDelaySeconds": self.max_delay,
            "maxAttempts": self.max_attempts,
        }


class Transport(Protocol):
    async def send_json(self, data: Any) -> None: ...

    async def close(self, code: int = CLOSE_NORMAL) -> None: ...


@dataclass
class OutboundMessage:
    kind: str
    payload: dict[str, Any] = field(default_factory=dict)
    severity: Severity = Severity.NORMAL
    coalesce_key: str | None = None

    def to_frame(self) -> dict[str, Any]:
        return {"type": self.kind, "data": self.payload}


def unread_count_message(count: int) -> OutboundMessage:
    return OutboundMessage(kind=UNREAD_COUNT_KIND, payload={"count": count}, coalesce_key=UNREAD_COUNT_KIND)


class DeliveryQueue:
    """Bounded FIFO that sheds the oldest lowest-severity message on overflow.

    Messages sharing a ``coalesce_key`` replace each other: only the newest is
    kept and it moves to the back of the queue.
    """

    def __init__(self, maxsize: int) -> None:
        if maxsize < 1:
            raise ValueError("maxsize must be positive")
        self.maxsize = maxsize
        self._items: deque[OutboundMessage] = deque()
        self._ready = asyncio.Event()

    def __len__(self) -> int:
        return len(self._items)

    def snapshot(self) -> list[OutboundMessage]:
        return list(self._items)

    def put(self, message: OutboundMessage) -> OutboundMessage | None:
        """Queue ``message``; return whatever got shed (possibly ``message``)."""
        if message.coalesce_key is not None:
            stale = [item for item in self._items if item.coalesce_key == message.coalesce_key]
            for item in stale:
                self._items.remove(item)

        dropped = None
        if len(self._items) >= self.maxsize:
            dropped = self._pick_victim(message)
            if dropped is message:
                return dropped
            self._items.remove(dropped)

        self._items.append(message)
        self._ready.set()
        return dropped

    def _pick_victim(self, incoming: OutboundMessage) -> OutboundMessage:
        candidates = [*self._items, incoming]
        lowest = min(item.severity.rank for item in candidates)
        return next(item for item in candidates if item.severity.rank == lowest)

    async def get(self) -> OutboundMessage:
        while not self._items:
            self._ready.clear()
            await self._ready.wait()
        return self._items.popleft()

    def clear(self) -> None:
        self._items.clear()


class SessionConnection:
    def __init__(
        self,
        *,
        user_id: int,
        transport: Transport,
        session_id: str | None = None,
        maxsize: int = 100,
        heartbeat_interval: float = 10.0,
        heartbeat_missed_limit: int = 3,
        on_close: Callable[["SessionConnection"], Any] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.session_id = session_id or uuid4().hex
        self.user_id = user_id
        self.state = SessionState.CONNECTING
        self.connected_at: datetime = now_utc()
        self.last_heartbeat_at: datetime = self.connected_at
        self.close_reason: str | None = None
        self.delivered = 0
        self.dropped = 0

        self.heartbeat_interval = heartbeat_interval
        self.heartbeat_missed_limit = heartbeat_missed_limit

        self._transport = transport
        self._queue = DeliveryQueue(maxsize)
        self._on_close = on_close
        self._clock = clock
        self._last_heartbeat = clock()
        self._sender: asyncio.Task | None = None
        self._monitor: asyncio.Task | None = None
        self._closed = asyncio.Event()

    def __repr__(self) -> str:
        return f"<SessionConnection {self.session_id} user={self.user_id} state={self.state.value}>"

    @property
    def is_open(self) -> bool:
        return self.state in (SessionState.CONNECTING, SessionState.CONNECTED)

    @property
    def pending(self) -> int:
        return len(self._queue)

    def start(self) -> None:
        if self.state is not SessionState.CONNECTING:
            raise RuntimeError(f"Session {self.session_id} already started")
        self.state = SessionState.CONNECTED
        self._sender = asyncio.create_task(self._send_loop(), name=f"session-sender-{self.session_id}")
        if self.heartbeat_interval > 0:
            self._monitor = asyncio.create_task(
                self._heartbeat_loop(), name=f"session-heartbeat-{self.session_id}"
            )

    def enqueue(self, message: OutboundMessage) -> bool:
        """Non-blocking; False when the session is gone or ``message`` was shed."""
        if not self.is_open:
            return False
        dropped = self._queue.put(message)
        if dropped is not None:
            self.dropped += 1
            logger.warning(
                "Session %s queue full, dropped %s message (severity=%s)",
                self.session_id,
                dropped.kind,
                dropped.severity.value,
            )
        return dropped is not message

    def record_heartbeat(self) -> None:
        self._last_heartbeat = self._clock()
        self.last_heartbeat_at = now_utc()

    def missed_heartbeats(self, now: float | None = None) -> int:
        if self.heartbeat_interval <= 0:
            return 0
        elapsed = (self._clock() if now is None else now) - self._last_heartbeat
        return int(elapsed // self.heartbeat_interval)

    def is_expired(self, now: float | None = None) -> bool:
        return self.missed_heartbeats(now) >= self.heartbeat_missed_limit

    async def _send_loop(self) -> None:
        while True:
            message = await self._queue.get()
            try:
                await self._transport.send_json(message.to_frame())
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("Delivery to session %s failed: %s", self.session_id, exc)
                self.state = SessionState.RECONNECTING
                await self.close(reason="transport_failure")
                return
            self.delivered += 1

    async def _heartbeat_loop(self) -> None:
        while self.is_open:
            await asyncio.sleep(self.heartbeat_interval)
            if self.is_expired():
                logger.info(
                    "Session %s missed %s heartbeats, closing",
                    self.session_id,
                    self.missed_heartbeats(),
                )
                await self.close(reason="heartbeat_timeout", code=CLOSE_HEARTBEAT_TIMEOUT)
                return
            self.enqueue(
                OutboundMessage(kind=PING_KIND, payload={"ts": now_utc().isoformat()}, coalesce_key=PING_KIND)
            )

    async def close(self, reason: str = "closed", code: int = CLOSE_NORMAL) -> None:
        if self.state is SessionState.CLOSED:
            return
        transport_failed = self.state is SessionState.RECONNECTING
        self.state = SessionState.CLOSED
        self.close_reason = reason

        current = asyncio.current_task()
        tasks = [task for task in (self._sender, self._monitor) if task is not None and task is not current]
        for task in tasks:
            task.cancel()
        for task in tasks:
            with suppress(asyncio.CancelledError):
                await task
        self._queue.clear()

        if not transport_failed:
            try:
                await self._transport.close(code)
            except Exception as exc:
                logger.debug("Closing transport for session %s failed: %s", self.session_id, exc)

        self._closed.set()
        logger.info("Session %s closed (%s)", self.session_id, reason)
        if self._on_close is not None:
            self._on_close(self)

    async def wait_closed(self) -> None:
        await self._closed.wait()

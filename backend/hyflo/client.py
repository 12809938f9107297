"""Reference notification client implementing the reconnect policy.

The server treats every connection as a new session, so the client only has
to reconnect with backoff; the welcome frame carries the current unread count
and the policy values to use.
"""
from __future__ import annotations

import asyncio
import inspect
import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any
from urllib.parse import urlencode

import websockets
from websockets.exceptions import InvalidStatus

from .services.session_connection import PING_KIND, WELCOME_KIND, ReconnectBackoff

logger = logging.getLogger(__name__)

CLOSE_UNAUTHORIZED = 4401
REJECTED_HANDSHAKE_STATUSES = (401, 403)

MessageHandler = Callable[[dict[str, Any]], Awaitable[None] | None]


class ReconnectExhausted(ConnectionError):
    """Gave up after the policy's maximum number of attempts."""


class NotificationListener:
    def __init__(
        self,
        url: str,
        token: str,
        *,
        on_message: MessageHandler,
        backoff: ReconnectBackoff | None = None,
        connect: Callable[[str], Any] = websockets.connect,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.url = url
        self.token = token
        self.backoff = backoff or ReconnectBackoff()
        self.session_id: str | None = None
        self.connections = 0
        self._on_message = on_message
        self._connect = connect
        self._sleep = sleep
        self._stopped = False
        self._ws = None

    def _ws_url(self) -> str:
        separator = "&" if "?" in self.url else "?"
        return f"{self.url}{separator}{urlencode({'token': self.token})}"

    async def run(self) -> None:
        """Listen until ``stop`` is called; reconnect with backoff on failures."""
        attempt = 0
        while not self._stopped:
            close_code = None
            try:
                async with self._connect(self._ws_url()) as ws:
                    self._ws = ws
                    self.connections += 1
                    attempt = 0
                    async for raw in ws:
                        await self._handle(ws, raw)
                    close_code = getattr(ws, "close_code", None)
            except asyncio.CancelledError:
                raise
            except InvalidStatus as exc:
                # A rejected token fails the handshake with 401/403.
                if exc.response.status_code in REJECTED_HANDSHAKE_STATUSES:
                    raise PermissionError("Notification token rejected") from exc
                logger.warning("Notification handshake failed: %s", exc)
            except (OSError, websockets.WebSocketException) as exc:
                close_frame = getattr(exc, "rcvd", None)
                close_code = getattr(close_frame, "code", None)
                logger.warning("Notification connection lost: %s", exc)
            finally:
                self._ws = None

            if self._stopped:
                return
            if close_code == CLOSE_UNAUTHORIZED:
                raise PermissionError("Notification token rejected")

            attempt += 1
            delay = self.backoff.delay_for(attempt)
            if delay is None:
                raise ReconnectExhausted(f"Gave up after {self.backoff.max_attempts} reconnect attempts")
            logger.info("Reconnecting in %.1fs (attempt %s/%s)", delay, attempt, self.backoff.max_attempts)
            await self._sleep(delay)

    async def _handle(self, ws, raw: str | bytes) -> None:
        try:
            message = json.loads(raw)
        except ValueError:
            logger.debug("Ignoring malformed frame")
            return

        kind = message.get("type")
        data = message.get("data") or {}
        if kind == WELCOME_KIND:
            self.session_id = data.get("sessionId")
            policy = data.get("reconnect")
            if policy:
                self.backoff = ReconnectBackoff(
                    base_delay=float(policy["baseDelaySeconds"]),
                    max_delay=float(policy["maxDelaySeconds"]),
                    max_attempts=int(policy["maxAttempts"]),
                )
        elif kind == PING_KIND:
            await ws.send(json.dumps({"type": "pong"}))
            return

        result = self._on_message(message)
        if inspect.isawaitable(result):
            await result

    async def stop(self) -> None:
        self._stopped = True
        if self._ws is not None:
            await self._ws.close()

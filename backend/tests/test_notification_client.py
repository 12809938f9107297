from __future__ import annotations

import asyncio
import json

import pytest
import uvicorn
from websockets.datastructures import Headers
from websockets.exceptions import InvalidStatus
from websockets.http11 import Response

from hyflo.auth import RoleAuthorizationProvider
from hyflo.client import NotificationListener, ReconnectExhausted
from hyflo.config import Settings
from hyflo.main import create_app
from hyflo.services.session_connection import ReconnectBackoff
from hyflo.stores.memory import InMemoryReadingStore


class _Socket:
    def __init__(self, frames, *, close_code=1000):
        self.frames = frames
        self.close_code = close_code
        self.sent = []
        self.closed = False

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for frame in self.frames:
            yield json.dumps(frame)

    async def send(self, data):
        self.sent.append(json.loads(data))

    async def close(self):
        self.closed = True


class _Connector:
    """Hands out prepared sockets (or raises prepared errors), then refuses connections."""

    def __init__(self, sockets=()):
        self.sockets = list(sockets)
        self.urls = []

    def __call__(self, url):
        self.urls.append(url)
        if not self.sockets:
            raise ConnectionRefusedError("server down")
        item = self.sockets.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


class _Sleeper:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


def _listener(connector, sleeper, received, **kwargs):
    return NotificationListener(
        "ws://localhost/api/v1/notifications/ws",
        "token-123",
        on_message=received.append,
        connect=connector,
        sleep=sleeper,
        **kwargs,
    )


@pytest.mark.asyncio
async def test_gives_up_after_max_attempts_with_exponential_delays() -> None:
    connector = _Connector()
    sleeper = _Sleeper()
    listener = _listener(connector, sleeper, [], backoff=ReconnectBackoff(base_delay=1.0, max_delay=30.0, max_attempts=3))

    with pytest.raises(ReconnectExhausted):
        await listener.run()

    assert sleeper.delays == [1.0, 2.0, 4.0]
    assert connector.urls[0] == "ws://localhost/api/v1/notifications/ws?token=token-123"


@pytest.mark.asyncio
async def test_adopts_policy_from_welcome_and_answers_pings() -> None:
    welcome = {
        "type": "welcome",
        "data": {
            "sessionId": "abc",
            "reconnect": {"baseDelaySeconds": 2.0, "maxDelaySeconds": 5.0, "maxAttempts": 2},
        },
    }
    notification = {"type": "notification", "data": {"title": "Reading awaiting validation"}}
    socket = _Socket([welcome, {"type": "ping", "data": {}}, notification])
    connector = _Connector([socket])
    sleeper = _Sleeper()
    received = []
    listener = _listener(connector, sleeper, received)

    with pytest.raises(ReconnectExhausted):
        await listener.run()

    assert listener.session_id == "abc"
    assert [message["type"] for message in received] == ["welcome", "notification"]
    assert socket.sent == [{"type": "pong"}]
    assert sleeper.delays == [2.0, 4.0]
    assert listener.connections == 1


@pytest.mark.asyncio
async def test_successful_connection_resets_attempts() -> None:
    connector = _Connector([_Socket([]), _Socket([])])
    sleeper = _Sleeper()
    listener = _listener(connector, sleeper, [], backoff=ReconnectBackoff(base_delay=1.0, max_delay=30.0, max_attempts=2))

    with pytest.raises(ReconnectExhausted):
        await listener.run()

    # Two clean disconnects restart at attempt 1, then two refused connects.
    assert sleeper.delays == [1.0, 1.0, 2.0]


@pytest.mark.asyncio
async def test_rejected_token_stops_reconnecting() -> None:
    connector = _Connector([_Socket([], close_code=4401)])
    sleeper = _Sleeper()
    listener = _listener(connector, sleeper, [])

    with pytest.raises(PermissionError):
        await listener.run()

    assert sleeper.delays == []


@pytest.mark.asyncio
async def test_stop_ends_the_loop() -> None:
    received = []
    connector = _Connector()
    listener = None

    async def _stop_on_first(message):
        received.append(message)
        await listener.stop()

    connector.sockets.append(_Socket([{"type": "notification", "data": {}}]))
    listener = NotificationListener(
        "ws://localhost/ws?x=1",
        "t",
        on_message=_stop_on_first,
        connect=connector,
        sleep=_Sleeper(),
    )

    await listener.run()

    assert len(received) == 1
    assert connector.urls == ["ws://localhost/ws?x=1&token=t"]


def _handshake_rejected(status: int) -> InvalidStatus:
    return InvalidStatus(Response(status, "Rejected", Headers()))


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [401, 403])
async def test_handshake_rejection_stops_reconnecting(status) -> None:
    connector = _Connector([_handshake_rejected(status)])
    sleeper = _Sleeper()
    listener = _listener(connector, sleeper, [])

    with pytest.raises(PermissionError):
        await listener.run()

    assert sleeper.delays == []
    assert len(connector.urls) == 1


@pytest.mark.asyncio
async def test_server_error_on_handshake_is_retried() -> None:
    connector = _Connector([_handshake_rejected(503)])
    sleeper = _Sleeper()
    listener = _listener(connector, sleeper, [], backoff=ReconnectBackoff(base_delay=1.0, max_delay=30.0, max_attempts=2))

    with pytest.raises(ReconnectExhausted):
        await listener.run()

    assert sleeper.delays == [1.0, 2.0]


@pytest.mark.asyncio
async def test_bad_token_against_running_app_fails_fast() -> None:
    app = create_app(
        Settings(ENV="test"),
        reading_store=InMemoryReadingStore(),
        authorization=RoleAuthorizationProvider(),
    )
    server = uvicorn.Server(uvicorn.Config(app, host="127.0.0.1", port=0, log_level="warning"))
    serving = asyncio.create_task(server.serve())
    try:
        while not server.started:
            if serving.done():
                serving.result()
                pytest.fail("server stopped before it started")
            await asyncio.sleep(0.01)
        port = server.servers[0].sockets[0].getsockname()[1]

        sleeper = _Sleeper()
        listener = NotificationListener(
            f"ws://127.0.0.1:{port}/api/v1/notifications/ws",
            "garbage",
            on_message=lambda message: None,
            sleep=sleeper,
        )

        with pytest.raises(PermissionError):
            await asyncio.wait_for(listener.run(), timeout=10)
        assert sleeper.delays == []
    finally:
        server.should_exit = True
        await serving

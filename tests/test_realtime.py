"""Tests for the Phoenix realtime socket adapter."""

import asyncio
import json

import pytest
from aiohttp import WSMsgType, web
from aiohttp.test_utils import TestServer

from laura_sync.adapters import RealtimeSocket
from laura_sync.core.errors import ChannelError

TOPIC = "realtime:camera-CAM001"


def build_app(frames_from_client, *, join_status="ok", after_join=None):
    async def websocket_handler(request: web.Request):
        assert request.query["apikey"] == "anon-key"
        assert request.query["vsn"] == "1.0.0"
        ws = web.WebSocketResponse()
        await ws.prepare(request)

        async for message in ws:
            if message.type != WSMsgType.TEXT:
                break
            frame = json.loads(message.data)
            frames_from_client.append(frame)
            if frame["event"] == "phx_join":
                await ws.send_json(
                    {
                        "topic": frame["topic"],
                        "event": "phx_reply",
                        "payload": {"status": join_status, "response": {}},
                        "ref": frame["ref"],
                    }
                )
                if after_join is not None:
                    await after_join(ws)
        return ws

    app = web.Application()
    app.router.add_get("/socket", websocket_handler)
    return app


def socket_url(server) -> str:
    return str(server.make_url("/socket")) + "?apikey=anon-key&vsn=1.0.0"


@pytest.mark.asyncio
async def test_join_receive_and_broadcast():
    frames = []

    async def send_command(ws):
        await ws.send_json({"topic": "realtime:other", "event": "broadcast", "payload": {}})
        await ws.send_json(
            {
                "topic": TOPIC,
                "event": "broadcast",
                "payload": {
                    "type": "broadcast",
                    "event": "command",
                    "payload": {"command": "take_photo", "command_id": "cmd-1"},
                },
                "ref": None,
            }
        )

    async with TestServer(build_app(frames, after_join=send_command)) as server:
        socket = RealtimeSocket(socket_url(server))
        try:
            await socket.connect()
            await socket.join("camera-CAM001")
            assert socket.joined is True

            message = await socket.receive(timeout=1.0)
            assert message is not None
            assert message.event == "command"
            assert message.payload["command_id"] == "cmd-1"

            await socket.broadcast("camera-CAM001", "status", {"type": "status"})
            assert await socket.receive(timeout=0.1) is None
        finally:
            await socket.close()

    join = frames[0]
    assert join["event"] == "phx_join"
    assert join["topic"] == TOPIC
    assert join["payload"]["config"]["broadcast"] == {"self": False, "ack": False}

    outbound = frames[1]
    assert outbound["event"] == "broadcast"
    assert outbound["payload"] == {
        "type": "broadcast",
        "event": "status",
        "payload": {"type": "status"},
    }


@pytest.mark.asyncio
async def test_heartbeat_sent_while_waiting():
    frames = []

    async with TestServer(build_app(frames)) as server:
        socket = RealtimeSocket(socket_url(server), heartbeat_interval=0.05)
        try:
            await socket.connect()
            await socket.join("camera-CAM001")
            assert await socket.receive(timeout=0.2) is None
            await asyncio.sleep(0.05)
        finally:
            await socket.close()

    heartbeats = [frame for frame in frames if frame["event"] == "heartbeat"]
    assert heartbeats
    assert heartbeats[0]["topic"] == "phoenix"


@pytest.mark.asyncio
async def test_refused_join_is_terminal():
    async with TestServer(build_app([], join_status="error")) as server:
        socket = RealtimeSocket(socket_url(server))
        try:
            await socket.connect()
            with pytest.raises(ChannelError) as excinfo:
                await socket.join("camera-CAM001")
        finally:
            await socket.close()

    assert excinfo.value.terminal is True


@pytest.mark.asyncio
async def test_rejected_handshake_is_terminal():
    async def reject(request: web.Request):
        return web.Response(status=401)

    app = web.Application()
    app.router.add_get("/socket", reject)

    async with TestServer(app) as server:
        socket = RealtimeSocket(socket_url(server))
        try:
            with pytest.raises(ChannelError) as excinfo:
                await socket.connect()
        finally:
            await socket.close()

    assert excinfo.value.terminal is True


@pytest.mark.asyncio
async def test_server_close_raises_channel_error():
    async def close_after_join(ws):
        await ws.close()

    async with TestServer(build_app([], after_join=close_after_join)) as server:
        socket = RealtimeSocket(socket_url(server))
        try:
            await socket.connect()
            await socket.join("camera-CAM001")
            with pytest.raises(ChannelError):
                await socket.receive(timeout=1.0)
        finally:
            await socket.close()

    assert socket.connected is False


@pytest.mark.asyncio
async def test_broadcast_requires_join():
    socket = RealtimeSocket("http://127.0.0.1:1/socket")

    with pytest.raises(ChannelError):
        await socket.broadcast("camera-CAM001", "status", {})

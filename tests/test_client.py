"""Tests for the camera sync client façade."""

import asyncio
import dataclasses
import json

import pytest

from laura_sync.client import CameraSyncClient, ClientState
from laura_sync.config import HeartbeatConfig
from laura_sync.core.errors import ConfigError, NotifyFailedError, StorageFailedError
from laura_sync.core.models import CameraState, ChannelState, StatusReport
from laura_sync.core.protocols import HttpResponse

REGISTER_SUFFIX = "/api/cameras"
PHOTOS_SUFFIX = "/api/cameras/abc-123/photos"
STATUS_SUFFIX = "/api/cameras/abc-123/status"
HISTORY_SUFFIX = "/api/cameras/abc-123/command"
STORAGE_FRAGMENT = "storage.test/storage/v1/object/camera-photos/CAM001/"


@pytest.fixture
def registered_http(fake_http):
    fake_http.route_json("POST", REGISTER_SUFFIX, {"camera": {"id": "abc-123"}}, status=201)
    fake_http.route("POST", "/camera-photos/CAM001/*", HttpResponse(status=200, body=b"{}"))
    fake_http.route_json("POST", PHOTOS_SUFFIX, {"photo": {"id": "p-1"}}, status=201)
    fake_http.route_json("POST", STATUS_SUFFIX, {"camera": {"id": "abc-123"}})
    fake_http.route_json("GET", HISTORY_SUFFIX, {"commands": []})
    return fake_http


def make_report(state: CameraState = CameraState.ONLINE) -> StatusReport:
    return StatusReport(
        battery_percent=75, wifi_signal=-55, state=state, free_memory_bytes=2048
    )


async def wait_until(predicate, timeout=3.0):
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.01)


def test_is_configured_requires_every_option(write_config, fake_http):
    client = CameraSyncClient(http=fake_http)
    assert client.is_configured() is False
    assert client.state is ClientState.UNCONFIGURED

    client.configure(write_config())
    assert client.is_configured() is True
    assert client.state is ClientState.CONFIGURED

    client.configure(write_config(cloud={"api_key": ""}))
    assert client.is_configured() is False

    client.configure(write_config(cloud={"api_base_url": "https://laura.test/"}))
    assert client.is_configured() is False


@pytest.mark.asyncio
async def test_ensure_registered_requires_configuration(fake_http):
    client = CameraSyncClient(http=fake_http)

    with pytest.raises(ConfigError):
        await client.ensure_registered()


@pytest.mark.asyncio
async def test_ensure_registered_calls_registration_once(write_config, registered_http):
    client = CameraSyncClient(write_config(), http=registered_http)

    results = await asyncio.gather(client.ensure_registered(), client.ensure_registered())
    assert results == [True, True]
    assert await client.ensure_registered() is True

    registrations = [
        item for item in registered_http.requests if item.url.endswith(REGISTER_SUFFIX)
    ]
    assert len(registrations) == 1
    assert registrations[0].json["camera_id"] == "CAM001"
    assert registrations[0].json["camera_name"] == "Kitchen"
    assert client.durable_id == "abc-123"


@pytest.mark.asyncio
async def test_ensure_registered_returns_false_on_failure(write_config, fake_http):
    fake_http.route_json("POST", REGISTER_SUFFIX, {"error": "conflict"}, status=409)
    client = CameraSyncClient(write_config(), http=fake_http)

    assert await client.ensure_registered() is False
    assert client.durable_id is None

    snapshot = await client.health.snapshot()
    components = {item["name"]: item for item in snapshot["components"]}
    assert components["identity"]["healthy"] is False


@pytest.mark.asyncio
async def test_durable_id_from_config_skips_registration(write_config, fake_http):
    client = CameraSyncClient(
        write_config(camera={"durable_id": "abc-123"}), http=fake_http
    )

    assert await client.ensure_registered() is True
    assert fake_http.requests == []


@pytest.mark.asyncio
async def test_photo_registered_against_durable_id(write_config, registered_http):
    client = CameraSyncClient(write_config(), http=registered_http)
    await client.ensure_registered()

    report = await client.capture_and_upload(b"\xff\xd8jpeg", "cmd-1", metadata={"flash": False})

    storage = registered_http.calls("POST", STORAGE_FRAGMENT)
    assert len(storage) == 1
    assert storage[0].data == b"\xff\xd8jpeg"
    assert storage[0].headers["Content-Type"] == "image/jpeg"

    notify = registered_http.calls("POST", "/photos")
    assert len(notify) == 1
    assert notify[0].url == "https://laura.test/api/cameras/abc-123/photos"
    assert notify[0].json["command_id"] == "cmd-1"
    assert notify[0].json["photo_url"].startswith(
        "https://storage.test/storage/v1/object/public/camera-photos/CAM001/"
    )
    assert notify[0].json["metadata"] == {
        "quality": 85,
        "resolution": "1280x720",
        "flash": False,
    }
    assert report.storage_url == notify[0].json["photo_url"]


@pytest.mark.asyncio
async def test_storage_failure_skips_notify(write_config, registered_http):
    registered_http.route("POST", "/camera-photos/CAM001/*", HttpResponse(status=500))
    client = CameraSyncClient(write_config(), http=registered_http)
    await client.ensure_registered()

    with pytest.raises(StorageFailedError):
        await client.capture_and_upload(b"jpeg")

    assert registered_http.calls("POST", "/photos") == []


@pytest.mark.asyncio
async def test_retry_notify_does_not_store_again(write_config, registered_http):
    responses = [HttpResponse(status=503), HttpResponse(status=201, body=b"{}")]
    registered_http.route("POST", PHOTOS_SUFFIX, lambda request: responses.pop(0))
    client = CameraSyncClient(write_config(), http=registered_http)
    await client.ensure_registered()

    with pytest.raises(NotifyFailedError) as excinfo:
        await client.capture_and_upload(
            b"jpeg",
            "cmd-2",
            metadata={"flash": True},
            thumbnail_url="https://cdn.test/thumb.jpg",
        )

    report = await client.retry_notify(excinfo.value)

    assert len(registered_http.calls("POST", STORAGE_FRAGMENT)) == 1
    notify = registered_http.calls("POST", "/photos")
    assert len(notify) == 2
    assert notify[1].json == notify[0].json
    assert notify[1].json["command_id"] == "cmd-2"
    assert notify[1].json["thumbnail_url"] == "https://cdn.test/thumb.jpg"
    assert notify[1].json["metadata"]["flash"] is True
    assert report.command_id == "cmd-2"
    assert report.storage_url == excinfo.value.storage_url


@pytest.mark.asyncio
async def test_send_status_falls_back_to_http(write_config, registered_http):
    client = CameraSyncClient(write_config(), http=registered_http)

    assert await client.send_status(make_report()) is False

    await client.ensure_registered()
    assert await client.send_status(make_report()) is True

    status = registered_http.calls("POST", "/status")
    assert len(status) == 1
    assert status[0].json["status"] == "online"
    assert status[0].json["battery_level"] == 75
    assert status[0].json["wifi_signal"] == -55
    assert status[0].json["firmware_version"] == "1.0.0"


@pytest.mark.asyncio
async def test_send_status_reports_rejection(write_config, registered_http):
    registered_http.route_json("POST", STATUS_SUFFIX, {"error": "nope"}, status=500)
    client = CameraSyncClient(write_config(), http=registered_http)
    await client.ensure_registered()

    assert await client.send_status(make_report()) is False


@pytest.mark.asyncio
async def test_process_pending_commands_polls_once(
    write_config, registered_http, live_factory, history_record
):
    registered_http.route_json(
        "GET",
        HISTORY_SUFFIX,
        {"commands": [history_record("cmd-2"), history_record("cmd-1", command_type="get_status")]},
    )
    client = CameraSyncClient(write_config(), http=registered_http, live_factory=live_factory)
    handled = []

    assert await client.process_pending_commands(handled.append) == 2
    assert await client.process_pending_commands(handled.append) == 0

    assert [command.command_id for command in handled] == ["cmd-1", "cmd-2"]
    await client.stop()
    assert registered_http.closed is False


@pytest.mark.asyncio
async def test_run_dispatches_live_commands_and_publishes(
    write_config, registered_http, live_factory
):
    live = live_factory.queue()
    handled = []

    client = CameraSyncClient(write_config(), http=registered_http, live_factory=live_factory)

    async def handler(command):
        handled.append(command.command_id)
        await client.capture_and_upload(b"jpeg", command.command_id)

    runner = asyncio.create_task(client.run(handler))
    await wait_until(lambda: client.channel_state is ChannelState.SUBSCRIBED)
    assert client.state is ClientState.ACTIVE

    live.push_command("cmd-1")
    live.push_command("cmd-1")
    await wait_until(lambda: live.events("photo"))

    assert await client.send_status(make_report()) is True
    await client.stop()
    await runner

    assert handled == ["cmd-1"]
    photo = live.events("photo")[0]
    assert photo["type"] == "photo"
    assert photo["command_id"] == "cmd-1"
    assert photo["data"]["photo_url"].startswith("https://storage.test/")
    status = live.events("status")[-1]
    assert status["camera_id"] == "CAM001"
    assert status["data"]["battery_level"] == 75
    assert client.state is ClientState.STOPPED
    assert live.closed is True


@pytest.mark.asyncio
async def test_run_degrades_to_polling(write_config, registered_http, live_factory, history_record):
    live_factory.fail(3)
    registered_http.route_json("GET", HISTORY_SUFFIX, {"commands": [history_record("cmd-7")]})
    handled = []
    client = CameraSyncClient(
        write_config(commands={"subscribe_attempts": "3"}),
        http=registered_http,
        live_factory=live_factory,
    )

    runner = asyncio.create_task(client.run(handled.append))
    await wait_until(lambda: handled)
    assert client.state is ClientState.DEGRADED
    await client.stop()
    await runner

    assert [command.command_id for command in handled] == ["cmd-7"]
    assert len(live_factory.created) == 3

    snapshot = await client.health.snapshot()
    assert snapshot["status"] == "degraded"


@pytest.mark.asyncio
async def test_heartbeat_reports_error_until_registered(write_config, fake_http, live_factory):
    attempts = []

    def register(request):
        attempts.append(request)
        if len(attempts) == 1:
            return HttpResponse(status=503)
        return HttpResponse(status=201, body=json.dumps({"camera": {"id": "abc-123"}}).encode())

    fake_http.route("POST", REGISTER_SUFFIX, register)
    fake_http.route_json("POST", STATUS_SUFFIX, {})
    fake_http.route_json("GET", HISTORY_SUFFIX, {"commands": []})
    client = CameraSyncClient(write_config(), http=fake_http, live_factory=live_factory)

    runner = asyncio.create_task(client.run())
    await wait_until(lambda: fake_http.calls("POST", "/status"))
    await client.stop()
    await runner

    # The first tick ran before registration succeeded and was held.
    status = fake_http.calls("POST", "/status")[0]
    assert status.json["status"] == "error"
    assert len(attempts) == 2


@pytest.mark.asyncio
async def test_run_requires_configuration(fake_http):
    client = CameraSyncClient(http=fake_http)

    with pytest.raises(ConfigError):
        await client.run()


@pytest.mark.asyncio
async def test_dispatched_commands_are_acknowledged(
    write_config, registered_http, live_factory, history_record
):
    registered_http.route_json(
        "GET",
        HISTORY_SUFFIX,
        {"commands": [history_record("row-2"), history_record("row-1", command_type="reboot")]},
    )
    registered_http.route_json("POST", "/api/cameras/abc-123/commands/*", {"message": "ok"})
    client = CameraSyncClient(write_config(), http=registered_http, live_factory=live_factory)

    def handler(command):
        if command.command_id == "row-1":
            raise RuntimeError("watchdog busy")

    assert await client.process_pending_commands(handler) == 2
    await client.stop()

    acks = {
        item.url.rsplit("/", 1)[-1]: item.json
        for item in registered_http.calls("POST", "/commands/")
    }
    assert acks == {
        "row-1": {"status": "failed", "result": {"error": "watchdog busy"}},
        "row-2": {"status": "completed", "result": {}},
    }


@pytest.mark.asyncio
async def test_heartbeat_keeps_cadence_while_polling(
    write_config, registered_http, live_factory, history_record
):
    live_factory.fail(3)
    registered_http.route_json("GET", HISTORY_SUFFIX, {"commands": [history_record("cmd-7")]})
    loop = asyncio.get_running_loop()
    posted = []

    def record_status(request):
        posted.append((loop.time(), request.json["status"]))
        return HttpResponse(status=200, body=b"{}")

    registered_http.route("POST", STATUS_SUFFIX, record_status)
    config = dataclasses.replace(
        write_config(), heartbeat=HeartbeatConfig(status_interval_seconds=0.1)
    )
    client = CameraSyncClient(config, http=registered_http, live_factory=live_factory)

    runner = asyncio.create_task(client.run(lambda command: None))
    await wait_until(lambda: client.channel_state is ChannelState.DEGRADED_POLLING)
    first_post = len(posted)
    first_poll = len(registered_http.calls("GET", HISTORY_SUFFIX))
    await wait_until(
        lambda: len(posted) >= first_post + 5
        and len(registered_http.calls("GET", HISTORY_SUFFIX)) >= first_poll + 2
    )
    assert client.state is ClientState.DEGRADED
    await client.stop()
    await runner

    stamps = [stamp for stamp, _ in posted[first_post:]]
    gaps = [later - earlier for earlier, later in zip(stamps, stamps[1:])]
    assert min(gaps) >= 0.05
    assert all(status == "online" for _, status in posted[first_post:])

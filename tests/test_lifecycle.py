import asyncio

import pytest

from botpanel.manager.connection import ConnectionState
from botpanel.utils.models import BotSpec, BotStatus

from conftest import RecordingSubscriber


async def _make_bot(storage, **kwargs):
    fields = {"name": "Helper", "token": "MTIzNDU2Nzg5.abc.def"}
    fields.update(kwargs)
    return await storage.create_bot(BotSpec(**fields))


@pytest.mark.asyncio
async def test_create_music_bot_starts_it(manager, storage, factory):
    bot = await manager.create_bot({"name": "Tunes", "token": "abc.def.ghi", "botType": "MUSIC"})
    assert bot is not None
    assert bot.permissions == "36700160"
    assert bot.invite_config["scopes"] == ["bot", "applications.commands"]

    handle = manager.get_handle(bot.id)
    assert handle is not None and handle.is_online
    assert factory.last.profile.name == "MUSIC"
    assert "voice_states" in factory.last.profile.intents
    assert factory.last.token == "abc.def.ghi"

    stored = await storage.get_bot(bot.id)
    assert stored.status == "ONLINE"
    assert stored.is_running is True
    assert stored.last_started is not None
    await manager.shutdown()


@pytest.mark.asyncio
async def test_create_rejects_missing_token(manager, storage):
    assert await manager.create_bot({"name": "NoToken", "token": ""}) is None
    assert await manager.create_bot({"name": "  ", "token": "t"}) is None
    assert await storage.get_all_bots() == []


@pytest.mark.asyncio
async def test_create_logs_additional_files(manager, storage):
    bot = await manager.create_bot(
        {
            "name": "Files",
            "token": "t",
            "additionalFiles": [{"name": "a.js", "content": "x"}, {"name": "b.js", "content": "y"}],
        }
    )
    messages = [e.message for e in await storage.get_logs(limit=50)]
    assert "Received additional files: a.js, b.js" in messages
    assert "Bot created with 2 additional files" in messages
    await manager.stop_bot(bot.id)


@pytest.mark.asyncio
async def test_start_is_idempotent(manager, storage, factory):
    bot = await _make_bot(storage)
    assert await manager.start_bot(bot.id) is True
    assert await manager.start_bot(bot.id) is True
    assert len(factory.clients) == 1
    assert len(manager.handles()) == 1
    warnings = [e for e in await storage.get_logs_by_bot_id(bot.id) if e.level == "warning"]
    assert warnings[0].message == "Bot is already running"
    await manager.shutdown()


@pytest.mark.asyncio
async def test_concurrent_starts_build_one_connection(manager, storage, factory):
    bot = await _make_bot(storage)
    results = await asyncio.gather(*(manager.start_bot(bot.id) for _ in range(3)))
    assert results == [True, True, True]
    assert len(factory.clients) == 1
    await manager.shutdown()


@pytest.mark.asyncio
async def test_stop_without_handle_is_noop(manager, storage):
    bot = await _make_bot(storage)
    await storage.update_bot(bot.id, {"is_running": True})
    assert await manager.stop_bot(bot.id) is False
    stored = await storage.get_bot(bot.id)
    assert stored.is_running is True


@pytest.mark.asyncio
async def test_stop_clears_desired_running(manager, storage, factory):
    bot = await _make_bot(storage)
    await manager.start_bot(bot.id)
    assert await manager.stop_bot(bot.id) is True
    assert manager.get_handle(bot.id) is None
    assert factory.last.closed is True
    stored = await storage.get_bot(bot.id)
    assert stored.status == "OFFLINE"
    assert stored.is_running is False


@pytest.mark.asyncio
async def test_restart_replaces_handle_and_keeps_intent(manager, storage, factory):
    bot = await _make_bot(storage)
    await manager.start_bot(bot.id)
    first = manager.get_handle(bot.id)
    assert await manager.restart_bot(bot.id) is True
    second = manager.get_handle(bot.id)
    assert second is not first
    assert first.closed
    assert len(manager.handles()) == 1
    assert factory.clients[0].closed and not factory.clients[1].closed
    assert (await storage.get_bot(bot.id)).is_running is True
    await manager.shutdown()


@pytest.mark.asyncio
async def test_login_failure_is_logged_and_reported(manager, storage, factory):
    bot = await _make_bot(storage)
    factory.fail_logins = 1
    assert await manager.start_bot(bot.id) is False
    assert manager.get_handle(bot.id) is None
    assert factory.last.closed is True
    entry = (await storage.get_logs_by_bot_id(bot.id))[0]
    assert entry.level == "error"
    assert entry.message == "Failed to start: An invalid token was provided."
    assert (await storage.get_bot(bot.id)).status == "OFFLINE"


@pytest.mark.asyncio
async def test_start_unknown_bot_logs_missing_token(manager, storage):
    assert await manager.start_bot(404) is False
    entry = (await storage.get_logs_by_bot_id(404))[0]
    assert entry.message == "Bot token not found"


@pytest.mark.asyncio
async def test_client_events_drive_status(manager, storage, factory):
    bot = await _make_bot(storage)
    await manager.start_bot(bot.id)
    handle = manager.get_handle(bot.id)
    client = factory.last

    client.emit("error", RuntimeError("heartbeat blocked"))
    await handle.drain()
    assert handle.state is ConnectionState.DEGRADED
    assert (await storage.get_bot(bot.id)).status == "WARNING"
    messages = [e.message for e in await storage.get_logs_by_bot_id(bot.id)]
    assert "Discord error: heartbeat blocked" in messages

    client.emit("resumed")
    await handle.drain()
    assert handle.state is ConnectionState.ONLINE
    assert (await storage.get_bot(bot.id)).status == "ONLINE"

    client.emit("disconnect")
    client.emit("reconnecting")
    await handle.drain()
    assert handle.state is ConnectionState.DEGRADED
    assert (await storage.get_bot(bot.id)).status == "WARNING"

    client.emit("ready")
    await handle.drain()
    assert handle.status == BotStatus.ONLINE
    assert "Bot Helper is now online" in [e.message for e in await storage.get_logs_by_bot_id(bot.id)]
    await manager.shutdown()


@pytest.mark.asyncio
async def test_events_after_stop_are_dropped(manager, storage, factory):
    bot = await _make_bot(storage)
    await manager.start_bot(bot.id)
    client = factory.last
    await manager.stop_bot(bot.id)
    client.emit("error", RuntimeError("late"))
    await asyncio.sleep(0)
    assert (await storage.get_bot(bot.id)).status == "OFFLINE"


@pytest.mark.asyncio
async def test_delete_stops_and_removes(manager, storage, factory):
    bot = await _make_bot(storage)
    await manager.start_bot(bot.id)
    assert await manager.delete_bot(bot.id) is True
    assert manager.get_handle(bot.id) is None
    assert factory.last.closed
    assert await storage.get_bot(bot.id) is None
    assert await manager.delete_bot(bot.id) is False


@pytest.mark.asyncio
async def test_update_bot(manager, storage):
    bot = await _make_bot(storage)
    updated = await manager.update_bot(bot.id, {"name": "Renamed", "prefix": "?"})
    assert updated.name == "Renamed" and updated.prefix == "?"
    assert await manager.update_bot(999, {"name": "x"}) is None


@pytest.mark.asyncio
async def test_shutdown_keeps_persisted_state(manager, storage, factory):
    bot = await _make_bot(storage)
    await manager.start_bot(bot.id)
    await manager.shutdown()
    assert manager.handles() == {}
    assert factory.last.closed
    stored = await storage.get_bot(bot.id)
    assert stored.is_running is True
    assert stored.status == "ONLINE"


@pytest.mark.asyncio
async def test_snapshot_hides_tokens(manager, storage):
    await _make_bot(storage)
    await storage.create_metrics(cpu_usage=12)
    sub = RecordingSubscriber()
    await manager.add_client(sub)
    snapshot = sub.received[0]
    assert snapshot["type"] == "statusUpdate"
    assert "token" not in snapshot["bots"][0]
    assert snapshot["bots"][0]["hasToken"] is True
    assert snapshot["bots"][0]["isRunning"] is False
    assert snapshot["metrics"]["cpuUsage"] == 12

    manager.remove_client(sub)
    assert await manager.broadcast_update() == 0


@pytest.mark.asyncio
async def test_create_accepts_invite_config_as_json_string(manager, storage):
    bot = await manager.create_bot(
        {"name": "Legacy", "token": "t", "inviteConfig": '{"scopes": ["bot"], "description": "old form"}'}
    )
    assert bot.invite_config == {"scopes": ["bot"], "description": "old form"}
    assert await manager.create_bot({"name": "Broken", "token": "t", "inviteConfig": "{not json"}) is None
    await manager.shutdown()

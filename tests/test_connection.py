import pytest

from botpanel.manager.connection import (
    ConnectionHandle,
    ConnectionState,
    DiscordChatClient,
    build_intents,
)
from botpanel.utils.models import BotStatus
from botpanel.utils.profiles import profile_for

from conftest import FakeChatClient


class Recorder:
    def __init__(self):
        self.seen = []

    async def __call__(self, handle, event, error):
        self.seen.append((event, handle.state))


@pytest.mark.asyncio
async def test_state_machine_transitions():
    listener = Recorder()
    client = FakeChatClient(profile_for("CUSTOM"))
    handle = ConnectionHandle(1, client, listener)
    assert handle.state is ConnectionState.CONNECTING
    assert handle.status == BotStatus.OFFLINE
    assert handle.uptime_seconds() == 0

    handle.mark_online()
    assert handle.is_online and handle.start_time is not None

    for event in ("disconnect", "reconnecting", "resumed", "error", "ready"):
        client.emit(event)
    await handle.drain()
    # each listener call sees the state after its own transition
    assert listener.seen == [
        ("disconnect", ConnectionState.DEGRADED),
        ("reconnecting", ConnectionState.DEGRADED),
        ("resumed", ConnectionState.ONLINE),
        ("error", ConnectionState.DEGRADED),
        ("ready", ConnectionState.ONLINE),
    ]
    await handle.close()


@pytest.mark.asyncio
async def test_close_is_terminal():
    listener = Recorder()
    client = FakeChatClient(profile_for("CUSTOM"))
    handle = ConnectionHandle(2, client, listener)
    handle.mark_online()
    await handle.close()
    assert handle.closed and handle.status == BotStatus.OFFLINE
    assert client.closed
    client.emit("ready")
    await handle.drain()
    assert listener.seen == []
    assert handle.state is ConnectionState.OFFLINE


@pytest.mark.asyncio
async def test_listener_failure_does_not_stop_pump():
    calls = []

    async def flaky(handle, event, error):
        calls.append(event)
        if event == "error":
            raise RuntimeError("listener broke")

    client = FakeChatClient(profile_for("CUSTOM"))
    handle = ConnectionHandle(3, client, flaky)
    handle.mark_online()
    client.emit("error")
    client.emit("resumed")
    await handle.drain()
    assert calls == ["error", "resumed"]
    assert handle.is_online
    await handle.close()


@pytest.mark.asyncio
async def test_latency_probe_errors_read_as_no_signal():
    class Broken(FakeChatClient):
        def latency_ms(self):
            raise OSError("gone")

    handle = ConnectionHandle(4, Broken(profile_for("CUSTOM")), Recorder())
    assert handle.latency_ms() is None


def test_intents_follow_profile():
    music = build_intents(profile_for("music"))
    assert music.guilds and music.guild_messages and music.voice_states
    assert not music.members

    moderation = build_intents(profile_for("MODERATION"))
    assert moderation.moderation and not moderation.voice_states

    minimal = build_intents(profile_for("something-else"))
    assert minimal.guilds and minimal.guild_messages
    assert not minimal.voice_states and not minimal.moderation


def test_discord_client_reports_no_latency_before_connecting():
    client = DiscordChatClient(profile_for("GAMING"))
    assert client.latency_ms() is None
    assert client.guild_count() == 0
    assert client.command_count() == 0

"""Chat client seam and per-bot connection handle.

`ChatClient` is the narrow interface the lifecycle manager needs from a
chat-platform connection; `DiscordChatClient` implements it with discord.py.
Tests substitute their own client, so nothing here needs a network.

`ConnectionHandle` owns one client and turns its lifecycle callbacks into an
explicit state machine::

    CONNECTING -> ONLINE <-> DEGRADED -> OFFLINE

Client callbacks only enqueue events. A single pump task per handle applies
each transition and then awaits the manager's listener, so the listener for
one bot never runs concurrently with itself.
"""
from __future__ import annotations

import asyncio
import contextlib
import logging
import math
import sys
import time
from datetime import datetime
from enum import Enum
from typing import Awaitable, Callable, Optional, Tuple

import discord
from discord import app_commands

from botpanel.utils.models import BotStatus, utcnow
from botpanel.utils.profiles import CapabilityProfile

logger = logging.getLogger("botpanel.connection")

# lifecycle events relayed by clients
READY = "ready"
ERROR = "error"
DISCONNECT = "disconnect"
RECONNECTING = "reconnecting"
RESUMED = "resumed"

Relay = Callable[[str, Optional[BaseException]], None]


class ConnectionState(str, Enum):
    CONNECTING = "CONNECTING"
    ONLINE = "ONLINE"
    DEGRADED = "DEGRADED"
    OFFLINE = "OFFLINE"


_STATUS = {
    ConnectionState.CONNECTING: BotStatus.OFFLINE,
    ConnectionState.ONLINE: BotStatus.ONLINE,
    ConnectionState.DEGRADED: BotStatus.WARNING,
    ConnectionState.OFFLINE: BotStatus.OFFLINE,
}

_TRANSITIONS = {
    READY: ConnectionState.ONLINE,
    RESUMED: ConnectionState.ONLINE,
    ERROR: ConnectionState.DEGRADED,
    DISCONNECT: ConnectionState.DEGRADED,
}


class ChatClient:
    """Interface for one chat-platform connection."""

    def set_listener(self, relay: Relay) -> None:
        raise NotImplementedError

    async def login(self, token: str) -> None:
        """Authenticate and start the session. Raises on bad credentials."""
        raise NotImplementedError

    async def close(self) -> None:
        raise NotImplementedError

    def latency_ms(self) -> Optional[float]:
        """Heartbeat latency, or None when there is no signal."""
        raise NotImplementedError

    def guild_count(self) -> int:
        raise NotImplementedError

    def command_count(self) -> int:
        raise NotImplementedError


def build_intents(profile: CapabilityProfile) -> discord.Intents:
    intents = discord.Intents.none()
    for name in profile.intents:
        if hasattr(intents, name):
            setattr(intents, name, True)
        else:
            logger.warning("Unknown intent %r in profile %s", name, profile.name)
    return intents


class _GatewayClient(discord.Client):
    """discord.Client that forwards lifecycle callbacks to a relay."""

    def __init__(self, relay: Relay, **kwargs) -> None:
        super().__init__(**kwargs)
        self._relay = relay
        self._dropped = False
        self.tree = app_commands.CommandTree(self)
        self.command_total = 0

    async def on_ready(self) -> None:
        try:
            self.command_total = len(await self.tree.fetch_commands())
        except discord.HTTPException:
            logger.debug("Could not fetch application commands for %s", self.user)
        self._relay(READY, None)

    async def on_connect(self) -> None:
        if self._dropped:
            self._relay(RECONNECTING, None)

    async def on_resumed(self) -> None:
        self._dropped = False
        self._relay(RESUMED, None)

    async def on_disconnect(self) -> None:
        self._dropped = True
        self._relay(DISCONNECT, None)

    async def on_error(self, event_method: str, /, *args, **kwargs) -> None:
        exc = sys.exc_info()[1]
        logger.error("Unhandled error in %s", event_method, exc_info=exc)
        self._relay(ERROR, exc)


class DiscordChatClient(ChatClient):
    def __init__(self, profile: CapabilityProfile) -> None:
        self.profile = profile
        self._relay: Relay = lambda event, error: None
        self._client = _GatewayClient(self._forward, intents=build_intents(profile))
        self._gateway: Optional[asyncio.Task] = None

    def _forward(self, event: str, error: Optional[BaseException]) -> None:
        self._relay(event, error)

    def set_listener(self, relay: Relay) -> None:
        self._relay = relay

    async def login(self, token: str) -> None:
        # login() only validates the token over HTTP; the gateway session runs
        # in the background and reports through the relay.
        await self._client.login(token)
        self._gateway = asyncio.create_task(self._run_gateway(), name=f"gateway-{self.profile.name}")

    async def _run_gateway(self) -> None:
        try:
            await self._client.connect(reconnect=True)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("Gateway session ended with an error: %s", exc)
            self._relay(ERROR, exc)

    async def close(self) -> None:
        try:
            await self._client.close()
        finally:
            if self._gateway is not None and not self._gateway.done():
                self._gateway.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await self._gateway

    def latency_ms(self) -> Optional[float]:
        latency = self._client.latency
        if latency is None or math.isnan(latency) or math.isinf(latency):
            return None
        return latency * 1000

    def guild_count(self) -> int:
        return len(self._client.guilds)

    def command_count(self) -> int:
        return self._client.command_total


Listener = Callable[["ConnectionHandle", str, Optional[BaseException]], Awaitable[None]]


class ConnectionHandle:
    """In-memory record of one live bot connection."""

    def __init__(self, bot_id: int, client: ChatClient, listener: Listener) -> None:
        self.bot_id = bot_id
        self.client = client
        self.state = ConnectionState.CONNECTING
        self.start_time: Optional[datetime] = None
        self.memory = 100
        self.sampler_task: Optional[asyncio.Task] = None
        self._started_at = 0.0
        self._listener = listener
        self._events: "asyncio.Queue[Tuple[str, Optional[BaseException]]]" = asyncio.Queue()
        self._pump_task: Optional[asyncio.Task] = None
        client.set_listener(self.dispatch)

    def __repr__(self) -> str:
        return f"<ConnectionHandle bot={self.bot_id} state={self.state.value}>"

    @property
    def status(self) -> BotStatus:
        return _STATUS[self.state]

    @property
    def is_online(self) -> bool:
        return self.state is ConnectionState.ONLINE

    @property
    def closed(self) -> bool:
        return self.state is ConnectionState.OFFLINE

    def uptime_seconds(self) -> int:
        if not self._started_at:
            return 0
        return int(time.monotonic() - self._started_at)

    def latency_ms(self) -> Optional[float]:
        try:
            return self.client.latency_ms()
        except Exception:
            logger.exception("Latency probe failed for bot %s", self.bot_id)
            return None

    def mark_online(self) -> None:
        """Called once login succeeds; starts the event pump."""
        self.state = ConnectionState.ONLINE
        self.start_time = utcnow()
        self._started_at = time.monotonic()
        if self._pump_task is None:
            self._pump_task = asyncio.create_task(self._pump(), name=f"bot-{self.bot_id}-events")

    def dispatch(self, event: str, error: Optional[BaseException] = None) -> None:
        if self.closed:
            return
        self._events.put_nowait((event, error))

    async def drain(self) -> None:
        """Wait until every queued event has been handled."""
        await self._events.join()

    async def _pump(self) -> None:
        while True:
            event, error = await self._events.get()
            try:
                if self.closed:
                    continue
                target = _TRANSITIONS.get(event)
                if target is not None:
                    self.state = target
                await self._listener(self, event, error)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Event handler %r failed for bot %s", event, self.bot_id)
            finally:
                self._events.task_done()

    async def close(self) -> None:
        """Move to OFFLINE, stop background tasks and tear down the client.

        Errors from the client teardown propagate to the caller.
        """
        self.state = ConnectionState.OFFLINE
        current = asyncio.current_task()
        for task in (self.sampler_task, self._pump_task):
            if task is not None and task is not current and not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        # release anyone waiting in drain()
        while not self._events.empty():
            self._events.get_nowait()
            self._events.task_done()
        await self.client.close()

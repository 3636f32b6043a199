import asyncio

import pytest

from botpanel.manager.broadcaster import Subscriber
from botpanel.manager.connection import ChatClient
from botpanel.manager.lifecycle import LifecycleManager
from botpanel.utils.storage import MemoryStorage


class FakeChatClient(ChatClient):
    """In-process stand-in for a gateway connection."""

    def __init__(self, profile, *, fail=None, latency=42.0, gate=None, waiting=None):
        self.profile = profile
        self.gate = gate
        self.waiting = waiting
        self.fail = fail
        self.latency = latency
        self.relay = None
        self.token = None
        self.closed = False
        self.guilds = 3
        self.commands = 7

    def set_listener(self, relay):
        self.relay = relay

    async def login(self, token):
        if self.gate is not None:
            self.waiting.set()
            await self.gate.wait()
        if self.fail is not None:
            raise self.fail
        self.token = token

    async def close(self):
        self.closed = True

    def latency_ms(self):
        return self.latency

    def guild_count(self):
        return self.guilds

    def command_count(self):
        return self.commands

    def emit(self, event, error=None):
        self.relay(event, error)


class FakeClientFactory:
    """Client factory recording every client it builds.

    `fail_logins` is the number of upcoming logins that should raise. When
    `gate` is set, logins block on it and set `waiting` once they do.
    """

    def __init__(self):
        self.clients = []
        self.fail_logins = 0
        self.latency = 42.0
        self.gate = None
        self.waiting = None

    def hold_logins(self):
        self.gate = asyncio.Event()
        self.waiting = asyncio.Event()
        return self.gate

    def __call__(self, profile):
        fail = None
        if self.fail_logins:
            self.fail_logins -= 1
            fail = RuntimeError("An invalid token was provided.")
        client = FakeChatClient(profile, fail=fail, latency=self.latency, gate=self.gate, waiting=self.waiting)
        self.clients.append(client)
        return client

    @property
    def last(self):
        return self.clients[-1]


class RecordingSubscriber(Subscriber):
    def __init__(self, open=True, fail=False):
        self.open = open
        self.fail = fail
        self.received = []

    @property
    def is_open(self):
        return self.open

    async def send(self, payload):
        if self.fail:
            raise ConnectionError("socket went away")
        self.received.append(payload)


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest.fixture
def factory():
    return FakeClientFactory()


@pytest.fixture
def manager(storage, factory):
    return LifecycleManager(storage, client_factory=factory)

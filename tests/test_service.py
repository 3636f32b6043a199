import asyncio

import pytest

from botpanel.config import Settings
from botpanel.manager.probe import HostProbe
from botpanel.manager.service import ASYNC_ERROR_MESSAGE, SYSTEM_ERROR_MESSAGE, BotService
from botpanel.utils.models import BotSpec
from botpanel.utils.storage import MemoryStorage

from conftest import FakeClientFactory, RecordingSubscriber


class QuietHost(HostProbe):
    async def sample(self):
        return {"cpu_usage": 1}

    def process_memory(self, pid=None):
        return 10


def _settings():
    return Settings(STARTUP_DELAY=0, METRICS_INTERVAL=3600, RECONCILE_INTERVAL=3600, BOT_METRICS_INTERVAL=3600)


def test_settings_overrides():
    settings = _settings()
    assert settings.STARTUP_DELAY == 0
    assert settings.LOG_RETENTION == 1000
    with pytest.raises(AttributeError):
        Settings(NOT_A_SETTING=1)
    assert Settings(DATABASE_URL=None).validate(["DATABASE_URL"]) == ["DATABASE_URL"]
    assert Settings().validate() == []


@pytest.mark.asyncio
async def test_service_recovers_running_bots_on_start():
    storage = MemoryStorage()
    bot = await storage.create_bot(BotSpec(name="Persisted", token="a.b.c"))
    await storage.update_bot(bot.id, {"is_running": True})
    factory = FakeClientFactory()
    service = BotService(_settings(), storage, client_factory=factory, host_probe=QuietHost())

    async with service:
        await asyncio.wait_for(service.ready.wait(), timeout=5)
        assert service.manager.get_handle(bot.id).is_online
        assert len(factory.clients) == 1

    assert service.manager.handles() == {}
    assert factory.last.closed
    assert (await storage.get_bot(bot.id)).is_running is True


@pytest.mark.asyncio
async def test_unhandled_loop_errors_reach_subscribers():
    service = BotService(_settings(), MemoryStorage(), client_factory=FakeClientFactory(), host_probe=QuietHost())
    sub = RecordingSubscriber()
    service.broadcaster.add(sub)
    await service.start()
    try:
        loop = asyncio.get_running_loop()
        assert loop.get_exception_handler() == service._handle_loop_exception
        service._handle_loop_exception(loop, {"message": "boom", "exception": RuntimeError("boom")})
        await asyncio.gather(*list(service._notices))
        assert {"type": "error", "message": SYSTEM_ERROR_MESSAGE} in sub.received
    finally:
        await service.stop()
    assert asyncio.get_running_loop().get_exception_handler() != service._handle_loop_exception


@pytest.mark.asyncio
async def test_task_failures_are_reported_as_async_errors():
    service = BotService(_settings(), MemoryStorage(), client_factory=FakeClientFactory(), host_probe=QuietHost())
    sub = RecordingSubscriber()
    service.broadcaster.add(sub)
    await service.start()
    try:
        loop = asyncio.get_running_loop()
        future = loop.create_future()
        future.set_exception(RuntimeError("never retrieved"))
        service._handle_loop_exception(
            loop,
            {"message": "Task exception was never retrieved", "exception": future.exception(), "future": future},
        )
        await asyncio.gather(*list(service._notices))
        assert {"type": "error", "message": ASYNC_ERROR_MESSAGE} in sub.received
        assert {"type": "error", "message": SYSTEM_ERROR_MESSAGE} not in sub.received
    finally:
        await service.stop()

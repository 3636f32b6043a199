"""Service object wiring the lifecycle manager to its timers.

One `BotService` is built at process start and handed to the dashboard app;
nothing in the manager package is a module-level singleton.
"""
from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, Dict, List, Optional, Set

from botpanel.config import Settings
from botpanel.manager.broadcaster import UpdateBroadcaster
from botpanel.manager.connection import DiscordChatClient
from botpanel.manager.lifecycle import ClientFactory, LifecycleManager
from botpanel.manager.probe import BotSampler, HostProbe, MetricsProbe
from botpanel.manager.reconciler import Reconciler
from botpanel.utils.storage import Storage

logger = logging.getLogger("botpanel.service")

SYSTEM_ERROR_MESSAGE = "System error occurred"
ASYNC_ERROR_MESSAGE = "Async error occurred"


class BotService:
    def __init__(
        self,
        settings: Settings,
        storage: Storage,
        *,
        client_factory: ClientFactory = DiscordChatClient,
        host_probe: Optional[HostProbe] = None,
    ) -> None:
        self.settings = settings
        self.storage = storage
        self.broadcaster = UpdateBroadcaster()
        self.host = host_probe or HostProbe(settings.DISK_PATH, settings.NETWORK_INTERFACE)
        self.manager = LifecycleManager(storage, self.broadcaster, client_factory=client_factory)
        self.manager.sampler = BotSampler(
            storage, self.host, self.manager.broadcast_update, interval=settings.BOT_METRICS_INTERVAL
        )
        self.reconciler = Reconciler(
            self.manager,
            interval=settings.RECONCILE_INTERVAL,
            retry_delay=settings.RECOVERY_RETRY_DELAY,
        )
        self.metrics = MetricsProbe(
            storage, self.host, self.manager.broadcast_update, interval=settings.METRICS_INTERVAL
        )
        self.ready = asyncio.Event()
        self._tasks: List[asyncio.Task] = []
        self._notices: Set[asyncio.Task] = set()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._previous_handler = None

    async def __aenter__(self) -> "BotService":
        await self.start()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.stop()

    async def start(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._previous_handler = self._loop.get_exception_handler()
        self._loop.set_exception_handler(self._handle_loop_exception)
        self._tasks.append(asyncio.create_task(self._bootstrap(), name="botpanel-bootstrap"))

    async def _bootstrap(self) -> None:
        # let the HTTP server come up before the first probes and logins
        await asyncio.sleep(self.settings.STARTUP_DELAY)
        self._tasks.append(asyncio.create_task(self.metrics.run(), name="botpanel-metrics"))
        self._tasks.append(asyncio.create_task(self.reconciler.run(), name="botpanel-reconciler"))
        await self.reconciler.recover_running_bots()
        self.ready.set()
        logger.info("Bot manager fully initialized with metrics and health checks")

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks.clear()
        await self.manager.shutdown()
        if self._loop is not None:
            self._loop.set_exception_handler(self._previous_handler)
            self._loop = None
        logger.info("Bot manager stopped")

    def _handle_loop_exception(self, loop: asyncio.AbstractEventLoop, context: Dict[str, Any]) -> None:
        exc = context.get("exception")
        logger.error("Unhandled error: %s", context.get("message", "unknown"), exc_info=exc)
        if loop.is_closed():
            return
        # failures surfaced from a task or future are async errors
        if context.get("future") is not None or context.get("task") is not None:
            notice = ASYNC_ERROR_MESSAGE
        else:
            notice = SYSTEM_ERROR_MESSAGE
        task = loop.create_task(self.manager.broadcast_error(notice))
        self._notices.add(task)
        task.add_done_callback(self._notices.discard)

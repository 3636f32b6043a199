"""Host and per-bot metrics sampling.

Every probe is best-effort: a failing probe logs the error and contributes a
zero (or the documented default) so the surrounding loop never aborts.
psutil calls run in a worker thread because disk and process lookups can
block on slow filesystems.
"""
from __future__ import annotations

import asyncio
import logging
import os
from typing import Awaitable, Callable, Dict, Optional, Tuple

import psutil

from botpanel.manager.connection import ConnectionHandle
from botpanel.utils.models import MetricSample
from botpanel.utils.storage import Storage

logger = logging.getLogger("botpanel.probe")

MB = 1024 * 1024
DEFAULT_BOT_MEMORY = 100

Broadcast = Callable[[], Awaitable[None]]


class HostProbe:
    def __init__(self, disk_path: str = "/", interface: Optional[str] = None) -> None:
        self.disk_path = disk_path
        self.interface = interface

    def cpu_usage(self) -> int:
        return round(psutil.getloadavg()[0] * 100)

    def memory(self) -> Tuple[int, int]:
        vm = psutil.virtual_memory()
        return round((vm.total - vm.available) / MB), round(vm.total / MB)

    def disk(self) -> Tuple[int, int]:
        du = psutil.disk_usage(self.disk_path)
        return round(du.used / MB), round(du.total / MB)

    def network(self) -> int:
        if self.interface:
            counters = psutil.net_io_counters(pernic=True)[self.interface]
        else:
            counters = psutil.net_io_counters()
        return round(counters.bytes_recv / MB)

    def process_memory(self, pid: Optional[int] = None) -> int:
        try:
            return round(psutil.Process(pid or os.getpid()).memory_info().rss / MB)
        except (psutil.Error, OSError) as exc:
            logger.error("Error getting memory usage for process %s: %s", pid, exc)
            return DEFAULT_BOT_MEMORY

    def _guard(self, name: str, fn, default):
        try:
            return fn()
        except Exception as exc:
            logger.error("Error getting %s usage: %s", name, exc)
            return default

    def _sample_sync(self) -> Dict[str, int]:
        memory_usage, memory_total = self._guard("memory", self.memory, (0, 0))
        disk_usage, disk_total = self._guard("disk", self.disk, (0, 0))
        return {
            "cpu_usage": self._guard("cpu", self.cpu_usage, 0),
            "memory_usage": memory_usage,
            "memory_total": memory_total,
            "disk_usage": disk_usage,
            "disk_total": disk_total,
            "network_usage": self._guard("network", self.network, 0),
        }

    async def sample(self) -> Dict[str, int]:
        return await asyncio.to_thread(self._sample_sync)


class MetricsProbe:
    """Persists one host sample per interval, then broadcasts."""

    def __init__(self, storage: Storage, host: HostProbe, broadcast: Broadcast, interval: float = 30) -> None:
        self.storage = storage
        self.host = host
        self.broadcast = broadcast
        self.interval = interval

    async def collect_once(self) -> Optional[MetricSample]:
        try:
            values = await self.host.sample()
            sample = await self.storage.create_metrics(**values)
        except Exception:
            logger.exception("Error collecting system metrics")
            return None
        await self.broadcast()
        return sample

    async def run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            await self.collect_once()


class BotSampler:
    """Per-bot usage sampler, active only while the handle is ONLINE."""

    def __init__(self, storage: Storage, host: HostProbe, broadcast: Broadcast, interval: float = 60) -> None:
        self.storage = storage
        self.host = host
        self.broadcast = broadcast
        self.interval = interval

    def start(self, handle: ConnectionHandle) -> None:
        if handle.sampler_task is not None and not handle.sampler_task.done():
            return
        handle.sampler_task = asyncio.create_task(self._run(handle), name=f"bot-{handle.bot_id}-metrics")

    async def _run(self, handle: ConnectionHandle) -> None:
        while True:
            await asyncio.sleep(self.interval)
            if not handle.is_online:
                logger.debug("Stopping metrics sampler for bot %s (%s)", handle.bot_id, handle.state.value)
                return
            await self.sample_once(handle)

    async def sample_once(self, handle: ConnectionHandle) -> bool:
        try:
            if handle.latency_ms() is None:
                # left to the reconciler
                logger.info("Bot %s connection appears unhealthy (no heartbeat)", handle.bot_id)
            handle.memory = await asyncio.to_thread(self.host.process_memory)
            await self.storage.update_bot(
                handle.bot_id,
                {
                    "server_count": handle.client.guild_count(),
                    "command_count": handle.client.command_count(),
                    "memory": handle.memory,
                    "is_running": True,
                    "uptime": handle.uptime_seconds(),
                },
            )
        except Exception:
            logger.exception("Error collecting metrics for bot %s", handle.bot_id)
            return False
        await self.broadcast()
        return True


__all__ = ["HostProbe", "MetricsProbe", "BotSampler"]

"""Drift detection and auto-recovery.

Connection handles live only in memory, so two passes keep them in line with
the persisted desired state:

- `recover_running_bots` runs once after process start and starts every bot
  whose record says it should be online.
- `tick` runs on a fixed interval and, per bot, restarts connections that are
  missing or unhealthy, and corrects persisted state for live handles whose
  record lags behind. One broadcast follows each tick.
"""
from __future__ import annotations

import asyncio
import logging
from typing import List, Optional

from botpanel.manager.connection import ConnectionHandle
from botpanel.manager.lifecycle import LifecycleManager
from botpanel.utils.models import BotRecord, BotStatus, LogLevel

logger = logging.getLogger("botpanel.reconciler")


class Reconciler:
    def __init__(self, manager: LifecycleManager, *, interval: float = 60, retry_delay: float = 2) -> None:
        self.manager = manager
        self.interval = interval
        self.retry_delay = retry_delay

    @property
    def storage(self):
        return self.manager.storage

    async def recover_running_bots(self) -> List[int]:
        """Start every bot flagged running (or last seen ONLINE).

        Returns the ids that came back online.
        """
        try:
            bots = await self.storage.get_all_bots()
        except Exception:
            logger.exception("Error recovering running bots")
            return []

        pending = [b for b in bots if b.is_running or b.status == BotStatus.ONLINE]
        if not pending:
            logger.info("No previously running bots to recover.")
            return []

        logger.info("Found %d bots to recover...", len(pending))
        recovered: List[int] = []
        for bot in pending:
            logger.info("Recovering bot: %s (ID: %s)", bot.name, bot.id)
            try:
                ok = await self.manager.start_bot(bot.id)
            except Exception:
                logger.exception("Failed to recover bot %s", bot.id)
                ok = False
            if ok:
                recovered.append(bot.id)
                await self.manager.log(bot.id, LogLevel.INFO, "Bot automatically recovered after system restart.")
            else:
                await self.manager.log(bot.id, LogLevel.ERROR, "Failed to automatically recover bot after restart.")
        logger.info("Bot recovery process completed (%d/%d online).", len(recovered), len(pending))
        return recovered

    async def tick(self) -> None:
        logger.debug("Running bot health check")
        try:
            bots = await self.storage.get_all_bots()
        except Exception:
            logger.exception("Error in bot health check: could not list bots")
            return

        for bot in bots:
            try:
                await self.reconcile(bot)
            except Exception:
                logger.exception("Error reconciling bot %s", bot.id)

        await self.manager.broadcast_update()

    async def reconcile(self, bot: BotRecord) -> None:
        """Apply the repair rules to one bot.

        `bot` comes from the tick's listing and only selects a candidate rule;
        the manager re-checks the current record and handle under the bot's
        lock before acting.
        """
        if self.manager.is_busy(bot.id):
            # a start/stop for this bot is in flight; look again next tick
            logger.debug("Skipping bot %s: operation in progress", bot.id)
            return

        handle = self.manager.get_handle(bot.id)

        if bot.is_running and (handle is None or handle.status in (BotStatus.WARNING, BotStatus.OFFLINE)):
            await self._recover(bot)
            return

        if handle is None or handle.status != BotStatus.ONLINE:
            return

        if not bot.is_running and await self.manager.mark_running(bot.id):
            await self.manager.log(bot.id, LogLevel.INFO, "Health check corrected bot status to online.")

        if not self._healthy(handle):
            logger.warning("Bot %s (ID: %s) has an unresponsive connection. Restarting.", bot.name, bot.id)
            restarted = await self.manager.restart_unresponsive(bot.id)
            if restarted is not None:
                await self.manager.log(bot.id, LogLevel.WARNING, "Connection unresponsive. Restarting bot.")

    @staticmethod
    def _healthy(handle: ConnectionHandle) -> bool:
        return handle.latency_ms() is not None

    async def _recover(self, bot: BotRecord) -> bool:
        restarted: Optional[bool]
        try:
            restarted = await self.manager.ensure_running(bot.id)
        except Exception:
            logger.exception("Error during automatic restart of bot %s", bot.id)
            restarted = False
        if restarted is None:
            logger.info("Bot %s no longer flagged running; recovery skipped", bot.id)
            return False

        await self.manager.log(
            bot.id, LogLevel.WARNING, "Health check detected bot offline. Attempting automatic reconnection."
        )
        if restarted:
            await self.manager.log(bot.id, LogLevel.SUCCESS, "Bot successfully reconnected by auto-recovery system.")
            return True

        # second attempt: full stop, short pause, fresh start
        try:
            await self.manager.stop_bot(bot.id, clear_intent=False)
            await asyncio.sleep(self.retry_delay)
            started = await self.manager.ensure_running(bot.id)
        except Exception:
            logger.exception("Error during stop/start recovery of bot %s", bot.id)
            started = False
        if started is None:
            logger.info("Bot %s was stopped during recovery", bot.id)
            return False
        if started:
            await self.manager.log(bot.id, LogLevel.SUCCESS, "Bot recovered after full stop/start cycle.")
            return True

        await self.manager.log(
            bot.id,
            LogLevel.ERROR,
            "Failed to recover bot after multiple attempts. Manual intervention may be required.",
        )
        return False

    async def run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            await self.tick()

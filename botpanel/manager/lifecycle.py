"""Bot lifecycle manager.

The manager is the only component that creates or destroys
`ConnectionHandle` objects. It keeps the in-memory handle map, mirrors state
changes into storage and pushes dashboard snapshots through the broadcaster.

Failure policy: public operations never raise. Failures are logged (to the
``botpanel.lifecycle`` logger and as persisted bot log entries) and reported
as ``False`` / ``None`` so the HTTP layer can map them to a 500.

Start, stop and restart for the same bot id are serialised with a per-id
``asyncio.Lock``; operations on different bots run independently.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional, Union

from pydantic import ValidationError as ModelValidationError

from botpanel.manager import connection as conn
from botpanel.manager.broadcaster import Subscriber, UpdateBroadcaster
from botpanel.manager.connection import ChatClient, ConnectionHandle, DiscordChatClient
from botpanel.manager.probe import BotSampler
from botpanel.utils.errors import ValidationError
from botpanel.utils.models import BotRecord, BotSpec, BotStatus, BotUpdate, LogLevel
from botpanel.utils.profiles import CapabilityProfile, profile_for
from botpanel.utils.storage import Storage

logger = logging.getLogger("botpanel.lifecycle")

ClientFactory = Callable[[CapabilityProfile], ChatClient]

_PY_LEVELS = {
    LogLevel.INFO: logging.INFO,
    LogLevel.SUCCESS: logging.INFO,
    LogLevel.WARNING: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
}


class LifecycleManager:
    def __init__(
        self,
        storage: Storage,
        broadcaster: Optional[UpdateBroadcaster] = None,
        *,
        client_factory: ClientFactory = DiscordChatClient,
        sampler: Optional[BotSampler] = None,
    ) -> None:
        self.storage = storage
        self.broadcaster = broadcaster or UpdateBroadcaster()
        self.client_factory = client_factory
        self.sampler = sampler
        self._handles: Dict[int, ConnectionHandle] = {}
        self._locks: Dict[int, asyncio.Lock] = {}

    def _lock_for(self, bot_id: int) -> asyncio.Lock:
        if bot_id not in self._locks:
            self._locks[bot_id] = asyncio.Lock()
        return self._locks[bot_id]

    # -- inspection -------------------------------------------------------

    def get_handle(self, bot_id: int) -> Optional[ConnectionHandle]:
        return self._handles.get(bot_id)

    def handles(self) -> Dict[int, ConnectionHandle]:
        return dict(self._handles)

    def is_busy(self, bot_id: int) -> bool:
        lock = self._locks.get(bot_id)
        return lock is not None and lock.locked()

    # -- activity log -----------------------------------------------------

    async def log(self, bot_id: Optional[int], level: LogLevel, message: str) -> None:
        """Write a persisted log entry; storage failures are only logged."""
        logger.log(_PY_LEVELS.get(LogLevel(level), logging.INFO), "[bot %s] %s", bot_id, message)
        try:
            await self.storage.create_log(bot_id, level, message)
        except Exception:
            logger.exception("Failed to persist log entry for bot %s", bot_id)

    # -- CRUD -------------------------------------------------------------

    async def create_bot(self, spec: Union[BotSpec, Dict[str, Any]]) -> Optional[BotRecord]:
        try:
            if not isinstance(spec, BotSpec):
                spec = BotSpec.model_validate(spec)
            if not spec.name.strip() or not spec.token.strip():
                raise ValidationError("Bot name and token are required")
            if spec.additional_files:
                names = ", ".join(f.name for f in spec.additional_files)
                await self.log(None, LogLevel.INFO, f"Received additional files: {names}")
            bot = await self.storage.create_bot(spec)
            if spec.additional_files:
                await self.log(bot.id, LogLevel.INFO, f"Bot created with {len(spec.additional_files)} additional files")
        except (ValidationError, ModelValidationError) as exc:
            logger.error("Rejected bot spec: %s", exc)
            return None
        except Exception:
            logger.exception("Failed to create bot")
            return None

        await self.broadcast_update()
        if bot.token:
            await self.start_bot(bot.id)
        return bot

    async def update_bot(self, bot_id: int, changes: Union[BotUpdate, Dict[str, Any]]) -> Optional[BotRecord]:
        try:
            if not isinstance(changes, BotUpdate):
                changes = BotUpdate.model_validate(changes)
            bot = await self.storage.update_bot(bot_id, changes.changes())
        except Exception:
            logger.exception("Failed to update bot %s", bot_id)
            return None
        if bot is not None:
            await self.broadcast_update()
        return bot

    async def delete_bot(self, bot_id: int) -> bool:
        await self.stop_bot(bot_id)
        try:
            deleted = await self.storage.delete_bot(bot_id)
        except Exception:
            logger.exception("Failed to delete bot %s", bot_id)
            return False
        if deleted:
            self._locks.pop(bot_id, None)
            await self.broadcast_update()
        return deleted

    # -- lifecycle --------------------------------------------------------

    async def start_bot(self, bot_id: int) -> bool:
        async with self._lock_for(bot_id):
            return await self._start(bot_id)

    async def stop_bot(self, bot_id: int, *, clear_intent: bool = True) -> bool:
        """Tear down the bot's connection.

        With ``clear_intent`` the persisted desired-running flag is cleared as
        well; restart and recovery paths pass False so the reconciler keeps
        treating the bot as one that should be online.
        """
        async with self._lock_for(bot_id):
            return await self._stop(bot_id, clear_intent=clear_intent)

    async def restart_bot(self, bot_id: int) -> bool:
        async with self._lock_for(bot_id):
            await self._stop(bot_id, clear_intent=False)
            return await self._start(bot_id)

    # -- guarded operations for the reconciler ----------------------------
    #
    # Each re-reads the record and the handle while holding the bot's lock,
    # so a start or stop that finished after the caller's snapshot wins.

    async def ensure_running(self, bot_id: int) -> Optional[bool]:
        """Bring a bot that should be running back online.

        Returns None when the record is gone or no longer flagged running,
        True when a live handle already exists or the start succeeded.
        """
        async with self._lock_for(bot_id):
            record = await self.storage.get_bot(bot_id)
            if record is None or not record.is_running:
                return None
            handle = self._handles.get(bot_id)
            if handle is not None and handle.is_online:
                return True
            await self._stop(bot_id, clear_intent=False)
            return await self._start(bot_id)

    async def mark_running(self, bot_id: int) -> bool:
        """Persist ONLINE/is_running for a live handle whose record lags."""
        async with self._lock_for(bot_id):
            handle = self._handles.get(bot_id)
            if handle is None or not handle.is_online:
                return False
            record = await self.storage.get_bot(bot_id)
            if record is None or record.is_running:
                return False
            await self.storage.update_bot(bot_id, {"status": BotStatus.ONLINE, "is_running": True})
            return True

    async def restart_unresponsive(self, bot_id: int) -> Optional[bool]:
        """Restart a live handle that reports no heartbeat.

        Returns None when the handle is gone, offline or healthy again.
        """
        async with self._lock_for(bot_id):
            handle = self._handles.get(bot_id)
            if handle is None or not handle.is_online or handle.latency_ms() is not None:
                return None
            await self._stop(bot_id, clear_intent=False)
            return await self._start(bot_id)

    async def _start(self, bot_id: int) -> bool:
        try:
            record = await self.storage.get_bot(bot_id)
            if record is None or not record.token:
                await self.log(bot_id, LogLevel.ERROR, "Bot token not found")
                return False

            if bot_id in self._handles:
                await self.log(bot_id, LogLevel.WARNING, "Bot is already running")
                return True

            profile = profile_for(record.bot_type)
            client = self.client_factory(profile)
            handle = ConnectionHandle(bot_id, client, self._on_event)
            try:
                await client.login(record.token)
            except Exception:
                try:
                    await client.close()
                except Exception:
                    logger.debug("Client cleanup after failed login raised", exc_info=True)
                raise
            handle.mark_online()
            self._handles[bot_id] = handle
        except Exception as exc:
            logger.error("Failed to start bot %s: %s", bot_id, exc)
            await self.log(bot_id, LogLevel.ERROR, f"Failed to start: {str(exc) or 'Unknown error'}")
            return False

        logger.info("Bot %s (%s) connected with %s profile", record.name, bot_id, profile.name)
        try:
            await self.storage.update_bot(
                bot_id,
                {
                    "status": BotStatus.ONLINE,
                    "is_running": True,
                    "last_started": handle.start_time,
                    "uptime": 0,
                },
            )
        except Exception:
            # the handle is live; the reconciler corrects the persisted state
            logger.exception("Failed to persist running state for bot %s", bot_id)
        await self.broadcast_update()
        return True

    async def _stop(self, bot_id: int, *, clear_intent: bool) -> bool:
        handle = self._handles.pop(bot_id, None)
        if handle is None:
            return False

        try:
            await handle.close()
        except Exception as exc:
            logger.warning("Error while destroying client for bot %s: %s", bot_id, exc)
            await self.log(bot_id, LogLevel.ERROR, f"Failed to stop cleanly: {str(exc) or 'Unknown error'}")

        changes: Dict[str, Any] = {"status": BotStatus.OFFLINE}
        if clear_intent:
            changes["is_running"] = False
        try:
            await self.storage.update_bot(bot_id, changes)
        except Exception:
            logger.exception("Failed to persist stopped state for bot %s", bot_id)
        await self.broadcast_update()
        return True

    async def shutdown(self) -> None:
        """Close every handle, leaving persisted state for the next recovery pass."""
        for bot_id in list(self._handles):
            async with self._lock_for(bot_id):
                handle = self._handles.pop(bot_id, None)
                if handle is None:
                    continue
                try:
                    await handle.close()
                except Exception:
                    logger.exception("Error closing bot %s during shutdown", bot_id)

    # -- client events ----------------------------------------------------

    async def _bot_name(self, bot_id: int) -> str:
        try:
            record = await self.storage.get_bot(bot_id)
        except Exception:
            record = None
        return record.name if record else f"#{bot_id}"

    async def _set_status(self, bot_id: int, status: BotStatus) -> None:
        try:
            await self.storage.update_bot(bot_id, {"status": status})
        except Exception:
            logger.exception("Failed to persist status %s for bot %s", status, bot_id)
        await self.broadcast_update()

    async def _on_event(self, handle: ConnectionHandle, event: str, error: Optional[BaseException]) -> None:
        bot_id = handle.bot_id
        if self._handles.get(bot_id) is not handle:
            return
        name = await self._bot_name(bot_id)

        if event == conn.READY:
            await self._set_status(bot_id, BotStatus.ONLINE)
            await self.log(bot_id, LogLevel.INFO, f"Bot {name} is now online")
            if self.sampler is not None:
                self.sampler.start(handle)
        elif event == conn.RESUMED:
            await self._set_status(bot_id, BotStatus.ONLINE)
            await self.log(bot_id, LogLevel.INFO, f"Bot {name} resumed its session")
        elif event == conn.ERROR:
            await self.log(bot_id, LogLevel.ERROR, f"Discord error: {str(error or '') or 'Unknown error'}")
            await self._set_status(bot_id, BotStatus.WARNING)
        elif event == conn.DISCONNECT:
            await self.log(bot_id, LogLevel.WARNING, f"Bot {name} disconnected")
            await self._set_status(bot_id, BotStatus.WARNING)
        elif event == conn.RECONNECTING:
            await self.log(bot_id, LogLevel.INFO, f"Bot {name} is reconnecting")
        else:
            logger.debug("Ignoring unknown event %r for bot %s", event, bot_id)

    # -- subscribers ------------------------------------------------------

    async def snapshot(self) -> Dict[str, Any]:
        bots: List[BotRecord] = await self.storage.get_all_bots()
        metrics = await self.storage.get_latest_metrics()
        return {
            "type": "statusUpdate",
            "bots": [b.to_public() for b in bots],
            "metrics": metrics.to_wire() if metrics else None,
        }

    async def send_status(self, subscriber: Subscriber) -> bool:
        try:
            payload = await self.snapshot()
        except Exception:
            logger.exception("Failed to build status update")
            return False
        return await self.broadcaster.send_to(subscriber, payload)

    async def add_client(self, subscriber: Subscriber) -> None:
        self.broadcaster.add(subscriber)
        await self.send_status(subscriber)

    def remove_client(self, subscriber: Subscriber) -> None:
        self.broadcaster.remove(subscriber)

    async def broadcast_update(self) -> int:
        try:
            payload = await self.snapshot()
        except Exception:
            logger.exception("Failed to build status update")
            return 0
        return await self.broadcaster.broadcast(payload)

    async def broadcast_error(self, message: str) -> int:
        return await self.broadcaster.broadcast({"type": "error", "message": message})


__all__ = ["LifecycleManager", "ClientFactory"]

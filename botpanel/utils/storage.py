"""Storage backends for bot, user, log and metric records.

`Storage` is the async interface the lifecycle manager depends on. Two
implementations are provided:

- `MemoryStorage`: process-local dicts/lists. Used when no database is
  configured and by the test-suite.
- `PostgresStorage`: asyncpg-backed, schema in ``migrations/001_init.sql``.

Both cap the log and metric history (oldest entries evicted first) and fill
per-category permission / invite defaults when a bot is created.
"""
from __future__ import annotations

import json
from collections import deque
from typing import Any, Deque, Dict, List, Optional

from botpanel.utils import db as db_utils
from botpanel.utils import profiles
from botpanel.utils.errors import StorageError
from botpanel.utils.models import (
    BotRecord,
    BotSpec,
    BotStatus,
    LogEntry,
    LogLevel,
    MetricSample,
    User,
    utcnow,
)

DEFAULT_LOG_RETENTION = 1000
DEFAULT_METRICS_RETENTION = 100

# columns callers may change through update_bot
BOT_COLUMNS = (
    "name",
    "token",
    "prefix",
    "user_id",
    "is_running",
    "status",
    "memory",
    "uptime",
    "server_count",
    "command_count",
    "last_started",
    "bot_type",
    "icon_type",
    "description",
    "permissions",
    "invite_config",
)


def _new_bot_fields(spec: BotSpec) -> Dict[str, Any]:
    return {
        "name": spec.name,
        "token": spec.token,
        "prefix": spec.prefix or "!",
        "user_id": spec.user_id,
        "is_running": False,
        "status": BotStatus.OFFLINE,
        "memory": 0,
        "uptime": 0,
        "server_count": 0,
        "command_count": 0,
        "last_started": None,
        "bot_type": spec.bot_type,
        "icon_type": spec.icon_type,
        "description": spec.description,
        "permissions": spec.permissions or profiles.default_permissions(spec.bot_type),
        "invite_config": spec.invite_config or profiles.default_invite_config(spec.bot_type),
    }


class Storage:
    """Async CRUD interface. Every call is treated as atomic."""

    async def get_user(self, user_id: int) -> Optional[User]:
        raise NotImplementedError

    async def get_user_by_username(self, username: str) -> Optional[User]:
        raise NotImplementedError

    async def create_user(self, username: str, password: str, role: str = "user") -> User:
        raise NotImplementedError

    async def get_all_bots(self) -> List[BotRecord]:
        raise NotImplementedError

    async def get_bots_by_user_id(self, user_id: int) -> List[BotRecord]:
        raise NotImplementedError

    async def get_bot(self, bot_id: int) -> Optional[BotRecord]:
        raise NotImplementedError

    async def create_bot(self, spec: BotSpec) -> BotRecord:
        raise NotImplementedError

    async def update_bot(self, bot_id: int, data: Dict[str, Any]) -> Optional[BotRecord]:
        raise NotImplementedError

    async def delete_bot(self, bot_id: int) -> bool:
        raise NotImplementedError

    async def get_logs(self, limit: int = 50) -> List[LogEntry]:
        raise NotImplementedError

    async def get_logs_by_bot_id(self, bot_id: int, limit: int = 50) -> List[LogEntry]:
        raise NotImplementedError

    async def create_log(self, bot_id: Optional[int], level: LogLevel, message: str) -> LogEntry:
        raise NotImplementedError

    async def get_latest_metrics(self) -> Optional[MetricSample]:
        raise NotImplementedError

    async def create_metrics(self, **values: int) -> MetricSample:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class MemoryStorage(Storage):
    def __init__(
        self,
        *,
        log_retention: int = DEFAULT_LOG_RETENTION,
        metrics_retention: int = DEFAULT_METRICS_RETENTION,
    ) -> None:
        self._users: Dict[int, User] = {}
        self._bots: Dict[int, BotRecord] = {}
        self._logs: Deque[LogEntry] = deque(maxlen=log_retention)
        self._metrics: Deque[MetricSample] = deque(maxlen=metrics_retention)
        self._next = {"user": 1, "bot": 1, "log": 1, "metrics": 1}

    def _id(self, kind: str) -> int:
        nid = self._next[kind]
        self._next[kind] = nid + 1
        return nid

    # users
    async def get_user(self, user_id: int) -> Optional[User]:
        return self._users.get(user_id)

    async def get_user_by_username(self, username: str) -> Optional[User]:
        return next((u for u in self._users.values() if u.username == username), None)

    async def create_user(self, username: str, password: str, role: str = "user") -> User:
        user = User(id=self._id("user"), username=username, password=password, role=role or "user")
        self._users[user.id] = user
        return user

    # bots
    async def get_all_bots(self) -> List[BotRecord]:
        return list(self._bots.values())

    async def get_bots_by_user_id(self, user_id: int) -> List[BotRecord]:
        return [b for b in self._bots.values() if b.user_id == user_id]

    async def get_bot(self, bot_id: int) -> Optional[BotRecord]:
        return self._bots.get(bot_id)

    async def create_bot(self, spec: BotSpec) -> BotRecord:
        bot = BotRecord(id=self._id("bot"), **_new_bot_fields(spec))
        self._bots[bot.id] = bot
        return bot

    async def update_bot(self, bot_id: int, data: Dict[str, Any]) -> Optional[BotRecord]:
        bot = self._bots.get(bot_id)
        if bot is None:
            return None
        changes = {k: v for k, v in data.items() if k in BOT_COLUMNS}
        updated = BotRecord.model_validate({**bot.model_dump(), **changes})
        self._bots[bot_id] = updated
        return updated

    async def delete_bot(self, bot_id: int) -> bool:
        return self._bots.pop(bot_id, None) is not None

    # logs
    async def get_logs(self, limit: int = 50) -> List[LogEntry]:
        return list(reversed(self._logs))[:limit]

    async def get_logs_by_bot_id(self, bot_id: int, limit: int = 50) -> List[LogEntry]:
        return [e for e in reversed(self._logs) if e.bot_id == bot_id][:limit]

    async def create_log(self, bot_id: Optional[int], level: LogLevel, message: str) -> LogEntry:
        entry = LogEntry(id=self._id("log"), bot_id=bot_id, level=level or LogLevel.INFO, message=message)
        self._logs.append(entry)
        return entry

    # metrics
    async def get_latest_metrics(self) -> Optional[MetricSample]:
        return self._metrics[-1] if self._metrics else None

    async def create_metrics(self, **values: int) -> MetricSample:
        sample = MetricSample(id=self._id("metrics"), **{k: int(v or 0) for k, v in values.items()})
        self._metrics.append(sample)
        return sample

    def log_count(self) -> int:
        return len(self._logs)

    def metrics_count(self) -> int:
        return len(self._metrics)


def _bot_from_row(row) -> BotRecord:
    data = dict(row)
    raw = data.get("invite_config") or "{}"
    try:
        data["invite_config"] = json.loads(raw) if isinstance(raw, str) else raw
    except ValueError:
        data["invite_config"] = {}
    return BotRecord.model_validate(data)


class PostgresStorage(Storage):
    """asyncpg implementation.

    Expects the tables created by ``migrations/001_init.sql``. Driver errors
    are re-raised as `StorageError` so callers only handle one type.
    """

    def __init__(
        self,
        pool,
        *,
        log_retention: int = DEFAULT_LOG_RETENTION,
        metrics_retention: int = DEFAULT_METRICS_RETENTION,
    ) -> None:
        self._pool = pool
        self.log_retention = log_retention
        self.metrics_retention = metrics_retention

    async def _fetch(self, query: str, *params):
        try:
            async with self._pool.acquire() as conn:
                return await conn.fetch(query, *params)
        except Exception as exc:
            raise StorageError(str(exc)) from exc

    async def _fetchrow(self, query: str, *params):
        try:
            async with self._pool.acquire() as conn:
                return await conn.fetchrow(query, *params)
        except Exception as exc:
            raise StorageError(str(exc)) from exc

    async def _insert_and_trim(self, insert: str, params, trim: str, keep: int):
        try:
            async with db_utils.transaction(self._pool) as conn:
                row = await conn.fetchrow(insert, *params)
                await conn.execute(trim, keep)
                return row
        except Exception as exc:
            raise StorageError(str(exc)) from exc

    # users
    async def get_user(self, user_id: int) -> Optional[User]:
        row = await self._fetchrow("SELECT * FROM users WHERE id = $1", user_id)
        return User.model_validate(dict(row)) if row else None

    async def get_user_by_username(self, username: str) -> Optional[User]:
        row = await self._fetchrow("SELECT * FROM users WHERE username = $1", username)
        return User.model_validate(dict(row)) if row else None

    async def create_user(self, username: str, password: str, role: str = "user") -> User:
        row = await self._fetchrow(
            "INSERT INTO users (username, password, role) VALUES ($1, $2, $3) RETURNING *",
            username,
            password,
            role or "user",
        )
        return User.model_validate(dict(row))

    # bots
    async def get_all_bots(self) -> List[BotRecord]:
        rows = await self._fetch("SELECT * FROM bots ORDER BY id")
        return [_bot_from_row(r) for r in rows]

    async def get_bots_by_user_id(self, user_id: int) -> List[BotRecord]:
        rows = await self._fetch("SELECT * FROM bots WHERE user_id = $1 ORDER BY id", user_id)
        return [_bot_from_row(r) for r in rows]

    async def get_bot(self, bot_id: int) -> Optional[BotRecord]:
        row = await self._fetchrow("SELECT * FROM bots WHERE id = $1", bot_id)
        return _bot_from_row(row) if row else None

    async def create_bot(self, spec: BotSpec) -> BotRecord:
        fields = _new_bot_fields(spec)
        fields["status"] = BotStatus(fields["status"]).value
        fields["invite_config"] = json.dumps(fields["invite_config"])
        cols = ", ".join(fields)
        marks = ", ".join(f"${i}" for i in range(1, len(fields) + 1))
        row = await self._fetchrow(
            f"INSERT INTO bots ({cols}) VALUES ({marks}) RETURNING *", *fields.values()
        )
        return _bot_from_row(row)

    async def update_bot(self, bot_id: int, data: Dict[str, Any]) -> Optional[BotRecord]:
        changes = {k: v for k, v in data.items() if k in BOT_COLUMNS}
        if not changes:
            return await self.get_bot(bot_id)
        if "invite_config" in changes:
            changes["invite_config"] = json.dumps(changes["invite_config"] or {})
        if "status" in changes:
            changes["status"] = BotStatus(changes["status"]).value
        sets = ", ".join(f"{col} = ${i}" for i, col in enumerate(changes, start=2))
        row = await self._fetchrow(
            f"UPDATE bots SET {sets} WHERE id = $1 RETURNING *", bot_id, *changes.values()
        )
        return _bot_from_row(row) if row else None

    async def delete_bot(self, bot_id: int) -> bool:
        row = await self._fetchrow("DELETE FROM bots WHERE id = $1 RETURNING id", bot_id)
        return row is not None

    # logs
    async def get_logs(self, limit: int = 50) -> List[LogEntry]:
        rows = await self._fetch("SELECT * FROM logs ORDER BY id DESC LIMIT $1", limit)
        return [LogEntry.model_validate(dict(r)) for r in rows]

    async def get_logs_by_bot_id(self, bot_id: int, limit: int = 50) -> List[LogEntry]:
        rows = await self._fetch(
            "SELECT * FROM logs WHERE bot_id = $1 ORDER BY id DESC LIMIT $2", bot_id, limit
        )
        return [LogEntry.model_validate(dict(r)) for r in rows]

    async def create_log(self, bot_id: Optional[int], level: LogLevel, message: str) -> LogEntry:
        row = await self._insert_and_trim(
            "INSERT INTO logs (bot_id, level, message, timestamp) VALUES ($1, $2, $3, $4) RETURNING *",
            (bot_id, LogLevel(level or LogLevel.INFO).value, message, utcnow()),
            "DELETE FROM logs WHERE id NOT IN (SELECT id FROM logs ORDER BY id DESC LIMIT $1)",
            self.log_retention,
        )
        return LogEntry.model_validate(dict(row))

    # metrics
    async def get_latest_metrics(self) -> Optional[MetricSample]:
        row = await self._fetchrow("SELECT * FROM metrics ORDER BY id DESC LIMIT 1")
        return MetricSample.model_validate(dict(row)) if row else None

    async def create_metrics(self, **values: int) -> MetricSample:
        fields = {k: int(values.get(k) or 0) for k in (
            "cpu_usage", "memory_usage", "memory_total", "disk_usage", "disk_total", "network_usage"
        )}
        cols = ", ".join(fields)
        marks = ", ".join(f"${i}" for i in range(1, len(fields) + 2))
        row = await self._insert_and_trim(
            f"INSERT INTO metrics ({cols}, timestamp) VALUES ({marks}) RETURNING *",
            (*fields.values(), utcnow()),
            "DELETE FROM metrics WHERE id NOT IN (SELECT id FROM metrics ORDER BY id DESC LIMIT $1)",
            self.metrics_retention,
        )
        return MetricSample.model_validate(dict(row))

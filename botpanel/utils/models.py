"""Pydantic models for botpanel domain objects.

Records are serialised with camelCase aliases (``isRunning``,
``serverCount``...) because that is the shape the dashboard UI consumes.
Python code uses the snake_case field names.
"""
from __future__ import annotations

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BotStatus(str, Enum):
    ONLINE = "ONLINE"
    OFFLINE = "OFFLINE"
    WARNING = "WARNING"


class BotType(str, Enum):
    MUSIC = "MUSIC"
    MODERATION = "MODERATION"
    GAMING = "GAMING"
    CUSTOM = "CUSTOM"


class LogLevel(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    SUCCESS = "success"


class _Model(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        use_enum_values=True,
    )

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class User(_Model):
    id: int
    username: str
    password: str
    role: str = "user"


class BotFile(_Model):
    name: str
    content: str


class BotSpec(_Model):
    """Input for creating a bot. Name and token are required."""

    name: str = ""
    token: str = ""
    prefix: str = "!"
    user_id: int = 0
    bot_type: Optional[str] = BotType.CUSTOM.value
    icon_type: Optional[str] = "robot"
    description: Optional[str] = None
    permissions: Optional[str] = None
    invite_config: Optional[Dict[str, Any]] = None
    script_file_name: Optional[str] = None
    script_content: Optional[str] = None
    additional_files: List[BotFile] = Field(default_factory=list)

    @field_validator("invite_config", mode="before")
    @classmethod
    def _parse_invite_config(cls, value: Any) -> Any:
        # older dashboards send the config as a JSON string
        if isinstance(value, str):
            return json.loads(value) if value.strip() else None
        return value


class BotUpdate(_Model):
    name: Optional[str] = None
    token: Optional[str] = None
    prefix: Optional[str] = None
    bot_type: Optional[str] = None
    icon_type: Optional[str] = None

    def changes(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


class BotRecord(_Model):
    id: int
    name: str
    token: str
    prefix: str = "!"
    user_id: int = 0
    is_running: bool = False
    status: BotStatus = BotStatus.OFFLINE
    memory: int = 0
    uptime: int = 0
    server_count: int = 0
    command_count: int = 0
    last_started: Optional[datetime] = None
    bot_type: Optional[str] = BotType.CUSTOM.value
    icon_type: Optional[str] = "robot"
    description: Optional[str] = None
    permissions: str = "268435456"
    invite_config: Dict[str, Any] = Field(default_factory=dict)

    def to_public(self) -> Dict[str, Any]:
        """Wire form with the credential token removed."""
        data = self.to_wire()
        data.pop("token", None)
        data["hasToken"] = bool(self.token)
        return data


class LogEntry(_Model):
    id: int
    bot_id: Optional[int] = None
    timestamp: datetime = Field(default_factory=utcnow)
    level: LogLevel = LogLevel.INFO
    message: str


class MetricSample(_Model):
    id: int
    timestamp: datetime = Field(default_factory=utcnow)
    cpu_usage: int = 0
    memory_usage: int = 0
    memory_total: int = 0
    disk_usage: int = 0
    disk_total: int = 0
    network_usage: int = 0

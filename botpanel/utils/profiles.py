"""Per-category bot defaults.

Maps a bot category to the gateway intents requested when connecting, and to
the permission bitmask / invite configuration stored when a bot is created
without explicit values. Also builds the OAuth2 invite URL for a bot.
"""
from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple
from urllib.parse import urlencode

INVITE_SCOPES = ["bot", "applications.commands"]
AUTHORIZE_URL = "https://discord.com/api/oauth2/authorize"

# Permission presets (Discord permission bit values)
BASIC_PERMISSIONS = "268435456"
MUSIC_PERMISSIONS = "36700160"
MODERATION_PERMISSIONS = "1099511627775"
GAMING_PERMISSIONS = "297273408"

BASE_INTENTS: Tuple[str, ...] = ("guilds", "guild_messages")


@dataclass(frozen=True)
class CapabilityProfile:
    name: str
    intents: Tuple[str, ...] = BASE_INTENTS


MINIMAL_PROFILE = CapabilityProfile("minimal")

PROFILES: Dict[str, CapabilityProfile] = {
    "SIMPLE": CapabilityProfile("SIMPLE"),
    "CUSTOM": CapabilityProfile("CUSTOM"),
    "GAMING": CapabilityProfile("GAMING"),
    "MUSIC": CapabilityProfile("MUSIC", BASE_INTENTS + ("voice_states",)),
    "MODERATION": CapabilityProfile("MODERATION", BASE_INTENTS + ("moderation",)),
    "ADVANCED": CapabilityProfile("ADVANCED", BASE_INTENTS + ("voice_states",)),
}

_DEFAULTS: Dict[str, Tuple[str, list, str]] = {
    "MUSIC": (
        MUSIC_PERMISSIONS,
        ["CONNECT", "SPEAK", "SEND_MESSAGES", "EMBED_LINKS"],
        "A music bot for your Discord server",
    ),
    "MODERATION": (
        MODERATION_PERMISSIONS,
        ["ADMINISTRATOR", "MANAGE_GUILD", "KICK_MEMBERS", "BAN_MEMBERS"],
        "A powerful moderation bot",
    ),
    "GAMING": (
        GAMING_PERMISSIONS,
        ["SEND_MESSAGES", "READ_MESSAGE_HISTORY", "ADD_REACTIONS", "EMBED_LINKS"],
        "A gaming bot for your Discord server",
    ),
}
_FALLBACK = (BASIC_PERMISSIONS, ["SEND_MESSAGES", "READ_MESSAGE_HISTORY"], "A Discord bot")


def profile_for(bot_type: Optional[str]) -> CapabilityProfile:
    """Return the capability profile for a category; unknown -> minimal."""
    if not bot_type:
        return MINIMAL_PROFILE
    return PROFILES.get(str(bot_type).upper(), MINIMAL_PROFILE)


def default_permissions(bot_type: Optional[str]) -> str:
    return _DEFAULTS.get(str(bot_type or "").upper(), _FALLBACK)[0]


def default_invite_config(bot_type: Optional[str]) -> Dict[str, Any]:
    _, perms, description = _DEFAULTS.get(str(bot_type or "").upper(), _FALLBACK)
    return {
        "scopes": list(INVITE_SCOPES),
        "permissions": list(perms),
        "description": description,
    }


def client_id_from_token(token: str) -> Optional[str]:
    """Extract the application id encoded in a bot token's first segment.

    The segment is the base64 encoded snowflake; older tooling pasted the raw
    id, so a purely numeric segment is returned as-is.
    """
    if not token:
        return None
    head = token.split(".", 1)[0]
    if head.isdigit():
        return head
    padded = head + "=" * (-len(head) % 4)
    try:
        decoded = base64.b64decode(padded, altchars=b"-_", validate=False).decode("ascii")
    except (binascii.Error, UnicodeDecodeError, ValueError):
        return None
    return decoded if decoded.isdigit() else None


def build_invite_url(client_id: str, permissions: str, scopes=None, guild_id: Optional[str] = None) -> str:
    params = {
        "client_id": client_id,
        "permissions": permissions,
        "scope": " ".join(scopes or INVITE_SCOPES),
    }
    if guild_id:
        params["guild_id"] = guild_id
    return f"{AUTHORIZE_URL}?{urlencode(params)}"

"""Bot lifecycle and reconciliation manager."""

from .broadcaster import Subscriber, UpdateBroadcaster
from .connection import ChatClient, ConnectionHandle, ConnectionState, DiscordChatClient
from .lifecycle import LifecycleManager
from .probe import BotSampler, HostProbe, MetricsProbe
from .reconciler import Reconciler
from .service import BotService

__all__ = (
    "BotService",
    "BotSampler",
    "ChatClient",
    "ConnectionHandle",
    "ConnectionState",
    "DiscordChatClient",
    "HostProbe",
    "LifecycleManager",
    "MetricsProbe",
    "Reconciler",
    "Subscriber",
    "UpdateBroadcaster",
)

"""Exception types shared across botpanel."""


class BotPanelError(Exception):
    """Base class for botpanel errors."""


class ValidationError(BotPanelError):
    """Raised when a bot spec or update is missing required data."""


class StorageError(BotPanelError):
    """Raised by storage backends when a read or write cannot complete."""

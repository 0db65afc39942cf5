"""Exception hierarchy for Aperture.

Every error raised by the core carries a short machine-readable code so
audit entries and logs can be grouped without parsing messages.
"""

from __future__ import annotations


class ApertureError(Exception):
    """Base class for all Aperture errors."""

    code = "APERTURE_ERROR"

    def __init__(self, message: str, cause: BaseException | None = None) -> None:
        super().__init__(message)
        self.cause = cause


class ConfigError(ApertureError):
    code = "CONFIG_ERROR"


class ChannelError(ApertureError):
    code = "CHANNEL_ERROR"


class StorageError(ApertureError):
    code = "STORAGE_ERROR"


class AgentError(ApertureError):
    code = "AGENT_ERROR"


class TurnTimeoutError(AgentError):
    """The engine did not reach idle within the configured turn timeout."""

    code = "TURN_TIMEOUT"

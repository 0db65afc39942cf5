"""Chat back-ends. The core only sees ``MessageChannel``."""

from aperture.channels.base import ChannelRegistry, MessageChannel, MessageHandler, resolve_target

__all__ = ["ChannelRegistry", "MessageChannel", "MessageHandler", "resolve_target"]

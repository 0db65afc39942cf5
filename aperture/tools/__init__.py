"""Tools exposed to the reasoning engine.

Every user gets a dispatcher bound to their own data directory.
"""

from aperture.storage.paths import UserPaths
from aperture.tools.dispatcher import ToolDispatcher, mcp_response
from aperture.tools.files import register_file_tools
from aperture.tools.reminders import register_reminder_tools


def build_user_tools(paths: UserPaths) -> ToolDispatcher:
    """Dispatcher with the reminder and notes tools for one user."""
    dispatcher = ToolDispatcher()
    register_reminder_tools(dispatcher, paths)
    register_file_tools(dispatcher, paths)
    return dispatcher


__all__ = [
    "ToolDispatcher",
    "build_user_tools",
    "mcp_response",
    "register_file_tools",
    "register_reminder_tools",
]

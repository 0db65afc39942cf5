"""Storage module -- file-backed, per-user persistence.

Public API:
    UserPaths     - Filesystem layout under DATA_DIR/users/{user_id}/
    AuditLog      - Date-partitioned history JSONL
    init_user_data, load_soul, load_heartbeat, load_memory, append_memory

Documents:
    Soul, SoulConfig, HeartbeatData, HeartbeatConfig, QuietHours, Schedule
"""

from aperture.storage.documents import (
    HeartbeatConfig,
    HeartbeatData,
    QuietHours,
    Schedule,
    Soul,
    SoulConfig,
)
from aperture.storage.history import AuditLog
from aperture.storage.paths import UserPaths, sanitize_id
from aperture.storage.user_data import (
    append_memory,
    init_user_data,
    load_heartbeat,
    load_memory,
    load_soul,
)

__all__ = [
    "AuditLog",
    "UserPaths",
    "sanitize_id",
    "append_memory",
    "init_user_data",
    "load_heartbeat",
    "load_memory",
    "load_soul",
    # Documents
    "HeartbeatConfig",
    "HeartbeatData",
    "QuietHours",
    "Schedule",
    "Soul",
    "SoulConfig",
]

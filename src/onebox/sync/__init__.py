"""Account session lifecycle and the manager that owns it."""

from .manager import SyncManager
from .scheduler import ScheduledTask
from .session import AccountSession, StatusListener, SyncPolicy
from .watchdog import Watchdog

__all__ = [
    "AccountSession",
    "ScheduledTask",
    "StatusListener",
    "SyncManager",
    "SyncPolicy",
    "Watchdog",
]

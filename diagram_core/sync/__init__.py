"""本地与远端会话的同步（防抖推送、游标拉取、last-write-wins）。"""

from .coordinator import SyncCoordinator, SyncStatus
from .timers import TaskScheduler

__all__ = ["SyncCoordinator", "SyncStatus", "TaskScheduler"]

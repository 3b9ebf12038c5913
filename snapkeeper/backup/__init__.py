"""
Backup module for snapkeeper.

This module handles the core backup functionality including:
- Snapshot storage (timestamped directories, current link, sync workspace)
- Retention policy enforcement
- Remote transport (ssh/rsync command lines)
- Execution orchestration
- Monitoring notification
"""

from .executor import BackupExecutor, execute_backup_for_host
from .snapshots import SnapshotStore, StorageError, ConflictError, NotFoundError
from .retention import IntervalKeepStrategy, RetentionManager, parse_keep_strategy
from .transport import RemoteTransport
from .notify import ZabbixNotifier

__all__ = [
    'BackupExecutor',
    'execute_backup_for_host',
    'SnapshotStore',
    'StorageError',
    'ConflictError',
    'NotFoundError',
    'IntervalKeepStrategy',
    'RetentionManager',
    'parse_keep_strategy',
    'RemoteTransport',
    'ZabbixNotifier'
]

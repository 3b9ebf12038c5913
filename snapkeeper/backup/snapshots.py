"""
Snapshot store for one host's backup history.

On-disk layout of a host directory:
    backup-YYYY-MM-DD-HH:MM:SS/   finalized snapshots (sortable by name)
    current -> backup-...         relative link to the newest snapshot
    .sync/                        in-progress transfer, promoted by finalize()
"""

import os
import shutil
from pathlib import Path
from datetime import datetime
from typing import List, Optional

from snapkeeper.utils.log_context import host_logger

SNAPSHOT_NAME_FORMAT = 'backup-%Y-%m-%d-%H:%M:%S'
CURRENT_LINK_NAME = 'current'
SYNC_DIR_NAME = '.sync'


class StorageError(Exception):
    """Raised when a snapshot storage operation fails."""
    pass


class ConflictError(StorageError):
    """Raised when a snapshot cannot be finalized into a free name."""
    pass


class NotFoundError(StorageError):
    """Raised when a snapshot directory does not exist."""
    pass


def format_snapshot_name(timestamp: datetime) -> str:
    """Directory name of the snapshot taken at timestamp."""
    return timestamp.strftime(SNAPSHOT_NAME_FORMAT)


def parse_snapshot_name(name: str) -> Optional[datetime]:
    """
    Parse a snapshot directory name.

    Args:
        name: Directory name

    Returns:
        Snapshot timestamp, or None if the name is not a snapshot name
    """
    try:
        timestamp = datetime.strptime(name, SNAPSHOT_NAME_FORMAT)
    except ValueError:
        return None
    # strptime accepts unpadded fields; only the canonical spelling counts
    if format_snapshot_name(timestamp) != name:
        return None
    return timestamp


class SnapshotStore:
    """
    Handler for the timestamped snapshot directories of one host.

    Only one worker operates on a host directory at a time (the scheduler
    never runs two jobs of the same schedule group), so no locking is done.
    """

    def __init__(self, host_dir: str, log=None):
        """
        Initialize snapshot store.

        Args:
            host_dir: Storage directory of the host, must already exist
            log: Logger (adapter) carrying the host context

        Raises:
            StorageError: If host_dir is not a directory
        """
        self.host_dir = Path(host_dir).absolute()
        self.log = log or host_logger(__name__, self.host_dir.name)

        if not self.host_dir.is_dir():
            raise StorageError(f"No such directory: {self.host_dir}")

    @property
    def sync_dir(self) -> Path:
        return self.host_dir / SYNC_DIR_NAME

    @property
    def current_link(self) -> Path:
        return self.host_dir / CURRENT_LINK_NAME

    def snapshot_path(self, timestamp: datetime) -> Path:
        """Full path of the snapshot taken at timestamp."""
        return self.host_dir / format_snapshot_name(timestamp)

    def list_snapshots(self) -> List[datetime]:
        """
        List the snapshots of this host.

        Returns:
            Snapshot timestamps in ascending order; entries that are not
            snapshot directories are ignored
        """
        snapshots = []
        for entry in os.scandir(self.host_dir):
            if not entry.is_dir():
                continue
            timestamp = parse_snapshot_name(entry.name)
            if timestamp is not None:
                snapshots.append(timestamp)
        snapshots.sort()
        return snapshots

    def latest(self) -> Optional[datetime]:
        """Timestamp of the newest snapshot, or None if there is none."""
        snapshots = self.list_snapshots()
        if not snapshots:
            return None
        return snapshots[-1]

    def open_workspace(self) -> Path:
        """
        Get the sync workspace, creating it if absent.

        An existing workspace is left over from an interrupted run; the next
        transfer continues into it.

        Returns:
            Path of the sync workspace
        """
        if self.sync_dir.exists():
            self.log.debug(f"Resuming previous backup to {self.sync_dir}")
        else:
            self.sync_dir.mkdir(parents=True)
        return self.sync_dir

    def finalize(self) -> datetime:
        """
        Promote the sync workspace to a new snapshot taken now.

        Returns:
            Timestamp of the new snapshot

        Raises:
            ConflictError: If the workspace is missing or a snapshot with the
                same timestamp already exists
            StorageError: If the rename fails
        """
        timestamp = datetime.now().replace(microsecond=0)

        if not self.sync_dir.is_dir():
            raise ConflictError(
                f"Unable to move {SYNC_DIR_NAME} to new location. No such directory: {self.sync_dir}"
            )

        snapshot_dir = self.snapshot_path(timestamp)
        if snapshot_dir.exists():
            raise ConflictError(
                f"Unable to move {SYNC_DIR_NAME} to new location. Directory already exists: {snapshot_dir}"
            )

        try:
            self.sync_dir.rename(snapshot_dir)
        except OSError as e:
            raise StorageError(f"Unable to move {SYNC_DIR_NAME} to new location. Rename failed: {e}")

        self.log.info(f"Finalized snapshot {snapshot_dir.name}")
        self.refresh_current_pointer()
        return timestamp

    def refresh_current_pointer(self) -> Optional[Path]:
        """
        Point the current link at the newest snapshot.

        Nothing is written if the link is already correct. A stale link is
        removed when no snapshot exists.

        Returns:
            Path of the current link, or None if there is no snapshot

        Raises:
            StorageError: If 'current' exists and is not a symbolic link
        """
        latest = self.latest()
        link = self.current_link

        if latest is None:
            if link.is_symlink():
                self.log.info(f"Removing old link: {link}")
                link.unlink()
            elif link.exists():
                raise StorageError(f"Not a symbolic link: {link}")
            return None

        target = format_snapshot_name(latest)

        if link.is_symlink():
            if os.readlink(link) == target:
                return link  # already linked
            link.unlink()
        elif link.exists():
            raise StorageError(f"Not a symbolic link: {link}")

        self.log.info(f"Linking {link} -> {target}")
        os.symlink(target, link)
        return link

    def delete(self, timestamp: datetime):
        """
        Recursively delete a snapshot.

        A deletion that fails half-way leaves a directory behind that is
        still listed; the next sweep retries it.

        Args:
            timestamp: Timestamp of the snapshot to delete

        Raises:
            NotFoundError: If the snapshot directory does not exist
            StorageError: If deletion fails
        """
        snapshot_dir = self.snapshot_path(timestamp)

        if not snapshot_dir.is_dir():
            raise NotFoundError(f"Backup in list not found in filesystem: {snapshot_dir}")

        try:
            shutil.rmtree(snapshot_dir)
        except OSError as e:
            raise StorageError(f"Failed to delete {snapshot_dir}: {e}")

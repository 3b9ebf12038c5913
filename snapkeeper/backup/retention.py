"""
Retention policy enforcement for snapshots.

The keep strategy follows storeBackup's interval rules
(http://www.nongnu.org/storebackup/en/node48.html): a policy is a list of
ages "1h 2h 1d 1w ..." and every adjacent pair forms a bucket that should
always contain one snapshot, so the further back in time, the fewer
snapshots survive.
"""

import re
import os
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, List, Any, Optional

from snapkeeper.utils.log_context import host_logger
from .snapshots import SnapshotStore, StorageError, NotFoundError

_DURATION_RE = re.compile(r'^(?:(\d+)m)?(?:(\d+)w)?(?:(\d+)d)?(?:(\d+)h)?$')


def parse_duration(token: str) -> timedelta:
    """
    Parse a duration token like '1h', '2d', '1w3d' or '1m'.

    Months count as 30 days.

    Raises:
        ValueError: If the token is malformed
    """
    match = _DURATION_RE.match(token)
    if not token or not match:
        raise ValueError(f"Invalid duration: {token!r}")
    months, weeks, days, hours = (int(g) if g else 0 for g in match.groups())
    return timedelta(days=months * 30 + weeks * 7 + days, hours=hours)


def format_duration(duration: timedelta) -> str:
    """Format a duration as e.g. '2d5h' (negative durations get a '-')."""
    seconds = int(duration.total_seconds())
    sign = '-' if seconds < 0 else ''
    seconds = abs(seconds)
    days, seconds = divmod(seconds, 86400)
    hours, seconds = divmod(seconds, 3600)
    minutes = seconds // 60

    parts = []
    if days:
        parts.append(f"{days}d")
    if hours:
        parts.append(f"{hours}h")
    if minutes:
        parts.append(f"{minutes}min")
    return sign + (''.join(parts) or '0h')


class IntervalKeepStrategy:
    """
    Decides which snapshots survive a pruning pass.

    Pure function of (now, snapshots): the same input always yields the same
    kept set.
    """

    def __init__(self, intervals: str, log=None):
        """
        Initialize keep strategy.

        Args:
            intervals: Whitespace separated bucket boundaries, e.g. "1h 2h 1d"
            log: Logger (adapter) carrying the host context

        Raises:
            ValueError: If a boundary is malformed or shorter than its predecessor
        """
        self.intervals = intervals
        self.log = log or host_logger(__name__)

        tokens = intervals.split()
        if not tokens:
            raise ValueError("No retention intervals given")

        self.tokens = tokens
        self.durations: List[timedelta] = []
        for token in tokens:
            duration = parse_duration(token)
            if self.durations and duration < self.durations[-1]:
                raise ValueError(f"intervals must be in order: {token} ({intervals})")
            self.durations.append(duration)

    def with_logger(self, log) -> 'IntervalKeepStrategy':
        """Same policy, logging to another (host) logger."""
        return IntervalKeepStrategy(self.intervals, log)

    def backups_to_keep(self, now: datetime, backups: List[datetime]) -> List[datetime]:
        """
        Select the snapshots to keep.

        Args:
            now: Reference time for snapshot ages
            backups: Snapshot timestamps in any order

        Returns:
            Timestamps to keep, ascending
        """
        if not backups:
            self.log.debug("No backups available")
            return []
        if len(backups) == 1:
            self.log.debug("Keeping the only available backup")
            return list(backups)

        # Newest first
        backups = sorted(backups, reverse=True)
        keep: Dict[datetime, str] = {}

        # Always keep the most recent backup: we don't know when the next one
        # will be made, so we cannot judge whether it is needed
        self._keep(keep, backups[0], 'most recent')

        offset = timedelta(0)
        oldest = backups[-1]

        for dur_from, dur_to, tok_from, tok_to in zip(
                self.durations, self.durations[1:], self.tokens, self.tokens[1:]):
            period = f"{tok_from}-{tok_to}"
            self.log.debug(f"Examining period {period}")

            # First backup that is old enough for the period. If there is
            # none, the oldest backup is kept and index runs past the end.
            index = 0
            backup = None
            while index < len(backups):
                backup = backups[index]
                age = now - backup

                if age >= dur_from + offset:
                    if age >= dur_to + offset:
                        # Too old for the period: take it anyway and shift all
                        # older periods by the same amount
                        offset = age - dur_to
                        self.log.info(
                            f"  no backup for period {period}, choosing next older backup "
                            f"{backup} with age {format_duration(age)} instead"
                        )
                        self.log.info(f"    using an offset of {format_duration(offset)} for all older backups")
                        self._keep(keep, backup, f"{period} (nearest older)")
                    else:
                        self.log.debug(f"  backup for period {period} found: {backup}")
                        self._keep(keep, backup, f"{period} (exact match)")
                    break
                elif backup == oldest:
                    self._keep(keep, backup, f"{period} (oldest possible)")
                    self.log.info(
                        f"  no backup for period {period}, choosing oldest backup "
                        f"{backup} with age {format_duration(age)} instead"
                    )
                index += 1

            self.log.debug(f"  period {period} is satisfied by backup {backup}")

            # Walk forward in time from the backup satisfying the period. A
            # backup is needed if the one kept for the period leaves it
            # before the next more recent backup enters it.
            kept = backup
            expires = dur_to - (now - kept)
            self.log.debug(f"  backup {backup} will leave period in {format_duration(expires)}.")

            while index > 0:
                previous = backup
                index -= 1
                backup = backups[index]

                # Time until this backup is old enough for the period
                remaining = dur_from - (now - backup)

                if expires < timedelta(0):
                    # The kept backup has already left the period
                    self._keep(keep, backup, f"{period} (candidate)")
                    kept = backup
                    expires = dur_to - (now - kept)
                    self.log.info(
                        f"  Has already left period. Keeping {backup}. "
                        f"Will leave period in {format_duration(expires)}"
                    )
                elif expires <= remaining:
                    self.log.info(
                        f"  backup {backup} will enter period in {format_duration(remaining)} "
                        f"- this is too late, trying to keep intermediate backup."
                    )
                    if kept == previous:
                        self.log.warning(
                            f"  There will be no backup for period {period} in {expires.days} days. "
                            f"This is usually caused by backups not being done regularly enough."
                        )
                        # At least minimize the gap
                        self._keep(keep, backup, f"{period} (candidate)")
                        kept = backup
                    else:
                        self._keep(keep, previous, f"{period} (candidate)")
                        kept = previous
                    expires = dur_to - (now - kept)
                    self.log.debug(f"  Marking {kept}. Will leave period in {format_duration(expires)}.")
                else:
                    self.log.debug(
                        f"  backup {backup} will enter period in {format_duration(remaining)} "
                        f"- no need to keep intermediate backup."
                    )

        for backup in backups:
            if backup in keep:
                self.log.debug(f"backup {backup}: [age {format_duration(now - backup)}] {keep[backup]}")
            else:
                self.log.debug(f"backup {backup}: DELETE")

        return sorted(keep)

    @staticmethod
    def _keep(keep: Dict[datetime, str], backup: datetime, reason: str):
        if backup in keep:
            reason = f"{keep[backup]} | {reason}"
        keep[backup] = reason

    def __repr__(self):
        return f'<IntervalKeepStrategy {self.intervals}>'


def parse_keep_strategy(spec: str, log=None) -> IntervalKeepStrategy:
    """
    Build a keep strategy from its configuration string.

    Args:
        spec: 'interval|<durations>', e.g. 'interval|1h 2h 1d 1w'

    Returns:
        IntervalKeepStrategy instance

    Raises:
        ValueError: If the strategy name or its arguments are invalid
    """
    name, _, args = spec.partition('|')
    name = name.strip()

    if name.lower() == 'interval':
        return IntervalKeepStrategy(args, log)
    raise ValueError(f"Invalid keep strategy: {name}")


class RetentionManager:
    """
    Deletes the snapshots a keep strategy does not retain.

    Deletion failures of single snapshots are logged and skipped, they never
    abort the sweep.
    """

    def __init__(self, strategy: IntervalKeepStrategy, log=None):
        """
        Initialize retention manager.

        Args:
            strategy: Keep strategy deciding which snapshots survive
            log: Logger (adapter) carrying the host context
        """
        self.strategy = strategy
        self.log = log or host_logger(__name__)

    def enforce_host_policy(self, store: SnapshotStore, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Enforce the retention policy on one host's snapshots.

        Args:
            store: SnapshotStore of the host
            now: Reference time (default: current local time)

        Returns:
            Dict with keys 'kept', 'deleted' (counts) and 'errors' (messages)
        """
        self.log.info("Deleting old backups")

        result = {
            'kept': 0,
            'deleted': 0,
            'errors': []
        }

        snapshots = store.list_snapshots()
        keep = set(self.strategy.with_logger(self.log).backups_to_keep(now or datetime.now(), snapshots))
        result['kept'] = len(keep)

        if keep:
            for snapshot in snapshots:
                if snapshot in keep:
                    continue
                try:
                    self.log.info(f"Deleting old backup {snapshot}")
                    store.delete(snapshot)
                    result['deleted'] += 1
                except NotFoundError as e:
                    self.log.error(f"BUG: {e}")
                    result['errors'].append(str(e))
                except StorageError as e:
                    self.log.error(f"Failed to delete backup {snapshot}: {e}")
                    result['errors'].append(str(e))

        store.refresh_current_pointer()
        return result

    def enforce_all_policies(self, storage_root: str, hostname: Optional[str] = None) -> Dict[str, Any]:
        """
        Enforce the retention policy on every host directory of a storage root.

        Args:
            storage_root: Directory containing one directory per host
            hostname: Only sweep this host (default: all hosts)

        Returns:
            Dict with summary of cleanup operations:
            {
                'hosts_processed': int,
                'deleted': int,
                'errors': List[str]
            }

        Raises:
            StorageError: If storage_root (or the given host directory) does not exist
        """
        root = Path(storage_root)
        if not root.is_dir():
            raise StorageError(f"No such directory: {root.absolute()}")

        if hostname is not None:
            if not (root / hostname).is_dir():
                raise StorageError(f"No such directory: {(root / hostname).absolute()}")
            host_dirs = [root / hostname]
        else:
            host_dirs = sorted(Path(entry.path) for entry in os.scandir(root) if entry.is_dir())

        summary = {
            'hosts_processed': 0,
            'deleted': 0,
            'errors': []
        }

        for host_dir in host_dirs:
            log = host_logger(__name__, host_dir.name)
            try:
                store = SnapshotStore(str(host_dir), log)
                result = RetentionManager(self.strategy, log).enforce_host_policy(store)
            except (StorageError, OSError) as e:
                log.error(f"Retention sweep failed: {e}")
                summary['errors'].append(f"{host_dir.name}: {e}")
                continue
            summary['hosts_processed'] += 1
            summary['deleted'] += result['deleted']
            summary['errors'].extend(result['errors'])

        self.log.info(
            f"Retention enforcement complete. "
            f"Hosts: {summary['hosts_processed']}, "
            f"Deleted: {summary['deleted']}, "
            f"Errors: {len(summary['errors'])}"
        )
        return summary


def enforce_retention_policies(storage_root: str, intervals: str, hostname: Optional[str] = None) -> Dict[str, Any]:
    """
    Run the standalone retention sweep over a storage root.

    Returns:
        Summary dict from RetentionManager.enforce_all_policies()
    """
    manager = RetentionManager(IntervalKeepStrategy(intervals))
    return manager.enforce_all_policies(storage_root, hostname)

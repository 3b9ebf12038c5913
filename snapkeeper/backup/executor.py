"""
Backup executor - orchestrates the complete backup workflow of one host.

Workflow:
1. Refresh the current link and open the sync workspace
2. Probe the remote host (failure is only a warning)
3. Run the remote PRE_BACKUP hook (failure fails the run)
4. Transfer every volume into the sync workspace
5. Finalize the workspace into a new snapshot (only if nothing failed)
6. Delete snapshots the retention policy does not keep
7. Collect statistics of changed files
8. Notify the monitoring server (always, if configured)
"""

from datetime import datetime
from typing import Optional

from snapkeeper.models import HostConf, RunStatistics
from snapkeeper.utils.log_context import host_logger
from snapkeeper.utils.process import CommandError, DEFAULT_GRACE_PERIOD
from .snapshots import SnapshotStore, StorageError
from .retention import RetentionManager
from .transport import RemoteTransport, RSYNC_PARTIAL_VANISHED
from .notify import ZabbixNotifier


def format_size(size: int) -> str:
    """Human readable size, e.g. '15 MB'."""
    units = ['bytes', 'KB', 'MB', 'GB', 'TB']
    unit = 0
    while size > 10240 and unit < len(units) - 1:
        size = size // 1024
        unit += 1
    return f"{size} {units[unit]}"


def format_elapsed(start: datetime, end: datetime) -> str:
    """Elapsed time, e.g. '1h 5m 3s'."""
    seconds = int((end - start).total_seconds())
    days, seconds = divmod(seconds, 86400)
    hours, seconds = divmod(seconds, 3600)
    minutes, seconds = divmod(seconds, 60)

    parts = []
    if days:
        parts.append(f"{days}d")
    if hours:
        parts.append(f"{hours}h")
    if minutes:
        parts.append(f"{minutes}m")
    if seconds or not parts:
        parts.append(f"{seconds}s")
    return ' '.join(parts)


class BackupExecutor:
    """
    Runs one backup of a host, end to end.

    Stage failures are recorded in the run statistics instead of being raised.
    """

    def __init__(
        self,
        host: HostConf,
        transport: RemoteTransport,
        notifier: Optional[ZabbixNotifier] = None,
        log=None
    ):
        """
        Initialize backup executor.

        Args:
            host: Host configuration
            transport: Remote transport of the host
            notifier: Notifier for the run outcome, None to skip notification
            log: Logger (adapter) carrying the host context
        """
        self.host = host
        self.transport = transport
        self.notifier = notifier
        self.log = log or host_logger(__name__, host.host)
        self.statistics = RunStatistics()

    def execute(self) -> RunStatistics:
        """
        Execute the backup.

        Returns:
            RunStatistics of the run

        Raises:
            StorageError: If the host directory is unusable or the snapshot
                cannot be finalized (after the notification was attempted)
        """
        statistics = self.statistics
        statistics.start_time = datetime.now()
        self.log.info("Starting backup")

        try:
            self._execute_workflow()
        except Exception as e:
            statistics.backup_ok = False
            statistics.errors.append(f"Backup failed: {e}")
            self.log.error(f"Backup failed: {e}")
            raise
        finally:
            if statistics.end_time is None:
                statistics.end_time = datetime.now()
            self._notify()
            self.log.info("Backup finished.")

        return statistics

    def _execute_workflow(self):
        """Execute the backup workflow steps."""
        statistics = self.statistics
        store = SnapshotStore(self.host.host_storage_dir, self.log)

        current_link = store.refresh_current_pointer()
        sync_dir = store.open_workspace()

        statistics.backup_ok = True

        self._probe()
        self._pre_backup()

        for volume in self.host.volumes:
            self._transfer(volume, sync_dir, current_link)

        statistics.end_time = datetime.now()

        if not statistics.backup_ok:
            self.log.warning(f"Backup failed, keeping {sync_dir} to resume the next run")
            return

        # Failures from here on are fatal for the run
        statistics.snapshot = store.finalize()

        self._enforce_retention(store)
        self._collect_statistics(store)

        self.log.info(
            f"Statistics: {statistics.changed_file_count} files changed, "
            f"using {format_size(statistics.changed_file_size)} of disk space. "
            f"Duration: {format_elapsed(statistics.start_time, statistics.end_time)}"
        )

    def _probe(self):
        self._run_remote('NOOP', self.transport.probe, fails_backup=False)

    def _pre_backup(self):
        self._run_remote('PRE_BACKUP', self.transport.pre_backup, fails_backup=True)

    def _run_remote(self, command: str, run, fails_backup: bool):
        try:
            exit_code = run()
            if exit_code == 0:
                return
            message = f"Error when running remote {command} command. Exit code {exit_code}"
        except (CommandError, ValueError) as e:
            # ValueError: unparsable command template
            message = f"Error when running remote {command} command: {e}"

        if fails_backup:
            self.statistics.backup_ok = False
        self.statistics.errors.append(message)
        self.log.warning(message)

    def _transfer(self, volume, sync_dir, current_link):
        try:
            exit_code = self.transport.transfer(volume, sync_dir, current_link)
        except Exception as e:
            self.statistics.backup_ok = False
            self.statistics.errors.append(f"Errors in rsync for {volume.volume}: {e}")
            self.log.warning(f"Error during command execution - backup failed: {e}")
            return

        if exit_code == 0:
            self.log.info("Rsync exited with status 0 - backup succeeded.")
        elif exit_code == RSYNC_PARTIAL_VANISHED:
            self.log.info(
                f"Rsync exited with status {RSYNC_PARTIAL_VANISHED} - backup succeeded "
                f"but some files vanished during transfer"
            )
        else:
            self.statistics.backup_ok = False
            self.statistics.errors.append(f"Errors in rsync for {volume.volume}: exit code {exit_code}")
            self.log.warning(f"Rsync exited with status {exit_code} - backup failed")

    def _enforce_retention(self, store: SnapshotStore):
        strategy = self.host.backup_keep_strategy
        if strategy is None:
            self.log.warning("No keepStrategy defined. Keeping all backups forever")
            return
        RetentionManager(strategy, self.log).enforce_host_policy(store)

    def _collect_statistics(self, store: SnapshotStore):
        try:
            consumer = self.transport.count_changed_files(store.snapshot_path(self.statistics.snapshot))
        except CommandError as e:
            self.log.warning(f"Failed to collect statistics: {e}")
            return
        self.statistics.changed_file_count = consumer.total_count
        self.statistics.changed_file_size = consumer.total_size

    def _notify(self):
        if self.notifier is None:
            return
        try:
            self.notifier.notify(self.statistics)
        except Exception as e:
            self.log.warning(f"Failed to send notify via zabbix: {e}")


def execute_backup_for_host(conf, hostname: str, grace_period: float = DEFAULT_GRACE_PERIOD,
                            notify_retries: int = 1, notify_retry_delay: float = 2.0,
                            notify_timeout: float = 30) -> RunStatistics:
    """
    Execute the backup of a host by name.

    Args:
        conf: BackupConf with all hosts
        hostname: Host key

    Returns:
        RunStatistics of the run

    Raises:
        ConfigError: If the host is not configured
    """
    host = conf.get_for_host(hostname)
    log = host_logger(__name__, host.host)

    transport = RemoteTransport(
        host,
        conf.ssh_private_key_file,
        conf.ssh_known_hosts_file,
        grace_period=grace_period,
        log=log
    )
    notifier = ZabbixNotifier.for_host(
        host,
        retries=notify_retries,
        retry_delay=notify_retry_delay,
        timeout=notify_timeout,
        log=log
    )

    executor = BackupExecutor(host, transport, notifier, log)
    return executor.execute()

"""
Scheduling of backup runs for snapkeeper.

Manages:
- Parallel backup of all hosts (BackupScheduler), where hosts sharing a
  schedule group never run at the same time
- The cron-triggered daemon (APScheduler) running the all-hosts backup
"""

import threading
from concurrent.futures import ThreadPoolExecutor as WorkerPool
from typing import Any, Callable, Dict, List, Optional

from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.executors.pool import ThreadPoolExecutor

from snapkeeper.models import HostConf, RunStatistics
from snapkeeper.backup_conf import BackupConf, ConfigError
from snapkeeper.backup.executor import execute_backup_for_host
from snapkeeper.utils.log_context import host_logger

log = host_logger(__name__)

# Global scheduler instance and Flask app reference
scheduler = None
flask_app = None


class BackupScheduler:
    """
    Runs the backups of a list of hosts with a fixed number of workers.

    Workers take the first queued host whose schedule group is not in
    progress. Hosts whose group is busy stay queued; a worker that finds no
    eligible host waits until a group is released. Every host is attempted
    exactly once; disabled hosts are skipped but still occupy their group
    while being processed.
    """

    def __init__(
        self,
        number_of_parallel_backups: int,
        hosts: List[HostConf],
        executor: Callable[[HostConf], Optional[RunStatistics]],
        poll_interval: float = 1.0
    ):
        """
        Initialize backup scheduler.

        Args:
            number_of_parallel_backups: Number of workers (at least 1)
            hosts: Hosts to back up, in queue order
            executor: Runs the backup of one host; may raise
            poll_interval: Max seconds an idle worker waits before re-checking

        Raises:
            ValueError: If number_of_parallel_backups is less than 1
        """
        if number_of_parallel_backups < 1:
            raise ValueError(f"Need at least one parallel backup, got {number_of_parallel_backups}")

        self.number_of_parallel_backups = number_of_parallel_backups
        self.executor = executor
        self.poll_interval = poll_interval

        self._hosts_todo = list(hosts)
        self._groups_in_progress = set()
        self._condition = threading.Condition()
        self._summary = {
            'hosts_processed': 0,
            'succeeded': 0,
            'failed': 0,
            'skipped': 0,
            'errors': []
        }

    def execute_backups(self) -> Dict[str, Any]:
        """
        Run all queued backups and wait for them to finish.

        Returns:
            Dict with summary of the run:
            {
                'hosts_processed': int,
                'succeeded': int,
                'failed': int,
                'skipped': int,
                'errors': List[str]
            }
        """
        workers = self.number_of_parallel_backups
        log.info(f"Starting {workers} parallel executors")

        with WorkerPool(max_workers=workers, thread_name_prefix='BackupExecutor') as pool:
            futures = [
                pool.submit(self._run_worker, f"BackupExecutor {i + 1}/{workers}")
                for i in range(workers)
            ]
            log.info("Waiting for backups to finish")
            for future in futures:
                future.result()

        log.info(
            f"All backups finished. "
            f"Succeeded: {self._summary['succeeded']}, "
            f"Failed: {self._summary['failed']}, "
            f"Skipped: {self._summary['skipped']}"
        )
        return self._summary

    def _run_worker(self, worker_name: str):
        while True:
            host = self._take_next_host()
            if host is None:
                return
            try:
                self._run_host(host, worker_name)
            finally:
                self._release(host)

    def _take_next_host(self) -> Optional[HostConf]:
        """Pop the first host whose group is free; None once the queue is empty."""
        with self._condition:
            while True:
                if not self._hosts_todo:
                    return None

                for host in self._hosts_todo:
                    if host.schedule_group in self._groups_in_progress:
                        continue
                    self._hosts_todo.remove(host)
                    self._groups_in_progress.add(host.schedule_group)
                    return host

                # Retry once a group is released
                self._condition.wait(self.poll_interval)

    def _release(self, host: HostConf):
        with self._condition:
            self._groups_in_progress.discard(host.schedule_group)
            self._condition.notify_all()

    def _run_host(self, host: HostConf, worker_name: str):
        if not host.schedule_enabled:
            log.info(f"Skipping disabled schedule for {host.host}")
            self._count('skipped')
            return

        log.info(f"Running {host.host} on {worker_name}")
        try:
            statistics = self.executor(host)
        except Exception as e:
            log.exception(f"Fatal error in backup of {host.host}")
            self._count('failed', f"{host.host}: {e}")
            return
        finally:
            log.info(f"Finished {host.host} on {worker_name}")

        if statistics is not None and not statistics.backup_ok:
            self._count('failed', f"{host.host}: " + '; '.join(statistics.errors))
        else:
            self._count('succeeded')

    def _count(self, outcome: str, error: Optional[str] = None):
        with self._condition:
            self._summary['hosts_processed'] += 1
            self._summary[outcome] += 1
            if error:
                self._summary['errors'].append(error)


def backup_settings(app_config) -> Dict[str, Any]:
    """Executor settings taken from the application config."""
    return {
        'grace_period': app_config['PROCESS_GRACE_PERIOD'],
        'notify_retries': app_config['NOTIFY_RETRIES'],
        'notify_retry_delay': app_config['NOTIFY_RETRY_DELAY'],
        'notify_timeout': app_config['NOTIFY_TIMEOUT'],
    }


def run_all_backups(conf: BackupConf, app_config, max_parallel: int) -> Dict[str, Any]:
    """
    Back up every configured host.

    Args:
        conf: BackupConf with all hosts
        app_config: Application config (process and notification settings)
        max_parallel: Number of backups running at the same time

    Returns:
        Summary dict from BackupScheduler.execute_backups()
    """
    settings = backup_settings(app_config)

    def run_host(host: HostConf) -> RunStatistics:
        return execute_backup_for_host(conf, host.host, **settings)

    backup_scheduler = BackupScheduler(
        max_parallel,
        conf.get_all_hosts(),
        run_host,
        poll_interval=app_config['SCHEDULER_POLL_INTERVAL']
    )
    return backup_scheduler.execute_backups()


def init_scheduler(app):
    """
    Initialize and configure APScheduler for the backup daemon.

    Args:
        app: Flask app instance
    """
    global scheduler, flask_app

    if scheduler is not None:
        return scheduler

    # Store Flask app reference for use in background threads
    flask_app = app

    executors = {
        'default': ThreadPoolExecutor(max_workers=1)
    }

    job_defaults = {
        'coalesce': True,  # Combine multiple pending instances into one
        'max_instances': 1,  # Only one run of all hosts at a time
        'misfire_grace_time': 300  # 5 minutes grace period for misfires
    }

    timezone = app.config['SCHEDULER_TIMEZONE']
    scheduler = BlockingScheduler(
        executors=executors,
        job_defaults=job_defaults,
        timezone=timezone
    )

    scheduler.add_job(
        func=_run_all_backups_wrapper,
        trigger=CronTrigger.from_crontab(app.config['SCHEDULE_CRON'], timezone=timezone),
        id='backup_all',
        name='Backup: ALL',
        replace_existing=True
    )

    return scheduler


def start_scheduler():
    """
    Start the APScheduler. Blocks until the scheduler is shut down.
    """
    global scheduler

    if scheduler is None:
        raise RuntimeError("Scheduler not initialized. Call init_scheduler() first.")

    if scheduler.running:
        log.info(f"Scheduler already running (state={scheduler.state})")
        return

    for job in scheduler.get_jobs():
        log.info(f"Scheduled {job.id}: {job.name} ({job.trigger})")
    scheduler.start()


def stop_scheduler():
    """Stop the APScheduler."""
    global scheduler

    if scheduler and scheduler.running:
        scheduler.shutdown()
        log.info("APScheduler stopped")


def _run_all_backups_wrapper():
    """
    Run the backup of all hosts in the daemon.

    The host configuration is re-read for every run so that changes are
    picked up without a restart.
    """
    global flask_app

    with flask_app.app_context():
        config = flask_app.config
        try:
            conf = BackupConf.read(config['CONF_DIR'])
        except ConfigError as e:
            log.error(f"Scheduled backup skipped, invalid configuration: {e}")
            return
        run_all_backups(conf, config, config['MAX_PARALLEL'])

"""
Command line interface for snapkeeper.

    snapkeeper backup HOSTNAME           back up one host
    snapkeeper backup ALL [MAX_PARALLEL] back up all hosts
    snapkeeper prune HOSTNAME|ALL        retention sweep with the fixed policy
    snapkeeper serve                     run the all-hosts backup on a cron schedule
"""

import sys

import click
from flask import current_app
from flask.cli import FlaskGroup, with_appcontext

from snapkeeper import create_app
from snapkeeper.backup_conf import BackupConf, ConfigError
from snapkeeper.backup.executor import execute_backup_for_host
from snapkeeper.backup.retention import enforce_retention_policies
from snapkeeper.backup.snapshots import StorageError
from snapkeeper.scheduler import (
    backup_settings,
    run_all_backups,
    init_scheduler,
    start_scheduler,
    stop_scheduler
)
from snapkeeper.utils.log_context import host_logger

log = host_logger(__name__)


def _read_conf() -> BackupConf:
    """Read the host configuration; exit with status 1 if it is invalid."""
    try:
        return BackupConf.read(current_app.config['CONF_DIR'])
    except ConfigError as e:
        log.error(f"Invalid configuration: {e}")
        sys.exit(1)


@click.command('backup')
@click.argument('hostname')
@click.argument('max_parallel', type=click.IntRange(min=1), required=False)
@with_appcontext
def backup_command(hostname, max_parallel):
    """Back up HOSTNAME, or all hosts with ALL [MAX_PARALLEL]."""
    config = current_app.config
    conf = _read_conf()

    if hostname.upper() == 'ALL':
        summary = run_all_backups(conf, config, max_parallel or config['MAX_PARALLEL'])
        for error in summary['errors']:
            log.warning(f"Failed: {error}")
        return

    try:
        statistics = execute_backup_for_host(conf, hostname, **backup_settings(config))
    except Exception as e:
        log.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)

    if not statistics.backup_ok:
        sys.exit(1)


@click.command('prune')
@click.argument('hostname')
@click.option('--storage-dir', default=None, help='Storage root with one directory per host.')
@with_appcontext
def prune_command(hostname, storage_dir):
    """Delete old snapshots of HOSTNAME (or ALL hosts) with the fixed retention policy."""
    config = current_app.config
    storage_dir = storage_dir or config['PRUNE_STORAGE_DIR']
    only_host = None if hostname.upper() == 'ALL' else hostname

    try:
        enforce_retention_policies(storage_dir, config['PRUNE_KEEP_INTERVALS'], only_host)
    except StorageError as e:
        log.error(f"Fatal error: {e}")
        sys.exit(1)


@click.command('serve')
@with_appcontext
def serve_command():
    """Run the backup of all hosts on the configured cron schedule."""
    # Fail early on a broken configuration
    _read_conf()

    init_scheduler(current_app._get_current_object())
    try:
        start_scheduler()
    except (KeyboardInterrupt, SystemExit):
        stop_scheduler()


def register_commands(app):
    """Register the snapkeeper commands on the app's CLI group."""
    app.cli.add_command(backup_command)
    app.cli.add_command(prune_command)
    app.cli.add_command(serve_command)


cli = FlaskGroup(create_app=create_app, help='Snapshot backups of remote hosts.')


def main():
    cli()

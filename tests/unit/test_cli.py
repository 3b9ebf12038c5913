"""
Unit tests for the command line interface.
"""

from datetime import datetime
from unittest.mock import patch

from freezegun import freeze_time

from snapkeeper.cli import backup_command, prune_command, serve_command
from snapkeeper.models import RunStatistics
from snapkeeper.backup.snapshots import SnapshotStore

NOW = datetime(2024, 6, 1, 12, 0, 0)


class TestBackupCommand:
    """Tests for 'backup'"""

    def test_backup_host(self, runner):
        """Test a successful backup of one host"""
        with patch('snapkeeper.cli.execute_backup_for_host',
                   return_value=RunStatistics(backup_ok=True)) as execute:
            result = runner.invoke(backup_command, ['web1'])

        assert result.exit_code == 0
        conf, hostname = execute.call_args[0]
        assert hostname == 'web1'
        assert conf.get_for_host('web1').host == 'web1'
        assert execute.call_args[1]['grace_period'] == 1.0

    def test_backup_host_failed(self, runner):
        """Test a failed backup exits with status 1"""
        with patch('snapkeeper.cli.execute_backup_for_host',
                   return_value=RunStatistics(backup_ok=False, errors=['Errors in rsync for ROOT: exit code 12'])):
            result = runner.invoke(backup_command, ['web1'])

        assert result.exit_code == 1

    def test_backup_host_fatal(self, runner):
        """Test an aborted backup exits with status 1"""
        with patch('snapkeeper.cli.execute_backup_for_host', side_effect=RuntimeError('disk full')):
            result = runner.invoke(backup_command, ['web1'])

        assert result.exit_code == 1

    def test_backup_unknown_host(self, runner):
        """Test an unknown host exits with status 1"""
        result = runner.invoke(backup_command, ['unknown'])

        assert result.exit_code == 1

    def test_backup_invalid_configuration(self, runner, conf_dir):
        """Test a broken configuration exits with status 1"""
        (conf_dir / 'backup.conf').write_text('hosts: [\n')

        result = runner.invoke(backup_command, ['web1'])

        assert result.exit_code == 1

    def test_backup_all(self, runner):
        """Test all hosts with the configured parallelism"""
        summary = {'hosts_processed': 3, 'succeeded': 1, 'failed': 1, 'skipped': 1,
                   'errors': ['db1: Errors in rsync for ROOT: exit code 23']}

        with patch('snapkeeper.cli.run_all_backups', return_value=summary) as run_all:
            result = runner.invoke(backup_command, ['ALL'])

        assert result.exit_code == 0
        assert run_all.call_args[0][2] == 1

    def test_backup_all_parallel(self, runner):
        """Test all hosts with explicit parallelism"""
        summary = {'hosts_processed': 0, 'succeeded': 0, 'failed': 0, 'skipped': 0, 'errors': []}

        with patch('snapkeeper.cli.run_all_backups', return_value=summary) as run_all:
            result = runner.invoke(backup_command, ['all', '4'])

        assert result.exit_code == 0
        assert run_all.call_args[0][2] == 4

    def test_backup_all_invalid_parallelism(self, runner):
        """Test parallelism must be at least 1"""
        with patch('snapkeeper.cli.run_all_backups') as run_all:
            result = runner.invoke(backup_command, ['ALL', '0'])

        assert result.exit_code == 2
        run_all.assert_not_called()


class TestPruneCommand:
    """Tests for 'prune'"""

    def test_prune_all(self, runner, app):
        """Test the sweep runs with the fixed policy over the storage root"""
        with patch('snapkeeper.cli.enforce_retention_policies') as enforce:
            result = runner.invoke(prune_command, ['ALL'])

        assert result.exit_code == 0
        enforce.assert_called_once_with(
            app.config['PRUNE_STORAGE_DIR'],
            app.config['PRUNE_KEEP_INTERVALS'],
            None
        )

    def test_prune_host_with_storage_dir(self, runner, app, tmp_path):
        """Test the sweep of a single host in another storage root"""
        with patch('snapkeeper.cli.enforce_retention_policies') as enforce:
            result = runner.invoke(prune_command, ['web1', '--storage-dir', str(tmp_path)])

        assert result.exit_code == 0
        enforce.assert_called_once_with(str(tmp_path), app.config['PRUNE_KEEP_INTERVALS'], 'web1')

    def test_prune_deletes(self, runner, storage_dir, make_snapshot):
        """Test old snapshots are deleted"""
        make_snapshot(storage_dir / 'web1', datetime(2024, 6, 1, 11, 0, 0))
        make_snapshot(storage_dir / 'web1', datetime(2024, 6, 1, 11, 0, 1))
        make_snapshot(storage_dir / 'web1', datetime(2024, 6, 1, 11, 0, 2))

        with freeze_time(NOW):
            result = runner.invoke(prune_command, ['web1'])

        assert result.exit_code == 0
        snapshots = SnapshotStore(str(storage_dir / 'web1')).list_snapshots()
        assert datetime(2024, 6, 1, 11, 0, 2) in snapshots
        assert len(snapshots) < 3

    def test_prune_missing_storage(self, runner, tmp_path):
        """Test a missing storage root exits with status 1"""
        result = runner.invoke(prune_command, ['ALL', '--storage-dir', str(tmp_path / 'missing')])

        assert result.exit_code == 1


class TestServeCommand:
    """Tests for 'serve'"""

    def test_serve(self, runner):
        """Test the daemon is started and stopped on interrupt"""
        with patch('snapkeeper.cli.init_scheduler') as init, \
                patch('snapkeeper.cli.start_scheduler', side_effect=KeyboardInterrupt) as start, \
                patch('snapkeeper.cli.stop_scheduler') as stop:
            result = runner.invoke(serve_command)

        assert result.exit_code == 0
        init.assert_called_once()
        start.assert_called_once()
        stop.assert_called_once()

    def test_serve_invalid_configuration(self, runner, conf_dir):
        """Test the daemon does not start with a broken configuration"""
        (conf_dir / 'backup.conf').write_text('hosts: [\n')

        with patch('snapkeeper.cli.init_scheduler') as init:
            result = runner.invoke(serve_command)

        assert result.exit_code == 1
        init.assert_not_called()


class TestCommandsRegistered:
    """Tests for the app's command group"""

    def test_commands(self, app):
        for name in ('backup', 'prune', 'serve'):
            assert name in app.cli.commands

"""
Unit tests for remote transport command construction.
"""

from pathlib import Path
from unittest.mock import patch

import pytest

from snapkeeper.backup.transport import RemoteTransport, FindFilesConsumer, TRANSPORT_ENV
from snapkeeper.models import VolumeConf

KEY_FILE = '/etc/snapkeeper/backup_ssh_private_key'
KNOWN_HOSTS_FILE = '/etc/snapkeeper/backup_ssh_known_hosts'


@pytest.fixture
def transport(host_conf):
    return RemoteTransport(host_conf, KEY_FILE, KNOWN_HOSTS_FILE, grace_period=2.0)


class TestSshCommand:
    """Tests for ssh command lines"""

    def test_remote_command(self, transport):
        """Test ssh running a remote command"""
        assert transport.ssh_command('PRE_BACKUP') == [
            '/usr/bin/ssh',
            '-i', KEY_FILE,
            '-o', f'UserKnownHostsFile {KNOWN_HOSTS_FILE}',
            '-o', 'HashKnownHosts no',
            'root@web1.example.com', 'PRE_BACKUP'
        ]

    def test_probe_accepts_new_host_key(self, transport):
        """Test the probe records the host key on first contact"""
        cmd = transport.ssh_command('NOOP')

        assert cmd[-4:] == ['-o', 'StrictHostKeyChecking no', 'root@web1.example.com', 'NOOP']

    def test_remote_shell(self, transport):
        """Test ssh as rsync's remote shell has no target"""
        cmd = transport.ssh_command()

        assert cmd[-1] == 'HashKnownHosts no'
        assert 'root@web1.example.com' not in cmd

    def test_custom_port(self, transport, host_conf):
        """Test a non-default ssh port"""
        host_conf.remote_ssh_port = 2222

        assert transport.ssh_command('NOOP')[:3] == ['/usr/bin/ssh', '-p', '2222']


class TestRsyncCommand:
    """Tests for rsync command lines"""

    def test_rsync_command(self, transport):
        """Test the full rsync command of a volume with excludes and link base"""
        cmd = transport.rsync_command(
            VolumeConf('var', ['tmp', 'cache']),
            Path('/srv/hosts/web1/.sync'),
            Path('/srv/hosts/web1/current')
        )

        assert cmd == [
            '/usr/bin/nice', '-n', '19',
            '/usr/bin/rsync',
            '-a', '-v', '--fake-super', '--delete', '--numeric-ids', '--relative', '--sparse',
            '--link-dest', '/srv/hosts/web1/current/var',
            '--delete-excluded',
            '--exclude', 'tmp',
            '--exclude', 'cache',
            '--rsh', (
                f'/usr/bin/ssh -i {KEY_FILE} -o "UserKnownHostsFile {KNOWN_HOSTS_FILE}" '
                f'-o "HashKnownHosts no"'
            ),
            'root@web1.example.com:/var/',
            '/srv/hosts/web1/.sync/var/'
        ]

    def test_rsync_without_link_base(self, transport):
        """Test the first transfer has no --link-dest"""
        cmd = transport.rsync_command(VolumeConf('etc'), Path('/srv/hosts/web1/.sync'), None)

        assert '--link-dest' not in cmd
        assert '--exclude' not in cmd
        assert cmd[-2:] == ['root@web1.example.com:/etc/', '/srv/hosts/web1/.sync/etc/']

    def test_rsync_without_nice(self, transport, host_conf):
        """Test an empty nice command"""
        host_conf.cmd_nice = ''

        cmd = transport.rsync_command(VolumeConf('etc'), Path('/srv/hosts/web1/.sync'), None)

        assert cmd[:2] == ['/usr/bin/rsync', '-a']

    def test_find_command(self, transport):
        """Test the statistics scan command"""
        assert transport.find_command(Path('/srv/hosts/web1/backup-2024-01-01-00:00:00')) == [
            '/usr/bin/find', '/srv/hosts/web1/backup-2024-01-01-00:00:00',
            '-type', 'f', '-links', '1', '-printf', '%s %p\n'
        ]


class TestTransportExecution:
    """Tests for running the transport commands"""

    def test_probe(self, transport):
        """Test the probe runs without an ssh agent"""
        with patch('snapkeeper.backup.transport.run_command', return_value=255) as run_command:
            assert transport.probe() == 255

        name, cmd = run_command.call_args[0]
        assert name == 'SSH-TEST'
        assert cmd[-1] == 'NOOP'
        assert run_command.call_args[1]['env'] == TRANSPORT_ENV
        assert run_command.call_args[1]['grace_period'] == 2.0

    def test_transfer(self, transport):
        """Test the transfer returns rsync's exit code"""
        with patch('snapkeeper.backup.transport.run_command', return_value=24) as run_command:
            assert transport.transfer(VolumeConf('etc'), Path('/srv/.sync'), None) == 24

        assert run_command.call_args[0][0] == 'RSYNC'

    def test_count_changed_files(self, transport):
        """Test the find output is summed up"""
        def run_command(name, cmd, env=None, consumer=None, grace_period=None, log=None):
            consumer('12 /srv/a')
            consumer('30 /srv/b with space')
            return 0

        with patch('snapkeeper.backup.transport.run_command', side_effect=run_command):
            consumer = transport.count_changed_files(Path('/srv/snapshot'))

        assert consumer.total_count == 2
        assert consumer.total_size == 42


class TestFindFilesConsumer:
    """Tests for FindFilesConsumer"""

    def test_ignores_invalid_lines(self):
        """Test lines that are not '<size> <path>'"""
        consumer = FindFilesConsumer()

        consumer('find: permission denied')
        consumer('nospace')
        consumer('')
        consumer('7 /ok')

        assert consumer.total_count == 1
        assert consumer.total_size == 7

    def test_reports_large_files(self):
        """Test large changed files are logged"""
        consumer = FindFilesConsumer()

        with patch.object(consumer.log, 'info') as info:
            consumer(f'{200 * 1024 * 1024} /var/lib/big.img')
            consumer('100 /etc/small')

        info.assert_called_once()
        assert '/var/lib/big.img' in info.call_args[0][0]

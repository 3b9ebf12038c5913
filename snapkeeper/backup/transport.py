"""
Remote transport commands for backup operations.

Builds the ssh and rsync command lines for a host and runs them:
- probe(): remote NOOP, also records the host key on first contact
- pre_backup(): remote PRE_BACKUP hook
- transfer(): rsync of one volume into the sync workspace, hard-linking
  unchanged files against the current snapshot
- count_changed_files(): find files with a single hard link in a snapshot
"""

from pathlib import Path
from typing import List, Optional

from snapkeeper.models import HostConf, VolumeConf
from snapkeeper.utils.log_context import host_logger
from snapkeeper.utils.process import run_command, dump_command, split_command, DEFAULT_GRACE_PERIOD

# Rsync exit code for "some files vanished before they could be transferred"
RSYNC_PARTIAL_VANISHED = 24

# Files larger than this are reported individually by the statistics scan
LARGE_FILE_SIZE = 100 * 1024 * 1024

# Keep an agent of the invoking user out of the key selection
TRANSPORT_ENV = {'SSH_AUTH_SOCK': ''}


class FindFilesConsumer:
    """Sums up '<size> <path>' lines printed by find."""

    def __init__(self, log=None):
        self.total_count = 0
        self.total_size = 0
        self.log = log or host_logger(__name__)

    def __call__(self, line: str):
        size, sep, path = line.partition(' ')
        if not sep:
            return
        try:
            size_in_bytes = int(size)
        except ValueError:
            return

        self.total_count += 1
        self.total_size += size_in_bytes

        if size_in_bytes > LARGE_FILE_SIZE:
            self.log.info(f"Changed file with {size_in_bytes} bytes: {path}")


class RemoteTransport:
    """
    Command construction and execution for one host.
    """

    def __init__(
        self,
        host: HostConf,
        private_key_file: str,
        known_hosts_file: str,
        grace_period: float = DEFAULT_GRACE_PERIOD,
        log=None
    ):
        """
        Initialize transport.

        Args:
            host: Host configuration
            private_key_file: ssh private key used for the backup user
            known_hosts_file: ssh known hosts file of the backup user
            grace_period: Seconds a process may take to exit after its output closed
            log: Logger (adapter) carrying the host context
        """
        self.host = host
        self.private_key_file = str(private_key_file)
        self.known_hosts_file = str(known_hosts_file)
        self.grace_period = grace_period
        self.log = log or host_logger(__name__, host.host)

    @property
    def remote_login(self) -> str:
        return f"root@{self.host.remote_address}"

    def ssh_command(self, remote_command: Optional[str] = None) -> List[str]:
        """
        Build the ssh command line.

        Args:
            remote_command: Command to run remotely; without one the command
                is meant as rsync's remote shell

        Returns:
            Command argv
        """
        cmd = split_command(self.host.cmd_ssh)
        if self.host.remote_ssh_port:
            cmd += ['-p', str(self.host.remote_ssh_port)]
        cmd += ['-i', self.private_key_file]
        cmd += ['-o', f"UserKnownHostsFile {self.known_hosts_file}"]
        cmd += ['-o', 'HashKnownHosts no']

        if remote_command == 'NOOP':
            # First contact: accept and record the host key
            cmd += ['-o', 'StrictHostKeyChecking no']

        if remote_command is not None:
            cmd += [self.remote_login, remote_command]
        return cmd

    def rsync_command(self, volume: VolumeConf, sync_dir: Path, current_link: Optional[Path]) -> List[str]:
        """
        Build the rsync command line for one volume.

        Args:
            volume: Volume to transfer
            sync_dir: Sync workspace of the host
            current_link: Current snapshot link used as hard-link base, if any

        Returns:
            Command argv
        """
        cmd = split_command(self.host.cmd_nice)
        cmd += split_command(self.host.cmd_rsync)
        cmd += [
            '-a',             # archive
            '-v',
            '--fake-super',   # store attributes as xattrs (needs user_xattr on the storage)
            '--delete',
            '--numeric-ids',  # don't map ids to the backup host's users/groups
            '--relative',
            '--sparse',
        ]
        if current_link is not None:
            cmd += ['--link-dest', str(Path(current_link).absolute() / volume.volume)]
        cmd.append('--delete-excluded')
        for pattern in volume.exclude or []:
            cmd += ['--exclude', pattern]

        cmd += ['--rsh', dump_command(self.ssh_command())]
        cmd.append(f"{self.remote_login}:/{volume.volume}/")
        cmd.append(f"{Path(sync_dir).absolute()}/{volume.volume}/")
        return cmd

    def find_command(self, snapshot_dir: Path) -> List[str]:
        """Build the find command listing files with exactly one hard link."""
        cmd = split_command(self.host.cmd_find)
        cmd += [str(Path(snapshot_dir).absolute()), '-type', 'f', '-links', '1', '-printf', '%s %p\n']
        return cmd

    def _run(self, name: str, cmd: List[str], env=None, consumer=None) -> int:
        return run_command(name, cmd, env=env, consumer=consumer,
                           grace_period=self.grace_period, log=self.log)

    def probe(self) -> int:
        """Run the remote NOOP command. Returns the exit code."""
        return self._run('SSH-TEST', self.ssh_command('NOOP'), env=TRANSPORT_ENV)

    def pre_backup(self) -> int:
        """Run the remote PRE_BACKUP hook. Returns the exit code."""
        return self._run('PRE_BACKUP', self.ssh_command('PRE_BACKUP'), env=TRANSPORT_ENV)

    def transfer(self, volume: VolumeConf, sync_dir: Path, current_link: Optional[Path]) -> int:
        """Transfer one volume into the sync workspace. Returns rsync's exit code."""
        return self._run('RSYNC', self.rsync_command(volume, sync_dir, current_link), env=TRANSPORT_ENV)

    def count_changed_files(self, snapshot_dir: Path) -> FindFilesConsumer:
        """
        Count files of a snapshot that are not hard-linked to an older snapshot.

        Returns:
            FindFilesConsumer with total_count and total_size
        """
        consumer = FindFilesConsumer(self.log)
        self._run('FIND', self.find_command(snapshot_dir), consumer=consumer)
        return consumer

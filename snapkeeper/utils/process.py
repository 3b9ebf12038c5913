"""
External process execution.

Commands are run as argv lists with stderr merged into stdout; the output is
streamed line by line to a consumer (default: the debug log). Once the output
stream is closed the process gets a grace period to exit, after which it is
killed and the invocation fails.
"""

import os
import shlex
import subprocess
from typing import Callable, Dict, List, Optional

from snapkeeper.utils.log_context import host_logger

DEFAULT_GRACE_PERIOD = 5.0


class CommandError(Exception):
    """Raised when an external command cannot be run to completion."""
    pass


class ProcessKilledError(CommandError):
    """Raised when a process did not terminate and had to be killed."""
    pass


def dump_command(cmd: List[str], env: Optional[Dict[str, str]] = None) -> str:
    """
    Render a command (and environment overrides) as a shell-style string.

    Args:
        cmd: Command argv
        env: Environment overrides

    Returns:
        e.g. 'SSH_AUTH_SOCK="" /usr/bin/ssh -o "HashKnownHosts no" root@host'
    """
    parts = []
    if env:
        for key, value in env.items():
            parts.append(f'{key}="{value}"')

    for arg in cmd:
        if not arg:
            continue
        if any(c in arg for c in ' \t\r\n"\\'):
            escaped = arg.replace('\\', '\\\\').replace('"', '\\"')
            parts.append(f'"{escaped}"')
        else:
            parts.append(arg)

    return ' '.join(parts)


def split_command(command: Optional[str]) -> List[str]:
    """Split a configured command template like '/usr/bin/nice -n 19' into argv parts."""
    if not command or not command.strip():
        return []
    return shlex.split(command)


def run_command(
    name: str,
    cmd: List[str],
    env: Optional[Dict[str, str]] = None,
    consumer: Optional[Callable[[str], None]] = None,
    grace_period: float = DEFAULT_GRACE_PERIOD,
    log=None
) -> int:
    """
    Run an external command to completion.

    Args:
        name: Short name used in log lines (e.g. 'RSYNC')
        cmd: Command argv
        env: Environment overrides on top of the current environment
        consumer: Called with every output line (without line terminator);
            lines are logged at debug level if not given
        grace_period: Seconds to wait for exit after the output was closed
        log: Logger (adapter) carrying the host context

    Returns:
        Exit code of the process

    Raises:
        ProcessKilledError: If the process did not exit within the grace period
        CommandError: If the process cannot be started
    """
    log = log or host_logger(__name__)
    log.info(f"Executing {name}: {dump_command(cmd, env)}")

    process_env = None
    if env is not None:
        process_env = dict(os.environ)
        process_env.update(env)

    try:
        proc = subprocess.Popen(
            cmd,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            env=process_env,
            text=True,
            errors='replace'
        )
    except OSError as e:
        raise CommandError(f"Failed to start {name}: {e}")

    try:
        with proc.stdout:
            for line in proc.stdout:
                line = line.rstrip('\r\n')
                if consumer is not None:
                    consumer(line)
                else:
                    log.debug(f"{name}: {line}")
    except BaseException:
        # Never leave the child running behind a failed reader
        proc.kill()
        proc.wait()
        raise

    try:
        return proc.wait(timeout=grace_period)
    except subprocess.TimeoutExpired:
        proc.kill()
        proc.wait()
        raise ProcessKilledError(f"{name}: Process did not terminate and was killed!")

"""
Reports the outcome of backup runs to a zabbix server.
"""

import time
from typing import List, Optional

from snapkeeper.models import HostConf, RunStatistics
from snapkeeper.utils.log_context import host_logger
from snapkeeper.utils.zabbix import ZabbixSender, ZabbixItem, ZabbixResponse, ZabbixProtocolError, DEFAULT_PORT


def build_items(zabbix_host: str, statistics: RunStatistics) -> List[ZabbixItem]:
    """
    Build the items reported for a run.

    Only the status is reported for a failed run.
    """
    if not statistics.backup_ok:
        return [ZabbixItem(zabbix_host, 'backup.status', 'ERR: See log for details')]

    return [
        ZabbixItem(zabbix_host, 'backup.status', 'OK: Backup finished'),
        ZabbixItem(zabbix_host, 'backup.duration', str(int(statistics.duration.total_seconds()))),
        ZabbixItem(zabbix_host, 'backup.lastSuccessfull', statistics.end_time.strftime('%Y-%m-%d %H:%M:%S')),
        ZabbixItem(zabbix_host, 'backup.changedFileCount', str(statistics.changed_file_count)),
        ZabbixItem(zabbix_host, 'backup.changedFileSize', str(statistics.changed_file_size)),
    ]


class ZabbixNotifier:
    """
    Best-effort notification: failures are retried, then logged and dropped.
    """

    def __init__(
        self,
        server: str,
        zabbix_host: str,
        port: int = DEFAULT_PORT,
        retries: int = 1,
        retry_delay: float = 2.0,
        timeout: float = 30,
        log=None
    ):
        """
        Initialize notifier.

        Args:
            server: zabbix server address
            zabbix_host: Host name the items are reported for
            port: zabbix trapper port
            retries: Additional attempts after a failed send
            retry_delay: Seconds to wait between attempts
            timeout: Socket timeout in seconds
            log: Logger (adapter) carrying the host context
        """
        self.sender = ZabbixSender(server, port, timeout)
        self.zabbix_host = zabbix_host
        self.retries = retries
        self.retry_delay = retry_delay
        self.log = log or host_logger(__name__, zabbix_host)

    @classmethod
    def for_host(cls, host: HostConf, retries: int = 1, retry_delay: float = 2.0,
                 timeout: float = 30, log=None) -> Optional['ZabbixNotifier']:
        """
        Create the notifier configured for a host.

        Returns:
            ZabbixNotifier, or None if the host has no zabbix server or host name
        """
        if not host.notify_zabbix_server or not host.notify_zabbix_host:
            return None
        return cls(
            host.notify_zabbix_server,
            host.notify_zabbix_host,
            port=host.notify_zabbix_port or DEFAULT_PORT,
            retries=retries,
            retry_delay=retry_delay,
            timeout=timeout,
            log=log or host_logger(__name__, host.host)
        )

    def notify(self, statistics: RunStatistics) -> Optional[ZabbixResponse]:
        """
        Send the statistics of a run.

        Returns:
            Server response, or None if every attempt failed
        """
        self.log.debug("Sending notify via zabbix")
        items = build_items(self.zabbix_host, statistics)

        attempts = self.retries + 1
        for attempt in range(1, attempts + 1):
            try:
                response = self.sender.send_items(items)
                self.log.info(f"Sent notify via zabbix: {response}")
                return response
            except (OSError, ZabbixProtocolError) as e:
                self.log.warning(f"Failed to send notify via zabbix (attempt {attempt}/{attempts}): {e}")
                if attempt < attempts:
                    time.sleep(self.retry_delay)

        return None

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional


@dataclass
class VolumeConf:
    """A remote directory tree transferred into its own snapshot subtree"""
    volume: str
    exclude: List[str] = field(default_factory=list)

    def __repr__(self):
        return f'<VolumeConf {self.volume} exclude={self.exclude}>'


@dataclass
class HostConf:
    """Backup job configuration for one host"""
    host: str
    remote_address: Optional[str] = None
    storage_dir: Optional[str] = None
    host_storage_dir: Optional[str] = None
    cmd_nice: Optional[str] = None
    cmd_rsync: Optional[str] = None
    cmd_ssh: Optional[str] = None
    cmd_find: Optional[str] = None
    keep_strategy: Optional[str] = None
    schedule_group: Optional[str] = None
    schedule_enabled: Optional[bool] = None
    remote_ssh_port: Optional[int] = None
    volumes: Optional[List[VolumeConf]] = None
    notify_zabbix_server: Optional[str] = None
    notify_zabbix_host: Optional[str] = None
    notify_zabbix_port: Optional[int] = None

    # Built from keep_strategy when the configuration is loaded
    backup_keep_strategy: object = field(default=None, repr=False, compare=False)

    def __repr__(self):
        return f'<HostConf {self.host} group={self.schedule_group} enabled={self.schedule_enabled}>'


@dataclass
class RunStatistics:
    """Outcome of one backup run, handed to the notifier"""
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    backup_ok: bool = False
    errors: List[str] = field(default_factory=list)
    changed_file_count: int = 0
    changed_file_size: int = 0
    snapshot: Optional[datetime] = None

    @property
    def duration(self) -> timedelta:
        if self.start_time is None or self.end_time is None:
            return timedelta(0)
        return self.end_time - self.start_time

    def __repr__(self):
        return f'<RunStatistics ok={self.backup_ok} errors={len(self.errors)}>'

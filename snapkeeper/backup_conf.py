"""
Host configuration (CONF_DIR/backup.conf).

YAML document with the keys 'defaults' (host settings applied to every host
that does not set them) and 'hosts' (list of host settings):

    defaults:
      keep_strategy: "interval|1h 2h 1d 2d 1w 2w 1m"
      notify_zabbix_server: zabbix.example.com
    hosts:
      - host: web1
        volumes:
          - volume: etc
          - volume: var
            exclude: [tmp, cache]
      - host: db1
        schedule_group: storage-a

String values may reference other settings of the same host as ${name}.
"""

import os
from collections import OrderedDict
from dataclasses import fields, replace
from pathlib import Path
from typing import Any, Callable, Dict, List

import yaml

from snapkeeper.models import HostConf, VolumeConf
from snapkeeper.backup.retention import parse_keep_strategy
from snapkeeper.utils.log_context import host_logger
from snapkeeper.utils.process import split_command

CONF_FILE_NAME = 'backup.conf'
SSH_PRIVATE_KEY_FILE_NAME = 'backup_ssh_private_key'
SSH_KNOWN_HOSTS_FILE_NAME = 'backup_ssh_known_hosts'


class ConfigError(Exception):
    """Raised when the host configuration is invalid."""
    pass


def _string_field(name: str) -> Callable[[HostConf], Any]:
    return lambda host: getattr(host, name)


# Placeholder resolvers, in resolution order: a setting may only rely on
# settings listed before it being resolved already.
PLACEHOLDER_FIELDS: Dict[str, Callable[[HostConf], Any]] = OrderedDict(
    (name, _string_field(name)) for name in (
        'host',
        'remote_address',
        'storage_dir',
        'host_storage_dir',
        'cmd_nice',
        'cmd_rsync',
        'cmd_ssh',
        'cmd_find',
        'keep_strategy',
        'schedule_group',
        'notify_zabbix_server',
        'notify_zabbix_host',
    )
)
PLACEHOLDER_FIELDS['remote_ssh_port'] = _string_field('remote_ssh_port')
PLACEHOLDER_FIELDS['notify_zabbix_port'] = _string_field('notify_zabbix_port')

HOST_KEYS = {f.name for f in fields(HostConf)} - {'backup_keep_strategy'}

# Command templates, split into argv when a backup runs
COMMAND_FIELDS = ('cmd_nice', 'cmd_rsync', 'cmd_ssh', 'cmd_find')


def default_host_conf() -> HostConf:
    """Built-in defaults for every host."""
    return HostConf(
        host='',
        storage_dir='hosts',
        host_storage_dir='${storage_dir}/${host}',
        cmd_nice='/usr/bin/nice -n 19 /usr/bin/ionice -c3',
        cmd_rsync='/usr/bin/rsync',
        cmd_ssh='/usr/bin/ssh',
        cmd_find='/usr/bin/find',
        remote_address='${host}',
        schedule_group='${host}',
        schedule_enabled=True,
        volumes=[VolumeConf('ROOT', ['tmp'])],
        notify_zabbix_server=None,
        notify_zabbix_host='${host}',
        notify_zabbix_port=10051
    )


def resolve_placeholders(value: str, host: HostConf) -> str:
    """
    Replace ${name} references in value by the host's settings.

    Raises:
        ConfigError: If a reference is unterminated, unknown or unset
    """
    result = []
    end = 0
    while True:
        start = value.find('${', end)
        if start < 0:
            break
        result.append(value[end:start])

        close = value.find('}', start)
        if close < 0:
            raise ConfigError(f"Invalid placeholder in {value}")

        name = value[start + 2:close]
        resolver = PLACEHOLDER_FIELDS.get(name)
        resolved = resolver(host) if resolver else None
        if resolved is None:
            raise ConfigError(f"Unresolved placeholder '{name}' in {value}")

        result.append(str(resolved))
        end = close + 1

    result.append(value[end:])
    return ''.join(result)


def _parse_volumes(raw: Any, where: str) -> List[VolumeConf]:
    if not isinstance(raw, list):
        raise ConfigError(f"{where}: 'volumes' must be a list")

    volumes = []
    for entry in raw:
        if isinstance(entry, str):
            entry = {'volume': entry}
        if not isinstance(entry, dict) or not entry.get('volume'):
            raise ConfigError(f"{where}: every volume needs a 'volume' name")
        unknown = set(entry) - {'volume', 'exclude'}
        if unknown:
            raise ConfigError(f"{where}: unknown volume settings {sorted(unknown)}")
        exclude = entry.get('exclude') or []
        if isinstance(exclude, str):
            exclude = [exclude]
        volumes.append(VolumeConf(str(entry['volume']), [str(e) for e in exclude]))
    return volumes


def _parse_host(raw: Any, where: str) -> HostConf:
    if not isinstance(raw, dict):
        raise ConfigError(f"{where}: expected a mapping")

    unknown = set(raw) - HOST_KEYS
    if unknown:
        raise ConfigError(f"{where}: unknown settings {sorted(unknown)}")

    values = dict(raw)
    if 'volumes' in values and values['volumes'] is not None:
        values['volumes'] = _parse_volumes(values['volumes'], where)
    values.setdefault('host', '')
    return HostConf(**values)


def _apply_defaults(host: HostConf, defaults: HostConf) -> HostConf:
    missing = {
        name: getattr(defaults, name)
        for name in HOST_KEYS
        if name != 'host' and getattr(host, name) is None
    }
    return replace(host, **missing)


def _finish_host(host: HostConf) -> HostConf:
    """Resolve placeholders and build the keep strategy."""
    if not host.host:
        raise ConfigError("Every host needs a 'host' key")

    for name in PLACEHOLDER_FIELDS:
        value = getattr(host, name)
        if isinstance(value, str) and '${' in value:
            host = replace(host, **{name: resolve_placeholders(value, host)})

    for name in COMMAND_FIELDS:
        try:
            split_command(getattr(host, name))
        except ValueError as e:
            raise ConfigError(f"Host {host.host}: invalid {name}: {e}")

    if host.keep_strategy:
        try:
            strategy = parse_keep_strategy(host.keep_strategy, host_logger('snapkeeper.backup.retention', host.host))
        except ValueError as e:
            raise ConfigError(f"Host {host.host}: {e}")
        host = replace(host, backup_keep_strategy=strategy)

    if not host.volumes:
        raise ConfigError(f"Host {host.host}: no volumes configured")
    return host


class BackupConf:
    """
    Resolved configuration of all hosts.
    """

    def __init__(self, conf_dir: str, hosts: List[HostConf]):
        self.conf_dir = Path(conf_dir).absolute()
        self.ssh_private_key_file = self.conf_dir / SSH_PRIVATE_KEY_FILE_NAME
        self.ssh_known_hosts_file = self.conf_dir / SSH_KNOWN_HOSTS_FILE_NAME
        self.host_map: Dict[str, HostConf] = OrderedDict()
        for host in hosts:
            if host.host in self.host_map:
                raise ConfigError(f"Duplicate configuration for host {host.host}")
            self.host_map[host.host] = host

    @classmethod
    def read(cls, conf_dir: str) -> 'BackupConf':
        """
        Read CONF_DIR/backup.conf.

        Args:
            conf_dir: Configuration directory

        Returns:
            BackupConf instance

        Raises:
            ConfigError: If the configuration or the ssh key is missing or invalid
        """
        conf_path = Path(conf_dir) / CONF_FILE_NAME
        try:
            with open(conf_path, 'r', encoding='utf-8') as f:
                raw = yaml.safe_load(f) or {}
        except OSError as e:
            raise ConfigError(f"Cannot read {conf_path}: {e}")
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {conf_path}: {e}")

        if not isinstance(raw, dict):
            raise ConfigError(f"{conf_path}: expected a mapping with 'defaults' and 'hosts'")
        unknown = set(raw) - {'defaults', 'hosts'}
        if unknown:
            raise ConfigError(f"{conf_path}: unknown sections {sorted(unknown)}")

        defaults = default_host_conf()
        if raw.get('defaults'):
            defaults = _apply_defaults(_parse_host(raw['defaults'], 'defaults'), defaults)

        hosts = []
        for index, raw_host in enumerate(raw.get('hosts') or []):
            host = _parse_host(raw_host, f"hosts[{index}]")
            hosts.append(_finish_host(_apply_defaults(host, defaults)))

        conf = cls(conf_dir, hosts)
        conf._check_ssh_key()
        return conf

    def _check_ssh_key(self):
        if not self.ssh_private_key_file.is_file():
            raise ConfigError(f"Missing ssh keyfile: {self.ssh_private_key_file}")
        # ssh refuses keys readable by others
        os.chmod(self.ssh_private_key_file, 0o600)

    def get_all_hosts(self) -> List[HostConf]:
        return list(self.host_map.values())

    def get_for_host(self, hostname: str) -> HostConf:
        """
        Raises:
            ConfigError: If the host is not configured
        """
        host = self.host_map.get(hostname)
        if host is None:
            raise ConfigError(f"No configuration for host {hostname}")
        return host

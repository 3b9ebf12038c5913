"""
Host routes - Read-only view of configured hosts and their snapshots.
"""

from flask import Blueprint, jsonify, current_app

from snapkeeper.backup_conf import BackupConf, ConfigError
from snapkeeper.backup.snapshots import SnapshotStore, StorageError


bp = Blueprint('hosts', __name__, url_prefix='/api/hosts')


def _snapshot_info(host):
    """List a host's snapshots; the error is reported instead if storage is unusable."""
    try:
        store = SnapshotStore(host.host_storage_dir)
        return [snapshot.isoformat() for snapshot in store.list_snapshots()], None
    except (StorageError, OSError) as e:
        return [], str(e)


@bp.route('/', methods=['GET'])
def list_hosts():
    """
    Get all configured hosts with their snapshot summary.

    Returns:
        JSON with host records
    """
    try:
        conf = BackupConf.read(current_app.config['CONF_DIR'])
    except ConfigError as e:
        return jsonify({'error': str(e)}), 500

    hosts = []
    for host in conf.get_all_hosts():
        snapshots, error = _snapshot_info(host)
        hosts.append({
            'host': host.host,
            'schedule_group': host.schedule_group,
            'enabled': bool(host.schedule_enabled),
            'snapshot_count': len(snapshots),
            'latest_snapshot': snapshots[-1] if snapshots else None,
            'error': error
        })

    return jsonify({'hosts': hosts})


@bp.route('/<hostname>/snapshots', methods=['GET'])
def list_snapshots(hostname):
    """
    Get the snapshots of one host, oldest first.

    Returns:
        JSON with snapshot timestamps, 404 if the host is not configured
    """
    try:
        conf = BackupConf.read(current_app.config['CONF_DIR'])
    except ConfigError as e:
        return jsonify({'error': str(e)}), 500

    try:
        host = conf.get_for_host(hostname)
    except ConfigError as e:
        return jsonify({'error': str(e)}), 404

    snapshots, error = _snapshot_info(host)
    return jsonify({
        'host': host.host,
        'snapshots': snapshots,
        'error': error
    })

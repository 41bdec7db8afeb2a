"""Pool status and drift report."""

import logging
from typing import Any, Dict, Optional

import psutil

from .mergerfs_manager import MergerFSManager, union_branches
from .models import DiskRole, format_size
from .mounts import MountTable
from .snapraid_config import SnapRAIDConfigWriter
from .state_store import StateStore


logger = logging.getLogger(__name__)

GB = 1024 ** 3


def _usage(path: str) -> Optional[Dict[str, Any]]:
    try:
        usage = psutil.disk_usage(path)
    except OSError as e:
        logger.warning(f"Could not read usage of {path}: {e}")
        return None
    return {
        'total': format_size(usage.total / GB),
        'used': format_size(usage.used / GB),
        'free': format_size(usage.free / GB),
        'total_bytes': usage.total,
        'used_bytes': usage.used,
        'free_bytes': usage.free,
        'used_percent': round(usage.percent),
    }


class PoolStatusReporter:
    """Compares the committed pool entries with the live mount state."""

    def __init__(self, state: StateStore, mount_table: MountTable,
                 mergerfs: MergerFSManager, snapraid: SnapRAIDConfigWriter):
        self._state = state
        self._mounts = mount_table
        self._mergerfs = mergerfs
        self._snapraid = snapraid

    def get_status(self) -> Dict[str, Any]:
        entries = self._state.pool_entries()
        topology = self._mergerfs.get_topology()
        warnings = []

        capacity = None
        if topology.mounted:
            capacity = _usage(topology.mount_point)
            if capacity:
                if capacity['used_percent'] > 90:
                    warnings.append('Pool is over 90% full')
                elif capacity['used_percent'] > 80:
                    warnings.append('Pool is over 80% full')

        disks = []
        for entry in entries:
            mounted = self._mounts.is_mounted(entry.mount_point)
            disk = {
                'id': entry.disk_id,
                'role': entry.role.value,
                'mount_point': entry.mount_point,
                'uuid': entry.uuid,
                'mounted': mounted,
                'usage': _usage(entry.mount_point) if mounted else None,
            }
            if not mounted:
                warnings.append(f"Disk {entry.disk_id} is not mounted")
            disks.append(disk)

        expected = union_branches(entries)
        drift = {
            'not_mounted': [d['mount_point'] for d in disks if not d['mounted']],
            'unexpected_branches': [b for b in topology.branches if b not in expected],
            'missing_branches': [b for b in expected if b not in topology.branches] if topology.mounted else [],
        }
        if drift['unexpected_branches']:
            warnings.append(
                f"Union mount has branches not in configuration: {', '.join(drift['unexpected_branches'])}"
            )
        if drift['missing_branches']:
            warnings.append(
                f"Configured branches missing from union mount: {', '.join(drift['missing_branches'])}"
            )

        configured = any(e.role == DiskRole.DATA for e in entries)
        return {
            'configured': configured,
            'health': self._health(configured, topology.mounted, warnings, drift),
            'mergerfs': {
                'running': topology.mounted,
                'mount_point': topology.mount_point,
                'branches': topology.branches,
                'create_policy': topology.create_policy,
            },
            'snapraid': self._snapraid.summary(),
            'capacity': capacity,
            'disks': disks,
            'drift': drift,
            'warnings': warnings,
        }

    @staticmethod
    def _health(configured: bool, running: bool, warnings, drift) -> str:
        if not configured and not running:
            return 'unconfigured'
        if running and not warnings:
            return 'healthy'
        if drift['not_mounted'] or drift['missing_branches']:
            return 'degraded'
        if not running:
            return 'offline'
        return 'warning'

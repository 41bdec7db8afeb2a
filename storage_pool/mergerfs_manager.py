"""MergerFS union mount management."""

import os
import logging
from enum import Enum
from typing import Dict, Iterable, List, Optional

from .disk_prep import DiskPreparer
from .errors import CommandFailedError, FilesInUseError
from .models import DiskRole, OperationLog, PoolDiskEntry, PoolTopology
from .mounts import MountTable
from .system_executor import CommandType, SystemCommandExecutor


logger = logging.getLogger(__name__)

MERGERFS_FSTYPE = 'fuse.mergerfs'

BASE_OPTIONS = [
    'defaults',
    'allow_other',
    'nonempty',
    'use_ino',
    'cache.files=partial',
    'dropcacheonclose=true',
]


class MergerFSPolicy(Enum):
    """Create policies used by the pool."""
    LFS = "lfs"  # Least Free Space, fills the cache branch first
    MFS = "mfs"  # Most Free Space, balances across data branches


def order_branches(branches: Iterable[str], roles: Dict[str, DiskRole]) -> List[str]:
    """Stable reorder putting every cache branch before every other branch.

    ``roles`` maps mount points to roles; unknown paths count as cache when
    their last component starts with ``cache``.
    """
    def is_cache(path: str) -> bool:
        role = roles.get(path)
        if role is not None:
            return role == DiskRole.CACHE
        return os.path.basename(path.rstrip('/')).startswith('cache')

    unique = list(dict.fromkeys(branches))
    return [b for b in unique if is_cache(b)] + [b for b in unique if not is_cache(b)]


def union_branches(entries: Iterable[PoolDiskEntry]) -> List[str]:
    """Branch list for a set of pool entries: cache first, parity excluded."""
    entries = list(entries)
    cache = [e.mount_point for e in entries if e.role == DiskRole.CACHE]
    data = [e.mount_point for e in entries if e.role == DiskRole.DATA]
    return cache + data


class MergerFSManager:
    """Inspects and (re)mounts the pool's union filesystem."""

    def __init__(self, executor: SystemCommandExecutor, mount_table: MountTable,
                 pool_mount_point: str, cache_min_free_space: str = "200G"):
        self._executor = executor
        self._mounts = mount_table
        self._prep = DiskPreparer(executor)
        self.pool_mount_point = pool_mount_point
        self.cache_min_free_space = cache_min_free_space

    def get_topology(self) -> PoolTopology:
        """Live branch list and options of the union mount."""
        entry = self._mounts.find(self.pool_mount_point)
        if entry is None or entry.fstype != MERGERFS_FSTYPE:
            return PoolTopology(mount_point=self.pool_mount_point)

        # The control file is authoritative; the mount table source can be
        # abbreviated by mergerfs's default fsname.
        branches_attr = self._control_attr('branches')
        if branches_attr:
            branches = [b.split('=', 1)[0] for b in branches_attr.split(':') if b]
        else:
            branches = [b for b in entry.source.split(':') if b.startswith('/')]

        options = entry.options
        policy = self._control_attr('category.create')
        if policy and f'category.create={policy}' not in options.split(','):
            options = ','.join(o for o in [options, f'category.create={policy}'] if o)

        return PoolTopology(
            mount_point=self.pool_mount_point,
            branches=branches,
            options=options,
            mounted=True,
        )

    def _control_attr(self, name: str) -> Optional[str]:
        control_file = os.path.join(self.pool_mount_point, '.mergerfs')
        try:
            value = os.getxattr(control_file, f'user.mergerfs.{name}')
        except OSError:
            return None
        return value.decode('utf-8', 'replace').strip() or None

    def build_options(self, has_cache: bool) -> str:
        """Mount options; least-free-space with spill-over when a cache is present."""
        options = list(BASE_OPTIONS)
        if has_cache:
            options.append(f'category.create={MergerFSPolicy.LFS.value}')
            options.append('moveonenospc=true')
            options.append(f'minfreespace={self.cache_min_free_space}')
        else:
            options.append(f'category.create={MergerFSPolicy.MFS.value}')
            options.append('moveonenospc=true')
        return ','.join(options)

    def unmount(self, log: OperationLog, strict: bool = True) -> bool:
        """
        Unmount the union, escalating to a lazy unmount.

        Returns:
            True if a live union mount was detached

        Raises:
            FilesInUseError: If ``strict`` and even the lazy unmount failed
        """
        if not self.get_topology().mounted:
            log.skip('unmount_pool', f"No union mount at {self.pool_mount_point}")
            return False

        if self._prep.unmount_escalating(self.pool_mount_point):
            log.ok('unmount_pool', f"Unmounted {self.pool_mount_point}")
            log.record(f"unmounted {self.pool_mount_point}",
                       "remount the previous branch list with mergerfs")
            return True

        if strict:
            log.fatal('unmount_pool', "Cannot unmount pool. Files may be in use")
            raise FilesInUseError("Cannot unmount pool. Files may be in use",
                                  data={'mount_point': self.pool_mount_point})

        log.warn('unmount_pool', f"Could not unmount {self.pool_mount_point}")
        return False

    def mount(self, branches: List[str], has_cache: bool, log: OperationLog) -> str:
        """
        Mount the union over ``branches``.

        Returns:
            The options string used

        Raises:
            CommandFailedError: If mergerfs fails or there is nothing to mount
        """
        if not branches:
            log.fatal('mount_pool', "No branches available for the union mount")
            raise CommandFailedError("No branches available for the union mount")

        success, message = self._prep.make_dir(self.pool_mount_point)
        if not success:
            log.warn('mount_pool', f"Could not create {self.pool_mount_point}: {message}")

        options = self.build_options(has_cache)
        success, _, stderr = self._executor.execute(
            CommandType.MERGERFS, ['-o', options, ':'.join(branches), self.pool_mount_point]
        )
        if not success:
            detail = f"MergerFS mount failed: {stderr.strip() or 'unknown error'}"
            log.fatal('mount_pool', detail)
            raise CommandFailedError(detail, data={'branches': branches})

        log.ok('mount_pool', f"MergerFS pool mounted at {self.pool_mount_point}")
        log.record(f"mounted union over {':'.join(branches)}",
                   f"umount {self.pool_mount_point}")
        return options

    def remount(self, branches: List[str], has_cache: bool, log: OperationLog) -> str:
        self.unmount(log, strict=True)
        return self.mount(branches, has_cache, log)

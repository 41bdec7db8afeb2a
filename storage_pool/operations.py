"""Single-disk pool mutations: add, remove, standalone mount, ignore.

Each operation validates everything it can before the first privileged
command. Past that point a failure stops the operation and is reported with
the step log; completed side effects (a new partition table, a mount) are
left in place and listed in the rollback journal. Re-running the same
request is safe.
"""

import os
import re
import time
import logging
from typing import Any, Dict, List, Optional, Tuple

from .config_manager import PoolSettings
from .disk_prep import DiskPreparer, make_label
from .errors import (
    CommandFailedError,
    DeviceNotFoundError,
    InvalidInputError,
    NotMountableError,
    PoolInvariantError,
    RequiresConfirmationError,
    UuidUnresolvableError,
)
from .fstab_manager import FstabManager
from .mergerfs_manager import MergerFSManager, order_branches, union_branches
from .models import (
    DiskDescriptor,
    DiskRole,
    OperationLog,
    PoolDiskEntry,
    StandaloneVolume,
)
from .mounts import MountTable
from .reconciler import cache_mount_point, data_mount_point, parity_mount_point
from .sanitize import partition_name, require_disk_id, require_role, sanitize_volume_name
from .scanner import DiskScanner
from .snapraid_config import CONTENT_DIR, SnapRAIDConfigWriter
from .state_store import IGNORED_DISKS, StateStore


logger = logging.getLogger(__name__)


def next_index(prefix: str, base: str, used_mount_points: List[str]) -> int:
    """Next free ``<prefix>N`` number from committed mount points and ``base``."""
    pattern = re.compile(rf'^{re.escape(prefix)}(\d+)$')
    names = [os.path.basename(mp.rstrip('/')) for mp in used_mount_points]
    try:
        names.extend(os.listdir(base))
    except OSError as e:
        logger.debug(f"Cannot list {base}, using committed mount points only: {e}")
    indices = [int(m.group(1)) for m in (pattern.match(n) for n in names) if m]
    return max(indices, default=0) + 1


class PoolOperations:
    """Incremental pool mutations built on the reconciliation primitives."""

    def __init__(self, settings: PoolSettings, state: StateStore, scanner: DiskScanner,
                 preparer: DiskPreparer, mount_table: MountTable,
                 mergerfs: MergerFSManager, snapraid: SnapRAIDConfigWriter,
                 fstab: FstabManager):
        self.settings = settings
        self._state = state
        self._scanner = scanner
        self._prep = preparer
        self._mounts = mount_table
        self._mergerfs = mergerfs
        self._snapraid = snapraid
        self._fstab = fstab

    # -- add ---------------------------------------------------------------

    def add_disk(self, disk_id: Any, role: Any = DiskRole.DATA.value, format: bool = False,
                 force: bool = False, log: Optional[OperationLog] = None) -> Dict[str, Any]:
        """
        Add one disk to the live pool.

        Raises:
            InvalidInputError: Bad id or role, or the boot disk was targeted
            PoolInvariantError: The disk is already a member or a standalone volume
            DeviceNotFoundError: The device is not present
            RequiresConfirmationError: Existing filesystem and neither format nor force
            NotMountableError: The test mount failed
            UuidUnresolvableError: No filesystem UUID after preparation
            CommandFailedError: Partitioning, formatting, mounting or the union remount failed
            FilesInUseError: The union mount could not be detached for the remount
        """
        log = log if log is not None else OperationLog()
        disk_id = require_disk_id(disk_id)
        role = require_role(role)
        format = bool(format)
        force = bool(force)
        log.ok('validate', f"Adding {disk_id} as {role.value}")

        entries = self._state.pool_entries()
        self._ensure_not_member(disk_id, entries)

        disk = self._scanner.probe_device(disk_id)
        device = self._partition_device(disk)
        has_partition = self._has_partition_table(disk)

        if disk.has_filesystem and not format and not force:
            log.fatal('probe', f"{disk_id} has an existing filesystem")
            raise RequiresConfirmationError(
                f"{disk_id} has an existing filesystem. Set format=true to erase, "
                f"or force=true to use existing data",
                data={'has_data': True, 'requires_confirmation': True, 'disk_id': disk_id}
            )

        self._ensure_not_boot_disk(disk_id)
        log.ok('probe', f"/dev/{disk_id}: {disk.size_formatted}, "
                        f"{'has' if disk.has_filesystem else 'no'} filesystem")

        self._unmount_partitions(disk_id, log)

        if not has_partition or format:
            success, result = self._prep.create_partition(disk_id)
            if not success:
                if not has_partition:
                    log.fatal('partition', f"Failed to create partition: {result}")
                    raise CommandFailedError(f"Failed to create partition: {result}")
                log.warn('partition', f"Partition creation skipped (may already exist): {result}")
            else:
                device = result
                has_partition = True
                log.ok('partition', f"Created partition {device}")
                log.record(f"created GPT partition table on /dev/{disk_id}",
                           "none, previous partition table is lost")

        if format:
            success, message = self._prep.format_partition(device, make_label(role, disk_id))
            if not success:
                log.fatal('format', f"Format failed: {message}")
                raise CommandFailedError(f"Format failed: {message}")
            log.ok('format', message)

        self._test_mount(device, disk_id, log)

        uuid = self._prep.resolve_uuid(device)
        if not uuid:
            log.fatal('uuid', f"Could not determine UUID of {device}")
            raise UuidUnresolvableError(f"Could not determine disk UUID of {device}. Is it formatted?")
        log.ok('uuid', f"{device} has UUID {uuid}")

        mount_point = self._next_mount_point(role, entries)
        self._mount_permanent(uuid, mount_point, role, log)

        entry = PoolDiskEntry(disk_id=disk_id, role=role, mount_point=mount_point, uuid=uuid)
        new_entries = entries + [entry]

        if role == DiskRole.PARITY:
            branches, options = self._current_union(entries)
            self._fstab.write(new_entries, self._state.standalone_volumes(), branches, options, log)
            log.skip('hot_add', "Parity disks are not part of the union mount")
        else:
            branches, has_cache = self._branches_with(entry, entries)
            options = self._mergerfs.remount(branches, has_cache, log)
            self._fstab.write(new_entries, self._state.standalone_volumes(), branches, options, log)

        self._commit_entries(new_entries, log, f"Disk {disk_id} added to pool as {role.value}")

        return {
            'disk_id': disk_id,
            'role': role.value,
            'mount_point': mount_point,
            'uuid': uuid,
            'branches': branches,
            'create_policy': self._mergerfs.get_topology().create_policy,
        }

    # -- remove ------------------------------------------------------------

    def remove_disk(self, disk_id: Any, log: Optional[OperationLog] = None) -> Dict[str, Any]:
        """
        Detach one disk from the pool without touching its data.

        Raises:
            InvalidInputError: Bad id
            DeviceNotFoundError: The disk is not in the pool configuration
            PoolInvariantError: Removing it would leave no data disk in the union
            FilesInUseError: The union mount could not be detached
            CommandFailedError: The reduced union could not be mounted
        """
        log = log if log is not None else OperationLog()
        disk_id = require_disk_id(disk_id)

        entries = self._state.pool_entries()
        entry = next((e for e in entries if e.disk_id == disk_id), None)
        if entry is None:
            raise DeviceNotFoundError(f"Disk {disk_id} not found in pool configuration")

        remaining = [e for e in entries if e.disk_id != disk_id]
        log.ok('validate', f"Removing {disk_id} ({entry.role.value}) from the pool")

        if entry.role == DiskRole.PARITY:
            branches, options = self._current_union(remaining)
            self._fstab.write(remaining, self._state.standalone_volumes(), branches, options, log)
            log.skip('union', "Parity disks are not part of the union mount")
            self._commit_entries(remaining, log, f"Disk {disk_id} removed from pool")
            if not any(e.role == DiskRole.PARITY for e in remaining):
                log.warn('snapraid_config',
                         f"No parity disks remain; {self._snapraid.config_path} is no longer maintained")
            return {'disk_id': disk_id, 'remaining_disks': len(remaining), 'branches': branches}

        topology = self._mergerfs.get_topology()
        current = topology.branches if topology.mounted else union_branches(entries)
        roles = {e.mount_point: e.role for e in entries}
        remaining_branches = order_branches(
            [b for b in current if b != entry.mount_point], roles
        )

        if not remaining_branches or not any(e.role == DiskRole.DATA for e in remaining):
            log.fatal('validate', "Cannot remove last disk from pool")
            raise PoolInvariantError(
                "Cannot remove last disk from pool. At least one data disk must remain.",
                data={'disk_id': disk_id}
            )

        has_cache = any(roles.get(b) == DiskRole.CACHE for b in remaining_branches)
        options = self._mergerfs.remount(remaining_branches, has_cache, log)
        self._fstab.write(remaining, self._state.standalone_volumes(), remaining_branches, options, log)
        self._commit_entries(remaining, log, f"Disk {disk_id} removed from pool")

        return {
            'disk_id': disk_id,
            'remaining_disks': len(remaining),
            'branches': remaining_branches,
        }

    # -- standalone --------------------------------------------------------

    def mount_standalone(self, disk_id: Any, name: Any = None, format: bool = False,
                         log: Optional[OperationLog] = None) -> Dict[str, Any]:
        """
        Mount a disk under ``<volume_mount_base>/<name>``, outside the pool.

        Raises:
            InvalidInputError: Bad id or name, reserved mount point, or boot disk
            PoolInvariantError: The disk is a pool member or already a volume
            DeviceNotFoundError: The device is not present
            CommandFailedError: Partitioning or formatting failed
            UuidUnresolvableError: No filesystem UUID after preparation
            NotMountableError: The filesystem could not be mounted
        """
        log = log if log is not None else OperationLog()
        disk_id = require_disk_id(disk_id)
        safe_name = sanitize_volume_name(name, disk_id)
        format = bool(format)
        mount_point = f"{self.settings.volume_mount_base.rstrip('/')}/{safe_name}"

        entries = self._state.pool_entries()
        volumes = self._state.standalone_volumes()
        self._ensure_not_member(disk_id, entries)
        self._ensure_free_mount_point(mount_point, entries, volumes)
        log.ok('validate', f"Mounting {disk_id} as standalone volume {safe_name}")

        disk = self._scanner.probe_device(disk_id)
        device = self._partition_device(disk)
        has_partition = self._has_partition_table(disk)
        self._ensure_not_boot_disk(disk_id)

        if format or not has_partition:
            self._unmount_partitions(disk_id, log)
            success, result = self._prep.create_partition(disk_id)
            if not success:
                log.fatal('partition', f"Failed to create partition: {result}")
                raise CommandFailedError(f"Failed to create partition: {result}")
            device = result
            log.ok('partition', f"Created partition {device}")
            log.record(f"created GPT partition table on /dev/{disk_id}",
                       "none, previous partition table is lost")

        if format:
            success, message = self._prep.format_partition(device, safe_name[:16])
            if not success:
                log.fatal('format', f"Format failed: {message}")
                raise CommandFailedError(f"Format failed: {message}")
            log.ok('format', message)

        uuid = self._prep.resolve_uuid(device)
        if not uuid:
            log.fatal('uuid', f"Could not determine UUID of {device}")
            raise UuidUnresolvableError(f"Failed to get UUID of {device}. Is it formatted?")

        success, message = self._prep.make_dir(mount_point)
        if not success:
            log.fatal('mount', f"Could not create {mount_point}: {message}")
            raise CommandFailedError(f"Could not create {mount_point}: {message}")

        success, message = self._prep.mount(f"UUID={uuid}", mount_point)
        if not success:
            log.fatal('mount', f"Mount failed: {message}")
            raise NotMountableError(f"Mount failed: {message}")
        log.ok('mount', f"Mounted {device} at {mount_point}")
        log.record(f"mounted {device} at {mount_point}", f"umount {mount_point}")

        volume = StandaloneVolume(disk_id=disk_id, name=safe_name,
                                  mount_point=mount_point, uuid=uuid)
        branches, options = self._current_union(entries)
        self._fstab.write(entries, volumes + [volume], branches, options, log)

        self._state.save_standalone_volumes(volumes + [volume])
        log.ok('commit', f'Volume "{safe_name}" created at {mount_point}')
        logger.info(f"Standalone volume {safe_name} mounted from {disk_id}")

        return {'disk_id': disk_id, 'name': safe_name, 'mount_point': mount_point, 'uuid': uuid}

    # -- ignore ------------------------------------------------------------

    def ignore_disk(self, disk_id: Any, log: Optional[OperationLog] = None) -> Dict[str, Any]:
        log = log if log is not None else OperationLog()
        disk_id = require_disk_id(disk_id)

        def add(current):
            current = list(current or [])
            if disk_id not in current:
                current.append(disk_id)
            return current

        ignored = self._state.update(IGNORED_DISKS, add, default=[])
        log.ok('ignore', f"Disk {disk_id} ignored")
        return {'disk_id': disk_id, 'ignored': ignored}

    def unignore_disk(self, disk_id: Any, log: Optional[OperationLog] = None) -> Dict[str, Any]:
        log = log if log is not None else OperationLog()
        disk_id = require_disk_id(disk_id)
        ignored = self._state.update(
            IGNORED_DISKS, lambda current: [d for d in (current or []) if d != disk_id], default=[]
        )
        log.ok('unignore', f"Disk {disk_id} no longer ignored")
        return {'disk_id': disk_id, 'ignored': ignored}

    def list_ignored(self) -> List[str]:
        return self._state.ignored_disks()

    # -- helpers -----------------------------------------------------------

    def _ensure_not_member(self, disk_id: str, entries: List[PoolDiskEntry]) -> None:
        existing = next((e for e in entries if e.disk_id == disk_id), None)
        if existing is not None:
            raise PoolInvariantError(
                f"{disk_id} is already configured as {existing.role.value}",
                data={'disk_id': disk_id, 'role': existing.role.value}
            )
        volume = next((v for v in self._state.standalone_volumes() if v.disk_id == disk_id), None)
        if volume is not None:
            raise PoolInvariantError(
                f"{disk_id} is mounted as standalone volume {volume.name}",
                data={'disk_id': disk_id, 'volume': volume.name}
            )

    def _ensure_not_boot_disk(self, disk_id: str) -> None:
        if self._prep.root_disk() == disk_id:
            raise InvalidInputError(
                f"Cannot use boot disk {disk_id}", data={'disk_id': disk_id}
            )

    def _ensure_free_mount_point(self, mount_point: str, entries: List[PoolDiskEntry],
                                 volumes: List[StandaloneVolume]) -> None:
        reserved = {
            self.settings.pool_mount_point.rstrip('/'),
            self.settings.mount_base.rstrip('/'),
            self.settings.parity_mount_base.rstrip('/'),
            self.settings.test_mount_base.rstrip('/'),
        }
        reserved.update(e.mount_point for e in entries)
        reserved.update(v.mount_point for v in volumes)
        if mount_point in reserved:
            raise InvalidInputError(f"Mount point {mount_point} is already in use")

    @staticmethod
    def _partition_device(disk: DiskDescriptor) -> str:
        for partition in disk.partitions:
            if partition.name != disk.id:
                return partition.path
        return f"/dev/{partition_name(disk.id)}"

    @staticmethod
    def _has_partition_table(disk: DiskDescriptor) -> bool:
        return any(p.name != disk.id for p in disk.partitions)

    def _unmount_partitions(self, disk_id: str, log: OperationLog) -> None:
        for mount in self._mounts.for_disk(disk_id):
            if self._prep.unmount_escalating(mount.mount_point):
                log.ok('unmount', f"Unmounted {mount.source} from {mount.mount_point}")
                log.record(f"unmounted {mount.source} from {mount.mount_point}",
                           f"mount {mount.source} {mount.mount_point}")
            else:
                log.warn('unmount', f"Failed to unmount {mount.source} from {mount.mount_point}")

    def _test_mount(self, device: str, disk_id: str, log: OperationLog) -> None:
        """Mount and unmount ``device`` at a throwaway point before the pool is touched."""
        test_point = f"{self.settings.test_mount_base.rstrip('/')}/{disk_id}-{int(time.time())}"

        success, message = self._prep.make_dir(test_point)
        if not success:
            log.fatal('test_mount', f"Could not create {test_point}: {message}")
            raise NotMountableError(f"Could not create test mount point: {message}")

        success, message = self._prep.mount(device, test_point)
        if not success:
            self._prep.remove_dir(test_point)
            log.fatal('test_mount', f"Failed to mount {device}")
            raise NotMountableError(
                f"Failed to mount {device}. Is it formatted? Error: {message}",
                data={'device': device}
            )

        unmounted, message = self._prep.unmount(test_point)
        if not unmounted:
            log.warn('test_mount', f"Could not unmount test mount {test_point}: {message}")
        else:
            removed, message = self._prep.remove_dir(test_point)
            if not removed:
                log.warn('test_mount', f"Could not remove {test_point}: {message}")
        log.ok('test_mount', f"{device} is mountable")

    def _next_mount_point(self, role: DiskRole, entries: List[PoolDiskEntry]) -> str:
        used = [e.mount_point for e in entries if e.role == role]
        if role == DiskRole.PARITY:
            base = self.settings.parity_mount_base
            return parity_mount_point(base, next_index('parity', base, used))
        base = self.settings.mount_base
        if role == DiskRole.CACHE:
            return cache_mount_point(base, next_index('cache', base, used))
        return data_mount_point(base, next_index('disk', base, used))

    def _mount_permanent(self, uuid: str, mount_point: str, role: DiskRole,
                         log: OperationLog) -> None:
        success, message = self._prep.make_dir(mount_point)
        if not success:
            log.fatal('mount', f"Failed to create mount point {mount_point}: {message}")
            raise CommandFailedError(f"Failed to create mount point {mount_point}: {message}")

        success, message = self._prep.mount(f"UUID={uuid}", mount_point)
        if not success:
            log.fatal('mount', f"Mount failed: {message}")
            raise CommandFailedError(f"Mount failed: {message}")
        log.ok('mount', f"Mounted UUID={uuid} at {mount_point}")
        log.record(f"mounted UUID={uuid} at {mount_point}", f"umount {mount_point}")

        if role == DiskRole.DATA:
            marker = os.path.join(mount_point, CONTENT_DIR)
            success, message = self._prep.make_dir(marker)
            if not success:
                log.warn('mount', f"Could not create {marker}: {message}")

    def _branches_with(self, entry: PoolDiskEntry,
                       entries: List[PoolDiskEntry]) -> Tuple[List[str], bool]:
        """Live branch list with ``entry`` inserted: cache to the front, others to the back."""
        topology = self._mergerfs.get_topology()
        current = topology.branches if topology.mounted else union_branches(entries)
        current = [b for b in current if b != entry.mount_point]

        if entry.role == DiskRole.CACHE:
            branches = [entry.mount_point] + current
        else:
            branches = current + [entry.mount_point]

        roles = {e.mount_point: e.role for e in entries}
        roles[entry.mount_point] = entry.role
        branches = order_branches(branches, roles)
        has_cache = any(roles.get(b) == DiskRole.CACHE or
                        (b not in roles and os.path.basename(b).startswith('cache'))
                        for b in branches)
        return branches, has_cache

    def _current_union(self, entries: List[PoolDiskEntry]) -> Tuple[List[str], Optional[str]]:
        branches = union_branches(entries)
        if not branches:
            return [], None
        has_cache = any(e.role == DiskRole.CACHE for e in entries)
        return branches, self._mergerfs.build_options(has_cache)

    def _commit_entries(self, entries: List[PoolDiskEntry], log: OperationLog,
                        message: str) -> None:
        self._state.save_pool_entries(entries)
        log.ok('commit', message)
        logger.info(message)
        if any(e.role == DiskRole.PARITY for e in entries):
            self._snapraid.write(entries, log)

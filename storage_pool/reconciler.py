"""Full pool reconfiguration.

Converges the host to a declared set of ``{disk, role, format}`` assignments:
release of the union and of conflicting mounts, format, mount, SnapRAID
configuration, union mount, permissions, boot persistence and finally the
commit of the new pool entries. Validation happens before any command runs.
Once privileged steps begin, non-critical failures become warnings and the
sequence continues; a union-mount failure aborts before anything is persisted.
"""

import os
import logging
from typing import Any, Dict, List, Optional, Set, Tuple

from .config_manager import PoolSettings
from .disk_prep import DiskPreparer, make_label
from .errors import CommandFailedError, DeviceNotFoundError, InvalidInputError
from .fstab_manager import FstabManager
from .mergerfs_manager import MergerFSManager, union_branches
from .models import DiskRole, OperationLog, PoolDiskEntry, TargetDisk
from .mounts import MountEntry, MountTable
from .sanitize import partition_name, validate_disk_config
from .scanner import DiskScanner, find_disk
from .snapraid_config import CONTENT_DIR, SnapRAIDConfigWriter
from .state_store import StateStore


logger = logging.getLogger(__name__)


def data_mount_point(mount_base: str, number: int) -> str:
    return f"{mount_base.rstrip('/')}/disk{number}"


def cache_mount_point(mount_base: str, number: int) -> str:
    return f"{mount_base.rstrip('/')}/cache{number}"


def parity_mount_point(parity_base: str, number: int) -> str:
    return f"{parity_base.rstrip('/')}/parity{number}"


class PoolReconciler:
    """Drives a full reconfiguration of the pool."""

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

    def reconfigure(self, target_disks: List[Any],
                    log: Optional[OperationLog] = None) -> Dict[str, Any]:
        """
        Reconfigure the pool to exactly ``target_disks``.

        The union is released first and every mount that contradicts the
        planned layout is detached before any disk is formatted or mounted.
        A target disk whose mount point cannot be cleared is left out of the
        committed configuration with a fatal step.

        Args:
            target_disks: dicts with ``disk_id``, ``role`` and ``format``, or TargetDisk
            log: step log to append to

        Returns:
            dict with ``results`` (rendered log lines), ``pool_mount``,
            ``branches``, ``create_policy`` and ``blocked_disks``

        Raises:
            InvalidInputError: Malformed request or boot disk targeted
            DeviceNotFoundError: A target disk is not present
            ScanFailedError: Device enumeration failed
            CommandFailedError: No data disk could be placed, or the union
                mount could not be established
        """
        log = log if log is not None else OperationLog()
        targets = validate_disk_config(target_disks)
        self._preflight(targets)

        logger.info(f"Reconfiguring pool with {len(targets)} disks")
        log.ok('validate', f"Configuration validated: {self._describe(targets)}")

        plan = self._plan(targets)

        # 1. Release the union and anything in the way of the plan
        self._mergerfs.unmount(log, strict=False)
        blocked = self._detach(plan, log)
        placed = [(t, mp) for t, mp in plan if t.disk_id not in blocked]

        # 2. Format
        for target, _ in placed:
            if target.format:
                self._format(target, log)

        # 3. Mount
        entries = self._mount_all(placed, log)
        if not any(e.role == DiskRole.DATA for e in entries):
            log.fatal('mount', "No data disk could be placed in the pool")
            raise CommandFailedError("No data disk could be placed in the pool",
                                     data={'blocked_disks': sorted(blocked)})

        # 4. SnapRAID
        self._snapraid.write(entries, log)

        # 5. Union mount
        branches = union_branches(entries)
        has_cache = any(e.role == DiskRole.CACHE for e in entries)
        options = self._mergerfs.mount(branches, has_cache, log)

        # 6. Permissions
        self._normalise_permissions(log)

        # 7. Persistence
        for entry in entries:
            entry.uuid = self._prep.resolve_uuid(f"/dev/{partition_name(entry.disk_id)}")
        self._fstab.write(entries, self._state.standalone_volumes(), branches, options, log)

        # 8. Commit
        self._state.save_pool_entries(entries)
        log.ok('commit', f"Storage configuration saved ({len(entries)} disks)")
        logger.info(f"Pool reconfigured: branches={branches}")
        if blocked:
            logger.warning(f"Disks left out of the pool: {', '.join(sorted(blocked))}")

        return {
            'results': log.lines,
            'pool_mount': self.settings.pool_mount_point,
            'branches': branches,
            'create_policy': self._mergerfs.get_topology().create_policy,
            'blocked_disks': sorted(blocked),
        }

    def _preflight(self, targets: List[TargetDisk]) -> None:
        root = self._prep.root_disk()
        for target in targets:
            if root and target.disk_id == root:
                raise InvalidInputError(
                    f"Cannot use boot disk {target.disk_id}",
                    data={'disk_id': target.disk_id}
                )

        report = self._scanner.scan()
        missing = [t.disk_id for t in targets if find_disk(report, t.disk_id) is None]
        if missing:
            raise DeviceNotFoundError(
                f"Disks not found: {', '.join(missing)}. Are they connected?",
                data={'missing': missing}
            )

    @staticmethod
    def _describe(targets: List[TargetDisk]) -> str:
        counts = {}
        for target in targets:
            counts[target.role.value] = counts.get(target.role.value, 0) + 1
        return ', '.join(f"{count} {role}" for role, count in counts.items())

    def _plan(self, targets: List[TargetDisk]) -> List[Tuple[TargetDisk, str]]:
        counters = {DiskRole.DATA: 0, DiskRole.PARITY: 0, DiskRole.CACHE: 0}
        plan = []

        # Roles are numbered in a fixed order so numbering is stable per role
        for role in (DiskRole.DATA, DiskRole.PARITY, DiskRole.CACHE):
            for target in (t for t in targets if t.role == role):
                counters[role] += 1
                plan.append((target, self._mount_point_for(role, counters[role])))
        return plan

    def _detach(self, plan: List[Tuple[TargetDisk, str]], log: OperationLog) -> Set[str]:
        """
        Unmount everything that contradicts the planned layout.

        * disks leaving the pool come off their committed mount point
        * a target disk comes off every other mount point, and off its own
          one too when it is about to be formatted
        * each planned mount point is cleared of any other device

        Returns:
            ids of target disks that could not be placed
        """
        planned = {mount_point for _, mount_point in plan}
        wanted = {target.disk_id for target, _ in plan}
        blocked = set()

        for entry in self._state.pool_entries():
            if entry.disk_id in wanted or entry.mount_point in planned:
                continue
            for mount in self._mounts.for_disk(entry.disk_id):
                if mount.mount_point == entry.mount_point and not self._release(mount, log):
                    log.warn('detach', f"Could not unmount {mount.source} from "
                                       f"{mount.mount_point}; {entry.disk_id} stays mounted")

        for target, mount_point in plan:
            device = f"/dev/{partition_name(target.disk_id)}"
            for mount in self._mounts.for_disk(target.disk_id):
                if mount.mount_point == mount_point and not target.format:
                    continue
                if not self._release(mount, log):
                    self._block(target, mount, blocked, log)

            occupant = self._mounts.find(mount_point)
            while occupant is not None and occupant.source != device:
                if not self._release(occupant, log):
                    self._block(target, occupant, blocked, log)
                    break
                occupant = self._mounts.find(mount_point)

        return blocked

    def _release(self, mount: MountEntry, log: OperationLog) -> bool:
        if not self._prep.unmount_escalating(mount.mount_point):
            return False
        log.ok('detach', f"Unmounted {mount.source} from {mount.mount_point}")
        log.record(f"unmounted {mount.source} from {mount.mount_point}",
                   f"mount {mount.source} {mount.mount_point}")
        return True

    @staticmethod
    def _block(target: TargetDisk, mount: MountEntry, blocked: Set[str], log: OperationLog) -> None:
        blocked.add(target.disk_id)
        log.fatal('detach', f"Cannot unmount {mount.source} from {mount.mount_point}; "
                            f"{target.disk_id} left out of the pool")

    def _format(self, target: TargetDisk, log: OperationLog) -> None:
        device = f"/dev/{target.disk_id}"
        log.ok('format', f"Formatting {device}...")

        success, result = self._prep.create_partition(target.disk_id)
        if not success:
            log.warn('format', f"Format failed for {target.disk_id}: {result}")
            return
        log.record(f"created GPT partition table on {device}", "none, previous partition table is lost")

        success, message = self._prep.format_partition(result, make_label(target.role, target.disk_id))
        if not success:
            log.warn('format', f"Format failed for {target.disk_id}: {message}")
            return
        log.ok('format', message)

    def _mount_all(self, placed: List[Tuple[TargetDisk, str]],
                   log: OperationLog) -> List[PoolDiskEntry]:
        previous = {e.disk_id: e for e in self._state.pool_entries()}
        entries = []

        for target, mount_point in placed:
            self._mount_one(target, mount_point, log)

            entry = PoolDiskEntry(disk_id=target.disk_id, role=target.role, mount_point=mount_point)
            old = previous.get(target.disk_id)
            if old and old.role == target.role and old.mount_point == mount_point:
                entry.added_at = old.added_at
            entries.append(entry)
        return entries

    def _mount_point_for(self, role: DiskRole, number: int) -> str:
        if role == DiskRole.PARITY:
            return parity_mount_point(self.settings.parity_mount_base, number)
        if role == DiskRole.CACHE:
            return cache_mount_point(self.settings.mount_base, number)
        return data_mount_point(self.settings.mount_base, number)

    def _mount_one(self, target: TargetDisk, mount_point: str, log: OperationLog) -> None:
        device = f"/dev/{partition_name(target.disk_id)}"
        suffix = "" if target.role == DiskRole.DATA else f" ({target.role.value})"

        success, message = self._prep.make_dir(mount_point)
        if not success:
            log.warn('mount', f"Could not create {mount_point}: {message}")

        current = self._mounts.find(mount_point)
        if current is not None and current.source == device:
            log.ok('mount', f"{device} already mounted at {mount_point}{suffix}")
        else:
            success, message = self._prep.mount(device, mount_point)
            if success:
                log.ok('mount', f"Mounted {device} at {mount_point}{suffix}")
                log.record(f"mounted {device} at {mount_point}", f"umount {mount_point}")
            else:
                log.warn('mount', f"Could not mount {device} at {mount_point}{suffix}: {message}")

        if target.role == DiskRole.DATA:
            marker = os.path.join(mount_point, CONTENT_DIR)
            success, message = self._prep.make_dir(marker)
            if not success:
                log.warn('mount', f"Could not create {marker}: {message}")

    def _normalise_permissions(self, log: OperationLog) -> None:
        success, message = self._prep.set_permissions(
            self.settings.pool_mount_point, self.settings.samba_group
        )
        if success:
            log.ok('permissions', "Samba permissions configured")
        else:
            log.warn('permissions', f"Could not set Samba permissions: {message}")

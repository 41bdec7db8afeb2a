"""Disk inventory scanner.

Enumerates block devices with ``lsblk``, drops boot media, virtual devices
and anything too small to be a pool member, and classifies each remaining
disk as configured or unconfigured by cross-referencing the persisted pool
entries with what is actually mounted under the storage mount base.
"""

import json
import logging
from typing import Any, Dict, List, Optional

from .errors import DeviceNotFoundError, ScanFailedError
from .models import DiskDescriptor, DiskRole, Partition, ScanReport
from .sanitize import require_disk_id
from .system_executor import CommandType, SystemCommandExecutor


logger = logging.getLogger(__name__)

LSBLK_COLUMNS = 'NAME,SIZE,TYPE,MOUNTPOINT,FSTYPE,MODEL,SERIAL,TRAN'
MIN_DISK_SIZE = 1024 ** 3
VIRTUAL_PREFIXES = ('zram', 'ram', 'loop')
BOOT_MEDIA_PREFIXES = ('mmcblk',)


def _as_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def _clean(value: Any, default: str = "") -> str:
    if value is None:
        return default
    text = str(value).strip()
    return text or default


class DiskScanner:
    """Builds a ScanReport from live lsblk output and persisted state."""

    def __init__(self, executor: SystemCommandExecutor, state_store, mount_base: str):
        self._executor = executor
        self._state = state_store
        self.mount_base = mount_base.rstrip('/')

    def scan(self) -> ScanReport:
        """
        Enumerate and classify physical disks.

        Raises:
            ScanFailedError: If lsblk cannot be run
        """
        success, stdout, stderr = self._executor.execute(
            CommandType.LSBLK, ['-J', '-b', '-o', LSBLK_COLUMNS]
        )
        if not success:
            raise ScanFailedError(f"Block device enumeration failed: {stderr.strip()}")

        try:
            disks = self._parse(stdout)
        except (ValueError, TypeError, KeyError, AttributeError) as e:
            logger.error(f"Unparsable lsblk output: {e}")
            return ScanReport()

        entries = {entry.disk_id: entry for entry in self._state.pool_entries()}
        ignored = set(self._state.ignored_disks())

        report = ScanReport()
        for disk in disks:
            if not self._is_candidate(disk):
                continue

            entry = entries.get(disk.id)
            if entry is not None or self._mounted_under_base(disk):
                disk.in_pool = True
                disk.role = entry.role if entry is not None else DiskRole.DATA
                report.configured.append(disk)
            else:
                disk.has_data = disk.has_filesystem
                disk.formatted = disk.has_known_filesystem
                disk.ignored = disk.id in ignored
                report.unconfigured.append(disk)

        logger.info(
            f"Scan found {len(report.configured)} configured and "
            f"{len(report.unconfigured)} unconfigured disks"
        )
        return report

    def probe_device(self, disk_id: str) -> DiskDescriptor:
        """
        Describe a single whole-disk block device.

        Raises:
            DeviceNotFoundError: If the device does not exist or is not a disk
        """
        disk_id = require_disk_id(disk_id)
        success, stdout, stderr = self._executor.execute(
            CommandType.LSBLK, ['-J', '-b', '-o', LSBLK_COLUMNS, f'/dev/{disk_id}']
        )
        if not success:
            raise DeviceNotFoundError(
                f"/dev/{disk_id} does not exist. Is the disk connected?"
            )

        try:
            disks = self._parse(stdout)
        except (ValueError, TypeError, KeyError, AttributeError) as e:
            raise DeviceNotFoundError(f"Cannot read device information for /dev/{disk_id}: {e}")

        for disk in disks:
            if disk.id == disk_id:
                return disk
        raise DeviceNotFoundError(f"/dev/{disk_id} is not a disk device")

    def _parse(self, output: str) -> List[DiskDescriptor]:
        data = json.loads(output)
        devices = data.get('blockdevices') or []
        disks = []
        for device in devices:
            if device.get('type') != 'disk':
                continue
            disks.append(self._to_descriptor(device))
        return disks

    @staticmethod
    def _to_descriptor(device: Dict[str, Any]) -> DiskDescriptor:
        partitions = [
            Partition(
                name=child['name'],
                size_bytes=_as_int(child.get('size')),
                fstype=child.get('fstype') or None,
                mount_point=child.get('mountpoint') or None,
            )
            for child in device.get('children') or []
        ]
        # A filesystem written straight onto the whole device
        if not partitions and device.get('fstype'):
            partitions.append(Partition(
                name=device['name'],
                size_bytes=_as_int(device.get('size')),
                fstype=device.get('fstype'),
                mount_point=device.get('mountpoint') or None,
            ))

        return DiskDescriptor(
            id=device['name'],
            size_bytes=_as_int(device.get('size')),
            model=_clean(device.get('model'), 'Unknown'),
            serial=_clean(device.get('serial')),
            transport=_clean(device.get('tran'), 'unknown'),
            partitions=partitions,
        )

    @staticmethod
    def _is_candidate(disk: DiskDescriptor) -> bool:
        if disk.id.startswith(VIRTUAL_PREFIXES):
            return False
        if disk.id.startswith(BOOT_MEDIA_PREFIXES):
            return False
        return disk.size_bytes >= MIN_DISK_SIZE

    def _mounted_under_base(self, disk: DiskDescriptor) -> bool:
        prefix = self.mount_base + '/'
        return any(
            p.mount_point and (p.mount_point == self.mount_base or p.mount_point.startswith(prefix))
            for p in disk.partitions
        )


def find_disk(report: ScanReport, disk_id: str) -> Optional[DiskDescriptor]:
    for disk in report.configured + report.unconfigured:
        if disk.id == disk_id:
            return disk
    return None

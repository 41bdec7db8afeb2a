"""Partition, format, mount and UUID primitives shared by the pool operations."""

import re
import logging
from typing import Optional, Tuple

from .models import DiskRole
from .sanitize import partition_name
from .system_executor import CommandType, SystemCommandExecutor


logger = logging.getLogger(__name__)

EXT4_LABEL_LIMIT = 16

_WHOLE_DISK = re.compile(r'^(?:nvme\d+n\d+|mmcblk\d+)$')
_PARTITION_SUFFIX = re.compile(r'^(?P<disk>(?:nvme\d+n\d+|mmcblk\d+))p\d+$|^(?P<plain>[a-z]+)\d+$')


def make_label(role: DiskRole, disk_id: str) -> str:
    """Filesystem label ``{role}_{disk_id}`` cut to the ext4 limit."""
    return f"{role.value}_{disk_id}"[:EXT4_LABEL_LIMIT]


def disk_of_device(device: str) -> Optional[str]:
    """Strip ``/dev/`` and any partition suffix from a device path."""
    if not device or not device.startswith('/dev/'):
        return None
    # findmnt reports btrfs subvolumes as /dev/sda2[/@]
    name = device[len('/dev/'):].split('[', 1)[0]
    if _WHOLE_DISK.match(name):
        return name
    match = _PARTITION_SUFFIX.match(name)
    if match:
        return match.group('disk') or match.group('plain')
    return name


class DiskPreparer:
    """Thin wrappers over the privileged commands a disk goes through.

    Every method returns ``(success, message)`` and leaves it to the caller
    to decide whether a failure is a warning or fatal.
    """

    def __init__(self, executor: SystemCommandExecutor):
        self._executor = executor

    def create_partition(self, disk_id: str) -> Tuple[bool, str]:
        """Write a GPT label with one partition spanning the whole device."""
        device = f"/dev/{disk_id}"
        steps = [
            (CommandType.PARTED, ['-s', device, 'mklabel', 'gpt']),
            (CommandType.PARTED, ['-s', device, 'mkpart', 'primary', 'ext4', '0%', '100%']),
            (CommandType.PARTPROBE, [device]),
        ]
        for command_type, args in steps:
            success, _, stderr = self._executor.execute(command_type, args)
            if not success:
                return False, stderr.strip() or f"{command_type.value} failed on {device}"

        # Wait for the kernel to publish the new partition node
        success, _, stderr = self._executor.execute(CommandType.UDEVADM, ['settle'])
        if not success:
            logger.warning(f"udevadm settle failed: {stderr.strip()}")

        return True, f"/dev/{partition_name(disk_id)}"

    def format_partition(self, device: str, label: str) -> Tuple[bool, str]:
        success, _, stderr = self._executor.execute(
            CommandType.FILESYSTEM, ['-F', '-L', label, device]
        )
        if not success:
            return False, stderr.strip() or f"mkfs.ext4 failed on {device}"
        return True, f"Formatted {device} as ext4"

    def resolve_uuid(self, device: str) -> Optional[str]:
        success, stdout, _ = self._executor.execute(
            CommandType.BLKID, ['-s', 'UUID', '-o', 'value', device]
        )
        uuid = stdout.strip() if success else ""
        return uuid or None

    def root_disk(self) -> Optional[str]:
        """Whole-disk name backing ``/``, if it can be determined."""
        success, stdout, _ = self._executor.execute(
            CommandType.FINDMNT, ['-n', '-o', 'SOURCE', '/']
        )
        if not success:
            return None
        return disk_of_device(stdout.strip())

    def make_dir(self, path: str) -> Tuple[bool, str]:
        success, _, stderr = self._executor.execute(CommandType.MKDIR, ['-p', path])
        return success, stderr.strip()

    def remove_dir(self, path: str) -> Tuple[bool, str]:
        success, _, stderr = self._executor.execute(CommandType.RMDIR, [path])
        return success, stderr.strip()

    def mount(self, source: str, mount_point: str) -> Tuple[bool, str]:
        success, _, stderr = self._executor.execute(CommandType.MOUNT, [source, mount_point])
        return success, stderr.strip()

    def unmount(self, target: str, lazy: bool = False) -> Tuple[bool, str]:
        args = ['-l', target] if lazy else [target]
        success, _, stderr = self._executor.execute(CommandType.UMOUNT, args)
        return success, stderr.strip()

    def unmount_escalating(self, target: str) -> bool:
        """Normal unmount, then lazy unmount. True when either succeeds."""
        success, _ = self.unmount(target)
        if success:
            return True
        success, _ = self.unmount(target, lazy=True)
        return success

    def set_permissions(self, path: str, group: str) -> Tuple[bool, str]:
        """Group ownership plus group-inheriting directory permissions."""
        success, _, stderr = self._executor.execute(CommandType.CHOWN, ['-R', f':{group}', path])
        if not success:
            return False, stderr.strip() or f"chown failed on {path}"
        success, _, stderr = self._executor.execute(CommandType.CHMOD, ['-R', '2775', path])
        if not success:
            return False, stderr.strip() or f"chmod failed on {path}"
        return True, ""

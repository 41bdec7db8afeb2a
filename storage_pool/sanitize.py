"""Input allow-lists for anything that ends up in a command line.

Every disk id, role and volume name supplied by a caller passes through here
before it is combined into a device path, mount point or label.
"""

import re
from typing import Any, List, Optional

from .errors import InvalidInputError
from .models import DiskRole, TargetDisk


DISK_ID_PATTERN = re.compile(
    r'^(?:'
    r'sd[a-z]{1,2}\d{0,3}'
    r'|hd[a-z]\d{0,3}'
    r'|vd[a-z]{1,2}\d{0,3}'
    r'|xvd[a-z]{1,2}\d{0,3}'
    r'|nvme\d{1,2}n\d{1,2}(?:p\d{1,3})?'
    r'|mmcblk\d{1,2}(?:p\d{1,3})?'
    r')$'
)

VOLUME_NAME_PATTERN = re.compile(r'[^a-zA-Z0-9_-]')

MAX_POOL_DISKS = 20
MAX_VOLUME_NAME = 32


def sanitize_disk_id(disk_id: Any) -> Optional[str]:
    """Return the kernel device name if it is allow-listed, else None.

    A leading ``/dev/`` is stripped.
    """
    if not disk_id or not isinstance(disk_id, str):
        return None
    value = disk_id.strip()
    if value.startswith('/dev/'):
        value = value[len('/dev/'):]
    if DISK_ID_PATTERN.match(value):
        return value
    return None


def require_disk_id(disk_id: Any) -> str:
    safe = sanitize_disk_id(disk_id)
    if not safe:
        raise InvalidInputError(
            f"Invalid disk ID format: {disk_id!r} (expected e.g. sda, nvme0n1)"
        )
    return safe


def require_role(role: Any) -> DiskRole:
    if isinstance(role, DiskRole):
        return role
    try:
        return DiskRole(role)
    except ValueError:
        raise InvalidInputError(
            f"Invalid role: {role!r}. Role must be: data, cache, or parity"
        ) from None


def sanitize_volume_name(name: Any, fallback: str) -> str:
    """Strip a volume name to [a-zA-Z0-9_-], at most 32 characters."""
    raw = name if isinstance(name, str) and name else fallback
    safe = VOLUME_NAME_PATTERN.sub('', raw)[:MAX_VOLUME_NAME]
    if not safe:
        raise InvalidInputError("Invalid volume name")
    return safe


def partition_name(disk_id: str, number: int = 1) -> str:
    """Name of the Nth partition of a disk (nvme0n1 -> nvme0n1p1, sda -> sda1)."""
    if disk_id[-1].isdigit():
        return f"{disk_id}p{number}"
    return f"{disk_id}{number}"


def validate_disk_config(disks: Any) -> List[TargetDisk]:
    """Validate a full reconfiguration request.

    Raises InvalidInputError when the list is malformed, any id or role is
    not allow-listed, an id is repeated, or no data disk is present.
    """
    if not isinstance(disks, list) or not disks:
        raise InvalidInputError("No disks provided")
    if len(disks) > MAX_POOL_DISKS:
        raise InvalidInputError(f"Too many disks (maximum {MAX_POOL_DISKS})")

    targets = []
    seen = set()
    for item in disks:
        if isinstance(item, TargetDisk):
            raw_id, raw_role, raw_format = item.disk_id, item.role, item.format
        elif isinstance(item, dict):
            raw_id = item.get('disk_id', item.get('id'))
            raw_role = item.get('role')
            raw_format = item.get('format', False)
        else:
            raise InvalidInputError("Invalid disk configuration entry")

        disk_id = require_disk_id(raw_id)
        role = require_role(raw_role)
        if disk_id in seen:
            raise InvalidInputError(f"Disk {disk_id} listed more than once")
        seen.add(disk_id)
        targets.append(TargetDisk(disk_id=disk_id, role=role, format=bool(raw_format)))

    if not any(t.role == DiskRole.DATA for t in targets):
        raise InvalidInputError("At least one data disk is required")

    return targets

"""Live mount table queries."""

import re
import logging
from dataclasses import dataclass
from typing import List, Optional


logger = logging.getLogger(__name__)

PROC_MOUNTS = '/proc/mounts'

_OCTAL_ESCAPE = re.compile(r'\\([0-7]{3})')


@dataclass
class MountEntry:
    """One line of the kernel mount table."""
    source: str
    mount_point: str
    fstype: str
    options: str = ""


def _unescape(field: str) -> str:
    return _OCTAL_ESCAPE.sub(lambda m: chr(int(m.group(1), 8)), field)


class MountTable:
    """Reads the kernel mount table on every query; nothing is cached."""

    def __init__(self, mounts_file: str = PROC_MOUNTS):
        self.mounts_file = mounts_file

    def entries(self) -> List[MountEntry]:
        try:
            with open(self.mounts_file, 'r') as f:
                lines = f.readlines()
        except OSError as e:
            logger.error(f"Error reading {self.mounts_file}: {e}")
            return []

        result = []
        for line in lines:
            parts = line.split()
            if len(parts) < 3:
                continue
            result.append(MountEntry(
                source=_unescape(parts[0]),
                mount_point=_unescape(parts[1]),
                fstype=parts[2],
                options=parts[3] if len(parts) > 3 else "",
            ))
        return result

    def find(self, mount_point: str) -> Optional[MountEntry]:
        """Return the topmost mount at ``mount_point``."""
        target = mount_point.rstrip('/') or '/'
        found = None
        for entry in self.entries():
            if entry.mount_point == target:
                found = entry
        return found

    def is_mounted(self, mount_point: str) -> bool:
        return self.find(mount_point) is not None

    def for_disk(self, disk_id: str) -> List[MountEntry]:
        """Mounts whose source is the disk itself or one of its partitions."""
        pattern = re.compile(rf'^/dev/{re.escape(disk_id)}(?:p?\d+)?$')
        return [e for e in self.entries() if pattern.match(e.source)]

"""SnapRAID configuration generation.

The configuration file is a derived artifact of the committed pool entries:
it exists only while at least one parity disk is committed and is always
regenerated wholesale.
"""

import os
import re
import logging
from typing import Any, Dict, List, Optional

from .models import DiskRole, OperationLog, PoolDiskEntry, utc_now_iso
from .system_executor import SystemCommandExecutor


logger = logging.getLogger(__name__)

CONTENT_DIR = '.snapraid'
CONTENT_FILE = 'snapraid.content'
PARITY_FILE = 'snapraid.parity'

DEFAULT_EXCLUDES = [
    "*.unrecoverable",
    "/tmp/",
    "/lost+found/",
    ".Thumbs.db",
    ".DS_Store",
    "*.!sync",
    ".AppleDouble",
    "._AppleDouble",
    ".Spotlight-V100",
    ".TemporaryItems",
    ".Trashes",
    ".fseventsd",
]

_DISK_NUMBER = re.compile(r'(\d+)$')


def data_disk_name(mount_point: str, position: int) -> str:
    """``dN`` named after the mount point's number so names survive reordering."""
    match = _DISK_NUMBER.search(mount_point.rstrip('/'))
    number = int(match.group(1)) if match else position
    return f"d{number}"


def generate_config(parity_mount_points: List[str], data_mount_points: List[str],
                    generated_at: Optional[str] = None) -> str:
    lines = [
        "# Storage pool SnapRAID configuration",
        f"# Generated: {generated_at or utc_now_iso()}",
        "",
        "# Parity files",
    ]
    for level, mount_point in enumerate(parity_mount_points, start=1):
        prefix = "parity" if level == 1 else f"{level}-parity"
        lines.append(f"{prefix} {mount_point}/{PARITY_FILE}")

    lines.append("")
    lines.append("# Content files (stored on data disks)")
    for mount_point in data_mount_points:
        lines.append(f"content {mount_point}/{CONTENT_DIR}/{CONTENT_FILE}")

    lines.append("")
    lines.append("# Data disks")
    used = set()
    for position, mount_point in enumerate(data_mount_points, start=1):
        name = data_disk_name(mount_point, position)
        if name in used:
            name = f"d{position}"
        used.add(name)
        lines.append(f"disk {name} {mount_point}")

    lines.append("")
    lines.append("# Exclude files")
    lines.extend(f"exclude {pattern}" for pattern in DEFAULT_EXCLUDES)

    return "\n".join(lines) + "\n"


def parse_config_summary(content: str) -> Dict[str, Any]:
    """Counts of parity and data disks declared in a config file."""
    parity = 0
    data = 0
    content_files = 0
    for raw in content.splitlines():
        line = raw.strip()
        if not line or line.startswith('#'):
            continue
        keyword = line.split(None, 1)[0]
        if keyword == 'parity' or re.match(r'^\d+-parity$', keyword):
            parity += 1
        elif keyword in ('disk', 'data'):
            data += 1
        elif keyword == 'content':
            content_files += 1
    return {'parity_disks': parity, 'data_disks': data, 'content_files': content_files}


class SnapRAIDConfigWriter:
    """Writes the SnapRAID configuration for the committed entries."""

    def __init__(self, executor: SystemCommandExecutor, config_path: str):
        self._executor = executor
        self.config_path = config_path

    def write(self, entries: List[PoolDiskEntry], log: OperationLog) -> bool:
        """
        Regenerate the config file from pool entries.

        Returns:
            True if a config was installed. A skip (no parity) or an install
            failure is logged to ``log``; neither raises.
        """
        parity = [e.mount_point for e in entries if e.role == DiskRole.PARITY]
        data = [e.mount_point for e in entries if e.role == DiskRole.DATA]

        if not parity:
            log.skip('snapraid_config', "No parity disks; SnapRAID configuration not generated")
            return False

        content = generate_config(parity, data)
        success, error = self._executor.install_file(content, self.config_path)
        if not success:
            log.warn('snapraid_config', f"Could not write {self.config_path}: {error}")
            return False

        log.ok('snapraid_config',
               f"SnapRAID configuration created ({len(parity)} parity, {len(data)} data)")
        log.record(f"wrote {self.config_path}", "restore the previous SnapRAID configuration")
        return True

    def summary(self) -> Dict[str, Any]:
        if not os.path.exists(self.config_path):
            return {'configured': False, 'config_path': self.config_path,
                    'parity_disks': 0, 'data_disks': 0, 'content_files': 0}
        try:
            with open(self.config_path, 'r') as f:
                content = f.read()
        except OSError as e:
            logger.error(f"Error reading SnapRAID config {self.config_path}: {e}")
            return {'configured': False, 'config_path': self.config_path,
                    'parity_disks': 0, 'data_disks': 0, 'content_files': 0,
                    'error': str(e)}

        summary = parse_config_summary(content)
        summary['configured'] = summary['parity_disks'] > 0 and summary['data_disks'] > 0
        summary['config_path'] = self.config_path
        return summary

"""Boot persistence through a managed section of /etc/fstab.

Everything this package mounts is written between two marker comments. The
section is replaced wholesale on every write; lines outside it are kept
untouched. Disk lines come first and the union line declares
``x-systemd.requires-mounts-for`` for each branch, so systemd mounts the
disks before it attempts the union.
"""

import os
import logging
from typing import List, Optional

from .models import OperationLog, PoolDiskEntry, StandaloneVolume
from .sanitize import partition_name
from .system_executor import SystemCommandExecutor


logger = logging.getLogger(__name__)

SECTION_START = "# storage-pool managed start"
SECTION_END = "# storage-pool managed end"

DISK_OPTIONS = "defaults,nofail"


def disk_line(disk_id: str, mount_point: str, uuid: Optional[str]) -> str:
    source = f"UUID={uuid}" if uuid else f"/dev/{partition_name(disk_id)}"
    return f"{source} {mount_point} ext4 {DISK_OPTIONS} 0 2"


def union_line(branches: List[str], mount_point: str, options: str) -> str:
    ordering = ','.join(f"x-systemd.requires-mounts-for={b}" for b in branches)
    full_options = f"{options},nofail"
    if ordering:
        full_options = f"{full_options},{ordering}"
    return f"{':'.join(branches)} {mount_point} fuse.mergerfs {full_options} 0 0"


def replace_section(existing: str, lines: List[str]) -> str:
    """Drop any previous managed section and append ``lines`` as the new one."""
    updated = []
    in_section = False
    for line in existing.splitlines():
        if line.strip() == SECTION_START:
            in_section = True
            continue
        if in_section:
            if line.strip() == SECTION_END:
                in_section = False
            continue
        updated.append(line.rstrip('\n'))

    cleaned_lines = [line for line in lines if line.strip()]
    if cleaned_lines:
        if updated and updated[-1].strip():
            updated.append("")
        updated.append(SECTION_START)
        updated.extend(cleaned_lines)
        updated.append(SECTION_END)

    return "\n".join(updated).rstrip("\n") + "\n"


class FstabManager:
    """Renders and installs the managed fstab section."""

    def __init__(self, executor: SystemCommandExecutor, fstab_path: str,
                 pool_mount_point: str):
        self._executor = executor
        self.fstab_path = fstab_path
        self.pool_mount_point = pool_mount_point

    def render(self, entries: List[PoolDiskEntry], volumes: List[StandaloneVolume],
               branches: List[str], options: Optional[str],
               log: OperationLog) -> List[str]:
        lines = []
        for entry in entries:
            if not entry.uuid:
                log.warn('persistence',
                         f"No filesystem UUID for {entry.disk_id}; "
                         f"using device path /dev/{partition_name(entry.disk_id)}")
            lines.append(disk_line(entry.disk_id, entry.mount_point, entry.uuid))

        for volume in volumes:
            if not volume.uuid:
                log.warn('persistence',
                         f"No filesystem UUID for volume {volume.name}; using device path")
            lines.append(disk_line(volume.disk_id, volume.mount_point, volume.uuid))

        if branches and options:
            lines.append(union_line(branches, self.pool_mount_point, options))
        return lines

    def write(self, entries: List[PoolDiskEntry], volumes: List[StandaloneVolume],
              branches: List[str], options: Optional[str], log: OperationLog) -> bool:
        """
        Rewrite the managed section. Failures are logged as warnings.

        Returns:
            True if the new fstab was installed
        """
        lines = self.render(entries, volumes, branches, options, log)

        try:
            existing = self._read()
        except OSError as e:
            log.warn('persistence', f"Could not read {self.fstab_path}: {e}")
            return False

        content = replace_section(existing, lines)
        if content == existing:
            log.ok('persistence', f"{self.fstab_path} already up to date")
            return True

        success, error = self._executor.install_file(content, self.fstab_path)
        if not success:
            log.warn('persistence', f"Could not update {self.fstab_path}: {error}")
            return False

        log.ok('persistence', f"Updated {self.fstab_path} for persistence ({len(lines)} entries)")
        log.record(f"rewrote managed section of {self.fstab_path}",
                   "restore the previous managed fstab section")
        return True

    def _read(self) -> str:
        if not os.path.exists(self.fstab_path):
            return ""
        with open(self.fstab_path, 'r') as f:
            return f.read()

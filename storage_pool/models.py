"""Data models for storage pool management."""

from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


KNOWN_FILESYSTEMS = ('ext4', 'xfs', 'btrfs', 'ntfs')


def utc_now_iso() -> str:
    """Current time as an ISO-8601 UTC timestamp."""
    return datetime.now(timezone.utc).isoformat()


def format_size(size_gb: float) -> str:
    """Format a size in GB, switching to TB at 1024 GB."""
    try:
        num = float(size_gb)
    except (TypeError, ValueError):
        num = 0.0
    if num >= 1024:
        return f"{num / 1024:.1f} TB"
    return f"{round(num)} GB"


class DiskRole(Enum):
    """Role of a disk in the storage pool."""
    DATA = "data"
    PARITY = "parity"
    CACHE = "cache"


class StepOutcome(Enum):
    """Outcome of a single step of a pool operation."""
    OK = "ok"
    WARNING = "warning"
    SKIPPED = "skipped"
    FATAL = "fatal"


@dataclass
class Partition:
    """One partition of a block device as reported by lsblk."""
    name: str
    size_bytes: int = 0
    fstype: Optional[str] = None
    mount_point: Optional[str] = None

    @property
    def path(self) -> str:
        return f"/dev/{self.name}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'path': self.path,
            'size_bytes': self.size_bytes,
            'size_formatted': format_size(round(self.size_bytes / 1073741824)),
            'fstype': self.fstype,
            'mount_point': self.mount_point,
        }


@dataclass
class DiskDescriptor:
    """A physical block device observed by the scanner.

    Rebuilt from live lsblk output on every scan; never mutated afterwards
    except for the classification annotations the scanner adds.
    """
    id: str
    size_bytes: int
    model: str = "Unknown"
    serial: str = ""
    transport: str = "unknown"
    partitions: List[Partition] = field(default_factory=list)
    # Classification annotations
    role: Optional[DiskRole] = None
    in_pool: bool = False
    has_data: bool = False
    formatted: bool = False
    ignored: bool = False

    @property
    def path(self) -> str:
        return f"/dev/{self.id}"

    @property
    def size_formatted(self) -> str:
        return format_size(round(self.size_bytes / 1073741824))

    @property
    def has_filesystem(self) -> bool:
        return any(p.fstype for p in self.partitions)

    @property
    def has_known_filesystem(self) -> bool:
        return any(p.fstype in KNOWN_FILESYSTEMS for p in self.partitions)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'id': self.id,
            'path': self.path,
            'size_bytes': self.size_bytes,
            'size_formatted': self.size_formatted,
            'model': self.model,
            'serial': self.serial,
            'transport': self.transport,
            'partitions': [p.to_dict() for p in self.partitions],
            'in_pool': self.in_pool,
        }
        if self.in_pool:
            data['role'] = self.role.value if self.role else DiskRole.DATA.value
        else:
            data['has_data'] = self.has_data
            data['formatted'] = self.formatted
            data['ignored'] = self.ignored
        return data


@dataclass
class PoolDiskEntry:
    """A disk's committed membership in the pool (persisted)."""
    disk_id: str
    role: DiskRole
    mount_point: str
    uuid: Optional[str] = None
    added_at: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'disk_id': self.disk_id,
            'role': self.role.value,
            'uuid': self.uuid,
            'mount_point': self.mount_point,
            'added_at': self.added_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PoolDiskEntry':
        return cls(
            disk_id=data['disk_id'],
            role=DiskRole(data.get('role', DiskRole.DATA.value)),
            mount_point=data.get('mount_point', ''),
            uuid=data.get('uuid'),
            added_at=data.get('added_at') or utc_now_iso(),
        )


@dataclass
class StandaloneVolume:
    """A disk mounted under its own name, outside the union mount."""
    disk_id: str
    name: str
    mount_point: str
    uuid: Optional[str] = None
    added_at: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StandaloneVolume':
        return cls(
            disk_id=data['disk_id'],
            name=data['name'],
            mount_point=data['mount_point'],
            uuid=data.get('uuid'),
            added_at=data.get('added_at') or utc_now_iso(),
        )


@dataclass
class TargetDisk:
    """One element of a full reconfiguration request."""
    disk_id: str
    role: DiskRole
    format: bool = False


@dataclass
class PoolTopology:
    """Live state of the union mount."""
    mount_point: str
    branches: List[str] = field(default_factory=list)
    options: str = ""
    mounted: bool = False

    @property
    def create_policy(self) -> Optional[str]:
        for option in self.options.split(','):
            if option.startswith('category.create='):
                return option.split('=', 1)[1]
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'mount_point': self.mount_point,
            'branches': list(self.branches),
            'options': self.options,
            'mounted': self.mounted,
            'create_policy': self.create_policy,
        }


@dataclass
class ScanReport:
    """Scanner output: disks split into configured and unconfigured."""
    configured: List[DiskDescriptor] = field(default_factory=list)
    unconfigured: List[DiskDescriptor] = field(default_factory=list)

    @property
    def new_disks(self) -> List[DiskDescriptor]:
        """Unconfigured disks the user has not asked to ignore."""
        return [d for d in self.unconfigured if not d.ignored]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'configured': [d.to_dict() for d in self.configured],
            'unconfigured': [d.to_dict() for d in self.unconfigured],
        }


@dataclass
class StepResult:
    """Typed outcome of one step, backing one line of the step log."""
    step: str
    outcome: StepOutcome
    message: str

    def render(self) -> str:
        if self.outcome == StepOutcome.WARNING:
            return f"Warning: {self.message}"
        if self.outcome == StepOutcome.FATAL:
            return f"Error: {self.message}"
        if self.outcome == StepOutcome.SKIPPED:
            return f"Skipped: {self.message}"
        return self.message


@dataclass
class RollbackRecord:
    """A completed side effect and the command that would undo it."""
    action: str
    undo: str


class OperationLog:
    """Ordered step log of a pool operation plus its rollback journal."""

    def __init__(self):
        self.steps: List[StepResult] = []
        self.rollback: List[RollbackRecord] = []

    def ok(self, step: str, message: str) -> None:
        self.steps.append(StepResult(step, StepOutcome.OK, message))

    def warn(self, step: str, message: str) -> None:
        self.steps.append(StepResult(step, StepOutcome.WARNING, message))

    def skip(self, step: str, message: str) -> None:
        self.steps.append(StepResult(step, StepOutcome.SKIPPED, message))

    def fatal(self, step: str, message: str) -> None:
        self.steps.append(StepResult(step, StepOutcome.FATAL, message))

    def record(self, action: str, undo: str) -> None:
        self.rollback.append(RollbackRecord(action, undo))

    @property
    def lines(self) -> List[str]:
        return [s.render() for s in self.steps]

    @property
    def warnings(self) -> List[StepResult]:
        return [s for s in self.steps if s.outcome == StepOutcome.WARNING]


@dataclass
class OperationResult:
    """Structured result returned to callers of the pool core."""
    success: bool
    log: List[str] = field(default_factory=list)
    error_kind: Optional[str] = None
    detail: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)
    steps: List[StepResult] = field(default_factory=list)
    rollback: List[RollbackRecord] = field(default_factory=list)

    @classmethod
    def from_log(cls, success: bool, log: OperationLog, **kwargs) -> 'OperationResult':
        return cls(success=success, log=log.lines, steps=list(log.steps),
                   rollback=list(log.rollback), **kwargs)

    def to_dict(self) -> Dict[str, Any]:
        result = {
            'success': self.success,
            'log': list(self.log),
            'steps': [
                {'step': s.step, 'outcome': s.outcome.value, 'message': s.message}
                for s in self.steps
            ],
            'rollback': [asdict(r) for r in self.rollback],
        }
        result.update(self.data)
        if not self.success:
            result['error_kind'] = self.error_kind
            result['detail'] = self.detail
        return result

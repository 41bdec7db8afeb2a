"""Storage pool service: one instance owns the pool lock and all collaborators."""

import time
import logging
import threading
from dataclasses import dataclass, asdict
from typing import Any, Callable, Dict, List, Optional

from .config_manager import PoolSettings
from .disk_prep import DiskPreparer
from .errors import ErrorKind, OperationInProgressError, PoolError
from .fstab_manager import FstabManager
from .mergerfs_manager import MergerFSManager
from .models import OperationLog, OperationResult
from .mounts import MountTable
from .operations import PoolOperations
from .pool_status import PoolStatusReporter
from .reconciler import PoolReconciler
from .scanner import DiskScanner
from .snapraid_config import SnapRAIDConfigWriter
from .snapraid_runner import SnapRAIDRunner
from .state_store import StateStore
from .system_executor import SystemCommandExecutor


logger = logging.getLogger(__name__)


@dataclass
class OperationStatus:
    """What the pool lock is currently held for."""
    operation: Optional[str] = None
    running: bool = False
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    success: Optional[bool] = None


class StoragePoolService:
    """Entry point for every pool operation.

    Mutating operations are serialised behind a single lock; callers wait up
    to ``operation_wait_timeout`` seconds before getting
    ``OperationInProgress``. Every call returns an OperationResult carrying
    the step log, even on failure.
    """

    def __init__(self, settings: PoolSettings,
                 executor: Optional[SystemCommandExecutor] = None,
                 state: Optional[StateStore] = None,
                 mount_table: Optional[MountTable] = None,
                 clock: Callable[[], float] = time.time):
        self.settings = settings
        self.executor = executor or SystemCommandExecutor(
            use_sudo=settings.use_sudo,
            max_timeout=settings.max_command_timeout,
            staging_dir=settings.staging_dir,
        )
        self.state = state or StateStore(settings.state_file)
        self.mount_table = mount_table or MountTable()
        self._clock = clock

        self.preparer = DiskPreparer(self.executor)
        self.scanner = DiskScanner(self.executor, self.state, settings.mount_base)
        self.mergerfs = MergerFSManager(self.executor, self.mount_table,
                                        settings.pool_mount_point, settings.cache_min_free_space)
        self.snapraid_config = SnapRAIDConfigWriter(self.executor, settings.snapraid_config_path)
        self.fstab = FstabManager(self.executor, settings.fstab_path, settings.pool_mount_point)

        collaborators = dict(
            settings=settings, state=self.state, scanner=self.scanner,
            preparer=self.preparer, mount_table=self.mount_table,
            mergerfs=self.mergerfs, snapraid=self.snapraid_config, fstab=self.fstab,
        )
        self.reconciler = PoolReconciler(**collaborators)
        self.operations = PoolOperations(**collaborators)
        self.status_reporter = PoolStatusReporter(self.state, self.mount_table,
                                                  self.mergerfs, self.snapraid_config)
        self.snapraid = SnapRAIDRunner(self.executor, settings.snapraid_config_path,
                                       settings.sync_stale_seconds, clock=clock)

        self._lock = threading.Lock()
        self._status = OperationStatus()

    # -- pool mutations (serialised) -----------------------------------------

    def reconfigure(self, disks: List[Any]) -> OperationResult:
        return self._exclusive('reconfigure', lambda log: self.reconciler.reconfigure(disks, log))

    def add_disk(self, disk_id: Any, role: Any = 'data', format: bool = False,
                 force: bool = False) -> OperationResult:
        return self._exclusive(
            'add_disk', lambda log: self.operations.add_disk(disk_id, role, format, force, log)
        )

    def remove_disk(self, disk_id: Any) -> OperationResult:
        return self._exclusive('remove_disk', lambda log: self.operations.remove_disk(disk_id, log))

    def mount_standalone(self, disk_id: Any, name: Any = None,
                         format: bool = False) -> OperationResult:
        return self._exclusive(
            'mount_standalone',
            lambda log: self.operations.mount_standalone(disk_id, name, format, log)
        )

    # -- metadata and read-only queries --------------------------------------

    def ignore_disk(self, disk_id: Any) -> OperationResult:
        return self._call('ignore_disk', lambda log: self.operations.ignore_disk(disk_id, log))

    def unignore_disk(self, disk_id: Any) -> OperationResult:
        return self._call('unignore_disk', lambda log: self.operations.unignore_disk(disk_id, log))

    def list_ignored(self) -> OperationResult:
        return self._call('list_ignored', lambda log: {'ignored': self.operations.list_ignored()})

    def scan(self) -> OperationResult:
        def run(log):
            report = self.scanner.scan()
            data = report.to_dict()
            data['new_disks'] = [d.to_dict() for d in report.new_disks]
            return data
        return self._call('scan', run)

    def pool_status(self) -> OperationResult:
        return self._call('pool_status', lambda log: self.status_reporter.get_status())

    def operation_status(self) -> Dict[str, Any]:
        record = asdict(self._status)
        record['stale'] = self._is_stale()
        return record

    # -- snapraid ------------------------------------------------------------

    def start_sync(self) -> OperationResult:
        def run(log):
            progress = self.snapraid.start_sync()
            log.ok('sync', 'SnapRAID sync started in background')
            return {'progress': progress}
        return self._call('snapraid_sync', run)

    def sync_progress(self) -> Dict[str, Any]:
        return self.snapraid.progress()

    def scrub(self, percent: int = 10) -> OperationResult:
        def run(log):
            result = self.snapraid.scrub(percent)
            log.ok('scrub', result['message'])
            return result
        return self._exclusive('snapraid_scrub', run)

    def snapraid_status(self) -> OperationResult:
        return self._call('snapraid_status', lambda log: self.snapraid.status())

    # -- plumbing ------------------------------------------------------------

    def _exclusive(self, name: str, fn: Callable[[OperationLog], Dict[str, Any]]) -> OperationResult:
        if not self._lock.acquire(timeout=self.settings.operation_wait_timeout):
            current = self._status.operation or 'unknown'
            logger.warning(f"{name} gave up waiting for running operation {current}")
            return self._failure(
                OperationLog(),
                OperationInProgressError(f"Another pool operation is running: {current}",
                                         data={'operation': current})
            )

        try:
            self._status = OperationStatus(operation=name, running=True,
                                           started_at=self._clock())
            result = self._call(name, fn)
            self._status.success = result.success
            return result
        finally:
            self._status.running = False
            self._status.finished_at = self._clock()
            self._lock.release()

    def _call(self, name: str, fn: Callable[[OperationLog], Dict[str, Any]]) -> OperationResult:
        log = OperationLog()
        try:
            data = fn(log)
        except PoolError as e:
            logger.warning(f"{name} failed ({e.kind.value}): {e.detail}",
                           extra={'operation': name, 'error_kind': e.kind.value})
            return self._failure(log, e)
        except Exception as e:
            logger.exception(f"Unexpected error during {name}", extra={'operation': name})
            log.fatal(name, f"Unexpected error: {e}")
            return OperationResult.from_log(
                False, log, error_kind=ErrorKind.COMMAND_FAILED.value, detail=str(e)
            )

        logger.info(f"{name} completed", extra={'operation': name})
        return OperationResult.from_log(True, log, data=data or {})

    @staticmethod
    def _failure(log: OperationLog, error: PoolError) -> OperationResult:
        return OperationResult.from_log(
            False, log, error_kind=error.kind.value, detail=error.detail, data=error.data
        )

    def _is_stale(self) -> bool:
        if not self._status.running or self._status.started_at is None:
            return False
        return self._clock() - self._status.started_at > self.settings.operation_stale_seconds

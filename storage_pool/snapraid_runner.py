"""SnapRAID sync, scrub and status.

A sync runs in a background thread and reports through a status record
owned by the runner instance. Only one sync runs at a time; a record that
claims to be running for longer than the stale ceiling is force-reset.
"""

import os
import re
import time
import logging
import threading
from dataclasses import dataclass, asdict
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from .errors import CommandFailedError, InvalidInputError, OperationInProgressError
from .system_executor import CommandType, SystemCommandExecutor


logger = logging.getLogger(__name__)

_PERCENT = re.compile(r'(\d+)%')
_COUNT = re.compile(r'(\d+)\s+(files?|blocks?)', re.IGNORECASE)


@dataclass
class SyncStatus:
    """Progress record of the current or last sync."""
    running: bool = False
    progress: int = 0
    status: str = "Idle"
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    error: Optional[str] = None
    exit_code: Optional[int] = None


class SnapRAIDRunner:
    """Runs snapraid against the generated configuration."""

    def __init__(self, executor: SystemCommandExecutor, config_path: str,
                 stale_seconds: int = 6 * 60 * 60,
                 clock: Callable[[], float] = time.time):
        self._executor = executor
        self.config_path = config_path
        self.stale_seconds = stale_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._status = SyncStatus()
        self._generation = 0
        self._thread: Optional[threading.Thread] = None

    def start_sync(self, background: bool = True) -> Dict[str, Any]:
        """
        Start ``snapraid sync``.

        Raises:
            OperationInProgressError: If a sync is already running and not stale
        """
        with self._lock:
            if self._status.running:
                if not self._is_stale():
                    raise OperationInProgressError(
                        "Sync already in progress",
                        data={'progress': self._status.progress}
                    )
                logger.warning("Resetting stale SnapRAID sync status record")

            self._generation += 1
            generation = self._generation
            self._status = SyncStatus(
                running=True,
                status="Starting sync...",
                started_at=self._clock(),
            )

        if background:
            self._thread = threading.Thread(target=self._run_sync, args=(generation,),
                                            name='snapraid-sync', daemon=True)
            self._thread.start()
        else:
            self._run_sync(generation)
        return self.progress()

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    def progress(self) -> Dict[str, Any]:
        with self._lock:
            record = asdict(self._status)
            record['stale'] = self._status.running and self._is_stale()
        return record

    def scrub(self, percent: int = 10) -> Dict[str, Any]:
        """
        Scrub ``percent`` of the array synchronously.

        Raises:
            InvalidInputError: If percent is outside 1-100
            OperationInProgressError: If a sync is running
            CommandFailedError: If snapraid fails
        """
        try:
            percent = int(percent)
        except (TypeError, ValueError):
            raise InvalidInputError(f"Invalid scrub percentage: {percent!r}") from None
        if not 1 <= percent <= 100:
            raise InvalidInputError("Scrub percentage must be between 1 and 100")

        with self._lock:
            if self._status.running and not self._is_stale():
                raise OperationInProgressError("Cannot scrub while a sync is running")

        success, stdout, stderr = self._executor.execute(
            CommandType.SNAPRAID, ['-c', self.config_path, 'scrub', '-p', str(percent)]
        )
        if not success:
            raise CommandFailedError(f"SnapRAID scrub failed: {stderr.strip() or stdout.strip()}")
        return {'message': 'SnapRAID scrub completed', 'output': stdout}

    def status(self) -> Dict[str, Any]:
        if not os.path.exists(self.config_path):
            return {'configured': False, 'status': 'Not configured'}

        success, stdout, stderr = self._executor.execute(
            CommandType.SNAPRAID, ['-c', self.config_path, 'status']
        )
        if not success:
            logger.warning(f"snapraid status failed: {stderr.strip()}")
            return {'configured': True, 'status': (stdout + stderr).strip() or 'Not configured or error'}
        return {'configured': True, 'status': stdout}

    def _is_stale(self) -> bool:
        started = self._status.started_at
        return started is not None and self._clock() - started > self.stale_seconds

    def _run_sync(self, generation: int) -> None:
        lines = self._executor.stream(
            CommandType.SNAPRAID, ['-c', self.config_path, 'sync', '-v']
        )
        try:
            output, code = self._drain(lines, generation)
        except (OSError, ValueError) as e:
            logger.exception("SnapRAID sync failed to run")
            with self._lock:
                if generation != self._generation:
                    return
                self._status.running = False
                self._status.status = "Sync failed to start"
                self._status.error = str(e)
                self._status.finished_at = self._clock()
            return

        with self._lock:
            if generation != self._generation:
                logger.warning(f"SnapRAID sync finished with code {code} after its status was reset")
                return
            self._status.exit_code = code
            if code == 0:
                self._status.progress = 100
                self._status.status = "Sync completed successfully"
                self._status.error = None
            elif any('Nothing to do' in line for line in output):
                self._status.progress = 100
                self._status.status = "Already in sync (nothing to do)"
                self._status.error = None
            else:
                self._status.status = "Sync failed"
                self._status.error = f"Sync exited with code {code}"
            self._status.running = False
            self._status.finished_at = self._clock()

        logger.info(f"SnapRAID sync finished with code {code}")

    def _drain(self, lines: Iterator[str], generation: int) -> Tuple[List[str], int]:
        output = []
        while True:
            try:
                line = next(lines)
            except StopIteration as stop:
                return output, stop.value if stop.value is not None else 0
            output.append(line)
            self._parse_line(line, generation)

    def _parse_line(self, line: str, generation: int) -> None:
        with self._lock:
            # A reset sync keeps draining its output but no longer reports
            if generation != self._generation:
                return

            match = _PERCENT.search(line)
            if match:
                self._status.progress = min(100, int(match.group(1)))

            if 'completed' in line or 'Nothing to do' in line:
                self._status.progress = 100
                self._status.status = "Sync completed"

            match = _COUNT.search(line)
            if match:
                self._status.status = f"Processing {match.group(1)} {match.group(2)}..."

            if 'Syncing' in line or 'Self test' in line or 'Verifying' in line:
                self._status.status = line.strip()[:50]

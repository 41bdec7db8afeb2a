"""Persisted key/value document holding the pool's durable state."""

import os
import json
import logging
import tempfile
import threading
from typing import Any, Callable, Dict, List, Optional

from .models import PoolDiskEntry, StandaloneVolume


logger = logging.getLogger(__name__)

STORAGE_CONFIG = 'storage_config'
STANDALONE_VOLUMES = 'standalone_volumes'
IGNORED_DISKS = 'ignored_disks'


class StateStore:
    """JSON document store with read-modify-write helpers.

    The document is re-read on every access so edits made by another
    process between operations are picked up. Writes go through a temporary
    file in the same directory followed by ``os.replace``.
    """

    def __init__(self, path: Optional[str] = None):
        self.path = path
        self._lock = threading.RLock()
        self._memory: Dict[str, Any] = {}

    def load(self) -> Dict[str, Any]:
        with self._lock:
            if not self.path:
                return json.loads(json.dumps(self._memory))
            try:
                with open(self.path, 'r') as f:
                    data = json.load(f)
            except FileNotFoundError:
                return {}
            except (OSError, json.JSONDecodeError) as e:
                logger.error(f"Error reading state file {self.path}: {e}")
                return {}
            return data if isinstance(data, dict) else {}

    def get(self, key: str, default: Any = None) -> Any:
        return self.load().get(key, default)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            data = self.load()
            data[key] = value
            self._save(data)

    def update(self, key: str, fn: Callable[[Any], Any], default: Any = None) -> Any:
        """Apply ``fn`` to the current value of ``key`` and store the result."""
        with self._lock:
            data = self.load()
            value = fn(data.get(key, default))
            data[key] = value
            self._save(data)
            return value

    def _save(self, data: Dict[str, Any]) -> None:
        if not self.path:
            self._memory = json.loads(json.dumps(data))
            return

        directory = os.path.dirname(self.path) or '.'
        os.makedirs(directory, exist_ok=True)
        fd, temp_path = tempfile.mkstemp(prefix='.state-', dir=directory)
        try:
            with os.fdopen(fd, 'w') as f:
                json.dump(data, f, indent=2)
            os.replace(temp_path, self.path)
        except OSError:
            if os.path.exists(temp_path):
                os.unlink(temp_path)
            raise

    # Typed accessors for the three keys the pool core owns

    def pool_entries(self) -> List[PoolDiskEntry]:
        return [PoolDiskEntry.from_dict(item) for item in self.get(STORAGE_CONFIG, []) or []]

    def save_pool_entries(self, entries: List[PoolDiskEntry]) -> None:
        self.set(STORAGE_CONFIG, [entry.to_dict() for entry in entries])

    def standalone_volumes(self) -> List[StandaloneVolume]:
        return [StandaloneVolume.from_dict(item) for item in self.get(STANDALONE_VOLUMES, []) or []]

    def save_standalone_volumes(self, volumes: List[StandaloneVolume]) -> None:
        self.set(STANDALONE_VOLUMES, [volume.to_dict() for volume in volumes])

    def ignored_disks(self) -> List[str]:
        return list(self.get(IGNORED_DISKS, []) or [])

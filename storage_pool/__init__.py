"""Storage pool reconciliation core: MergerFS union mount plus SnapRAID parity."""

from .config_manager import ConfigManager, PoolSettings
from .errors import ErrorKind, PoolError
from .models import DiskRole, OperationResult
from .service import StoragePoolService

__all__ = [
    'ConfigManager',
    'DiskRole',
    'ErrorKind',
    'OperationResult',
    'PoolError',
    'PoolSettings',
    'StoragePoolService',
]

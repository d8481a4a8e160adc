"""Models package for the tag synchronization layer."""

from .credential import Credential
from .operation_result import OperationResult, OperationStatus
from .pending_write import PendingWrite, WriteKind
from .values import ABSENT, is_absent

__all__ = [
    'ABSENT',
    'Credential',
    'OperationResult',
    'OperationStatus',
    'PendingWrite',
    'WriteKind',
    'is_absent',
]

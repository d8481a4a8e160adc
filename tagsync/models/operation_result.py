from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional


class OperationStatus(Enum):
    DONE = "done"
    QUEUED = "queued"


@dataclass
class OperationResult:
    """What the future returned by a SyncEngine call resolves to."""
    operation: str
    tag: Optional[str]
    status: OperationStatus = OperationStatus.DONE
    value: Any = None
    sequence: Optional[int] = None

    @property
    def queued(self) -> bool:
        return self.status is OperationStatus.QUEUED

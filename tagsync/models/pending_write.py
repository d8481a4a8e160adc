from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional


class WriteKind(Enum):
    STORE = "Store"
    APPEND_VALUE = "AppendValue"
    REMOVE_FIRST = "RemoveFirst"
    CLEAR_TAG = "ClearTag"


@dataclass
class PendingWrite:
    tag: str
    kind: WriteKind
    value: Any = None
    sequence: Optional[int] = None
    enqueued_at: Optional[str] = None
    retry_count: int = 0
    last_error: Optional[str] = None

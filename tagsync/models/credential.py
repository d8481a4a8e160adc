from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional


@dataclass(frozen=True)
class Credential:
    token: str
    issued_for: str
    valid_until: datetime

    def is_valid(self, now: Optional[datetime] = None, skew: float = 0.0) -> bool:
        """True while the credential has more than ``skew`` seconds left."""
        now = now or datetime.now(timezone.utc)
        return now + timedelta(seconds=skew) < self.valid_until

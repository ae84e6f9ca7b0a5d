"""Clock source and operation deadlines."""
import time
from datetime import datetime, timezone
from typing import Callable, Optional

from maintenance_core.errors import OperationTimeout

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Deadline:
    """
    Budget for a long-running operation such as a cascade.

    A deadline with no timeout never expires. `check()` raises
    OperationTimeout once the budget is spent, which aborts the enclosing
    transaction.
    """

    def __init__(self, timeout: Optional[float] = None, monotonic: Callable[[], float] = time.monotonic):
        self.timeout = timeout
        self._monotonic = monotonic
        self._started = monotonic()

    @property
    def remaining(self) -> Optional[float]:
        if self.timeout is None:
            return None
        return self.timeout - (self._monotonic() - self._started)

    def expired(self) -> bool:
        remaining = self.remaining
        return remaining is not None and remaining <= 0

    def check(self, operation: str) -> None:
        if self.expired():
            raise OperationTimeout(
                f"{operation} exceeded its {self.timeout}s deadline",
                details={"timeout": self.timeout, "operation": operation},
            )

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime


class ClockPort(ABC):
    """Source of timestamps for records, answers and stream metadata.

    SystemClock is the only production implementation; tests inject a fixed clock.
    """

    @abstractmethod
    def now(self) -> datetime:
        """Return the current time as an aware UTC datetime."""
        ...

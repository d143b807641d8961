"""System clock adapter providing real UTC time.

This is the production implementation of ClockPort.
For tests, inject a fixed clock instead.
"""

from __future__ import annotations

from datetime import UTC, datetime

from kb_rag.application.ports.clock_port import ClockPort


class SystemClock(ClockPort):
    """Production clock: aware UTC datetimes for records, answers and stream metadata."""

    def now(self) -> datetime:  # pragma: no cover - trivial
        return datetime.now(UTC)

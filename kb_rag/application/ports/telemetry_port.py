"""Telemetry port for metrics and tracing."""

from contextlib import AbstractContextManager, nullcontext
from typing import Any, Protocol


class TelemetryPort(Protocol):
    """Port for telemetry and monitoring. Implementations must never raise."""

    def incr(self, name: str, tags: dict[str, Any] | None = None) -> None:
        """Increment a counter metric."""
        ...

    def observe(self, name: str, value: float, tags: dict[str, Any] | None = None) -> None:
        """Observe a value for histogram/summary metric."""
        ...

    def span(
        self, name: str, attributes: dict[str, Any] | None = None
    ) -> AbstractContextManager[Any]:
        """Open a tracing span around a pipeline stage."""
        ...


class NoopTelemetry:
    """Null TelemetryPort used when telemetry is disabled and in tests."""

    def incr(self, name: str, tags: dict[str, Any] | None = None) -> None:
        return None

    def observe(self, name: str, value: float, tags: dict[str, Any] | None = None) -> None:
        return None

    def span(
        self, name: str, attributes: dict[str, Any] | None = None
    ) -> AbstractContextManager[Any]:
        return nullcontext()

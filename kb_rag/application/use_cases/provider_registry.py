from __future__ import annotations

import logging
import time
from collections.abc import Mapping
from dataclasses import dataclass

from kb_rag.application.deadlines import with_deadline
from kb_rag.application.ports.llm_port import ChatMessage, ChatModelPort
from kb_rag.domain.errors import ConfigError

logger = logging.getLogger(__name__)

PROBE_MESSAGE = "Hello, this is a test message."


@dataclass(frozen=True)
class ProviderProbe:
    provider: str
    success: bool
    response: str | None = None
    error: str | None = None
    latency_ms: float = 0.0


class ChatProviderRegistry:
    """Name → chat adapter map, built once at startup and read-only afterwards."""

    def __init__(self, providers: Mapping[str, ChatModelPort], default: str) -> None:
        if not providers:
            raise ConfigError("no chat providers configured")
        if default not in providers:
            raise ConfigError(
                f"default provider {default!r} not among configured providers {sorted(providers)}"
            )
        self._providers = dict(providers)
        self.default = default

    def names(self) -> list[str]:
        return list(self._providers)

    def resolve_name(self, name: str | None) -> str:
        """None selects the default; unknown names are a ConfigError."""
        if name is None:
            return self.default
        if name not in self._providers:
            raise ConfigError(f"unknown chat provider {name!r}; available: {self.names()}")
        return name

    def get(self, name: str | None = None) -> ChatModelPort:
        return self._providers[self.resolve_name(name)]

    async def probe(self, name: str | None = None, timeout_s: float | None = 30.0) -> ProviderProbe:
        """Send a short test message; failures are reported, not raised (except ConfigError)."""
        resolved = self.resolve_name(name)
        model = self._providers[resolved]
        started = time.monotonic()
        try:
            resp = await with_deadline(
                model.chat([ChatMessage(role="user", content=PROBE_MESSAGE)], max_tokens=32),
                timeout_s,
                f"probe {resolved}",
            )
        except Exception as ex:  # noqa: BLE001
            logger.error("provider %s test failed: %s", resolved, ex)
            return ProviderProbe(
                provider=resolved,
                success=False,
                error=str(ex),
                latency_ms=(time.monotonic() - started) * 1000,
            )
        logger.info("provider %s test successful", resolved)
        return ProviderProbe(
            provider=resolved,
            success=True,
            response=resp.text,
            latency_ms=(time.monotonic() - started) * 1000,
        )

    async def aclose(self) -> None:
        for model in self._providers.values():
            await model.aclose()

"""Application settings with environment-driven configuration.

The only place that reads environment variables; every other layer receives
values through the composition root.
"""

import os
from dataclasses import dataclass, field

from kb_rag.domain.errors import ConfigError
from kb_rag.domain.services.chunking import ChunkingParams

VECTOR_BACKENDS = ("opensearch", "qdrant", "chroma", "memory")
EMBEDDING_PROVIDERS = ("openai", "sentence-transformers")
CHAT_PROVIDERS = ("openai", "vllm")


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


def _csv(name: str, default: str) -> tuple[str, ...]:
    return tuple(p.strip().lower() for p in os.getenv(name, default).split(",") if p.strip())


@dataclass(frozen=True)
class AppSettings:
    """Application settings loaded from environment variables.

    `validate()` is called by the composition root before anything is built.
    """

    # ===== Vector Index Configuration =====
    vector_backend: str = field(
        default_factory=lambda: os.getenv("VECTOR_BACKEND", "opensearch").lower()
    )
    # Supported: "opensearch" | "qdrant" | "chroma" | "memory"

    index_name: str = field(default_factory=lambda: os.getenv("VECTOR_INDEX", "otel_knowledge"))
    vector_dimension: int = field(
        default_factory=lambda: int(os.getenv("VECTOR_DIMENSION", "1536"))
    )

    # OpenSearch-specific
    opensearch_endpoint: str = field(
        default_factory=lambda: os.getenv("OPENSEARCH_ENDPOINT", "http://localhost:9200")
    )
    opensearch_username: str = field(default_factory=lambda: os.getenv("OPENSEARCH_USERNAME", ""))
    opensearch_password: str = field(default_factory=lambda: os.getenv("OPENSEARCH_PASSWORD", ""))
    opensearch_verify_tls: bool = field(
        default_factory=lambda: _flag("OPENSEARCH_VERIFY_TLS", "true")
    )

    # Qdrant-specific
    qdrant_url: str = field(
        default_factory=lambda: os.getenv("QDRANT_URL", "http://localhost:6333")
    )
    qdrant_api_key: str = field(default_factory=lambda: os.getenv("QDRANT_API_KEY", ""))
    qdrant_metric: str = field(default_factory=lambda: os.getenv("QDRANT_METRIC", "euclid").lower())

    # Chroma-specific
    chroma_host: str = field(default_factory=lambda: os.getenv("CHROMA_HOST", "localhost"))
    chroma_port: int = field(default_factory=lambda: int(os.getenv("CHROMA_PORT", "8000")))

    # ===== Embedding Configuration =====
    embedding_provider: str = field(
        default_factory=lambda: os.getenv("EMBEDDING_PROVIDER", "openai").lower()
    )
    embedding_model: str = field(
        default_factory=lambda: os.getenv("EMBEDDING_MODEL", "text-embedding-3-small")
    )
    embedding_device: str = field(default_factory=lambda: os.getenv("EMBEDDING_DEVICE", "cpu"))
    # Supported: "cpu" | "cuda" | "mps" (sentence-transformers only)

    embedding_batch_size: int = field(
        default_factory=lambda: int(os.getenv("EMBEDDING_BATCH_SIZE", "64"))
    )
    embedding_concurrency: int = field(
        default_factory=lambda: int(os.getenv("EMBEDDING_CONCURRENCY", "4"))
    )

    # ===== Chat Provider Configuration =====
    llm_providers: tuple[str, ...] = field(default_factory=lambda: _csv("LLM_PROVIDERS", "openai"))
    llm_default_provider: str = field(
        default_factory=lambda: os.getenv("LLM_DEFAULT_PROVIDER", "openai").lower()
    )
    openai_api_key: str = field(default_factory=lambda: os.getenv("OPENAI_API_KEY", ""))
    openai_base_url: str = field(default_factory=lambda: os.getenv("OPENAI_BASE_URL", ""))
    openai_chat_model: str = field(
        default_factory=lambda: os.getenv("OPENAI_CHAT_MODEL", "gpt-4o-mini")
    )
    vllm_base_url: str = field(
        default_factory=lambda: os.getenv("VLLM_BASE_URL", "http://localhost:8000/v1")
    )
    vllm_api_key: str = field(default_factory=lambda: os.getenv("VLLM_API_KEY", "EMPTY"))
    vllm_model: str = field(
        default_factory=lambda: os.getenv("VLLM_MODEL", "meta-llama/Meta-Llama-3.1-8B-Instruct")
    )
    llm_temperature: float = field(
        default_factory=lambda: float(os.getenv("LLM_TEMPERATURE", "0.7"))
    )
    llm_max_tokens: int = field(default_factory=lambda: int(os.getenv("LLM_MAX_TOKENS", "1000")))

    # ===== Pipeline Configuration =====
    chunk_size: int = field(default_factory=lambda: int(os.getenv("CHUNK_SIZE", "500")))
    chunk_overlap: int = field(default_factory=lambda: int(os.getenv("CHUNK_OVERLAP", "50")))
    default_k: int = field(default_factory=lambda: int(os.getenv("DEFAULT_K", "5")))
    max_context_chars: int = field(
        default_factory=lambda: int(os.getenv("MAX_CONTEXT_CHARS", "0"))
    )
    # 0 = unbounded context block

    insert_batch_size: int = field(
        default_factory=lambda: int(os.getenv("INSERT_BATCH_SIZE", "100"))
    )
    insert_concurrency: int = field(
        default_factory=lambda: int(os.getenv("INSERT_CONCURRENCY", "2"))
    )
    refresh_after_write: bool = field(
        default_factory=lambda: _flag("REFRESH_AFTER_WRITE", "false")
    )

    # ===== Deadlines (seconds) =====
    embed_timeout_s: float = field(
        default_factory=lambda: float(os.getenv("EMBED_TIMEOUT_S", "30"))
    )
    search_timeout_s: float = field(
        default_factory=lambda: float(os.getenv("SEARCH_TIMEOUT_S", "10"))
    )
    generate_timeout_s: float = field(
        default_factory=lambda: float(os.getenv("GENERATE_TIMEOUT_S", "120"))
    )
    index_timeout_s: float = field(
        default_factory=lambda: float(os.getenv("INDEX_TIMEOUT_S", "60"))
    )

    # ===== Telemetry / Logging Configuration =====
    telemetry_enabled: bool = field(default_factory=lambda: _flag("TELEMETRY_ENABLED", "false"))
    otlp_endpoint: str = field(default_factory=lambda: os.getenv("OTLP_ENDPOINT", ""))
    # Empty string = no OTLP export

    telemetry_environment: str = field(
        default_factory=lambda: os.getenv("TELEMETRY_ENVIRONMENT", "production")
    )
    log_level: str = field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO").upper())
    log_format: str = field(default_factory=lambda: os.getenv("LOG_FORMAT", "text").lower())
    # Supported: "text" | "json"

    @property
    def chunking(self) -> ChunkingParams:
        return ChunkingParams(chunk_size=self.chunk_size, chunk_overlap=self.chunk_overlap)

    def validate(self) -> None:
        """Raise ConfigError for settings no component could start with."""
        self.chunking.validate()
        if self.vector_backend not in VECTOR_BACKENDS:
            raise ConfigError(
                f"unknown VECTOR_BACKEND {self.vector_backend!r}; expected one of {VECTOR_BACKENDS}"
            )
        if self.vector_dimension <= 0:
            raise ConfigError(f"VECTOR_DIMENSION must be > 0, got {self.vector_dimension}")
        if self.embedding_provider not in EMBEDDING_PROVIDERS:
            raise ConfigError(
                f"unknown EMBEDDING_PROVIDER {self.embedding_provider!r}; "
                f"expected one of {EMBEDDING_PROVIDERS}"
            )
        if not self.llm_providers:
            raise ConfigError("LLM_PROVIDERS must name at least one provider")
        unknown = [p for p in self.llm_providers if p not in CHAT_PROVIDERS]
        if unknown:
            raise ConfigError(f"unknown LLM_PROVIDERS {unknown}; expected {CHAT_PROVIDERS}")
        if self.llm_default_provider not in self.llm_providers:
            raise ConfigError(
                f"LLM_DEFAULT_PROVIDER {self.llm_default_provider!r} is not in "
                f"LLM_PROVIDERS {list(self.llm_providers)}"
            )
        if self.default_k < 0:
            raise ConfigError(f"DEFAULT_K must be >= 0, got {self.default_k}")
        if self.log_format not in ("text", "json"):
            raise ConfigError(f"LOG_FORMAT must be 'text' or 'json', got {self.log_format!r}")

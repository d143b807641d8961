from __future__ import annotations

from kb_rag.application.ports.clock_port import ClockPort
from kb_rag.application.ports.embedding_port import EmbeddingPort
from kb_rag.application.ports.llm_port import ChatModelPort
from kb_rag.application.ports.telemetry_port import NoopTelemetry, TelemetryPort
from kb_rag.application.ports.vector_index_port import VectorIndexPort
from kb_rag.application.service import KnowledgeBaseService
from kb_rag.application.use_cases.answer_question import AnswerQuestion
from kb_rag.application.use_cases.ingest_documents import IngestDocuments
from kb_rag.application.use_cases.provider_registry import ChatProviderRegistry
from kb_rag.application.use_cases.retrieve_context import RetrieveContext
from kb_rag.config.settings import AppSettings
from kb_rag.domain.errors import ConfigError
from kb_rag.infrastructure.time.system_clock import SystemClock


def build_embedding(settings: AppSettings) -> EmbeddingPort:
    provider = settings.embedding_provider
    if provider == "openai":
        from kb_rag.infrastructure.embeddings.openai_embedding_adapter import (
            OpenAIEmbeddingAdapter,
        )

        return OpenAIEmbeddingAdapter(
            api_key=settings.openai_api_key or None,
            model=settings.embedding_model,
            dimension=settings.vector_dimension,
            base_url=settings.openai_base_url or None,
            timeout_s=settings.embed_timeout_s,
        )
    if provider == "sentence-transformers":
        from kb_rag.infrastructure.embeddings.sentence_transformers_adapter import (
            SentenceTransformersEmbeddingAdapter,
        )

        return SentenceTransformersEmbeddingAdapter(
            model_name=settings.embedding_model,
            dimension=settings.vector_dimension,
            device=settings.embedding_device,
            batch_size=settings.embedding_batch_size,
        )
    raise ConfigError(f"unknown embedding provider {provider!r}")


def build_vector_index(settings: AppSettings) -> VectorIndexPort:
    backend = settings.vector_backend

    if backend == "opensearch":
        from kb_rag.infrastructure.vectorstore.opensearch_index import (
            OpenSearchConfig,
            OpenSearchVectorIndex,
        )

        return OpenSearchVectorIndex(
            OpenSearchConfig(
                endpoint=settings.opensearch_endpoint,
                username=settings.opensearch_username or None,
                password=settings.opensearch_password or None,
                verify_tls=settings.opensearch_verify_tls,
                timeout_s=settings.index_timeout_s,
            )
        )

    if backend == "qdrant":
        from kb_rag.infrastructure.vectorstore.qdrant_index import QdrantConfig, QdrantVectorIndex

        return QdrantVectorIndex(
            QdrantConfig(
                url=settings.qdrant_url,
                api_key=settings.qdrant_api_key or None,
                timeout_s=int(settings.index_timeout_s),
                metric=settings.qdrant_metric,
            )
        )

    if backend == "chroma":
        from kb_rag.infrastructure.vectorstore.chroma_index import ChromaConfig, ChromaVectorIndex

        return ChromaVectorIndex(ChromaConfig(host=settings.chroma_host, port=settings.chroma_port))

    if backend == "memory":
        from kb_rag.infrastructure.vectorstore.memory_index import InMemoryVectorIndex

        return InMemoryVectorIndex()

    raise ConfigError(f"unknown vector backend {backend!r}")


def build_chat_model(name: str, settings: AppSettings) -> ChatModelPort:
    from kb_rag.infrastructure.llm.openai_chat_adapter import OpenAIChatAdapter

    if name == "openai":
        return OpenAIChatAdapter(
            name="openai",
            model=settings.openai_chat_model,
            api_key=settings.openai_api_key or "EMPTY",
            base_url=settings.openai_base_url or None,
            timeout_s=settings.generate_timeout_s,
        )
    if name == "vllm":
        return OpenAIChatAdapter(
            name="vllm",
            model=settings.vllm_model,
            api_key=settings.vllm_api_key,
            base_url=settings.vllm_base_url,
            timeout_s=settings.generate_timeout_s,
        )
    raise ConfigError(f"unknown chat provider {name!r}")


def build_chat_registry(settings: AppSettings) -> ChatProviderRegistry:
    return ChatProviderRegistry(
        {name: build_chat_model(name, settings) for name in settings.llm_providers},
        default=settings.llm_default_provider,
    )


def build_clock() -> ClockPort:
    """Build clock adapter for time operations.

    Returns:
        SystemClock providing real UTC time for production use.

    Note:
        Tests should inject a fixed clock instead.
    """
    return SystemClock()


def build_telemetry(settings: AppSettings) -> TelemetryPort:
    """Build telemetry adapter for metrics and tracing.

    Returns:
        OpenTelemetryAdapter when TELEMETRY_ENABLED (no-op if the SDK is missing),
        NoopTelemetry otherwise.
    """
    if not settings.telemetry_enabled:
        return NoopTelemetry()
    from kb_rag.infrastructure.telemetry.otel_adapter import OpenTelemetryAdapter, OtelConfig

    return OpenTelemetryAdapter(
        OtelConfig(
            service_name="kb-rag",
            exporter_endpoint=settings.otlp_endpoint or None,
            deployment=settings.telemetry_environment,
        )
    )


def build_service(
    settings: AppSettings | None = None,
    *,
    embedding: EmbeddingPort | None = None,
    index: VectorIndexPort | None = None,
    providers: ChatProviderRegistry | None = None,
    clock: ClockPort | None = None,
    telemetry: TelemetryPort | None = None,
) -> KnowledgeBaseService:
    """Wire the whole pipeline. Keyword overrides replace individual adapters (tests, demos)."""
    settings = settings or AppSettings()
    settings.validate()

    embedding = embedding or build_embedding(settings)
    index = index or build_vector_index(settings)
    providers = providers or build_chat_registry(settings)
    clock = clock or build_clock()
    telemetry = telemetry or build_telemetry(settings)

    ingest_uc = IngestDocuments(
        embedding=embedding,
        index=index,
        clock=clock,
        index_name=settings.index_name,
        chunking=settings.chunking,
        embedding_batch_size=settings.embedding_batch_size,
        embedding_concurrency=settings.embedding_concurrency,
        insert_batch_size=settings.insert_batch_size,
        insert_concurrency=settings.insert_concurrency,
        embed_timeout_s=settings.embed_timeout_s,
        index_timeout_s=settings.index_timeout_s,
        refresh_after_write=settings.refresh_after_write,
        telemetry=telemetry,
    )
    retriever = RetrieveContext(
        embedding=embedding,
        index=index,
        index_name=settings.index_name,
        embed_timeout_s=settings.embed_timeout_s,
        search_timeout_s=settings.search_timeout_s,
        max_context_chars=settings.max_context_chars or None,
        telemetry=telemetry,
    )
    answerer = AnswerQuestion(
        retriever=retriever,
        providers=providers,
        clock=clock,
        temperature=settings.llm_temperature,
        max_tokens=settings.llm_max_tokens,
        generate_timeout_s=settings.generate_timeout_s,
        telemetry=telemetry,
    )
    return KnowledgeBaseService(
        index=index,
        embedding=embedding,
        ingest_uc=ingest_uc,
        retriever=retriever,
        answerer=answerer,
        providers=providers,
        clock=clock,
        index_name=settings.index_name,
        dimension=settings.vector_dimension,
        default_k=settings.default_k,
        index_timeout_s=settings.index_timeout_s,
    )

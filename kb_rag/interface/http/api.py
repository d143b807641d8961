"""HTTP API for chat, context lookup, ingestion and index admin.

Pure delegation to KnowledgeBaseService; no business logic here.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator, Callable
from contextlib import aclosing, asynccontextmanager
from typing import Any

try:
    from fastapi import FastAPI, HTTPException, Request
    from fastapi.exceptions import RequestValidationError
    from fastapi.responses import JSONResponse, StreamingResponse
    from pydantic import BaseModel, Field
except ImportError as err:
    raise ImportError("FastAPI not installed. Install with: pip install 'kb-rag[http]'") from err

from kb_rag.application.dto.ingest_dto import IngestDocumentDTO
from kb_rag.application.dto.query_dto import QueryOptions
from kb_rag.application.service import KnowledgeBaseService
from kb_rag.domain.errors import (
    ConfigError,
    DomainError,
    RequestTimeoutError,
    ValidationError,
)
from kb_rag.domain.models import AnswerResult, StreamEvent

logger = logging.getLogger(__name__)


# Pydantic models for request/response validation
class ChatRequestModel(BaseModel):
    """Request model for /v1/chat and /v1/chat/stream."""

    message: str = Field(min_length=1)
    provider: str | None = None
    max_context_docs: int | None = Field(default=None, ge=0, le=50)


class ChatResponseModel(BaseModel):
    success: bool = True
    response: str
    sources: list[str]
    relevance_scores: list[dict[str, Any]]
    metadata: dict[str, Any]


class ContextResponseModel(BaseModel):
    success: bool = True
    context: str
    sources: list[str]
    document_count: int


class IngestDocumentModel(BaseModel):
    content: str = Field(min_length=1)
    title: str | None = None
    source: str | None = None
    url: str | None = None
    id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class IngestRequestModel(BaseModel):
    documents: list[IngestDocumentModel] = Field(min_length=1)


class IngestResponseModel(BaseModel):
    success: bool
    documents_ingested: int
    chunks_created: int
    chunks_indexed: int
    failed: list[dict[str, Any]] = Field(default_factory=list)


class SearchRequestModel(BaseModel):
    query: str = Field(min_length=1)
    max_results: int | None = Field(default=None, ge=0, le=100)


class ProbeRequestModel(BaseModel):
    provider: str | None = None


def status_for(ex: DomainError) -> int:
    if isinstance(ex, (ValidationError, ConfigError)):
        return 400
    if isinstance(ex, RequestTimeoutError):
        return 504
    return 502


def sse_line(event: StreamEvent) -> str:
    return f"data: {json.dumps(event.to_dict(), default=str)}\n\n"


def answer_payload(result: AnswerResult) -> ChatResponseModel:
    return ChatResponseModel(
        response=result.response_text,
        sources=result.sources_used,
        relevance_scores=[{"source": s.source, "score": s.score} for s in result.relevance_scores],
        metadata={
            "provider": result.provider,
            "timestamp": result.timestamp.isoformat(),
            "documents_used": result.documents_used,
        },
    )


def create_app(service_factory: Callable[[], KnowledgeBaseService] | None = None) -> FastAPI:
    """Build the FastAPI app. `service_factory` defaults to the composition root."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if service_factory is None:
            from kb_rag.config.composition import build_service
            from kb_rag.config.logging_setup import configure_logging
            from kb_rag.config.settings import AppSettings

            settings = AppSettings()
            configure_logging(settings.log_level, settings.log_format)
            service = build_service(settings)
        else:
            service = service_factory()
        await service.startup()
        app.state.service = service
        try:
            yield
        finally:
            await service.aclose()

    app = FastAPI(title="Knowledge Base RAG API", version="1.0.0", lifespan=lifespan)

    def svc(request: Request) -> KnowledgeBaseService:
        service = getattr(request.app.state, "service", None)
        if service is None:
            raise HTTPException(status_code=503, detail="Service not initialized")
        return service

    @app.exception_handler(DomainError)
    async def domain_error_handler(request: Request, ex: DomainError) -> JSONResponse:
        status = status_for(ex)
        if status >= 500:
            logger.error(
                "%s %s failed: %s: %s", request.method, request.url.path, type(ex).__name__, ex
            )
        return JSONResponse(
            status_code=status,
            content={"success": False, "error": type(ex).__name__, "message": str(ex)},
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(
        request: Request, ex: RequestValidationError
    ) -> JSONResponse:
        return JSONResponse(
            status_code=400,
            content={"success": False, "error": "ValidationError", "message": str(ex.errors())},
        )

    @app.post("/v1/chat", response_model=ChatResponseModel)
    async def chat(req: ChatRequestModel, request: Request) -> ChatResponseModel:
        """Blocking answer with sources and relevance scores."""
        opts = QueryOptions(provider=req.provider, max_context_docs=req.max_context_docs)
        result = await svc(request).answer(req.message, opts)
        assert isinstance(result, AnswerResult)
        return answer_payload(result)

    @app.post("/v1/chat/stream")
    async def chat_stream(req: ChatRequestModel, request: Request) -> StreamingResponse:
        """Server-Sent Events: metadata, content*, then done or error."""
        opts = QueryOptions(
            provider=req.provider, max_context_docs=req.max_context_docs, streaming=True
        )
        # Unknown providers fail here, before the response starts.
        events = await svc(request).answer(req.message, opts)
        assert not isinstance(events, AnswerResult)

        async def body() -> AsyncIterator[str]:
            async with aclosing(events) as stream:
                async for event in stream:
                    yield sse_line(event)

        return StreamingResponse(
            body(),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
        )

    @app.get("/v1/chat/context", response_model=ContextResponseModel)
    async def chat_context(
        question: str, request: Request, max_docs: int | None = None
    ) -> ContextResponseModel:
        ctx = await svc(request).get_context(question, max_docs)
        return ContextResponseModel(
            context=ctx.context, sources=ctx.sources, document_count=ctx.document_count
        )

    @app.get("/v1/chat/providers")
    async def providers(request: Request) -> dict[str, Any]:
        return {"success": True, **svc(request).list_providers()}

    @app.post("/v1/chat/test-provider")
    async def test_provider(req: ProbeRequestModel, request: Request) -> dict[str, Any]:
        probe = await svc(request).probe_provider(req.provider)
        return {
            "success": probe.success,
            "provider": probe.provider,
            "response": probe.response,
            "error": probe.error,
            "latency_ms": probe.latency_ms,
        }

    @app.post("/v1/ingest", response_model=IngestResponseModel)
    async def ingest(
        req: IngestRequestModel, request: Request, reset: bool = False
    ) -> IngestResponseModel:
        """Ingest documents; `?reset=true` drops and recreates the index first."""
        docs = [
            IngestDocumentDTO(
                text=d.content,
                source=d.source,
                title=d.title,
                url=d.url,
                metadata=d.metadata,
                id=d.id,
            )
            for d in req.documents
        ]
        report = await svc(request).ingest(docs, reset=reset)
        return IngestResponseModel(
            success=report.ok,
            documents_ingested=report.documents_ingested,
            chunks_created=report.chunks_created,
            chunks_indexed=report.chunks_indexed,
            failed=[
                {"record_id": f.record.record_id, "reason": f.reason, "status": f.status}
                for f in report.failures
            ],
        )

    @app.get("/v1/admin/index")
    async def index_info(request: Request) -> dict[str, Any]:
        stats = await svc(request).index_stats()
        return {
            "success": True,
            "index_name": stats.index_name,
            "record_count": stats.record_count,
            "size_bytes": stats.size_bytes,
        }

    @app.delete("/v1/admin/index")
    async def delete_index(request: Request) -> dict[str, Any]:
        await svc(request).delete_index()
        return {"success": True, "message": "Index deleted"}

    @app.post("/v1/admin/search")
    async def search(req: SearchRequestModel, request: Request) -> dict[str, Any]:
        results = await svc(request).search(req.query, req.max_results)
        return {
            "success": True,
            "query": req.query,
            "results": [
                {"content": r.text, "metadata": dict(r.metadata), "score": r.score}
                for r in results
            ],
        }

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "healthy", "service": "kb-rag"}

    return app


# ASGI entry point: uvicorn kb_rag.interface.http.api:app
app = create_app()

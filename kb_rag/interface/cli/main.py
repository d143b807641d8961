"""Command line interface for the knowledge base.

Thin layer: parse arguments, call the KnowledgeBaseService, format output.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from collections.abc import Awaitable, Callable
from typing import Any

from kb_rag.application.dto.ingest_dto import IngestDocumentDTO
from kb_rag.application.dto.query_dto import QueryOptions
from kb_rag.application.service import KnowledgeBaseService
from kb_rag.config.composition import build_service
from kb_rag.config.logging_setup import configure_logging
from kb_rag.config.settings import AppSettings
from kb_rag.domain.errors import DomainError
from kb_rag.domain.models import AnswerResult, StreamEvent

Command = Callable[[KnowledgeBaseService, argparse.Namespace], Awaitable[int]]


def load_documents(path: str) -> list[IngestDocumentDTO]:
    """Read a JSON list of documents: {text|content, source, title, url, metadata, id}."""
    with open(path, encoding="utf-8") as f:
        raw = json.load(f)
    if isinstance(raw, dict):
        raw = raw.get("documents", [raw])
    return [
        IngestDocumentDTO(
            text=d.get("text") or d.get("content") or "",
            source=d.get("source"),
            title=d.get("title"),
            url=d.get("url"),
            metadata=dict(d.get("metadata") or {}),
            id=d.get("id"),
        )
        for d in raw
    ]


async def cmd_ingest(service: KnowledgeBaseService, args: argparse.Namespace) -> int:
    docs = load_documents(args.file)
    print(f"Loaded {len(docs)} documents from {args.file}")
    if args.reset:
        print(f"Resetting index '{service.index_name}'")
    report = await service.ingest(docs, reset=args.reset)
    print(
        f"✓ Ingested {report.documents_ingested} documents "
        f"({report.chunks_created} chunks, {report.chunks_indexed} indexed)"
    )
    if report.failures:
        print(f"✗ {len(report.failures)} chunk(s) rejected by the index:")
        for f in report.failures:
            print(f"  - {f.record.record_id}: {f.reason}")
        return 1
    return 0


def _print_answer(result: AnswerResult) -> None:
    print("\n" + "=" * 80)
    print("ANSWER:")
    print("=" * 80)
    print(result.response_text)
    print("\n" + "=" * 80)
    print(f"SOURCES ({result.provider}, {result.documents_used} documents):")
    print("=" * 80)
    for i, s in enumerate(result.relevance_scores, 1):
        print(f"[{i}] {s.source} (relevance={s.score:.3f})")


async def _print_stream(events: Any) -> int:
    status = 0
    async for event in events:
        ev: StreamEvent = event
        if ev.type == "metadata":
            sources = ", ".join(ev.data.get("sources", [])) or "none"
            print(f"[{ev.data.get('provider')}] sources: {sources}\n")
        elif ev.type == "content":
            print(ev.data["content"], end="", flush=True)
        elif ev.type == "done":
            print(f"\n\n✓ done in {ev.data['elapsed_ms']:.0f} ms")
        elif ev.type == "error":
            print(f"\n✗ {ev.data['error_type']}: {ev.data['message']}")
            status = 1
    return status


async def cmd_ask(service: KnowledgeBaseService, args: argparse.Namespace) -> int:
    opts = QueryOptions(provider=args.provider, max_context_docs=args.k, streaming=args.stream)
    result = await service.answer(args.question, opts)
    if isinstance(result, AnswerResult):
        _print_answer(result)
        return 0
    return await _print_stream(result)


async def cmd_context(service: KnowledgeBaseService, args: argparse.Namespace) -> int:
    ctx = await service.get_context(args.question, args.k)
    print(ctx.context)
    print(f"\n✓ {ctx.document_count} documents from {len(ctx.sources)} sources")
    return 0


async def cmd_search(service: KnowledgeBaseService, args: argparse.Namespace) -> int:
    results = await service.search(args.query, args.k)
    if not results:
        print("No results.")
    for i, r in enumerate(results, 1):
        title = r.metadata.get("title") or ""
        print(f"[{i}] {r.source or 'unknown'} {title} (relevance={r.score:.3f})")
        print(f"    {r.text[:200]!r}")
    return 0


async def cmd_stats(service: KnowledgeBaseService, args: argparse.Namespace) -> int:
    stats = await service.index_stats()
    print(
        f"✓ Index '{stats.index_name}': {stats.record_count} records, {stats.size_bytes} bytes"
    )
    return 0


async def cmd_delete_index(service: KnowledgeBaseService, args: argparse.Namespace) -> int:
    if not args.yes:
        print("✗ Refusing to delete without --yes")
        return 1
    await service.delete_index()
    print(f"✓ Deleted index '{service.index_name}'")
    return 0


async def cmd_providers(service: KnowledgeBaseService, args: argparse.Namespace) -> int:
    info = service.list_providers()
    for name in info["providers"]:
        marker = " (default)" if name == info["default"] else ""
        print(f"- {name}{marker}")
    return 0


async def cmd_probe(service: KnowledgeBaseService, args: argparse.Namespace) -> int:
    probe = await service.probe_provider(args.provider)
    if probe.success:
        print(f"✓ Provider '{probe.provider}' responded in {probe.latency_ms:.0f} ms")
        return 0
    print(f"✗ Provider '{probe.provider}' failed: {probe.error}")
    return 1


COMMANDS: dict[str, Command] = {
    "ingest": cmd_ingest,
    "ask": cmd_ask,
    "context": cmd_context,
    "search": cmd_search,
    "stats": cmd_stats,
    "delete-index": cmd_delete_index,
    "providers": cmd_providers,
    "probe": cmd_probe,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="kb-rag",
        description="Ask questions about a technical knowledge base (RAG)",
    )
    subparsers = parser.add_subparsers(dest="command", help="Commands")

    p_ingest = subparsers.add_parser("ingest", help="Chunk, embed and index documents")
    p_ingest.add_argument("--file", required=True, help="JSON file with documents")
    p_ingest.add_argument(
        "--reset", action="store_true", help="Drop and recreate the index before ingesting"
    )

    p_ask = subparsers.add_parser("ask", help="Answer a question")
    p_ask.add_argument("--question", "-q", required=True)
    p_ask.add_argument("--k", type=int, default=None, help="Context documents (default: DEFAULT_K)")
    p_ask.add_argument("--provider", default=None, help="Chat provider (default: configured)")
    p_ask.add_argument("--stream", action="store_true", help="Stream the answer")

    p_ctx = subparsers.add_parser("context", help="Show the context block for a question")
    p_ctx.add_argument("--question", "-q", required=True)
    p_ctx.add_argument("--k", type=int, default=None)

    p_search = subparsers.add_parser("search", help="Similarity search without generation")
    p_search.add_argument("--query", required=True)
    p_search.add_argument("--k", type=int, default=None)

    subparsers.add_parser("stats", help="Index statistics")

    p_delete = subparsers.add_parser("delete-index", help="Delete the index and all its records")
    p_delete.add_argument("--yes", action="store_true", help="Confirm deletion")

    subparsers.add_parser("providers", help="List chat providers")

    p_probe = subparsers.add_parser("probe", help="Send a test message to a provider")
    p_probe.add_argument("--provider", default=None)

    return parser


async def _run(settings: AppSettings, args: argparse.Namespace) -> int:
    service = build_service(settings)
    try:
        return await COMMANDS[args.command](service, args)
    finally:
        await service.aclose()


def main(argv: list[str] | None = None) -> int:
    """Entry point of the `kb-rag` console script. Returns the exit code."""
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 1

    settings = AppSettings()
    configure_logging(settings.log_level, settings.log_format)
    try:
        return asyncio.run(_run(settings, args))
    except DomainError as ex:
        print(f"✗ {type(ex).__name__}: {ex}")
        return 1
    except (OSError, ValueError) as ex:
        print(f"✗ Error: {ex}")
        return 1


if __name__ == "__main__":
    sys.exit(main())

"""Application ports package.

Re-exports the ports the use cases depend on.
"""

from kb_rag.application.ports.clock_port import ClockPort
from kb_rag.application.ports.embedding_port import EmbeddingPort
from kb_rag.application.ports.llm_port import ChatMessage, ChatModelPort, LLMResponse
from kb_rag.application.ports.telemetry_port import NoopTelemetry, TelemetryPort
from kb_rag.application.ports.vector_index_port import VectorIndexPort

__all__ = [
    "ChatMessage",
    "ChatModelPort",
    "ClockPort",
    "EmbeddingPort",
    "LLMResponse",
    "NoopTelemetry",
    "TelemetryPort",
    "VectorIndexPort",
]

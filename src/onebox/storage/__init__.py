"""Document sinks receiving normalized messages."""

from ..core.config import StorageSettings
from ..core.interfaces import DocumentStore
from .documents import message_to_document
from .memory import InMemoryDocumentSink
from .sqlite import SqliteDocumentSink


def build_document_sink(settings: StorageSettings) -> DocumentStore:
    """Return the sink selected by ``settings.backend``."""
    if settings.backend == "sqlite":
        return SqliteDocumentSink(settings)
    return InMemoryDocumentSink()


__all__ = [
    "InMemoryDocumentSink",
    "SqliteDocumentSink",
    "build_document_sink",
    "message_to_document",
]

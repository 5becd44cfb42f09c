"""Process-local document sink."""

from __future__ import annotations

import logging
from typing import Any

from ..core.datetime_utils import serialize_datetime, utc_now
from ..core.errors import SinkError
from ..core.interfaces import DocumentStore
from ..core.models import ClassificationResult, DocumentPage, NormalizedMessage
from .documents import message_to_document

LOGGER = logging.getLogger(__name__)


class InMemoryDocumentSink(DocumentStore):
    """Keep indexed documents in a dict keyed by composite id."""

    def __init__(self) -> None:
        self._documents: dict[str, dict[str, Any]] = {}

    def __len__(self) -> int:
        return len(self._documents)

    def __contains__(self, composite_id: object) -> bool:
        return composite_id in self._documents

    async def submit(self, message: NormalizedMessage) -> None:
        document = message_to_document(message)
        previous = self._documents.get(message.composite_id)
        if previous is not None:
            LOGGER.debug("Replacing indexed document %s", message.composite_id)
            for key in ("ai_category", "ai_confidence", "ai_reasoning", "classified_at"):
                if key in previous:
                    document[key] = previous[key]
        self._documents[message.composite_id] = document

    async def update_classification(
        self, composite_id: str, result: ClassificationResult
    ) -> None:
        document = self._documents.get(composite_id)
        if document is None:
            raise SinkError(f"Document {composite_id} has not been indexed")
        document.update(
            ai_category=result.category,
            ai_confidence=result.confidence,
            ai_reasoning=result.reasoning,
            classified_at=serialize_datetime(utc_now()),
        )

    def get_document(self, composite_id: str) -> dict[str, Any] | None:
        document = self._documents.get(composite_id)
        return dict(document) if document is not None else None

    # pylint: disable=too-many-arguments
    def search_documents(
        self,
        *,
        query: str | None = None,
        account_id: str | None = None,
        category: str | None = None,
        offset: int = 0,
        limit: int = 50,
    ) -> DocumentPage:
        """Match ``query`` case-insensitively against subject, body and addresses."""
        needle = query.strip().lower() if query else ""
        matches = [
            document
            for document in self._documents.values()
            if (account_id is None or document["account_id"] == account_id)
            and (category is None or document.get("ai_category") == category)
            and (not needle or needle in _searchable_text(document))
        ]
        matches.sort(key=lambda item: item["date"] or "", reverse=True)
        hits = [dict(document) for document in matches[offset : offset + limit]]
        return DocumentPage(hits=hits, total=len(matches))

    def close(self) -> None:
        self._documents.clear()


def _searchable_text(document: dict[str, Any]) -> str:
    parts = [document["subject"], document["body"], document["from"], *document["to"]]
    return " ".join(parts).lower()


__all__ = ["InMemoryDocumentSink"]

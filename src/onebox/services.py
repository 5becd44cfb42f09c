"""Wiring of sinks, classifiers and the sync manager from settings."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from .core.config import AppSettings
from .core.interfaces import ConnectionFactory, DocumentStore, EmailClassifier
from .intelligence import (
    ClassificationPipeline,
    KeywordEmailClassifier,
    LlmEmailClassifier,
    OllamaClient,
)
from .storage import build_document_sink
from .sync import SyncManager, SyncPolicy
from .transport import ImapConnection, WebhookNotifier

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class OneboxServices:
    """Collaborators shared by the CLI and the web app."""

    settings: AppSettings
    sink: DocumentStore
    pipeline: ClassificationPipeline
    manager: SyncManager

    async def close(self) -> None:
        """Stop every session, then release the document store."""
        await self.manager.stop_all()
        self.sink.close()


def build_classifier(settings: AppSettings) -> EmailClassifier:
    """Return the LLM classifier, or keywords only when the LLM is disabled."""
    keywords = KeywordEmailClassifier()
    if not settings.llm.enabled:
        LOGGER.info("LLM disabled; classifying with keyword rules")
        return keywords
    fallback = keywords if settings.llm.fallback_enabled else None
    return LlmEmailClassifier(OllamaClient(settings.llm), fallback=fallback)


def build_services(
    settings: AppSettings,
    *,
    connection_factory: ConnectionFactory = ImapConnection,
    sink: DocumentStore | None = None,
) -> OneboxServices:
    """Assemble the object graph described by ``settings``."""
    document_sink = sink if sink is not None else build_document_sink(settings.storage)
    notifier = WebhookNotifier(settings.notifications)
    if not notifier.configured:
        LOGGER.info("No notification targets configured; alerts disabled")
    pipeline = ClassificationPipeline(
        build_classifier(settings), document_sink, notifier=notifier
    )
    manager = SyncManager(
        document_sink,
        pipeline=pipeline,
        connection_factory=connection_factory,
        policy=SyncPolicy.from_settings(settings.sync),
    )
    return OneboxServices(
        settings=settings, sink=document_sink, pipeline=pipeline, manager=manager
    )


__all__ = ["OneboxServices", "build_classifier", "build_services"]

"""Classification of indexed messages."""

from __future__ import annotations

import logging
from collections.abc import Sequence

from ..core.errors import ClassificationError, SinkError
from ..core.interfaces import (
    ClassificationPipelineProtocol,
    DocumentSink,
    EmailClassifier,
    Notifier,
)
from ..core.models import ClassificationResult, ClassifiedMessage

LOGGER = logging.getLogger(__name__)


class ClassificationPipeline(ClassificationPipelineProtocol):
    """Classify a message, record the category and alert on wanted categories."""

    def __init__(
        self,
        classifier: EmailClassifier,
        sink: DocumentSink,
        notifier: Notifier | None = None,
    ) -> None:
        self._classifier = classifier
        self._sink = sink
        self._notifier = notifier

    # pylint: disable=too-many-arguments
    async def classify(
        self,
        composite_id: str,
        account_id: str,
        subject: str,
        body: str,
        sender: str,
        recipients: Sequence[str],
    ) -> ClassificationResult:
        try:
            result = await self._classifier.classify_content(
                subject=subject, body=body, sender=sender, recipients=recipients
            )
        except ClassificationError:
            raise
        except Exception as exc:  # pylint: disable=broad-except
            raise ClassificationError(f"Classifier failed for {composite_id}") from exc

        try:
            await self._sink.update_classification(composite_id, result)
        except SinkError as exc:
            raise ClassificationError(
                f"Could not record classification for {composite_id}"
            ) from exc

        LOGGER.info(
            "Classified %s for account %s as %s (confidence %.2f)",
            composite_id,
            account_id,
            result.category,
            result.confidence,
        )

        if self._notifier is not None and self._notifier.wants(result.category):
            await _notify(
                self._notifier,
                ClassifiedMessage(
                    composite_id=composite_id,
                    account_id=account_id,
                    subject=subject,
                    sender=sender,
                    recipients=tuple(recipients),
                    body=body,
                    result=result,
                ),
            )
        return result


async def _notify(notifier: Notifier, message: ClassifiedMessage) -> None:
    """Send an alert; delivery problems never fail the classification."""
    try:
        outcome = await notifier.notify(message)
    except Exception:  # pylint: disable=broad-except
        LOGGER.exception("Notification for %s crashed", message.composite_id)
        return
    if not outcome.delivered:
        LOGGER.warning(
            "Notification for %s was not delivered: %s",
            message.composite_id,
            "; ".join(outcome.errors),
        )


__all__ = ["ClassificationPipeline"]

"""Slack and generic webhook alerts for classified messages."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

import httpx

from ..core.config import NotificationSettings
from ..core.datetime_utils import serialize_datetime, utc_now
from ..core.errors import NotificationError
from ..core.models import ClassifiedMessage, NotificationOutcome

LOGGER = logging.getLogger(__name__)

PREVIEW_LENGTH = 500
_RETRYABLE_STATUS = frozenset({408, 429})


@dataclass(slots=True)
class WebhookNotifier:
    """Post alerts to a Slack incoming webhook and a generic JSON webhook."""

    settings: NotificationSettings
    transport: httpx.AsyncBaseTransport | None = None

    @property
    def configured(self) -> bool:
        return bool(self.settings.slack_webhook_url or self.settings.webhook_url)

    def wants(self, category: str) -> bool:
        """Return True for the alert category when a target is configured."""
        if not self.configured:
            return False
        wanted = self.settings.notify_category.strip().lower()
        return category.strip().lower() == wanted

    async def notify(self, message: ClassifiedMessage) -> NotificationOutcome:
        """Send ``message`` to every configured target concurrently.

        A target failing after its retries is reported in the outcome, not raised.
        """
        if not self.configured:
            return NotificationOutcome(errors=("no notification targets configured",))

        targets: list[tuple[str, str, dict[str, Any]]] = []
        if self.settings.slack_webhook_url:
            targets.append(
                ("slack", self.settings.slack_webhook_url, build_slack_message(message))
            )
        if self.settings.webhook_url:
            targets.append(
                ("webhook", self.settings.webhook_url, build_webhook_payload(message))
            )

        async with httpx.AsyncClient(
            timeout=self.settings.timeout_seconds, transport=self.transport
        ) as client:
            results = await asyncio.gather(
                *(self._deliver(client, url, payload) for _, url, payload in targets),
                return_exceptions=True,
            )

        sent: dict[str, bool] = {}
        errors: list[str] = []
        for (name, _, _), result in zip(targets, results):
            if isinstance(result, NotificationError):
                errors.append(f"{name}: {result}")
                sent[name] = False
            elif isinstance(result, BaseException):
                raise result
            else:
                sent[name] = True

        outcome = NotificationOutcome(
            slack_sent=sent.get("slack", False),
            webhook_sent=sent.get("webhook", False),
            errors=tuple(errors),
        )
        LOGGER.info(
            "Notification for %s: slack=%s webhook=%s",
            message.composite_id,
            outcome.slack_sent,
            outcome.webhook_sent,
        )
        return outcome

    async def _deliver(
        self, client: httpx.AsyncClient, url: str, payload: dict[str, Any]
    ) -> None:
        max_attempts = self.settings.max_retries
        last_error: Exception | None = None
        for attempt in range(1, max_attempts + 1):
            try:
                response = await client.post(url, json=payload)
                response.raise_for_status()
                return
            except httpx.HTTPStatusError as exc:
                if not _is_retryable_status(exc.response.status_code):
                    raise NotificationError(
                        f"rejected with HTTP {exc.response.status_code}"
                    ) from exc
                last_error = exc
            except httpx.TransportError as exc:
                last_error = exc

            if attempt < max_attempts:
                delay = self.backoff_delay(attempt)
                LOGGER.info(
                    "Webhook call failed (attempt %s/%s): %s; retrying in %.1fs",
                    attempt,
                    max_attempts,
                    last_error,
                    delay,
                )
                await asyncio.sleep(delay)

        raise NotificationError(
            f"failed after {max_attempts} attempts: {last_error}"
        ) from last_error

    def backoff_delay(self, attempt: int) -> float:
        """Delay after failed ``attempt`` (1-based), capped by the settings."""
        delay = self.settings.initial_retry_delay_seconds * 2 ** (attempt - 1)
        return min(delay, self.settings.max_retry_delay_seconds)


def build_slack_message(message: ClassifiedMessage) -> dict[str, Any]:
    """Return Slack Block Kit content announcing ``message``."""
    result = message.result
    preview = _preview(message.body)
    return {
        "text": f"New {result.category} email: {message.subject}",
        "blocks": [
            {
                "type": "header",
                "text": {"type": "plain_text", "text": f"New {result.category} Email"},
            },
            {
                "type": "section",
                "fields": [
                    {"type": "mrkdwn", "text": f"*From:*\n{message.sender}"},
                    {"type": "mrkdwn", "text": f"*Subject:*\n{message.subject}"},
                    {
                        "type": "mrkdwn",
                        "text": f"*Confidence:*\n{result.confidence * 100:.1f}%",
                    },
                ],
            },
            {
                "type": "section",
                "text": {"type": "mrkdwn", "text": f"*AI Reasoning:*\n{result.reasoning}"},
            },
            {
                "type": "section",
                "text": {"type": "mrkdwn", "text": f"*Preview:*\n{preview}"},
            },
            {
                "type": "context",
                "elements": [
                    {
                        "type": "mrkdwn",
                        "text": (
                            f"Email ID: {message.composite_id} | "
                            f"Account: {message.account_id}"
                        ),
                    }
                ],
            },
        ],
    }


def build_webhook_payload(message: ClassifiedMessage) -> dict[str, Any]:
    """Return the JSON body posted to the generic webhook."""
    return {
        "emailId": message.composite_id,
        "accountId": message.account_id,
        "subject": message.subject,
        "from": message.sender,
        "to": list(message.recipients),
        "body": message.body,
        "aiCategory": message.result.category,
        "aiConfidence": message.result.confidence,
        "aiReasoning": message.result.reasoning,
        "timestamp": serialize_datetime(utc_now()),
    }


def _preview(body: str) -> str:
    if len(body) <= PREVIEW_LENGTH:
        return body
    return body[:PREVIEW_LENGTH] + "..."


def _is_retryable_status(status_code: int) -> bool:
    return status_code in _RETRYABLE_STATUS or status_code >= 500


__all__ = ["WebhookNotifier", "build_slack_message", "build_webhook_payload"]

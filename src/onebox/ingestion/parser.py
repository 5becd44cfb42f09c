"""Utilities for normalizing raw RFC822 messages into message records."""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime
from email import policy
from email.message import EmailMessage
from email.parser import BytesParser
from email.utils import getaddresses, parsedate_to_datetime

from ..core.datetime_utils import ensure_utc, utc_now
from ..core.errors import NormalizationError
from ..core.models import AttachmentMeta, NormalizedMessage, RawMessage

DEFAULT_SUBJECT = "No Subject"
DEFAULT_FILENAME = "unknown"
DEFAULT_CONTENT_TYPE = "application/octet-stream"


class MessageNormalizer:
    """Convert raw email payloads into immutable normalized records."""

    def __init__(self) -> None:
        """Prepare internal parser instance."""
        self._parser = BytesParser(policy=policy.default)

    def normalize(
        self, account_id: str, message: RawMessage, folder: str
    ) -> NormalizedMessage:
        """Parse ``message`` into a :class:`NormalizedMessage`.

        Raises:
            NormalizationError: The payload is empty or cannot be parsed.
        """
        if not message.raw.strip():
            raise NormalizationError(
                f"Empty payload for sequence number {message.sequence_number}"
            )
        try:
            return self._build_record(account_id, message, folder)
        except (AttributeError, IndexError, LookupError, TypeError, ValueError) as exc:
            raise NormalizationError(
                f"Could not parse message {message.sequence_number} "
                f"for account {account_id}"
            ) from exc

    def _build_record(
        self, account_id: str, message: RawMessage, folder: str
    ) -> NormalizedMessage:
        parsed = self._parser.parsebytes(message.raw)
        message_id = (parsed.get("Message-ID") or "").strip()
        body_text, body_html = _extract_bodies(parsed)

        return NormalizedMessage(
            composite_id=build_composite_id(
                account_id, message_id, message.sequence_number
            ),
            account_id=account_id,
            message_id=message_id,
            subject=parsed.get("Subject") or DEFAULT_SUBJECT,
            sender=_take_first_address(parsed.get("From")) or "",
            to=_collect_recipients(parsed, "To") or (),
            cc=_collect_recipients(parsed, "Cc"),
            bcc=_collect_recipients(parsed, "Bcc"),
            timestamp=_try_parse_datetime(parsed.get("Date")) or utc_now(),
            plain_body=body_text or "",
            html_body=body_html,
            attachments=tuple(_collect_attachments(parsed)),
            sequence_number=message.sequence_number,
            folder=folder,
            indexed_at=utc_now(),
        )


def build_composite_id(account_id: str, message_id: str, sequence_number: int) -> str:
    """Return the downstream dedup key for a message."""
    return f"{account_id}-{message_id or sequence_number}"


def _extract_addresses(headers: Iterable[str]) -> Iterable[str]:
    for _, email_address in getaddresses([str(header) for header in headers]):
        cleaned = email_address.strip()
        if cleaned:
            yield cleaned


def _collect_recipients(message: EmailMessage, header: str) -> tuple[str, ...] | None:
    """Return de-duplicated addresses for ``header`` or ``None`` when empty."""
    unique = dict.fromkeys(_extract_addresses(message.get_all(header, [])))
    return tuple(unique) if unique else None


def _take_first_address(header_value: str | None) -> str | None:
    if header_value is None:
        return None
    addresses = list(_extract_addresses([header_value]))
    return addresses[0] if addresses else None


def _collapse_chunks(chunks: Iterable[str], separator: str) -> str | None:
    filtered_chunks = [chunk for chunk in chunks if chunk]
    if not filtered_chunks:
        return None
    return separator.join(filtered_chunks)


def _extract_bodies(message: EmailMessage) -> tuple[str | None, str | None]:
    plain_chunks: list[str] = []
    html_chunks: list[str] = []

    for part in message.walk():
        if part.is_multipart():
            continue
        if part.get_content_disposition() == "attachment":
            continue
        content_type = part.get_content_type()
        if content_type not in ("text/plain", "text/html"):
            continue
        try:
            content_obj = part.get_content()
        except LookupError:
            continue
        if not isinstance(content_obj, str):
            continue
        content = content_obj.strip()
        if content_type == "text/plain":
            plain_chunks.append(content)
        else:
            html_chunks.append(content)

    text = _collapse_chunks(plain_chunks, "\n\n")
    html = _collapse_chunks(html_chunks, "\n")
    return text, html


def _collect_attachments(message: EmailMessage) -> Iterable[AttachmentMeta]:
    for part in message.iter_attachments():
        payload = part.get_payload(decode=True) or b""
        yield AttachmentMeta(
            filename=part.get_filename() or DEFAULT_FILENAME,
            content_type=part.get_content_type() or DEFAULT_CONTENT_TYPE,
            size=len(payload),
        )


def _try_parse_datetime(header_value: str | None) -> datetime | None:
    if header_value is None:
        return None
    try:
        return ensure_utc(parsedate_to_datetime(str(header_value)))
    except (TypeError, ValueError):
        return None


__all__ = ["MessageNormalizer", "build_composite_id"]

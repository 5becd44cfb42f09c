"""Conversion of normalized messages into indexable documents."""

from __future__ import annotations

from typing import Any

from ..core.datetime_utils import serialize_datetime
from ..core.models import NormalizedMessage


def message_to_document(message: NormalizedMessage) -> dict[str, Any]:
    """Return the JSON-compatible document indexed for ``message``.

    ``cc`` and ``bcc`` keys are only present when the message carried
    addresses for them.
    """
    document: dict[str, Any] = {
        "id": message.composite_id,
        "account_id": message.account_id,
        "message_id": message.message_id,
        "subject": message.subject,
        "from": message.sender,
        "to": list(message.to),
        "date": serialize_datetime(message.timestamp),
        "body": message.plain_body,
        "html_body": message.html_body,
        "attachments": [
            {
                "filename": attachment.filename,
                "content_type": attachment.content_type,
                "size": attachment.size,
            }
            for attachment in message.attachments
        ],
        "sequence_number": message.sequence_number,
        "folder": message.folder,
        "indexed_at": serialize_datetime(message.indexed_at),
    }
    if message.cc is not None:
        document["cc"] = list(message.cc)
    if message.bcc is not None:
        document["bcc"] = list(message.bcc)
    return document


__all__ = ["message_to_document"]

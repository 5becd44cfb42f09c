"""Prompt templates for LLM-driven classification."""

from __future__ import annotations

from collections.abc import Sequence
from textwrap import dedent

MAX_PROMPT_BODY_CHARS = 3000

_CATEGORY_GUIDE = dedent(
    """
    1. "Interested": shows genuine interest, asks about features, pricing or
       availability, requests a demo or more information.
    2. "Meeting Booked": confirms a scheduled meeting, contains calendar links
       or meeting times.
    3. "Not Interested": clear rejection, asks to be removed from a list.
    4. "Out of Office": automated vacation or away reply, usually with a
       return date.
    5. "Spam": unsolicited promotions, scams, phishing, suspicious links.
    6. "Follow Up": needs an answer or action; the default when unclear.
    7. "Important": urgent business matters, contracts, escalations.
    8. "Newsletter": mass distribution, subscriptions, automated updates.
    """
).strip()


def build_classification_prompt(
    *, subject: str, body: str, sender: str, recipients: Sequence[str]
) -> str:
    """Compose a JSON-only prompt asking for a single category."""
    truncated = body[:MAX_PROMPT_BODY_CHARS]
    if len(body) > MAX_PROMPT_BODY_CHARS:
        truncated += "..."
    to_line = ", ".join(recipients) if recipients else "(none)"

    header = dedent(
        """
        You classify business outreach email. Pick exactly ONE category for
        the email below.

        Categories:
        """
    ).strip()
    schema = dedent(
        """
        Respond strictly with JSON using this schema:
        {
          "category": string,    # exact category name from the list
          "confidence": number,  # between 0 and 1
          "reasoning": string    # one or two sentences
        }

        Do not include markdown, code fences or prose outside the JSON object.
        """
    ).strip()

    return "\n\n".join(
        [
            header,
            _CATEGORY_GUIDE,
            schema,
            f"From: {sender or '(unknown sender)'}\n"
            f"To: {to_line}\n"
            f"Subject: {subject or '(no subject)'}",
            f"Email body:\n{truncated}",
        ]
    )


__all__ = ["MAX_PROMPT_BODY_CHARS", "build_classification_prompt"]

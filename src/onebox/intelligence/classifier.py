"""Message classifiers assigning one category per email."""

from __future__ import annotations

import json
import logging
import math
import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass

from ..core.errors import ClassificationError
from ..core.interfaces import EmailClassifier
from ..core.models import ClassificationResult
from .llm import LLMClient, LLMError
from .prompts import build_classification_prompt

LOGGER = logging.getLogger(__name__)

INTERESTED = "Interested"
MEETING_BOOKED = "Meeting Booked"
NOT_INTERESTED = "Not Interested"
OUT_OF_OFFICE = "Out of Office"
SPAM = "Spam"
FOLLOW_UP = "Follow Up"
IMPORTANT = "Important"
NEWSLETTER = "Newsletter"

CATEGORIES: tuple[str, ...] = (
    INTERESTED,
    MEETING_BOOKED,
    NOT_INTERESTED,
    OUT_OF_OFFICE,
    SPAM,
    FOLLOW_UP,
    IMPORTANT,
    NEWSLETTER,
)

DEFAULT_REASONING = "No reasoning provided"

_SIGNATURE_RULE = re.compile(r"^[-=]{2,}")
_SIGNATURE_PHRASES = ("sent from", "best regards", "kind regards")
_URL_PATTERN = re.compile(r"https?://\S+")
_WHITESPACE = re.compile(r"\s+")
_CODE_FENCE = re.compile(r"```(?:json)?\s*", re.IGNORECASE)
_JSON_OBJECT = re.compile(r"\{.*\}", re.DOTALL)


def preprocess_body(text: str) -> str:
    """Strip signatures, quoted replies and URLs, then collapse whitespace."""
    kept: list[str] = []
    for line in text.splitlines():
        stripped = line.strip()
        lowered = stripped.lower()
        if _SIGNATURE_RULE.match(stripped) or any(
            phrase in lowered for phrase in _SIGNATURE_PHRASES
        ):
            break
        if stripped.startswith(">"):
            continue
        kept.append(line)
    processed = _URL_PATTERN.sub("[URL]", "\n".join(kept))
    return _WHITESPACE.sub(" ", processed).strip()


def parse_classification(response: str) -> ClassificationResult:
    """Parse an LLM reply, defaulting to ``Follow Up`` when it is unusable."""
    try:
        return _parse_strict(response)
    except (ValueError, TypeError, AttributeError) as exc:
        LOGGER.warning("Could not parse classification response: %s", exc)
        LOGGER.debug("Raw classification response: %s", response)
        return ClassificationResult(
            category=FOLLOW_UP,
            confidence=0.5,
            reasoning="Failed to parse AI response, defaulting to Follow Up",
        )


def _parse_strict(response: str) -> ClassificationResult:
    cleaned = _CODE_FENCE.sub("", response.strip()).strip()
    match = _JSON_OBJECT.search(cleaned)
    if match:
        cleaned = match.group(0)
    payload = json.loads(cleaned)
    if not isinstance(payload, dict):
        raise ValueError("Classification payload is not an object")
    raw_category = payload.get("category")
    if not raw_category or "confidence" not in payload:
        raise ValueError("Classification payload is missing required fields")

    category = _match_category(str(raw_category))
    if category is None:
        raise ValueError(f"Unknown category {raw_category!r}")

    reasoning = payload.get("reasoning")
    return ClassificationResult(
        category=category,
        confidence=_coerce_confidence(payload.get("confidence")),
        reasoning=str(reasoning).strip() if reasoning else DEFAULT_REASONING,
    )


def _match_category(value: str) -> str | None:
    normalized = value.strip().lower()
    for category in CATEGORIES:
        if category.lower() == normalized:
            return category
    return None


def _coerce_confidence(value: object) -> float:
    try:
        confidence = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return 0.5
    if math.isnan(confidence) or confidence < 0:
        return 0.5
    return min(confidence, 1.0)


@dataclass(frozen=True)
class _CategoryRule:
    category: str
    keywords: tuple[str, ...] = ()


_DEFAULT_RULES: tuple[_CategoryRule, ...] = (
    _CategoryRule(
        category=OUT_OF_OFFICE,
        keywords=(
            "out of office",
            "out of the office",
            "on vacation",
            "away from email",
            "automatic reply",
            "auto-reply",
            "will return on",
        ),
    ),
    _CategoryRule(
        category=MEETING_BOOKED,
        keywords=(
            "meeting confirmed",
            "calendar invite",
            "invitation:",
            "see you on",
            "looking forward to our meeting",
            "meeting is scheduled",
            "zoom.us",
        ),
    ),
    _CategoryRule(
        category=NOT_INTERESTED,
        keywords=(
            "not interested",
            "no longer interested",
            "remove me",
            "not a good fit",
            "we will pass",
            "unsubscribe me",
        ),
    ),
    _CategoryRule(
        category=SPAM,
        keywords=(
            "click here",
            "limited time",
            "congratulations",
            "winner",
            "claim your",
            "act now",
        ),
    ),
    _CategoryRule(
        category=NEWSLETTER,
        keywords=(
            "newsletter",
            "unsubscribe",
            "weekly digest",
            "view in browser",
            "manage preferences",
        ),
    ),
    _CategoryRule(
        category=INTERESTED,
        keywords=(
            "interested",
            "schedule a demo",
            "pricing",
            "learn more",
            "would like to",
            "let's discuss",
            "sounds great",
        ),
    ),
    _CategoryRule(
        category=IMPORTANT,
        keywords=(
            "urgent",
            "asap",
            "contract",
            "deadline",
            "escalat",
            "immediately",
        ),
    ),
)


class KeywordEmailClassifier(EmailClassifier):
    """Assign a category based on ordered keyword rules."""

    def __init__(
        self,
        rules: Sequence[_CategoryRule] | None = None,
        *,
        default_category: str = FOLLOW_UP,
    ) -> None:
        self._rules = tuple(rules) if rules is not None else _DEFAULT_RULES
        self._default_category = default_category

    async def classify_content(
        self, *, subject: str, body: str, sender: str, recipients: Sequence[str]
    ) -> ClassificationResult:
        return self.classify_text(subject=subject, body=body)

    def classify_text(self, *, subject: str, body: str) -> ClassificationResult:
        """Return the first rule matching subject or body, else the default."""
        haystack = f"{subject} {body}".lower()
        for rule in self._rules:
            keyword = _first_keyword(rule.keywords, haystack)
            if keyword is not None:
                return ClassificationResult(
                    category=rule.category,
                    confidence=0.6,
                    reasoning=f"Matched keyword '{keyword}'",
                )
        return ClassificationResult(
            category=self._default_category,
            confidence=0.3,
            reasoning="No keyword rule matched",
        )


def _first_keyword(keywords: Iterable[str], haystack: str) -> str | None:
    for keyword in keywords:
        if keyword in haystack:
            return keyword
    return None


class LlmEmailClassifier(EmailClassifier):
    """Classify emails with an LLM, optionally falling back to keywords."""

    def __init__(
        self,
        llm_client: LLMClient,
        *,
        fallback: KeywordEmailClassifier | None = None,
    ) -> None:
        self._llm_client = llm_client
        self._fallback = fallback

    async def classify_content(
        self, *, subject: str, body: str, sender: str, recipients: Sequence[str]
    ) -> ClassificationResult:
        processed = preprocess_body(body)
        prompt = build_classification_prompt(
            subject=subject, body=processed, sender=sender, recipients=recipients
        )
        try:
            response = await self._llm_client.generate(prompt)
        except LLMError as exc:
            if self._fallback is None:
                raise ClassificationError(
                    f"LLM classification failed via {self._llm_client.provider_id}"
                ) from exc
            LOGGER.warning("LLM classification failed, using keywords: %s", exc)
            return self._fallback.classify_text(subject=subject, body=processed)
        return parse_classification(response)


__all__ = [
    "CATEGORIES",
    "FOLLOW_UP",
    "KeywordEmailClassifier",
    "LlmEmailClassifier",
    "parse_classification",
    "preprocess_body",
]

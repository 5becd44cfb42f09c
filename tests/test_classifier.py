"""Tests for message classification."""

from __future__ import annotations

import pytest

from onebox.core.errors import ClassificationError
from onebox.intelligence import (
    KeywordEmailClassifier,
    LlmEmailClassifier,
    parse_classification,
    preprocess_body,
)
from onebox.intelligence.llm import LLMError


class StubLLM:
    """Stub LLM client returning predefined payloads."""

    def __init__(self, response: str | None, *, raise_error: bool = False) -> None:
        self.response = response
        self.raise_error = raise_error
        self.prompts: list[str] = []

    @property
    def provider_id(self) -> str:
        return "stub-model"

    async def generate(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if self.raise_error:
            raise LLMError("stub failure")
        assert self.response is not None
        return self.response


def test_preprocess_body_strips_noise() -> None:
    body = "\n".join(
        [
            "Hi there,",
            "> earlier quoted reply",
            "Pricing is at https://example.com/pricing?ref=mail   today.",
            "",
            "Best regards,",
            "Jane",
        ]
    )

    assert preprocess_body(body) == "Hi there, Pricing is at [URL] today."


def test_preprocess_body_stops_at_signature_rule() -> None:
    assert preprocess_body("Thanks!\n--\nSignature line") == "Thanks!"


@pytest.mark.parametrize(
    ("response", "category", "confidence"),
    [
        ('{"category": "Interested", "confidence": 0.9, "reasoning": "wants demo"}', "Interested", 0.9),
        ('```json\n{"category": "meeting booked", "confidence": "0.7"}\n```', "Meeting Booked", 0.7),
        ('Sure! {"category": "Spam", "confidence": 3}', "Spam", 1.0),
        ('{"category": "Newsletter", "confidence": -1}', "Newsletter", 0.5),
        ('{"category": "Out of Office", "confidence": "n/a"}', "Out of Office", 0.5),
    ],
)
def test_parse_classification_normalizes_fields(response, category, confidence) -> None:
    result = parse_classification(response)

    assert result.category == category
    assert result.confidence == pytest.approx(confidence)
    assert result.reasoning


def test_parse_classification_defaults_reasoning() -> None:
    result = parse_classification('{"category": "Important", "confidence": 0.8}')
    assert result.reasoning == "No reasoning provided"


@pytest.mark.parametrize(
    "response",
    ["not json at all", '{"category": "Urgent", "confidence": 0.9}', '{"confidence": 0.4}'],
)
def test_parse_classification_falls_back_to_follow_up(response) -> None:
    result = parse_classification(response)

    assert result.category == "Follow Up"
    assert result.confidence == 0.5


@pytest.mark.asyncio
async def test_llm_classifier_builds_prompt_from_preprocessed_body() -> None:
    llm = StubLLM('{"category": "Interested", "confidence": 0.85, "reasoning": "asks for demo"}')
    classifier = LlmEmailClassifier(llm)

    result = await classifier.classify_content(
        subject="Demo?",
        body="Can we book a demo?\n> old thread\n" + "x" * 5000,
        sender="lead@example.com",
        recipients=["sales@example.com"],
    )

    assert result.category == "Interested"
    prompt = llm.prompts[0]
    assert "From: lead@example.com" in prompt
    assert "To: sales@example.com" in prompt
    assert "old thread" not in prompt
    assert prompt.endswith("...")


@pytest.mark.asyncio
async def test_llm_failure_uses_keyword_fallback() -> None:
    classifier = LlmEmailClassifier(
        StubLLM(None, raise_error=True), fallback=KeywordEmailClassifier()
    )

    result = await classifier.classify_content(
        subject="Automatic reply: Out of office",
        body="I am out of office until Monday.",
        sender="someone@example.com",
        recipients=[],
    )

    assert result.category == "Out of Office"


@pytest.mark.asyncio
async def test_llm_failure_without_fallback_raises() -> None:
    classifier = LlmEmailClassifier(StubLLM(None, raise_error=True))

    with pytest.raises(ClassificationError):
        await classifier.classify_content(
            subject="Hello", body="Body", sender="a@example.com", recipients=[]
        )


@pytest.mark.parametrize(
    ("subject", "body", "category"),
    [
        ("Re: proposal", "We are not interested at this time.", "Not Interested"),
        ("Invitation: Intro call", "Meeting confirmed for Monday at 2 PM.", "Meeting Booked"),
        ("Weekly digest", "Click unsubscribe to stop receiving this newsletter.", "Newsletter"),
        ("Question", "Could you share pricing for 20 seats?", "Interested"),
        ("Status", "Here is the report you asked for.", "Follow Up"),
    ],
)
def test_keyword_classifier_rules(subject, body, category) -> None:
    result = KeywordEmailClassifier().classify_text(subject=subject, body=body)
    assert result.category == category

"""Classification services for indexed messages."""

from .classifier import (
    CATEGORIES,
    KeywordEmailClassifier,
    LlmEmailClassifier,
    parse_classification,
    preprocess_body,
)
from .llm import LLMClient, LLMError, OllamaClient
from .pipeline import ClassificationPipeline

__all__ = [
    "CATEGORIES",
    "ClassificationPipeline",
    "KeywordEmailClassifier",
    "LLMClient",
    "LLMError",
    "LlmEmailClassifier",
    "OllamaClient",
    "parse_classification",
    "preprocess_body",
]

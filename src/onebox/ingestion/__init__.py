"""Ingestion pipeline components."""

from .parser import MessageNormalizer, build_composite_id

__all__ = ["MessageNormalizer", "build_composite_id"]

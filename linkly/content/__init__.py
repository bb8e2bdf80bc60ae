"""Destination content retrieval."""

from .fetcher import ContentFetcher, extract_text, normalize_text

__all__ = ["ContentFetcher", "extract_text", "normalize_text"]

"""Approximate token counting for conversation size estimates."""

from __future__ import annotations

import logging

import tiktoken

logger = logging.getLogger(__name__)

_TOKENIZER: tiktoken.Encoding | None = None


def _get_tokenizer() -> tiktoken.Encoding:
    """Get or initialize the cl100k_base encoder."""
    global _TOKENIZER
    if _TOKENIZER is None:
        _TOKENIZER = tiktoken.get_encoding("cl100k_base")
    return _TOKENIZER


def approximate_tokens(content: str) -> int:
    if not content:
        return 0
    try:
        return len(_get_tokenizer().encode(content, disallowed_special=()))
    except Exception as exc:
        # The encoder needs its BPE table; without it use the char/4 estimate.
        logger.debug("Token encoder unavailable: %s", exc)
        return max(1, len(content) // 4)


__all__ = ["approximate_tokens"]

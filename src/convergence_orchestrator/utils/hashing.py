"""
Deterministic SHA-256 helpers used for finding fingerprints.

Standard library only; output is stable across platforms and interpreter runs.
"""

from __future__ import annotations

import hashlib
import unicodedata
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterable

_PART_SEPARATOR = "\x1f"

__all__ = [
    "normalize_text",
    "sha256_bytes",
    "sha256_parts",
    "sha256_text",
]


def sha256_bytes(data: bytes) -> str:
    """Return SHA-256 hex digest for raw bytes."""

    return hashlib.sha256(data).hexdigest()


def sha256_text(text: str, *, encoding: str = "utf-8") -> str:
    """Return SHA-256 hex digest for text encoded with ``encoding``."""

    return sha256_bytes(text.encode(encoding))


def normalize_text(text: str) -> str:
    """NFC-normalize, casefold, and collapse whitespace runs."""

    folded = unicodedata.normalize("NFC", text).casefold()
    return " ".join(folded.split())


def sha256_parts(parts: Iterable[str]) -> str:
    """
    Hash an ordered sequence of text parts.

    Parts are joined with an ASCII unit separator so ``("ab", "c")`` and
    ``("a", "bc")`` never collide.
    """

    return sha256_text(_PART_SEPARATOR.join(parts))

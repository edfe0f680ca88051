"""Utility exports for hashing and concurrency helpers."""

from convergence_orchestrator.utils.concurrency import (
    CancellationToken,
    RunCancelledError,
    run_with_timeout,
)
from convergence_orchestrator.utils.hashing import (
    normalize_text,
    sha256_bytes,
    sha256_parts,
    sha256_text,
)

__all__ = [
    "CancellationToken",
    "RunCancelledError",
    "normalize_text",
    "run_with_timeout",
    "sha256_bytes",
    "sha256_parts",
    "sha256_text",
]

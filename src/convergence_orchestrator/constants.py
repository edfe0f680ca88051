"""Stable defaults shared across orchestration planes."""

from __future__ import annotations

from typing import Final

CONFIG_SCHEMA_VERSION: Final[int] = 1
RESULT_SCHEMA_VERSION: Final[int] = 1

# Concurrency and iteration budgets.
DEFAULT_CONCURRENCY_LIMIT: Final[int] = 4
DEFAULT_MAX_ITERATIONS: Final[int] = 3
DEFAULT_NO_PROGRESS_LIMIT: Final[int] = 2

# Confidence scores are integers in [0, 100].
MIN_CONFIDENCE: Final[int] = 0
MAX_CONFIDENCE: Final[int] = 100
DEFAULT_CONFIDENCE_THRESHOLD: Final[int] = 80
DEFAULT_REPORTING_THRESHOLD: Final[int] = 80

# Quality gate severity caps.
DEFAULT_MAX_CRITICAL: Final[int] = 0
DEFAULT_MAX_HIGH: Final[int] = 2
DEFAULT_MAX_MEDIUM: Final[int] = 10

# Finding synthesized when a task fails without producing a result.
INCOMPLETE_ANALYSIS_CONFIDENCE: Final[int] = 25
INCOMPLETE_ANALYSIS_PREFIX: Final[str] = "analysis incomplete"

__all__ = [
    "CONFIG_SCHEMA_VERSION",
    "DEFAULT_CONCURRENCY_LIMIT",
    "DEFAULT_CONFIDENCE_THRESHOLD",
    "DEFAULT_MAX_CRITICAL",
    "DEFAULT_MAX_HIGH",
    "DEFAULT_MAX_ITERATIONS",
    "DEFAULT_MAX_MEDIUM",
    "DEFAULT_NO_PROGRESS_LIMIT",
    "DEFAULT_REPORTING_THRESHOLD",
    "INCOMPLETE_ANALYSIS_CONFIDENCE",
    "INCOMPLETE_ANALYSIS_PREFIX",
    "MAX_CONFIDENCE",
    "MIN_CONFIDENCE",
    "RESULT_SCHEMA_VERSION",
]

"""Error taxonomy for the reconciliation pipeline.

Only truly exceptional conditions are raised. Expected outcomes (gate
denial, remap ambiguity, stale alignments, batch stop) are returned as
values by the components that produce them.
"""

from __future__ import annotations

from typing import Any


class TargumError(Exception):
    """Base class for pipeline errors."""

    def __init__(
        self,
        code: str,
        message: str,
        details: dict[str, Any] | None = None,
    ):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(f"[{code}] {message}")

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


class InputValidationError(TargumError):
    """Malformed or missing input. Fails fast, never retried."""


class OcrError(TargumError):
    """OCR engine failure (engine missing, timeout, exec failure, bad output)."""

    ENGINE_NOT_FOUND = "OCR_ENGINE_NOT_FOUND"
    TIMEOUT = "OCR_TIMEOUT"
    EXEC_FAILED = "OCR_EXEC_FAILED"
    PARSE_FAILED = "OCR_PARSE_FAILED"


class FetchError(TargumError):
    """HTTP fetch failed after exhausting retries."""

"""Error taxonomy for the amount extraction pipeline.

Every error here is caught at the orchestrator boundary and converted into a
PipelineResult status; callers of AmountPipeline.process never see them raw.
"""

from __future__ import annotations


class AmountDetectionError(RuntimeError):
    pass


class NoiseGuardrailError(AmountDetectionError):
    """Raised when the input is too sparse or noisy to produce a trustworthy result."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class UnsupportedInputError(AmountDetectionError):
    """Input is neither text nor a recognized binary document (image/PDF)."""


class ExternalCollaboratorError(AmountDetectionError):
    """The OCR engine or LLM client failed, timed out, or is not configured."""


class MalformedTokenError(AmountDetectionError):
    """A single raw token could not be parsed to a finite number."""

    def __init__(self, token: str, detail: str = ""):
        message = f"Malformed token {token!r}"
        if detail:
            message += f": {detail}"
        super().__init__(message)
        self.token = token

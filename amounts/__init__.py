"""
Amount Detection Module
=======================
Extracts monetary amounts from noisy bill and receipt text (typed, pasted or
recovered by OCR) and classifies each by role: total_bill, paid, due, tax,
discount or other. Stages: token extraction -> normalization -> classification,
with guardrails and a regex fallback around them.
"""

from .classifier import classify_amounts, find_best_match
from .context import PipelineContext
from .errors import (
    AmountDetectionError,
    ExternalCollaboratorError,
    MalformedTokenError,
    NoiseGuardrailError,
    UnsupportedInputError,
)
from .keywords import KEYWORD_TABLE, AmountType
from .normalizer import normalize_token, normalize_tokens
from .pipeline import AmountPipeline, PipelineResult
from .tokens import detect_currency, extract_numeric_tokens

__all__ = [
    'AmountPipeline', 'PipelineResult', 'PipelineContext',
    'extract_numeric_tokens', 'detect_currency',
    'normalize_token', 'normalize_tokens',
    'classify_amounts', 'find_best_match',
    'AmountType', 'KEYWORD_TABLE',
    'AmountDetectionError', 'NoiseGuardrailError', 'UnsupportedInputError',
    'ExternalCollaboratorError', 'MalformedTokenError',
]

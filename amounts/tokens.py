"""
Numeric Token Extraction
========================
Scans raw text (typed, pasted, or recovered by OCR) for numeric tokens and a
currency hint. Tokens keep their noise (currency symbols, separators, percent
signs, OCR letter confusions); cleaning them is the normalizer's job.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from .errors import ExternalCollaboratorError, UnsupportedInputError

logger = logging.getLogger(__name__)

CURRENCY_SYMBOLS = "₹$€£¥"

NO_AMOUNTS_REASON = "document too noisy"

# currency symbol, optional single OCR glyph standing in for a leading 1/0,
# digits (capital O tolerated inside), optional ,/. groups, optional %.
# Must not run into a lowercase letter or another digit ("T0tal", "1000only").
_NUMERIC_TOKEN_RE = re.compile(
    rf"(?:[{CURRENCY_SYMBOLS}]\s?)?"
    rf"(?:(?<![^\s:=(\[{CURRENCY_SYMBOLS}])[lI|O](?=\d))?"
    r"\d(?:\d|O(?![a-z]))*"
    r"(?:[.,]\d(?:\d|O(?![a-z]))*)*"
    r"%?"
    r"(?![a-z\d])"
)

# Priority order: INR first (primary domain is Indian medical billing).
_CURRENCY_RULES = (
    ("INR", "₹", re.compile(r"\b(?:Rs\.?|INR|rupees?)(?![a-z])", re.IGNORECASE)),
    ("USD", "$", re.compile(r"\bUSD(?![a-z])", re.IGNORECASE)),
    ("EUR", "€", re.compile(r"\bEUR(?![a-z])", re.IGNORECASE)),
    ("GBP", "£", re.compile(r"\bGBP(?![a-z])", re.IGNORECASE)),
    ("JPY", "¥", re.compile(r"\bJPY(?![a-z])", re.IGNORECASE)),
)

BINARY_TYPES = (bytes, bytearray, memoryview)


@dataclass
class TokenExtractionResult:
    """Output of the extraction stage."""
    status: str
    raw_tokens: List[str]
    currency_hint: str
    confidence: float
    text: str = ""
    reason: Optional[str] = None
    metadata: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        out = {
            "status": self.status,
            "raw_tokens": list(self.raw_tokens),
            "currency_hint": self.currency_hint,
            "confidence": self.confidence,
        }
        if self.reason:
            out["reason"] = self.reason
        return out


def extract_numeric_strings(text: str) -> List[str]:
    """Return numeric-looking tokens in left-to-right order (no deduplication)."""
    return [token for token, _, _ in numeric_token_spans(text)]


def numeric_token_spans(text: str) -> List[Tuple[str, int, int]]:
    """(token, start, end) for each numeric token, offsets into the unmodified text."""
    if not text:
        return []
    return [(m.group(), m.start(), m.end()) for m in _NUMERIC_TOKEN_RE.finditer(text)]


def detect_currency(text: str) -> Optional[str]:
    """
    Return the ISO code of the first currency found by priority, or None.

    Symbols are matched literally; textual codes case-insensitively.
    """
    if not text:
        return None
    for code, symbol, pattern in _CURRENCY_RULES:
        if symbol in text or pattern.search(text):
            return code
    return None


def extract_numeric_tokens(
    data,
    ocr_engine=None,
    *,
    default_currency: str = "INR",
    min_tokens: int = 2,
) -> TokenExtractionResult:
    """
    Extract raw numeric tokens from text or from a binary document.

    Args:
        data: A text string, or image/PDF bytes
        ocr_engine: Object exposing extract_text(bytes) -> OCRResult; required for binary input
        default_currency: Currency hint used when nothing is detected
        min_tokens: Fewer tokens than this trips the noise guardrail

    Returns:
        TokenExtractionResult; status is 'no_amounts_found' when the guardrail trips

    Raises:
        UnsupportedInputError: data is neither text nor bytes
        ExternalCollaboratorError: binary input with no OCR engine, or the engine failed
    """
    if isinstance(data, str):
        text = data
        ocr_confidence = None
    elif isinstance(data, BINARY_TYPES):
        if ocr_engine is None:
            raise ExternalCollaboratorError("No OCR engine configured for binary input")
        ocr_result = ocr_engine.extract_text(bytes(data))
        text = ocr_result.text or ""
        ocr_confidence = float(ocr_result.confidence)
    else:
        raise UnsupportedInputError(f"Unsupported input type: {type(data).__name__}")

    tokens = extract_numeric_strings(text)
    currency = detect_currency(text) or default_currency

    if len(tokens) < min_tokens:
        logger.info(f"Noise guardrail: {len(tokens)} numeric token(s) found, need {min_tokens}")
        return TokenExtractionResult(
            status="no_amounts_found",
            raw_tokens=[],
            currency_hint=currency,
            confidence=0.0,
            text=text,
            reason=NO_AMOUNTS_REASON,
        )

    if ocr_confidence is None:
        confidence = 1.0
    else:
        token_factor = min(len(tokens) / 10, 1.0)
        confidence = round(ocr_confidence * 0.8 + token_factor * 0.2, 2)

    logger.debug(f"Extracted {len(tokens)} tokens, currency={currency}, confidence={confidence}")
    return TokenExtractionResult(
        status="ok",
        raw_tokens=tokens,
        currency_hint=currency,
        confidence=confidence,
        text=text,
        metadata={"source": "text" if ocr_confidence is None else "ocr"},
    )

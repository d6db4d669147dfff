"""
Token Normalization
===================
Converts raw numeric tokens into numbers, correcting character-level OCR
confusions and separator noise, and scores the batch with a confidence that
drops as more corrections are needed.
"""

import logging
import math
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .errors import MalformedTokenError
from .tokens import CURRENCY_SYMBOLS

logger = logging.getLogger(__name__)

LARGE_VALUE_THRESHOLD = 1_000_000_000
CHANGE_PENALTY = 0.15
WARNING_PENALTY = 0.10
MIN_CONFIDENCE = 0.1

OCR_SUBSTITUTIONS = {
    "O": "0", "o": "0", "D": "0",
    "l": "1", "I": "1", "|": "1", "!": "1", "i": "1",
    "B": "8",
    "S": "5", "s": "5",
    "Z": "2", "z": "2",
    "G": "6",
    " ": "",
}

_PREFIX_TRIMS = (
    re.compile(rf"^[{CURRENCY_SYMBOLS}]\s*"),
    re.compile(r"^Rs\.?\s*", re.IGNORECASE),
    re.compile(r"^(?:INR|USD|EUR|GBP|JPY)\s*[:.]?\s*", re.IGNORECASE),
    re.compile(r"^(?:amount|amt|total|paid|due|balance)\s*:\s*", re.IGNORECASE),
)

_SUFFIX_TRIMS = (
    re.compile(r"\s*%$"),
    re.compile(r"\s*/-$"),
    re.compile(r"\s*only$", re.IGNORECASE),
    re.compile(r"\s*approx\.?$", re.IGNORECASE),
    re.compile(r"\s*(?:INR|Rs\.?)$", re.IGNORECASE),
)

_NON_NUMERIC_RE = re.compile(r"[^0-9.,\-]")
_EURO_DECIMAL_RE = re.compile(r"^-?\d+,\d{2}$")
_DOT_GROUPED_RE = re.compile(r"^-?\d{1,3}(?:\.\d{3}){2,}$")


@dataclass
class NormalizedAmount:
    """A successfully parsed token."""
    value: float
    changes: int = 0
    warnings: List[str] = field(default_factory=list)


@dataclass
class Substitution:
    """Audit trail entry for a token that needed corrections."""
    original: str
    normalized: str
    changes: int
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        out = {"original": self.original, "normalized": self.normalized, "changes": self.changes}
        if self.warnings:
            out["warnings"] = list(self.warnings)
        return out


@dataclass
class NormalizationResult:
    """Output of the normalization stage."""
    normalized_amounts: List[float]
    normalization_confidence: float
    substitutions: List[Substitution] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "normalized_amounts": list(self.normalized_amounts),
            "normalization_confidence": self.normalization_confidence,
            "substitutions": [s.to_dict() for s in self.substitutions],
            "warnings": list(self.warnings),
        }


def format_number(value: float) -> str:
    """Shortest decimal rendering: 1200.0 -> '1200', 1000.5 -> '1000.5'."""
    if float(value).is_integer():
        return str(int(value))
    return repr(float(value))


def _trim_affixes(token: str) -> tuple:
    changes = 0
    s = token.strip()
    for pattern in _PREFIX_TRIMS:
        trimmed = pattern.sub("", s, count=1)
        if trimmed != s:
            changes += 1
            s = trimmed
    for pattern in _SUFFIX_TRIMS:
        trimmed = pattern.sub("", s, count=1)
        if trimmed != s:
            changes += 1
            s = trimmed
    return s, changes


def _substitute_ocr_chars(s: str) -> tuple:
    out = []
    changes = 0
    prev = ""
    for ch in s:
        replacement = OCR_SUBSTITUTIONS.get(ch)
        # letters glued to a currency symbol belong to the symbol, not the number
        if replacement is not None and not (prev and prev in CURRENCY_SYMBOLS):
            out.append(replacement)
            changes += 1
        else:
            out.append(ch)
        prev = ch
    return "".join(out), changes


def _resolve_separators(s: str) -> str:
    has_comma = "," in s
    has_dot = "." in s
    if has_comma and has_dot:
        return s.replace(",", "")
    if has_comma:
        if _EURO_DECIMAL_RE.match(s):
            return s.replace(",", ".")
        return s.replace(",", "")
    if _DOT_GROUPED_RE.match(s):
        return s.replace(".", "")
    return s


def _parse(cleaned: str, token: str) -> float:
    if not cleaned or cleaned.count("-") > 1 or ("-" in cleaned and not cleaned.startswith("-")):
        raise MalformedTokenError(token, f"unparseable remainder {cleaned!r}")
    try:
        value = float(cleaned)
    except ValueError as e:
        raise MalformedTokenError(token, str(e)) from e
    if not math.isfinite(value):
        raise MalformedTokenError(token, "not a finite number")
    return value


def normalize_token(token: str) -> Optional[NormalizedAmount]:
    """
    Normalize a single raw token.

    Returns:
        NormalizedAmount, or None when the token cannot be parsed (the token is
        dropped, not treated as zero)
    """
    try:
        return _normalize(token)
    except MalformedTokenError as e:
        logger.debug(str(e))
        return None


def _normalize(token: str) -> NormalizedAmount:
    s, changes = _trim_affixes(token or "")
    s, substituted = _substitute_ocr_chars(s)
    changes += substituted
    s = _NON_NUMERIC_RE.sub("", s)
    s = _resolve_separators(s)
    value = _parse(s, token)

    warnings = []
    if abs(value) > LARGE_VALUE_THRESHOLD:
        warnings.append(f"suspiciously large value: {format_number(value)}")
    return NormalizedAmount(value=value, changes=changes, warnings=warnings)


def normalize_tokens(raw_tokens: Optional[List[str]]) -> NormalizationResult:
    """
    Normalize a batch of raw tokens.

    Tokens without any digit and percentage tokens are skipped; tokens that fail
    to parse are dropped. Order of the surviving values follows the input.
    """
    amounts: List[NormalizedAmount] = []
    substitutions: List[Substitution] = []
    batch_warnings: List[str] = []
    dropped = 0

    for token in raw_tokens or []:
        if not token or not any(ch.isdigit() for ch in token) or "%" in token:
            continue
        try:
            normalized = _normalize(token)
        except MalformedTokenError as e:
            logger.debug(f"Dropping token: {e}")
            dropped += 1
            continue

        amounts.append(normalized)
        if normalized.changes > 0 or normalized.warnings:
            substitutions.append(Substitution(
                original=token,
                normalized=format_number(normalized.value),
                changes=normalized.changes,
                warnings=list(normalized.warnings),
            ))
        batch_warnings.extend(normalized.warnings)

    if dropped:
        batch_warnings.append(f"dropped: {dropped} unparseable token(s)")

    return NormalizationResult(
        normalized_amounts=[a.value for a in amounts],
        normalization_confidence=calculate_confidence(amounts),
        substitutions=substitutions,
        warnings=batch_warnings,
    )


def calculate_confidence(amounts: List[NormalizedAmount]) -> float:
    """
    1.0 minus the average correction load, clamped to [0.1, 1.0].

    An empty batch scores 0: nothing useful came out of normalization.
    """
    if not amounts:
        return 0.0
    count = len(amounts)
    avg_changes = sum(a.changes for a in amounts) / count
    avg_warnings = sum(len(a.warnings) for a in amounts) / count
    confidence = 1.0 - (avg_changes * CHANGE_PENALTY + avg_warnings * WARNING_PENALTY)
    return round(min(max(confidence, MIN_CONFIDENCE), 1.0), 2)

"""
Amount Classification
=====================
Assigns each normalized amount a role (total_bill, paid, due, tax, discount,
other) by matching the words around its occurrence in the source text against
the keyword table.
"""

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .keywords import (
    DEFAULT_CONFIDENCE,
    EXACT_FACTOR,
    KEYWORD_TABLE,
    PARTIAL_FACTOR,
    AmountType,
    type_weight,
)
from .normalizer import format_number, normalize_token
from .tokens import numeric_token_spans

logger = logging.getLogger(__name__)

CONTEXT_WORDS = 5
SNIPPET_CHARS = 30
POSITIONAL_CONFIDENCE = 0.7

NOT_FOUND_PROVENANCE = "No matching text found for amount"
NO_CONTEXT_PROVENANCE = "No text context available for classification"

# Context windows and snippets never cross these.
_FIELD_SEPARATOR_RE = re.compile(r"\||;|\n|,(?=\s)")
_WORD_RE = re.compile(r"\S+")
_EDGE_PUNCT_RE = re.compile(r"^[^\w]+|[^\w]+$")


@dataclass
class ClassifiedAmount:
    """An amount with its role, confidence and textual evidence."""
    type: str
    value: float
    confidence: float
    provenance: str

    def to_dict(self) -> Dict[str, Any]:
        value = self.value
        if float(value).is_integer():
            value = int(value)
        return {"type": str(AmountType(self.type).value), "value": value, "source": self.provenance}


@dataclass
class ClassificationResult:
    amounts: List[ClassifiedAmount]
    confidence: float


def _field_bounds(text: str, start: int, end: int) -> Tuple[int, int]:
    """Bounds of the separator-delimited field containing text[start:end]."""
    left = 0
    for m in _FIELD_SEPARATOR_RE.finditer(text, 0, start):
        left = m.end()
    m = _FIELD_SEPARATOR_RE.search(text, end)
    right = m.start() if m else len(text)
    return left, right


def find_occurrences(text: str, needle: str) -> List[Tuple[int, int]]:
    """Spans of needle in text that are not part of a longer number."""
    pattern = re.compile(rf"(?<![\d.,]){re.escape(needle)}(?!\d|[.,]\d)")
    return [(m.start(), m.end()) for m in pattern.finditer(text)]


def _context_words(text: str, start: int, end: int, window: int) -> List[str]:
    left, right = _field_bounds(text, start, end)
    words = [(m.start(), m.group()) for m in _WORD_RE.finditer(text, left, right)]
    index = 0
    for i, (pos, word) in enumerate(words):
        if pos <= start < pos + len(word):
            index = i
            break
    selected = words[max(0, index - window): index + window + 1]

    seen = set()
    out = []
    for _, word in selected:
        cleaned = _EDGE_PUNCT_RE.sub("", word.lower())
        if cleaned and cleaned not in seen:
            seen.add(cleaned)
            out.append(cleaned)
    return out


def _snippet(text: str, start: int, end: int) -> str:
    left, right = _field_bounds(text, start, end)
    s = max(left, start - SNIPPET_CHARS)
    e = min(right, end + SNIPPET_CHARS)
    # whole words only
    if s > left and not text[s - 1].isspace():
        while s < start and not text[s].isspace():
            s += 1
    if e < right and not text[e].isspace():
        while e > end and not text[e - 1].isspace():
            e -= 1
    return " ".join(text[s:e].split())


def locate_amounts(text: str) -> List[Tuple[float, int, int]]:
    """
    (value, start, end) for every token in text that normalizes to an amount.

    Offsets point at the token as written, so provenance snippets quote the
    source text rather than the corrected number.
    """
    located = []
    for token, start, end in numeric_token_spans(text):
        if "%" in token:
            continue
        normalized = normalize_token(token)
        if normalized is not None:
            located.append((normalized.value, start, end))
    return located


def find_best_match(words: Sequence[str]) -> Dict[str, Any]:
    """
    Score context words against the keyword table.

    The first exact match (types in priority order, keywords in listed order)
    wins outright. Otherwise the strongest partial match wins, ties going to the
    earlier type. No match at all yields `other` at the default confidence.
    """
    word_set = set(words)
    joined = " ".join(words)

    for rule in KEYWORD_TABLE:
        for keyword in rule.keywords:
            if " " in keyword:
                exact = re.search(rf"\b{re.escape(keyword)}\b", joined) is not None
            else:
                exact = keyword in word_set
            if exact:
                return {
                    "type": rule.type.value,
                    "confidence": round(rule.weight * EXACT_FACTOR, 2),
                    "match": f"Exact match: '{keyword}'",
                }

    best: Optional[Dict[str, Any]] = None
    for rule in KEYWORD_TABLE:
        for keyword in rule.keywords:
            compact = keyword.replace(" ", "")
            hit = next((w for w in words if compact in w), None)
            if hit is None:
                continue
            confidence = round(rule.weight * PARTIAL_FACTOR, 2)
            if best is None or confidence > best["confidence"]:
                best = {
                    "type": rule.type.value,
                    "confidence": confidence,
                    "match": f"Partial match: '{keyword}' in '{hit}'",
                }
            break

    if best is not None:
        return best
    return {"type": AmountType.OTHER.value, "confidence": DEFAULT_CONFIDENCE, "match": "No match"}


def classify_amounts(
    text: str,
    amounts: Sequence[float],
    window: int = CONTEXT_WORDS,
    locations: Optional[Sequence[Tuple[float, int, int]]] = None,
) -> ClassificationResult:
    """
    Classify amounts by the words surrounding their occurrence in text.

    Amounts are processed in the order received. A value that appears more than
    once in `amounts` claims successive occurrences in the text.

    Args:
        text: Source text the amounts were extracted from
        amounts: Normalized numeric values
        window: Number of words on either side of the occurrence to consider
        locations: (value, start, end) of each raw token in text. A value is
            looked up here first, so tokens written differently from their
            normalized number ("l200", "1,200") are still found. Values not
            listed are searched for by their rendered number.

    Returns:
        ClassificationResult with one ClassifiedAmount per input value
    """
    if not amounts:
        return ClassificationResult(amounts=[], confidence=0.0)

    text = text or ""
    claimed: Dict[str, int] = {}
    classified: List[ClassifiedAmount] = []

    for value in amounts:
        needle = format_number(value)
        found = [(start, end) for v, start, end in locations or () if v == value]
        if not found:
            found = find_occurrences(text, needle)
        if not found:
            classified.append(ClassifiedAmount(
                type=AmountType.OTHER.value,
                value=value,
                confidence=DEFAULT_CONFIDENCE,
                provenance=NOT_FOUND_PROVENANCE,
            ))
            continue

        nth = claimed.get(needle, 0)
        claimed[needle] = nth + 1
        start, end = found[nth] if nth < len(found) else found[0]

        words = _context_words(text, start, end, window)
        match = find_best_match(words)
        logger.debug(f"{needle}: {match['match']} -> {match['type']} ({match['confidence']})")
        classified.append(ClassifiedAmount(
            type=match["type"],
            value=value,
            confidence=match["confidence"],
            provenance=f"text: '{_snippet(text, start, end)}'",
        ))

    return ClassificationResult(amounts=classified, confidence=calculate_overall_confidence(classified))


def classify_by_position(amounts: Sequence[float]) -> ClassificationResult:
    """
    Deterministic roles for amounts with no text context (image-only input).

    First is the total (when there is more than one amount), second is paid
    (when there are more than two), last is due, everything else is other.
    """
    count = len(amounts)
    classified = []
    for index, value in enumerate(amounts):
        if index == 0 and count > 1:
            amount_type = AmountType.TOTAL_BILL
        elif index == 1 and count > 2:
            amount_type = AmountType.PAID
        elif index == count - 1:
            amount_type = AmountType.DUE
        else:
            amount_type = AmountType.OTHER
        classified.append(ClassifiedAmount(
            type=amount_type.value,
            value=value,
            confidence=POSITIONAL_CONFIDENCE,
            provenance=NO_CONTEXT_PROVENANCE,
        ))
    return ClassificationResult(amounts=classified, confidence=POSITIONAL_CONFIDENCE if classified else 0.0)


def calculate_overall_confidence(classified: Sequence[ClassifiedAmount]) -> float:
    """Mean item confidence weighted by each type's table weight."""
    if not classified:
        return 0.0
    total_weight = sum(type_weight(item.type) for item in classified)
    weighted = sum(item.confidence * type_weight(item.type) for item in classified)
    return round(weighted / total_weight, 2)

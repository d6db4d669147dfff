"""
Extractor Strategies
====================
Alternate ways to turn document text into classified amounts, all behind one
interface: extract(text) -> PartialResult.

- LLMAmountExtractor: delegates to the LLM client
- RegexAmountExtractor: label/number regexes built from the keyword table,
  used as the last-resort fallback when the staged pipeline fails
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .classifier import ClassifiedAmount, calculate_overall_confidence
from .errors import ExternalCollaboratorError
from .keywords import KEYWORD_TABLE, PARTIAL_FACTOR, AmountType, coerce_type
from .normalizer import normalize_token
from .tokens import CURRENCY_SYMBOLS, detect_currency

logger = logging.getLogger(__name__)

LLM_AMOUNT_CONFIDENCE = 0.9
POSITIONAL_REGEX_CONFIDENCE = 0.6

_CURRENCY_PREFIX = rf"(?:\b(?:rs\.?|inr|usd|eur|gbp|jpy)\s*[:.\-]?\s*|[{CURRENCY_SYMBOLS}]\s*)"
# a number that is not a percentage
_NUMBER = r"(\d[\d,]*(?:\.\d+)?)(?![\d.,]*\s*%)"

_LABELLED_PATTERNS = [
    (rule, re.compile(rf"{rule.pattern.pattern}\s*[:\-=>]*\s*{_CURRENCY_PREFIX}?{_NUMBER}", re.IGNORECASE))
    for rule in KEYWORD_TABLE
]

_CURRENCY_ADJACENT_PATTERNS = (
    re.compile(rf"{_CURRENCY_PREFIX}{_NUMBER}", re.IGNORECASE),
    re.compile(rf"(\d[\d,]*(?:\.\d+)?)\s*[{CURRENCY_SYMBOLS}]"),
)

_POSITIONAL_TYPES = (AmountType.TOTAL_BILL, AmountType.PAID, AmountType.DUE)


@dataclass
class PartialResult:
    """Amounts produced by an extractor strategy, before output formatting."""
    currency: str
    amounts: List[ClassifiedAmount] = field(default_factory=list)
    status: str = "ok"
    source: str = ""
    confidence: float = 0.0


class AmountExtractor:
    """Interface for interchangeable extraction strategies."""

    name = "base"

    def extract(self, text: str) -> PartialResult:
        raise NotImplementedError


def _as_provenance(source: str) -> str:
    source = (source or "").strip()
    if source.startswith("text:"):
        return source
    return f"text: '{source}'"


class LLMAmountExtractor(AmountExtractor):
    """Wraps an LLM client exposing process_document(text)."""

    name = "llm"

    def __init__(self, client, default_currency: str = "INR"):
        self.client = client
        self.default_currency = default_currency

    def extract(self, text: str) -> PartialResult:
        try:
            result = self.client.process_document(text)
        except ExternalCollaboratorError:
            raise
        except Exception as e:
            raise ExternalCollaboratorError(f"LLM extraction failed: {e}") from e

        amounts = []
        for item in result.get("amounts") or []:
            amounts.append(ClassifiedAmount(
                type=coerce_type(item.get("type")).value,
                value=float(item["value"]),
                confidence=LLM_AMOUNT_CONFIDENCE,
                provenance=_as_provenance(item.get("source", "")),
            ))

        return PartialResult(
            currency=result.get("currency") or self.default_currency,
            amounts=amounts,
            status=result.get("status") or ("ok" if amounts else "no_amounts_found"),
            source=self.name,
            confidence=calculate_overall_confidence(amounts),
        )


class RegexAmountExtractor(AmountExtractor):
    """
    Direct label/number extraction over raw text.

    Labelled amounts ("Total: 1200") take their type from the keyword table.
    When no label matches, currency-marked amounts are ranked by value and
    assigned total/paid/due positionally.
    """

    name = "regex"

    def __init__(self, default_currency: str = "INR"):
        self.default_currency = default_currency

    def extract(self, text: str) -> PartialResult:
        currency = detect_currency(text or "") or self.default_currency
        if not text:
            return PartialResult(currency=currency, status="no_amounts_found", source=self.name)

        amounts = self._labelled(text)
        if not amounts:
            amounts = self._currency_adjacent(text)

        logger.info(f"Regex extraction found {len(amounts)} amount(s)")
        return PartialResult(
            currency=currency,
            amounts=amounts,
            status="ok" if amounts else "no_amounts_found",
            source=self.name,
            confidence=calculate_overall_confidence(amounts),
        )

    def _labelled(self, text: str) -> List[ClassifiedAmount]:
        seen = set()
        amounts = []
        for rule, pattern in _LABELLED_PATTERNS:
            for m in pattern.finditer(text):
                value = _parse_value(m.group(1))
                if value is None or value <= 0 or value in seen:
                    continue
                seen.add(value)
                amounts.append(ClassifiedAmount(
                    type=rule.type.value,
                    value=value,
                    confidence=round(rule.weight * PARTIAL_FACTOR, 2),
                    provenance=_as_provenance(m.group(0)),
                ))
        return amounts

    def _currency_adjacent(self, text: str) -> List[ClassifiedAmount]:
        found: Dict[float, str] = {}
        for pattern in _CURRENCY_ADJACENT_PATTERNS:
            for m in pattern.finditer(text):
                value = _parse_value(m.group(1))
                if value is None or value <= 0 or value in found:
                    continue
                found[value] = m.group(0)

        ranked = sorted(found.items(), key=lambda kv: kv[0], reverse=True)
        return [
            ClassifiedAmount(
                type=amount_type.value,
                value=value,
                confidence=POSITIONAL_REGEX_CONFIDENCE,
                provenance=_as_provenance(source),
            )
            for amount_type, (value, source) in zip(_POSITIONAL_TYPES, ranked)
        ]


def _parse_value(raw: str) -> Optional[float]:
    normalized = normalize_token(raw)
    return normalized.value if normalized else None

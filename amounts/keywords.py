"""
Keyword Table
=============
The single declarative table mapping amount types to trigger keywords and a
match-confidence weight. The classifier scores context windows against it and
the regex fallback builds its label patterns from it.
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Tuple


class AmountType(str, Enum):
    """Closed set of amount roles."""
    TOTAL_BILL = "total_bill"
    PAID = "paid"
    DUE = "due"
    TAX = "tax"
    DISCOUNT = "discount"
    OTHER = "other"


@dataclass(frozen=True)
class KeywordRule:
    """One row of the keyword table."""
    type: AmountType
    weight: float
    keywords: Tuple[str, ...]

    @property
    def pattern(self) -> re.Pattern:
        """Whole-word alternation over this rule's keywords (longest first)."""
        ordered = sorted(self.keywords, key=len, reverse=True)
        alternation = "|".join(r"\s*".join(re.escape(part) for part in kw.split()) for kw in ordered)
        return re.compile(rf"\b(?:{alternation})\b", re.IGNORECASE)


# Rows are in classification priority order: the first exact match wins.
KEYWORD_TABLE: Tuple[KeywordRule, ...] = (
    KeywordRule(AmountType.TOTAL_BILL, 1.0, ("total", "grand total", "net amount", "bill amount", "subtotal", "sum")),
    KeywordRule(AmountType.PAID, 0.95, ("paid", "pay", "received", "deposit", "advance", "cash")),
    KeywordRule(AmountType.DUE, 0.95, ("due", "balance", "pending", "payable", "outstanding", "remaining")),
    KeywordRule(AmountType.DISCOUNT, 0.9, ("discount", "disc", "off", "rebate", "concession", "deduction")),
    KeywordRule(AmountType.TAX, 0.9, ("tax", "gst", "cgst", "sgst", "igst", "vat", "cess")),
)

OTHER_WEIGHT = 0.3
DEFAULT_CONFIDENCE = 0.5
EXACT_FACTOR = 1.0
PARTIAL_FACTOR = 0.8

# Order used when presenting results (differs from classification priority).
OUTPUT_PRIORITY: Tuple[AmountType, ...] = (
    AmountType.TOTAL_BILL,
    AmountType.PAID,
    AmountType.DUE,
    AmountType.TAX,
    AmountType.DISCOUNT,
    AmountType.OTHER,
)

# Labels returned by external extractors that map onto the closed set.
TYPE_ALIASES: Dict[str, AmountType] = {
    "total": AmountType.TOTAL_BILL,
    "total_amount": AmountType.TOTAL_BILL,
    "grand_total": AmountType.TOTAL_BILL,
    "paid_amount": AmountType.PAID,
    "amount_paid": AmountType.PAID,
    "balance_due": AmountType.DUE,
    "amount_due": AmountType.DUE,
    "balance": AmountType.DUE,
}


def type_weight(amount_type) -> float:
    """Table weight for a type; `other` (or anything unknown) gets the lowest weight."""
    for rule in KEYWORD_TABLE:
        if rule.type == amount_type:
            return rule.weight
    return OTHER_WEIGHT


def output_rank(amount_type) -> int:
    try:
        return OUTPUT_PRIORITY.index(AmountType(amount_type))
    except ValueError:
        return len(OUTPUT_PRIORITY)


def coerce_type(label) -> AmountType:
    """Map a free-form label onto the closed set, defaulting to `other`."""
    if isinstance(label, AmountType):
        return label
    key = str(label or "").strip().lower().replace(" ", "_")
    try:
        return AmountType(key)
    except ValueError:
        return TYPE_ALIASES.get(key, AmountType.OTHER)

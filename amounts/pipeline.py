"""
Amount Detection Pipeline
=========================
Runs one request through the staged state machine:

    start -> extraction -> normalization -> classification -> formatting
          -> {done | guardrail-exit | error-exit}

Guardrail exits return status 'no_amounts_found' with a fixed reason. Any
other failure falls back to direct regex extraction over the original text
before giving up with status 'error'. Callers always get a PipelineResult,
never an exception.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from .classifier import (
    ClassificationResult,
    ClassifiedAmount,
    classify_amounts,
    classify_by_position,
    locate_amounts,
)
from .context import PipelineContext
from .errors import (
    ExternalCollaboratorError,
    NoiseGuardrailError,
    UnsupportedInputError,
)
from .extractors import AmountExtractor, LLMAmountExtractor, RegexAmountExtractor
from .keywords import output_rank
from .normalizer import normalize_tokens
from .tokens import BINARY_TYPES, NO_AMOUNTS_REASON, extract_numeric_tokens

logger = logging.getLogger(__name__)

STATUS_OK = "ok"
STATUS_WARNING = "warning"
STATUS_ERROR = "error"
STATUS_NO_AMOUNTS = "no_amounts_found"

NO_VALID_AMOUNTS_REASON = "no valid amounts found after normalization"
NOTHING_ABOVE_THRESHOLD = "no amounts above confidence threshold"

STAGE_WEIGHTS = {"ocr": 0.4, "normalization": 0.3, "classification": 0.3}

DEFAULT_SETTINGS = {
    "default_currency": "INR",
    "min_tokens": 2,
    "min_amount_confidence": 0.5,
    "ok_confidence": 0.6,
    "context_words": 5,
    "use_llm": False,
    "collaborator_timeout_s": 60,
}


@dataclass
class PipelineResult:
    """Final result of one request; to_dict() is the JSON wire shape."""
    currency: str
    amounts: List[ClassifiedAmount] = field(default_factory=list)
    status: str = STATUS_OK
    warnings: List[str] = field(default_factory=list)
    reason: Optional[str] = None
    error: Optional[str] = None
    confidence: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "currency": self.currency,
            "amounts": [a.to_dict() for a in self.amounts],
            "status": self.status,
        }
        if self.warnings and self.status != STATUS_OK:
            out["_warnings"] = list(self.warnings)
        if self.reason:
            out["reason"] = self.reason
        if self.error:
            out["error"] = self.error
        return out


@dataclass
class _RunState:
    """What is known so far about the request, for the error exit."""
    stage: str = "start"
    currency: Optional[str] = None
    text: Optional[str] = None


def blend_confidence(stage_confidences: Dict[str, float]) -> float:
    """Weighted blend of the stages that ran; weights renormalized over them."""
    ran = {k: v for k, v in stage_confidences.items() if k in STAGE_WEIGHTS and v is not None}
    total_weight = sum(STAGE_WEIGHTS[k] for k in ran)
    if not total_weight:
        return 0.0
    return round(sum(STAGE_WEIGHTS[k] * v for k, v in ran.items()) / total_weight, 2)


def format_output(
    currency: str,
    classified: Sequence[ClassifiedAmount],
    stage_confidences: Dict[str, float],
    *,
    min_amount_confidence: float = 0.5,
    ok_confidence: float = 0.6,
) -> PipelineResult:
    """
    Filter, order and score classified amounts.

    Amounts below min_amount_confidence are dropped (exactly at the threshold
    is kept). Survivors are ordered by type priority, then by descending value.
    """
    kept = [a for a in classified if a.confidence >= min_amount_confidence]
    kept.sort(key=lambda a: (output_rank(a.type), -a.value))
    filtered = len(classified) - len(kept)
    confidence = blend_confidence(stage_confidences)

    notes = []
    if filtered:
        notes.append(f"filtered {filtered} low-confidence amount(s)")

    if not kept:
        logger.info(f"All {len(classified)} amount(s) fell below confidence {min_amount_confidence}")
        return PipelineResult(
            currency=currency,
            status=STATUS_ERROR,
            warnings=notes,
            error=NOTHING_ABOVE_THRESHOLD,
            confidence=confidence,
        )

    if confidence < ok_confidence:
        notes.append(f"low overall confidence: {confidence}")

    status = STATUS_WARNING if notes else STATUS_OK
    if notes:
        logger.info(f"Reporting status warning: {'; '.join(notes)}")
    return PipelineResult(
        currency=currency,
        amounts=kept,
        status=status,
        warnings=notes,
        confidence=confidence,
    )


class _BoundedOCR:
    """OCR engine facade whose extract_text is bounded by the context timeout."""

    def __init__(self, context: PipelineContext, timeout_s: float):
        self.context = context
        self.timeout_s = timeout_s

    def extract_text(self, data: bytes):
        return self.context.call(self.context.ocr.extract_text, data, timeout_s=self.timeout_s)


class AmountPipeline:
    """
    Orchestrates token extraction, normalization and classification.

    Collaborators (OCR engine, LLM client) come from the PipelineContext,
    which is built once per process and shared between pipelines.
    """

    def __init__(self, context: Optional[PipelineContext] = None, config: Optional[Dict[str, Any]] = None):
        self.context = context or PipelineContext(config)
        self.config = config if config is not None else self.context.config
        settings = dict(DEFAULT_SETTINGS)
        settings.update((self.config or {}).get("pipeline", {}) or {})
        self.settings = settings
        self.default_currency = str(settings["default_currency"])
        self.fallback = RegexAmountExtractor(default_currency=self.default_currency)

    @property
    def timeout_s(self) -> float:
        return float(self.settings.get("collaborator_timeout_s") or 0)

    def strategies(self) -> List[AmountExtractor]:
        """Extractors tried, in order, before the heuristic stages."""
        if not self.settings.get("use_llm"):
            return []
        client = self.context.llm
        if client is None:
            return []
        return [LLMAmountExtractor(client, default_currency=self.default_currency)]

    def process(self, data, *, from_file: bool = False) -> PipelineResult:
        """
        Detect and classify the amounts in a document.

        Args:
            data: Text, or image/PDF bytes
            from_file: The text came from an uploaded file rather than typed input.
                Informational only: it labels the run in the logs. File text is
                classified exactly like typed text.

        Returns:
            PipelineResult (never raises)
        """
        state = _RunState()
        try:
            return self._run(data, from_file, state)
        except NoiseGuardrailError as e:
            logger.info(f"Guardrail exit at {state.stage}: {e.reason}")
            return PipelineResult(
                currency=state.currency or self.default_currency,
                status=STATUS_NO_AMOUNTS,
                reason=e.reason,
            )
        except UnsupportedInputError as e:
            logger.warning(f"Unsupported input: {e}")
            return PipelineResult(
                currency=state.currency or self.default_currency,
                status=STATUS_ERROR,
                error=str(e),
            )
        except Exception as e:
            logger.exception(f"Pipeline failed at {state.stage}")
            return self._error_exit(data, state, e)

    def _run(self, data, from_file: bool, state: _RunState) -> PipelineResult:
        binary = isinstance(data, BINARY_TYPES)

        state.stage = "extraction"
        logger.info(f"Pipeline stage: extraction ({'binary' if binary else 'file text' if from_file else 'text'})")
        extraction = extract_numeric_tokens(
            data,
            ocr_engine=_BoundedOCR(self.context, self.timeout_s) if binary else None,
            default_currency=self.default_currency,
            min_tokens=int(self.settings["min_tokens"]),
        )
        state.currency = extraction.currency_hint
        state.text = extraction.text
        if extraction.status == STATUS_NO_AMOUNTS:
            raise NoiseGuardrailError(extraction.reason or NO_AMOUNTS_REASON)

        stage_confidences: Dict[str, float] = {}
        if binary:
            stage_confidences["ocr"] = extraction.confidence

        assisted = self._try_strategies(extraction.text, stage_confidences)
        if assisted is not None:
            return assisted

        state.stage = "normalization"
        logger.info("Pipeline stage: normalization")
        normalization = normalize_tokens(extraction.raw_tokens)
        if not normalization.normalized_amounts:
            raise NoiseGuardrailError(NO_VALID_AMOUNTS_REASON)
        stage_confidences["normalization"] = normalization.normalization_confidence

        state.stage = "classification"
        classification = self.classify(extraction.text, normalization.normalized_amounts)
        stage_confidences["classification"] = classification.confidence

        state.stage = "formatting"
        logger.info("Pipeline stage: formatting")
        return self._format(extraction.currency_hint, classification.amounts, stage_confidences)

    def classify(self, text: str, amounts: Sequence[float]) -> ClassificationResult:
        """
        Keyword classification against the text the amounts came from, typed or
        OCR'd. Positional roles are used only when there is no text to read.
        """
        if not (text or "").strip():
            logger.info("Pipeline stage: classification (positional, no text context)")
            return classify_by_position(amounts)
        logger.info("Pipeline stage: classification")
        return classify_amounts(
            text,
            amounts,
            window=int(self.settings["context_words"]),
            locations=locate_amounts(text),
        )

    def _try_strategies(self, text: str, stage_confidences: Dict[str, float]) -> Optional[PipelineResult]:
        for extractor in self.strategies():
            try:
                partial = self.context.call(extractor.extract, text, timeout_s=self.timeout_s)
            except ExternalCollaboratorError as e:
                logger.warning(f"{extractor.name} extractor failed, continuing: {e}")
                continue
            if not partial.amounts:
                logger.info(f"{extractor.name} extractor found no amounts ({partial.status})")
                continue
            logger.info(f"Using {len(partial.amounts)} amount(s) from {extractor.name} extractor")
            confidences = dict(stage_confidences, classification=partial.confidence)
            return self._format(partial.currency, partial.amounts, confidences)
        return None

    def _format(self, currency: str, classified, stage_confidences) -> PipelineResult:
        return format_output(
            currency,
            classified,
            stage_confidences,
            min_amount_confidence=float(self.settings["min_amount_confidence"]),
            ok_confidence=float(self.settings["ok_confidence"]),
        )

    def _error_exit(self, data, state: _RunState, error: Exception) -> PipelineResult:
        currency = state.currency or self.default_currency
        text = state.text if state.text is not None else (data if isinstance(data, str) else None)
        if text:
            try:
                partial = self.fallback.extract(text)
            except Exception:
                logger.exception("Regex fallback failed")
            else:
                if partial.amounts:
                    logger.warning(f"Recovered {len(partial.amounts)} amount(s) with regex fallback")
                    amounts = sorted(partial.amounts, key=lambda a: (output_rank(a.type), -a.value))
                    return PipelineResult(
                        currency=partial.currency,
                        amounts=amounts,
                        status=STATUS_OK,
                        confidence=partial.confidence,
                    )
                currency = partial.currency

        return PipelineResult(currency=currency, status=STATUS_ERROR, error=str(error))

"""
LLM Amount Extraction Client
============================
Uses an OpenAI-compatible chat completions API with TEXT prompts to extract
classified amounts. Retries transient failures with exponential backoff and
jitter, then escalates from the primary to the fallback model.
"""

import json
import logging
import os
import random
import re
import time
from typing import Any, Dict, List, Optional

import openai
from openai import OpenAI

from .errors import ExternalCollaboratorError

logger = logging.getLogger(__name__)

RETRYABLE_MARKERS = (
    "429", "quota", "rate limit", "too many requests",
    "unavailable", "temporarily", "timeout", "gateway", "internal error",
)

RETRYABLE_EXCEPTIONS = (
    openai.RateLimitError,
    openai.APITimeoutError,
    openai.APIConnectionError,
    openai.InternalServerError,
)

RESPONSE_SCHEMA = {
    "currency": "INR",
    "amounts": [
        {"type": "total_bill", "value": 1200, "source": "Total: INR 1200"},
        {"type": "paid", "value": 1000, "source": "Paid: 1000"},
        {"type": "due", "value": 200, "source": "Due: 200"},
    ],
    "status": "ok",
}

_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```")
_OBJECT_RE = re.compile(r"\{[\s\S]*\}")


def get_api_key() -> Optional[str]:
    return os.getenv("LLM_API_KEY") or os.getenv("OPENAI_API_KEY") or None


class LLMClient:
    """
    Extracts classified amounts from document text with an LLM.

    The underlying OpenAI client is created lazily on first use.
    """

    MODEL = "gpt-4o-mini"
    FALLBACK_MODEL = "gpt-4o"
    MAX_TOKENS = 512
    MAX_PROMPT_CHARS = 20000

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        fallback_model: Optional[str] = None,
        attempts_per_model: int = 3,
        initial_backoff_s: float = 1.0,
        max_backoff_s: float = 10.0,
        max_tokens: Optional[int] = None,
        timeout_s: Optional[float] = None,
        client: Optional[Any] = None,
    ):
        """
        Initialize the LLM client.

        Args:
            api_key: API key (default: LLM_API_KEY or OPENAI_API_KEY env var)
            base_url: Alternate OpenAI-compatible endpoint
            model: Primary model name
            fallback_model: Model used once the primary exhausts its attempts
            attempts_per_model: Attempts per model before escalating
            initial_backoff_s: First retry delay
            max_backoff_s: Upper bound on any retry delay
            max_tokens: Completion token limit
            timeout_s: Per-request timeout passed to the SDK
            client: Pre-built client object (tests, custom transports)
        """
        self.api_key = api_key or get_api_key()
        self.base_url = base_url
        self.model = model or self.MODEL
        self.fallback_model = fallback_model or self.FALLBACK_MODEL
        self.attempts_per_model = max(1, int(attempts_per_model))
        self.initial_backoff_s = initial_backoff_s
        self.max_backoff_s = max_backoff_s
        self.max_tokens = max_tokens or self.MAX_TOKENS
        self.timeout_s = timeout_s
        self.client = client

    @classmethod
    def from_config(cls, cfg: Dict[str, Any]) -> "LLMClient":
        llm_cfg = cfg.get("llm", {}) or {}
        return cls(
            base_url=llm_cfg.get("base_url") or None,
            model=llm_cfg.get("model"),
            fallback_model=llm_cfg.get("fallback_model"),
            attempts_per_model=int(llm_cfg.get("attempts_per_model", 3)),
            initial_backoff_s=float(llm_cfg.get("initial_backoff_s", 1.0)),
            max_backoff_s=float(llm_cfg.get("max_backoff_s", 10.0)),
            max_tokens=llm_cfg.get("max_tokens"),
            timeout_s=llm_cfg.get("timeout_s"),
        )

    def _get_client(self):
        """Get or create the OpenAI client."""
        if self.client is None:
            if not self.api_key:
                raise ExternalCollaboratorError("LLM_API_KEY environment variable not set")
            kwargs: Dict[str, Any] = {"api_key": self.api_key}
            if self.base_url:
                kwargs["base_url"] = self.base_url
            if self.timeout_s:
                kwargs["timeout"] = float(self.timeout_s)
            self.client = OpenAI(**kwargs)
        return self.client

    def process_document(self, text: str) -> Dict[str, Any]:
        """
        Extract amounts from document text.

        Returns:
            Partial pipeline result: {currency, amounts: [{type, value, source}], status}

        Raises:
            ExternalCollaboratorError: every model attempt failed, or the reply was not usable JSON
        """
        text = text or ""
        if not text.strip():
            return {"currency": "INR", "amounts": [], "status": "no_content"}
        if self.is_noisy(text):
            return {"currency": "INR", "amounts": [], "status": "noisy_content"}

        reply = self._generate_with_retry(self._build_prompt(text))
        return self.parse_response(reply)

    def _build_prompt(self, text: str) -> str:
        return f"""Extract financial amounts from this medical document. Return ONLY valid JSON, no explanation.

Use this exact schema:
{json.dumps(RESPONSE_SCHEMA, indent=2)}

Rules:
- currency: ISO code; use INR unless clearly specified otherwise
- type: one of total_bill, paid, due, tax, discount, other
- value: numeric, no symbols or commas; percentages are not amounts
- source: the original text snippet the value came from
- status: "ok" if amounts were found, "no_amounts_found" otherwise

DOCUMENT:
{text[:self.MAX_PROMPT_CHARS]}

JSON:"""

    def _generate_with_retry(self, prompt: str) -> str:
        last_error: Optional[Exception] = None

        for model in (self.model, self.fallback_model):
            for attempt in range(1, self.attempts_per_model + 1):
                try:
                    logger.info(f"LLM request with {model} (attempt {attempt}/{self.attempts_per_model})")
                    content = self._call_api(model, prompt)
                    if not content.strip():
                        raise ExternalCollaboratorError("Received empty response from LLM")
                    return content
                except Exception as e:
                    last_error = e
                    if self.is_retryable(e) and attempt < self.attempts_per_model:
                        delay = self.backoff_delay(attempt)
                        logger.warning(f"Retryable LLM error ({e}); retrying in {delay:.2f}s")
                        time.sleep(delay)
                        continue
                    logger.warning(f"LLM attempt {attempt} with {model} failed: {e}")
                    break

        raise ExternalCollaboratorError(f"All LLM model attempts failed: {last_error}")

    def _call_api(self, model: str, prompt: str) -> str:
        client = self._get_client()
        response = client.chat.completions.create(
            model=model,
            messages=[
                {
                    "role": "system",
                    "content": "You are a billing document parser. Return only valid JSON, no markdown or explanation."
                },
                {"role": "user", "content": prompt},
            ],
            max_tokens=self.max_tokens,
            temperature=0.1,
        )
        return (response.choices[0].message.content or "").strip()

    @staticmethod
    def is_retryable(error: Exception) -> bool:
        if isinstance(error, RETRYABLE_EXCEPTIONS):
            return True
        message = str(error).lower()
        return any(marker in message for marker in RETRYABLE_MARKERS)

    def backoff_delay(self, attempt: int) -> float:
        """Exponential backoff with up to 30% jitter, capped at max_backoff_s."""
        base = min(self.initial_backoff_s * (2 ** (attempt - 1)), self.max_backoff_s)
        jitter = random.random() * 0.3 * base
        return min(base + jitter, self.max_backoff_s)

    @staticmethod
    def is_noisy(text: str) -> bool:
        """Too short, or dominated by digits or symbols, to be worth a model call."""
        if len(re.sub(r"\s+", "", text)) < 10:
            return True
        digit_ratio = len(re.sub(r"\D", "", text)) / len(text)
        special_ratio = len(re.sub(r"[A-Za-z0-9\s]", "", text)) / len(text)
        return digit_ratio > 0.5 or special_ratio > 0.6

    @classmethod
    def parse_response(cls, reply: str) -> Dict[str, Any]:
        """
        Parse a model reply into a partial pipeline result.

        Raises:
            ExternalCollaboratorError: no JSON object, or missing currency/amounts
        """
        content = reply.strip()
        fenced = _FENCE_RE.search(content)
        if fenced:
            content = fenced.group(1).strip()
        match = _OBJECT_RE.search(content)
        if not match:
            raise ExternalCollaboratorError("No JSON object found in LLM response")

        try:
            data = json.loads(match.group())
        except json.JSONDecodeError as e:
            raise ExternalCollaboratorError(f"JSON parse error: {e}") from e

        if not isinstance(data, dict) or not isinstance(data.get("amounts"), list):
            raise ExternalCollaboratorError("Invalid LLM response structure")

        amounts = cls._normalize_amounts(data["amounts"])
        currency = str(data.get("currency") or "INR").upper()
        return {
            "currency": currency,
            "amounts": amounts,
            "status": "ok" if amounts else "no_amounts_found",
        }

    @staticmethod
    def _normalize_amounts(raw: List[Any]) -> List[Dict[str, Any]]:
        out = []
        for item in raw:
            if not isinstance(item, dict) or not item.get("type") or item.get("value") is None:
                continue
            try:
                value = abs(float(str(item["value"]).replace(",", "")))
            except ValueError:
                continue
            if value <= 0:
                continue
            amount_type = str(item["type"]).lower()
            out.append({
                "type": amount_type,
                "value": value,
                "source": item.get("source") or f"text: '{amount_type}: {item['value']}'",
            })
        return out

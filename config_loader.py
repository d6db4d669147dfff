"""
YAML-backed configuration loader with environment-variable overrides.

Design goals:
- Minimal dependencies and minimal magic
- Built-in defaults, then config.yml, then environment variables
- Environment variables override deployment-specific values (endpoints, feature flags)
"""

from __future__ import annotations

import os
from typing import Any, Dict, Optional

import yaml

DEFAULT_CONFIG: Dict[str, Any] = {
    "logging": {
        "level": "INFO",
        "format": "%(asctime)s %(levelname)s %(name)s %(message)s",
    },
    "pipeline": {
        "default_currency": "INR",
        "min_tokens": 2,
        "min_amount_confidence": 0.5,
        "ok_confidence": 0.6,
        "context_words": 5,
        "use_llm": False,
        "collaborator_timeout_s": 60,
    },
    "ocr": {
        "language": "eng",
        "dpi": 200,
        "config": "--oem 3 --psm 6",
    },
    "llm": {
        "base_url": None,
        "model": "gpt-4o-mini",
        "fallback_model": "gpt-4o",
        "attempts_per_model": 3,
        "initial_backoff_s": 1.0,
        "max_backoff_s": 10.0,
        "max_tokens": 512,
    },
}


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge override into base (override wins)."""
    out: Dict[str, Any] = dict(base)
    for k, v in override.items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _deep_merge(out[k], v)
        else:
            out[k] = v
    return out


def _parse_bool(value: Optional[str], default: Optional[bool] = None) -> Optional[bool]:
    if value is None:
        return default
    v = value.strip().lower()
    if v in ("1", "true", "yes", "y", "on"):
        return True
    if v in ("0", "false", "no", "n", "off"):
        return False
    return default


def _parse_number(value: Optional[str], cast=float) -> Optional[Any]:
    if value is None or not value.strip():
        return None
    try:
        return cast(value.strip())
    except ValueError:
        return None


def _env_override_dict() -> Dict[str, Any]:
    """
    Map env vars to config keys.
    Keep this small and explicit.
    """
    overrides: Dict[str, Any] = {}

    # Logging
    log_level = os.getenv("LOG_LEVEL")
    if log_level:
        overrides = _deep_merge(overrides, {"logging": {"level": log_level}})

    # Pipeline
    currency = os.getenv("AMOUNTS_DEFAULT_CURRENCY")
    if currency:
        overrides = _deep_merge(overrides, {"pipeline": {"default_currency": currency.strip().upper()}})

    use_llm = _parse_bool(os.getenv("AMOUNTS_USE_LLM"))
    if use_llm is not None:
        overrides = _deep_merge(overrides, {"pipeline": {"use_llm": use_llm}})

    timeout = _parse_number(os.getenv("AMOUNTS_COLLABORATOR_TIMEOUT_S"))
    if timeout is not None:
        overrides = _deep_merge(overrides, {"pipeline": {"collaborator_timeout_s": timeout}})

    # OCR
    ocr_language = os.getenv("OCR_LANGUAGE")
    if ocr_language:
        overrides = _deep_merge(overrides, {"ocr": {"language": ocr_language}})

    ocr_dpi = _parse_number(os.getenv("OCR_DPI"), int)
    if ocr_dpi is not None:
        overrides = _deep_merge(overrides, {"ocr": {"dpi": ocr_dpi}})

    # LLM endpoint and models (the API key itself stays in the environment)
    for env_name, key in (("LLM_BASE_URL", "base_url"), ("LLM_MODEL", "model"), ("LLM_FALLBACK_MODEL", "fallback_model")):
        value = os.getenv(env_name)
        if value:
            overrides = _deep_merge(overrides, {"llm": {key: value}})

    return overrides


def load_config(path: Optional[str] = None) -> Dict[str, Any]:
    """
    Load config.yml over the built-in defaults and apply environment overrides.
    """
    config_path = path or os.getenv("APP_CONFIG_PATH", "config.yml")
    if not os.path.exists(config_path):
        # Built-in defaults only
        cfg: Dict[str, Any] = {}
    else:
        with open(config_path, "r", encoding="utf-8") as f:
            cfg = yaml.safe_load(f) or {}

    return _deep_merge(_deep_merge(DEFAULT_CONFIG, cfg), _env_override_dict())


_CONFIG_CACHE: Optional[Dict[str, Any]] = None


def get_config(path: Optional[str] = None, *, force_reload: bool = False) -> Dict[str, Any]:
    global _CONFIG_CACHE
    if _CONFIG_CACHE is None or force_reload:
        _CONFIG_CACHE = load_config(path)
    return _CONFIG_CACHE

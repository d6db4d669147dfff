"""
Tests for config_loader (defaults, YAML merge, environment overrides) and logging_setup.
"""

import logging

import pytest

import config_loader
from config_loader import get_config, load_config
from logging_setup import document_run

ENV_VARS = (
    "APP_CONFIG_PATH", "LOG_LEVEL", "AMOUNTS_DEFAULT_CURRENCY", "AMOUNTS_USE_LLM",
    "AMOUNTS_COLLABORATOR_TIMEOUT_S", "OCR_LANGUAGE", "OCR_DPI",
    "LLM_BASE_URL", "LLM_MODEL", "LLM_FALLBACK_MODEL",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr(config_loader, "_CONFIG_CACHE", None)


def test_defaults_without_file(tmp_path):
    cfg = load_config(str(tmp_path / "missing.yml"))
    assert cfg["pipeline"]["default_currency"] == "INR"
    assert cfg["pipeline"]["min_amount_confidence"] == 0.5
    assert cfg["pipeline"]["use_llm"] is False
    assert cfg["ocr"]["config"] == "--oem 3 --psm 6"
    assert cfg["llm"]["fallback_model"] == "gpt-4o"


def test_yaml_merges_over_defaults(tmp_path):
    path = tmp_path / "config.yml"
    path.write_text("pipeline:\n  min_tokens: 3\nllm:\n  model: local-model\n", encoding="utf-8")

    cfg = load_config(str(path))

    assert cfg["pipeline"]["min_tokens"] == 3
    assert cfg["pipeline"]["ok_confidence"] == 0.6
    assert cfg["llm"]["model"] == "local-model"
    assert cfg["llm"]["attempts_per_model"] == 3


def test_environment_overrides(tmp_path, monkeypatch):
    path = tmp_path / "config.yml"
    path.write_text("pipeline:\n  use_llm: false\n", encoding="utf-8")
    monkeypatch.setenv("APP_CONFIG_PATH", str(path))
    monkeypatch.setenv("LOG_LEVEL", "DEBUG")
    monkeypatch.setenv("AMOUNTS_DEFAULT_CURRENCY", "usd")
    monkeypatch.setenv("AMOUNTS_USE_LLM", "yes")
    monkeypatch.setenv("AMOUNTS_COLLABORATOR_TIMEOUT_S", "15")
    monkeypatch.setenv("OCR_DPI", "300")
    monkeypatch.setenv("LLM_BASE_URL", "http://localhost:8000/v1")

    cfg = load_config()

    assert cfg["logging"]["level"] == "DEBUG"
    assert cfg["pipeline"]["default_currency"] == "USD"
    assert cfg["pipeline"]["use_llm"] is True
    assert cfg["pipeline"]["collaborator_timeout_s"] == 15.0
    assert cfg["ocr"]["dpi"] == 300
    assert cfg["llm"]["base_url"] == "http://localhost:8000/v1"


def test_invalid_env_values_are_ignored(tmp_path, monkeypatch):
    monkeypatch.setenv("OCR_DPI", "high")
    monkeypatch.setenv("AMOUNTS_USE_LLM", "maybe")

    cfg = load_config(str(tmp_path / "missing.yml"))

    assert cfg["ocr"]["dpi"] == 200
    assert cfg["pipeline"]["use_llm"] is False


def test_get_config_caches(tmp_path):
    path = tmp_path / "config.yml"
    path.write_text("pipeline:\n  min_tokens: 4\n", encoding="utf-8")

    first = get_config(str(path))
    path.write_text("pipeline:\n  min_tokens: 9\n", encoding="utf-8")

    assert get_config() is first
    assert get_config(str(path), force_reload=True)["pipeline"]["min_tokens"] == 9


def test_document_run_logs_status(caplog):
    with caplog.at_level(logging.INFO, logger="run"):
        with document_run("receipt.txt", run_id="abc123") as run:
            run["status"] = "ok"

    assert "receipt.txt status=ok" in caplog.text
    assert "run_id=abc123" in caplog.text

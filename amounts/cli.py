"""
Command Line Interface
======================
Runs the amount detection pipeline on typed text, a text file, or an image/PDF
and prints the JSON result. Exits 1 when the result status is 'error'.
"""

import argparse
import json
import sys
from pathlib import Path
from typing import Optional, Sequence

from config_loader import get_config
from logging_setup import document_run, setup_logging

from .context import PipelineContext
from .pipeline import STATUS_ERROR, AmountPipeline

TEXT_SUFFIXES = {".txt", ".text"}


def read_input(args: argparse.Namespace):
    """
    Returns (data, from_file, source):
    - --text: typed text
    - --file *.txt: text read from an uploaded file
    - --file anything else: raw bytes (image or PDF) for OCR
    - neither: text from stdin
    """
    if args.text is not None:
        return args.text, False, "text"
    if args.file:
        path = Path(args.file).expanduser()
        if path.suffix.lower() in TEXT_SUFFIXES:
            return path.read_text(encoding="utf-8"), True, str(path)
        return path.read_bytes(), True, str(path)
    return sys.stdin.read(), False, "stdin"


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Detect and classify monetary amounts in bills and receipts.")
    source = parser.add_mutually_exclusive_group()
    source.add_argument("--text", help="Document text to analyse")
    source.add_argument("--file", help="Text file, image or PDF to analyse (stdin is read when neither is given)")
    parser.add_argument("--config", help="Path to config.yml (default: APP_CONFIG_PATH or ./config.yml)")
    parser.add_argument(
        "--llm",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Try LLM-assisted extraction before the heuristic pipeline (default from config)",
    )
    args = parser.parse_args(argv)

    cfg = get_config(args.config, force_reload=bool(args.config))
    if args.llm is not None:
        cfg = dict(cfg, pipeline=dict(cfg.get("pipeline", {}), use_llm=args.llm))
    setup_logging(cfg)

    try:
        data, from_file, label = read_input(args)
    except OSError as e:
        print(f"Cannot read input: {e}", file=sys.stderr)
        return 1

    context = PipelineContext(cfg)
    try:
        with document_run(label) as run:
            result = AmountPipeline(context).process(data, from_file=from_file)
            run["status"] = result.status
    finally:
        context.shutdown(wait=False)

    print(json.dumps(result.to_dict(), indent=2, ensure_ascii=False))
    return 1 if result.status == STATUS_ERROR else 0


if __name__ == "__main__":
    sys.exit(main())

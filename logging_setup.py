"""
Central logging setup.

- Uses stdlib logging (no external deps)
"""

from __future__ import annotations

import contextlib
import logging
import logging.config
import time
import uuid
from typing import Any, Dict, Iterator, Optional


def setup_logging(cfg: Optional[Dict[str, Any]] = None) -> None:
    cfg = cfg or {}
    log_cfg = cfg.get("logging", {}) if isinstance(cfg, dict) else {}
    level = str(log_cfg.get("level", "INFO")).upper()
    fmt = str(log_cfg.get("format", "%(asctime)s %(levelname)s %(name)s %(message)s"))

    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {"default": {"format": fmt}},
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "default",
                    "stream": "ext://sys.stderr",
                }
            },
            "root": {"handlers": ["console"], "level": level},
        }
    )


@contextlib.contextmanager
def document_run(source: str, run_id: Optional[str] = None) -> Iterator[Dict[str, Any]]:
    """
    Log one document's trip through the pipeline with a run id and duration.

    The yielded dict may be given a "status" entry, which is included in the
    closing log line.
    """
    logger = logging.getLogger("run")
    run: Dict[str, Any] = {"run_id": run_id or str(uuid.uuid4()), "source": source}
    start = time.time()
    try:
        yield run
    finally:
        dur_ms = round((time.time() - start) * 1000, 2)
        logger.info(
            "%s status=%s dur_ms=%s run_id=%s",
            run["source"],
            run.get("status"),
            dur_ms,
            run["run_id"],
        )

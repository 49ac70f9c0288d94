from __future__ import annotations

import logging
import os
from logging.handlers import RotatingFileHandler
from typing import Any, MutableMapping, Optional, Tuple

LOGGER_NAME = "intentiq"


def get_logger(logger: Optional[logging.Logger] = None) -> logging.Logger:
    return logger if logger is not None else logging.getLogger(LOGGER_NAME)


class TraceLogger(logging.LoggerAdapter):
    """Prefixes every message with the resolution trace id: ``[<trace_id>] msg``."""

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> Tuple[Any, MutableMapping[str, Any]]:
        return f"[{self.extra.get('trace_id', '-')}] {msg}", kwargs


def trace_logger(trace_id: str, logger: Optional[logging.Logger] = None) -> TraceLogger:
    return TraceLogger(get_logger(logger), {"trace_id": trace_id})


def setup_logging(log_dir: str = "logs", *, level: int = logging.INFO) -> logging.Logger:
    """
    Configure the package logger once: rotating text log under ``log_dir`` plus
    a bare console handler. Safe to call repeatedly.
    """
    os.makedirs(log_dir, exist_ok=True)

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)
    logger.propagate = False

    if not any(isinstance(h, RotatingFileHandler) for h in logger.handlers):
        h = RotatingFileHandler(os.path.join(log_dir, "intentiq.log"), maxBytes=1_000_000, backupCount=5, encoding="utf-8")
        h.setFormatter(logging.Formatter("%(asctime)s | %(levelname)s | %(name)s | %(message)s"))
        logger.addHandler(h)

    if not any(isinstance(h, logging.StreamHandler) and not isinstance(h, RotatingFileHandler) for h in logger.handlers):
        sh = logging.StreamHandler()
        sh.setFormatter(logging.Formatter("%(levelname)s %(message)s"))
        logger.addHandler(sh)

    return logger

from __future__ import annotations

import contextlib
import contextvars
import logging
import os
import uuid
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Iterator, List, Optional

LOG_FILE = Path(os.environ.get("VOIPTAP_LOG_FILE", "logs/app.log"))
LOG_FORMAT = (
    "%(asctime)s | %(levelname)s | %(category)s | cid=%(correlation_id)s | %(name)s | "
    "%(filename)s:%(lineno)d %(funcName)s() | %(message)s"
)
DEFAULT_CATEGORY = "CONFIG"
NOISY_LOGGERS = ("scapy.runtime", "scapy.loading", "uvicorn.access", "asyncio")

# Session id of the capture being processed, or "-" outside any session.
_correlation_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("correlation_id", default="-")


def short_uuid() -> str:
    return uuid.uuid4().hex[:8]


@contextlib.contextmanager
def correlation_context(correlation_id: Optional[str] = None) -> Iterator[None]:
    token = _correlation_id_var.set(correlation_id or short_uuid())
    try:
        yield
    finally:
        _correlation_id_var.reset(token)


class ContextEnricherFilter(logging.Filter):
    """Stamps ``category`` and ``correlation_id`` on records that lack them."""

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003
        if not getattr(record, "category", None):
            record.category = DEFAULT_CATEGORY
        if not getattr(record, "correlation_id", None):
            record.correlation_id = _correlation_id_var.get()
        return True


def _level_from_env(name: str, default: int) -> int:
    return getattr(logging, os.environ.get(name, "").strip().upper(), default)


def _build_handlers() -> List[logging.Handler]:
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if os.environ.get("VOIPTAP_LOG_TO_FILE", "1").strip().lower() not in {"0", "false", "no"}:
        LOG_FILE.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(RotatingFileHandler(LOG_FILE, maxBytes=10 * 1024 * 1024, backupCount=10, encoding="utf-8"))
    return handlers


def setup_logging() -> None:
    """Install the console and rotating file handlers on the root logger, once per process."""
    root_logger = logging.getLogger()
    root_logger.setLevel(_level_from_env("VOIPTAP_LOG_LEVEL", logging.INFO))
    if getattr(root_logger, "_voiptap_logging_installed", False):
        return

    formatter = logging.Formatter(fmt=LOG_FORMAT)
    enricher = ContextEnricherFilter()
    for handler in _build_handlers():
        handler.setFormatter(formatter)
        handler.addFilter(enricher)
        root_logger.addHandler(handler)

    external_level = _level_from_env("VOIPTAP_EXTERNAL_LIB_LOG_LEVEL", logging.WARNING)
    for noisy in NOISY_LOGGERS:
        logging.getLogger(noisy).setLevel(external_level)
    root_logger._voiptap_logging_installed = True  # type: ignore[attr-defined]

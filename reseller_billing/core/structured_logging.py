"""
Structured logging with structlog.

Configures structlog to output JSON lines to stderr and a rotating file.
Backward-compatible with stdlib logging: the billing services keep using
``logging.getLogger(__name__)`` and their records get enriched with the
shared structlog processors, including the active charge cycle id.
"""
from __future__ import annotations

import logging
import logging.handlers
import os
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator

import structlog

# ── Context vars for correlation ──────────────────────────────────────
cycle_id_var: ContextVar[str | None] = ContextVar("cycle_id", default=None)
reseller_id_var: ContextVar[int | None] = ContextVar("reseller_id", default=None)

APP_VERSION = "1.0.0"
SERVICE_NAME = "reseller-billing"


def _inject_context(logger_name: str, method_name: str, event_dict: dict) -> dict:
    """Structlog processor: inject cycle/reseller context from contextvars."""
    event_dict["service"] = SERVICE_NAME
    event_dict["version"] = APP_VERSION

    cid = cycle_id_var.get(None)
    if cid:
        event_dict["cycle_id"] = cid

    rid = reseller_id_var.get(None)
    if rid is not None:
        event_dict["reseller_id"] = rid

    return event_dict


def _lowercase_level(logger_name: str, method_name: str, event_dict: dict) -> dict:
    level = event_dict.get("level")
    if level:
        event_dict["level"] = level.lower()
    return event_dict


@contextmanager
def bind_cycle(cycle_id: str) -> Iterator[None]:
    """Tag every log record emitted inside the block with *cycle_id*."""
    token = cycle_id_var.set(cycle_id)
    try:
        yield
    finally:
        cycle_id_var.reset(token)


@contextmanager
def bind_reseller(reseller_id: int) -> Iterator[None]:
    token = reseller_id_var.set(reseller_id)
    try:
        yield
    finally:
        reseller_id_var.reset(token)


def setup_logging(
    log_dir: str = "logs",
    log_file: str = "reseller_billing.jsonl",
    max_bytes: int = 10 * 1024 * 1024,  # 10MB
    backup_count: int = 5,
    log_level: int | str = logging.INFO,
) -> None:
    """Initialize structlog + stdlib logging with JSON output and rotation.

    Call once at process startup (the CLI does this before any work).
    """
    os.makedirs(log_dir, exist_ok=True)
    log_path = os.path.join(log_dir, log_file)

    # ── Shared processors (used by both structlog and stdlib bridge) ──
    shared_processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        _lowercase_level,
        structlog.stdlib.add_logger_name,
        _inject_context,
        structlog.processors.TimeStamper(fmt="iso", utc=True, key="ts"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
    )

    # ── Handlers ─────────────────────────────────────────────────────
    try:
        file_handler = logging.handlers.RotatingFileHandler(
            log_path,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
    except OSError:
        # Unwritable log dir: stderr only
        file_handler = None

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(log_level)
    root.addHandler(console_handler)
    if file_handler:
        root.addHandler(file_handler)

    # Quiet noisy third-party loggers
    for noisy in ("httpcore", "httpx", "sqlalchemy.engine", "alembic"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

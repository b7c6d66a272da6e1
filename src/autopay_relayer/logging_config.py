"""Structured logging for the relayer.

Loops bind the chain and policy they are working on into context vars,
and every record emitted while they are set carries those fields. The
JSON formatter also copies through anything passed via ``extra=``.
"""
from __future__ import annotations

import json
import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Iterator, Optional

chain_id_var: ContextVar[Optional[int]] = ContextVar("chain_id", default=None)
policy_id_var: ContextVar[Optional[str]] = ContextVar("policy_id", default=None)

_RESERVED_ATTRS = frozenset(
    (
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "message",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "thread",
        "threadName",
        "taskName",
        "exc_info",
        "exc_text",
        "stack_info",
        "chain_id",
        "policy_id",
    )
)


class RelayerContextFilter(logging.Filter):
    """Logging filter that adds chain and policy context to log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "chain_id"):
            record.chain_id = chain_id_var.get()
        if not hasattr(record, "policy_id"):
            record.policy_id = policy_id_var.get()
        return True


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        chain_id = getattr(record, "chain_id", None)
        if chain_id is not None:
            log_data["chain_id"] = chain_id

        policy_id = getattr(record, "policy_id", None)
        if policy_id:
            log_data["policy_id"] = policy_id

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS:
                log_data[key] = value

        return json.dumps(log_data, default=str)


def setup_logging(level: str = "info", json_format: bool = True) -> None:
    """
    Configure logging for the relayer process.

    Args:
        level: Logging level name, case-insensitive
        json_format: Use JSON structured logging (True) or a plain text format (False)
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    if json_format:
        formatter: logging.Formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - [chain=%(chain_id)s] %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    console_handler.addFilter(RelayerContextFilter())
    root_logger.addHandler(console_handler)

    # Reduce noise from third-party libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("asyncpg").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


@contextmanager
def bind_chain(chain_id: int) -> Iterator[None]:
    """Attach a chain id to every record logged inside the block."""
    token = chain_id_var.set(chain_id)
    try:
        yield
    finally:
        chain_id_var.reset(token)


@contextmanager
def bind_policy(policy_id: str) -> Iterator[None]:
    """Attach a policy id to every record logged inside the block."""
    token = policy_id_var.set(policy_id)
    try:
        yield
    finally:
        policy_id_var.reset(token)

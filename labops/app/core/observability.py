"""
Observability helpers.

Correlation IDs and structured logging context for units of work.
"""

import logging
import time
import uuid
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

from labops.app.core.config import settings

# Configure structured logger
logger = logging.getLogger("labops")

OUTCOME_OK = "ok"
OUTCOME_REJECTED = "rejected"
OUTCOME_DENIED = "denied"
OUTCOME_FAILED = "failed"


def new_correlation_id() -> str:
    """Generate a correlation ID linking the events of one unit of work."""
    return str(uuid.uuid4())


def configure_logging(level: Optional[int] = None) -> None:
    """Install a basic handler for the package logger (idempotent)."""
    if level is None:
        level = logging.DEBUG if settings.debug else logging.INFO
    logger.setLevel(level)
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s")
        )
        logger.addHandler(handler)


class OperationTracker:
    """Mutable outcome holder yielded by ``track_operation``."""

    def __init__(self, operation: str, correlation_id: str, context: Dict[str, Any]):
        self.operation = operation
        self.correlation_id = correlation_id
        self.context = context
        self.outcome = OUTCOME_OK

    def mark(self, outcome: str, **extra: Any) -> None:
        self.outcome = outcome
        self.context.update(extra)


@contextmanager
def track_operation(
    operation: str,
    correlation_id: Optional[str] = None,
    **context: Any,
) -> Iterator[OperationTracker]:
    """
    Time a unit of work and emit one structured log line for it.

    Level follows the outcome: ok -> INFO, rejected/denied -> WARNING,
    failed (exception escaped) -> ERROR.
    """
    tracker = OperationTracker(operation, correlation_id or new_correlation_id(), dict(context))
    start_time = time.time()
    try:
        yield tracker
    except Exception:
        tracker.outcome = OUTCOME_FAILED
        raise
    finally:
        duration_ms = (time.time() - start_time) * 1000
        log_data = {
            "operation": operation,
            "correlation_id": tracker.correlation_id,
            "outcome": tracker.outcome,
            "duration_ms": round(duration_ms, 2),
            **tracker.context,
        }
        if tracker.outcome == OUTCOME_FAILED:
            logger.error("Operation Failed", extra=log_data)
        elif tracker.outcome in (OUTCOME_REJECTED, OUTCOME_DENIED):
            logger.warning("Operation Rejected", extra=log_data)
        else:
            logger.info("Operation Completed", extra=log_data)

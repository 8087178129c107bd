"""Centralised observability helpers for structured pipeline logging."""

from __future__ import annotations

import logging
import time
import traceback
from contextlib import contextmanager
from typing import Any, Iterator, Optional

LOGGER = logging.getLogger("ragdigest.telemetry")


def _format_exception(error: BaseException) -> str:
    return "".join(traceback.format_exception(error.__class__, error, error.__traceback__))


def log_event(
    logger: Optional[logging.Logger],
    step: str,
    *,
    level: str = "info",
    fingerprint: str | None = None,
    duration_ms: float | None = None,
    exc: BaseException | str | None = None,
    details: dict[str, Any] | None = None,
    **payload: Any,
) -> None:
    """Emit a structured log event with the agreed-upon schema."""

    logger = logger or LOGGER
    event: dict[str, Any] = {"step": step, "module": logger.name}
    if fingerprint:
        event["fingerprint"] = fingerprint
    if duration_ms is not None:
        event["duration_ms"] = round(duration_ms, 3)
    if details is not None:
        event["details"] = details
    event.update(payload)

    exc_info = None
    if exc is not None:
        if isinstance(exc, BaseException):
            event["exc"] = _format_exception(exc)
            exc_info = (exc.__class__, exc, exc.__traceback__)
        else:
            event["exc"] = str(exc)

    log_method = getattr(logger, level.lower(), logger.info)
    log_method(event, exc_info=exc_info)


def emit_stage_event(
    stage: str,
    status: str,
    *,
    duration_ms: float | None = None,
    fingerprint: str | None = None,
    **details: Any,
) -> None:
    log_event(
        LOGGER,
        f"stage.{stage}.{status}",
        fingerprint=fingerprint,
        duration_ms=duration_ms,
        details=details or None,
    )


def emit_chunk_retry(*, chunk_index: int, attempt: int, delay_seconds: float, error: str, rate_limited: bool) -> None:
    details = {
        "chunk": chunk_index + 1,
        "attempt": attempt,
        "delay_seconds": delay_seconds,
        "rate_limited": rate_limited,
        "error": error,
    }
    log_event(LOGGER, "analysis.chunk.retry", level="warning", details=details)


def emit_chunk_failure(*, chunk_index: int, attempts: int, error: str) -> None:
    details = {"chunk": chunk_index + 1, "attempts": attempts, "error": error}
    log_event(LOGGER, "analysis.chunk.failed", level="error", details=details)


def emit_cache_event(action: str, *, fingerprint: str, phase: str, reason: str | None = None) -> None:
    details: dict[str, Any] = {"phase": phase}
    if reason:
        details["reason"] = reason
    level = "warning" if action == "error" else "info"
    log_event(LOGGER, f"cache.{action}", level=level, fingerprint=fingerprint, details=details)


def emit_budget_event(
    step: str,
    *,
    estimated_tokens: int,
    limit: int,
    sections: int | None = None,
    compressed: int | None = None,
) -> None:
    details: dict[str, Any] = {"estimated_tokens": estimated_tokens, "limit": limit}
    if sections is not None:
        details["sections"] = sections
    if compressed is not None:
        details["compressed"] = compressed
    log_event(LOGGER, f"budget.{step}", details=details)


def emit_stream_event(status: str, *, tokens: int, duration_ms: float | None = None) -> None:
    log_event(LOGGER, f"consolidation.stream.{status}", duration_ms=duration_ms, details={"tokens": tokens})


def emit_exception(
    *,
    module: str,
    error: BaseException,
    fingerprint: str | None = None,
    suggestion: str | None = None,
) -> None:
    details = {"module": module}
    if suggestion:
        details["suggestion"] = suggestion
    log_event(
        LOGGER,
        "exception",
        level="error",
        fingerprint=fingerprint,
        details=details,
        exc=error,
    )


@contextmanager
def traced_duration(step: str, *, logger: Optional[logging.Logger] = None, **fields: Any) -> Iterator[None]:
    start = time.perf_counter()
    log_event(logger or LOGGER, f"{step}.start", details=fields)
    try:
        yield
    except Exception as error:
        log_event(
            logger or LOGGER,
            f"{step}.error",
            level="error",
            duration_ms=(time.perf_counter() - start) * 1000.0,
            details=fields,
            exc=error,
        )
        raise
    end = time.perf_counter()
    log_event(
        logger or LOGGER,
        f"{step}.complete",
        duration_ms=(end - start) * 1000.0,
        details=fields,
    )


__all__ = [
    "emit_budget_event",
    "emit_cache_event",
    "emit_chunk_failure",
    "emit_chunk_retry",
    "emit_exception",
    "emit_stage_event",
    "emit_stream_event",
    "log_event",
    "traced_duration",
]

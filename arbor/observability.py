"""
ARBOR Operation Logging

Every composition operation leaves one structured record when it finishes.
A successful re-parenting logs as

    {"timestamp": "...", "level": "info", "logger": "arbor.protocol",
     "message": "update_non_fungible_target ok", "correlation_id": "corr-...",
     "span_id": "9f1c...", "operation": "update_non_fungible_target",
     "outcome": "ok", "source": "0x11..:1", "target": "0x11..:3",
     "duration_ms": 0.41}

and a failed one additionally carries the ArborError code and the number of
journal steps that were compensated. Operations run inside an OperationSpan
that owns the span id seen on every record logged during the operation; at
debug level the span is logged once more when it closes.

Records travel through stdlib logging. OperationHandler renders them as JSON
lines or key=value text according to ``observability.log_format``.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import contextvars
import json
import logging
import sys
import time
import traceback
import uuid
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Optional

from arbor.config import get_config

correlation_id_var: contextvars.ContextVar[str] = contextvars.ContextVar(
    "correlation_id", default=""
)
span_id_var: contextvars.ContextVar[str] = contextvars.ContextVar(
    "span_id", default=""
)

# Attributes promoted to top-level record fields; anything else lands in details.
OPERATION_FIELDS = (
    "operation",
    "outcome",
    "source",
    "target",
    "recipient",
    "resource",
    "amount",
    "error_code",
    "compensated",
    "duration_ms",
    "span_id",
    "parent_span_id",
)


@dataclass
class OperationRecord:
    """One rendered log line."""
    timestamp: str
    level: str
    logger: str
    message: str
    correlation_id: str = ""
    span_id: str = ""
    parent_span_id: str = ""
    operation: str = ""
    outcome: str = ""
    source: str = ""
    target: str = ""
    recipient: str = ""
    resource: str = ""
    amount: str = ""
    error_code: str = ""
    compensated: Optional[int] = None
    duration_ms: Optional[float] = None
    details: Dict[str, Any] = field(default_factory=dict)
    exception: Optional[str] = None

    @classmethod
    def from_log_record(cls, record: logging.LogRecord) -> "OperationRecord":
        fields = {
            name: getattr(record, name)
            for name in OPERATION_FIELDS
            if getattr(record, name, None) is not None
        }
        fields.setdefault("span_id", span_id_var.get())
        entry = cls(
            timestamp=datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            level=record.levelname.lower(),
            logger=record.name,
            message=record.getMessage(),
            correlation_id=correlation_id_var.get(),
            details=dict(getattr(record, "details", {})),
            **fields,
        )
        if record.exc_info:
            entry.exception = "".join(traceback.format_exception(*record.exc_info))
        return entry

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None and v != "" and v != {}}

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)

    def to_text(self) -> str:
        parts = [self.timestamp, self.level.upper(), self.logger, self.message]
        for name in ("correlation_id",) + OPERATION_FIELDS:
            value = getattr(self, name)
            if value is None or value == "":
                continue
            if name == "duration_ms":
                value = f"{value:.2f}"
            parts.append(f"{name}={value}")
        parts.extend(f"{k}={v}" for k, v in sorted(self.details.items()))
        line = " ".join(parts)
        if self.exception:
            line += "\n" + self.exception
        return line


class OperationHandler(logging.Handler):
    """Writes OperationRecords as JSON lines or key=value text."""

    def __init__(self, stream: Any = None, fmt: str = "json"):
        super().__init__()
        self._stream = stream
        self.fmt = fmt

    @property
    def stream(self) -> Any:
        # Resolved per record so redirected stderr is honoured.
        return self._stream or sys.stderr

    def emit(self, record: logging.LogRecord) -> None:
        try:
            entry = OperationRecord.from_log_record(record)
            line = entry.to_json() if self.fmt == "json" else entry.to_text()
            self.stream.write(line + "\n")
            self.stream.flush()
        except Exception:
            self.handleError(record)


class ArborLogger:
    """
    Structured logger for one ARBOR component (``arbor.<component>``).

    Keyword arguments named in OPERATION_FIELDS become record fields; the rest
    are collected under ``details``.
    """

    def __init__(self, component: str, level: Optional[str] = None, fmt: Optional[str] = None):
        observability = get_config().observability
        level = level or observability.log_level.get()
        fmt = fmt or observability.log_format.get()

        self._logger = logging.getLogger(f"arbor.{component}")
        self._logger.setLevel(getattr(logging, level.upper()))

        handlers = [h for h in self._logger.handlers if isinstance(h, OperationHandler)]
        if handlers:
            handlers[0].fmt = fmt
            self.handler = handlers[0]
        else:
            self.handler = OperationHandler(fmt=fmt)
            self._logger.addHandler(self.handler)

    @property
    def name(self) -> str:
        return self._logger.name

    def _log(self, level: int, message: str, exc_info: bool = False, **attributes: Any) -> None:
        extra: Dict[str, Any] = {"details": {}}
        for key, value in attributes.items():
            if key in OPERATION_FIELDS:
                extra[key] = value
            else:
                extra["details"][key] = value
        self._logger.log(level, message, extra=extra, exc_info=exc_info)

    def debug(self, message: str, **attributes: Any) -> None:
        self._log(logging.DEBUG, message, **attributes)

    def warning(self, message: str, **attributes: Any) -> None:
        self._log(logging.WARNING, message, **attributes)

    def error(self, message: str, exc_info: bool = False, **attributes: Any) -> None:
        self._log(logging.ERROR, message, exc_info=exc_info, **attributes)

    def critical(self, message: str, **attributes: Any) -> None:
        self._log(logging.CRITICAL, message, **attributes)

    def operation(
        self,
        name: str,
        duration_ms: float,
        error: Any = None,
        compensated: Optional[int] = None,
        **attributes: Any,
    ) -> None:
        """
        Record the outcome of one composition operation.

        ``error`` is the ArborError that aborted it, if any. Failures log at
        warning level with the error's code.
        """
        if error is None:
            self._log(
                logging.INFO,
                f"{name} ok",
                operation=name,
                outcome="ok",
                duration_ms=duration_ms,
                **attributes,
            )
            return
        self._log(
            logging.WARNING,
            f"{name} failed: {error.message}",
            operation=name,
            outcome="failed",
            error_code=error.code,
            compensated=compensated,
            duration_ms=duration_ms,
            **attributes,
        )


@dataclass
class OperationSpan:
    """Timing and identity of one running operation."""
    name: str
    span_id: str
    parent_span_id: str = ""
    status: str = "ok"
    started: float = field(default_factory=time.monotonic)
    duration_ms: Optional[float] = None
    attributes: Dict[str, Any] = field(default_factory=dict)


class Tracer:
    """Opens operation spans and logs each one as it closes."""

    def __init__(self, logger: ArborLogger):
        self._log = logger

    @contextmanager
    def span(self, name: str, **attributes: Any) -> Iterator[OperationSpan]:
        span = OperationSpan(
            name=name,
            span_id=uuid.uuid4().hex[:16],
            parent_span_id=span_id_var.get(),
            attributes=attributes,
        )
        token = span_id_var.set(span.span_id)
        try:
            yield span
        except Exception as e:
            span.status = "error"
            span.attributes["exception_type"] = type(e).__name__
            raise
        finally:
            span.duration_ms = (time.monotonic() - span.started) * 1000
            span_id_var.reset(token)
            self._log.debug(
                f"span {name} {span.status}",
                span_id=span.span_id,
                parent_span_id=span.parent_span_id,
                duration_ms=span.duration_ms,
                **span.attributes,
            )


def generate_correlation_id() -> str:
    return f"corr-{uuid.uuid4().hex[:12]}"


def set_correlation_id(correlation_id: str) -> contextvars.Token:
    """Set the correlation id for the current context."""
    return correlation_id_var.set(correlation_id)


def get_correlation_id() -> str:
    """Current correlation id, created on first use within a context."""
    cid = correlation_id_var.get()
    if not cid:
        cid = generate_correlation_id()
        correlation_id_var.set(cid)
    return cid


def get_logger(component: str) -> ArborLogger:
    """Logger for an ARBOR component, configured from ``observability``."""
    return ArborLogger(component)

"""Structured logging configuration with JSON formatting and job context."""

import contextvars
import logging
import sys
import traceback
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from pythonjsonlogger.json import JsonFormatter

# Hey future me - the worker advances many jobs concurrently in asyncio tasks. Every
# task sets this var (see job_context) so each log line says WHICH job it is about,
# without threading job ids through every logger call. contextvars are per-task, so
# concurrent jobs never see each other's id.
job_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("job_id", default="")


def get_job_id() -> str:
    """Get the job id of the current task ("" outside a job)."""
    return job_id_var.get()


@contextmanager
def job_context(job_id: Any) -> Iterator[None]:
    """Tag all log records inside the block with job_id."""
    token = job_id_var.set(str(job_id))
    try:
        yield
    finally:
        job_id_var.reset(token)


class JobContextFilter(logging.Filter):
    """Add job_id to log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.job_id = get_job_id()
        return True


class CompactExceptionFormatter(logging.Formatter):
    """Human-readable formatter with compact exception chains.

    Shows the chain root cause first, one "╰─►" line per exception, followed
    by the frames from our own package only:

    ERROR │ soulbeet.application.workers.orchestration_worker:120 │ [job 3f2a…] Job task crashed
    ╰─► httpx.ConnectError: All connection attempts failed
        File "slskd_client.py", line 75, in _request
          response = await client.request(method, endpoint, **kwargs)
    """

    def format(self, record: logging.LogRecord) -> str:
        job_id = getattr(record, "job_id", "")
        record.job_tag = f"[job {job_id[:8]}] " if job_id else ""
        return super().format(record)

    def formatException(self, ei: Any) -> str:
        _, exc_value, _ = ei
        if exc_value is None:
            return ""

        chain: list[BaseException] = []
        current: BaseException | None = exc_value
        while current is not None and current not in chain:
            chain.append(current)
            current = current.__cause__ or current.__context__
        chain.reverse()

        lines: list[str] = []
        for exc in chain:
            lines.append(f"╰─► {exc.__class__.__name__}: {exc}")
            if exc.__traceback__ is None:
                continue
            for frame in traceback.extract_tb(exc.__traceback__):
                if "/site-packages/" in frame.filename or "soulbeet" not in frame.filename:
                    continue
                lines.append(
                    f'    File "{Path(frame.filename).name}", line {frame.lineno}, in {frame.name}'
                )
                if frame.line:
                    lines.append(f"      {frame.line.strip()}")
        return "\n".join(lines)


class CustomJsonFormatter(JsonFormatter):
    """JSON formatter with job id and source location fields."""

    def add_fields(
        self,
        log_record: dict[str, Any],
        record: logging.LogRecord,
        message_dict: dict[str, Any],
    ) -> None:
        super().add_fields(log_record, record, message_dict)

        log_record["timestamp"] = self.formatTime(record, self.datefmt)
        log_record["level"] = record.levelname
        log_record["logger"] = record.name
        log_record["function"] = record.funcName
        log_record["line"] = record.lineno

        job_id = getattr(record, "job_id", "")
        if job_id:
            log_record["job_id"] = job_id

        if record.exc_info:
            log_record["exc_info"] = self.formatException(record.exc_info)


def configure_logging(
    log_level: str = "INFO",
    json_format: bool = False,
    app_name: str = "soulbeet",
) -> None:
    """Configure root logging. Call ONCE at startup.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Use JSON format for logs (recommended for production)
        app_name: Application name to include in logs
    """
    root_logger = logging.getLogger()

    # Remove existing handlers (tests / reconfiguration)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    level = getattr(logging, log_level.upper(), logging.INFO)
    root_logger.setLevel(level)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.addFilter(JobContextFilter())

    formatter: logging.Formatter
    if json_format:
        formatter = CustomJsonFormatter(
            "%(timestamp)s %(level)s %(name)s %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    else:
        formatter = CompactExceptionFormatter(
            fmt="%(asctime)s │ %(levelname)-7s │ %(name)s:%(lineno)d │ %(job_tag)s%(message)s",
            datefmt="%H:%M:%S",
        )

    handler.setFormatter(formatter)
    root_logger.addHandler(handler)

    # Third-party loggers are noisy at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)

    logging.getLogger(__name__).info(
        "Logging configured",
        extra={
            "app_name": app_name,
            "log_level": log_level,
            "json_format": json_format,
        },
    )

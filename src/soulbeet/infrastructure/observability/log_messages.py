"""Structured log message templates for consistent, human-readable logging.

Instead of one-line messages like "Error: All connection attempts failed" the
engine logs:

    🔴 slskd Connection Failed
    ├─ Service: slskd
    ├─ Target: http://slskd:5030
    ├─ Reason: All connection attempts failed
    └─ 💡 Is slskd running? Is SLSKD_URL correct?

Usage:
    from soulbeet.infrastructure.observability.log_messages import LogMessages

    logger.warning(LogMessages.retry_scheduled(job_id=..., attempt=2, ...))
"""

from dataclasses import dataclass
from typing import Any


@dataclass
class LogTemplate:
    """A log message with icon, title, tree-style fields and an optional hint."""

    icon: str
    title: str
    fields: dict[str, str]
    hint: str | None = None

    def format(self, **kwargs: Any) -> str:
        """Format the template, filling {placeholders} in field values and hint."""
        lines = [f"{self.icon} {self.title}"]

        field_items = list(self.fields.items())
        for i, (key, value_template) in enumerate(field_items):
            prefix = "└─" if i == len(field_items) - 1 and not self.hint else "├─"
            try:
                value = value_template.format(**kwargs)
            except (KeyError, IndexError) as e:
                value = f"<missing: {e}>"
            lines.append(f"{prefix} {key}: {value}")

        if self.hint:
            try:
                hint_text = self.hint.format(**kwargs)
            except (KeyError, IndexError) as e:
                hint_text = f"<missing: {e}>"
            lines.append(f"└─ 💡 {hint_text}")

        return "\n".join(lines)


def _literal(value: Any) -> str:
    # Values end up inside LogTemplate.format(); escape braces from paths/errors
    return str(value).replace("{", "{{").replace("}", "}}")


class LogMessages:
    """Collection of standardized log messages for the engine."""

    # === Connection Errors ===

    @staticmethod
    def connection_failed(
        service: str,
        target: str,
        error: str | None = None,
        hint: str | None = None,
    ) -> str:
        """Format a connection failure message.

        Args:
            service: Service name (e.g., "slskd")
            target: Connection target (URL, host:port)
            error: Error message from exception
            hint: Custom troubleshooting hint
        """
        fields = {"Service": _literal(service), "Target": _literal(target)}
        if error:
            fields["Reason"] = _literal(error)
        return LogTemplate(
            icon="🔴",
            title=f"{service} Connection Failed",
            fields=fields,
            hint=_literal(hint or f"Check if {service} is running and accessible"),
        ).format()

    # === Worker Lifecycle ===

    @staticmethod
    def worker_started(
        worker: str,
        interval: float | None = None,
        config: dict[str, Any] | None = None,
    ) -> str:
        """Format a worker start message."""
        fields: dict[str, str] = {}
        if interval:
            fields["Interval"] = f"{interval}s"
        for key, value in (config or {}).items():
            fields[key] = _literal(value)
        return LogTemplate(icon="✅", title=f"{worker} Started", fields=fields).format()

    @staticmethod
    def worker_failed(
        worker: str,
        error: str,
        will_retry: bool = True,
        hint: str | None = None,
    ) -> str:
        """Format a worker failure message."""
        return LogTemplate(
            icon="❌",
            title=f"{worker} Failed",
            fields={
                "Reason": _literal(error),
                "Status": "Will retry" if will_retry else "Stopped",
            },
            hint=_literal(hint) if hint else None,
        ).format()

    # === Jobs ===

    @staticmethod
    def import_result(
        job_id: str,
        target: str,
        imported: int,
        skipped: int,
        failed: int = 0,
    ) -> str:
        """Format the result of a job's import phase."""
        icon = "✅" if skipped == 0 and failed == 0 else "⚠️"
        fields = {
            "Job": _literal(job_id),
            "Target": _literal(target),
            "Imported": str(imported),
            "Skipped": str(skipped),
        }
        if failed:
            fields["Failed"] = str(failed)
        hint = (
            "Skipped files were rejected by beets (duplicates or no confident match)"
            if skipped
            else None
        )
        return LogTemplate(icon=icon, title="Import Finished", fields=fields, hint=hint).format()

    @staticmethod
    def retry_scheduled(
        job_id: str,
        attempt: int,
        max_retries: int,
        delay_seconds: float,
        error_code: str,
        error: str,
    ) -> str:
        """Format a retry-scheduled message."""
        return LogTemplate(
            icon="🔁",
            title="Job Retry Scheduled",
            fields={
                "Job": _literal(job_id),
                "Attempt": f"{attempt}/{max_retries}",
                "In": f"{delay_seconds:.0f}s",
                "Code": _literal(error_code),
                "Reason": _literal(error),
            },
        ).format()

    @staticmethod
    def retries_exhausted(
        job_id: str,
        error_code: str,
        error: str,
        retryable: bool,
        hint: str | None = None,
    ) -> str:
        """Format a permanent-failure message."""
        return LogTemplate(
            icon="❌",
            title="Job Failed Permanently" if not retryable else "Job Retries Exhausted",
            fields={
                "Job": _literal(job_id),
                "Code": _literal(error_code),
                "Reason": _literal(error),
            },
            hint=_literal(hint) if hint else None,
        ).format()

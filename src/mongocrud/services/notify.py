"""
Simple static reporting sink for operational diagnostics.

Every failure the data layer surfaces to a caller is also reported here so it is
visible in the logs. Reporting is fire-and-forget: it never blocks and never raises.
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from mongocrud.utils import utc_now

logger = logging.getLogger(__name__)


@dataclass
class Report:
    """Single collected diagnostic"""
    message: str
    error: Optional[BaseException] = None
    context: Tuple[Any, ...] = ()
    level: str = "error"
    timestamp: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "message": self.message,
            "level": self.level,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.error is not None:
            result["error"] = f"{type(self.error).__name__}: {self.error}"
        if self.context:
            result["context"] = [repr(item) for item in self.context]
        return result


class Notification:
    """Static report collection system"""

    _reports: List[Report] = []
    _max_reports: int = 500
    _muted: bool = False

    @classmethod
    def start(cls) -> None:
        """Start (or restart) report collection"""
        cls._reports.clear()

    @classmethod
    @contextmanager
    def mute(cls):
        """Context manager that keeps reports out of the log while still collecting them"""
        old_value = cls._muted
        cls._muted = True
        try:
            yield
        finally:
            cls._muted = old_value

    @classmethod
    def get(cls) -> List[Report]:
        """Return the collected reports, oldest first"""
        return list(cls._reports)

    @classmethod
    def report(cls, message: str, error: Optional[BaseException] = None, *context: Any) -> None:
        """
        Report a failure.

        Args:
            message: Human readable description of what failed
            error: The exception that caused it, if any
            context: Anything useful for diagnosing (the data, the query, ...)
        """
        cls._add(Report(message, error, context, "error"))
        if not cls._muted:
            exc_info = (type(error), error, error.__traceback__) if isinstance(error, BaseException) else None
            logger.error(f"{message} {cls._format_context(context)}".rstrip(), exc_info=exc_info)

    @classmethod
    def warning(cls, message: str, *context: Any) -> None:
        """Report a non-fatal problem"""
        cls._add(Report(message, None, context, "warning"))
        if not cls._muted:
            logger.warning(f"{message} {cls._format_context(context)}".rstrip())

    @classmethod
    def log(cls, message: str) -> None:
        """Informational message, not collected"""
        logger.info(message)

    @classmethod
    def _add(cls, report: Report) -> None:
        cls._reports.append(report)
        if len(cls._reports) > cls._max_reports:
            del cls._reports[0]

    @staticmethod
    def _format_context(context: Tuple[Any, ...]) -> str:
        if not context:
            return ""
        try:
            return "| " + ", ".join(repr(item) for item in context)
        except Exception:  # reporting never raises
            return "| <unprintable context>"

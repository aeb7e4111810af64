"""Human-readable progress log returned by batch jobs, mirrored to structlog."""

from __future__ import annotations

import time

import structlog

logger = structlog.get_logger()


class JobLog:
    def __init__(self, job: str):
        self.job = job
        self.lines: list[str] = []
        self._started = time.monotonic()

    def add(self, message: str, **context) -> None:
        self.lines.append(message)
        logger.info(f"{self.job}.progress", message=message, **context)

    @property
    def duration(self) -> int:
        """Whole seconds since the job started."""
        return round(time.monotonic() - self._started)

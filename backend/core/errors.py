"""
Learning Engine error types.

  - ValidationSkip: business-rule non-match; handlers turn it into a
    ``{"skipped": True, "reason": ...}`` response, never an error.
  - RecordNotFoundError: the referenced order/harvest is not in the ledger.
  - TransientStoreError: I/O failure scoped to one write or chunk.
  - FatalJobError: aborts a batch job; carries the partial-progress log.
"""

from __future__ import annotations


class LearningEngineError(Exception):
    """Base class for learning engine failures."""


class ValidationSkip(LearningEngineError):
    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason

    def as_response(self) -> dict:
        return {"skipped": True, "reason": self.reason}


class RecordNotFoundError(LearningEngineError):
    pass


class TransientStoreError(LearningEngineError):
    pass


class ConcurrentUpdateError(TransientStoreError):
    """Optimistic read-modify-write lost every retry for one key."""

    def __init__(self, key: str, attempts: int):
        super().__init__(f"Gave up updating {key!r} after {attempts} conflicting attempts")
        self.key = key
        self.attempts = attempts


class FatalJobError(LearningEngineError):
    def __init__(self, message: str, log: list[str] | None = None, progress: dict | None = None):
        super().__init__(message)
        self.log = list(log or [])
        self.progress = dict(progress or {})


class JobLockedError(LearningEngineError):
    """Another batch job holds the advisory lease."""

    def __init__(self, lock_name: str, holder: str | None = None):
        super().__init__(f"Job lock {lock_name!r} is held by {holder or 'another job'}")
        self.lock_name = lock_name
        self.holder = holder

    def as_response(self) -> dict:
        return {"success": False, "skipped": True, "reason": "job_locked"}

"""Exceptions raised synchronously to callers of the sync engine.

Environmental failures (watch I/O errors, malformed task files) are never
raised; they travel as events and end up as ``TASKS_ERROR`` messages or as
``TASKS_UPDATED`` messages without task content.
"""

__all__ = ["InvalidRepositoryPathError", "NotInitializedError"]


class InvalidRepositoryPathError(ValueError):
    """Raised when a repository path is empty or not a string."""


class NotInitializedError(RuntimeError):
    """Raised when a mutating call happens before ``initialize()``."""

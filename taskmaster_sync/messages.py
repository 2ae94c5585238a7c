"""Wire types shared by the sync orchestrator and the broadcast sink.

Field names and the four ``event`` tags are consumed by UI clients and must not
change.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

try:
    import orjson
except ImportError:
    orjson = None  # type: ignore

__all__ = ["NO_TASKS", "SyncEvent", "SyncMessage", "dumps", "utc_timestamp"]

# Marks a tasks update without content; None is a valid parsed document
NO_TASKS: Any = object()


def utc_timestamp(moment: Optional[datetime] = None) -> str:
    """Return an ISO-8601 UTC timestamp with millisecond precision, e.g. ``2024-01-01T12:00:00.000Z``."""
    moment = moment or datetime.now(timezone.utc)
    return moment.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def dumps(obj: Any) -> str:
    """Serialize an envelope to compact JSON text."""
    if orjson:
        return orjson.dumps(obj).decode("utf-8")
    return json.dumps(obj, separators=(",", ":"), ensure_ascii=False)


class SyncEvent:
    TASKS_UPDATED = "TASKS_UPDATED"
    TASKS_ERROR = "TASKS_ERROR"
    REPOSITORY_ADDED = "REPOSITORY_ADDED"
    REPOSITORY_REMOVED = "REPOSITORY_REMOVED"

    ALL = frozenset({TASKS_UPDATED, TASKS_ERROR, REPOSITORY_ADDED, REPOSITORY_REMOVED})


@dataclass
class SyncMessage:
    """A normalized notification about one repository.

    The timestamp is taken when the message is built, not when the filesystem
    event happened.
    """

    event: str
    repository_path: str
    timestamp: str = field(default_factory=utc_timestamp)
    payload: Optional[Dict[str, Any]] = None

    def __post_init__(self) -> None:
        if self.event not in SyncEvent.ALL:
            raise ValueError(f"Unknown sync event: {self.event}")

    @classmethod
    def tasks_updated(
        cls, repository_path: str, change_type: str, file_path: str, tasks: Any = NO_TASKS
    ) -> SyncMessage:
        payload: Dict[str, Any] = {"changeType": change_type, "filePath": file_path}
        if tasks is not NO_TASKS:
            payload["tasks"] = tasks
        return cls(SyncEvent.TASKS_UPDATED, repository_path, payload=payload)

    @classmethod
    def tasks_error(cls, repository_path: str, error: str) -> SyncMessage:
        return cls(SyncEvent.TASKS_ERROR, repository_path, payload={"error": error})

    @classmethod
    def repository_added(cls, repository_path: str) -> SyncMessage:
        return cls(SyncEvent.REPOSITORY_ADDED, repository_path)

    @classmethod
    def repository_removed(cls, repository_path: str) -> SyncMessage:
        return cls(SyncEvent.REPOSITORY_REMOVED, repository_path)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "event": self.event,
            "repositoryPath": self.repository_path,
            "timestamp": self.timestamp,
        }
        if self.payload is not None:
            data["payload"] = self.payload
        return data

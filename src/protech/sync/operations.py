"""Queue data types: operations, sync statuses and drain outcomes."""

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional


class SyncStatus(str, Enum):
    PENDING = "pending"
    SYNCED = "synced"
    FAILED = "failed"


class OperationKind(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


@dataclass
class OfflineOperation:
    entity_type: str = ""
    entity_id: str = ""
    kind: OperationKind = OperationKind.UPDATE
    payload: dict = field(default_factory=dict)
    seq: Optional[int] = None
    enqueued_at: Optional[datetime] = None
    attempts: int = 0
    last_error: str = ""
    next_attempt_at: Optional[datetime] = None
    version: int = 1

    @property
    def entity_key(self) -> tuple[str, str]:
        return (self.entity_type, self.entity_id)

    @classmethod
    def from_row(cls, row) -> "OfflineOperation":
        data = dict(row)
        return cls(
            seq=data["seq"],
            entity_type=data["entity_type"],
            entity_id=data["entity_id"],
            kind=OperationKind(data["kind"]),
            payload=json.loads(data["payload"]) if data["payload"] else {},
            enqueued_at=_parse_ts(data["enqueued_at"]),
            attempts=data["attempts"],
            last_error=data["last_error"] or "",
            next_attempt_at=_parse_ts(data["next_attempt_at"]),
            version=data["version"],
        )


@dataclass
class DrainResult:
    delivered: list[OfflineOperation] = field(default_factory=list)
    retrying: list[OfflineOperation] = field(default_factory=list)
    exhausted: list[OfflineOperation] = field(default_factory=list)
    skipped: list[OfflineOperation] = field(default_factory=list)
    cancelled: bool = False
    busy: bool = False  # another drain was already running
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def attempted(self) -> int:
        return len(self.delivered) + len(self.retrying) + len(self.exhausted)

    def summary(self) -> dict:
        return {
            "delivered": len(self.delivered),
            "retrying": len(self.retrying),
            "exhausted": len(self.exhausted),
            "skipped": len(self.skipped),
            "cancelled": self.cancelled,
        }


def _parse_ts(value) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)

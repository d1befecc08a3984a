"""Repository layer: CRUD for syncable records and sync-status queries.

Every write here goes through the same path: the record's
``cloud_sync_status`` becomes ``pending``, ``updated_at`` moves strictly
forward, and (when a queue is attached) the matching offline operation is
enqueued inside the same SQLite transaction. Rows merged in from the
backend are the exception: they land ``synced`` and are never queued.
"""

import logging
import sqlite3
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from protech.sync.operations import OfflineOperation, OperationKind, SyncStatus

from .connection import DatabaseConnection
from .models import SYNCABLE_MODELS, SyncableEntity, model_for

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _to_db(value: Optional[datetime]) -> Optional[str]:
    # Fixed-width ISO keeps lexical order == chronological order in SQLite
    return value.isoformat(timespec="microseconds") if value else None


def _from_db(value) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def parse_remote_timestamp(value) -> Optional[datetime]:
    """Parse a backend timestamp into an aware UTC datetime (None if bad)."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def mark_sync_status(conn, entity_type: str, entity_id: str,
                     status: SyncStatus):
    """Record a delivery outcome on the entity row.

    Only the offline queue calls this. ``updated_at`` is left alone.
    """
    table = model_for(entity_type).TABLE
    conn.execute(
        f"UPDATE {table} SET cloud_sync_status = ? WHERE id = ?",  # noqa: S608
        (status.value, entity_id),
    )


class Repository:
    """Provides all local-store operations for syncable records."""

    def __init__(self, db: DatabaseConnection, queue=None,
                 clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.queue = queue
        self._clock = clock

    # ── Helpers ─────────────────────────────────────────────────

    def _next_timestamp(self, previous: Optional[datetime]) -> datetime:
        """Current time, nudged past ``previous`` so updates always advance."""
        now = self._clock()
        if previous is not None and now <= previous:
            now = previous + timedelta(microseconds=1)
        return now

    @staticmethod
    def _row_to_entity(model: type[SyncableEntity], row) -> SyncableEntity:
        data = dict(row)
        for name in ("created_at", "updated_at", "deleted_at"):
            data[name] = _from_db(data[name])
        status = data["cloud_sync_status"]
        data["cloud_sync_status"] = SyncStatus(status) if status else None
        return model(**data)

    def _enqueue(self, conn, entity: SyncableEntity, kind: OperationKind):
        if self.queue is None:
            return
        self.queue.enqueue(
            OfflineOperation(
                entity_type=entity.ENTITY_TYPE,
                entity_id=entity.id,
                kind=kind,
                payload=entity.to_payload(),
            ),
            conn=conn,
        )

    # ── Reads ───────────────────────────────────────────────────

    def get(self, entity_type: str, entity_id: str,
            include_deleted: bool = False) -> Optional[SyncableEntity]:
        model = model_for(entity_type)
        sql = f"SELECT * FROM {model.TABLE} WHERE id = ?"  # noqa: S608
        if not include_deleted:
            sql += " AND deleted_at IS NULL"
        rows = self.db.execute(sql, (entity_id,))
        return self._row_to_entity(model, rows[0]) if rows else None

    def get_all(self, entity_type: str) -> list[SyncableEntity]:
        model = model_for(entity_type)
        rows = self.db.execute(
            f"SELECT * FROM {model.TABLE} "  # noqa: S608
            "WHERE deleted_at IS NULL ORDER BY created_at"
        )
        return [self._row_to_entity(model, r) for r in rows]

    # ── Writes ──────────────────────────────────────────────────

    def create(self, entity: SyncableEntity) -> str:
        """Insert a new record, returning its id."""
        now = self._clock()
        entity.created_at = now
        entity.updated_at = now
        entity.deleted_at = None
        entity.cloud_sync_status = SyncStatus.PENDING

        columns = ["id", *entity.data_fields(), "created_at", "updated_at",
                   "cloud_sync_status"]
        values = [entity.id,
                  *(getattr(entity, c) for c in entity.data_fields()),
                  _to_db(now), _to_db(now), SyncStatus.PENDING.value]
        placeholders = ", ".join("?" for _ in columns)
        with self.db.get_connection() as conn:
            conn.execute(
                f"INSERT INTO {entity.TABLE} ({', '.join(columns)}) "  # noqa: S608
                f"VALUES ({placeholders})",
                values,
            )
            self._enqueue(conn, entity, OperationKind.CREATE)
        return entity.id

    def update(self, entity: SyncableEntity):
        """Write back every business field of an existing record."""
        with self.db.get_connection() as conn:
            row = conn.execute(
                f"SELECT updated_at FROM {entity.TABLE} "  # noqa: S608
                "WHERE id = ? AND deleted_at IS NULL",
                (entity.id,),
            ).fetchone()
            if row is None:
                raise ValueError(
                    f"{entity.ENTITY_TYPE} {entity.id} does not exist"
                )
            now = self._next_timestamp(_from_db(row["updated_at"]))
            data_fields = entity.data_fields()
            set_clause = ", ".join(f"{c} = ?" for c in data_fields)
            conn.execute(
                f"UPDATE {entity.TABLE} SET {set_clause}, "  # noqa: S608
                "updated_at = ?, cloud_sync_status = ? WHERE id = ?",
                [*(getattr(entity, c) for c in data_fields),
                 _to_db(now), SyncStatus.PENDING.value, entity.id],
            )
            entity.updated_at = now
            entity.cloud_sync_status = SyncStatus.PENDING
            self._enqueue(conn, entity, OperationKind.UPDATE)

    def delete(self, entity_type: str, entity_id: str) -> bool:
        """Soft-delete a record; the tombstone syncs as a delete.

        Returns False when the record does not exist or is already deleted.
        """
        model = model_for(entity_type)
        with self.db.get_connection() as conn:
            row = conn.execute(
                f"SELECT * FROM {model.TABLE} "  # noqa: S608
                "WHERE id = ? AND deleted_at IS NULL",
                (entity_id,),
            ).fetchone()
            if row is None:
                return False
            entity = self._row_to_entity(model, row)
            now = self._next_timestamp(entity.updated_at)
            conn.execute(
                f"UPDATE {model.TABLE} SET deleted_at = ?, "  # noqa: S608
                "updated_at = ?, cloud_sync_status = ? WHERE id = ?",
                (_to_db(now), _to_db(now), SyncStatus.PENDING.value,
                 entity_id),
            )
            entity.deleted_at = now
            entity.updated_at = now
            entity.cloud_sync_status = SyncStatus.PENDING
            self._enqueue(conn, entity, OperationKind.DELETE)
        return True

    # ── Sync status queries ─────────────────────────────────────

    def fetch_pending(self, entity_type: str) -> list[SyncableEntity]:
        """Records waiting for delivery, tombstones included."""
        model = model_for(entity_type)
        rows = self.db.execute(
            f"SELECT * FROM {model.TABLE} "  # noqa: S608
            "WHERE cloud_sync_status = 'pending' OR cloud_sync_status IS NULL "
            "ORDER BY updated_at"
        )
        return [self._row_to_entity(model, r) for r in rows]

    def fetch_failed(self, entity_type: str) -> list[SyncableEntity]:
        model = model_for(entity_type)
        rows = self.db.execute(
            f"SELECT * FROM {model.TABLE} "  # noqa: S608
            "WHERE cloud_sync_status = 'failed' ORDER BY updated_at"
        )
        return [self._row_to_entity(model, r) for r in rows]

    def sync_counts(self) -> dict[str, int]:
        """Aggregate pending/synced/failed counts across every entity type."""
        counts = {status.value: 0 for status in SyncStatus}
        with self.db.get_connection() as conn:
            for model in SYNCABLE_MODELS.values():
                rows = conn.execute(
                    "SELECT COALESCE(cloud_sync_status, 'pending') AS status, "
                    f"COUNT(*) AS cnt FROM {model.TABLE} "  # noqa: S608
                    "GROUP BY COALESCE(cloud_sync_status, 'pending')"
                ).fetchall()
                for r in rows:
                    counts[r["status"]] += r["cnt"]
        return counts

    # ── Remote merge ────────────────────────────────────────────

    def merge_remote_row(self, conn, entity_type: str, row: dict) -> bool:
        """Apply one downloaded row, newest ``updated_at`` wins.

        Records with local changes not yet delivered (pending, failed or
        untracked) are left alone. Merged records are marked ``synced`` and
        nothing is enqueued. Returns whether the row was written.
        """
        model = model_for(entity_type)
        entity_id = row.get("id")
        updated_at = parse_remote_timestamp(row.get("updated_at"))
        if not entity_id or updated_at is None:
            logger.warning("Skipping %s row without id/updated_at", entity_type)
            return False
        created_at = parse_remote_timestamp(row.get("created_at")) or updated_at
        deleted_at = parse_remote_timestamp(row.get("deleted_at"))
        data_fields = [c for c in model.data_fields() if c in row]
        values = [row[c] for c in data_fields]

        columns = ["id", *data_fields, "created_at", "updated_at",
                   "deleted_at", "cloud_sync_status"]
        placeholders = ", ".join("?" for _ in columns)
        assignments = ", ".join(
            [*(f"{c} = ?" for c in data_fields), "updated_at = ?",
             "deleted_at = ?"]
        )
        try:
            cursor = conn.execute(
                f"INSERT OR IGNORE INTO {model.TABLE} "  # noqa: S608
                f"({', '.join(columns)}) VALUES ({placeholders})",
                [entity_id, *values, _to_db(created_at), _to_db(updated_at),
                 _to_db(deleted_at), SyncStatus.SYNCED.value],
            )
            if cursor.rowcount:
                return True
            cursor = conn.execute(
                f"UPDATE {model.TABLE} SET {assignments} "  # noqa: S608
                "WHERE id = ? AND cloud_sync_status = 'synced' "
                "AND updated_at < ?",
                [*values, _to_db(updated_at), _to_db(deleted_at),
                 entity_id, _to_db(updated_at)],
            )
        except sqlite3.IntegrityError as exc:
            logger.warning("Could not merge %s %s: %s",
                           entity_type, entity_id, exc)
            return False
        return cursor.rowcount > 0

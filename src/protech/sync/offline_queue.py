"""OfflineQueue: durable at-least-once delivery of local mutations.

Pending operations live in the ``offline_operations`` table of the local
SQLite store, so they survive restarts and can be written in the same
transaction as the record change that produced them.

Delivery model:
1. A drain snapshots the queue and groups it into per-entity chains,
   ordered by the sequence number of each chain's oldest operation.
2. Chains run on a thread pool bounded by ``max_concurrent_operations``.
   Inside a chain operations go out strictly in enqueue order and the
   chain stops at the first failure.
3. Success removes the row (unless it was coalesced while in flight) and
   marks the entity ``synced`` once nothing else is queued for it.
   Failure bumps the attempt count; at ``max_retry_attempts`` the row moves
   to ``failed_operations`` and the entity is marked ``failed``.

A drain in flight when the queue is cleared is abandoned: its token is
cancelled under the same lock that guards result application, so nothing
it finishes afterwards is written back.
"""

import json
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from protech.database.models import SYNCABLE_MODELS
from protech.database.repository import mark_sync_status
from protech.sync.cancel_token import CancelToken
from protech.sync.errors import StaleConnectionError
from protech.sync.operations import (
    DrainResult,
    OfflineOperation,
    OperationKind,
    SyncStatus,
)

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat(timespec="microseconds") if value else None


class OfflineQueue:
    """Manages the offline operation queue and its replay."""

    def __init__(self, db, remote, max_retry_attempts: int = 3,
                 max_concurrent_operations: int = 5,
                 backoff_base: float = 5.0, backoff_max: float = 300.0,
                 clock: Callable[[], datetime] = _utcnow):
        self.db = db
        self.remote = remote
        self.max_retry_attempts = max_retry_attempts
        self.max_concurrent_operations = max_concurrent_operations
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.environment = ""
        self._clock = clock
        self._lock = threading.Lock()
        self._drain_lock = threading.Lock()
        self._active_token: Optional[CancelToken] = None
        self._paused = 0

    def apply_policy(self, max_retry_attempts: Optional[int] = None,
                     max_concurrent_operations: Optional[int] = None,
                     environment: Optional[str] = None):
        """Take new limits; they apply from the next drain on."""
        if max_retry_attempts is not None:
            self.max_retry_attempts = max(int(max_retry_attempts), 1)
        if max_concurrent_operations is not None:
            self.max_concurrent_operations = max(int(max_concurrent_operations), 1)
        if environment is not None:
            self.environment = environment

    def backoff_delay(self, attempts: int) -> float:
        """Seconds to wait after the ``attempts``-th failure."""
        if attempts <= 0:
            return 0.0
        return min(self.backoff_base * (2 ** (attempts - 1)), self.backoff_max)

    @property
    def is_draining(self) -> bool:
        return self._drain_lock.locked()

    # ── Enqueue ─────────────────────────────────────────────────

    def enqueue(self, operation: OfflineOperation, conn=None) -> OfflineOperation:
        """Queue ``operation``, coalescing with what is already queued.

        Pass ``conn`` to join the caller's transaction.
        """
        if conn is None:
            with self.db.get_connection() as own_conn:
                return self._enqueue(own_conn, operation)
        return self._enqueue(conn, operation)

    def _enqueue(self, conn, operation: OfflineOperation) -> OfflineOperation:
        key = (operation.entity_type, operation.entity_id)
        payload = json.dumps(operation.payload, default=str)

        if operation.kind == OperationKind.DELETE:
            # Nothing queued before a delete is worth sending
            superseded = conn.execute(
                "DELETE FROM offline_operations "
                "WHERE entity_type = ? AND entity_id = ?",
                key,
            ).rowcount
            if superseded:
                logger.debug("Delete of %s/%s superseded %d operation(s)",
                             *key, superseded)
        elif operation.kind == OperationKind.UPDATE:
            newest = conn.execute(
                "SELECT seq, kind FROM offline_operations "
                "WHERE entity_type = ? AND entity_id = ? "
                "ORDER BY seq DESC LIMIT 1",
                key,
            ).fetchone()
            if newest is not None and newest["kind"] == OperationKind.UPDATE.value:
                # Last write wins on payload; position in the queue is kept
                conn.execute(
                    "UPDATE offline_operations "
                    "SET payload = ?, version = version + 1 WHERE seq = ?",
                    (payload, newest["seq"]),
                )
                row = conn.execute(
                    "SELECT * FROM offline_operations WHERE seq = ?",
                    (newest["seq"],),
                ).fetchone()
                return OfflineOperation.from_row(row)

        now = self._clock()
        cursor = conn.execute(
            "INSERT INTO offline_operations "
            "(entity_type, entity_id, kind, payload, enqueued_at) "
            "VALUES (?, ?, ?, ?, ?)",
            (*key, operation.kind.value, payload, _ts(now)),
        )
        operation.seq = cursor.lastrowid
        operation.enqueued_at = now
        operation.attempts = 0
        operation.last_error = ""
        operation.next_attempt_at = None
        operation.version = 1
        return operation

    # ── Inspection ──────────────────────────────────────────────

    def pending_operations(self) -> list[OfflineOperation]:
        rows = self.db.execute(
            "SELECT * FROM offline_operations ORDER BY seq"
        )
        return [OfflineOperation.from_row(r) for r in rows]

    def pending_count(self) -> int:
        rows = self.db.execute(
            "SELECT COUNT(*) AS cnt FROM offline_operations"
        )
        return rows[0]["cnt"]

    def failed_operations(self) -> list[dict]:
        rows = self.db.execute(
            "SELECT * FROM failed_operations ORDER BY id"
        )
        return [dict(r) for r in rows]

    def recent_sync_log(self, limit: int = 20) -> list[dict]:
        rows = self.db.execute(
            "SELECT * FROM sync_log ORDER BY id DESC LIMIT ?", (limit,)
        )
        return [dict(r) for r in rows]

    # ── Clearing / cancellation ─────────────────────────────────

    def cancel_drain(self):
        """Abandon the drain in flight, if any; its results are discarded."""
        with self._lock:
            if self._active_token is not None:
                self._active_token.cancel()

    def clear_queue(self) -> int:
        """Drop every queued operation without delivering it.

        Entity statuses are left as they are (still pending).
        """
        with self._lock:
            if self._active_token is not None:
                self._active_token.cancel()
            with self.db.get_connection() as conn:
                removed = conn.execute(
                    "DELETE FROM offline_operations"
                ).rowcount
        logger.info("Cleared %d queued operation(s)", removed)
        return removed

    @contextmanager
    def paused(self):
        """Keep drains out for the duration of the block.

        The drain in flight, if any, is abandoned on entry. Drains started
        inside the block return ``busy`` without delivering anything.
        """
        with self._lock:
            self._paused += 1
            if self._active_token is not None:
                self._active_token.cancel()
        try:
            yield self
        finally:
            with self._lock:
                self._paused -= 1

    @property
    def is_paused(self) -> bool:
        return self._paused > 0

    def apply_if_current(self, generation: int, apply: Callable):
        """Run ``apply()`` unless the remote moved past ``generation``.

        Returns ``apply()``'s result, or None when refused. Holding the
        queue lock keeps an environment switch from starting midway.
        """
        with self._lock:
            if self._paused or self.remote.generation != generation:
                return None
            return apply()

    # ── Drain ───────────────────────────────────────────────────

    def drain(self) -> DrainResult:
        """Try to deliver everything that is due.

        Returns immediately with ``busy=True`` if another drain is running.
        """
        if not self._drain_lock.acquire(blocking=False):
            logger.debug("Drain already running; skipping")
            return DrainResult(busy=True)
        token = CancelToken()
        try:
            with self._lock:
                if self._paused:
                    logger.debug("Queue paused; skipping drain")
                    return DrainResult(busy=True)
                self._active_token = token
                generation = self.remote.generation
                max_attempts = self.max_retry_attempts
                workers = self.max_concurrent_operations

            result = DrainResult(started_at=self._clock())
            chains: dict[tuple[str, str], list[OfflineOperation]] = {}
            for op in self.pending_operations():
                chains.setdefault(op.entity_key, []).append(op)

            if chains:
                with ThreadPoolExecutor(
                    max_workers=min(workers, len(chains)),
                    thread_name_prefix="protech-drain",
                ) as pool:
                    futures = [
                        pool.submit(self._deliver_chain, chain, token,
                                    generation, max_attempts)
                        for chain in chains.values()
                    ]
                    for future in futures:
                        outcome = future.result()
                        result.delivered.extend(outcome.delivered)
                        result.retrying.extend(outcome.retrying)
                        result.exhausted.extend(outcome.exhausted)
                        result.skipped.extend(outcome.skipped)

            result.cancelled = token.cancelled
            result.finished_at = self._clock()
            if result.attempted or result.cancelled:
                logger.info("Drain finished: %s", result.summary())
            self._record_log(result)
            return result
        finally:
            with self._lock:
                if self._active_token is token:
                    self._active_token = None
            self._drain_lock.release()

    def _deliver_chain(self, chain: list[OfflineOperation],
                       token: CancelToken, generation: int,
                       max_attempts: int) -> DrainResult:
        """Deliver one entity's operations in order, stopping at a failure."""
        outcome = DrainResult()
        for index, op in enumerate(chain):
            if token.cancelled:
                outcome.skipped.extend(chain[index:])
                break
            if op.next_attempt_at is not None and op.next_attempt_at > self._clock():
                # Backing off; later operations for the entity must wait too
                outcome.skipped.extend(chain[index:])
                break
            try:
                self.remote.deliver(op, generation=generation)
            except StaleConnectionError:
                # Remote was repointed mid-drain; not the operation's fault
                outcome.skipped.extend(chain[index:])
                break
            except Exception as exc:  # every other failure costs an attempt
                logger.warning("Delivery of %s %s/%s failed: %s",
                               op.kind.value, op.entity_type, op.entity_id,
                               exc)
                self._record_failure(op, str(exc), token, max_attempts,
                                     outcome)
                outcome.skipped.extend(chain[index + 1:])
                break
            if not self._record_success(op, token):
                outcome.skipped.extend(chain[index:])
                break
            outcome.delivered.append(op)
        return outcome

    def _record_success(self, op: OfflineOperation, token: CancelToken) -> bool:
        with self._lock:
            if token.cancelled:
                return False
            with self.db.get_connection() as conn:
                # A newer update may have coalesced into the row in flight
                conn.execute(
                    "DELETE FROM offline_operations "
                    "WHERE seq = ? AND version = ?",
                    (op.seq, op.version),
                )
                remaining = conn.execute(
                    "SELECT COUNT(*) AS cnt FROM offline_operations "
                    "WHERE entity_type = ? AND entity_id = ?",
                    op.entity_key,
                ).fetchone()["cnt"]
                if remaining == 0:
                    mark_sync_status(conn, op.entity_type, op.entity_id,
                                     SyncStatus.SYNCED)
        return True

    def _record_failure(self, op: OfflineOperation, error: str,
                        token: CancelToken, max_attempts: int,
                        outcome: DrainResult):
        with self._lock:
            if token.cancelled:
                outcome.skipped.append(op)
                return
            with self.db.get_connection() as conn:
                row = conn.execute(
                    "SELECT attempts FROM offline_operations WHERE seq = ?",
                    (op.seq,),
                ).fetchone()
                if row is None:
                    # Superseded by a delete while in flight
                    outcome.skipped.append(op)
                    return
                op.attempts = row["attempts"] + 1
                op.last_error = error
                now = self._clock()
                if op.attempts >= max_attempts:
                    conn.execute(
                        "INSERT INTO failed_operations "
                        "(entity_type, entity_id, kind, payload, enqueued_at, "
                        " attempts, last_error, failed_at) "
                        "SELECT entity_type, entity_id, kind, payload, "
                        "       enqueued_at, ?, ?, ? "
                        "FROM offline_operations WHERE seq = ?",
                        (op.attempts, error, _ts(now), op.seq),
                    )
                    conn.execute(
                        "DELETE FROM offline_operations WHERE seq = ?",
                        (op.seq,),
                    )
                    mark_sync_status(conn, op.entity_type, op.entity_id,
                                     SyncStatus.FAILED)
                    outcome.exhausted.append(op)
                    logger.error("Giving up on %s %s/%s after %d attempts: %s",
                                 op.kind.value, op.entity_type, op.entity_id,
                                 op.attempts, error)
                else:
                    op.next_attempt_at = now + timedelta(
                        seconds=self.backoff_delay(op.attempts)
                    )
                    conn.execute(
                        "UPDATE offline_operations SET attempts = ?, "
                        "last_error = ?, next_attempt_at = ? WHERE seq = ?",
                        (op.attempts, error, _ts(op.next_attempt_at), op.seq),
                    )
                    outcome.retrying.append(op)

    def _record_log(self, result: DrainResult):
        with self.db.get_connection() as conn:
            conn.execute(
                "INSERT INTO sync_log (started_at, finished_at, environment, "
                "delivered, retrying, exhausted, skipped, cancelled) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (_ts(result.started_at), _ts(result.finished_at),
                 self.environment, len(result.delivered),
                 len(result.retrying), len(result.exhausted),
                 len(result.skipped), int(result.cancelled)),
            )

    # ── Recovery ────────────────────────────────────────────────

    def retry_failed(self, ids: Optional[list[int]] = None) -> int:
        """Re-queue exhausted operations with a fresh attempt budget."""
        with self.db.get_connection() as conn:
            sql = "SELECT * FROM failed_operations"
            params: tuple = ()
            if ids is not None:
                if not ids:
                    return 0
                sql += f" WHERE id IN ({', '.join('?' for _ in ids)})"
                params = tuple(ids)
            rows = conn.execute(sql + " ORDER BY id", params).fetchall()
            for row in rows:
                self._enqueue(conn, OfflineOperation(
                    entity_type=row["entity_type"],
                    entity_id=row["entity_id"],
                    kind=OperationKind(row["kind"]),
                    payload=json.loads(row["payload"]),
                ))
                mark_sync_status(conn, row["entity_type"], row["entity_id"],
                                 SyncStatus.PENDING)
                conn.execute("DELETE FROM failed_operations WHERE id = ?",
                             (row["id"],))
        if rows:
            logger.info("Re-queued %d failed operation(s)", len(rows))
        return len(rows)

    def reconcile(self, repository) -> int:
        """Queue an operation for every pending record with nothing queued.

        Covers a store and queue that drifted apart, e.g. after a crash
        between a commit and its enqueue, or after :meth:`clear_queue`.
        """
        queued = {op.entity_key for op in self.pending_operations()}
        missing = [
            entity
            for entity_type in SYNCABLE_MODELS
            for entity in repository.fetch_pending(entity_type)
            if (entity_type, entity.id) not in queued
        ]
        if not missing:
            return 0
        with self.db.get_connection() as conn:
            for entity in missing:
                kind = (OperationKind.DELETE if entity.is_deleted
                        else OperationKind.UPDATE)
                self._enqueue(conn, OfflineOperation(
                    entity_type=entity.ENTITY_TYPE,
                    entity_id=entity.id,
                    kind=kind,
                    payload=entity.to_payload(),
                ))
        logger.info("Reconciliation queued %d operation(s)", len(missing))
        return len(missing)

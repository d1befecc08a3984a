"""Pull pass: merges records changed on the backend into the local store."""

import logging
from typing import Iterable, Optional

from protech.database.connection import DatabaseConnection
from protech.database.models import SYNCABLE_MODELS
from protech.database.repository import Repository, parse_remote_timestamp
from protech.sync.errors import DeliveryError, StaleConnectionError
from protech.sync.offline_queue import OfflineQueue

logger = logging.getLogger(__name__)


class RemotePuller:
    """Fetches rows updated since the last pull and merges them.

    Each entity type keeps its own watermark in ``pull_state``, keyed by the
    remote URL so a switched environment starts from scratch. Merges run
    through ``OfflineQueue.apply_if_current``: a switch that lands mid-pull
    discards the batch instead of writing another backend's rows.
    """

    def __init__(self, db: DatabaseConnection, remote, queue: OfflineQueue,
                 repository: Repository,
                 entity_types: Optional[Iterable[str]] = None):
        self.db = db
        self.remote = remote
        self.queue = queue
        self.repository = repository
        # Parents first so foreign keys resolve
        self.entity_types = list(entity_types or SYNCABLE_MODELS)

    def last_pulled(self, entity_type: str) -> Optional[str]:
        with self.db.get_connection() as conn:
            row = conn.execute(
                "SELECT last_updated_at FROM pull_state "
                "WHERE remote_url = ? AND entity_type = ?",
                (self.remote.url, entity_type),
            ).fetchone()
        return row["last_updated_at"] if row else None

    def pull(self) -> int:
        """Run one pull pass. Returns the number of records merged."""
        generation = self.remote.generation
        url = self.remote.url
        if not url:
            return 0

        merged = 0
        for entity_type in self.entity_types:
            try:
                rows = self.remote.fetch_rows(
                    entity_type,
                    updated_since=self.last_pulled(entity_type),
                    include_deleted=True,
                    generation=generation,
                )
            except StaleConnectionError:
                logger.debug("Remote reconfigured; stopping pull")
                break
            except DeliveryError as e:
                logger.warning("Pull of %s failed: %s", entity_type, e)
                break
            if not rows:
                continue

            count = self.queue.apply_if_current(
                generation,
                lambda t=entity_type, r=rows: self._merge(url, t, r),
            )
            if count is None:
                logger.debug("Remote changed during pull; batch discarded")
                break
            merged += count

        if merged:
            logger.info("Pulled %d record(s) from %s", merged, url)
        return merged

    def _merge(self, url: str, entity_type: str, rows: list[dict]) -> int:
        newest, newest_raw = None, None
        for row in rows:
            stamp = parse_remote_timestamp(row.get("updated_at"))
            if stamp is not None and (newest is None or stamp > newest):
                newest, newest_raw = stamp, row["updated_at"]

        with self.db.get_connection() as conn:
            count = sum(
                self.repository.merge_remote_row(conn, entity_type, row)
                for row in rows
            )
            if newest_raw is not None:
                conn.execute(
                    "INSERT INTO pull_state "
                    "(remote_url, entity_type, last_updated_at) "
                    "VALUES (?, ?, ?) "
                    "ON CONFLICT(remote_url, entity_type) "
                    "DO UPDATE SET last_updated_at = excluded.last_updated_at",
                    (url, entity_type, newest_raw),
                )
        return count

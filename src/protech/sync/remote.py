"""HTTP client for the hosted backend (PostgREST-style REST API).

Creates and updates are upserts; deletes are soft deletes that stamp
``deleted_at`` on the remote row, matching how records are tombstoned
locally.
"""

import logging
import threading
import time
from datetime import datetime, timezone
from typing import Callable, Optional

import httpx

from protech.database.models import model_for
from protech.sync.errors import (
    DeliveryError,
    InsecureTransportError,
    SettingsPersistenceError,
    StaleConnectionError,
)
from protech.sync.operations import OfflineOperation, OperationKind

logger = logging.getLogger(__name__)

SESSION_KEY = "RemoteSession"


class ResponseCache:
    """Tiny TTL cache for GET responses."""

    def __init__(self, ttl: float = 3600, enabled: bool = True,
                 clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self.enabled = enabled
        self._clock = clock
        self._entries: dict[str, tuple[float, object]] = {}
        self._lock = threading.Lock()

    def get(self, key: str):
        if not self.enabled:
            return None
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            stored_at, value = entry
            if self._clock() - stored_at > self.ttl:
                del self._entries[key]
                return None
            return value

    def put(self, key: str, value):
        if self.enabled:
            with self._lock:
                self._entries[key] = (self._clock(), value)

    def clear(self):
        with self._lock:
            self._entries.clear()

    def __len__(self):
        return len(self._entries)


class RemoteClient:
    """Delivers queued operations to the backend of the active environment.

    ``generation`` increases on every :meth:`reconfigure`. A delivery that
    was scheduled against an older generation is refused, so work started
    for one environment can never land in another.
    """

    def __init__(self, store=None, timeout: float = 15.0,
                 transport: Optional[httpx.BaseTransport] = None):
        self.store = store
        self.timeout = timeout
        self._transport = transport
        self._lock = threading.Lock()
        self._client: Optional[httpx.Client] = None
        self._generation = 0
        self._url = ""
        self._key = ""
        self._require_https = False
        self._session_token = store.load(SESSION_KEY) if store else None
        self.cache = ResponseCache()

    # ── Connection state ────────────────────────────────────────

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def url(self) -> str:
        return self._url

    @property
    def is_configured(self) -> bool:
        return self._client is not None

    @property
    def session_token(self) -> Optional[str]:
        return self._session_token

    def reconfigure(self, url: str, key: str, require_https: bool = False):
        """Point the client at a new backend; the old connection is closed."""
        with self._lock:
            old = self._client
            self._url = url.rstrip("/")
            self._key = key
            self._require_https = require_https
            self._client = None
            if self._url:
                self._client = httpx.Client(
                    base_url=f"{self._url}/rest/v1",
                    timeout=httpx.Timeout(self.timeout),
                    transport=self._transport,
                )
            self._generation += 1
        if old is not None:
            old.close()
        logger.info("Remote client now targets %s", self._url or "(nothing)")

    def configure_cache(self, enabled: bool, ttl: float):
        self.cache.enabled = enabled
        self.cache.ttl = ttl
        if not enabled:
            self.cache.clear()

    def clear_cache(self):
        self.cache.clear()

    def set_session(self, token: str) -> bool:
        """Remember a signed-in session token; returns whether it persisted."""
        self._session_token = token
        if self.store is None:
            return False
        try:
            self.store.save(SESSION_KEY, token)
            return True
        except SettingsPersistenceError as exc:
            logger.warning("Session token kept in memory only: %s", exc)
            return False

    def clear_session(self):
        self._session_token = None
        if self.store is not None:
            try:
                self.store.remove(SESSION_KEY)
            except SettingsPersistenceError as exc:
                logger.warning("Could not remove stored session: %s", exc)

    def close(self):
        with self._lock:
            client, self._client = self._client, None
            self._generation += 1
        if client is not None:
            client.close()

    # ── Requests ────────────────────────────────────────────────

    def _headers(self) -> dict:
        return {
            "apikey": self._key,
            "Authorization": f"Bearer {self._session_token or self._key}",
        }

    def _checked_client(self, generation: Optional[int]) -> httpx.Client:
        with self._lock:
            if generation is not None and generation != self._generation:
                raise StaleConnectionError(
                    "Remote client was reconfigured; delivery abandoned"
                )
            if self._client is None:
                raise DeliveryError("Remote backend is not configured")
            if self._require_https and not self._url.startswith("https://"):
                raise InsecureTransportError(
                    f"Refusing plain HTTP connection to {self._url}"
                )
            return self._client

    def deliver(self, operation: OfflineOperation,
                generation: Optional[int] = None):
        """Send one operation; raises :class:`DeliveryError` on any failure."""
        client = self._checked_client(generation)
        table = model_for(operation.entity_type).TABLE
        headers = self._headers()
        try:
            if operation.kind == OperationKind.DELETE:
                deleted_at = operation.payload.get("deleted_at") or (
                    datetime.now(timezone.utc).isoformat()
                )
                response = client.patch(
                    f"/{table}",
                    params={"id": f"eq.{operation.entity_id}"},
                    json={"deleted_at": deleted_at},
                    headers=headers,
                )
            else:
                headers["Prefer"] = "resolution=merge-duplicates,return=minimal"
                response = client.post(
                    f"/{table}", json=operation.payload, headers=headers,
                )
        except httpx.TimeoutException as exc:
            raise DeliveryError(f"Timed out delivering to {table}") from exc
        except httpx.HTTPError as exc:
            raise DeliveryError(f"Could not reach backend: {exc}") from exc
        except RuntimeError as exc:
            # httpx raises this when the client was closed mid-flight
            raise StaleConnectionError(str(exc)) from exc

        if response.is_error:
            raise DeliveryError(
                f"Backend rejected {operation.kind.value} on {table}: "
                f"HTTP {response.status_code}"
            )

    def fetch_rows(self, entity_type: str,
                   updated_since: Optional[str] = None,
                   include_deleted: bool = False,
                   generation: Optional[int] = None) -> list[dict]:
        """Download rows ordered by ``updated_at``, from cache when fresh.

        Tombstoned rows are left out unless ``include_deleted`` is set.
        """
        client = self._checked_client(generation)
        table = model_for(entity_type).TABLE
        params = {"select": "*", "order": "updated_at.asc"}
        if not include_deleted:
            params["deleted_at"] = "is.null"
        if updated_since:
            params["updated_at"] = f"gt.{updated_since}"
        cache_key = f"{self._generation}:{table}:{sorted(params.items())}"
        cached = self.cache.get(cache_key)
        if cached is not None:
            return cached

        try:
            response = client.get(f"/{table}", params=params,
                                  headers=self._headers())
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise DeliveryError(f"Could not fetch {table}: {exc}") from exc
        except RuntimeError as exc:
            raise StaleConnectionError(str(exc)) from exc
        rows = response.json()
        self.cache.put(cache_key, rows)
        return rows

"""Shared test fixtures."""

import os
import threading
import time

import pytest

# Scheduler and configuration tests need Qt but never a display
os.environ.setdefault("QT_QPA_PLATFORM", "offscreen")

from protech.config import SettingsStore
from protech.database.connection import DatabaseConnection
from protech.database.repository import Repository
from protech.database.schema import initialize_database
from protech.sync.configuration import ConfigurationManager
from protech.sync.environment import (
    Environment,
    EnvironmentProfile,
    EnvironmentRegistry,
)
from protech.sync.errors import DeliveryError, StaleConnectionError
from protech.sync.offline_queue import OfflineQueue
from protech.sync.puller import RemotePuller


class FakeRemote:
    """In-memory stand-in for :class:`RemoteClient`.

    Fails deliveries for entity ids listed in ``failing`` and records the
    rest in ``delivered``. Counts every configuration call so tests can
    assert that nothing was touched. ``rows`` holds what ``fetch_rows``
    serves per entity type, and ``peak_in_flight`` is the most deliveries
    that were ever running at once.
    """

    def __init__(self):
        self.generation = 0
        self.url = ""
        self.key = ""
        self.require_https = False
        self.session_token = None
        self.failing: set[str] = set()
        self.fail_all = False
        self.delivered = []
        self.reconfigure_calls = 0
        self.cache_clears = 0
        self.session_clears = 0
        self.cache_settings = None
        self.before_deliver = None  # optional hook(op)
        self.delivery_delay = 0.0
        self.in_flight = 0
        self.peak_in_flight = 0
        self.rows: dict[str, list[dict]] = {}
        self.fetch_calls = []
        self.fetch_error = None
        self._lock = threading.Lock()

    def reconfigure(self, url, key, require_https=False):
        self.url, self.key = url, key
        self.require_https = require_https
        self.generation += 1
        self.reconfigure_calls += 1

    def configure_cache(self, enabled, ttl):
        self.cache_settings = (enabled, ttl)

    def clear_cache(self):
        self.cache_clears += 1

    def set_session(self, token):
        self.session_token = token
        return True

    def clear_session(self):
        self.session_token = None
        self.session_clears += 1

    def deliver(self, operation, generation=None):
        if self.before_deliver is not None:
            self.before_deliver(operation)
        with self._lock:
            self.in_flight += 1
            self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
        try:
            if self.delivery_delay:
                time.sleep(self.delivery_delay)
            if self.fail_all or operation.entity_id in self.failing:
                raise DeliveryError(f"HTTP 503 for {operation.entity_id}")
            with self._lock:
                self.delivered.append(operation)
        finally:
            with self._lock:
                self.in_flight -= 1

    def fetch_rows(self, entity_type, updated_since=None,
                   include_deleted=False, generation=None):
        if generation is not None and generation != self.generation:
            raise StaleConnectionError("remote was reconfigured")
        self.fetch_calls.append((entity_type, updated_since))
        if self.fetch_error is not None:
            raise self.fetch_error
        rows = self.rows.get(entity_type, [])
        if not include_deleted:
            rows = [r for r in rows if not r.get("deleted_at")]
        if updated_since:
            rows = [r for r in rows if r["updated_at"] > updated_since]
        return sorted(rows, key=lambda r: r["updated_at"])


@pytest.fixture
def db_path(tmp_path):
    """Provide a temporary database path."""
    return tmp_path / "test.db"


@pytest.fixture
def db(db_path):
    """Provide an initialized database connection."""
    conn = DatabaseConnection(db_path)
    initialize_database(conn)
    return conn


@pytest.fixture
def store(tmp_path):
    """Settings store backed by a temp file."""
    return SettingsStore(tmp_path / "settings.json")


@pytest.fixture
def remote():
    return FakeRemote()


@pytest.fixture
def queue(db, remote):
    """Queue with no backoff so consecutive drains retry immediately."""
    return OfflineQueue(db, remote, max_retry_attempts=3, backoff_base=0)


@pytest.fixture
def repo(db, queue):
    """Provide a repository that enqueues into ``queue``."""
    return Repository(db, queue)


@pytest.fixture
def puller(db, remote, queue, repo):
    return RemotePuller(db, remote, queue, repo)


@pytest.fixture
def registry():
    """Registry with every environment pointed at a fake HTTPS backend."""
    return EnvironmentRegistry({
        Environment.DEVELOPMENT: EnvironmentProfile(
            remote_url="http://localhost:54321", remote_key="dev-key",
            debug_logging=True, max_retry_attempts=2, sync_interval=30,
        ),
        Environment.STAGING: EnvironmentProfile(
            remote_url="https://staging.example.com", remote_key="stg-key",
            error_reporting_dsn="https://errors.example.com/staging",
            debug_logging=True, analytics=True,
            max_retry_attempts=3, sync_interval=60,
        ),
        Environment.PRODUCTION: EnvironmentProfile(
            remote_url="https://prod.example.com", remote_key="prod-key",
            error_reporting_dsn="https://errors.example.com/prod",
            analytics=True, max_retry_attempts=5, sync_interval=300,
        ),
    })


@pytest.fixture
def manager(qtbot, store, registry, remote, queue):
    """Configuration manager wired to the fake remote and real queue."""
    return ConfigurationManager(store, registry, remote, queue)

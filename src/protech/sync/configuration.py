"""ConfigurationManager: owns the active environment and derived policy.

Constructed once by the application's composition root and handed to
whatever needs it. Environment switches are serialized; a switch clears
every piece of old-environment state (session, queue, response cache)
before the remote client is pointed at the new backend.
"""

import logging
import threading

from PySide6.QtCore import QObject, Signal

from protech.sync.environment import Environment, EnvironmentRegistry
from protech.sync.errors import SettingsPersistenceError
from protech.sync.policy import (
    Feature,
    FeatureFlags,
    PerformanceSettings,
    SecuritySettings,
)
from protech.sync.validator import ConfigurationIssue, validate_configuration

logger = logging.getLogger(__name__)

ENVIRONMENT_KEY = "AppEnvironment"
PRODUCTION_URL_KEY = "ProductionRemoteURL"
PRODUCTION_KEY_KEY = "ProductionRemoteKey"


def _parse_feature(value):
    """Coerce a feature id to :class:`Feature`; None if unknown."""
    try:
        return Feature(value)
    except ValueError:
        logger.warning("Unknown feature flag %r", value)
        return None


class ConfigurationManager(QObject):
    """Single authority for environment, feature flags and policy."""

    environment_changed = Signal(object)  # Environment

    def __init__(self, store, registry: EnvironmentRegistry, remote, queue,
                 error_reporter=None,
                 default_environment: Environment = Environment.DEVELOPMENT,
                 parent=None):
        super().__init__(parent)
        self.store = store
        self.registry = registry
        self.remote = remote
        self.queue = queue
        self.error_reporter = error_reporter
        self._lock = threading.RLock()

        self._environment = Environment.parse(
            store.load(ENVIRONMENT_KEY, default_environment.value),
            default_environment,
        )
        stored_url = store.load(PRODUCTION_URL_KEY)
        stored_key = store.load(PRODUCTION_KEY_KEY)
        if stored_url or stored_key:
            production = registry.profile(Environment.PRODUCTION)
            registry.override(
                Environment.PRODUCTION,
                remote_url=stored_url or production.remote_url,
                remote_key=stored_key or production.remote_key,
            )

        self.feature_flags = FeatureFlags.load(store)
        self.security_settings = SecuritySettings.load(store)
        self.performance_settings = PerformanceSettings.load(store)
        self._configure_services()

    # ── Accessors ───────────────────────────────────────────────

    @property
    def current_environment(self) -> Environment:
        return self._environment

    @property
    def profile(self):
        return self.registry.profile(self._environment)

    # ── Environment switching ───────────────────────────────────

    def switch_environment(self, environment: Environment) -> bool:
        """Move to ``environment``. Returns False when already there.

        A call made while another switch is running waits for it and is then
        judged against the environment that switch left behind.
        """
        environment = Environment(environment)
        with self._lock:
            if environment == self._environment:
                return False
            previous = self._environment
            logger.info("Switching from %s to %s",
                        previous.value, environment.value)

            # No drain may start until the remote targets the new backend
            with self.queue.paused():
                self.remote.clear_session()
                self.queue.clear_queue()
                self.remote.clear_cache()

                self._environment = environment
                self._persist(ENVIRONMENT_KEY, environment.value)
                self._configure_services()
            self.environment_changed.emit(environment)
        return True

    def _configure_services(self):
        """Point every dependent service at the active environment."""
        profile = self.profile
        self._configure_remote()
        self._apply_performance_limits()
        if self.error_reporter is not None:
            self.error_reporter.configure(profile.error_reporting_dsn,
                                          self._environment.value)
        self.queue.apply_policy(
            max_retry_attempts=profile.max_retry_attempts,
            environment=self._environment.value,
        )
        logging.getLogger("protech").setLevel(
            logging.DEBUG if profile.debug_logging else logging.INFO
        )

    def _requires_https(self) -> bool:
        return (self.security_settings.require_https
                and self._environment != Environment.DEVELOPMENT)

    def _configure_remote(self):
        """Repoint the remote client; drains bound to it become stale."""
        profile = self.profile
        self.remote.reconfigure(
            profile.remote_url,
            profile.remote_key,
            require_https=self._requires_https(),
        )

    def _apply_performance_limits(self):
        self.remote.configure_cache(
            self.performance_settings.caching_enabled,
            self.performance_settings.cache_ttl,
        )
        self.queue.apply_policy(
            max_concurrent_operations=(
                self.performance_settings.max_concurrent_operations
            ),
        )

    # ── Feature flags ───────────────────────────────────────────

    def is_feature_enabled(self, feature) -> bool:
        feature = _parse_feature(feature)
        if feature is None:
            return False
        if self._environment == Environment.DEVELOPMENT:
            return True  # Everything is on in development
        if self._environment == Environment.STAGING:
            return feature in self.feature_flags.staging_features
        return feature in self.feature_flags.production_features

    def update_feature_flag(self, feature, enabled: bool,
                            environment: Environment) -> bool:
        """Toggle ``feature`` for ``environment``; returns whether it persisted.

        Development ignores flags entirely, so it is a no-op there.
        """
        environment = Environment(environment)
        if environment == Environment.DEVELOPMENT:
            return False
        feature = _parse_feature(feature)
        if feature is None:
            return False
        with self._lock:
            features = (self.feature_flags.staging_features
                        if environment == Environment.STAGING
                        else self.feature_flags.production_features)
            if enabled:
                features.add(feature)
            else:
                features.discard(feature)
            return self._persist_with(self.feature_flags.save, "feature flags")

    # ── Policy ──────────────────────────────────────────────────

    def update_security_settings(self, settings: SecuritySettings) -> bool:
        with self._lock:
            was_https = self._requires_https()
            self.security_settings = settings
            if self._requires_https() != was_https:
                self._configure_remote()
            return self._persist_with(settings.save, "security settings")

    def update_performance_settings(self, settings: PerformanceSettings) -> bool:
        with self._lock:
            self.performance_settings = settings
            self._apply_performance_limits()
            return self._persist_with(settings.save, "performance settings")

    def update_production_credentials(self, url: str, key: str) -> bool:
        """Store the production backend URL/key entered by an admin."""
        with self._lock:
            self.registry.override(Environment.PRODUCTION,
                                   remote_url=url, remote_key=key)
            if self._environment == Environment.PRODUCTION:
                self._configure_services()
            url_saved = self._persist(PRODUCTION_URL_KEY, url)
            key_saved = self._persist(PRODUCTION_KEY_KEY, key)
            return url_saved and key_saved

    # ── Validation ──────────────────────────────────────────────

    def validate_configuration(self) -> list[ConfigurationIssue]:
        return validate_configuration(
            self._environment,
            self.profile,
            self.security_settings,
            self.feature_flags,
        )

    # ── Persistence ─────────────────────────────────────────────

    def _persist(self, key: str, value) -> bool:
        return self._persist_with(lambda store: store.save(key, value), key)

    def _persist_with(self, save, what: str) -> bool:
        """Best-effort save; the in-memory value stays authoritative."""
        try:
            save(self.store)
            return True
        except SettingsPersistenceError as exc:
            logger.warning("Could not persist %s: %s", what, exc)
            return False

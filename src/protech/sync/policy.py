"""Feature flags plus security and performance policy.

Each policy object is persisted under its own key in the settings store and
loads independently: a missing or undecodable value yields the defaults.
"""

import logging
from dataclasses import asdict, dataclass, field
from enum import Enum

logger = logging.getLogger(__name__)

FEATURE_FLAGS_KEY = "FeatureFlags"
SECURITY_SETTINGS_KEY = "SecuritySettings"
PERFORMANCE_SETTINGS_KEY = "PerformanceSettings"


class Feature(str, Enum):
    SUPABASE_SYNC = "supabase_sync"
    REALTIME_UPDATES = "realtime_updates"
    TEAM_PRESENCE = "team_presence"
    OFFLINE_MODE = "offline_mode"
    ADVANCED_ANALYTICS = "advanced_analytics"
    BETA_FEATURES = "beta_features"
    DEBUG_TOOLS = "debug_tools"


def _parse_features(values) -> set[Feature]:
    """Decode a list of feature names, dropping ones we don't know."""
    features = set()
    for value in values or []:
        try:
            features.add(Feature(value))
        except ValueError:
            logger.debug("Ignoring unknown feature flag %r", value)
    return features


@dataclass
class FeatureFlags:
    staging_features: set[Feature] = field(default_factory=lambda: {
        Feature.SUPABASE_SYNC,
        Feature.REALTIME_UPDATES,
        Feature.TEAM_PRESENCE,
        Feature.OFFLINE_MODE,
    })
    production_features: set[Feature] = field(default_factory=lambda: {
        Feature.SUPABASE_SYNC,
        Feature.OFFLINE_MODE,
    })

    def to_dict(self) -> dict:
        return {
            "staging_features": sorted(f.value for f in self.staging_features),
            "production_features": sorted(
                f.value for f in self.production_features
            ),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "FeatureFlags":
        return cls(
            staging_features=_parse_features(data["staging_features"]),
            production_features=_parse_features(data["production_features"]),
        )

    @classmethod
    def load(cls, store) -> "FeatureFlags":
        return _load(store, FEATURE_FLAGS_KEY, cls)

    def save(self, store):
        store.save(FEATURE_FLAGS_KEY, self.to_dict())


@dataclass
class SecuritySettings:
    require_https: bool = True
    certificate_pinning: bool = False
    max_login_attempts: int = 5
    session_timeout: int = 1800  # 30 minutes
    require_biometric_auth: bool = False
    data_encryption: bool = True

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "SecuritySettings":
        return cls(
            require_https=bool(data["require_https"]),
            certificate_pinning=bool(data["certificate_pinning"]),
            max_login_attempts=int(data["max_login_attempts"]),
            session_timeout=int(data["session_timeout"]),
            require_biometric_auth=bool(data["require_biometric_auth"]),
            data_encryption=bool(data["data_encryption"]),
        )

    @classmethod
    def load(cls, store) -> "SecuritySettings":
        return _load(store, SECURITY_SETTINGS_KEY, cls)

    def save(self, store):
        store.save(SECURITY_SETTINGS_KEY, self.to_dict())


@dataclass
class PerformanceSettings:
    caching_enabled: bool = True
    cache_ttl: int = 3600  # 1 hour
    batch_size: int = 100
    max_concurrent_operations: int = 5
    compression_enabled: bool = True
    image_quality: float = 0.8

    def __post_init__(self):
        self.image_quality = min(max(float(self.image_quality), 0.0), 1.0)
        self.max_concurrent_operations = max(int(self.max_concurrent_operations), 1)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "PerformanceSettings":
        return cls(
            caching_enabled=bool(data["caching_enabled"]),
            cache_ttl=int(data["cache_ttl"]),
            batch_size=int(data["batch_size"]),
            max_concurrent_operations=int(data["max_concurrent_operations"]),
            compression_enabled=bool(data["compression_enabled"]),
            image_quality=float(data["image_quality"]),
        )

    @classmethod
    def load(cls, store) -> "PerformanceSettings":
        return _load(store, PERFORMANCE_SETTINGS_KEY, cls)

    def save(self, store):
        store.save(PERFORMANCE_SETTINGS_KEY, self.to_dict())


def _load(store, key: str, cls):
    """Decode ``key`` from the store, or return ``cls()`` defaults."""
    data = store.load(key)
    if data is None:
        return cls()
    try:
        return cls.from_dict(data)
    except (KeyError, TypeError, ValueError) as exc:
        logger.warning("Using default %s, stored value unreadable: %s",
                       cls.__name__, exc)
        return cls()

"""Deployment environments and their connection profiles."""

from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional


class Environment(str, Enum):
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"

    @classmethod
    def parse(cls, value, default: "Environment") -> "Environment":
        """Parse a persisted value, falling back to ``default``."""
        try:
            return cls(str(value).lower())
        except ValueError:
            return default


@dataclass(frozen=True)
class EnvironmentProfile:
    remote_url: str = ""
    remote_key: str = ""
    error_reporting_dsn: Optional[str] = None
    debug_logging: bool = False
    analytics: bool = False
    max_retry_attempts: int = 3
    sync_interval: int = 60  # seconds


# Policy defaults that do not depend on deployment secrets
_PROFILE_DEFAULTS = {
    Environment.DEVELOPMENT: {
        "debug_logging": True,
        "analytics": False,
        "max_retry_attempts": 2,
        "sync_interval": 30,
    },
    Environment.STAGING: {
        "debug_logging": True,
        "analytics": True,
        "max_retry_attempts": 3,
        "sync_interval": 60,
    },
    Environment.PRODUCTION: {
        "debug_logging": False,
        "analytics": True,
        "max_retry_attempts": 5,
        "sync_interval": 300,
    },
}


class EnvironmentRegistry:
    """Maps each environment to its (immutable) profile."""

    def __init__(self, profiles: dict[Environment, EnvironmentProfile]):
        missing = set(Environment) - set(profiles)
        if missing:
            names = ", ".join(sorted(e.value for e in missing))
            raise ValueError(f"No profile for environment(s): {names}")
        self._profiles = dict(profiles)

    @classmethod
    def from_config(cls, config) -> "EnvironmentRegistry":
        """Build the registry from ``Config``-style attributes."""
        urls = {
            Environment.DEVELOPMENT: (config.DEV_REMOTE_URL,
                                      config.DEV_REMOTE_KEY, None),
            Environment.STAGING: (config.STAGING_REMOTE_URL,
                                  config.STAGING_REMOTE_KEY,
                                  config.STAGING_ERROR_DSN or None),
            Environment.PRODUCTION: (config.PRODUCTION_REMOTE_URL,
                                     config.PRODUCTION_REMOTE_KEY,
                                     config.PRODUCTION_ERROR_DSN or None),
        }
        profiles = {}
        for env, (url, key, dsn) in urls.items():
            profiles[env] = EnvironmentProfile(
                remote_url=url,
                remote_key=key,
                error_reporting_dsn=dsn,
                **_PROFILE_DEFAULTS[env],
            )
        return cls(profiles)

    def profile(self, environment: Environment) -> EnvironmentProfile:
        return self._profiles[environment]

    def override(self, environment: Environment, **changes) -> EnvironmentProfile:
        """Swap in a new profile for ``environment`` with ``changes`` applied."""
        updated = replace(self._profiles[environment], **changes)
        self._profiles[environment] = updated
        return updated

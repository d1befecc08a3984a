"""Application configuration: loads .env, plus the JSON settings store."""

import json
import logging
import os
import threading
from pathlib import Path

from dotenv import load_dotenv

from protech.sync.errors import SettingsPersistenceError

logger = logging.getLogger(__name__)

# Find the project root (where .env lives)
_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
load_dotenv(_PROJECT_ROOT / ".env")

_DATA_DIR = Path(os.getenv("PROTECH_DATA_DIR", str(_PROJECT_ROOT / "data")))


class Config:
    """Central configuration: .env values with hard-coded defaults."""

    # Paths
    PROJECT_ROOT: Path = _PROJECT_ROOT
    DATA_DIR: Path = _DATA_DIR
    DATABASE_PATH: Path = Path(
        os.getenv("DATABASE_PATH", str(_DATA_DIR / "protech.db"))
    )
    SETTINGS_PATH: Path = Path(
        os.getenv("SETTINGS_PATH", str(_DATA_DIR / "settings.json"))
    )
    BACKUP_PATH: Path = Path(
        os.getenv("DATABASE_BACKUP_PATH", str(_DATA_DIR / "backups"))
    )

    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    # Environment used on first run, before anything is persisted
    DEFAULT_ENVIRONMENT: str = os.getenv("PROTECH_ENVIRONMENT", "development")

    # Remote backend, per environment
    DEV_REMOTE_URL: str = os.getenv(
        "PROTECH_DEV_REMOTE_URL", "http://localhost:54321"
    )
    DEV_REMOTE_KEY: str = os.getenv("PROTECH_DEV_REMOTE_KEY", "dev-anon-key")
    STAGING_REMOTE_URL: str = os.getenv(
        "PROTECH_STAGING_REMOTE_URL", "https://staging-project.supabase.co"
    )
    STAGING_REMOTE_KEY: str = os.getenv(
        "PROTECH_STAGING_REMOTE_KEY", "staging-anon-key"
    )
    PRODUCTION_REMOTE_URL: str = os.getenv("PROTECH_PRODUCTION_REMOTE_URL", "")
    PRODUCTION_REMOTE_KEY: str = os.getenv("PROTECH_PRODUCTION_REMOTE_KEY", "")

    # Error reporting endpoints (no reporting in development)
    STAGING_ERROR_DSN: str = os.getenv("PROTECH_STAGING_ERROR_DSN", "")
    PRODUCTION_ERROR_DSN: str = os.getenv("PROTECH_PRODUCTION_ERROR_DSN", "")

    # Delivery
    REMOTE_TIMEOUT: float = float(os.getenv("PROTECH_REMOTE_TIMEOUT", "15"))
    RETRY_BACKOFF_BASE: float = float(
        os.getenv("PROTECH_RETRY_BACKOFF_BASE", "5")
    )
    RETRY_BACKOFF_MAX: float = float(
        os.getenv("PROTECH_RETRY_BACKOFF_MAX", "300")
    )


class SettingsStore:
    """Key-value store persisted as a single JSON file.

    Every key loads independently: a missing file, a corrupt file or a
    missing key all read as ``default``. Saving raises
    :class:`SettingsPersistenceError` so callers decide what to do. Access is
    serialized, so concurrent saves of different keys never lose one.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self._lock = threading.Lock()

    def _read_all(self) -> dict:
        if self.path.exists():
            try:
                data = json.loads(self.path.read_text(encoding="utf-8"))
                if isinstance(data, dict):
                    return data
                logger.warning("Ignoring non-object settings file %s", self.path)
            except (json.JSONDecodeError, OSError) as exc:
                logger.warning("Could not read settings %s: %s", self.path, exc)
        return {}

    def _write_all(self, settings: dict):
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(
                json.dumps(settings, indent=2), encoding="utf-8"
            )
        except (OSError, TypeError, ValueError) as exc:
            raise SettingsPersistenceError(
                f"Could not write settings to {self.path}: {exc}"
            ) from exc

    def load(self, key: str, default=None):
        with self._lock:
            return self._read_all().get(key, default)

    def save(self, key: str, value):
        """Persist one key, keeping every other key untouched."""
        with self._lock:
            settings = self._read_all()
            settings[key] = value
            self._write_all(settings)

    def remove(self, key: str):
        with self._lock:
            settings = self._read_all()
            if key in settings:
                del settings[key]
                self._write_all(settings)

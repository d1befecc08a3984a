"""Database backup script: copies the local store aside with a timestamp.

Run before clearing the queue or switching environments by hand; queued
operations live in the same file as the records.
"""

import shutil
import sys
from datetime import datetime
from pathlib import Path

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from protech.config import Config

KEEP_BACKUPS = 10


def backup_database(db_path: Path = None, backup_dir: Path = None):
    """Copy the database file into ``backup_dir``; returns the new path."""
    db_path = Path(db_path or Config.DATABASE_PATH)
    backup_dir = Path(backup_dir or Config.BACKUP_PATH)
    backup_dir.mkdir(parents=True, exist_ok=True)

    if not db_path.exists():
        print(f"Database not found at {db_path}")
        return None

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S_%f")
    backup_file = backup_dir / f"protech_{timestamp}.db"
    shutil.copy2(db_path, backup_file)
    print(f"Backup created: {backup_file}")

    backups = sorted(backup_dir.glob("protech_*.db"), reverse=True)
    for old in backups[KEEP_BACKUPS:]:
        old.unlink()
        print(f"Removed old backup: {old.name}")
    return backup_file


if __name__ == "__main__":
    backup_database()

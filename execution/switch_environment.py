"""Switch the persisted deployment environment.

Switching discards the queued operations of the current environment, so
unsent local changes are not delivered to the new backend. Use --backup to
copy the database first.
"""

import argparse
import sys
from pathlib import Path

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from protech.app import build_services, configure_logging
from protech.config import Config
from protech.sync.environment import Environment

from db_backup import backup_database


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument(
        "environment", choices=[e.value for e in Environment],
        help="target environment",
    )
    parser.add_argument(
        "--backup", action="store_true",
        help="back up the database before switching",
    )
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    configure_logging(Config.LOG_LEVEL)
    if args.backup:
        backup_database()

    services = build_services(Config)
    try:
        manager = services.config_manager
        pending = services.queue.pending_count()
        target = Environment(args.environment)
        if not manager.switch_environment(target):
            print(f"Already on {target.value}")
            return 0
        print(f"Switched to {target.value}; "
              f"discarded {pending} queued operation(s)")
        for issue in manager.validate_configuration():
            print(f"  [{issue.severity.value}] {issue.description}")
        return 0
    finally:
        services.shutdown()


if __name__ == "__main__":
    sys.exit(main())

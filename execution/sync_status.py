"""Print the sync state of the local store: counts, queue and config issues."""

import sys
from pathlib import Path

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from protech.app import build_services, configure_logging
from protech.config import Config


def print_status(services):
    manager = services.config_manager
    print(f"Environment: {manager.current_environment.value}")
    print(f"Remote:      {services.remote.url or '(not configured)'}")

    counts = services.repository.sync_counts()
    print("\nRecords:")
    for status in ("pending", "synced", "failed"):
        print(f"  {status:<8} {counts[status]}")

    operations = services.queue.pending_operations()
    print(f"\nQueued operations: {len(operations)}")
    for op in operations:
        retry = f", last error: {op.last_error}" if op.last_error else ""
        print(f"  #{op.seq} {op.kind.value:<6} {op.entity_type}/"
              f"{op.entity_id} (attempts {op.attempts}{retry})")

    failed = services.queue.failed_operations()
    if failed:
        print(f"\nFailed operations: {len(failed)}")
        for row in failed:
            print(f"  [{row['id']}] {row['kind']} {row['entity_type']}/"
                  f"{row['entity_id']}: {row['last_error']}")

    issues = manager.validate_configuration()
    print(f"\nConfiguration issues: {len(issues)}")
    for issue in issues:
        print(f"  [{issue.severity.value}] {issue.description}")

    log = services.queue.recent_sync_log(5)
    if log:
        print("\nRecent drains:")
        for entry in log:
            print(f"  {entry['started_at']} {entry['environment']}: "
                  f"{entry['delivered']} delivered, "
                  f"{entry['retrying']} retrying, "
                  f"{entry['exhausted']} exhausted")


if __name__ == "__main__":
    configure_logging("WARNING")
    services = build_services(Config)
    try:
        print_status(services)
    finally:
        services.shutdown()

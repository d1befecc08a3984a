"""Application entry point: wires the sync services and runs the agent."""

import logging
import signal
import sys
from dataclasses import dataclass

from PySide6.QtCore import QCoreApplication, QTimer

from protech.config import Config, SettingsStore
from protech.database.connection import DatabaseConnection
from protech.database.repository import Repository
from protech.database.schema import initialize_database
from protech.sync.configuration import ConfigurationManager
from protech.sync.environment import Environment, EnvironmentRegistry
from protech.sync.offline_queue import OfflineQueue
from protech.sync.puller import RemotePuller
from protech.sync.remote import RemoteClient
from protech.sync.reporting import ErrorReporter
from protech.sync.scheduler import SyncScheduler
from protech.sync.validator import Severity

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"


def configure_logging(level: str = "INFO"):
    """Send ``protech`` log records to stderr at ``level``."""
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format=LOG_FORMAT,
    )


@dataclass
class AppServices:
    """Everything the sync agent is built from."""

    store: SettingsStore
    db: DatabaseConnection
    remote: RemoteClient
    queue: OfflineQueue
    repository: Repository
    puller: RemotePuller
    error_reporter: ErrorReporter
    config_manager: ConfigurationManager
    scheduler: SyncScheduler

    def shutdown(self):
        self.scheduler.stop()
        self.error_reporter.detach()
        self.remote.close()


def build_services(config=Config) -> AppServices:
    """Construct and connect the services for ``config``.

    Nothing here is a singleton; tests build their own set against a
    temporary data directory.
    """
    store = SettingsStore(config.SETTINGS_PATH)
    db = DatabaseConnection(config.DATABASE_PATH)
    initialize_database(db)

    remote = RemoteClient(store, timeout=config.REMOTE_TIMEOUT)
    queue = OfflineQueue(
        db, remote,
        backoff_base=config.RETRY_BACKOFF_BASE,
        backoff_max=config.RETRY_BACKOFF_MAX,
    )
    repository = Repository(db, queue)
    error_reporter = ErrorReporter()
    config_manager = ConfigurationManager(
        store,
        EnvironmentRegistry.from_config(config),
        remote,
        queue,
        error_reporter=error_reporter,
        default_environment=Environment.parse(
            config.DEFAULT_ENVIRONMENT, Environment.DEVELOPMENT
        ),
    )
    puller = RemotePuller(db, remote, queue, repository)
    scheduler = SyncScheduler(queue, config_manager, puller=puller)
    return AppServices(
        store=store,
        db=db,
        remote=remote,
        queue=queue,
        repository=repository,
        puller=puller,
        error_reporter=error_reporter,
        config_manager=config_manager,
        scheduler=scheduler,
    )


def main():
    """Run the headless sync agent until interrupted."""
    configure_logging(Config.LOG_LEVEL)

    app = QCoreApplication(sys.argv)
    app.setApplicationName("ProTech Sync")

    services = build_services()
    manager = services.config_manager
    logger.info("Environment: %s", manager.current_environment.value)

    for issue in manager.validate_configuration():
        log = (logger.error if issue.severity in (Severity.CRITICAL, Severity.HIGH)
               else logger.warning)
        log("Configuration issue (%s): %s", issue.kind.value, issue.description)

    queued = services.queue.reconcile(services.repository)
    if queued:
        logger.info("Recovered %d unsynced record(s)", queued)

    services.scheduler.drain_finished.connect(
        lambda result: logger.debug("Drain result: %s", result.summary())
    )
    services.scheduler.drain_failed.connect(
        lambda error: logger.error("Drain failed: %s", error)
    )
    services.scheduler.pull_finished.connect(
        lambda merged: logger.debug("Pull merged %d record(s)", merged)
    )
    services.scheduler.start()
    services.scheduler.request_drain("startup")

    # Ctrl+C only reaches Python while the event loop yields
    signal.signal(signal.SIGINT, lambda *_: app.quit())
    heartbeat = QTimer()
    heartbeat.timeout.connect(lambda: None)
    heartbeat.start(500)

    exit_code = app.exec()
    services.shutdown()
    sys.exit(exit_code)


if __name__ == "__main__":
    main()

"""Sync scheduler: drains the offline queue on a timer and on events."""

import logging
from typing import Optional

from PySide6.QtCore import QObject, QThread, QTimer, Signal

from protech.sync.offline_queue import OfflineQueue
from protech.sync.puller import RemotePuller

logger = logging.getLogger(__name__)


class DrainWorker(QThread):
    """Runs a single queue drain off the UI thread, then a pull pass when a
    puller is attached and the drain was not busy or cancelled."""

    drained = Signal(object)  # DrainResult
    pulled = Signal(int)  # records merged
    error = Signal(str)

    def __init__(self, queue: OfflineQueue,
                 puller: Optional[RemotePuller] = None):
        super().__init__()
        self.queue = queue
        self.puller = puller

    def run(self):
        try:
            result = self.queue.drain()
        except Exception as e:
            logger.exception("Queue drain crashed")
            self.error.emit(str(e))
            return
        self.drained.emit(result)

        if self.puller is None or result.busy or result.cancelled:
            return
        try:
            merged = self.puller.pull()
        except Exception as e:
            logger.exception("Pull pass crashed")
            self.error.emit(str(e))
            return
        self.pulled.emit(merged)


class SyncScheduler(QObject):
    """Triggers drains every ``sync_interval`` seconds of the active
    environment, when connectivity comes back, and after an environment
    switch. At most one drain worker runs at a time; a request that arrives
    while one is running is remembered and served once it finishes.
    """

    drain_started = Signal(str)  # reason
    drain_finished = Signal(object)  # DrainResult
    drain_failed = Signal(str)
    pull_finished = Signal(int)  # records merged

    def __init__(self, queue: OfflineQueue, config_manager,
                 puller: Optional[RemotePuller] = None, parent=None):
        super().__init__(parent)
        self.queue = queue
        self.puller = puller
        self.config_manager = config_manager
        self._timer = QTimer(self)
        self._timer.timeout.connect(lambda: self.request_drain("interval"))
        self._worker: Optional[DrainWorker] = None
        self._pending_reason: Optional[str] = None
        self._online = True
        self._enabled = False
        config_manager.environment_changed.connect(self._on_environment_changed)

    # ── State ───────────────────────────────────────────────────

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def is_online(self) -> bool:
        return self._online

    @property
    def interval_ms(self) -> int:
        seconds = self.config_manager.profile.sync_interval
        return max(int(seconds), 1) * 1000

    def is_draining(self) -> bool:
        return self._worker is not None

    # ── Control ─────────────────────────────────────────────────

    def start(self):
        self._enabled = True
        self._timer.start(self.interval_ms)
        logger.info("Sync scheduler started (every %d ms)", self.interval_ms)

    def stop(self):
        """Stop the timer and abandon the drain in flight."""
        self._enabled = False
        self._timer.stop()
        self._pending_reason = None
        self.queue.cancel_drain()
        if self._worker is not None:
            self._worker.wait()
            self._worker = None

    def set_online(self, online: bool):
        """Report connectivity; regaining it triggers a drain."""
        was_offline = not self._online
        self._online = online
        if online and was_offline:
            logger.info("Connectivity restored")
            self.request_drain("connectivity")

    def request_drain(self, reason: str = "manual") -> bool:
        """Start a drain now. Returns False if offline or deferred."""
        if not self._online:
            return False
        if self._worker is not None:
            self._pending_reason = reason
            return False

        worker = DrainWorker(self.queue, self.puller)
        worker.drained.connect(self._on_drained)
        worker.pulled.connect(self.pull_finished)
        worker.error.connect(self._on_error)
        worker.finished.connect(self._on_worker_done)
        self._worker = worker
        self.drain_started.emit(reason)
        worker.start()
        return True

    # ── Slots ───────────────────────────────────────────────────

    def _on_environment_changed(self, environment):
        if self._enabled:
            self._timer.start(self.interval_ms)
        logger.debug("Draining after switch to %s", environment.value)
        self.request_drain("environment")

    def _on_drained(self, result):
        self.drain_finished.emit(result)

    def _on_error(self, error: str):
        self.drain_failed.emit(error)

    def _on_worker_done(self):
        worker, self._worker = self._worker, None
        if worker is not None:
            worker.wait()  # finished fires just before the thread exits
        if self._pending_reason is not None:
            reason, self._pending_reason = self._pending_reason, None
            self.request_drain(reason)

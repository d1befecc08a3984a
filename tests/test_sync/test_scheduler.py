"""Tests for the Qt sync scheduler."""

import threading

import pytest

from protech.database.models import Customer
from protech.sync.environment import Environment
from protech.sync.operations import SyncStatus
from protech.sync.scheduler import SyncScheduler


@pytest.fixture
def scheduler(qtbot, queue, manager):
    scheduler = SyncScheduler(queue, manager)
    yield scheduler
    scheduler.stop()


@pytest.fixture
def pulling_scheduler(qtbot, queue, manager, puller):
    scheduler = SyncScheduler(queue, manager, puller=puller)
    yield scheduler
    scheduler.stop()


class TestRequestDrain:
    def test_drain_runs_in_background(self, qtbot, scheduler, repo):
        cid = repo.create(Customer(first_name="Ada"))

        with qtbot.waitSignal(scheduler.drain_finished,
                              timeout=5000) as blocker:
            assert scheduler.request_drain("manual") is True

        result = blocker.args[0]
        assert len(result.delivered) == 1
        assert repo.get("customer", cid).cloud_sync_status == SyncStatus.SYNCED

    def test_drain_started_carries_reason(self, qtbot, scheduler):
        with qtbot.waitSignal(scheduler.drain_started) as blocker:
            scheduler.request_drain("startup")
        assert blocker.args == ["startup"]
        qtbot.waitUntil(lambda: not scheduler.is_draining(), timeout=5000)

    def test_crash_reported_as_failure(self, qtbot, scheduler, queue,
                                       monkeypatch):
        def explode():
            raise RuntimeError("disk I/O error")

        monkeypatch.setattr(queue, "drain", explode)
        with qtbot.waitSignal(scheduler.drain_failed,
                              timeout=5000) as blocker:
            scheduler.request_drain()
        assert "disk I/O error" in blocker.args[0]

    def test_request_while_running_is_deferred(self, qtbot, scheduler, repo,
                                               remote):
        repo.create(Customer(first_name="Ada"))
        release = threading.Event()
        remote.before_deliver = lambda op: release.wait(5)
        results = []
        scheduler.drain_finished.connect(results.append)

        assert scheduler.request_drain("first") is True
        assert scheduler.request_drain("second") is False
        release.set()

        qtbot.waitUntil(lambda: len(results) == 2, timeout=5000)
        assert len(results[0].delivered) == 1


class TestPullAfterDrain:
    def test_pull_follows_drain(self, qtbot, pulling_scheduler, remote,
                                repo):
        remote.rows["customer"] = [{
            "id": "c-remote", "first_name": "Grace",
            "updated_at": "2099-01-01T00:00:00+00:00",
        }]
        with qtbot.waitSignal(pulling_scheduler.pull_finished,
                              timeout=5000) as blocker:
            pulling_scheduler.request_drain()

        assert blocker.args == [1]
        customer = repo.get("customer", "c-remote")
        assert customer.cloud_sync_status == SyncStatus.SYNCED
        qtbot.waitUntil(lambda: not pulling_scheduler.is_draining(),
                        timeout=5000)

    def test_busy_drain_skips_pull(self, qtbot, pulling_scheduler, queue,
                                   remote):
        pulled = []
        pulling_scheduler.pull_finished.connect(pulled.append)
        with queue.paused():
            with qtbot.waitSignal(pulling_scheduler.drain_finished,
                                  timeout=5000) as blocker:
                pulling_scheduler.request_drain()
            qtbot.waitUntil(lambda: not pulling_scheduler.is_draining(),
                            timeout=5000)

        assert blocker.args[0].busy
        assert pulled == []
        assert remote.fetch_calls == []

    def test_scheduler_without_puller_never_fetches(self, qtbot, scheduler,
                                                    remote):
        with qtbot.waitSignal(scheduler.drain_finished, timeout=5000):
            scheduler.request_drain()
        qtbot.waitUntil(lambda: not scheduler.is_draining(), timeout=5000)
        assert remote.fetch_calls == []


class TestConnectivity:
    def test_offline_blocks_drains(self, scheduler):
        scheduler.set_online(False)
        assert scheduler.request_drain() is False
        assert not scheduler.is_draining()

    def test_reconnect_triggers_drain(self, qtbot, scheduler):
        scheduler.set_online(False)
        with qtbot.waitSignal(scheduler.drain_started) as blocker:
            scheduler.set_online(True)
        assert blocker.args == ["connectivity"]
        qtbot.waitUntil(lambda: not scheduler.is_draining(), timeout=5000)

    def test_staying_online_does_not_drain(self, qtbot, scheduler):
        with qtbot.assertNotEmitted(scheduler.drain_started):
            scheduler.set_online(True)


class TestTimer:
    def test_interval_follows_environment(self, scheduler, manager):
        assert scheduler.interval_ms == 30_000
        manager.switch_environment(Environment.PRODUCTION)
        assert scheduler.interval_ms == 300_000

    def test_start_and_stop(self, scheduler):
        scheduler.start()
        assert scheduler.enabled
        assert scheduler._timer.isActive()
        assert scheduler._timer.interval() == 30_000
        scheduler.stop()
        assert not scheduler.enabled
        assert not scheduler._timer.isActive()

    def test_environment_switch_restarts_timer_and_drains(self, qtbot,
                                                          scheduler, manager):
        scheduler.start()
        with qtbot.waitSignal(scheduler.drain_started) as blocker:
            manager.switch_environment(Environment.STAGING)
        assert blocker.args == ["environment"]
        assert scheduler._timer.interval() == 60_000
        qtbot.waitUntil(lambda: not scheduler.is_draining(), timeout=5000)

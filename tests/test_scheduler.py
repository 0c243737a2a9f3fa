"""Tests for the billing scheduler — run-guard, start/stop, restart."""

import logging
import threading
import time

import pytest

from billing import BillingConfig
from db import save_state
from scheduler import BillingScheduler, setup_logging


class BlockingEngine:
    """run_cycle() waits on a gate so overlap can be observed."""

    def __init__(self):
        self.gate = threading.Event()
        self.started = threading.Event()
        self.calls = 0
        self.error = None

    def run_cycle(self):
        self.calls += 1
        self.started.set()
        self.gate.wait(5)
        if self.error:
            raise self.error


@pytest.fixture
def engine():
    e = BlockingEngine()
    yield e
    e.gate.set()


@pytest.fixture
def scheduler(engine, settings_store):
    s = BillingScheduler(engine, settings_store)
    yield s
    s.stop()


def _enable(settings_store, **kw):
    raw = {"enabled": True, "interval_minutes": 1, "rate_per_gb_hour": "60"}
    raw.update(kw)
    settings_store.save_billing_config(BillingConfig.from_dict(raw))


class TestRunGuard:
    def test_overlapping_tick_skipped(self, scheduler, engine):
        assert scheduler.tick() is True
        assert engine.started.wait(2)
        assert scheduler.tick() is False
        assert scheduler.run_now() is False
        assert scheduler.skipped_ticks == 2
        engine.gate.set()

    def test_guard_released_after_cycle(self, scheduler, engine):
        engine.gate.set()
        assert scheduler.tick(wait=True) is True
        assert scheduler.tick(wait=True) is True
        assert engine.calls == 2
        assert scheduler.cycle_in_progress is False

    def test_guard_released_after_error(self, scheduler, engine):
        engine.gate.set()
        engine.error = RuntimeError("database is locked")
        assert scheduler.run_now() is True
        assert scheduler.cycle_in_progress is False
        assert scheduler.run_now() is True

    def test_run_now_is_synchronous(self, scheduler, engine):
        engine.gate.set()
        assert scheduler.run_now() is True
        assert engine.calls == 1


class TestLifecycle:
    def test_disabled_does_not_arm(self, scheduler, settings_store):
        _enable(settings_store, enabled=False)
        assert scheduler.start() is False
        assert scheduler.is_running is False

    def test_no_config_does_not_arm(self, scheduler):
        assert scheduler.start() is False

    def test_misconfigured_does_not_arm(self, scheduler, db_path):
        save_state(db_path, "billing", {"enabled": True, "interval_minutes": 0})
        assert scheduler.start() is False

    def test_start_and_stop(self, scheduler, settings_store):
        _enable(settings_store, interval_minutes=3)
        assert scheduler.start() is True
        assert scheduler.is_running is True
        assert scheduler.status()["interval_minutes"] == 3
        scheduler.stop()
        assert scheduler.is_running is False

    def test_start_twice_keeps_one_timer(self, scheduler, settings_store):
        _enable(settings_store)
        scheduler.start()
        timer = scheduler._timer
        assert scheduler.start() is True
        assert scheduler._timer is timer

    def test_restart_picks_up_new_interval(self, scheduler, settings_store):
        _enable(settings_store, interval_minutes=1)
        scheduler.start()
        settings_store.update_billing_config(interval_minutes=10)
        assert scheduler.restart() is True
        assert scheduler.interval_minutes == 10

    def test_restart_after_disable_stops(self, scheduler, settings_store):
        _enable(settings_store)
        scheduler.start()
        settings_store.update_billing_config(enabled=False)
        assert scheduler.restart() is False
        assert scheduler.is_running is False

    def test_timer_fires_ticks(self, engine, settings_store, monkeypatch):
        _enable(settings_store)
        engine.gate.set()
        s = BillingScheduler(engine, settings_store)
        monkeypatch.setattr(s, "_timer_loop", lambda stop, _interval: BillingScheduler._timer_loop(s, stop, 0.01))
        try:
            s.start()
            deadline = time.monotonic() + 2
            while engine.calls < 2 and time.monotonic() < deadline:
                time.sleep(0.01)
        finally:
            s.stop()
        assert engine.calls >= 2

    def test_stop_lets_inflight_cycle_finish(self, scheduler, engine, settings_store):
        _enable(settings_store)
        scheduler.start()
        scheduler.tick()
        assert engine.started.wait(2)
        scheduler.stop()
        assert scheduler.cycle_in_progress is True
        engine.gate.set()
        deadline = time.monotonic() + 2
        while scheduler.cycle_in_progress and time.monotonic() < deadline:
            time.sleep(0.01)
        assert scheduler.cycle_in_progress is False


class TestSetupLogging:
    def test_configures_named_logger_once(self, tmp_path):
        logger = logging.getLogger("coinmeter")
        saved = logger.handlers[:]
        logger.handlers.clear()
        try:
            first = setup_logging(str(tmp_path / "coinmeter.log"), "DEBUG")
            count = len(first.handlers)
            second = setup_logging(str(tmp_path / "other.log"))
            assert first is second
            assert count == 2
            assert len(second.handlers) == 2
            assert first.level == logging.DEBUG
        finally:
            for h in logger.handlers:
                h.close()
            logger.handlers[:] = saved

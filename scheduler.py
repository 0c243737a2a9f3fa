# Coinmeter Scheduler
# Fires the billing engine every `interval_minutes`. One daemon timer thread,
# one worker thread per started cycle, and a single run-guard: a tick that
# lands while a cycle is still running is skipped, never queued.
#
# Reconfiguration is stop-and-restart. An armed timer is never mutated.

import logging
import threading
import time
from typing import Optional

from billing import BillingEngine, ConfigurationError, SettingsStore
from config import DEFAULT_LOG_FILE


# ── Logging ───────────────────────────────────────────────────────────


def setup_logging(log_file=None, level=logging.INFO):
    """
    One logger for the whole service.
    Console + file, configured once.
    """
    log_file = log_file or DEFAULT_LOG_FILE
    logger = logging.getLogger("coinmeter")

    if logger.handlers:
        return logger

    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    logger.setLevel(level)
    fmt = logging.Formatter(
        "[%(asctime)s] %(levelname)-8s %(message)s", datefmt="%Y-%m-%d %H:%M:%S"
    )

    # File handler: the permanent record
    fh = logging.FileHandler(log_file)
    fh.setLevel(level)
    fh.setFormatter(fmt)
    logger.addHandler(fh)

    # Console handler: see it live
    ch = logging.StreamHandler()
    ch.setLevel(level)
    ch.setFormatter(fmt)
    logger.addHandler(ch)

    return logger


log = logging.getLogger("coinmeter")


# ── Billing Scheduler ─────────────────────────────────────────────────


class BillingScheduler:
    """Periodic trigger for BillingEngine.run_cycle()."""

    def __init__(self, engine: BillingEngine, settings: SettingsStore):
        self.engine = engine
        self.settings = settings
        self._lock = threading.Lock()
        self._cycle_running = False
        self._stop_event: Optional[threading.Event] = None
        self._timer: Optional[threading.Thread] = None
        self.interval_minutes: Optional[int] = None
        self.last_tick_at: Optional[float] = None
        self.skipped_ticks = 0

    @property
    def is_running(self) -> bool:
        """True while the timer is armed."""
        return self._timer is not None and self._timer.is_alive()

    @property
    def cycle_in_progress(self) -> bool:
        return self._cycle_running

    # ── Lifecycle ────────────────────────────────────────────────────

    def start(self) -> bool:
        """Arm the timer from the stored config. Returns False when billing
        is disabled or misconfigured."""
        if self.is_running:
            return True
        try:
            config = self.settings.get_billing_config()
        except ConfigurationError as e:
            log.warning("SCHEDULER not started: billing misconfigured (%s)", e)
            return False
        if not config.enabled:
            log.info("SCHEDULER not started: billing is disabled")
            return False

        self.interval_minutes = config.interval_minutes
        stop_event = threading.Event()
        self._stop_event = stop_event
        self._timer = threading.Thread(
            target=self._timer_loop,
            args=(stop_event, config.interval_minutes * 60),
            daemon=True,
            name="billing-timer",
        )
        self._timer.start()
        log.info("SCHEDULER started: every %d minute(s)", config.interval_minutes)
        return True

    def stop(self):
        """Disarm the timer. A cycle already running finishes on its own."""
        if self._stop_event is not None:
            self._stop_event.set()
        timer = self._timer
        self._timer = None
        self._stop_event = None
        if timer is not None:
            timer.join(timeout=5)
            log.info("SCHEDULER stopped")

    def restart(self) -> bool:
        self.stop()
        return self.start()

    def _timer_loop(self, stop_event: threading.Event, interval_sec: float):
        while not stop_event.wait(interval_sec):
            self.tick()

    # ── Firing ───────────────────────────────────────────────────────

    def tick(self, wait: bool = False) -> bool:
        """One guarded firing on a worker thread. Returns whether a cycle started."""
        if not self._claim():
            return False
        worker = threading.Thread(target=self._run_claimed, daemon=True, name="billing-cycle")
        worker.start()
        if wait:
            worker.join()
        return True

    def run_now(self) -> bool:
        """Run one guarded cycle on the calling thread."""
        if not self._claim():
            return False
        self._run_claimed()
        return True

    def _claim(self) -> bool:
        with self._lock:
            self.last_tick_at = time.time()
            if self._cycle_running:
                self.skipped_ticks += 1
                log.warning("CYCLE skipped: previous cycle still running")
                return False
            self._cycle_running = True
            return True

    def _run_claimed(self):
        try:
            self.engine.run_cycle()
        except Exception as e:
            log.error("CYCLE aborted: %s", e, exc_info=True)
        finally:
            with self._lock:
                self._cycle_running = False

    def status(self) -> dict:
        return {
            "running": self.is_running,
            "cycle_in_progress": self._cycle_running,
            "interval_minutes": self.interval_minutes if self.is_running else None,
            "last_tick_at": self.last_tick_at,
            "skipped_ticks": self.skipped_ticks,
        }

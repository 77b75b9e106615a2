"""
Background maintenance loop on APScheduler. Fires a tick on a fixed cadence, never runs two
ticks at once (an overlapping tick is skipped, not queued) and gives an in-flight tick a
bounded grace period on shutdown.
"""
import logging
import threading
import time
from collections.abc import Callable

from apscheduler.events import EVENT_JOB_MAX_INSTANCES
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from jws_lifecycle.errors import ConfigurationError

logger = logging.getLogger(__name__)


class MaintenanceScheduler:
    def __init__(
        self,
        tick: Callable[[], object],
        interval_seconds: float,
        *,
        shutdown_grace_seconds: float = 5.0,
        name: str = "jws-maintenance",
    ):
        if interval_seconds <= 0:
            raise ConfigurationError(f"interval_seconds must be positive, got {interval_seconds}")
        if shutdown_grace_seconds <= 0:
            raise ConfigurationError(f"shutdown_grace_seconds must be positive, got {shutdown_grace_seconds}")
        self._tick = tick
        self._interval = interval_seconds
        self._grace = shutdown_grace_seconds
        self._name = name
        self._scheduler: BackgroundScheduler | None = None
        self._stopping = threading.Event()
        self._tick_done: threading.Event | None = None
        self.completed_ticks = 0
        self.failed_ticks = 0
        self.skipped_ticks = 0

    @property
    def is_running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def start(self) -> None:
        if self.is_running:
            return
        self._stopping.clear()
        scheduler = BackgroundScheduler(timezone="UTC")
        scheduler.add_job(
            self._run_job,
            IntervalTrigger(seconds=self._interval),
            id=self._name,
            name=self._name,
            max_instances=1,
            coalesce=True,
        )
        scheduler.add_listener(self._on_skipped, EVENT_JOB_MAX_INSTANCES)
        scheduler.start()
        self._scheduler = scheduler
        logger.info("Maintenance scheduler started - tick every %s seconds", self._interval)

    def stop(self) -> bool:
        """
        Stop firing ticks and wait up to the grace timeout for an in-flight tick.
        Returns False if the tick had to be abandoned.
        """
        if self._scheduler is None:
            return True
        logger.info("Shutting down maintenance scheduler...")
        deadline = time.monotonic() + self._grace
        self._stopping.set()
        self._scheduler.shutdown(wait=False)
        self._scheduler = None
        done = self._tick_done
        if done is not None and not done.wait(max(0.0, deadline - time.monotonic())):
            logger.warning(
                "In-flight maintenance tick did not finish within %s seconds; abandoning it", self._grace
            )
            return False
        logger.info("Maintenance scheduler shut down")
        return True

    def _on_skipped(self, event) -> None:
        self.skipped_ticks += 1
        logger.warning("Previous maintenance tick still running; skipping this one")

    def _run_job(self) -> None:
        # The tick runs on its own daemon thread so shutdown can abandon it after the grace period
        done = threading.Event()
        self._tick_done = done
        worker = threading.Thread(target=self._run_tick, args=(done,), name=f"{self._name}-tick", daemon=True)
        worker.start()
        while not done.wait(0.05):
            if self._stopping.is_set():
                return

    def _run_tick(self, done: threading.Event) -> None:
        try:
            self._tick()
            self.completed_ticks += 1
        except Exception:
            self.failed_ticks += 1
            logger.exception("Error during periodic maintenance")
        finally:
            done.set()

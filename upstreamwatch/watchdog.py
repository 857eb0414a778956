"""Watchdog loop: periodic upstream health cycles with retention pruning."""

import logging
import sqlite3
import time
from dataclasses import dataclass
from threading import Event, Lock, Thread

from .config import WatchdogConfig
from .database import DatabaseError, cleanup_old_health_checks
from .notifier import Notifier
from .settings import DEFAULT_INTERVAL_MS, get_retention_days, load_watchdog_settings
from .targets import enumerate_targets

logger = logging.getLogger(__name__)


@dataclass
class CycleStats:
    """Summary of one completed health check cycle."""

    targets: int = 0
    checked: int = 0
    notified: int = 0
    failed: int = 0
    pruned: int = 0
    duration_ms: int = 0


class Watchdog:
    """Background thread that runs health check cycles at a fixed interval.

    The first cycle starts after a boot delay. The interval is read from the
    settings table once, in start(); changing it takes effect on restart.
    Cycles never overlap: ticks missed while a cycle overran are skipped,
    and run_cycle() returns False if another cycle is still in progress.

    Example:
        watchdog = Watchdog(config.watchdog, db_conn)
        watchdog.start()
        # ... later ...
        watchdog.stop()
    """

    def __init__(
        self,
        config: WatchdogConfig,
        db_conn: sqlite3.Connection,
        notifier: Notifier | None = None,
    ) -> None:
        """Initialize the watchdog.

        Args:
            config: Process-level watchdog configuration.
            db_conn: Database connection for configuration and history.
            notifier: Transition notifier; built from ``config`` when omitted.
        """
        self._config = config
        self._db_conn = db_conn
        self._notifier = notifier or Notifier(
            db_conn,
            probe_timeout_ms=config.probe_timeout_ms,
            webhook_timeout=config.webhook_timeout_seconds,
        )
        self._stop_event = Event()
        self._cycle_lock = Lock()
        self._thread: Thread | None = None
        self._interval_ms = DEFAULT_INTERVAL_MS
        self._cycle_count = 0
        self.last_cycle: CycleStats | None = None

    @property
    def interval_ms(self) -> int:
        """Cycle interval captured at the last start()."""
        return self._interval_ms

    @property
    def cycle_count(self) -> int:
        """Number of cycles run since construction, including ones that raised."""
        return self._cycle_count

    def start(self) -> None:
        """Start the watchdog loop in a background thread."""
        if self._thread is not None and self._thread.is_alive():
            logger.warning("Watchdog already running")
            return

        try:
            settings = load_watchdog_settings(self._db_conn)
        except DatabaseError as e:
            logger.error("Failed to read watchdog interval, using %dms: %s", DEFAULT_INTERVAL_MS, e)
            self._interval_ms = DEFAULT_INTERVAL_MS
        else:
            self._interval_ms = settings.interval_ms
            logger.debug(
                "Settings at start: retention %s days, global webhook %s",
                settings.retention_days,
                "set" if settings.global_webhook_url else "unset",
            )

        self._stop_event.clear()
        self._thread = Thread(target=self._run_loop, daemon=True, name="watchdog-loop")
        self._thread.start()
        logger.info(
            "Watchdog started with interval %dms (first cycle in %gs)",
            self._interval_ms,
            self._config.boot_delay_seconds,
        )

    def stop(self, timeout: float = 10.0) -> None:
        """Stop scheduling new cycles and wait for the loop to exit.

        A running cycle finishes its current probe and skips the remaining
        targets. If that outlasts ``timeout`` the daemon thread is left to
        finish on its own.

        Args:
            timeout: Maximum seconds to wait for the loop to stop.
        """
        if self._thread is None or not self._thread.is_alive():
            return

        logger.info("Stopping watchdog...")
        self._stop_event.set()
        self._thread.join(timeout=timeout)

        if self._thread.is_alive():
            logger.warning("Watchdog thread did not stop within timeout")
        else:
            logger.info("Watchdog stopped")

    def is_running(self) -> bool:
        """Check if the watchdog loop is currently running."""
        return self._thread is not None and self._thread.is_alive()

    def run_cycle(self) -> bool:
        """Run one full health check cycle unless one is already running.

        Any error is logged; nothing propagates to the caller.

        Returns:
            True if a cycle ran, False if it was skipped because another
            cycle was in progress.
        """
        if not self._cycle_lock.acquire(blocking=False):
            logger.warning("Health check cycle still in progress, skipping this tick")
            return False

        try:
            self.last_cycle = self._run_cycle()
        except Exception as e:
            logger.exception("Error during health check cycle: %s", e)
        finally:
            self._cycle_count += 1
            self._cycle_lock.release()
        return True

    def _run_loop(self) -> None:
        """Main watchdog loop - runs in background thread."""
        logger.debug("Watchdog loop started")

        # Give the hosting process time to finish booting
        if self._stop_event.wait(timeout=self._config.boot_delay_seconds):
            logger.debug("Watchdog loop exited before first cycle")
            return

        interval = self._interval_ms / 1000
        next_run = time.monotonic()

        while not self._stop_event.is_set():
            self.run_cycle()

            next_run += interval
            now = time.monotonic()
            if now > next_run:
                missed = int((now - next_run) // interval) + 1
                logger.warning(
                    "Health check cycle overran the %dms interval, skipping %d tick(s)",
                    self._interval_ms,
                    missed,
                )
                next_run += missed * interval

            # Use wait() so we can be interrupted by stop_event
            self._stop_event.wait(timeout=max(0.0, next_run - time.monotonic()))

        logger.debug("Watchdog loop exited")

    def _run_cycle(self) -> CycleStats:
        """Probe every target, then prune old history."""
        stats = CycleStats()
        start = time.monotonic()

        try:
            targets = enumerate_targets(self._db_conn)
        except DatabaseError as e:
            logger.error("Failed to load probe targets: %s", e)
            targets = []

        stats.targets = len(targets)

        for target in targets:
            if self._stop_event.is_set():
                logger.info("Watchdog stopping, abandoning the rest of this cycle")
                break
            try:
                payload = self._notifier.process_target(target)
            except DatabaseError as e:
                logger.error(
                    "Storage error while checking %s (%s), abandoning remaining probes this cycle: %s",
                    target.upstream_key,
                    target.entity_label,
                    e,
                )
                stats.failed += 1
                break
            except Exception as e:
                logger.error("Failed to check %s (%s): %s", target.upstream_key, target.entity_label, e)
                stats.failed += 1
                continue

            stats.checked += 1
            if payload is not None:
                stats.notified += 1

        stats.pruned = self._run_cleanup()
        stats.duration_ms = int((time.monotonic() - start) * 1000)

        logger.info(
            "Health check cycle done: %d/%d upstreams checked, %d notification(s), %d record(s) pruned in %dms",
            stats.checked,
            stats.targets,
            stats.notified,
            stats.pruned,
            stats.duration_ms,
        )
        return stats

    def _run_cleanup(self) -> int:
        """Delete history older than the retention window. Returns rows deleted."""
        try:
            retention_days = get_retention_days(self._db_conn)
            deleted = cleanup_old_health_checks(self._db_conn, retention_days)
        except Exception as e:
            logger.error("Cleanup failed: %s", e)
            return 0

        if deleted > 0:
            logger.info("Cleaned up %d old health check records", deleted)
        return deleted

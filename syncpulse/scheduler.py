from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Optional

import structlog

from syncpulse.auth_service import AuthService
from syncpulse.config_manager import ConfigManager
from syncpulse.metrics import SyncMetrics
from syncpulse.models import (
    DEFAULT_POLLING_INTERVAL_SECONDS,
    DEFAULT_STEP_SECONDS,
    ConfigSnapshot,
    HealthStatus,
    OutcomeKind,
    SyncOutcome,
    SyncStatus,
    utc_now,
)
from syncpulse.state_store import StateStore
from syncpulse.sync_client import HttpSyncService

log = structlog.get_logger()

MFA_WAIT_MESSAGE = "Can't start background syncing until MFA flow is completed for the first time."
STOP_GRACE_SECONDS = 5.0


class LoopState(str, Enum):
    DISABLED = "Disabled"
    BLOCKED_ON_AUTH = "BlockedOnAuth"
    SYNCING = "Syncing"
    WAITING_FOR_NEXT_CYCLE = "WaitingForNextCycle"
    STOPPED = "Stopped"


def wait_in_steps(
    total_seconds: float,
    step_seconds: float,
    changed: Callable[[], bool],
    stop_event: threading.Event,
    sleep: Callable[[float], None] = time.sleep,
) -> bool:
    """Sleep up to ``total_seconds`` in ``step_seconds`` increments.

    After every step the stop event and then ``changed`` are consulted; either
    one ends the wait early. The last step is shortened so the total never
    exceeds ``total_seconds``. Returns True when the wait was cut short.
    """
    if step_seconds <= 0:
        raise ValueError("step_seconds must be positive")
    total = max(0.0, float(total_seconds))
    waited = 0.0
    while waited < total:
        chunk = min(float(step_seconds), total - waited)
        sleep(chunk)
        waited += chunk
        if stop_event.is_set():
            return True
        if changed():
            return True
    return False


@dataclass
class SchedulerState:
    enabled: bool = False
    interval_seconds: int = DEFAULT_POLLING_INTERVAL_SECONDS
    previous_enabled: Optional[bool] = None


class StateTracker:
    def __init__(self, settings_source: ConfigManager, state: SchedulerState | None = None) -> None:
        self.settings_source = settings_source
        self.state = state if state is not None else SchedulerState()
        self.snapshot = ConfigSnapshot(
            polling_enabled=self.state.enabled,
            polling_interval_seconds=self.state.interval_seconds,
        )

    def refresh(self) -> bool:
        """Pull the latest settings; on failure keep the previous configuration."""
        try:
            snapshot = self.settings_source.get_settings()
        except Exception:
            log.warning(
                "Settings refresh failed, keeping previous configuration",
                enabled=self.state.enabled,
                interval_seconds=self.state.interval_seconds,
                exc_info=True,
            )
            return False
        self.snapshot = snapshot
        self.state.enabled = bool(snapshot.polling_enabled)
        self.state.interval_seconds = int(snapshot.polling_interval_seconds)
        return True

    def has_changed(self) -> bool:
        previous = self.state.previous_enabled
        return previous is None or previous != self.state.enabled


class ReadinessGate:
    def __init__(self, auth_service: AuthService) -> None:
        self.auth_service = auth_service

    def is_blocked(self, snapshot: ConfigSnapshot) -> bool:
        if not snapshot.two_factor_auth_enabled:
            return False
        try:
            return not self.auth_service.has_valid_credential()
        except Exception:
            log.warning("Credential check failed, holding sync until it succeeds", exc_info=True)
            return True


class SyncOrchestrator:
    """Runs one sync attempt and records how it went.

    Whatever the attempt does, the status record is written and the next sync
    time signal is set exactly once per ``run_once`` call.
    """

    def __init__(
        self,
        sync_service: HttpSyncService,
        status_store: StateStore,
        metrics: SyncMetrics,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.sync_service = sync_service
        self.status_store = status_store
        self.metrics = metrics
        self.clock = clock

    def _attempt(self, snapshot: ConfigSnapshot, started_at: datetime) -> SyncOutcome:
        started = time.monotonic()
        try:
            result = self.sync_service.sync(snapshot.num_items_to_sync, force_reclassify=False)
        except Exception as exc:
            log.error("Uncaught exception during sync", exc_info=True)
            return SyncOutcome(
                kind=OutcomeKind.FAULTED,
                detail=f"{type(exc).__name__}: {exc}",
                duration_seconds=time.monotonic() - started,
                started_at=started_at,
            )
        duration = time.monotonic() - started
        if result.success:
            return SyncOutcome(kind=OutcomeKind.OK, duration_seconds=duration, started_at=started_at)
        detail = "; ".join(result.errors) or "Sync reported failure."
        log.warning("Sync attempt failed", detail=detail)
        return SyncOutcome(
            kind=OutcomeKind.FAILED,
            detail=detail,
            duration_seconds=duration,
            started_at=started_at,
        )

    def run_once(
        self,
        snapshot: ConfigSnapshot,
        interval_seconds: int,
        trigger: str = "scheduled",
    ) -> SyncOutcome | None:
        started_at = self.clock()
        outcome: SyncOutcome | None = None
        try:
            outcome = self._attempt(snapshot, started_at)
            self.metrics.observe_duration(outcome.duration_seconds)
            if outcome.succeeded:
                self.metrics.set_health(HealthStatus.HEALTHY)
            else:
                self.metrics.set_health(HealthStatus.UNHEALTHY)
        finally:
            self._finalize(started_at, interval_seconds, outcome, trigger)
        return outcome

    def _finalize(
        self,
        started_at: datetime,
        interval_seconds: int,
        outcome: SyncOutcome | None,
        trigger: str,
    ) -> None:
        next_sync_time = started_at + timedelta(seconds=int(interval_seconds))
        try:
            status = self.status_store.get_sync_status()
            if self.metrics.health is HealthStatus.UNHEALTHY:
                status.sync_status = SyncStatus.UNHEALTHY
            else:
                status.sync_status = SyncStatus.RUNNING
            status.next_sync_time = next_sync_time
            status.last_sync_time = started_at
            if outcome is not None and outcome.succeeded:
                status.last_successful_sync_time = started_at
                status.last_error_message = ""
            elif outcome is not None:
                status.last_error_message = outcome.detail
            self.status_store.upsert_sync_status(status)

            if outcome is not None:
                self.status_store.record_sync_run(
                    trigger=trigger,
                    status=outcome.kind.value,
                    message=outcome.detail,
                    duration_ms=int(outcome.duration_seconds * 1000),
                    run_at=started_at,
                )
        except Exception:
            # The gauge and the interval wait still apply when the store is down.
            log.error("Failed to persist sync status", exc_info=True)
        finally:
            self.metrics.set_next_sync_time(next_sync_time)


class SyncScheduler:
    """Background control loop that decides when a sync runs.

    One daemon thread per instance. Every iteration refreshes settings, handles
    an enable/disable flip, checks the MFA gate, runs a sync and then waits the
    polling interval in short steps so setting changes and ``stop()`` are seen
    within one step.
    """

    def __init__(
        self,
        settings_source: ConfigManager,
        status_store: StateStore,
        sync_service: HttpSyncService,
        auth_service: AuthService,
        metrics: SyncMetrics | None = None,
        *,
        step_seconds: float = DEFAULT_STEP_SECONDS,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if step_seconds <= 0:
            raise ValueError("step_seconds must be positive")
        self.status_store = status_store
        self.metrics = metrics if metrics is not None else SyncMetrics()
        self.state = SchedulerState()
        self.tracker = StateTracker(settings_source, self.state)
        self.gate = ReadinessGate(auth_service)
        self.orchestrator = SyncOrchestrator(sync_service, status_store, self.metrics, clock=clock)
        self.step_seconds = step_seconds
        self.clock = clock
        self._sleep = sleep
        self.current_state: LoopState | None = None
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._manual_trigger_event = threading.Event()
        self._next_trigger = "scheduled"

    @property
    def is_running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    def start(self) -> None:
        if self.is_running:
            if not self._stop_event.is_set():
                return
            # A stopped loop can still be finishing its last step.
            self._thread.join()
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="syncpulse-scheduler", daemon=True)
        self._thread.start()

    def stop(self, timeout: float | None = None) -> None:
        """Signal the loop and wait for it; the default timeout outlasts one step."""
        if timeout is None:
            timeout = self.step_seconds + STOP_GRACE_SECONDS
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=timeout)

    def trigger_manual(self) -> None:
        self._manual_trigger_event.set()

    def _loop(self) -> None:
        self.metrics.set_health(HealthStatus.HEALTHY)
        log.info("Sync scheduler loop starting", step_seconds=self.step_seconds)
        while not self._stop_event.is_set():
            try:
                self.run_iteration()
            except Exception:
                log.exception("Sync scheduler iteration failed")
                self._sleep_step()
        self.current_state = LoopState.STOPPED
        log.info("Sync scheduler loop stopped")

    def _sleep_step(self) -> None:
        if not self._stop_event.is_set():
            self._sleep(self.step_seconds)

    def polling_disabled(self) -> bool:
        """Persist the status on an enable/disable flip and report whether polling is off."""
        if self.tracker.has_changed():
            status = self.status_store.get_sync_status()
            if self.state.enabled:
                status.sync_status = SyncStatus.RUNNING
                status.next_sync_time = self.clock()
            else:
                status.sync_status = SyncStatus.NOT_RUNNING
                status.next_sync_time = None
            self.status_store.upsert_sync_status(status)

            if self.state.enabled:
                log.info("Sync Service started.", interval_seconds=self.state.interval_seconds)
            else:
                log.info("Sync Service stopped.")

        self.state.previous_enabled = self.state.enabled
        return not self.state.enabled

    def _wait_interrupted(self) -> bool:
        if self._manual_trigger_event.is_set():
            self._manual_trigger_event.clear()
            self._next_trigger = "manual"
            log.info("Manual sync requested, ending wait early")
            return True
        self.tracker.refresh()
        return self.tracker.has_changed()

    def run_iteration(self) -> LoopState | None:
        self.tracker.refresh()

        if self.polling_disabled():
            self.current_state = LoopState.DISABLED
            self._sleep_step()
            return self.current_state

        self.tracker.refresh()
        # Disabled between the two refreshes; the next iteration records the flip.
        if not self.state.enabled:
            return self.current_state
        if self.gate.is_blocked(self.tracker.snapshot):
            self.current_state = LoopState.BLOCKED_ON_AUTH
            log.info(MFA_WAIT_MESSAGE)
            self._sleep_step()
            return self.current_state

        if self._stop_event.is_set():
            return self.current_state

        self.current_state = LoopState.SYNCING
        self._manual_trigger_event.clear()
        trigger, self._next_trigger = self._next_trigger, "scheduled"
        self.orchestrator.run_once(self.tracker.snapshot, self.state.interval_seconds, trigger=trigger)

        self.current_state = LoopState.WAITING_FOR_NEXT_CYCLE
        log.info("Sleeping before next sync", seconds=self.state.interval_seconds)
        wait_in_steps(
            self.state.interval_seconds,
            self.step_seconds,
            self._wait_interrupted,
            self._stop_event,
            sleep=self._sleep,
        )
        return self.current_state

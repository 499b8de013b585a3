"""
ApprovalSweepScheduler -- in-process polling scheduler for the sweeps.

Contract:
    Runs the escalation sweep, the reminder sweep and (when retention is
    configured) the retention purge on a fixed interval through the
    ApprovalEngine facade.  ``tick()`` runs one round and is public for
    tests.

Architecture: approval_batch.  Depends only on the engine facade's sweep
    methods; each sweep opens its own transaction.

Invariants enforced:
    - A failing sweep is logged and never prevents the other sweeps of the
      same tick, nor the next tick.
    - Graceful shutdown: ``stop()`` signals the loop and waits for the
      current tick to finish.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Protocol

from approval_kernel.domain.approval import (
    EscalationReport,
    PurgeReport,
    ReminderReport,
)
from approval_kernel.logging_config import get_logger

logger = get_logger("batch.scheduler")


class SweepTarget(Protocol):
    """The part of ApprovalEngine the scheduler drives."""

    def run_escalation_sweep(self, timeout_hours: float | None = None) -> EscalationReport:
        ...

    def run_reminder_sweep(self, days: int | None = None) -> ReminderReport:
        ...

    def purge_expired_records(self, retention_days: int | None = None) -> PurgeReport:
        ...


@dataclass(frozen=True)
class SweepTickResult:
    """Reports of one scheduler round.  None means the sweep failed."""

    escalation: EscalationReport | None = None
    reminders: ReminderReport | None = None
    purge: PurgeReport | None = None
    failed_sweeps: tuple[str, ...] = ()


class ApprovalSweepScheduler:
    """In-process polling scheduler for escalation and reminder sweeps.

    Non-goals:
        - NOT a distributed scheduler (no leader election).  Running two
          schedulers is safe because every sweep step is guarded by
          conditional updates, but it does duplicate work.
    """

    def __init__(
        self,
        engine: SweepTarget,
        *,
        tick_interval_seconds: float = 3600.0,
        escalation_timeout_hours: float | None = None,
        reminder_days: int | None = None,
        retention_days: int | None = None,
    ):
        self._engine = engine
        self._tick_interval = tick_interval_seconds
        self._timeout_hours = escalation_timeout_hours
        self._reminder_days = reminder_days
        self._retention_days = retention_days
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self.ticks = 0

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def tick(self) -> SweepTickResult:
        """Run every sweep once."""
        failed: list[str] = []

        escalation = self._guarded(
            "escalation",
            failed,
            lambda: self._engine.run_escalation_sweep(self._timeout_hours),
        )
        reminders = self._guarded(
            "reminders",
            failed,
            lambda: self._engine.run_reminder_sweep(self._reminder_days),
        )
        purge = self._guarded(
            "purge",
            failed,
            lambda: self._engine.purge_expired_records(self._retention_days),
        )

        self.ticks += 1
        logger.info(
            "sweep_tick_completed",
            extra={
                "tick": self.ticks,
                "escalated": len(escalation.escalated) if escalation else None,
                "reminded": reminders.count if reminders else None,
                "failed_sweeps": failed,
            },
        )
        return SweepTickResult(
            escalation=escalation,
            reminders=reminders,
            purge=purge,
            failed_sweeps=tuple(failed),
        )

    def start(self) -> None:
        """Start the scheduler in a background thread."""
        if self._thread is not None and self._thread.is_alive():
            return

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run_loop,
            name="approval-sweeps",
            daemon=True,
        )
        self._thread.start()
        logger.info("scheduler_started", extra={"tick_interval": self._tick_interval})

    def stop(self, timeout: float = 30.0) -> None:
        """Signal stop and wait for the current tick to finish."""
        self._stop_event.set()
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=timeout)
        logger.info("scheduler_stopped")

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def wait(self, timeout: float | None = None) -> bool:
        """Block until stopped.  Returns True when the stop signal was set."""
        return self._stop_event.wait(timeout=timeout)

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _guarded(self, name: str, failed: list[str], sweep):
        # Stop requested while the background loop was mid-tick.
        if self._stop_event.is_set() and self.is_running:
            return None
        try:
            return sweep()
        except Exception:
            logger.exception("sweep_failed", extra={"sweep": name})
            failed.append(name)
            return None

    def _run_loop(self) -> None:
        """Background polling loop.  Exits when the stop event is set."""
        while not self._stop_event.is_set():
            try:
                self.tick()
            except Exception:
                logger.exception("scheduler_tick_exception")
            self._stop_event.wait(timeout=self._tick_interval)

# src/orchestrator/threads/retry_coordinator.py
"""
The Retry Coordinator tracks records whose analysis failed, keyed by
(day, log id), and periodically re-dispatches the still-unanalyzed ones
through the orchestrator's Analyze -> Merge -> Persist phases.

Every HTTP attempt the analysis client made for a record counts against the
record's budget (scheduling.max_retry_attempts). A record that spends its
budget, or whose day leaves the retry window, is abandoned: it stays
unanalyzed until reprocess() is called for it.
"""

import asyncio
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import TYPE_CHECKING, Dict, Iterable, List, Optional, Set, Tuple

from core.errors import ErrorCategory
from core.models.models import AnalysisOutcome, RunSummary, RunTrigger

if TYPE_CHECKING:
    from orchestrator.orchestrator import AnalysisOrchestrator

RetryKey = Tuple[date, str]


@dataclass
class RetryEntry:
    day: date
    log_id: str
    attempts: int = 0
    last_error: Optional[str] = None
    last_attempt_at: Optional[datetime] = None
    abandoned_reason: Optional[str] = None


class RetryCoordinator:
    """Coroutine re-attempting failed records on a bounded schedule."""

    def __init__(self, orchestrator: "AnalysisOrchestrator"):
        self.orchestrator = orchestrator
        self.logger = orchestrator.logger
        self.max_attempts = orchestrator.settings.scheduling.max_retry_attempts
        self.window_days = orchestrator.settings.scheduling.max_retry_attempts
        self.interval = orchestrator.settings.scheduling.retry_interval_minutes * 60
        self._pending: Dict[RetryKey, RetryEntry] = {}
        self._abandoned: Dict[RetryKey, RetryEntry] = {}

    # ------------------------------------------------------------------
    # Bookkeeping, called by the orchestrator after every run
    # ------------------------------------------------------------------

    def remaining_attempts(self, day: date, log_id: str) -> int:
        entry = self._pending.get((day, log_id))
        if entry is None:
            return self.max_attempts
        return max(self.max_attempts - entry.attempts, 1)

    def record_failures(self, day: date, outcomes: Iterable[AnalysisOutcome]):
        now = self.orchestrator.clock()
        for outcome in outcomes:
            key = (day, outcome.log_id)

            abandoned = self._abandoned.get(key)
            if abandoned is not None:
                abandoned.attempts += outcome.attempts
                abandoned.last_error = outcome.reason
                abandoned.last_attempt_at = now
                continue

            entry = self._pending.setdefault(key, RetryEntry(day=day, log_id=outcome.log_id))
            entry.attempts += outcome.attempts
            entry.last_error = outcome.reason
            entry.last_attempt_at = now

            if entry.attempts >= self.max_attempts:
                self._abandon(key, f"exhausted {entry.attempts} of {self.max_attempts} attempts")

    def record_successes(self, day: date, log_ids: Iterable[str]):
        for log_id in log_ids:
            self._pending.pop((day, log_id), None)
            self._abandoned.pop((day, log_id), None)

    def _abandon(self, key: RetryKey, reason: str):
        entry = self._pending.pop(key)
        entry.abandoned_reason = reason
        self._abandoned[key] = entry
        self.logger.warning(f"Log {entry.log_id} from {entry.day.isoformat()} abandoned from retry: {reason}.",
                            log_id=entry.log_id, partition=entry.day, attempts=entry.attempts,
                            last_error=entry.last_error)

    def get_pending(self) -> List[RetryEntry]:
        return sorted(self._pending.values(), key=lambda e: (e.day, e.log_id))

    def get_abandoned(self) -> List[RetryEntry]:
        """Terminal, reportable records that will not be retried automatically."""
        return sorted(self._abandoned.values(), key=lambda e: (e.day, e.log_id))

    # ------------------------------------------------------------------
    # Retry passes
    # ------------------------------------------------------------------

    async def retry_pending_async(self) -> List[RunSummary]:
        """One pass over every day with pending records."""
        today = self.orchestrator.clock().astimezone(self.orchestrator.timezone).date()
        oldest_allowed = today - timedelta(days=self.window_days)

        by_day: Dict[date, Set[str]] = {}
        for (day, log_id) in list(self._pending):
            if day < oldest_allowed:
                self._abandon((day, log_id), f"outside the {self.window_days}-day retry window")
                continue
            by_day.setdefault(day, set()).add(log_id)

        summaries = []
        for day in sorted(by_day):
            ids = by_day[day]
            self.logger.info(f"Retrying {len(ids)} failed logs for {day.isoformat()}.", partition=day, count=len(ids))
            summary = await self.orchestrator.execute_run_async(day, RunTrigger.RETRY, record_ids=ids)
            summaries.append(summary)

            if summary.status in ("COMPLETED", "COMPLETED_WITH_FAILURES"):
                # Ids the run never dispatched were analyzed elsewhere or no longer exist
                touched = set(summary.failed_ids) | set(summary.succeeded_ids)
                for log_id in ids - touched:
                    self._pending.pop((day, log_id), None)
        return summaries

    async def reprocess(self, log_id: str, day: date) -> RunSummary:
        """Clears an abandoned (or pending) record and dispatches it once more with a fresh budget."""
        self._abandoned.pop((day, log_id), None)
        self._pending.pop((day, log_id), None)
        self.logger.info(f"Manual reprocess requested for log {log_id} from {day.isoformat()}.",
                         log_id=log_id, partition=day)
        return await self.orchestrator.execute_run_async(day, RunTrigger.MANUAL, record_ids={log_id})

    async def run_async(self):
        """The main async loop for the Retry Coordinator coroutine."""
        self.logger.log_component_lifecycle("RetryCoordinator", "STARTED")

        while not self.orchestrator._shutdown_event.is_set():
            try:
                if self._pending:
                    await self.retry_pending_async()
                self.orchestrator.update_thread_liveness("RetryCoordinator")
            except Exception as e:
                error = self.orchestrator.error_handler.handle_error(e, "retry_coordinator_main_loop")
                if error.error_category == ErrorCategory.FATAL_BUG:
                    self.logger.critical(f"Fatal error detected in {self.__class__.__name__}: {error}")
                    raise

            await asyncio.sleep(self.interval)

        self.logger.log_component_lifecycle("RetryCoordinator", "STOPPED")

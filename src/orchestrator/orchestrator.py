# src/orchestrator/orchestrator.py
import asyncio
import time
from collections import deque
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Deque, Dict, List, Optional, Set
from zoneinfo import ZoneInfo

from .task_manager import TaskManager
# Core system imports
from core.logging.system_logger import SystemLogger
from core.config.configuration_manager import SystemConfig
from core.errors import ErrorHandler, PipelineError, StorageError
from core.models.models import AnalysisContext, AnalysisOutcome, ErrorLog, RunSummary, RunTrigger
from storage.daily_store import DailyStore
from analysis.analysis_client import AnalysisClient
from analysis.historical_context import build_analysis_context

# Import background coroutine components
from .threads.daily_trigger import DailyTrigger
from .threads.retry_coordinator import RetryCoordinator
from .healthcheck import HealthCheck
from .orchestrator_state import RunState, is_valid_transition

RUN_HISTORY_SIZE = 100
# Background coroutines silent for this many of their intervals are reported stale
STALE_INTERVALS = 3
DAILY_TRIGGER_STALE_SECONDS = 25 * 3600


class AnalysisOrchestrator:
    """
    Drives the daily Collect -> Filter -> Dispatch -> Merge -> Persist ->
    Report sequence over one partition per run, and owns the background
    coroutines (daily trigger, retry coordinator, health check).
    """

    def __init__(self, settings: SystemConfig, store: DailyStore, analysis_client: AnalysisClient,
                 logger: SystemLogger, error_handler: ErrorHandler,
                 clock: Optional[Callable[[], datetime]] = None):
        self.settings = settings
        self.store = store
        self.analysis_client = analysis_client
        self.logger = logger
        self.error_handler = error_handler
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.timezone = ZoneInfo(settings.scheduling.timezone)

        self._shutdown_event = asyncio.Event()

        # Days with a run in flight; a second trigger for the same day is skipped
        self._runs_in_progress: Set[date] = set()
        self._active_runs: Set[asyncio.Task] = set()
        self.run_history: Deque[RunSummary] = deque(maxlen=RUN_HISTORY_SIZE)
        self.thread_liveness: Dict[str, float] = {}
        self._background_tasks: List[asyncio.Task] = []

        self.task_manager = TaskManager(self, config=self.settings.task_manager)
        # --- Internal Components ---
        self.retry_coordinator = RetryCoordinator(self)
        self.daily_trigger = DailyTrigger(self)
        self.health_check = HealthCheck(self)

        self.logger.log_component_lifecycle("Orchestrator", "INITIALIZED")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start_async(self):
        """Starts all background coroutines under the TaskManager."""
        try:
            self.logger.log_component_lifecycle("Orchestrator", "VALIDATING AND STARTING SUPERVISED COROUTINES")
            try:
                scheduling = self.settings.scheduling
                if scheduling.enable_scheduled_analysis:
                    # The trigger sleeps up to a day between fires
                    await self.task_manager.start_supervised_task(
                        "DailyTrigger", self.daily_trigger.run_async, is_essential=True,
                        stale_after_seconds=DAILY_TRIGGER_STALE_SECONDS)
                    await self.task_manager.start_supervised_task(
                        "RetryCoordinator", self.retry_coordinator.run_async, is_essential=False,
                        stale_after_seconds=STALE_INTERVALS * scheduling.retry_interval_minutes * 60)
                else:
                    self.logger.warning("Scheduled analysis is disabled; only manual runs will execute.")
                await self.task_manager.start_supervised_task(
                    "HealthCheck", self.health_check.run_async, is_essential=False,
                    stale_after_seconds=STALE_INTERVALS * self.settings.health_check.interval_seconds)
            except RuntimeError as e:
                self.logger.critical(f"A critical component failed its startup validation: {e}")
                await self.emergency_shutdown(f"Critical component startup failure: {e}")
                return

            supervisor_task = asyncio.create_task(self.task_manager.supervise_tasks(), name="TaskManagerSupervisor")
            self._background_tasks.append(supervisor_task)

            self.logger.log_component_lifecycle("Orchestrator", "ALL_COROUTINES_STARTED")
        except Exception as e:
            self.error_handler.handle_error(e, "orchestrator_async_startup")
            raise

    async def _cancel_all(self, timeout: float) -> bool:
        all_tasks = (self._background_tasks
                     + self.task_manager.active_tasks()
                     + list(self._active_runs))
        for task in all_tasks:
            if not task.done():
                task.cancel()
        if not all_tasks:
            return True
        try:
            await asyncio.wait_for(asyncio.gather(*all_tasks, return_exceptions=True), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False

    async def emergency_shutdown(self, reason: str):
        """Immediate shutdown requested by the supervisor."""
        if self._shutdown_event.is_set():
            return

        self.logger.critical(f"EMERGENCY SHUTDOWN INITIATED. Reason: {reason}")
        self._shutdown_event.set()
        if not await self._cancel_all(timeout=10.0):
            self.logger.warning("Cleanup timeout exceeded during emergency shutdown.")

    async def shutdown_async(self):
        """Stops the coroutines and cancels in-flight runs. Cancelled runs persist nothing."""
        try:
            self.logger.log_component_lifecycle("Orchestrator", "SHUTDOWN_INITIATED")
            self._shutdown_event.set()
            if not await self._cancel_all(timeout=30.0):
                self.logger.warning("Some orchestrator tasks did not stop within the timeout.")
            self.logger.log_component_lifecycle("Orchestrator", "SHUTDOWN_COMPLETE")
        except Exception as e:
            self.error_handler.handle_error(e, "orchestrator_async_shutdown")

    @property
    def is_shutting_down(self) -> bool:
        return self._shutdown_event.is_set()

    def update_thread_liveness(self, thread_name: str):
        self.thread_liveness[thread_name] = self.clock().timestamp()

    async def is_healthy(self) -> bool:
        return not self._shutdown_event.is_set() and await self.store.check_health()

    # ------------------------------------------------------------------
    # Run entry points
    # ------------------------------------------------------------------

    def target_day_for(self, trigger_time: datetime) -> date:
        """'Yesterday' relative to the trigger time in the configured timezone."""
        if trigger_time.tzinfo is None:
            trigger_time = trigger_time.replace(tzinfo=timezone.utc)
        return trigger_time.astimezone(self.timezone).date() - timedelta(days=1)

    async def run_scheduled_async(self, trigger_time: Optional[datetime] = None) -> RunSummary:
        day = self.target_day_for(trigger_time or self.clock())
        return await self.execute_run_async(day, RunTrigger.SCHEDULED)

    async def run_for_day(self, day: date) -> RunSummary:
        """Manual trigger; shares the same-day overlap guard with scheduled runs."""
        return await self.execute_run_async(day, RunTrigger.MANUAL)

    async def execute_run_async(self, day: date, trigger: RunTrigger,
                                record_ids: Optional[Set[str]] = None) -> RunSummary:
        """
        One run over one partition. record_ids narrows the Filter phase to
        those records (used by retries). Never raises except on cancellation
        of the caller itself.
        """
        summary = RunSummary(day=day, trigger=trigger, status=RunState.PENDING.value)

        if day in self._runs_in_progress:
            self._transition(summary, RunState.SKIPPED)
            summary.error = f"A run for {day.isoformat()} is already in progress"
            self._finish(summary)
            return summary

        self._runs_in_progress.add(day)
        started = time.monotonic()
        run_task = asyncio.create_task(self._run_phases(summary, record_ids), name=f"run_{day.isoformat()}")
        self._active_runs.add(run_task)
        try:
            await asyncio.wait({run_task})
        except asyncio.CancelledError:
            # The caller was cancelled; take the run down with it
            run_task.cancel()
            await asyncio.wait({run_task})
            raise
        finally:
            self._active_runs.discard(run_task)
            self._runs_in_progress.discard(day)
            self._settle(summary, run_task)
            summary.duration_ms = round((time.monotonic() - started) * 1000, 3)
            self._finish(summary)

        return summary

    def _settle(self, summary: RunSummary, run_task: asyncio.Task):
        if run_task.cancelled():
            self._transition(summary, RunState.CANCELLED)
            summary.error = "Run cancelled before persisting"
            return
        error = run_task.exception()
        if error is not None:
            pipeline_error = self.error_handler.handle_error(error, "analysis_run", day=summary.day.isoformat(),
                                                            run_id=summary.run_id)
            self._transition(summary, RunState.FAILED)
            summary.error = pipeline_error.message

    def _finish(self, summary: RunSummary):
        summary.finished_at = self.clock()
        self.run_history.append(summary)
        self.logger.log_run_summary(summary.run_id, summary.status, summary.attempted, summary.succeeded,
                                    summary.failed, day=summary.day, trigger=summary.trigger.value,
                                    error=summary.error, duration_ms=summary.duration_ms,
                                    analysis_duration_ms=summary.analysis_duration_ms)

    def _transition(self, summary: RunSummary, to_state: RunState):
        from_state = RunState(summary.status)
        if not is_valid_transition(from_state, to_state):
            self.logger.debug(f"Ignoring run state change {from_state.value} -> {to_state.value}",
                              run_id=summary.run_id)
            return
        summary.status = to_state.value

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    async def _run_phases(self, summary: RunSummary, record_ids: Optional[Set[str]]):
        day = summary.day
        self._transition(summary, RunState.RUNNING)
        self.logger.info(f"Run {summary.run_id} started for {day.isoformat()} ({summary.trigger.value}).",
                         run_id=summary.run_id, day=day)

        # 1. Collect
        try:
            records = await self.store.load(day)
        except StorageError as e:
            self._fail_on_storage(summary, e, "load")
            return

        # 2. Filter
        pending = self._select_pending(records, record_ids)
        if not pending:
            self._transition(summary, RunState.COMPLETED)
            return

        # 3. Dispatch
        context = await self._build_context(day)
        outcomes = await self._dispatch(pending, context, summary)

        succeeded = {o.log_id: o for o in outcomes if o.succeeded}
        failed = [o for o in outcomes if not o.succeeded]
        summary.attempted = len(outcomes)
        summary.failed = len(failed)
        summary.failed_ids = [o.log_id for o in failed]
        self.retry_coordinator.record_failures(day, failed)

        # 4. Merge and 5. Persist, once, inside the day's critical section
        if succeeded:
            analyzed_at = self.clock()
            try:
                async with self.store.partition(day) as part:
                    for record in part.records:
                        outcome = succeeded.get(record.id)
                        if outcome is not None and not record.is_analyzed:
                            record.apply_analysis(outcome.result, analyzed_at)
                            part.mark_dirty()
            except StorageError as e:
                self._fail_on_storage(summary, e, "save")
                return

        summary.succeeded = len(succeeded)
        summary.succeeded_ids = list(succeeded)
        self.retry_coordinator.record_successes(day, summary.succeeded_ids)

        # 6. Report
        self._transition(summary, RunState.COMPLETED_WITH_FAILURES if failed else RunState.COMPLETED)

    def _select_pending(self, records: List[ErrorLog], record_ids: Optional[Set[str]]) -> List[ErrorLog]:
        pending = []
        seen = set()
        for record in records:
            if record.is_analyzed or record.id in seen:
                continue
            if record_ids is not None and record.id not in record_ids:
                continue
            seen.add(record.id)
            pending.append(record)
        return pending

    async def _build_context(self, day: date) -> AnalysisContext:
        try:
            return await build_analysis_context(self.store, self.settings.analysis_service.historical_context_days, day)
        except PipelineError as e:
            # An unreadable older partition only costs the context, not the run
            self.error_handler.handle_error(e, "build_analysis_context", day=day.isoformat())
            return AnalysisContext()

    async def _dispatch(self, pending: List[ErrorLog], context: AnalysisContext,
                        summary: RunSummary) -> List[AnalysisOutcome]:
        semaphore = asyncio.Semaphore(self.settings.performance.max_concurrent_analysis)
        client_max = self.settings.analysis_service.max_retry_attempts
        sampling_rate = self.settings.logging.progress_sampling_rate

        async def analyze_one(record: ErrorLog) -> AnalysisOutcome:
            async with semaphore:
                budget = self.retry_coordinator.remaining_attempts(summary.day, record.id)
                try:
                    outcome = await self.analysis_client.analyze_async(record, context,
                                                                       max_attempts=min(client_max, budget))
                except Exception as e:
                    # One record's failure must not sink its siblings in the gather
                    error = self.error_handler.handle_error(e, "analyze_record", log_id=record.id,
                                                            run_id=summary.run_id)
                    outcome = AnalysisOutcome(log_id=record.id, attempts=1, reason=error.message)
            self.logger.log_record_analysis(summary.run_id, record.id, outcome.succeeded,
                                            sampling_rate=sampling_rate, attempts=outcome.attempts,
                                            reason=outcome.reason, duration_ms=outcome.duration_ms)
            return outcome

        outcomes = list(await asyncio.gather(*(analyze_one(record) for record in pending)))
        summary.analysis_duration_ms = round(sum(outcome.duration_ms for outcome in outcomes), 3)
        return outcomes

    def _fail_on_storage(self, summary: RunSummary, error: StorageError, phase: str):
        self.error_handler.handle_error(error, f"analysis_run_{phase}", day=summary.day.isoformat(),
                                        run_id=summary.run_id)
        self._transition(summary, RunState.FAILED)
        summary.error = error.message
        summary.succeeded = 0
        summary.succeeded_ids = []

# src/orchestrator/task_manager.py
"""
Supervision of the orchestrator's background coroutines.

Each coroutine is registered as a SupervisedCoroutine holding its factory,
its current task and its failure bookkeeping. The supervisor loop restarts
crashed coroutines with jittered backoff, and it reports coroutines whose
heartbeat (orchestrator.thread_liveness) has gone stale. A coroutine that
keeps crashing trips its circuit breaker. If it is essential the whole
orchestrator is shut down; otherwise it is suspended.
"""
import asyncio
import random
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Coroutine, Dict, List, Optional

from core.errors import ErrorCategory
from core.config.configuration_manager import TaskManagerConfig

if TYPE_CHECKING:
    from orchestrator.orchestrator import AnalysisOrchestrator

CoroFactory = Callable[[], Coroutine[Any, Any, None]]

FAILURE_WINDOW_SECONDS = 3600


@dataclass
class SupervisedCoroutine:
    name: str
    factory: CoroFactory
    essential: bool
    stale_after_seconds: Optional[float] = None
    task: Optional[asyncio.Task] = None
    started_wall: float = 0.0
    failures: List[float] = field(default_factory=list)  # monotonic timestamps
    restarts_this_cycle: int = 0
    restarts_total: int = 0
    breaker_open_until: Optional[float] = None
    stale_reported: bool = False
    suspended: bool = False

    @property
    def state(self) -> str:
        if self.suspended:
            return "SUSPENDED"
        if self.task is None:
            return "NOT_STARTED"
        if not self.task.done():
            return "RUNNING"
        return "CANCELLED" if self.task.cancelled() else "CRASHED"

    def crashed_with(self) -> Optional[BaseException]:
        if self.task is None or not self.task.done() or self.task.cancelled():
            return None
        return self.task.exception()


class TaskManager:
    """Starts, watches and restarts the orchestrator's long-running coroutines."""

    def __init__(self, orchestrator: "AnalysisOrchestrator", config: TaskManagerConfig,
                 poll_interval_seconds: float = 5.0):
        self.orchestrator = orchestrator
        self.logger = orchestrator.logger
        self.config = config
        self.poll_interval_seconds = poll_interval_seconds
        self.coroutines: Dict[str, SupervisedCoroutine] = {}
        self.total_failures = 0
        self.started_monotonic = time.monotonic()

    def active_tasks(self) -> List[asyncio.Task]:
        return [entry.task for entry in self.coroutines.values() if entry.task is not None]

    async def start_supervised_task(self, name: str, factory: CoroFactory, is_essential: bool = True,
                                    stale_after_seconds: Optional[float] = None) -> asyncio.Task:
        """
        Registers (or re-launches) a coroutine and waits briefly to make sure
        it did not die on startup.

        Raises:
            RuntimeError: the coroutine raised within startup_validation_seconds
        """
        entry = self.coroutines.get(name)
        if entry is None:
            entry = SupervisedCoroutine(name=name, factory=factory, essential=is_essential,
                                        stale_after_seconds=stale_after_seconds)
            self.coroutines[name] = entry
        self.logger.info(f"Starting supervised task: {name} (Essential: {entry.essential})", task=name)

        entry.task = asyncio.create_task(entry.factory(), name=name)
        entry.started_wall = self.orchestrator.clock().timestamp()
        entry.stale_reported = False
        entry.suspended = False

        await asyncio.sleep(self.config.startup_validation_seconds)
        error = entry.crashed_with()
        if error is not None:
            raise RuntimeError(f"Task '{name}' failed immediately on startup: {error}")
        return entry.task

    async def supervise_tasks(self):
        """Supervisor loop; runs until the orchestrator shuts down."""
        self.logger.log_component_lifecycle("TaskManagerSupervisor", "STARTED")
        try:
            while not self.orchestrator._shutdown_event.is_set():
                for name, entry in list(self.coroutines.items()):
                    if entry.suspended:
                        continue
                    error = entry.crashed_with()
                    if error is not None:
                        await self._handle_task_failure(name, error)
                    else:
                        self._check_heartbeat(entry)
                await asyncio.sleep(self.poll_interval_seconds)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.logger.critical(f"FATAL: The TaskManager supervisor has crashed: {e}")
            await self.orchestrator.emergency_shutdown("TaskManager supervisor failure")

        self.logger.log_component_lifecycle("TaskManagerSupervisor", "STOPPED")

    def heartbeat_age_seconds(self, entry: SupervisedCoroutine) -> float:
        last_beat = self.orchestrator.thread_liveness.get(entry.name, entry.started_wall)
        return max(0.0, self.orchestrator.clock().timestamp() - last_beat)

    def _check_heartbeat(self, entry: SupervisedCoroutine):
        """Warns once per silence when a running coroutine stops reporting."""
        if entry.stale_after_seconds is None or entry.task is None or entry.task.done():
            return
        age = self.heartbeat_age_seconds(entry)
        if age <= entry.stale_after_seconds:
            entry.stale_reported = False
            return
        if not entry.stale_reported:
            entry.stale_reported = True
            self.logger.warning(f"Task '{entry.name}' has not reported liveness for {age:.0f}s.",
                                task=entry.name, heartbeat_age_seconds=round(age, 1),
                                stale_after_seconds=entry.stale_after_seconds)

    async def _handle_task_failure(self, name: str, exception: BaseException):
        """Restarts, suspends or escalates a crashed coroutine."""
        entry = self.coroutines[name]
        entry.failures.append(time.monotonic())
        entry.task = None
        self.total_failures += 1

        error = self.orchestrator.error_handler.handle_error(exception, f"coroutine_crash_{name}")

        if error.error_category in (ErrorCategory.FATAL_BUG, ErrorCategory.CONFIGURATION):
            await self.orchestrator.emergency_shutdown(
                f"Task '{name}' failed with a non-recoverable error: {error.message}")
            return

        if self._should_restart(entry):
            entry.restarts_this_cycle += 1
            entry.restarts_total += 1
            delay = min(self.config.restart_backoff_base ** len(entry.failures),
                        self.config.restart_backoff_cap_seconds)
            delay *= random.uniform(0.5, 1.5)
            self.logger.warning(f"Restarting task '{name}' in {delay:.2f} seconds after a recoverable error.",
                                task=name, restarts_total=entry.restarts_total)
            await asyncio.sleep(delay)
            await self.start_supervised_task(name, entry.factory)
        elif entry.essential:
            await self.orchestrator.emergency_shutdown(
                f"Task '{name}' has failed too frequently or its circuit breaker is open.")
        else:
            entry.suspended = True
            self.logger.critical(f"SUSPENDING non-essential task '{name}' after repeated failures.", task=name)

    def _should_restart(self, entry: SupervisedCoroutine) -> bool:
        now = time.monotonic()

        if entry.breaker_open_until is not None:
            if now < entry.breaker_open_until:
                return False
            entry.breaker_open_until = None

        entry.failures = [ts for ts in entry.failures if now - ts < FAILURE_WINDOW_SECONDS]
        if len(entry.failures) > self.config.hourly_failure_threshold:
            return False

        if len(entry.failures) >= 2 and entry.failures[-1] - entry.failures[-2] < self.config.rapid_failure_seconds:
            return False

        if entry.restarts_this_cycle >= self.config.circuit_breaker_threshold:
            entry.breaker_open_until = now + self.config.circuit_breaker_cooldown_seconds
            entry.restarts_this_cycle = 0
            return False

        return True

    def get_supervisor_metrics(self) -> Dict[str, Any]:
        """Snapshot of every supervised coroutine plus the runs the orchestrator holds."""
        now = time.monotonic()
        coroutines = {}
        for name, entry in self.coroutines.items():
            stale = (entry.stale_after_seconds is not None and entry.task is not None and not entry.task.done()
                     and self.heartbeat_age_seconds(entry) > entry.stale_after_seconds)
            coroutines[name] = {
                "state": entry.state,
                "essential": entry.essential,
                "restarts_total": entry.restarts_total,
                "recent_failures": len([ts for ts in entry.failures if now - ts < FAILURE_WINDOW_SECONDS]),
                "heartbeat_age_seconds": round(self.heartbeat_age_seconds(entry), 1),
                "stale": stale,
                "breaker_open": entry.breaker_open_until is not None and now < entry.breaker_open_until,
            }
        return {
            "uptime_seconds": round(now - self.started_monotonic, 1),
            "total_failures": self.total_failures,
            "coroutines": coroutines,
            "runs_in_progress": sorted(day.isoformat() for day in self.orchestrator._runs_in_progress),
            "last_runs": [summary.to_dict() for summary in list(self.orchestrator.run_history)[-5:]],
        }

# src/orchestrator/threads/daily_trigger.py
"""
The Daily Trigger coroutine sleeps until the configured time of day in the
configured timezone, then runs the orchestrator for 'yesterday'. A trigger
that lands while a run for the same day is still in flight is skipped by
the orchestrator's overlap guard.
"""

import asyncio
from datetime import datetime, time, timedelta, tzinfo
from typing import TYPE_CHECKING

from core.errors import ErrorCategory

if TYPE_CHECKING:
    from orchestrator.orchestrator import AnalysisOrchestrator


def parse_time_of_day(value: str) -> time:
    hours, minutes, seconds = (int(part) for part in value.split(":"))
    return time(hours, minutes, seconds)


def next_fire_time(now: datetime, time_of_day: time, tz: tzinfo) -> datetime:
    """First occurrence of time_of_day in tz strictly after now."""
    local_now = now.astimezone(tz)
    candidate = datetime.combine(local_now.date(), time_of_day, tzinfo=tz)
    if candidate <= local_now:
        candidate = datetime.combine(local_now.date() + timedelta(days=1), time_of_day, tzinfo=tz)
    return candidate


class DailyTrigger:
    """Coroutine firing one scheduled run per day."""

    def __init__(self, orchestrator: "AnalysisOrchestrator"):
        self.orchestrator = orchestrator
        self.logger = orchestrator.logger
        self.time_of_day = parse_time_of_day(orchestrator.settings.scheduling.daily_analysis_time)
        self.timezone = orchestrator.timezone

    def seconds_until_next_fire(self) -> float:
        now = self.orchestrator.clock()
        fire_at = next_fire_time(now, self.time_of_day, self.timezone)
        return max((fire_at - now).total_seconds(), 0.0)

    async def run_async(self):
        """The main async loop for the Daily Trigger coroutine."""
        self.logger.log_component_lifecycle("DailyTrigger", "STARTED")

        while not self.orchestrator._shutdown_event.is_set():
            delay = self.seconds_until_next_fire()
            self.logger.info(f"Next scheduled analysis in {delay:.0f} seconds.", delay_seconds=delay)
            await asyncio.sleep(delay)

            try:
                summary = await self.orchestrator.run_scheduled_async()
                self.logger.info(f"Scheduled analysis for {summary.day.isoformat()} ended with {summary.status}.",
                                 run_id=summary.run_id)
                self.orchestrator.update_thread_liveness("DailyTrigger")
            except Exception as e:
                error = self.orchestrator.error_handler.handle_error(e, "daily_trigger_main_loop")
                if error.error_category == ErrorCategory.FATAL_BUG:
                    self.logger.critical(f"Fatal error detected in {self.__class__.__name__}: {error}")
                    raise

            # Step past the fire instant so the same slot is not picked again
            await asyncio.sleep(1)

        self.logger.log_component_lifecycle("DailyTrigger", "STOPPED")

# src/orchestrator/healthcheck.py
import asyncio
from typing import TYPE_CHECKING, Dict

from core.errors import ErrorCategory

if TYPE_CHECKING:
    from orchestrator.orchestrator import AnalysisOrchestrator


class HealthCheck:
    """
    Supervised background coroutine probing the Daily Store and the external
    analysis service. Results are logged; a degraded analysis service only
    means records stay pending until it recovers.
    """

    def __init__(self, orchestrator: "AnalysisOrchestrator"):
        self.orchestrator = orchestrator
        self.logger = orchestrator.logger
        self.interval_seconds = orchestrator.settings.health_check.interval_seconds
        self.last_results: Dict[str, bool] = {}

    async def check_once(self) -> Dict[str, bool]:
        results = {
            "daily_store": await self.orchestrator.store.check_health(),
            "analysis_service": await self.orchestrator.analysis_client.check_health(),
        }
        for component, is_healthy in results.items():
            self.logger.log_health_check(component, is_healthy)
        self.last_results = results
        return results

    async def run_async(self) -> None:
        """The main async loop for the Health Check coroutine."""
        self.logger.log_component_lifecycle("HealthCheck", "STARTED")

        while not self.orchestrator._shutdown_event.is_set():
            try:
                results = await self.check_once()
                if not results["daily_store"]:
                    self.logger.error("Daily Store is not writable; runs will fail until it recovers.")
                self.orchestrator.update_thread_liveness("HealthCheck")
                self.logger.debug("Supervisor metrics", supervisor=self.orchestrator.task_manager.get_supervisor_metrics())
            except Exception as e:
                error = self.orchestrator.error_handler.handle_error(e, "health_check_loop_error")
                if error.error_category == ErrorCategory.FATAL_BUG:
                    raise

            await asyncio.sleep(self.interval_seconds)

        self.logger.log_component_lifecycle("HealthCheck", "STOPPED")

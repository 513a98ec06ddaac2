# src/services/log_query_service.py
"""
Query, statistics, resolution and report boundaries over the Daily Store.
Every method returns an explicit result; failures become empty results or
False after being reported through the ErrorHandler.
"""

from collections import Counter
from datetime import date, datetime, timedelta, timezone
from typing import Callable, List, Optional, Union

from core.config.configuration_manager import FileStorageConfig
from core.errors import ErrorHandler, ErrorType, PipelineError, ValidationError
from core.logging.system_logger import SystemLogger
from core.models.models import DateRange, ErrorLog, LogStatistics, ensure_utc
from storage.daily_store import DailyStore

DEFAULT_QUERY_WINDOW_DAYS = 30

DateBound = Union[date, datetime, None]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_datetime(value: Union[date, datetime], end_of_day: bool = False) -> datetime:
    if isinstance(value, datetime):
        return ensure_utc(value)
    moment = datetime.combine(value, datetime.max.time() if end_of_day else datetime.min.time())
    return moment.replace(tzinfo=timezone.utc)


class LogQueryService:

    def __init__(self, store: DailyStore, config: FileStorageConfig,
                 logger: SystemLogger, error_handler: ErrorHandler,
                 clock: Optional[Callable[[], datetime]] = None):
        self.store = store
        self.config = config
        self.logger = logger
        self.error_handler = error_handler
        self.clock = clock or _utc_now

    def _resolve_range(self, from_date: DateBound, to_date: DateBound):
        end = _as_datetime(to_date, end_of_day=True) if to_date is not None else self.clock()
        start = _as_datetime(from_date) if from_date is not None else end - timedelta(days=DEFAULT_QUERY_WINDOW_DAYS)
        return start, end

    async def get_filtered_logs(self, from_date: DateBound = None, to_date: DateBound = None,
                                severity: Optional[str] = None, priority: Optional[str] = None) -> List[ErrorLog]:
        """
        Records in [from_date, to_date] (default: the last 30 days), optionally
        filtered by severity/priority (case-insensitive), newest first.
        """
        try:
            start, end = self._resolve_range(from_date, to_date)
            logs = await self.store.load_range(start, end)

            if severity:
                logs = [log for log in logs
                        if log.severity is not None and log.severity.value.lower() == severity.lower()]
            if priority:
                logs = [log for log in logs
                        if log.priority is not None and log.priority.value.lower() == priority.lower()]

            logs.sort(key=lambda log: log.timestamp, reverse=True)
            self.logger.debug(f"Retrieved {len(logs)} filtered logs",
                              from_date=start, to_date=end, severity=severity, priority=priority)
            return logs
        except PipelineError as e:
            self.error_handler.handle_error(e, "get_filtered_logs")
            return []

    async def get_log_statistics(self, from_date: DateBound = None, to_date: DateBound = None) -> LogStatistics:
        """Aggregate counts over the range. Recency buckets are relative to now (UTC)."""
        try:
            start, end = self._resolve_range(from_date, to_date)
            logs = await self.store.load_range(start, end)
        except PipelineError as e:
            self.error_handler.handle_error(e, "get_log_statistics")
            return LogStatistics()

        severity_breakdown = Counter(log.severity.value for log in logs if log.severity is not None)
        priority_breakdown = Counter(log.priority.value for log in logs if log.priority is not None)

        today = self.clock().astimezone(timezone.utc).date()
        week_ago = today - timedelta(days=7)
        month_ago = today - timedelta(days=30)
        analyzed = sum(1 for log in logs if log.is_analyzed)

        statistics = LogStatistics(
            total_logs=len(logs),
            analyzed_count=analyzed,
            unanalyzed_count=len(logs) - analyzed,
            critical_count=severity_breakdown.get("Critical", 0),
            high_count=severity_breakdown.get("High", 0),
            medium_count=severity_breakdown.get("Medium", 0),
            low_count=severity_breakdown.get("Low", 0),
            high_priority_count=priority_breakdown.get("High", 0),
            medium_priority_count=priority_breakdown.get("Medium", 0),
            low_priority_count=priority_breakdown.get("Low", 0),
            today_count=sum(1 for log in logs if log.day == today),
            week_count=sum(1 for log in logs if log.day >= week_ago),
            month_count=sum(1 for log in logs if log.day >= month_ago),
            severity_breakdown=dict(severity_breakdown),
            priority_breakdown=dict(priority_breakdown),
            date_range=DateRange(from_date=start, to_date=end),
            generated_at=self.clock(),
        )
        self.logger.info(f"Generated statistics for {len(logs)} logs")
        return statistics

    async def update_log_resolution_status(self, log_id: str, resolution_status: str,
                                           resolved_at: Optional[datetime] = None,
                                           resolved_by: Optional[str] = None) -> bool:
        """
        Updates exactly one record in its owning partition. Unknown ids and
        records older than the search window report False.
        """
        try:
            if not log_id or not log_id.strip():
                raise ValidationError("Log id is required", ErrorType.VALIDATION_EMPTY_INPUT, field_name="log_id")
            if not resolution_status or not resolution_status.strip():
                raise ValidationError("Resolution status is required", ErrorType.VALIDATION_EMPTY_INPUT,
                                      field_name="resolution_status")

            located = await self.store.find_by_id(log_id, self.config.find_by_id_window_days,
                                                  today=self.clock().astimezone(timezone.utc).date())
            if located is None:
                self.logger.warning(f"Log {log_id} not found within the last "
                                    f"{self.config.find_by_id_window_days} days", log_id=log_id)
                return False

            async with self.store.partition(located.day) as part:
                record = part.get(log_id)
                if record is None:
                    return False
                record.resolution_status = resolution_status
                record.resolved_at = ensure_utc(resolved_at) if resolved_at else self.clock()
                record.resolved_by = resolved_by
                part.mark_dirty()

            self.logger.info(f"Updated resolution status for log {log_id} to {resolution_status}",
                             log_id=log_id, resolved_by=resolved_by)
            return True
        except PipelineError as e:
            self.error_handler.handle_error(e, "update_log_resolution_status", log_id=log_id)
            return False

    async def get_logs_for_report(self, report_date: date, from_date: DateBound = None,
                                  to_date: DateBound = None) -> List[ErrorLog]:
        """The ranged log list an exporter needs; defaults to the report date itself."""
        if from_date is None and to_date is None:
            from_date, to_date = report_date, report_date
        logs = await self.get_filtered_logs(from_date, to_date)
        self.logger.info(f"Prepared {len(logs)} logs for report {report_date.isoformat()}",
                         report_date=report_date)
        return logs

# src/services/log_collector.py
"""
Ingestion boundary: validates incoming batches and appends them to the
partition owning each record's event date.
"""

from collections import defaultdict
from datetime import date
from typing import Any, Dict, List, Optional, Sequence, Union

from pydantic import ValidationError as PydanticValidationError

from core.config.configuration_manager import PerformanceConfig
from core.errors import ErrorHandler, ErrorType, PipelineError, ValidationError
from core.logging.system_logger import SystemLogger
from core.models.models import ErrorLog
from storage.daily_store import DailyStore

LogInput = Union[ErrorLog, Dict[str, Any]]


class LogCollector:
    """
    Appends batches to the Daily Store. Never raises to the caller: every
    outcome is a boolean. Duplicate ids are stored as-is (at-least-once).
    """

    def __init__(self, store: DailyStore, config: PerformanceConfig,
                 logger: SystemLogger, error_handler: ErrorHandler):
        self.store = store
        self.config = config
        self.logger = logger
        self.error_handler = error_handler

    async def collect_logs_async(self, logs: Optional[Sequence[LogInput]]) -> bool:
        try:
            records = self._validate_batch(logs)
        except ValidationError as e:
            self.error_handler.handle_error(e, "collect_logs_validation")
            return False

        groups: Dict[date, List[ErrorLog]] = defaultdict(list)
        for record in records:
            groups[record.day].append(record)

        try:
            for day in sorted(groups):
                group = groups[day]
                async with self.store.partition(day) as part:
                    part.append(group)
                self.logger.log_collection(day, len(group))
        except PipelineError as e:
            self.error_handler.handle_error(e, "collect_logs_persist")
            return False

        return True

    def _validate_batch(self, logs: Optional[Sequence[LogInput]]) -> List[ErrorLog]:
        if not logs:
            raise ValidationError(
                "No logs provided for collection",
                ErrorType.VALIDATION_EMPTY_INPUT
            )

        if len(logs) > self.config.max_logs_per_request:
            raise ValidationError(
                f"Batch of {len(logs)} logs exceeds the limit of {self.config.max_logs_per_request}",
                ErrorType.VALIDATION_CONSTRAINT_VIOLATION,
                field_name="logs",
                field_value=len(logs)
            )

        records = []
        for position, item in enumerate(logs):
            try:
                if isinstance(item, ErrorLog):
                    records.append(item.model_copy(deep=True))
                else:
                    records.append(ErrorLog.model_validate(item))
            except PydanticValidationError as e:
                raise ValidationError(
                    f"Log at position {position} is malformed: {e.errors()[0]['msg']}",
                    ErrorType.VALIDATION_SCHEMA_ERROR,
                    field_name=f"logs[{position}]",
                    cause=e
                ) from e
        return records

# src/core/logging/system_logger.py
"""
Context-aware structured logging for the analysis pipeline.

Every component logs through a SystemLogger so that each record carries the
ambient context (component, machine) plus the keyword context of the call.
Per-record analysis outcomes can be high volume, so successes are sampled
with thread-safe counters that are cleaned up periodically.
"""

import logging
import json
import random
import threading
from typing import Dict, Any, Optional, Tuple
from datetime import date, datetime, timedelta, timezone
from enum import Enum
import copy

from ..errors import PipelineError

# Partition reads and writes slower than this are logged at WARNING
SLOW_PARTITION_OPERATION_MS = 5000


def custom_json_serializer(obj):
    """Custom JSON serializer for objects not serializable by default json code"""
    if isinstance(obj, bytes):
        return obj.hex()
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, timedelta):
        return obj.total_seconds()
    if isinstance(obj, Enum):
        return obj.value
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


class JsonFormatter(logging.Formatter):
    """Formats each log record as a single JSON object."""
    def format(self, record):
        log_record = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if hasattr(record, 'extra_context'):
            log_record.update(record.extra_context)

        return json.dumps(log_record, default=custom_json_serializer)


class SystemLogger:
    """
    A structured logger with domain methods for pipeline events. Supports
    TEXT and JSON output and sampled per-record logging.
    """

    def __init__(self, logger: logging.Logger, log_format: str = "TEXT", ambient_context: Optional[Dict[str, Any]] = None):
        """
        - logger: The base Python logger instance.
        - log_format: 'TEXT' or 'JSON'.
        - ambient_context: context present on every record,
          e.g., {"component_name": "Orchestrator", "machine_name": "host-1"}
        """
        self.logger = logger
        self.ambient_context = ambient_context or {}

        required_fields = ['component_name', 'machine_name']
        for field in required_fields:
            if field not in self.ambient_context:
                self.ambient_context[field] = 'UNKNOWN'
                self.logger.warning(f"Ambient context is missing required field '{field}'. Defaulting to 'UNKNOWN'.")

        if log_format.upper() == "JSON":
            for handler in self.logger.handlers:
                handler.setFormatter(JsonFormatter())

        self._sampling_lock = threading.Lock()
        self._sampling_counters: Dict[str, Tuple[int, datetime]] = {}
        self._last_cleanup_time = datetime.now(timezone.utc)
        self._cleanup_interval_seconds = 300
        self._max_counter_age_seconds = 1800

    def _log(self, level: int, message: str, context: Dict[str, Any]):
        """Merge ambient and call context and emit the record."""
        final_context = {**self.ambient_context, **context}
        self.logger.log(level, message, extra={"extra_context": final_context})

    def _cleanup_sampling_counters_if_needed(self):
        """Periodically drop stale sampling counters."""
        now = datetime.now(timezone.utc)

        if (now - self._last_cleanup_time).total_seconds() < self._cleanup_interval_seconds:
            return

        with self._sampling_lock:
            cutoff_time = now - timedelta(seconds=self._max_counter_age_seconds)
            counters_to_remove = [
                counter_key for counter_key, (_, last_logged) in self._sampling_counters.items()
                if last_logged < cutoff_time
            ]

            for counter_key in counters_to_remove:
                del self._sampling_counters[counter_key]

            self._last_cleanup_time = now

            if counters_to_remove:
                self.logger.debug(f"Cleaned up {len(counters_to_remove)} old sampling counters")

    # --- Configuration & Startup Logging ---

    def log_config_load(self, status: str, **context):
        """Logs the status of configuration loading."""
        self._log(logging.INFO, f"Configuration loading {status}.", context)

    def log_component_lifecycle(self, component: str, event: str, **context):
        """Logs a lifecycle event for a major component (e.g., startup, shutdown)."""
        self._log(logging.INFO, f"Component '{component}' event: {event}.", context)

    def log_health_check(self, component: str, is_healthy: bool, **context):
        """Logs the result of a component health check."""
        level = logging.INFO if is_healthy else logging.WARNING
        status = "succeeded" if is_healthy else "failed"
        self._log(level, f"Health check for component '{component}' {status}.", context)

    # --- Pipeline Logging ---

    def log_collection(self, day: date, count: int, **context):
        """Logs how many records were appended to one day's partition."""
        self._log(logging.INFO, f"Collected {count} logs for date {day.isoformat()}.",
                  {"partition": day.isoformat(), "count": count, **context})

    def log_partition_operation(self, operation: str, day: date, record_count: int,
                                duration_ms: Optional[float] = None, size_bytes: Optional[int] = None, **context):
        """Logs a partition load or save; slow operations are raised to WARNING."""
        log_context = {"partition": day.isoformat(), "operation": operation, "record_count": record_count,
                       "duration_ms": duration_ms, "size_bytes": size_bytes, **context}
        if duration_ms is not None and duration_ms > SLOW_PARTITION_OPERATION_MS:
            self._log(logging.WARNING, f"Slow partition operation: '{day.isoformat()}' {operation} took {duration_ms:.0f}ms.",
                      log_context)
            return
        self._log(logging.DEBUG, f"Partition '{day.isoformat()}' {operation}: {record_count} records.", log_context)

    def log_record_analysis(self, run_id: str, log_id: str, succeeded: bool,
                            sampling_rate: float = 0.1, force_log: bool = False, **context):
        """Logs a per-record outcome. Failures always log, successes are sampled."""

        self._cleanup_sampling_counters_if_needed()

        if succeeded and not force_log and random.random() > sampling_rate:
            counter_key = f"record_analysis_{run_id}"
            now = datetime.now(timezone.utc)

            with self._sampling_lock:
                count, last_logged = self._sampling_counters.get(counter_key, (0, now))
                new_count = count + 1
                self._sampling_counters[counter_key] = (new_count, last_logged)

                should_log_suppression = (
                    new_count % 1000 == 0 or
                    (now - last_logged).total_seconds() > 60
                )

                if should_log_suppression:
                    self.info(f"Log sampling is active for run {run_id}. Suppressed {new_count} analysis messages so far.", run_id=run_id)
                    self._sampling_counters[counter_key] = (new_count, now)
            return

        log_context = {"run_id": run_id, "log_id": log_id, "succeeded": succeeded, **context}
        if succeeded:
            self._log(logging.INFO, f"Log {log_id} analyzed.", log_context)
        else:
            self._log(logging.WARNING, f"Analysis failed for log {log_id}.", log_context)

    def log_run_summary(self, run_id: str, status: str, attempted: int, succeeded: int, failed: int, **context):
        """Logs the end of a run and drops its sampling counter."""
        level = logging.INFO if status.upper() in ("COMPLETED", "SKIPPED") else logging.WARNING
        duration_ms = context.get("duration_ms")
        if duration_ms and succeeded:
            context["logs_per_second"] = round(succeeded / (duration_ms / 1000), 2)
        self._log(level,
                  f"Run {run_id} finished with status {status}: attempted={attempted}, succeeded={succeeded}, failed={failed}.",
                  {"run_id": run_id, "status": status, "attempted": attempted,
                   "succeeded": succeeded, "failed": failed, **context})

        with self._sampling_lock:
            self._sampling_counters.pop(f"record_analysis_{run_id}", None)

    # --- Error Handling Integration ---

    def log_pipeline_error(self, error: PipelineError, **context):
        """Logs a structured error at the level mapped from its severity."""
        error_dict = copy.deepcopy(error.to_dict())
        error_dict['context'].update(context)

        severity_map = {
            "CRITICAL": logging.CRITICAL,
            "HIGH": logging.ERROR,
            "MEDIUM": logging.WARNING,
            "LOW": logging.INFO
        }
        level = severity_map.get(error.severity.value.upper(), logging.ERROR)
        self._log(level, f"PipelineError occurred: {error.message}", error_dict)

    # --- General-Purpose Logging ---

    def info(self, message: str, **context):
        """Log an info message."""
        self._log(logging.INFO, message, context)

    def warning(self, message: str, **context):
        """Log a warning message."""
        self._log(logging.WARNING, message, context)

    def error(self, message: str, **context):
        """Log an error message."""
        self._log(logging.ERROR, message, context)

    def debug(self, message: str, **context):
        """Log a debug message."""
        self._log(logging.DEBUG, message, context)

    def critical(self, message: str, **context):
        """Log a critical message."""
        self._log(logging.CRITICAL, message, context)

    def get_sampling_stats(self) -> Dict[str, Any]:
        """Current sampling counter statistics."""
        with self._sampling_lock:
            return {
                "active_counters": len(self._sampling_counters),
                "last_cleanup": self._last_cleanup_time.isoformat(),
                "counters": {
                    key: {"count": count, "last_logged": last_logged.isoformat()}
                    for key, (count, last_logged) in self._sampling_counters.items()
                }
            }

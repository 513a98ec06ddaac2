"""
conftest.py - shared fixtures for the pipeline tests.

Partitions live under pytest's tmp_path; the logger is a spec'd Mock so
tests can assert on structured log calls, while the ErrorHandler is real so
error conversion behaves as in production.
"""

import logging
from datetime import datetime, timezone
from unittest.mock import Mock

import pytest

from core.config.configuration_manager import SystemConfig
from core.errors import ErrorHandler
from core.logging.system_logger import SystemLogger
from core.models.models import ErrorLog
from storage.daily_store import DailyStore


@pytest.fixture
def settings(tmp_path) -> SystemConfig:
    """System configuration pointing at a temporary partition root."""
    return SystemConfig.model_validate({
        "file_storage": {
            "logs_path": str(tmp_path / "logs"),
            "exports_path": str(tmp_path / "exports"),
        },
        "analysis_service": {
            "base_url": "http://127.0.0.1:9",
            "timeout_seconds": 1,
            "retry_delay_seconds": 0,
        },
        "task_manager": {"startup_validation_seconds": 0.01},
    })


@pytest.fixture
def mock_logger():
    """Mock system logger"""
    return Mock(spec=SystemLogger)


@pytest.fixture
def error_handler():
    return ErrorHandler(logging.getLogger("test_errors"))


@pytest.fixture
def store(settings, mock_logger, error_handler) -> DailyStore:
    return DailyStore(settings.file_storage, mock_logger, error_handler)


@pytest.fixture
def make_log():
    """Factory for ErrorLog records with sensible defaults."""
    def _make_log(log_id: str = None, timestamp: datetime = None, **fields) -> ErrorLog:
        data = {
            "id": log_id,
            "timestamp": timestamp or datetime(2024, 1, 15, 10, 30, tzinfo=timezone.utc),
            "source": "OrderService",
            "message": "NullReferenceException in CheckoutController",
            "stackTrace": "at CheckoutController.Submit() line 42",
        }
        data.update(fields)
        return ErrorLog.model_validate(data)
    return _make_log

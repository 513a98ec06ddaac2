# src/core/config/configuration_manager.py
"""
Provides a robust, type-safe configuration management system.

The base YAML file is loaded first, core services are injected once they
exist, then dotted-name overrides (programmatic or ELP__ environment
variables) are merged before the whole tree is validated into SystemConfig.
"""

import os
import re
import socket
from typing import List, Dict, Any, Optional, Mapping
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml
from pydantic import BaseModel, Field, field_validator, ValidationError as PydanticValidationError

from typing import TYPE_CHECKING
if TYPE_CHECKING:
    from ..logging.system_logger import SystemLogger
    from ..errors import ErrorHandler

ENV_OVERRIDE_PREFIX = "ELP__"

_TIME_OF_DAY_PATTERN = re.compile(r"^([01]\d|2[0-3]):[0-5]\d:[0-5]\d$")

# =================================================================
# Pydantic Models for Type-Safe System Configuration
# =================================================================

class SystemIdentityConfig(BaseModel):
    component_name: str = Field("ErrorLogAnalyzer")
    machine_name: str = Field(default_factory=socket.gethostname)


class FileStorageConfig(BaseModel):
    logs_path: str = Field("Data/Logs", description="Root directory holding one partition file per day.")
    exports_path: str = Field("Data/Exports", description="Directory where report exporters write artifacts.")
    create_directories_if_not_exist: bool = Field(True)
    find_by_id_window_days: int = Field(90, ge=1, description="How many recent partitions FindById scans.")


class SchedulingConfig(BaseModel):
    daily_analysis_time: str = Field("01:00:00", description="Local time of day (HH:mm:ss) the daily run fires.")
    timezone: str = Field("UTC", description="IANA timezone used to interpret the daily time and 'yesterday'.")
    retry_interval_minutes: int = Field(30, ge=1, le=1440)
    max_retry_attempts: int = Field(3, ge=1, le=24, description="Attempt budget per record, also the retry window in days.")
    enable_scheduled_analysis: bool = Field(True)

    @field_validator("daily_analysis_time")
    @classmethod
    def _check_time_of_day(cls, value: str) -> str:
        if not _TIME_OF_DAY_PATTERN.match(value):
            raise ValueError(f"daily_analysis_time must be HH:mm:ss, got '{value}'")
        return value

    @field_validator("timezone")
    @classmethod
    def _check_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"Unknown timezone '{value}'") from e
        return value


class AnalysisServiceConfig(BaseModel):
    base_url: str = Field("http://localhost:8080")
    api_path: str = Field("/api/analyze")
    health_path: str = Field("/health")
    api_key: Optional[str] = Field(None, description="Bearer token sent to the analysis service.")
    timeout_seconds: int = Field(30, ge=1, le=300)
    max_retry_attempts: int = Field(3, ge=1, le=10)
    retry_delay_seconds: float = Field(5, ge=0, le=60, description="Fixed delay between attempts.")
    historical_context_days: int = Field(7, ge=0)


class PerformanceConfig(BaseModel):
    max_logs_per_request: int = Field(10000, ge=1, le=100000)
    max_concurrent_analysis: int = Field(5, ge=1, le=100)


class FileLoggingConfig(BaseModel):
    enabled: bool = Field(False, description="Master switch to enable logging to a file.")
    path: str = Field("logs/system.log", description="Path to the log file.")
    level: str = Field("DEBUG", description="Log level for the file (e.g., DEBUG, INFO).")
    format: str = Field("JSON", description="Format for the file log (JSON is best for analysis).")


class LoggingConfig(BaseModel):
    format: str = Field("TEXT")
    level: str = Field("INFO")
    progress_sampling_rate: float = Field(0.1, ge=0.0, le=1.0)
    file: Optional[FileLoggingConfig] = None


class TaskManagerConfig(BaseModel):
    """Configuration for the resilient task supervisor."""
    rapid_failure_seconds: int = Field(30, description="Time window in seconds for detecting a rapid crash loop.")
    hourly_failure_threshold: int = Field(3, description="Max failures per hour for a task before escalating.")
    restart_backoff_base: float = Field(2.0, description="Base for the exponential backoff delay calculation.")
    restart_backoff_cap_seconds: float = Field(60.0, description="Maximum backoff delay in seconds before a restart.")
    circuit_breaker_threshold: int = Field(5, description="Number of restarts for a task before its circuit breaker is opened.")
    circuit_breaker_cooldown_seconds: int = Field(300, description="How long a circuit breaker remains open before allowing a retry.")
    startup_validation_seconds: float = Field(0.5, description="Time to wait after starting a task to check for immediate failure.")


class HealthCheckConfig(BaseModel):
    interval_seconds: int = Field(60, ge=1)


class SystemConfig(BaseModel):
    """The root model for the entire system configuration."""
    system: SystemIdentityConfig = Field(default_factory=SystemIdentityConfig)
    file_storage: FileStorageConfig = Field(default_factory=FileStorageConfig)
    scheduling: SchedulingConfig = Field(default_factory=SchedulingConfig)
    analysis_service: AnalysisServiceConfig = Field(default_factory=AnalysisServiceConfig)
    performance: PerformanceConfig = Field(default_factory=PerformanceConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    task_manager: TaskManagerConfig = Field(default_factory=TaskManagerConfig)
    health_check: HealthCheckConfig = Field(default_factory=HealthCheckConfig)

# =================================================================
# The Configuration Manager
# =================================================================

class ConfigurationManager:
    """Manages application configuration using a three-phase initialization."""

    def __init__(self, default_config_path: str):
        """Phase 1: Initialize with no dependencies to load the base file."""
        self.logger: Optional["SystemLogger"] = None
        self.error_handler: Optional["ErrorHandler"] = None
        self._raw_config: Optional[Dict[str, Any]] = None
        self._change_report: List[str] = []
        self.settings: Optional[SystemConfig] = None

        try:
            with open(default_config_path, 'r') as f:
                self._raw_config = yaml.safe_load(f)
            if self._raw_config is None:
                self._raw_config = {}
            if not isinstance(self._raw_config, dict):
                raise yaml.YAMLError("Root of configuration file is not a dictionary.")
        except (OSError, yaml.YAMLError) as e:
            raise ValueError(f"CRITICAL: Failed to load base configuration file '{default_config_path}': {e}") from e

    def set_core_services(self, system_logger: "SystemLogger", error_handler: "ErrorHandler"):
        """Phase 2: Inject core services once they are initialized."""
        self.logger = system_logger
        self.error_handler = error_handler
        self.logger.info("Core services (Logger, ErrorHandler) have been injected into ConfigurationManager.")

    def _ensure_services(self):
        if not self.logger or not self.error_handler:
            raise RuntimeError("ConfigurationManager cannot perform this action until set_core_services() is called.")

    def get_partial_ambient_context(self) -> Dict[str, Any]:
        """Gets essential context from the raw config for logger initialization."""
        system_section = self._raw_config.get("system") or {}
        return {
            "component_name": system_section.get("component_name", "ErrorLogAnalyzer"),
            "machine_name": system_section.get("machine_name", socket.gethostname()),
        }

    def apply_overrides(self, overrides: Mapping[str, Any]):
        """Phase 3a: Merge dotted-name overrides such as {'scheduling.timezone': 'Europe/Paris'}."""
        self._ensure_services()
        self._merge_params(overrides.items())

    def load_environment_overrides(self, environ: Optional[Mapping[str, str]] = None):
        """Phase 3a: Merge ELP__SECTION__KEY environment variables."""
        self._ensure_services()
        environ = os.environ if environ is None else environ
        params = []
        for name, value in environ.items():
            if not name.startswith(ENV_OVERRIDE_PREFIX):
                continue
            dotted = ".".join(part.lower() for part in name[len(ENV_OVERRIDE_PREFIX):].split("__") if part)
            if dotted:
                params.append((dotted, value))
        if params:
            self.logger.info(f"Found {len(params)} environment override(s).")
        self._merge_params(params)

    def finalize(self, context: Optional[Dict[str, Any]] = None):
        """Phase 3b: Finalize and validate the configuration."""
        self._ensure_services()
        context = context or {}
        self.logger.info("Validating and finalizing system configuration...", **context)
        try:
            self.settings = SystemConfig.model_validate(self._raw_config)

            if self._change_report:
                self.logger.info("Configuration overrides applied:", **context)
                for change in self._change_report:
                    self.logger.info(f"  - {change}", **context)
            else:
                self.logger.info("No configuration values were overridden.", **context)

            self.logger.log_config_load("COMPLETED", **context)
        except PydanticValidationError as e:
            self.error_handler.handle_error(e, context="finalize_config_validation", **context)
            raise

    def _merge_params(self, params):
        """Merges (dotted_name, value) pairs, tracking every change."""
        for parameter_name, new_value in params:
            keys = parameter_name.split('.')
            d = self._raw_config
            for key in keys[:-1]:
                existing = d.get(key)
                if not isinstance(existing, dict):
                    existing = {}
                    d[key] = existing
                d = existing

            target_key = keys[-1]
            old_value = d.get(target_key)

            if old_value != new_value:
                self._change_report.append(f"Parameter '{parameter_name}': '{old_value}' -> '{new_value}'")
                d[target_key] = new_value

    @property
    def change_report(self) -> List[str]:
        return list(self._change_report)

    def is_healthy(self) -> bool:
        return self.settings is not None

from pathlib import Path
from unittest.mock import Mock

import pytest
from pydantic import ValidationError as PydanticValidationError

from core.config.configuration_manager import ConfigurationManager, SchedulingConfig, SystemConfig
from core.errors import ErrorHandler

DEFAULT_CONFIG = Path(__file__).resolve().parent.parent / "config" / "system_default.yaml"


@pytest.fixture
def write_config(tmp_path):
    def _write(text: str) -> str:
        path = tmp_path / "config.yaml"
        path.write_text(text, encoding="utf-8")
        return str(path)
    return _write


@pytest.fixture
def manager_for(mock_logger):
    def _manager_for(path: str) -> ConfigurationManager:
        manager = ConfigurationManager(path)
        manager.set_core_services(mock_logger, Mock(spec=ErrorHandler))
        return manager
    return _manager_for


class TestConfigurationManager:

    def test_shipped_defaults_validate(self, manager_for):
        manager = manager_for(str(DEFAULT_CONFIG))
        manager.finalize()

        settings = manager.settings
        assert settings.scheduling.daily_analysis_time == "01:00:00"
        assert settings.scheduling.timezone == "UTC"
        assert settings.scheduling.max_retry_attempts == 3
        assert settings.analysis_service.timeout_seconds == 30
        assert settings.performance.max_logs_per_request == 10000
        assert manager.is_healthy()

    def test_empty_file_uses_model_defaults(self, manager_for, write_config):
        manager = manager_for(write_config(""))
        manager.finalize()

        assert manager.settings == SystemConfig()
        assert manager.change_report == []

    def test_non_mapping_root_is_rejected(self, write_config):
        with pytest.raises(ValueError):
            ConfigurationManager(write_config("- just\n- a list\n"))

    def test_missing_file_is_rejected(self, tmp_path):
        with pytest.raises(ValueError):
            ConfigurationManager(str(tmp_path / "absent.yaml"))

    def test_environment_overrides_are_reported(self, manager_for, write_config, mock_logger):
        manager = manager_for(write_config("scheduling:\n  timezone: UTC\n"))
        manager.load_environment_overrides({
            "ELP__SCHEDULING__TIMEZONE": "Europe/Paris",
            "ELP__ANALYSIS_SERVICE__TIMEOUT_SECONDS": "45",
            "UNRELATED": "ignored",
        })
        manager.finalize()

        assert manager.settings.scheduling.timezone == "Europe/Paris"
        assert manager.settings.analysis_service.timeout_seconds == 45
        assert len(manager.change_report) == 2
        assert any("scheduling.timezone" in change for change in manager.change_report)
        mock_logger.log_config_load.assert_called_once_with("COMPLETED")

    def test_dotted_overrides(self, manager_for, write_config):
        manager = manager_for(write_config(""))
        manager.apply_overrides({"performance.max_concurrent_analysis": 4})
        manager.finalize()

        assert manager.settings.performance.max_concurrent_analysis == 4

    def test_invalid_values_fail_validation(self, manager_for, write_config):
        manager = manager_for(write_config("analysis_service:\n  timeout_seconds: 0\n"))

        with pytest.raises(PydanticValidationError):
            manager.finalize()
        manager.error_handler.handle_error.assert_called_once()
        assert not manager.is_healthy()

    def test_overrides_need_core_services(self, write_config):
        manager = ConfigurationManager(write_config(""))
        with pytest.raises(RuntimeError):
            manager.apply_overrides({"scheduling.timezone": "UTC"})


class TestSchedulingConfig:

    @pytest.mark.parametrize("value", ["2:00", "25:00:00", "02:60:00", "noon"])
    def test_rejects_bad_time_of_day(self, value):
        with pytest.raises(PydanticValidationError):
            SchedulingConfig(daily_analysis_time=value)

    def test_rejects_unknown_timezone(self):
        with pytest.raises(PydanticValidationError):
            SchedulingConfig(timezone="Mars/Olympus_Mons")

    @pytest.mark.parametrize("field,value", [
        ("retry_interval_minutes", 0),
        ("retry_interval_minutes", 1441),
        ("max_retry_attempts", 0),
        ("max_retry_attempts", 25),
    ])
    def test_rejects_out_of_range(self, field, value):
        with pytest.raises(PydanticValidationError):
            SchedulingConfig(**{field: value})

    def test_accepts_valid_values(self):
        config = SchedulingConfig(daily_analysis_time="23:59:59", timezone="America/New_York",
                                  retry_interval_minutes=1440, max_retry_attempts=24)
        assert config.timezone == "America/New_York"

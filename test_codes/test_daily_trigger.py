from datetime import datetime, time, timezone
from zoneinfo import ZoneInfo

import pytest

from orchestrator.orchestrator import AnalysisOrchestrator
from orchestrator.threads.daily_trigger import DailyTrigger, next_fire_time, parse_time_of_day

NEW_YORK = ZoneInfo("America/New_York")


class TestNextFireTime:

    def test_later_today(self):
        now = datetime(2024, 1, 15, 0, 30, tzinfo=timezone.utc)
        assert next_fire_time(now, time(1, 0), timezone.utc) == datetime(2024, 1, 15, 1, 0, tzinfo=timezone.utc)

    def test_already_passed_rolls_to_tomorrow(self):
        now = datetime(2024, 1, 15, 1, 0, 1, tzinfo=timezone.utc)
        assert next_fire_time(now, time(1, 0), timezone.utc) == datetime(2024, 1, 16, 1, 0, tzinfo=timezone.utc)

    def test_exact_fire_time_is_not_repeated(self):
        now = datetime(2024, 1, 15, 1, 0, tzinfo=timezone.utc)
        assert next_fire_time(now, time(1, 0), timezone.utc).day == 16

    def test_interpreted_in_configured_timezone(self):
        # 05:30 UTC is 00:30 in New York (EST, UTC-5)
        now = datetime(2024, 1, 15, 5, 30, tzinfo=timezone.utc)
        fire_at = next_fire_time(now, time(1, 0), NEW_YORK)

        assert fire_at.astimezone(timezone.utc) == datetime(2024, 1, 15, 6, 0, tzinfo=timezone.utc)

    def test_parse_time_of_day(self):
        assert parse_time_of_day("02:15:30") == time(2, 15, 30)


class TestDailyTrigger:

    @pytest.mark.asyncio
    async def test_seconds_until_next_fire(self, settings, store, mock_logger, error_handler):
        client = object()
        now = datetime(2024, 1, 15, 0, 0, tzinfo=timezone.utc)
        orchestrator = AnalysisOrchestrator(settings, store, client, mock_logger, error_handler, clock=lambda: now)

        trigger = DailyTrigger(orchestrator)

        assert trigger.seconds_until_next_fire() == 3600.0

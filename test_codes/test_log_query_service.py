from datetime import date, datetime, timezone

import pytest

from services.log_collector import LogCollector
from services.log_query_service import LogQueryService

NOW = datetime(2024, 1, 20, 12, 0, tzinfo=timezone.utc)


def analyzed(make_log, log_id, severity, priority, timestamp=None):
    return make_log(log_id, timestamp=timestamp, severity=severity, priority=priority,
                    aiReasoning="reason", potentialFix="fix", isAnalyzed=True,
                    analyzedAt=datetime(2024, 1, 16, 1, 0, tzinfo=timezone.utc))


class TestLogQueryService:

    @pytest.fixture
    def query_service(self, store, settings, mock_logger, error_handler):
        return LogQueryService(store, settings.file_storage, mock_logger, error_handler, clock=lambda: NOW)

    @pytest.fixture
    def collector(self, store, settings, mock_logger, error_handler):
        return LogCollector(store, settings.performance, mock_logger, error_handler)

    @pytest.mark.asyncio
    async def test_statistics_for_known_day(self, query_service, collector, make_log):
        await collector.collect_logs_async([
            analyzed(make_log, "1", "Critical", "High"),
            analyzed(make_log, "2", "Critical", "High"),
            analyzed(make_log, "3", "Medium", "Low"),
        ])

        stats = await query_service.get_log_statistics(date(2024, 1, 15), date(2024, 1, 15))

        assert stats.total_logs == 3
        assert stats.critical_count == 2
        assert stats.medium_count == 1
        assert stats.high_count == 0
        assert stats.high_priority_count == 2
        assert stats.low_priority_count == 1
        assert stats.analyzed_count == 3
        assert stats.unanalyzed_count == 0
        assert stats.severity_breakdown == {"Critical": 2, "Medium": 1}
        assert stats.priority_breakdown == {"High": 2, "Low": 1}

    @pytest.mark.asyncio
    async def test_statistics_recency_buckets_and_camel_case(self, query_service, collector, make_log):
        await collector.collect_logs_async([
            make_log("today", timestamp=datetime(2024, 1, 20, 8, tzinfo=timezone.utc)),
            make_log("this-week", timestamp=datetime(2024, 1, 15, 8, tzinfo=timezone.utc)),
            make_log("this-month", timestamp=datetime(2024, 1, 1, 8, tzinfo=timezone.utc)),
        ])

        stats = await query_service.get_log_statistics()

        assert stats.total_logs == 3
        assert stats.unanalyzed_count == 3
        assert stats.today_count == 1
        assert stats.week_count == 2
        assert stats.month_count == 3
        dumped = stats.model_dump(by_alias=True, mode="json")
        assert dumped["totalLogs"] == 3
        assert dumped["todayCount"] == 1

    @pytest.mark.asyncio
    async def test_statistics_on_corrupted_partition_are_zero(self, query_service, store):
        store.partition_path(date(2024, 1, 15)).write_text("{", encoding="utf-8")

        stats = await query_service.get_log_statistics(date(2024, 1, 15), date(2024, 1, 15))

        assert stats.total_logs == 0

    @pytest.mark.asyncio
    async def test_filtered_logs_on_undecodable_partition_are_empty(self, query_service, store):
        store.partition_path(date(2024, 1, 15)).write_bytes(b"\xff\xfe\x00[")

        logs = await query_service.get_filtered_logs(datetime(2024, 1, 15, tzinfo=timezone.utc),
                                                     datetime(2024, 1, 15, 23, 59, tzinfo=timezone.utc))

        assert logs == []

    @pytest.mark.asyncio
    async def test_filtered_logs_case_insensitive_newest_first(self, query_service, collector, make_log):
        await collector.collect_logs_async([
            analyzed(make_log, "older", "Critical", "High", datetime(2024, 1, 15, 8, tzinfo=timezone.utc)),
            analyzed(make_log, "newer", "Critical", "Low", datetime(2024, 1, 16, 8, tzinfo=timezone.utc)),
            analyzed(make_log, "other", "Low", "Low", datetime(2024, 1, 16, 9, tzinfo=timezone.utc)),
        ])

        critical = await query_service.get_filtered_logs(severity="critical")
        assert [log.id for log in critical] == ["newer", "older"]

        low_priority_critical = await query_service.get_filtered_logs(severity="CRITICAL", priority="low")
        assert [log.id for log in low_priority_critical] == ["newer"]

    @pytest.mark.asyncio
    async def test_default_range_is_last_thirty_days(self, query_service, collector, make_log):
        await collector.collect_logs_async([
            make_log("recent", timestamp=datetime(2024, 1, 15, 8, tzinfo=timezone.utc)),
            make_log("old", timestamp=datetime(2023, 11, 1, 8, tzinfo=timezone.utc)),
        ])

        assert [log.id for log in await query_service.get_filtered_logs()] == ["recent"]

    @pytest.mark.asyncio
    async def test_update_resolution_status(self, query_service, store, collector, make_log):
        await collector.collect_logs_async([make_log("a"), make_log("b")])
        resolved_at = datetime(2024, 1, 18, 9, 0, tzinfo=timezone.utc)

        assert await query_service.update_log_resolution_status("b", "Resolved", resolved_at, "alice") is True

        stored = {log.id: log for log in await store.load(date(2024, 1, 15))}
        assert stored["b"].resolution_status == "Resolved"
        assert stored["b"].resolved_at == resolved_at
        assert stored["b"].resolved_by == "alice"
        assert stored["a"].resolution_status == "Pending"

    @pytest.mark.asyncio
    async def test_update_resolution_unknown_or_invalid(self, query_service, collector, make_log):
        await collector.collect_logs_async([make_log("a")])

        assert await query_service.update_log_resolution_status("missing", "Resolved") is False
        assert await query_service.update_log_resolution_status("", "Resolved") is False
        assert await query_service.update_log_resolution_status("a", "  ") is False

    @pytest.mark.asyncio
    async def test_update_resolution_outside_window(self, store, settings, mock_logger, error_handler,
                                                    collector, make_log):
        config = settings.file_storage.model_copy(update={"find_by_id_window_days": 2})
        service = LogQueryService(store, config, mock_logger, error_handler, clock=lambda: NOW)
        await collector.collect_logs_async([make_log("a")])

        assert await service.update_log_resolution_status("a", "Resolved") is False

    @pytest.mark.asyncio
    async def test_logs_for_report_default_to_report_date(self, query_service, collector, make_log):
        await collector.collect_logs_async([
            make_log("on-day", timestamp=datetime(2024, 1, 15, 8, tzinfo=timezone.utc)),
            make_log("next-day", timestamp=datetime(2024, 1, 16, 8, tzinfo=timezone.utc)),
        ])

        logs = await query_service.get_logs_for_report(date(2024, 1, 15))

        assert [log.id for log in logs] == ["on-day"]

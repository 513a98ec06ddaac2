from datetime import date, datetime, timezone

import pytest

from core.config.configuration_manager import PerformanceConfig
from services.log_collector import LogCollector


class TestLogCollector:

    @pytest.fixture
    def collector(self, store, settings, mock_logger, error_handler):
        return LogCollector(store, settings.performance, mock_logger, error_handler)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("batch", [None, []])
    async def test_empty_input_is_rejected(self, collector, store, batch):
        assert await collector.collect_logs_async(batch) is False
        assert await store.list_partition_days() == []

    @pytest.mark.asyncio
    async def test_groups_records_by_event_date(self, collector, store, make_log):
        logs = [
            make_log("a", timestamp=datetime(2024, 1, 15, 8, tzinfo=timezone.utc)),
            make_log("b", timestamp=datetime(2024, 1, 16, 9, tzinfo=timezone.utc)),
            make_log("c", timestamp=datetime(2024, 1, 15, 23, 59, tzinfo=timezone.utc)),
        ]

        assert await collector.collect_logs_async(logs) is True

        assert sorted(r.id for r in await store.load(date(2024, 1, 15))) == ["a", "c"]
        assert [r.id for r in await store.load(date(2024, 1, 16))] == ["b"]

    @pytest.mark.asyncio
    async def test_appends_to_existing_partition(self, collector, store, make_log):
        await store.save(date(2024, 1, 15), [make_log("existing")])

        assert await collector.collect_logs_async([make_log("new")]) is True

        assert [r.id for r in await store.load(date(2024, 1, 15))] == ["existing", "new"]

    @pytest.mark.asyncio
    async def test_assigns_ids_and_treats_naive_timestamps_as_utc(self, collector, store):
        raw = [{"timestamp": "2024-01-15T10:00:00", "message": "boom", "source": "api"}]

        assert await collector.collect_logs_async(raw) is True

        stored = await store.load(date(2024, 1, 15))
        assert len(stored) == 1
        assert stored[0].id
        assert stored[0].timestamp.tzinfo is not None
        assert stored[0].is_analyzed is False

    @pytest.mark.asyncio
    async def test_duplicate_records_are_both_stored(self, collector, store, make_log):
        record = make_log("dup")

        assert await collector.collect_logs_async([record]) is True
        assert await collector.collect_logs_async([record]) is True

        stored = await store.load(date(2024, 1, 15))
        assert len(stored) == 2
        assert stored[0] == stored[1]

    @pytest.mark.asyncio
    async def test_record_without_timestamp_rejects_whole_batch(self, collector, store, make_log):
        batch = [make_log("ok").to_storage_dict(), {"id": "bad", "message": "no time"}]

        assert await collector.collect_logs_async(batch) is False
        assert await store.list_partition_days() == []

    @pytest.mark.asyncio
    async def test_batch_over_limit_is_rejected(self, store, mock_logger, error_handler, make_log):
        collector = LogCollector(store, PerformanceConfig(max_logs_per_request=2), mock_logger, error_handler)

        assert await collector.collect_logs_async([make_log(), make_log(), make_log()]) is False
        assert await store.list_partition_days() == []

    @pytest.mark.asyncio
    async def test_logs_count_per_date(self, collector, mock_logger, make_log):
        await collector.collect_logs_async([make_log("a"), make_log("b")])

        mock_logger.log_collection.assert_called_once_with(date(2024, 1, 15), 2)

    @pytest.mark.asyncio
    async def test_corrupted_partition_reports_failure(self, collector, store, make_log):
        store.partition_path(date(2024, 1, 15)).write_text("garbage", encoding="utf-8")

        assert await collector.collect_logs_async([make_log("a")]) is False
        assert store.partition_path(date(2024, 1, 15)).read_text(encoding="utf-8") == "garbage"

    @pytest.mark.asyncio
    async def test_undecodable_partition_reports_failure(self, collector, store, make_log):
        path = store.partition_path(date(2024, 1, 15))
        path.write_bytes(b'[{"id": "\xff"}]')

        assert await collector.collect_logs_async([make_log("a")]) is False
        assert path.read_bytes() == b'[{"id": "\xff"}]'

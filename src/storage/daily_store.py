# src/storage/daily_store.py
"""
File-per-day persistence of ErrorLog records.

Each calendar day (UTC) owns one JSON file, logs-YYYY-MM-DD.json, holding a
pretty-printed array of camelCase records. Writes go to a sibling temporary
file which is fsynced and then swapped over the partition with os.replace, so
an interrupted write leaves the previous contents intact.

Every read-modify-write must go through partition(day), which holds that
day's lock for the whole load-modify-save sequence. Locks are kept per day,
never across days, so different partitions proceed in parallel.

Usage:
    async with store.partition(day) as part:
        part.append(new_logs)
        # saved on clean exit because the partition is dirty
"""

import asyncio
import json
import os
import re
import time
from contextlib import asynccontextmanager
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, List, Optional, AsyncIterator, Tuple
from uuid import uuid4

import aiofiles
import aiofiles.os
from pydantic import ValidationError as PydanticValidationError

from core.config.configuration_manager import FileStorageConfig
from core.errors import ErrorHandler, ErrorType, StorageError
from core.logging.system_logger import SystemLogger
from core.models.models import ErrorLog, ensure_utc

PARTITION_FILE_PATTERN = re.compile(r"^logs-(\d{4}-\d{2}-\d{2})\.json$")


def partition_file_name(day: date) -> str:
    return f"logs-{day.isoformat()}.json"


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 3)


class Partition:
    """The in-memory view of one day's records inside its critical section."""

    def __init__(self, day: date, records: List[ErrorLog]):
        self.day = day
        self.records = records
        self.dirty = False

    def append(self, logs: List[ErrorLog]):
        self.records.extend(logs)
        self.dirty = True

    def get(self, log_id: str) -> Optional[ErrorLog]:
        for record in self.records:
            if record.id == log_id:
                return record
        return None

    def index_by_id(self) -> Dict[str, ErrorLog]:
        # Duplicate ids are possible with at-least-once ingestion; the first wins
        index: Dict[str, ErrorLog] = {}
        for record in self.records:
            index.setdefault(record.id, record)
        return index

    def mark_dirty(self):
        self.dirty = True


class DailyStore:
    """Daily partition store with a per-day lock arena."""

    def __init__(self, config: FileStorageConfig, logger: SystemLogger, error_handler: ErrorHandler):
        self.config = config
        self.logger = logger
        self.error_handler = error_handler
        self.root = Path(config.logs_path)
        # day -> (lock, holders and waiters); an entry is dropped once unused
        self._locks: Dict[str, Tuple[asyncio.Lock, int]] = {}

        if config.create_directories_if_not_exist:
            self.root.mkdir(parents=True, exist_ok=True)

    def partition_path(self, day: date) -> Path:
        return self.root / partition_file_name(day)

    @asynccontextmanager
    async def _exclusive(self, day: date) -> AsyncIterator[None]:
        """Holds the lock owning one day's partition."""
        key = day.isoformat()
        lock, users = self._locks.get(key, (None, 0))
        if lock is None:
            lock = asyncio.Lock()
        self._locks[key] = (lock, users + 1)
        try:
            async with lock:
                yield
        finally:
            lock, users = self._locks[key]
            if users <= 1:
                del self._locks[key]
            else:
                self._locks[key] = (lock, users - 1)

    # ------------------------------------------------------------------
    # Read primitives
    # ------------------------------------------------------------------

    async def load(self, day: date) -> List[ErrorLog]:
        """
        Returns every record of the partition, or [] when the file is absent
        or empty. Raises StorageError when the file cannot be read or parsed.
        """
        path = self.partition_path(day)
        if not await aiofiles.os.path.exists(path):
            return []

        started = time.perf_counter()
        try:
            async with aiofiles.open(path, 'rb') as f:
                raw = await f.read()
        except OSError as e:
            raise StorageError(
                f"Failed to read partition {day.isoformat()}: {e}",
                ErrorType.STORAGE_READ_FAILED,
                partition=day.isoformat(),
                file_path=str(path),
                cause=e
            ) from e

        try:
            content = raw.decode('utf-8')
            if not content.strip():
                return []
            raw_records = json.loads(content)
            if not isinstance(raw_records, list):
                raise ValueError("partition root is not a JSON array")
            records = [ErrorLog.model_validate(item) for item in raw_records]
        except (ValueError, PydanticValidationError) as e:
            # UnicodeDecodeError and JSONDecodeError are both ValueErrors
            raise StorageError(
                f"Partition {day.isoformat()} is corrupted: {e}",
                ErrorType.STORAGE_PARTITION_CORRUPTED,
                partition=day.isoformat(),
                file_path=str(path),
                cause=e
            ) from e

        self.logger.log_partition_operation("loaded", day, len(records),
                                            duration_ms=_elapsed_ms(started), size_bytes=len(raw))
        return records

    async def load_range(self, start, end) -> List[ErrorLog]:
        """
        Unions load() over each day in [start, end]. With datetime bounds the
        records are additionally filtered to that time interval. Order is not
        guaranteed.
        """
        if isinstance(start, datetime):
            start_day, start_at = ensure_utc(start).date(), ensure_utc(start)
        else:
            start_day, start_at = start, None
        if isinstance(end, datetime):
            end_day, end_at = ensure_utc(end).date(), ensure_utc(end)
        else:
            end_day, end_at = end, None

        records: List[ErrorLog] = []
        day = start_day
        while day <= end_day:
            records.extend(await self.load(day))
            day += timedelta(days=1)

        if start_at is not None:
            records = [r for r in records if r.timestamp >= start_at]
        if end_at is not None:
            records = [r for r in records if r.timestamp <= end_at]
        return records

    async def find_by_id(self, log_id: str, window_days: Optional[int] = None,
                         today: Optional[date] = None) -> Optional[ErrorLog]:
        """
        Scans today's partition and the window_days before it, newest first.
        Records older than the window are not found.
        """
        if window_days is None:
            window_days = self.config.find_by_id_window_days
        today = today or datetime.now(timezone.utc).date()

        for offset in range(window_days + 1):
            day = today - timedelta(days=offset)
            for record in await self.load(day):
                if record.id == log_id:
                    return record
        return None

    async def list_partition_days(self) -> List[date]:
        """Days that currently have a partition file, oldest first."""
        if not await aiofiles.os.path.isdir(self.root):
            return []
        days = []
        for name in await aiofiles.os.listdir(self.root):
            match = PARTITION_FILE_PATTERN.match(name)
            if match:
                days.append(date.fromisoformat(match.group(1)))
        return sorted(days)

    # ------------------------------------------------------------------
    # Write primitives
    # ------------------------------------------------------------------

    async def save(self, day: date, records: List[ErrorLog]):
        """Atomically replaces the partition's full contents."""
        async with self._exclusive(day):
            await self._write_partition(day, records)

    @asynccontextmanager
    async def partition(self, day: date) -> AsyncIterator[Partition]:
        """
        Load-modify-save critical section for one day. The partition is saved
        on clean exit when dirty; an exception discards the changes.
        """
        async with self._exclusive(day):
            part = Partition(day, await self.load(day))
            yield part
            if part.dirty:
                await self._write_partition(day, part.records)

    async def _write_partition(self, day: date, records: List[ErrorLog]):
        path = self.partition_path(day)
        temp_path = path.with_name(f".{path.name}.{uuid4().hex}.tmp")
        data = json.dumps([record.to_storage_dict() for record in records], indent=2).encode('utf-8')
        started = time.perf_counter()
        replaced = False

        try:
            if self.config.create_directories_if_not_exist:
                await aiofiles.os.makedirs(self.root, exist_ok=True)

            async with aiofiles.open(temp_path, 'wb') as f:
                await f.write(data)
                await f.flush()
                await asyncio.to_thread(os.fsync, f.fileno())

            await aiofiles.os.replace(temp_path, path)
            replaced = True
        except OSError as e:
            raise StorageError(
                f"Failed to write partition {day.isoformat()}: {e}",
                ErrorType.STORAGE_WRITE_FAILED,
                partition=day.isoformat(),
                file_path=str(path),
                cause=e
            ) from e
        finally:
            # Also runs on cancellation, so no temp file outlives the write
            if not replaced:
                temp_path.unlink(missing_ok=True)

        self.logger.log_partition_operation("saved", day, len(records),
                                            duration_ms=_elapsed_ms(started), size_bytes=len(data))

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    async def check_health(self) -> bool:
        """Write, read back and delete a probe file in the partition root."""
        probe_path = self.root / f".health_{uuid4().hex}.tmp"
        probe = datetime.now(timezone.utc).isoformat()
        try:
            await aiofiles.os.makedirs(self.root, exist_ok=True)
            async with aiofiles.open(probe_path, 'w', encoding='utf-8') as f:
                await f.write(probe)
            async with aiofiles.open(probe_path, 'r', encoding='utf-8') as f:
                healthy = (await f.read()) == probe
            await aiofiles.os.remove(probe_path)
        except OSError as e:
            self.error_handler.handle_error(e, "daily_store_health_check", file_path=str(probe_path))
            return False
        return healthy

# src/analysis/historical_context.py
"""
Builds the historical context sent alongside every analysis request: the
most frequent (message, priority) patterns among recently analyzed records
and the most frequent normalized error signatures.
"""

import re
from collections import Counter
from datetime import date, datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple

from core.models.models import AnalysisContext, ErrorLog, ErrorPattern, Priority
from storage.daily_store import DailyStore

MAX_ERROR_PATTERNS = 20
MAX_FREQUENT_ERRORS = 10

_GUID_PATTERN = re.compile(r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}\b")
_WINDOWS_PATH_PATTERN = re.compile(r"[A-Za-z]:\\[^\s:\"']+")
_POSIX_PATH_PATTERN = re.compile(r"(?<![\w/])/(?:[\w.\-]+/)+[\w.\-]+")
_NUMBER_PATTERN = re.compile(r"\b\d+\b")


def error_signature(message: str) -> str:
    """Collapses the volatile parts of a message so similar errors group together."""
    signature = _GUID_PATTERN.sub("[GUID]", message or "")
    signature = _WINDOWS_PATH_PATTERN.sub("[FILEPATH]", signature)
    signature = _POSIX_PATH_PATTERN.sub("[FILEPATH]", signature)
    signature = _NUMBER_PATTERN.sub("[NUMBER]", signature)
    return signature.strip()


def summarize_patterns(records: List[ErrorLog], limit: int = MAX_ERROR_PATTERNS) -> List[ErrorPattern]:
    groups: Dict[Tuple[str, Optional[Priority]], List[ErrorLog]] = {}
    for record in records:
        if record.is_analyzed:
            groups.setdefault((record.message, record.priority), []).append(record)

    patterns = [
        ErrorPattern(
            message=message,
            priority=priority,
            frequency=len(members),
            last_occurrence=max(member.timestamp for member in members),
        )
        for (message, priority), members in groups.items()
    ]
    patterns.sort(key=lambda p: (p.frequency, p.last_occurrence), reverse=True)
    return patterns[:limit]


def frequent_signatures(records: List[ErrorLog], limit: int = MAX_FREQUENT_ERRORS) -> List[str]:
    counts = Counter(error_signature(record.message) for record in records if record.message)
    return [signature for signature, _ in counts.most_common(limit)]


async def build_analysis_context(store: DailyStore, days: int, target_day: date) -> AnalysisContext:
    """Context from the `days` partitions preceding target_day."""
    if days <= 0:
        return AnalysisContext()

    records = await store.load_range(target_day - timedelta(days=days), target_day - timedelta(days=1))
    return AnalysisContext(
        frequent_errors=frequent_signatures(records),
        error_patterns=summarize_patterns(records),
        analysis_date=datetime.now(timezone.utc),
    )

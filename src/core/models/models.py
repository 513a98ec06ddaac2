# src/core/models/models.py
"""
Defines the core data models of the analysis pipeline.

Pydantic models are the persisted and wire contracts (camelCase on disk and
on the network, snake_case in Python). Plain dataclasses carry in-process
results that are never serialized by the store.
"""
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator


# =============================================================================
# Enums
# =============================================================================

class Severity(str, Enum):
    """Severity assigned by the analysis service."""
    CRITICAL = "Critical"
    HIGH = "High"
    MEDIUM = "Medium"
    LOW = "Low"


class Priority(str, Enum):
    """Priority assigned by the analysis service."""
    HIGH = "High"
    MEDIUM = "Medium"
    LOW = "Low"


DEFAULT_RESOLUTION_STATUS = "Pending"


def ensure_utc(value: datetime) -> datetime:
    """Naive datetimes are taken as UTC, aware ones are converted to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# =============================================================================
# Persisted record
# =============================================================================

class ErrorLog(BaseModel):
    """One application error event. The timestamp's UTC date picks its partition."""
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(default_factory=lambda: str(uuid4()))
    timestamp: datetime
    source: str = ""
    message: str = ""
    stack_trace: str = Field("", alias="stackTrace")

    # Analysis fields, empty until the record is analyzed
    severity: Optional[Severity] = None
    priority: Optional[Priority] = None
    ai_reasoning: str = Field("", alias="aiReasoning")
    potential_fix: str = Field("", alias="potentialFix")
    analyzed_at: Optional[datetime] = Field(None, alias="analyzedAt")
    is_analyzed: bool = Field(False, alias="isAnalyzed")

    # Resolution fields, independent of analysis
    resolution_status: str = Field(DEFAULT_RESOLUTION_STATUS, alias="resolutionStatus")
    resolved_at: Optional[datetime] = Field(None, alias="resolvedAt")
    resolved_by: Optional[str] = Field(None, alias="resolvedBy")

    @field_validator("id", mode="before")
    @classmethod
    def _assign_missing_id(cls, value):
        if value is None or (isinstance(value, str) and not value.strip()):
            return str(uuid4())
        return value

    @field_validator("source", "message", "stack_trace", "ai_reasoning", "potential_fix", mode="before")
    @classmethod
    def _none_to_empty(cls, value):
        return "" if value is None else value

    @field_validator("severity", "priority", mode="before")
    @classmethod
    def _blank_to_none(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("resolution_status", mode="before")
    @classmethod
    def _default_resolution(cls, value):
        if value is None or (isinstance(value, str) and not value.strip()):
            return DEFAULT_RESOLUTION_STATUS
        return value

    @field_validator("timestamp", "analyzed_at", "resolved_at")
    @classmethod
    def _to_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value) if value is not None else None

    @property
    def day(self) -> date:
        return self.timestamp.date()

    def apply_analysis(self, result: "AnalysisResult", analyzed_at: Optional[datetime] = None):
        """Sets every analysis field at once so is_analyzed never disagrees with them."""
        self.severity = result.severity
        self.priority = result.priority
        self.ai_reasoning = result.reasoning
        self.potential_fix = result.potential_fix
        self.analyzed_at = ensure_utc(analyzed_at or datetime.now(timezone.utc))
        self.is_analyzed = True

    def to_storage_dict(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


# =============================================================================
# Analysis service contract
# =============================================================================

class AnalysisResult(BaseModel):
    """One entry of the service's analyzedLogs array, strictly validated."""
    model_config = ConfigDict(populate_by_name=True)

    log_id: str = Field(..., alias="logId")
    severity: Severity
    priority: Priority
    reasoning: str
    potential_fix: str = Field(..., alias="potentialFix")
    confidence_score: Optional[float] = Field(None, alias="confidenceScore", ge=0.0, le=1.0)

    @field_validator("reasoning")
    @classmethod
    def _reasoning_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("reasoning must not be blank")
        return value


class AnalysisResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    analyzed_logs: List[Dict[str, Any]] = Field(..., alias="analyzedLogs")
    overall_assessment: Optional[str] = Field(None, alias="overallAssessment")
    recommendations: List[str] = Field(default_factory=list)
    analysis_timestamp: Optional[datetime] = Field(None, alias="analysisTimestamp")


class ErrorPattern(BaseModel):
    """A recurring (message, priority) pair from recently analyzed records."""
    model_config = ConfigDict(populate_by_name=True)

    message: str
    priority: Optional[Priority] = None
    frequency: int
    last_occurrence: datetime = Field(..., alias="lastOccurrence")


class AnalysisContext(BaseModel):
    """Historical context sent with every request of a run."""
    model_config = ConfigDict(populate_by_name=True)

    frequent_errors: List[str] = Field(default_factory=list, alias="frequentErrors")
    error_patterns: List[ErrorPattern] = Field(default_factory=list, alias="errorPatterns")
    analysis_date: datetime = Field(default_factory=lambda: datetime.now(timezone.utc), alias="analysisDate")


@dataclass
class AnalysisOutcome:
    """Result of analyzing one record: either a result or a failure reason."""
    log_id: str
    result: Optional[AnalysisResult] = None
    attempts: int = 0
    reason: Optional[str] = None
    retryable: bool = True
    duration_ms: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.result is not None


# =============================================================================
# Query boundary
# =============================================================================

class DateRange(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    from_date: datetime = Field(..., alias="from")
    to_date: datetime = Field(..., alias="to")


class LogStatistics(BaseModel):
    """Aggregate over a date range. Recomputed on demand, never persisted."""
    model_config = ConfigDict(populate_by_name=True)

    total_logs: int = Field(0, alias="totalLogs")
    analyzed_count: int = Field(0, alias="analyzedCount")
    unanalyzed_count: int = Field(0, alias="unanalyzedCount")

    critical_count: int = Field(0, alias="criticalCount")
    high_count: int = Field(0, alias="highCount")
    medium_count: int = Field(0, alias="mediumCount")
    low_count: int = Field(0, alias="lowCount")

    high_priority_count: int = Field(0, alias="highPriorityCount")
    medium_priority_count: int = Field(0, alias="mediumPriorityCount")
    low_priority_count: int = Field(0, alias="lowPriorityCount")

    today_count: int = Field(0, alias="todayCount")
    week_count: int = Field(0, alias="weekCount")
    month_count: int = Field(0, alias="monthCount")

    severity_breakdown: Dict[str, int] = Field(default_factory=dict, alias="severityBreakdown")
    priority_breakdown: Dict[str, int] = Field(default_factory=dict, alias="priorityBreakdown")

    date_range: Optional[DateRange] = Field(None, alias="dateRange")
    generated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc), alias="generatedAt")


# =============================================================================
# Orchestration
# =============================================================================

class RunTrigger(str, Enum):
    SCHEDULED = "scheduled"
    MANUAL = "manual"
    RETRY = "retry"


@dataclass
class RunSummary:
    """What one orchestrator run did. Emitted at the end of every run."""
    day: date
    trigger: RunTrigger
    status: str = "PENDING"
    run_id: str = field(default_factory=lambda: f"run_{uuid4().hex[:12]}")
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    failed_ids: List[str] = field(default_factory=list)
    succeeded_ids: List[str] = field(default_factory=list)
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: Optional[datetime] = None
    error: Optional[str] = None
    duration_ms: float = 0.0
    analysis_duration_ms: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "day": self.day.isoformat(),
            "trigger": self.trigger.value,
            "status": self.status,
            "attempted": self.attempted,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "failed_ids": list(self.failed_ids),
            "succeeded_ids": list(self.succeeded_ids),
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "error": self.error,
            "duration_ms": self.duration_ms,
            "analysis_duration_ms": self.analysis_duration_ms,
        }

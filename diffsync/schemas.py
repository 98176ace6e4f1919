from __future__ import annotations
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional
from pydantic import BaseModel, ConfigDict, Field, StrictBool, StrictStr
from pydantic.alias_generators import to_camel

ChangeType = Literal["new", "modified", "deleted"]
DetectionMethod = Literal["timestamp_only", "timestamp_with_hash"]
LogLevel = Literal["debug", "info", "warn", "error"]
AnalysisState = Literal["queued", "processing", "completed", "failed"]


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class FrozenCamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


# ── Detection ─────────────────────────────────────────────────────────────────

class ChangeMetadata(FrozenCamelModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, frozen=True, extra="allow",
    )
    source_entity: str
    destination_entity: str
    confidence: float = Field(ge=0.0, le=1.0)


class ChangeRecord(FrozenCamelModel):
    record_id: str
    change_type: ChangeType
    source_timestamp: datetime
    destination_timestamp: Optional[datetime] = None
    content_hash: Optional[str] = None
    previous_content_hash: Optional[str] = None
    metadata: ChangeMetadata


class ChangeSummary(CamelModel):
    new_records: int = 0
    modified_records: int = 0
    deleted_records: int = 0
    total_changes: int = 0
    change_percentage: float = 0.0


class PerformanceStats(CamelModel):
    analysis_duration_ms: int = 0
    records_per_second: int = 0
    queries_executed: int = 0


class DetectionResult(CamelModel):
    analysis_id: str
    entity_type: str
    analysis_timestamp: datetime
    baseline_timestamp: datetime
    detection_method: DetectionMethod
    total_records_analyzed: int
    changes_detected: List[ChangeRecord]
    summary: ChangeSummary
    performance: PerformanceStats
    recommendations: List[str] = []
    max_source_timestamp: Optional[datetime] = Field(default=None, exclude=True)


class EntityFailure(CamelModel):
    entity_type: str
    code: str
    message: str
    retryable: bool


# ── POST /api/migration/differential ─────────────────────────────────────────

class DifferentialRequest(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    entities: List[StrictStr] = Field(min_length=1)
    since_timestamp: StrictStr
    include_deletes: StrictBool = True
    enable_content_hashing: StrictBool = True
    change_threshold: float = Field(default=0.0, ge=0, le=100)
    batch_size: Optional[int] = Field(default=None, ge=1, le=5000)
    async_mode: StrictBool = False


class EntityResultOut(CamelModel):
    entity_type: str
    detection_method: DetectionMethod
    total_records_analyzed: int
    summary: ChangeSummary
    changes: List[ChangeRecord]
    performance: PerformanceStats
    recommendations: List[str] = []


class FilteredEntity(CamelModel):
    entity_type: str
    change_percentage: float
    reason: str


class OverallSummary(CamelModel):
    total_changes: int
    estimated_migration_time: str
    average_change_percentage: float
    filtered_entities: List[FilteredEntity] = []


class ProcessingMetrics(CamelModel):
    active_analyses: int
    queued_requests: int
    average_wait_ms: float


class DifferentialResponse(CamelModel):
    analysis_id: str
    timestamp: datetime
    baseline_timestamp: datetime
    entity_results: List[EntityResultOut]
    overall_summary: OverallSummary
    failed_entities: List[EntityFailure] = []
    recommendations: List[str]
    processing_metrics: Optional[ProcessingMetrics] = None


class AcceptedResponse(CamelModel):
    analysis_id: str
    status: AnalysisState = "processing"
    estimated_completion_time: str
    check_status_url: str
    message: str = "Differential analysis started. Check the status endpoint for progress."


class AnalysisStatus(CamelModel):
    analysis_id: str
    status: AnalysisState
    entities: List[str]
    submitted_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    estimated_completion_time: str
    result: Optional[DifferentialResponse] = None
    error: Optional[Dict[str, Any]] = None


# ── Logs ──────────────────────────────────────────────────────────────────────

class LogEntry(FrozenCamelModel):
    log_id: str
    timestamp: datetime
    level: LogLevel = "info"
    session_id: str
    entity_type: Optional[str] = None
    batch_number: Optional[int] = None
    message: str
    details: Optional[Any] = None
    performance: Optional[Dict[str, Any]] = None
    context: Dict[str, Any] = {}


class LogFilters(CamelModel):
    level: Optional[LogLevel] = None
    entity_type: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None


class LogPagination(CamelModel):
    limit: int
    offset: int
    has_more: bool
    total_pages: int
    current_page: int


class LogPage(CamelModel):
    session_id: str
    total_logs: int
    filtered_logs: int
    logs: List[LogEntry]
    pagination: LogPagination
    filters: LogFilters


class LogTimeRange(CamelModel):
    earliest: datetime
    latest: datetime


class LogStatsSummary(CamelModel):
    error_rate: float
    warning_rate: float
    most_active_entity: str
    avg_logs_per_minute: float


class LogStats(CamelModel):
    session_id: str
    total_entries: int
    log_levels: Dict[str, int]
    entities: Dict[str, int]
    services: Dict[str, int]
    time_range: Optional[LogTimeRange] = None
    summary: LogStatsSummary


SearchType = Literal["message", "recordId", "context"]


class LogSearchResults(CamelModel):
    logs: List[LogEntry]
    total_matches: int
    returned: int
    has_more: bool


class LogSearchSummary(CamelModel):
    search_time_ms: int
    match_rate: float
    total_scanned: int


class LogSearchResponse(CamelModel):
    session_id: str
    search_query: str
    search_type: SearchType
    case_sensitive: bool
    results: LogSearchResults
    summary: LogSearchSummary


# ── Apply step ────────────────────────────────────────────────────────────────

class ResolutionDecision(FrozenCamelModel):
    record_id: str
    entity_type: str
    change_type: ChangeType
    action: Literal["upsert", "delete", "skip"]
    before_hash: Optional[str] = None
    after_hash: Optional[str] = None
    reason: str


class SyncRequest(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    session_id: StrictStr
    entities: List[StrictStr] = Field(min_length=1)
    since_timestamp: Optional[StrictStr] = None
    include_deletes: StrictBool = False
    enable_content_hashing: StrictBool = True
    batch_size: Optional[int] = Field(default=None, ge=1, le=5000)


class SyncRunSummary(CamelModel):
    session_id: str
    entity_type: str
    baseline_timestamp: datetime
    next_baseline_timestamp: Optional[datetime] = None
    changes_detected: int = 0
    changes_skipped: int = 0
    batches_committed: int = 0
    records_applied: int = 0
    detection_only: bool = False


# ── Admin ─────────────────────────────────────────────────────────────────────

class HealthResponse(BaseModel):
    status: str
    source_database: str
    destination_database: str
    redis: str
    scheduler: str
    version: str


class MetricsResponse(CamelModel):
    active_analyses: int
    queued_requests: int
    average_wait_ms: float
    completed_analyses: int
    active_sync_runs: List[str]

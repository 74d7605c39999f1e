from datetime import date, time, datetime
from typing import Optional, List, Dict, Any, Tuple

from pydantic import BaseModel, Field, model_validator


class SyncFilters(BaseModel):
    """Фильтры выборки ERP: нижняя граница даты изменения и необязательное время суток."""
    modified_after: Optional[date] = None
    modified_after_time: Optional[time] = None

    @model_validator(mode="after")
    def check_time_requires_date(self):
        if self.modified_after_time is not None and self.modified_after is None:
            raise ValueError("modified_after_time задан без modified_after")
        return self

    def as_params(self) -> Dict[str, str]:
        """Параметры запроса в формате ERP (fecha=Y-m-d, hora=H:i:s)."""
        params: Dict[str, str] = {}
        if self.modified_after is not None:
            params["fecha"] = self.modified_after.strftime("%Y-%m-%d")
            if self.modified_after_time is not None:
                params["hora"] = self.modified_after_time.strftime("%H:%M:%S")
        return params


class PageRange(BaseModel):
    """Непрерывный диапазон позиций ERP [start, end], нумерация с 1, обе границы включены."""
    start: int = Field(ge=1)
    end: int = Field(ge=1)

    @model_validator(mode="after")
    def check_bounds(self):
        if self.end < self.start:
            raise ValueError(f"Некорректный диапазон [{self.start}, {self.end}]")
        return self

    @classmethod
    def from_offset(cls, offset: int, size: int) -> "PageRange":
        return cls(start=offset + 1, end=offset + size)

    @property
    def size(self) -> int:
        return self.end - self.start + 1

    def split(self) -> Tuple["PageRange", "PageRange"]:
        middle = (self.start + self.end) // 2
        return PageRange(start=self.start, end=middle), PageRange(start=middle + 1, end=self.end)

    def overlaps(self, start: int, end: int) -> bool:
        return self.start <= end and start <= self.end

    def __str__(self) -> str:
        return f"[{self.start}, {self.end}]"


class ApplyResult(BaseModel):
    """Итог поэлементного применения страницы."""
    processed: int = 0
    errors: int = 0
    failed_keys: List[str] = Field(default_factory=list)


class RangeResult(BaseModel):
    """Итог синхронизации диапазона, в том числе через деление."""
    start: int
    end: int
    processed: int = 0
    errors: int = 0
    subdivided: bool = False
    max_depth_reached: int = 0
    failed_ranges: List[Tuple[int, int]] = Field(default_factory=list)

    @property
    def unresolved_items(self) -> int:
        return sum(end - start + 1 for start, end in self.failed_ranges)


class SyncStartResult(BaseModel):
    run_id: str
    entity: str
    direction: str
    total_items: int
    total_batches: int
    batch_size: int
    recovery_mode: bool = False


class BatchProgress(BaseModel):
    """Результат process_next_batch: что сделано и сохраненное состояние после пакета."""
    run_id: str
    entity: str
    batch_number: int
    range_start: int
    range_end: int
    processed: int = 0
    errors: int = 0
    retry_processed: int = 0
    retry_errors: int = 0
    recovered: bool = False
    items_synced: int = 0
    error_count: int = 0
    current_batch: int = 0
    total_batches: int = 0
    batch_size: int = 0
    status: str = "running"
    duration_seconds: float = 0.0

    @property
    def completed(self) -> bool:
        return self.status == "completed"


class SyncStatusInfo(BaseModel):
    entity: str
    run_id: Optional[str] = None
    direction: Optional[str] = None
    status: str = "idle"
    batch_size: int = 0
    current_batch: int = 0
    total_batches: int = 0
    items_synced: int = 0
    total_items: int = 0
    error_count: int = 0
    recovery_mode: bool = False
    last_error: Optional[str] = None
    start_time: Optional[datetime] = None
    last_update_time: Optional[datetime] = None
    progress_percent: float = 0.0


class ErrorStats(BaseModel):
    total_errors: int = 0
    error_distribution: Dict[str, int] = Field(default_factory=dict)
    recent_errors: List[Dict[str, Any]] = Field(default_factory=list)
    problem_items: List[Dict[str, Any]] = Field(default_factory=list)


class RetryStats(BaseModel):
    """Статистика повторной обработки по записям пакетов."""
    total_batches: int = 0
    batches_with_retries: int = 0
    retry_processed: int = 0
    retry_errors: int = 0
    retry_success_rate: float = 0.0


class OperationSummary(BaseModel):
    operation: str
    duration_seconds: float = 0.0
    items_processed: int = 0
    items_failed: int = 0
    success_rate: float = 0.0
    errors_by_kind: Dict[str, int] = Field(default_factory=dict)


class MemorySnapshot(BaseModel):
    current_mb: float
    peak_mb: float
    limit_mb: Optional[float] = None
    usage_percent: Optional[float] = None


class CleanupStats(BaseModel):
    context: str
    before: MemorySnapshot
    after: MemorySnapshot
    collected_objects: int = 0
    evicted_caches: int = 0

    @property
    def freed_mb(self) -> float:
        return max(0.0, self.before.current_mb - self.after.current_mb)


class LockInfo(BaseModel):
    entity: str
    locked: bool = False
    owner_pid: Optional[int] = None
    owner_host: Optional[str] = None
    owned_by_me: bool = False
    owner_alive: Optional[bool] = None
    age_seconds: Optional[float] = None
    heartbeat_age_seconds: Optional[float] = None
    expired: bool = False


class PerformanceMetrics(BaseModel):
    run_id: Optional[str] = None
    items_synced: int = 0
    error_count: int = 0
    elapsed_seconds: float = 0.0
    items_per_second: float = 0.0
    items_per_minute: float = 0.0
    error_rate: float = 0.0
    eta_seconds: Optional[float] = None


class BatchSizeRecommendation(BaseModel):
    recommended: int
    confidence: str = "low"
    reason: str = ""
    samples: int = 0


class RetryErrorsResult(BaseModel):
    requested: int = 0
    retried: int = 0
    succeeded: int = 0
    failed: int = 0
    details: List[Dict[str, Any]] = Field(default_factory=list)


class PrerequisiteCheck(BaseModel):
    valid: bool
    remote_items: Optional[int] = None
    sample_ok: Optional[bool] = None
    problems: List[str] = Field(default_factory=list)

from .sync import (
    SyncFilters,
    PageRange,
    ApplyResult,
    RangeResult,
    SyncStartResult,
    BatchProgress,
    SyncStatusInfo,
    ErrorStats,
    RetryStats,
    OperationSummary,
    MemorySnapshot,
    CleanupStats,
    LockInfo,
    PerformanceMetrics,
    BatchSizeRecommendation,
    RetryErrorsResult,
    PrerequisiteCheck,
)

__all__ = [
    "SyncFilters",
    "PageRange",
    "ApplyResult",
    "RangeResult",
    "SyncStartResult",
    "BatchProgress",
    "SyncStatusInfo",
    "ErrorStats",
    "RetryStats",
    "OperationSummary",
    "MemorySnapshot",
    "CleanupStats",
    "LockInfo",
    "PerformanceMetrics",
    "BatchSizeRecommendation",
    "RetryErrorsResult",
    "PrerequisiteCheck",
]

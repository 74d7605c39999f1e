from datetime import date, time

import pytest
from pydantic import ValidationError as PydanticValidationError

from catalog_sync.core.sync_config import SyncConfig, update_config_for_environment
from catalog_sync.schemas.sync import PageRange, RangeResult, SyncFilters


def test_page_range_from_offset_and_split():
    page = PageRange.from_offset(100, 31)
    assert (page.start, page.end, page.size) == (101, 131, 31)

    left, right = PageRange(start=100, end=130).split()
    assert (left.start, left.end) == (100, 115)
    assert (right.start, right.end) == (116, 130)
    assert str(right) == "[116, 130]"


def test_page_range_validation():
    with pytest.raises(PydanticValidationError):
        PageRange(start=0, end=5)
    with pytest.raises(PydanticValidationError):
        PageRange(start=10, end=9)


def test_page_range_overlaps():
    page = PageRange(start=10, end=20)
    assert page.overlaps(20, 25)
    assert page.overlaps(1, 10)
    assert not page.overlaps(21, 30)


def test_range_result_unresolved_items():
    result = RangeResult(start=1, end=50, failed_ranges=[(10, 14), (30, 30)])
    assert result.unresolved_items == 6


def test_filters_as_params():
    assert SyncFilters().as_params() == {}
    assert SyncFilters(modified_after=date(2025, 2, 1)).as_params() == {"fecha": "2025-02-01"}
    filters = SyncFilters(modified_after="2025-02-01", modified_after_time="23:59:01")
    assert filters.modified_after_time == time(23, 59, 1)
    assert filters.as_params() == {"fecha": "2025-02-01", "hora": "23:59:01"}


def test_filters_reject_time_without_date():
    with pytest.raises(PydanticValidationError):
        SyncFilters(modified_after_time="10:00:00")


def test_safe_range_thresholds():
    config = SyncConfig()
    assert [config.safe_range_threshold(d) for d in range(5)] == [15, 10, 5, 5, 5]


def test_config_from_environment(monkeypatch):
    monkeypatch.setenv("CATALOG_SYNC_DEFAULT_BATCH_SIZE", "80")
    monkeypatch.setenv("CATALOG_SYNC_HEARTBEAT_ENABLED", "false")
    config = SyncConfig()
    assert config.default_batch_size == 80
    assert config.heartbeat_enabled is False


def test_update_config_for_environment():
    config = update_config_for_environment("development", SyncConfig())
    assert config.default_batch_size == 20
    assert config.default_retry_policy == "realtime"
    assert update_config_for_environment("unknown", SyncConfig()).memory_limit_mb == 512

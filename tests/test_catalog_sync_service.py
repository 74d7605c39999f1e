import pytest

from catalog_sync.core.sync_config import SyncConfig
from catalog_sync.models.sync_run import SyncStatus
from catalog_sync.repositories.lock_repository import LockRepository
from catalog_sync.services.catalog_store import SqlCatalogStore
from catalog_sync.services.errors import (
    ConcurrencyError,
    HttpError,
    NetworkError,
    ValidationError,
)
from catalog_sync.services.memory_guard import MemoryGuard
from catalog_sync.services.sync_lock import SyncLockManager

from tests.conftest import FakeErp


def rival_lock_manager(session_factory, config, clock, sleeps, alive=True):
    return SyncLockManager(LockRepository(session_factory), config=config, clock=clock, sleep=sleeps,
                           liveness_probe=lambda pid: alive)


# Старт и полный цикл

def test_full_sync_in_three_batches(service, erp, session_factory):
    started = service.start_sync("products", batch_size=50)
    assert started.total_items == 120
    assert started.total_batches == 3

    progress = [service.process_next_batch("products") for _ in range(3)]

    assert [(p.range_start, p.range_end) for p in progress] == [(1, 50), (51, 100), (101, 150)]
    assert [p.processed for p in progress] == [50, 50, 20]
    assert progress[-1].completed
    assert progress[-1].items_synced == 120

    status = service.get_status("products")
    assert status.status == "completed"
    assert status.current_batch == 3
    assert status.progress_percent == 100.0
    assert SqlCatalogStore(session_factory).count("products") == 120
    assert not service.lock_manager.is_locked("products")
    assert service.markers.get("products") is None

    history = service.get_history(entity="products")
    assert len(history) == 1
    assert history[0].status == SyncStatus.COMPLETED
    assert history[0].batches_processed == 3
    assert len(service.ledger.get_batch_records(started.run_id)) == 3


def test_run_sync_processes_until_done(service, erp):
    service.start_sync("products")
    status = service.run_sync("products")
    assert status.status == "completed"
    assert status.items_synced == 120
    assert status.total_batches == 3
    assert "products" not in service._active


def test_empty_source_completes_immediately(make_service, lock_manager):
    service = make_service(FakeErp(total=0), lock_manager=lock_manager)
    started = service.start_sync("products")
    assert started.total_batches == 0
    assert service.get_status("products").status == "completed"
    assert not lock_manager.is_locked("products")


def test_resync_is_idempotent(service, session_factory):
    first = service.start_sync("products")
    service.run_sync("products")
    second = service.start_sync("products")
    service.run_sync("products")

    assert first.run_id != second.run_id
    assert SqlCatalogStore(session_factory).count("products") == 120
    assert [h.run_id for h in service.get_history()] == [second.run_id, first.run_id]


@pytest.mark.parametrize("kwargs", [
    {"entity": "warehouses"},
    {"entity": "products", "batch_size": 5},
    {"entity": "products", "batch_size": 500},
    {"entity": "products", "direction": "sideways"},
    {"entity": "products", "filters": {"modified_after_time": "10:00:00"}},
])
def test_invalid_parameters(service, kwargs):
    with pytest.raises(ValidationError):
        service.start_sync(**kwargs)
    assert not service.lock_manager.is_locked("products")


def test_filters_are_persisted(service):
    service.start_sync("products", filters={"modified_after": "2025-01-31", "modified_after_time": "08:00:00"})
    run = service.runs.get("products")
    assert run.filters == {"modified_after": "2025-01-31", "modified_after_time": "08:00:00"}


def test_second_start_is_rejected_while_running(service):
    service.start_sync("products")
    with pytest.raises(ConcurrencyError):
        service.start_sync("products")


def test_abandoned_running_run_is_replaced(service, make_service, erp, session_factory, config, clock, sleeps):
    old = service.start_sync("products")
    service.process_next_batch("products")
    # Процесс упал, блокировка удалена вручную
    LockRepository(session_factory).delete("products")

    fresh = make_service(erp, lock_manager=rival_lock_manager(session_factory, config, clock, sleeps))
    new = fresh.start_sync("products")

    assert new.run_id != old.run_id
    assert fresh.get_status("products").status == "running"
    assert fresh.get_history()[0].status == SyncStatus.CANCELLED


# Ошибки при загрузке пакета

def test_fatal_error_leaves_batch_unadvanced(service, erp):
    service.start_sync("products")
    erp.fetch_errors = [HttpError(400, "bad request")]

    with pytest.raises(HttpError):
        service.process_next_batch("products")

    status = service.get_status("products")
    assert status.status == "running"
    assert status.current_batch == 0
    assert status.items_synced == 0
    assert "HTTP 400" in status.last_error
    assert service.ledger.get_batch_records(status.run_id) == []

    progress = service.process_next_batch("products")
    assert (progress.range_start, progress.range_end) == (1, 50)
    assert service.get_status("products").last_error is None


def test_unexpected_error_releases_lock_and_heartbeat(make_service, erp, session_factory, config, clock, sleeps):
    with_heartbeat = config.model_copy(update={"heartbeat_enabled": True, "heartbeat_interval_seconds": 30})
    manager = SyncLockManager(LockRepository(session_factory), config=with_heartbeat, clock=clock, sleep=sleeps)
    service = make_service(erp, lock_manager=manager)
    try:
        started = service.start_sync("products")
        worker = manager._heartbeats["products"]
        erp.fetch_errors = [ValueError("broken gateway payload")]

        with pytest.raises(ValueError):
            service.run_sync("products")

        assert not manager.owns("products")
        assert not manager.is_locked("products")
        assert not worker.is_alive()
        assert "products" not in service._active

        resumed = service.resume_sync("products")
        assert resumed.run_id == started.run_id
        assert resumed.recovery_mode
    finally:
        manager.shutdown()


def test_transient_error_is_retried(service, erp, sleeps):
    service.start_sync("products")
    erp.fetch_errors = [NetworkError("connection reset")]

    progress = service.process_next_batch("products")

    assert progress.processed == 50
    assert not progress.recovered
    assert len(sleeps.calls) == 1
    assert sleeps.calls[0] >= 5


def test_truncated_page_is_recovered_by_subdivision(make_service, lock_manager):
    erp = FakeErp(total=150, bad_positions=set(range(116, 131)))
    service = make_service(erp, lock_manager=lock_manager)
    started = service.start_sync("products", batch_size=50)

    status = service.run_sync("products")

    assert status.status == "completed"
    assert status.items_synced + status.error_count == 150
    errors = service.ledger.get_errors_for_run(started.run_id)
    assert len(errors) == status.error_count
    failed_positions = {int(e.item_key[1:]) for e in errors}
    assert set(range(116, 131)) <= failed_positions
    assert all(101 <= position <= 150 for position in failed_positions)

    last_batch = service.ledger.get_batch_records(started.run_id)[-1]
    assert last_batch.retry_processed_count + last_batch.retry_error_count == 50
    retry_stats = service.ledger.get_retry_stats(started.run_id)
    assert retry_stats.batches_with_retries == 1


def test_item_errors_do_not_abort_batch(make_service, lock_manager):
    erp = FakeErp(total=60)
    erp.items[4] = {"name": "Sin codigo"}
    service = make_service(erp, lock_manager=lock_manager)
    started = service.start_sync("products", batch_size=50)

    progress = service.process_next_batch("products")

    assert progress.processed == 49
    assert progress.errors == 1
    assert progress.current_batch == 1
    errors = service.ledger.get_errors_for_run(started.run_id)
    assert len(errors) == 1
    assert errors[0].error_code == "validation"
    assert errors[0].item_key == "unknown"


def test_retry_sync_errors_refetches_positions(make_service, lock_manager, session_factory):
    erp = FakeErp(total=150, bad_positions=set(range(116, 131)))
    service = make_service(erp, lock_manager=lock_manager)
    started = service.start_sync("products", batch_size=50)
    service.run_sync("products")
    error_ids = [e.id for e in service.ledger.get_errors_for_run(started.run_id)]

    erp.bad_positions.clear()
    result = service.retry_sync_errors(error_ids)

    assert result.requested == len(error_ids)
    assert result.succeeded == len(error_ids)
    assert result.failed == 0
    assert SqlCatalogStore(session_factory).count("products") == 150


# Память

def test_memory_pressure_shrinks_batch(make_service, erp, lock_manager, monotonic):
    config = SyncConfig(heartbeat_enabled=False, memory_limit_mb=100)
    guard = MemoryGuard(config, sampler=lambda: 75.0, clock=monotonic)
    service = make_service(erp, lock_manager=lock_manager, config=config, memory_guard=guard)
    service.start_sync("products", batch_size=50)

    progress = service.process_next_batch("products")

    assert progress.batch_size == 25
    assert (progress.range_start, progress.range_end) == (1, 25)
    assert progress.total_batches == 5


def test_memory_pause_then_continue(make_service, erp, lock_manager, monotonic, sleeps):
    config = SyncConfig(heartbeat_enabled=False, memory_limit_mb=100, memory_pause_seconds=0.0)
    samples = [95.0] * 6 + [40.0]

    def sampler():
        return samples.pop(0) if len(samples) > 1 else samples[0]

    guard = MemoryGuard(config, sampler=sampler, clock=monotonic)
    service = make_service(erp, lock_manager=lock_manager, config=config, memory_guard=guard)
    service.start_sync("products", batch_size=10)

    status = service.run_sync("products")

    assert status.status == "completed"
    assert status.items_synced == 120
    assert sleeps.calls == [0.0]


# Возобновление

def test_resume_after_crash(service, make_service, erp, session_factory, config, clock, sleeps):
    started = service.start_sync("products", batch_size=50)
    service.process_next_batch("products")

    # Новый процесс; владелец прежней блокировки мертв
    restarted = make_service(erp, lock_manager=rival_lock_manager(session_factory, config, clock, sleeps,
                                                                  alive=False))
    assert "позиции 51" in restarted.get_recovery_message("products")

    resumed = restarted.resume_sync("products")

    assert resumed.run_id == started.run_id
    assert resumed.recovery_mode
    status = restarted.get_status("products")
    assert status.current_batch == 1
    assert status.items_synced == 50
    assert status.recovery_mode

    final = restarted.run_sync("products")
    assert final.status == "completed"
    assert final.items_synced == 120
    assert erp.fetch_calls == [(1, 50), (51, 100), (101, 150)]


def test_resume_is_rejected_while_owner_is_alive(service, make_service, erp, session_factory, config, clock,
                                                 sleeps):
    service.start_sync("products")
    service.process_next_batch("products")

    other = make_service(erp, lock_manager=rival_lock_manager(session_factory, config, clock, sleeps))
    with pytest.raises(ConcurrencyError):
        other.resume_sync("products")


def test_resume_requires_fresh_marker(service, clock):
    service.start_sync("products")
    service.process_next_batch("products")
    service.cancel_sync("products")

    clock.advance(hours=25)
    assert service.get_recovery_message("products") is None
    with pytest.raises(ValidationError):
        service.resume_sync("products")


def test_resume_from_explicit_offset(service):
    service.start_sync("products", batch_size=50)
    service.cancel_sync("products")
    service.markers.delete("products")

    resumed = service.resume_sync("products", offset=100, batch_size=10)

    assert resumed.batch_size == 10
    status = service.get_status("products")
    assert status.current_batch == 10
    progress = service.process_next_batch("products")
    assert (progress.range_start, progress.range_end) == (101, 110)


# Отмена и завершение

def test_cancel_is_immediate_without_active_loop(service):
    service.start_sync("products", batch_size=50)
    service.process_next_batch("products")

    status = service.cancel_sync("products")

    assert status.status == "cancelled"
    assert not service.lock_manager.is_locked("products")
    # Маркер сохраняется для возобновления
    assert service.markers.get("products").offset == 50
    assert service.get_history()[0].status == SyncStatus.CANCELLED
    with pytest.raises(ValidationError):
        service.process_next_batch("products")


def test_resume_after_cancel_continues_counters(service):
    service.start_sync("products", batch_size=50)
    service.process_next_batch("products")
    service.cancel_sync("products")

    service.resume_sync("products")
    final = service.run_sync("products")

    assert final.status == "completed"
    assert final.items_synced == 120


def test_cancel_from_other_process_is_cooperative(service, make_service, erp, session_factory, config, clock,
                                                  sleeps):
    service.start_sync("products", batch_size=50)
    other = make_service(erp, lock_manager=rival_lock_manager(session_factory, config, clock, sleeps))

    status = other.cancel_sync("products")
    assert status.status == "running"
    assert service.runs.get("products").cancel_requested

    progress = service.process_next_batch("products")
    assert progress.status == "cancelled"
    assert progress.processed == 0
    assert not service.lock_manager.is_locked("products")


def test_finish_sync(service):
    service.start_sync("products")
    status = service.finish_sync("products")
    assert status.status == "completed"
    assert not service.lock_manager.is_locked("products")


# Статистика и проверки

def test_status_without_entity_prefers_running(service):
    assert service.get_status().status == "idle"
    service.start_sync("customers")
    service.run_sync("customers")
    service.start_sync("products")

    status = service.get_status()
    assert status.entity == "products"
    assert status.status == "running"


def test_performance_metrics(service, clock):
    started = service.start_sync("products")
    service.process_next_batch("products")
    clock.advance(10)

    metrics = service.get_performance_metrics()
    assert metrics.run_id == started.run_id
    assert metrics.items_synced == 50
    assert metrics.items_per_second == 5.0
    assert metrics.eta_seconds == 14.0

    service.run_sync("products")
    finished = service.get_performance_metrics(started.run_id)
    assert finished.items_synced == 120
    assert finished.eta_seconds is None


def test_validate_prerequisites(service, erp):
    check = service.validate_sync_prerequisites("products")
    assert check.valid
    assert check.remote_items == 120
    assert check.sample_ok

    erp.count_errors = [NetworkError("down")]
    check = service.validate_sync_prerequisites("products")
    assert not check.valid
    assert check.problems

    assert not service.validate_sync_prerequisites("warehouses").valid


def test_local_to_remote_direction(make_service, lock_manager, session_factory):
    store = SqlCatalogStore(session_factory)
    for i in range(1, 13):
        store.upsert("products", f"K{i:02d}", f"Item {i}", {"price": i})
    erp = FakeErp(total=0)
    service = make_service(erp, lock_manager=lock_manager, store=store)

    started = service.start_sync("products", direction="local_to_remote", batch_size=10)
    status = service.run_sync("products")

    assert started.total_batches == 2
    assert status.items_synced == 12
    assert [item["sku"] for item in erp.pushed] == [f"K{i:02d}" for i in range(1, 13)]


def test_cleanup_old_sync_errors(service, clock):
    service.ledger.record_error("run-x", "A", {}, 503, "old")
    clock.advance(days=40)
    assert service.cleanup_old_sync_errors() == 1

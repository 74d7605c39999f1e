from catalog_sync.repositories.lock_repository import LockRepository
from catalog_sync.services.sync_lock import LockHeartbeat, SyncLockManager


def other_manager(session_factory, config, clock, sleeps, liveness_probe=None):
    return SyncLockManager(LockRepository(session_factory), config=config, clock=clock, sleep=sleeps,
                           liveness_probe=liveness_probe)


def test_acquire_and_release(lock_manager):
    assert lock_manager.acquire("products")
    assert lock_manager.is_locked("products")
    assert lock_manager.owns("products")

    assert lock_manager.release("products")
    assert not lock_manager.is_locked("products")
    assert not lock_manager.release("products")


def test_acquire_is_reentrant_for_owner(lock_manager):
    assert lock_manager.acquire("products")
    assert lock_manager.acquire("products", retries=0)


def test_second_owner_waits_and_fails(lock_manager, session_factory, config, clock, sleeps):
    assert lock_manager.acquire("products")
    rival = other_manager(session_factory, config, clock, sleeps)

    assert not rival.acquire("products", retries=2)
    assert sleeps.calls == [config.lock_retry_delay_seconds] * 2
    assert lock_manager.owns("products")


def test_release_by_non_owner_keeps_lock(lock_manager, session_factory, config, clock, sleeps):
    lock_manager.acquire("products")
    rival = other_manager(session_factory, config, clock, sleeps)
    assert not rival.release("products")
    assert lock_manager.owns("products")


def test_expired_lock_is_reclaimed(lock_manager, session_factory, config, clock, sleeps):
    lock_manager.acquire("products", timeout=60)
    rival = other_manager(session_factory, config, clock, sleeps)

    clock.advance(61)
    assert not lock_manager.is_locked("products")
    assert rival.acquire("products", retries=0)
    assert rival.owns("products")
    assert not lock_manager.owns("products")
    assert sleeps.calls == []


def test_stale_heartbeat_is_reclaimed(lock_manager, session_factory, config, clock, sleeps):
    lock_manager.acquire("products")
    rival = other_manager(session_factory, config, clock, sleeps)

    clock.advance(config.heartbeat_timeout_seconds - 1)
    assert not rival.acquire("products", retries=0)

    clock.advance(2)
    assert rival.acquire("products", retries=0)


def test_heartbeat_keeps_lock_alive(lock_manager, session_factory, config, clock, sleeps):
    lock_manager.acquire("products")
    rival = other_manager(session_factory, config, clock, sleeps)

    for _ in range(5):
        clock.advance(config.heartbeat_timeout_seconds - 10)
        assert lock_manager.update_heartbeat("products")
    assert not rival.acquire("products", retries=0)


def test_dead_owner_is_reclaimed(lock_manager, session_factory, config, clock, sleeps):
    lock_manager.acquire("products")
    rival = other_manager(session_factory, config, clock, sleeps, liveness_probe=lambda pid: False)

    assert rival.acquire("products", retries=0)


def test_liveness_check_can_be_disabled(lock_manager, session_factory, config, clock, sleeps):
    lock_manager.acquire("products")
    lease_only = config.model_copy(update={"lock_check_process_liveness": False})
    rival = other_manager(session_factory, lease_only, clock, sleeps, liveness_probe=lambda pid: False)

    assert not rival.acquire("products", retries=0)


def test_failed_liveness_probe_counts_as_alive(lock_manager, session_factory, config, clock, sleeps):
    lock_manager.acquire("products")

    def broken_probe(pid):
        raise PermissionError("denied")

    rival = other_manager(session_factory, config, clock, sleeps, liveness_probe=broken_probe)
    assert not rival.acquire("products", retries=0)


def test_update_heartbeat_requires_ownership(lock_manager, session_factory, config, clock, sleeps):
    lock_manager.acquire("products")
    rival = other_manager(session_factory, config, clock, sleeps)
    assert not rival.update_heartbeat("products")


def test_get_lock_info(lock_manager, clock):
    assert not lock_manager.get_lock_info("products").locked

    lock_manager.acquire("products")
    clock.advance(30)
    info = lock_manager.get_lock_info("products")
    assert info.locked
    assert info.owned_by_me
    assert info.owner_alive
    assert info.age_seconds == 30
    assert info.heartbeat_age_seconds == 30
    assert not info.expired


def test_heartbeat_thread_stops_when_lock_is_lost(lock_manager):
    worker = LockHeartbeat(lock_manager, "products", interval=0.01)
    worker.start()
    worker.join(timeout=2)
    assert not worker.is_alive()


def test_heartbeat_thread_is_stopped_on_release(session_factory, config, clock, sleeps):
    with_heartbeat = config.model_copy(update={"heartbeat_enabled": True, "heartbeat_interval_seconds": 30})
    manager = other_manager(session_factory, with_heartbeat, clock, sleeps)

    assert manager.acquire("products")
    worker = manager._heartbeats["products"]
    assert worker.is_alive()

    manager.release("products")
    assert not worker.is_alive()
    assert "products" not in manager._heartbeats

from catalog_sync import sync_tasks
from catalog_sync.celery_shared import celery
from catalog_sync.schemas.sync import SyncStatusInfo


class StubService:
    def __init__(self):
        self.calls = []

    def cleanup_old_sync_errors(self, days=None):
        self.calls.append(("cleanup", days))
        return 7

    def cancel_sync(self, entity):
        self.calls.append(("cancel", entity))
        return SyncStatusInfo(entity=entity, status="cancelled")


def test_tasks_are_registered():
    names = set(celery.tasks.keys())
    assert {
        "catalog_sync.sync_tasks.run_catalog_sync",
        "catalog_sync.sync_tasks.resume_catalog_sync",
        "catalog_sync.sync_tasks.cancel_catalog_sync",
        "catalog_sync.sync_tasks.cleanup_sync_errors",
    } <= names
    schedule = celery.conf.beat_schedule["cleanup-sync-errors-daily"]
    assert schedule["task"] == "catalog_sync.sync_tasks.cleanup_sync_errors"


def test_cleanup_task(monkeypatch):
    stub = StubService()
    monkeypatch.setattr(sync_tasks, "get_sync_service", lambda: stub)

    assert sync_tasks.cleanup_sync_errors.run(days=14) == {"deleted": 7}
    assert stub.calls == [("cleanup", 14)]


def test_cancel_task(monkeypatch):
    stub = StubService()
    monkeypatch.setattr(sync_tasks, "get_sync_service", lambda: stub)

    result = sync_tasks.cancel_catalog_sync.run("products")
    assert result["status"] == "cancelled"
    assert stub.calls == [("cancel", "products")]

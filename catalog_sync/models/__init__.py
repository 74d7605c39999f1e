"""
Все таблицы регистрируются здесь.
Импорт используется alembic при автогенерации миграций и init_db.
"""
from .sync_run import SyncDirection, SyncStatus, SyncRunState, SyncHistoryEntry, SyncProgressMarker
from .sync_lock import SyncLock
from .sync_metrics import SyncBatchRecord, SyncErrorRecord
from .catalog_item import CatalogItem

__all__ = [
    "SyncDirection",
    "SyncStatus",
    "SyncRunState",
    "SyncHistoryEntry",
    "SyncProgressMarker",
    "SyncLock",
    "SyncBatchRecord",
    "SyncErrorRecord",
    "CatalogItem",
]

"""
 * @file: run_repository.py
 * @description: Хранилища текущего запуска (compare-and-swap по версии), истории и маркеров прогресса
 * @dependencies: SyncRunState, SyncHistoryEntry, SyncProgressMarker, SessionLocal
 * @created: 2025-03-02
"""
from datetime import datetime
from typing import Any, List, Optional

from sqlalchemy import update, delete
from sqlalchemy.exc import IntegrityError
from sqlmodel import select

from catalog_sync.database import SessionLocal
from catalog_sync.models.sync_run import SyncRunState, SyncHistoryEntry, SyncProgressMarker, SyncStatus
from catalog_sync.services.errors import ConcurrencyError

_RUN_FIELDS = [
    "run_id", "direction", "status", "batch_size", "current_batch", "total_batches", "next_offset",
    "items_synced", "total_items", "error_count", "filters", "recovery_mode", "cancel_requested",
    "last_error", "start_time", "last_update_time", "finished_at",
]


class RunRepository:
    """Запись текущего запуска по сущности. Все изменения проходят через compare-and-swap."""

    def __init__(self, session_factory=None):
        self.session_factory = session_factory or SessionLocal

    def get(self, entity: str) -> Optional[SyncRunState]:
        with self.session_factory() as session:
            return session.get(SyncRunState, entity)

    def list_all(self) -> List[SyncRunState]:
        with self.session_factory() as session:
            return list(session.exec(select(SyncRunState)).all())

    def begin(self, run: SyncRunState) -> SyncRunState:
        """
        Сохраняет новый запуск на место предыдущего.

        Raises:
            ConcurrencyError: по сущности уже есть запуск в статусе running
                или запись изменилась параллельно
        """
        with self.session_factory() as session:
            existing = session.get(SyncRunState, run.entity)
            if existing is None:
                run.version = 1
                session.add(run)
                try:
                    session.commit()
                except IntegrityError:
                    session.rollback()
                    raise ConcurrencyError(f"Запуск {run.entity} создан параллельно")
                return self.get(run.entity)

            if existing.status == SyncStatus.RUNNING:
                raise ConcurrencyError(f"По {run.entity} уже выполняется запуск {existing.run_id}",
                                       context={"run_id": existing.run_id})
            values = {name: getattr(run, name) for name in _RUN_FIELDS}
            result = session.execute(
                update(SyncRunState)
                .where(SyncRunState.entity == run.entity,
                       SyncRunState.version == existing.version,
                       SyncRunState.status != SyncStatus.RUNNING)
                .values(version=existing.version + 1, **values)
            )
            session.commit()
            if result.rowcount == 0:
                raise ConcurrencyError(f"Запуск {run.entity} изменен параллельно")
        return self.get(run.entity)

    def compare_and_swap(self, entity: str, expected_version: int, **changes: Any) -> SyncRunState:
        """
        Применяет изменения, только если версия записи равна expected_version.

        Raises:
            ConcurrencyError: версия не совпала
        """
        changes.setdefault("last_update_time", datetime.utcnow())
        with self.session_factory() as session:
            result = session.execute(
                update(SyncRunState)
                .where(SyncRunState.entity == entity, SyncRunState.version == expected_version)
                .values(version=expected_version + 1, **changes)
            )
            session.commit()
            if result.rowcount == 0:
                raise ConcurrencyError(
                    f"Конфликт версии запуска {entity}: ожидалась {expected_version}",
                    context={"entity": entity, "expected_version": expected_version},
                )
        return self.get(entity)


class HistoryRepository:
    """Список итогов запусков, ограниченный limit записями (старые удаляются первыми)."""

    def __init__(self, session_factory=None, limit: int = 100):
        self.session_factory = session_factory or SessionLocal
        self.limit = limit

    def append(self, entry: SyncHistoryEntry) -> SyncHistoryEntry:
        with self.session_factory() as session:
            session.add(entry)
            session.commit()
            session.refresh(entry)

            keep_ids = select(SyncHistoryEntry.id).order_by(SyncHistoryEntry.id.desc()).limit(self.limit)
            session.execute(delete(SyncHistoryEntry).where(SyncHistoryEntry.id.not_in(keep_ids)))
            session.commit()
            return entry

    def list(self, limit: int = 10, entity: Optional[str] = None) -> List[SyncHistoryEntry]:
        statement = select(SyncHistoryEntry)
        if entity:
            statement = statement.where(SyncHistoryEntry.entity == entity)
        statement = statement.order_by(SyncHistoryEntry.id.desc()).limit(limit)
        with self.session_factory() as session:
            return list(session.exec(statement).all())

    def get_by_run(self, run_id: str) -> Optional[SyncHistoryEntry]:
        with self.session_factory() as session:
            return session.exec(
                select(SyncHistoryEntry).where(SyncHistoryEntry.run_id == run_id)
                .order_by(SyncHistoryEntry.id.desc())
            ).first()


class ProgressMarkerRepository:
    def __init__(self, session_factory=None):
        self.session_factory = session_factory or SessionLocal

    def save(self, marker: SyncProgressMarker) -> None:
        with self.session_factory() as session:
            session.merge(marker)
            session.commit()

    def get(self, entity: str) -> Optional[SyncProgressMarker]:
        with self.session_factory() as session:
            return session.get(SyncProgressMarker, entity)

    def delete(self, entity: str) -> bool:
        with self.session_factory() as session:
            result = session.execute(delete(SyncProgressMarker).where(SyncProgressMarker.entity == entity))
            session.commit()
            return result.rowcount > 0

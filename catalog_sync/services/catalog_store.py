"""
 * @file: catalog_store.py
 * @description: Локальное хранилище каталога с идемпотентным upsert по ключу элемента
 * @dependencies: CatalogItem, SessionLocal
 * @created: 2025-03-02
"""
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlmodel import select

from catalog_sync.database import SessionLocal
from catalog_sync.models.catalog_item import CatalogItem

logger = logging.getLogger("catalog.sync")


class CatalogStore(ABC):
    """Путь записи каталога. Повторное применение того же ключа не создает дубликатов."""

    @abstractmethod
    def upsert(self, entity: str, key: str, name: Optional[str], payload: Dict[str, Any],
               run_id: Optional[str] = None) -> bool:
        """Создает или обновляет запись; True, если запись создана."""

    @abstractmethod
    def count(self, entity: str) -> int:
        ...

    @abstractmethod
    def list_range(self, entity: str, start: int, end: int) -> List[Dict[str, Any]]:
        """Записи с позициями [start, end] (с 1) в порядке ключей."""


class SqlCatalogStore(CatalogStore):
    def __init__(self, session_factory=None):
        self.session_factory = session_factory or SessionLocal

    def upsert(self, entity: str, key: str, name: Optional[str], payload: Dict[str, Any],
               run_id: Optional[str] = None) -> bool:
        with self.session_factory() as session:
            item = session.get(CatalogItem, (entity, key))
            created = item is None
            if created:
                item = CatalogItem(key=key, entity=entity)
            item.name = name
            item.payload = payload
            item.last_run_id = run_id
            item.updated_at = datetime.utcnow()
            session.add(item)
            session.commit()
        return created

    def get(self, entity: str, key: str) -> Optional[CatalogItem]:
        with self.session_factory() as session:
            return session.get(CatalogItem, (entity, key))

    def count(self, entity: str) -> int:
        with self.session_factory() as session:
            return session.exec(
                select(func.count(CatalogItem.key)).where(CatalogItem.entity == entity)
            ).one()

    def list_range(self, entity: str, start: int, end: int) -> List[Dict[str, Any]]:
        with self.session_factory() as session:
            items = session.exec(
                select(CatalogItem).where(CatalogItem.entity == entity)
                .order_by(CatalogItem.key).offset(start - 1).limit(end - start + 1)
            ).all()
        return [{"key": i.key, "name": i.name, "payload": dict(i.payload or {})} for i in items]

"""
 * @file: lock_repository.py
 * @description: Хранилище строк блокировок синхронизации (атомарная вставка, удаление по владельцу, продление)
 * @dependencies: SyncLock, SessionLocal, SQLAlchemy
 * @created: 2025-03-02
"""
from datetime import datetime
from typing import Optional

from sqlalchemy import update, delete
from sqlalchemy.exc import IntegrityError
from sqlmodel import select

from catalog_sync.database import SessionLocal
from catalog_sync.models.sync_lock import SyncLock


class LockRepository:
    def __init__(self, session_factory=None):
        self.session_factory = session_factory or SessionLocal

    def get(self, entity: str) -> Optional[SyncLock]:
        with self.session_factory() as session:
            return session.exec(select(SyncLock).where(SyncLock.entity == entity)).first()

    def insert(self, lock: SyncLock) -> bool:
        """Атомарно создает строку блокировки. False, если блокировка уже существует."""
        with self.session_factory() as session:
            session.add(lock)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                return False
            return True

    def delete(self, entity: str, owner_token: Optional[str] = None) -> bool:
        """Удаляет блокировку; при owner_token только если она принадлежит этому владельцу."""
        statement = delete(SyncLock).where(SyncLock.entity == entity)
        if owner_token is not None:
            statement = statement.where(SyncLock.owner_token == owner_token)
        with self.session_factory() as session:
            result = session.execute(statement)
            session.commit()
            return result.rowcount > 0

    def touch(self, entity: str, owner_token: str, now: datetime, extend: bool = True) -> bool:
        """Обновляет heartbeat (и при extend момент продления таймаута) у своей блокировки."""
        values = {"heartbeat_at": now}
        if extend:
            values["refreshed_at"] = now
        statement = (
            update(SyncLock)
            .where(SyncLock.entity == entity, SyncLock.owner_token == owner_token)
            .values(**values)
        )
        with self.session_factory() as session:
            result = session.execute(statement)
            session.commit()
            return result.rowcount > 0

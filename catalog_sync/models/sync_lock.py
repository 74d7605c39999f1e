"""
 * @file: sync_lock.py
 * @description: Модель межпроцессной блокировки синхронизации по сущности
 * @dependencies: SQLModel, datetime
 * @created: 2025-03-02
"""
from datetime import datetime
from sqlmodel import SQLModel, Field


class SyncLock(SQLModel, table=True):
    __tablename__ = "sync_locks"

    entity: str = Field(primary_key=True, description="Сущность, на которую установлена блокировка")
    owner_pid: int = Field(description="PID процесса-владельца")
    owner_host: str = Field(description="Хост процесса-владельца")
    owner_token: str = Field(description="Уникальный токен экземпляра-владельца")
    acquired_at: datetime = Field(default_factory=datetime.utcnow, description="Время установки блокировки")
    refreshed_at: datetime = Field(default_factory=datetime.utcnow, description="Время последнего продления таймаута")
    heartbeat_at: datetime = Field(default_factory=datetime.utcnow, description="Время последнего heartbeat")
    timeout_seconds: int = Field(default=3600, description="Номинальный таймаут блокировки")

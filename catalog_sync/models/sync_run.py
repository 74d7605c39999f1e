"""
 * @file: sync_run.py
 * @description: Модели состояния запуска синхронизации, истории и маркеров прогресса
 * @dependencies: SQLModel, SQLAlchemy JSON
 * @created: 2025-03-02
"""
from datetime import datetime
from enum import Enum
from typing import Optional, Dict, Any

from sqlmodel import SQLModel, Field
from sqlalchemy import JSON, Column


class SyncDirection(str, Enum):
    """Направление синхронизации."""
    REMOTE_TO_LOCAL = "remote_to_local"
    LOCAL_TO_REMOTE = "local_to_remote"


class SyncStatus(str, Enum):
    """Статусы запуска синхронизации."""
    IDLE = "idle"
    RUNNING = "running"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


class SyncRunState(SQLModel, table=True):
    """
    Текущий запуск синхронизации по сущности.

    Одна строка на сущность. Запись обновляется через compare-and-swap
    по полю version, поэтому наблюдатель всегда видит последние сохраненные счетчики.
    """
    __tablename__ = "sync_runs"

    entity: str = Field(primary_key=True, description="Синхронизируемая сущность (products, customers...)")
    run_id: str = Field(index=True, description="Уникальный идентификатор запуска")
    direction: SyncDirection = Field(default=SyncDirection.REMOTE_TO_LOCAL, description="Направление")
    status: SyncStatus = Field(default=SyncStatus.IDLE, index=True, description="Статус запуска")

    # Пагинация
    batch_size: int = Field(default=50, description="Текущий (адаптивный) размер пакета")
    current_batch: int = Field(default=0, description="Номер следующего пакета к обработке")
    total_batches: int = Field(default=0, description="Оценка числа пакетов")
    next_offset: int = Field(default=0, description="Смещение начала следующего пакета")

    # Счетчики
    items_synced: int = Field(default=0, description="Успешно примененные элементы")
    total_items: int = Field(default=0, description="Оценка числа элементов на момент старта")
    error_count: int = Field(default=0, description="Ошибки элементов и неразрешенные диапазоны")

    filters: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON), description="Фильтры запуска")
    recovery_mode: bool = Field(default=False, description="Запуск возобновлен после сбоя")
    cancel_requested: bool = Field(default=False, description="Флаг кооперативной отмены")
    last_error: Optional[str] = Field(default=None, description="Последняя фатальная ошибка пакета")

    start_time: datetime = Field(default_factory=datetime.utcnow, description="Время старта")
    last_update_time: datetime = Field(default_factory=datetime.utcnow, description="Время последнего сохранения")
    finished_at: Optional[datetime] = Field(default=None, description="Время завершения или отмены")

    version: int = Field(default=0, description="Версия записи для compare-and-swap")


class SyncHistoryEntry(SQLModel, table=True):
    """Итоговая запись о завершенном или отмененном запуске."""
    __tablename__ = "sync_history"

    id: Optional[int] = Field(default=None, primary_key=True)
    run_id: str = Field(index=True)
    entity: str = Field(index=True)
    direction: SyncDirection
    status: SyncStatus
    items_synced: int = 0
    total_items: int = 0
    error_count: int = 0
    batches_processed: int = 0
    total_batches: int = 0
    batch_size: int = 0
    start_time: datetime
    end_time: datetime = Field(default_factory=datetime.utcnow, index=True)
    duration_seconds: float = 0.0
    last_error: Optional[str] = None


class SyncProgressMarker(SQLModel, table=True):
    """
    Короткоживущий маркер прогресса для возобновления после сбоя.
    Считается устаревшим по истечении resume_staleness_hours.
    """
    __tablename__ = "sync_progress_markers"

    entity: str = Field(primary_key=True)
    run_id: str = Field(description="Запуск, к которому относится маркер")
    direction: SyncDirection = Field(default=SyncDirection.REMOTE_TO_LOCAL)
    offset: int = Field(default=0, description="Смещение начала необработанного пакета")
    batch_size: int = Field(default=50)
    current_batch: int = Field(default=0)
    filters: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    updated_at: datetime = Field(default_factory=datetime.utcnow, description="Время последнего сохранения маркера")

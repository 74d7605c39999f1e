"""
 * @file: sync_metrics.py
 * @description: Неизменяемые записи о пакетах и журнал ошибок элементов
 * @dependencies: SQLModel, SQLAlchemy JSON
 * @created: 2025-03-02
"""
from datetime import datetime
from typing import Optional, Dict, Any

from sqlmodel import SQLModel, Field
from sqlalchemy import JSON, Column


class SyncBatchRecord(SQLModel, table=True):
    """
    Результат одного цикла загрузки и применения страницы.
    Создается один раз и не изменяется.
    """
    __tablename__ = "sync_batch_records"

    id: Optional[int] = Field(default=None, primary_key=True)
    run_id: str = Field(index=True)
    entity: str = Field(index=True)
    batch_number: int
    range_start: int
    range_end: int
    batch_size: int = Field(default=0, description="Размер пакета, с которым выполнялась загрузка")
    processed_count: int = 0
    error_count: int = 0
    retry_processed_count: int = Field(default=0, description="Элементы, обработанные при восстановлении")
    retry_error_count: int = Field(default=0, description="Ошибки при восстановлении")
    duration_seconds: float = 0.0
    memory_peak_mb: Optional[float] = None
    timestamp: datetime = Field(default_factory=datetime.utcnow, index=True)


class SyncErrorRecord(SQLModel, table=True):
    """Ошибка применения одного элемента. Удаляется только очисткой по возрасту."""
    __tablename__ = "sync_errors"

    id: Optional[int] = Field(default=None, primary_key=True)
    run_id: str = Field(index=True, description="Идентификатор запуска")
    item_key: str = Field(index=True, description="Ключ элемента (SKU или позиция в диапазоне)")
    item_payload: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    error_code: str = Field(index=True, description="Нормализованный код ошибки")
    error_message: str = ""
    timestamp: datetime = Field(default_factory=datetime.utcnow, index=True)

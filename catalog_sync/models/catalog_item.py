from datetime import datetime
from typing import Optional, Dict, Any

from sqlmodel import SQLModel, Field
from sqlalchemy import JSON, Column


class CatalogItem(SQLModel, table=True):
    """Запись локального каталога, адресуемая парой (сущность, ключ)."""
    __tablename__ = "catalog_items"

    entity: str = Field(default="products", primary_key=True)
    key: str = Field(primary_key=True, description="Ключ элемента, уникальный в пределах сущности")
    name: Optional[str] = Field(default=None, description="Отображаемое имя")
    payload: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    last_run_id: Optional[str] = Field(default=None, description="Запуск, последним изменивший запись")
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

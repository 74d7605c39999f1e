"""
 * @file: sync_directions.py
 * @description: Стратегии направлений синхронизации (ERP -> каталог, каталог -> ERP), выбираемые по таблице
 * @dependencies: ErpCatalogGateway, CatalogStore, ItemMapper
 * @created: 2025-03-02
"""
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from catalog_sync.models.sync_run import SyncDirection
from catalog_sync.schemas.sync import SyncFilters
from catalog_sync.services.catalog_store import CatalogStore
from catalog_sync.services.errors import ValidationError
from catalog_sync.services.erp.catalog_api import ErpCatalogGateway
from catalog_sync.services.item_mapping import ItemMapper


class DirectionStrategy(ABC):
    """Источник страниц и способ применения одного элемента для направления синхронизации."""

    def __init__(self, erp: ErpCatalogGateway, store: CatalogStore, mapper: ItemMapper):
        self.erp = erp
        self.store = store
        self.mapper = mapper

    @abstractmethod
    def count(self, entity: str, filters: Optional[SyncFilters]) -> int:
        ...

    @abstractmethod
    def fetch(self, entity: str, start: int, end: int, filters: Optional[SyncFilters]) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    def apply(self, entity: str, item: Dict[str, Any], run_id: str) -> str:
        """Применяет элемент и возвращает его ключ. Ошибка элемента поднимается исключением."""

    def item_key(self, item: Dict[str, Any]) -> Optional[str]:
        try:
            return self.mapper.item_key(item)
        except ValidationError:
            return None


class RemoteToLocalStrategy(DirectionStrategy):
    def count(self, entity, filters):
        return self.erp.count(entity, filters)

    def fetch(self, entity, start, end, filters):
        return self.erp.fetch_page(entity, start, end, filters)

    def apply(self, entity, item, run_id):
        record = self.mapper.to_catalog(item)
        self.store.upsert(entity, record["key"], record["name"], record["payload"], run_id=run_id)
        return record["key"]


class LocalToRemoteStrategy(DirectionStrategy):
    def count(self, entity, filters):
        return self.store.count(entity)

    def fetch(self, entity, start, end, filters):
        return self.store.list_range(entity, start, end)

    def apply(self, entity, item, run_id):
        self.erp.push_item(entity, self.mapper.to_remote(item))
        return item["key"]

    def item_key(self, item):
        return item.get("key")


DIRECTION_STRATEGIES = {
    SyncDirection.REMOTE_TO_LOCAL: RemoteToLocalStrategy,
    SyncDirection.LOCAL_TO_REMOTE: LocalToRemoteStrategy,
}


def build_strategy(direction: SyncDirection, erp: ErpCatalogGateway, store: CatalogStore,
                   mapper: ItemMapper) -> DirectionStrategy:
    return DIRECTION_STRATEGIES[SyncDirection(direction)](erp, store, mapper)

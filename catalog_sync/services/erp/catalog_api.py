"""
 * @file: catalog_api.py
 * @description: Операции ERP каталога (подсчет, страница по диапазону, отправка элемента) поверх устойчивого клиента
 * @dependencies: http_client, schemas.sync
 * @created: 2025-03-02
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from pydantic import BaseModel

from catalog_sync.schemas.sync import SyncFilters
from catalog_sync.services.errors import MalformedResponseError, ValidationError
from catalog_sync.services.erp.http_client import ResilientHttpClient

logger = logging.getLogger("erp.api")


class ErpCatalogGateway(ABC):
    """Контракт удаленной ERP, который использует движок синхронизации."""

    @abstractmethod
    def count(self, entity: str, filters: Optional[SyncFilters] = None) -> int:
        ...

    @abstractmethod
    def fetch_page(self, entity: str, start: int, end: int,
                   filters: Optional[SyncFilters] = None) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    def push_item(self, entity: str, item: Dict[str, Any]) -> Dict[str, Any]:
        ...


class ErpOperation(BaseModel):
    """Описание удаленной операции: метод, путь и способ передачи параметров."""
    method: str
    endpoint: str
    params_in: str = "query"  # query | body
    policy: str = "standard"


# Таблица операций вместо ветвления GET/POST в каждом методе
ERP_OPERATIONS: Dict[str, ErpOperation] = {
    "count": ErpOperation(method="GET", endpoint="/{entity}/count", params_in="query", policy="standard"),
    "fetch_page": ErpOperation(method="GET", endpoint="/{entity}", params_in="query", policy="standard"),
    "push_item": ErpOperation(method="POST", endpoint="/{entity}", params_in="body", policy="critical"),
}

# Ключи, под которыми ERP возвращает список элементов и их количество
ITEM_LIST_KEYS = ("items", "data", "results")
COUNT_KEYS = ("total", "count", "total_items")


class ErpCatalogClient(ErpCatalogGateway):
    def __init__(self, http_client: Optional[ResilientHttpClient] = None,
                 operations: Optional[Dict[str, ErpOperation]] = None):
        self.http = http_client or ResilientHttpClient()
        self.operations = operations or ERP_OPERATIONS

    def call(self, operation: str, entity: str, params: Optional[Dict[str, Any]] = None,
             options: Optional[Dict[str, Any]] = None) -> Any:
        op = self.operations.get(operation)
        if op is None:
            raise ValidationError(f"Неизвестная операция ERP: {operation}")
        endpoint = op.endpoint.format(entity=entity)
        request_options = {"policy": op.policy}
        request_options.update(options or {})
        if op.params_in == "body":
            return self.http.request(op.method, endpoint, body=params, options=request_options)
        return self.http.request(op.method, endpoint, query=params, options=request_options)

    def count(self, entity: str, filters: Optional[SyncFilters] = None) -> int:
        params = filters.as_params() if filters else {}
        payload = self.call("count", entity, params)
        if isinstance(payload, int) and not isinstance(payload, bool):
            return payload
        if isinstance(payload, dict):
            for key in COUNT_KEYS:
                value = payload.get(key)
                if isinstance(value, int) and not isinstance(value, bool):
                    return value
                if isinstance(value, str) and value.isdigit():
                    return int(value)
        raise MalformedResponseError(f"Ответ подсчета {entity} не содержит количества",
                                     context={"url": self.http.last_request_url})

    def fetch_page(self, entity: str, start: int, end: int,
                   filters: Optional[SyncFilters] = None) -> List[Dict[str, Any]]:
        """Загружает элементы с позициями [start, end] (нумерация с 1, границы включены)."""
        if start < 1 or end < start:
            raise ValidationError(f"Некорректный диапазон [{start}, {end}]")
        params: Dict[str, Any] = {"inicio": start, "fin": end}
        if filters:
            params.update(filters.as_params())
        payload = self.call("fetch_page", entity, params)
        items = self._extract_items(payload, entity)
        logger.debug(f"{entity} [{start}, {end}]: получено {len(items)} элементов")
        return items

    def push_item(self, entity: str, item: Dict[str, Any]) -> Dict[str, Any]:
        payload = self.call("push_item", entity, item)
        return payload if isinstance(payload, dict) else {"result": payload}

    def _extract_items(self, payload: Any, entity: str) -> List[Dict[str, Any]]:
        if isinstance(payload, list):
            return payload
        if isinstance(payload, dict):
            for key in ITEM_LIST_KEYS + (entity,):
                value = payload.get(key)
                if isinstance(value, list):
                    return value
        raise MalformedResponseError(f"Ответ страницы {entity} не содержит списка элементов",
                                     context={"url": self.http.last_request_url})

    def close(self):
        self.http.close()

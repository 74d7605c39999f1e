"""
Celery задачи синхронизации каталога: запуск, возобновление, отмена и очистка журнала ошибок.
"""

import logging
from typing import Any, Dict, Optional

from catalog_sync.celery_shared import celery
from catalog_sync import celery_logging  # noqa: F401
from catalog_sync.services.catalog_sync_service import get_sync_service
from catalog_sync.services.errors import ConcurrencyError, NetworkError, RequestTimeoutError, ValidationError
from catalog_sync.utils.logging_config import log_error_with_context

logger = logging.getLogger(__name__)

# Временные ошибки, после которых задачу имеет смысл перезапустить целиком
TRANSIENT_ERRORS = (NetworkError, RequestTimeoutError, ConcurrencyError)


@celery.task(
    bind=True,
    name="catalog_sync.sync_tasks.run_catalog_sync",
    autoretry_for=TRANSIENT_ERRORS,
    retry_kwargs={'max_retries': 3, 'countdown': 60}
)
def run_catalog_sync(self, entity: str, direction: str = "remote_to_local",
                     filters: Optional[Dict[str, Any]] = None, batch_size: Optional[int] = None):
    """
    Запускает синхронизацию сущности и обрабатывает все пакеты.

    Args:
        entity: Сущность ERP (products, customers, orders)
        direction: remote_to_local или local_to_remote
        filters: {"modified_after": "YYYY-MM-DD", "modified_after_time": "HH:MM:SS"}
        batch_size: Размер пакета (по умолчанию из конфигурации и рекомендации)

    Returns:
        Dict: Итоговое состояние запуска
    """
    service = get_sync_service()
    try:
        started = service.start_sync(entity, direction, filters, batch_size)
        logger.info(f"Запуск {started.run_id}: {started.total_items} элементов, {started.total_batches} пакетов")
        status = service.run_sync(entity)
        return {**status.model_dump(mode="json"), "task_id": self.request.id}
    except ValidationError as e:
        logger.error(f"Некорректные параметры синхронизации {entity}: {e.message}")
        raise
    except Exception as e:
        log_error_with_context(e, f"Задача run_catalog_sync упала для {entity}", task_id=self.request.id)
        raise


@celery.task(
    bind=True,
    name="catalog_sync.sync_tasks.resume_catalog_sync",
    autoretry_for=TRANSIENT_ERRORS,
    retry_kwargs={'max_retries': 5, 'countdown': 120}
)
def resume_catalog_sync(self, entity: str, offset: Optional[int] = None, batch_size: Optional[int] = None):
    """Возобновляет прерванную синхронизацию с точки возобновления и доводит ее до конца."""
    service = get_sync_service()
    try:
        resumed = service.resume_sync(entity, offset=offset, batch_size=batch_size)
        logger.info(f"Возобновлен запуск {resumed.run_id} для {entity}")
        status = service.run_sync(entity)
        return {**status.model_dump(mode="json"), "task_id": self.request.id}
    except Exception as e:
        log_error_with_context(e, f"Задача resume_catalog_sync упала для {entity}", task_id=self.request.id)
        raise


@celery.task(name="catalog_sync.sync_tasks.cancel_catalog_sync")
def cancel_catalog_sync(entity: str):
    status = get_sync_service().cancel_sync(entity)
    logger.info(f"Отмена синхронизации {entity}: статус {status.status}")
    return status.model_dump(mode="json")


@celery.task(name="catalog_sync.sync_tasks.cleanup_sync_errors")
def cleanup_sync_errors(days: Optional[int] = None):
    """Удаляет записи журнала ошибок старше срока хранения."""
    deleted = get_sync_service().cleanup_old_sync_errors(days)
    logger.info(f"Очистка журнала ошибок: удалено {deleted} записей")
    return {"deleted": deleted}

"""
 * @file: celery_shared.py
 * @description: Общий объект Celery для задач синхронизации каталога
 * @dependencies: core.config, database
 * @created: 2025-03-02
"""

from celery import Celery
from celery.schedules import crontab

from catalog_sync.core.config import settings
from catalog_sync.database import SessionLocal  # noqa: F401

# Инициализация Celery
celery = Celery(
    "catalog_sync",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.result_backend,
    include=["catalog_sync.sync_tasks"]
)

# Настройка Celery
celery.conf.update(
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    worker_hijack_root_logger=False,  # Логирование настраивается в celery_logging
    worker_log_format='[%(asctime)s: %(levelname)s/%(processName)s] %(message)s',
    worker_task_log_format='[%(asctime)s: %(levelname)s/%(processName)s][%(task_name)s(%(task_id)s)] %(message)s',
    broker_connection_retry_on_startup=True
)

# Периодические задачи
celery.conf.beat_schedule = {
    "cleanup-sync-errors-daily": {
        "task": "catalog_sync.sync_tasks.cleanup_sync_errors",
        "schedule": crontab(hour=3, minute=30),
    },
}

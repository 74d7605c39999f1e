import logging

from celery.signals import setup_logging

from catalog_sync.utils.logging_config import setup_project_logging


@setup_logging.connect
def configure_celery_logging(**kwargs):
    """Celery пишет в те же хендлеры, что и остальной проект."""
    setup_project_logging()
    root_handlers = logging.getLogger().handlers

    # Используем тот же форматтер и хендлеры, что и в основном приложении
    for name in ('celery', 'celery.beat'):
        celery_logger = logging.getLogger(name)
        celery_logger.handlers = list(root_handlers)
        celery_logger.propagate = False

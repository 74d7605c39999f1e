"""
 * @file: logging_config.py
 * @description: Конфигурация логирования движка синхронизации с фильтрацией технических логов
 * @dependencies: logging, os, RotatingFileHandler
 * @created: 2025-03-02
"""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from typing import Optional

LOG_PATH = os.getenv("LOG_PATH", os.path.join(os.getcwd(), "logs"))

# Переменные окружения для управления логированием
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
ENABLE_SQL_LOGS = os.getenv("ENABLE_SQL_LOGS", "false").lower() == "true"

TECHNICAL_LOGGERS = [
    "sqlalchemy.engine",
    "sqlalchemy.pool",
    "sqlalchemy.dialects",
    "sqlalchemy.orm",
    "httpx",
    "httpcore",
    "celery.worker",
    "celery.beat",
    "celery.app",
    "kombu",
    "redis",
]

# Логгеры бизнес-логики синхронизации
BUSINESS_LOGGERS = [
    "catalog.sync",
    "erp.api",
    "sync.lock",
    "sync.memory",
    "sync.metrics",
    "sync.recovery",
]

_SQL_MARKERS = (("SELECT", "FROM"), ("INSERT", "INTO"), ("UPDATE", "SET"), ("DELETE", "FROM"))


class BusinessLogicFilter(logging.Filter):
    """
    Фильтр для отображения только бизнес-логики, исключая технические детали
    """
    def filter(self, record):
        for prefix in TECHNICAL_LOGGERS:
            if record.name.startswith(prefix):
                return False

        # Исключаем сообщения с SQL запросами
        if isinstance(record.msg, str):
            for first, second in _SQL_MARKERS:
                if first in record.msg and second in record.msg:
                    return False
        return True


class ColoredFormatter(logging.Formatter):
    """
    Форматтер с цветным выводом для консоли
    """
    COLORS = {
        'DEBUG': '\033[36m',
        'INFO': '\033[32m',
        'WARNING': '\033[33m',
        'ERROR': '\033[31m',
        'CRITICAL': '\033[35m',
        'RESET': '\033[0m'
    }

    def __init__(self, fmt: Optional[str] = None, datefmt: Optional[str] = None, use_color: bool = True):
        super().__init__(fmt, datefmt)
        self.use_color = use_color

    def format(self, record):
        if self.use_color:
            # Копия записи: остальные обработчики получают уровень без escape-кодов
            record = logging.makeLogRecord(record.__dict__)
            color = self.COLORS.get(record.levelname, self.COLORS['RESET'])
            reset = self.COLORS['RESET']
            record.levelname = f"{color}{record.levelname}{reset}"
        return super().format(record)


def setup_project_logging(log_level: Optional[str] = None, enable_sql_logs: Optional[bool] = None,
                          log_to_files: bool = True) -> logging.Logger:
    """
    Настраивает логирование для всего проекта.

    Args:
        log_level: Уровень логирования (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        enable_sql_logs: Включить логи SQL запросов (для отладки)
        log_to_files: Писать ли логи в ротируемые файлы в LOG_PATH
    """
    if log_level is None:
        log_level = LOG_LEVEL
    if enable_sql_logs is None:
        enable_sql_logs = ENABLE_SQL_LOGS

    numeric_level = getattr(logging, log_level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_formatter = ColoredFormatter(
        '%(asctime)s [%(levelname)s] %(name)s: %(message)s',
        datefmt='%H:%M:%S',
        use_color=sys.stdout.isatty()
    )
    file_formatter = logging.Formatter(
        '%(asctime)s [%(levelname)s] %(name)s: %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(console_formatter)
    console_handler.setLevel(numeric_level)
    if not enable_sql_logs:
        console_handler.addFilter(BusinessLogicFilter())

    handlers = [console_handler]

    if log_to_files:
        os.makedirs(LOG_PATH, exist_ok=True)
        file_handler = RotatingFileHandler(
            os.path.join(LOG_PATH, "app.log"),
            maxBytes=10*1024*1024,  # 10MB
            backupCount=5,
            encoding='utf-8'
        )
        file_handler.setFormatter(file_formatter)
        file_handler.setLevel(logging.DEBUG)  # В файл записываем все

        error_handler = RotatingFileHandler(
            os.path.join(LOG_PATH, "errors.log"),
            maxBytes=5*1024*1024,  # 5MB
            backupCount=3,
            encoding='utf-8'
        )
        error_handler.setFormatter(file_formatter)
        error_handler.setLevel(logging.ERROR)
        handlers.extend([file_handler, error_handler])

    root_logger.setLevel(logging.DEBUG)
    for handler in handlers:
        root_logger.addHandler(handler)

    for logger_name in TECHNICAL_LOGGERS:
        module_logger = logging.getLogger(logger_name)
        module_logger.setLevel(logging.WARNING if enable_sql_logs else logging.ERROR)
        module_logger.propagate = False

    app_logger = logging.getLogger("catalog_sync")
    app_logger.setLevel(logging.DEBUG)

    for logger_name in BUSINESS_LOGGERS:
        logging.getLogger(logger_name).setLevel(logging.DEBUG)

    return app_logger


def get_logger(name: str) -> logging.Logger:
    """
    Получить логгер с правильным именем для бизнес-логики
    """
    return logging.getLogger(name)


def log_business_event(event_type: str, message: str, **kwargs):
    """
    Логирует бизнес-событие в удобном формате

    Args:
        event_type: Тип события (sync_started, batch_processed и т.д.)
        message: Сообщение о событии
        **kwargs: Дополнительные параметры для логирования
    """
    logger = get_logger("catalog.sync")
    extra_info = " | ".join([f"{k}={v}" for k, v in kwargs.items()])
    if extra_info:
        logger.info(f"[{event_type.upper()}] {message} | {extra_info}")
    else:
        logger.info(f"[{event_type.upper()}] {message}")


def log_error_with_context(error: Exception, context: str = "", **kwargs):
    """
    Логирует ошибку с контекстом
    """
    logger = get_logger("catalog.sync")
    extra_info = " | ".join([f"{k}={v}" for k, v in kwargs.items()])
    if context:
        logger.error(f"[ERROR] {context}: {str(error)} | {extra_info}")
    else:
        logger.error(f"[ERROR] {str(error)} | {extra_info}")

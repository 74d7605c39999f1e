"""
 * @file: retry_manager.py
 * @description: Внешняя обертка повторов для операций пакета (отдельно от повторов HTTP клиента)
 * @dependencies: errors
 * @created: 2025-03-02
"""

import logging
import random
import time
from typing import Any, Callable, Dict, Optional, TypeVar

from catalog_sync.services.errors import is_retryable

logger = logging.getLogger("catalog.sync")

T = TypeVar("T")


class RetryManager:
    """
    Повторяет операцию при восстановимых ошибках с экспоненциальной задержкой и случайной добавкой.

    Задержка перед повтором n (с 1): base * 2**(n-1) + U(0, 1), не более max_delay.
    base берется из retry_delay ошибки, если он задан.
    """
    def __init__(self, max_attempts: int = 3, base_delay: float = 1.0, max_delay: float = 30.0,
                 sleep: Callable[[float], None] = time.sleep, rng: Optional[Callable[[], float]] = None):
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._sleep = sleep
        self._rng = rng or random.random
        self._retry_counts: Dict[str, int] = {}

    def execute(self, operation: Callable[[], T], operation_id: str, max_attempts: Optional[int] = None,
                context: Optional[Dict[str, Any]] = None) -> T:
        attempts = max_attempts or self.max_attempts
        context = context or {}
        attempt = 1
        while True:
            try:
                return operation()
            except Exception as exc:
                if not is_retryable(exc) or attempt >= attempts:
                    if attempt > 1:
                        logger.error(
                            f"Операция {operation_id} не выполнена после {attempt} попыток: {exc} | {context}"
                        )
                    raise
                delay = self.calculate_delay(attempt, getattr(exc, "retry_delay", 0.0))
                self._retry_counts[operation_id] = self._retry_counts.get(operation_id, 0) + 1
                logger.warning(
                    f"Повтор операции {operation_id}: попытка {attempt}/{attempts} завершилась ошибкой "
                    f"'{exc}', следующая через {delay:.2f}с | {context}"
                )
                self._sleep(delay)
                attempt += 1

    def calculate_delay(self, attempt: int, error_delay: float = 0.0) -> float:
        base = error_delay or self.base_delay
        return min(base * (2 ** (attempt - 1)) + self._rng(), self.max_delay)

    def get_retry_count(self, operation_id: str) -> int:
        return self._retry_counts.get(operation_id, 0)

    def reset(self, operation_id: Optional[str] = None):
        if operation_id is None:
            self._retry_counts.clear()
        else:
            self._retry_counts.pop(operation_id, None)

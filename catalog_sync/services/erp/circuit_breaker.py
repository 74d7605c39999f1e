"""
 * @file: circuit_breaker.py
 * @description: Автоматический выключатель для вызовов ERP (closed -> open -> half-open -> closed)
 * @dependencies: threading, time
 * @created: 2025-03-02
"""

import logging
import threading
import time
from enum import Enum
from typing import Callable, Dict, Any, Optional

logger = logging.getLogger("erp.api")


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Автоматический выключатель.

    После failure_threshold подряд идущих ошибок переходит в open и отклоняет вызовы,
    пока не пройдет recovery_timeout. Затем пропускает не более half_open_max_calls
    пробных вызовов: любой успех замыкает цепь, любая ошибка снова размыкает.
    """
    def __init__(self, failure_threshold: int = 5, recovery_timeout: float = 300.0,
                 half_open_max_calls: int = 3, clock: Optional[Callable[[], float]] = None,
                 name: str = "erp"):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.half_open_max_calls = half_open_max_calls
        self.name = name
        self._clock = clock or time.monotonic
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._opened_at: Optional[float] = None
        self._half_open_calls = 0
        self.lock = threading.Lock()

    @property
    def state(self) -> CircuitState:
        with self.lock:
            self._maybe_half_open()
            return self._state

    def allow_request(self) -> bool:
        """Резервирует право на вызов. Возвращает False, если вызов нужно отклонить."""
        with self.lock:
            self._maybe_half_open()
            if self._state == CircuitState.CLOSED:
                return True
            if self._state == CircuitState.HALF_OPEN and self._half_open_calls < self.half_open_max_calls:
                self._half_open_calls += 1
                return True
            return False

    def record_success(self):
        with self.lock:
            if self._state != CircuitState.CLOSED:
                logger.info(f"Circuit '{self.name}': пробный вызов успешен, цепь замкнута")
            self._state = CircuitState.CLOSED
            self._failures = 0
            self._opened_at = None
            self._half_open_calls = 0

    def record_failure(self):
        with self.lock:
            if self._state == CircuitState.HALF_OPEN:
                self._open()
                return
            self._failures += 1
            if self._state == CircuitState.CLOSED and self._failures >= self.failure_threshold:
                self._open()

    def reset(self):
        with self.lock:
            self._state = CircuitState.CLOSED
            self._failures = 0
            self._opened_at = None
            self._half_open_calls = 0

    def seconds_until_half_open(self) -> float:
        with self.lock:
            if self._state != CircuitState.OPEN or self._opened_at is None:
                return 0.0
            return max(0.0, self.recovery_timeout - (self._clock() - self._opened_at))

    def get_state(self) -> Dict[str, Any]:
        with self.lock:
            self._maybe_half_open()
            return {
                "state": self._state.value,
                "consecutive_failures": self._failures,
                "half_open_calls": self._half_open_calls,
                "failure_threshold": self.failure_threshold,
                "recovery_timeout": self.recovery_timeout,
            }

    def _open(self):
        self._state = CircuitState.OPEN
        self._opened_at = self._clock()
        self._half_open_calls = 0
        logger.warning(
            f"Circuit '{self.name}' разомкнут после {self._failures} ошибок подряд, "
            f"пауза {self.recovery_timeout}с"
        )

    def _maybe_half_open(self):
        # Вызывается под self.lock
        if self._state == CircuitState.OPEN and self._opened_at is not None:
            if self._clock() - self._opened_at >= self.recovery_timeout:
                self._state = CircuitState.HALF_OPEN
                self._half_open_calls = 0
                logger.info(f"Circuit '{self.name}' переведен в half-open")

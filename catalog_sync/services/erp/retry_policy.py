"""
 * @file: retry_policy.py
 * @description: Именованные политики повторов HTTP-запросов и расчет задержки
 * @dependencies: pydantic, random
 * @created: 2025-03-02
"""
import random
from enum import Enum
from typing import Callable, Dict, Optional

from pydantic import BaseModel, ConfigDict

MIN_JITTERED_DELAY = 0.1


class RetryStrategy(str, Enum):
    EXPONENTIAL = "exponential"
    LINEAR = "linear"
    FIXED = "fixed"
    CUSTOM = "custom"


class RetryPolicy(BaseModel):
    """Политика повторов: количество, стратегия и границы задержки."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: str
    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 60.0
    backoff_multiplier: float = 2.0
    jitter: bool = True
    strategy: RetryStrategy = RetryStrategy.EXPONENTIAL
    # (номер повтора, политика) -> задержка в секундах
    custom_delay: Optional[Callable[..., float]] = None

    def compute_delay(self, retry_index: int, rng: Optional[Callable[[], float]] = None) -> float:
        """
        Задержка перед повтором с номером retry_index (0 для первого повтора).

        Задержка ограничивается max_delay и затем сдвигается на случайные ±10%,
        но не опускается ниже MIN_JITTERED_DELAY.
        """
        if self.strategy == RetryStrategy.LINEAR:
            delay = self.base_delay + retry_index * self.base_delay
        elif self.strategy == RetryStrategy.FIXED:
            delay = self.base_delay
        elif self.strategy == RetryStrategy.CUSTOM and self.custom_delay is not None:
            delay = float(self.custom_delay(retry_index, self))
        else:
            delay = self.base_delay * (self.backoff_multiplier ** retry_index)

        delay = min(delay, self.max_delay)

        if self.jitter:
            rand = rng or random.random
            jitter_range = delay * 0.1
            delay = max(MIN_JITTERED_DELAY, delay + (rand() * 2 - 1) * jitter_range)
        return delay


DEFAULT_POLICIES: Dict[str, RetryPolicy] = {
    # Критичные операции: больше попыток, длинные паузы
    "critical": RetryPolicy(name="critical", max_retries=5, base_delay=2.0, max_delay=120.0,
                            backoff_multiplier=2.5, jitter=True, strategy=RetryStrategy.EXPONENTIAL),
    "standard": RetryPolicy(name="standard", max_retries=3, base_delay=1.0, max_delay=60.0,
                            backoff_multiplier=2.0, jitter=True, strategy=RetryStrategy.EXPONENTIAL),
    # Фоновые задачи: много попыток, линейный рост
    "background": RetryPolicy(name="background", max_retries=7, base_delay=5.0, max_delay=300.0,
                              backoff_multiplier=1.5, jitter=True, strategy=RetryStrategy.LINEAR),
    # Интерактивные вызовы: минимальная задержка
    "realtime": RetryPolicy(name="realtime", max_retries=2, base_delay=0.5, max_delay=5.0,
                            backoff_multiplier=2.0, jitter=False, strategy=RetryStrategy.EXPONENTIAL),
}


def get_policy(name: Optional[str], policies: Optional[Dict[str, RetryPolicy]] = None) -> RetryPolicy:
    """Возвращает политику по имени, при неизвестном имени используется standard."""
    table = policies or DEFAULT_POLICIES
    if name and name in table:
        return table[name]
    return table.get("standard", DEFAULT_POLICIES["standard"])

"""
 * @file: memory_guard.py
 * @description: Контроль памяти процесса синхронизации: проверка лимита, уменьшение пакета, очистка
 * @dependencies: psutil, gc
 * @created: 2025-03-02
"""

import gc
import logging
import time
from typing import Callable, List, Optional

import psutil

from catalog_sync.core.sync_config import SyncConfig, sync_config
from catalog_sync.schemas.sync import MemorySnapshot, CleanupStats
from catalog_sync.services.errors import MemoryPressureError

logger = logging.getLogger("sync.memory")

MB = 1024 * 1024


class MemoryGuard:
    """
    Следит за RSS процесса.

    is_over_limit сравнивает текущее потребление с limit * buffer_fraction.
    adjust_batch_size делит пакет пополам, когда потребление выше pressure_fraction
    от доступной памяти (лимит, а без лимита вся память системы).
    """
    def __init__(self, config: Optional[SyncConfig] = None, sampler: Optional[Callable[[], float]] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.config = config or sync_config
        self.limit_mb = self.config.memory_limit_mb
        self.buffer_fraction = self.config.memory_buffer_fraction
        self.pressure_fraction = self.config.memory_pressure_fraction
        self.cleanup_item_interval = self.config.cleanup_item_interval
        self.cleanup_time_interval = self.config.cleanup_time_interval_seconds
        self._sampler = sampler or self._process_rss_mb
        self._clock = clock
        self._process = psutil.Process()
        self._evictors: List[Callable[[], None]] = []
        self.peak_mb = 0.0
        self.items_since_cleanup = 0
        self.last_cleanup_at = clock()
        self.cleanups = 0

    def _process_rss_mb(self) -> float:
        return self._process.memory_info().rss / MB

    def current_mb(self) -> float:
        value = float(self._sampler())
        if value > self.peak_mb:
            self.peak_mb = value
        return value

    def available_mb(self) -> float:
        if self.limit_mb:
            return float(self.limit_mb)
        return psutil.virtual_memory().total / MB

    def snapshot(self) -> MemorySnapshot:
        current = self.current_mb()
        usage = None
        if self.limit_mb:
            usage = round(current / self.limit_mb * 100, 2)
        return MemorySnapshot(current_mb=round(current, 2), peak_mb=round(self.peak_mb, 2),
                              limit_mb=self.limit_mb, usage_percent=usage)

    def is_over_limit(self, limit_mb: Optional[float] = None) -> bool:
        limit = limit_mb or self.limit_mb
        if not limit:
            return False
        return self.current_mb() > limit * self.buffer_fraction

    def adjust_batch_size(self, current: int, minimum: Optional[int] = None) -> int:
        """Возвращает новый размер пакета: половину текущего при давлении на память, иначе текущий."""
        floor = minimum if minimum is not None else self.config.min_batch_size
        usage = self.current_mb()
        threshold = self.available_mb() * self.pressure_fraction
        if usage > threshold and current > floor:
            new_size = max(floor, current // 2)
            logger.warning(
                f"Память {usage:.1f}MB выше {threshold:.1f}MB: размер пакета {current} -> {new_size}"
            )
            return new_size
        return current

    def check_pressure(self, batch_size: int, minimum: Optional[int] = None) -> int:
        """
        Проверка перед пакетом. Возвращает размер пакета, с которым можно продолжать.

        Raises:
            MemoryPressureError: пакет уже минимальный, а память после очистки все еще выше лимита
        """
        floor = minimum if minimum is not None else self.config.min_batch_size
        new_size = self.adjust_batch_size(batch_size, floor)
        if not self.is_over_limit():
            return new_size
        self.cleanup("pressure")
        if self.is_over_limit() and new_size <= floor:
            usage = self.current_mb()
            raise MemoryPressureError(
                f"Память {usage:.1f}MB выше {self.buffer_fraction:.0%} лимита {self.limit_mb}MB "
                f"при минимальном пакете {floor}",
                usage_mb=usage, limit_mb=self.limit_mb,
            )
        if self.is_over_limit():
            new_size = max(floor, new_size // 2)
            logger.warning(f"Память выше лимита после очистки, пакет уменьшен до {new_size}")
        return new_size

    def register_evictor(self, evictor: Callable[[], None]):
        """Регистрирует функцию сброса кэша, вызываемую при очистке."""
        self._evictors.append(evictor)

    def cleanup(self, context: str = "batch") -> CleanupStats:
        before = self.snapshot()
        collected = gc.collect()
        evicted = 0
        for evictor in self._evictors:
            try:
                evictor()
                evicted += 1
            except Exception as e:
                logger.warning(f"Ошибка сброса кэша при очистке ({context}): {e}")
        after = self.snapshot()
        self.items_since_cleanup = 0
        self.last_cleanup_at = self._clock()
        self.cleanups += 1
        stats = CleanupStats(context=context, before=before, after=after,
                             collected_objects=collected, evicted_caches=evicted)
        logger.debug(
            f"Очистка памяти ({context}): {before.current_mb}MB -> {after.current_mb}MB, "
            f"объектов собрано {collected}, кэшей сброшено {evicted}"
        )
        return stats

    def record_items(self, count: int = 1, context: str = "items") -> Optional[CleanupStats]:
        """Учитывает обработанные элементы; запускает очистку по счетчику или по времени."""
        self.items_since_cleanup += count
        elapsed = self._clock() - self.last_cleanup_at
        if self.items_since_cleanup >= self.cleanup_item_interval or elapsed >= self.cleanup_time_interval:
            return self.cleanup(context)
        return None

"""
 * @file: range_recovery.py
 * @description: Восстановление проблемного диапазона рекурсивным делением пополам с ограничением глубины
 * @dependencies: SyncConfig, SyncMetricsLedger, errors
 * @created: 2025-03-02
"""

import logging
import time
from typing import Callable, Dict, Any, List, Optional, Tuple

from catalog_sync.core.sync_config import SyncConfig, sync_config
from catalog_sync.schemas.sync import PageRange, ApplyResult, RangeResult
from catalog_sync.services.errors import (
    SyncError,
    MemoryPressureError,
    RangeSyncError,
    ExcessiveSubdivisionError,
)
from catalog_sync.services.sync_metrics import SyncMetricsLedger

logger = logging.getLogger("sync.recovery")

FetchRange = Callable[[int, int], List[Dict[str, Any]]]
ApplyItems = Callable[[List[Dict[str, Any]]], ApplyResult]


class RangeSubdivisionRecovery:
    """
    Синхронизация диапазона [start, end] с делением при сбоях.

    Диапазон не больше безопасного порога глубины загружается напрямую
    (recovery_direct_attempts попыток с паузой 2**n секунд). Больший или
    проблемный диапазон делится пополам, половины обрабатываются независимо.
    Если не удалась одна половина, возвращается результат другой, а неразрешенный
    диапазон попадает в failed_ranges и журнал ошибок. Если не удались обе,
    поднимается RangeSyncError.
    """
    def __init__(self, config: Optional[SyncConfig] = None, ledger: Optional[SyncMetricsLedger] = None,
                 sleep: Callable[[float], None] = time.sleep):
        self.config = config or sync_config
        self.ledger = ledger
        self._sleep = sleep
        self.known_bad_ranges: List[Tuple[int, int]] = [tuple(r) for r in self.config.known_problematic_ranges]

    def is_problematic(self, page: PageRange) -> bool:
        if page.size > self.config.recovery_problematic_size:
            return True
        return any(page.overlaps(start, end) for start, end in self.known_bad_ranges)

    def register_bad_range(self, start: int, end: int):
        if (start, end) not in self.known_bad_ranges:
            self.known_bad_ranges.append((start, end))

    def clear_bad_ranges(self, page: PageRange):
        """Забывает проблемные диапазоны, целиком загруженные успешным запросом."""
        cleared = [(s, e) for s, e in self.known_bad_ranges if page.start <= s and e <= page.end]
        if cleared:
            logger.info(f"Диапазон {page} загружен, сняты отметки проблемных диапазонов {cleared}")
            self.known_bad_ranges = [r for r in self.known_bad_ranges if r not in cleared]

    def _must_split(self, page: PageRange, depth: int) -> bool:
        if page.size > self.config.safe_range_threshold(depth):
            return True
        # Проблемный диапазон делится, пока не достиг минимального порога или предельной глубины
        if depth + 1 >= self.config.recovery_max_depth or page.size <= self.config.recovery_thresholds[-1]:
            return False
        return self.is_problematic(page)

    def sync_range(self, start: int, end: int, fetch: FetchRange, apply: ApplyItems,
                   run_id: Optional[str] = None, depth: int = 0) -> RangeResult:
        page = PageRange(start=start, end=end)
        if not self._must_split(page, depth):
            return self._sync_direct(page, fetch, apply, run_id, depth)

        if depth >= self.config.recovery_max_depth:
            logger.error(f"Диапазон {page}: достигнута максимальная глубина деления {depth}")
            raise ExcessiveSubdivisionError(start, end, depth)

        left, right = page.split()
        logger.info(f"Деление {page} на {left} и {right} (глубина {depth + 1})")

        results: List[RangeResult] = []
        failures: List[RangeSyncError] = []
        for half in (left, right):
            try:
                results.append(self.sync_range(half.start, half.end, fetch, apply, run_id, depth + 1))
            except RangeSyncError as e:
                failures.append(e)

        if len(failures) == 2:
            if all(isinstance(f, ExcessiveSubdivisionError) for f in failures):
                raise ExcessiveSubdivisionError(start, end, max(f.depth for f in failures))
            error = RangeSyncError(start, end, f"Не удалось синхронизировать обе половины {page}",
                                   cause=failures[-1],
                                   recorded=all(f.recorded for f in failures))
            raise error

        result = RangeResult(start=start, end=end, subdivided=True, max_depth_reached=depth + 1)
        for part in results:
            result.processed += part.processed
            result.errors += part.errors
            result.failed_ranges.extend(part.failed_ranges)
            result.max_depth_reached = max(result.max_depth_reached, part.max_depth_reached)
        for failure in failures:
            if not failure.recorded:
                self._record_unresolved(run_id, failure.start, failure.end, failure)
            result.failed_ranges.append((failure.start, failure.end))
            logger.warning(f"Диапазон [{failure.start}, {failure.end}] не восстановлен, продолжаем с {page}")
        return result

    def _sync_direct(self, page: PageRange, fetch: FetchRange, apply: ApplyItems,
                     run_id: Optional[str], depth: int) -> RangeResult:
        attempts = self.config.recovery_direct_attempts
        last_error: Optional[SyncError] = None
        for attempt in range(attempts):
            try:
                items = fetch(page.start, page.end)
            except MemoryPressureError:
                raise
            except SyncError as e:
                last_error = e
                logger.warning(f"Диапазон {page}: попытка {attempt + 1}/{attempts} не удалась: {e.message}")
                if attempt < attempts - 1:
                    self._sleep(2 ** attempt)
                continue

            if len(items) > page.size:
                logger.warning(f"Диапазон {page}: ERP вернула {len(items)} элементов, лишние отброшены")
                items = items[:page.size]
            self.clear_bad_ranges(page)
            applied = apply(items)
            return RangeResult(start=page.start, end=page.end, processed=applied.processed,
                               errors=applied.errors, max_depth_reached=depth)

        self.register_bad_range(page.start, page.end)
        self._record_unresolved(run_id, page.start, page.end, last_error)
        error = RangeSyncError(page.start, page.end,
                               f"Диапазон {page} не загружен за {attempts} попыток: "
                               f"{last_error.message if last_error else ''}",
                               cause=last_error, recorded=True)
        raise error

    def _record_unresolved(self, run_id: Optional[str], start: int, end: int, cause: Optional[BaseException]):
        if self.ledger is None or run_id is None:
            return
        code = cause.kind if isinstance(cause, SyncError) else "range"
        message = cause.message if isinstance(cause, SyncError) else str(cause)
        self.ledger.record_range_errors(run_id, start, end, code, message)

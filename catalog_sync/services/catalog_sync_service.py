"""
 * @file: catalog_sync_service.py
 * @description: Оркестратор пакетной синхронизации каталога: старт, цикл пакетов, возобновление, отмена, статистика
 * @dependencies: SyncLockManager, MemoryGuard, RangeSubdivisionRecovery, SyncMetricsLedger, RetryManager,
 *                RunRepository, DirectionStrategy
 * @created: 2025-03-02
"""

import logging
import math
import time
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Set, Union

from pydantic import ValidationError as PydanticValidationError

from catalog_sync.core.sync_config import SyncConfig, sync_config
from catalog_sync.models.sync_run import (
    SyncDirection,
    SyncStatus,
    SyncRunState,
    SyncHistoryEntry,
    SyncProgressMarker,
)
from catalog_sync.repositories.lock_repository import LockRepository
from catalog_sync.repositories.run_repository import RunRepository, HistoryRepository, ProgressMarkerRepository
from catalog_sync.schemas.sync import (
    SyncFilters,
    PageRange,
    ApplyResult,
    RangeResult,
    SyncStartResult,
    BatchProgress,
    SyncStatusInfo,
    ErrorStats,
    LockInfo,
    PerformanceMetrics,
    BatchSizeRecommendation,
    RetryErrorsResult,
    PrerequisiteCheck,
)
from catalog_sync.services.catalog_store import CatalogStore, SqlCatalogStore
from catalog_sync.services.errors import (
    SyncError,
    ValidationError,
    ConcurrencyError,
    MalformedResponseError,
    MemoryPressureError,
    RangeSyncError,
    classify_exception,
)
from catalog_sync.services.erp.catalog_api import ErpCatalogGateway, ErpCatalogClient
from catalog_sync.services.item_mapping import ItemMapper
from catalog_sync.services.memory_guard import MemoryGuard
from catalog_sync.services.range_recovery import RangeSubdivisionRecovery
from catalog_sync.services.retry_manager import RetryManager
from catalog_sync.services.sync_directions import DirectionStrategy, build_strategy
from catalog_sync.services.sync_lock import SyncLockManager
from catalog_sync.services.sync_metrics import SyncMetricsLedger
from catalog_sync.utils.logging_config import log_business_event, log_error_with_context

logger = logging.getLogger("catalog.sync")


class CatalogSyncService:
    """
    Синхронизация каталога между ERP и локальным хранилищем пакетами.

    Один запуск на сущность: запись sync_runs защищена межпроцессной блокировкой,
    а все изменения записи идут через compare-and-swap. Пакет продвигается только
    после сохранения его результата, поэтому возобновление повторяет ровно
    необработанный диапазон.
    """
    def __init__(
        self,
        erp: Optional[ErpCatalogGateway] = None,
        store: Optional[CatalogStore] = None,
        mapper: Optional[ItemMapper] = None,
        config: Optional[SyncConfig] = None,
        session_factory=None,
        lock_manager: Optional[SyncLockManager] = None,
        memory_guard: Optional[MemoryGuard] = None,
        ledger: Optional[SyncMetricsLedger] = None,
        recovery: Optional[RangeSubdivisionRecovery] = None,
        retry_manager: Optional[RetryManager] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config or sync_config
        self._clock = clock
        self._sleep = sleep
        self.erp = erp or ErpCatalogClient()
        self.store = store or SqlCatalogStore(session_factory)
        self.mapper = mapper or ItemMapper()
        self.runs = RunRepository(session_factory)
        self.history = HistoryRepository(session_factory, limit=self.config.history_limit)
        self.markers = ProgressMarkerRepository(session_factory)
        self.ledger = ledger or SyncMetricsLedger(session_factory, clock=clock)
        self.lock_manager = lock_manager or SyncLockManager(
            LockRepository(session_factory), config=self.config, clock=clock, sleep=sleep
        )
        self.memory_guard = memory_guard or MemoryGuard(self.config)
        self.recovery = recovery or RangeSubdivisionRecovery(self.config, ledger=self.ledger, sleep=sleep)
        self.retry_manager = retry_manager or RetryManager(
            max_attempts=self.config.outer_retry_attempts,
            base_delay=self.config.outer_retry_base_delay,
            max_delay=self.config.outer_retry_max_delay,
            sleep=sleep,
        )
        # Сущности, по которым в этом экземпляре сейчас выполняется цикл пакетов
        self._active: Set[str] = set()

    # Параметры

    def validate_params(self, entity: str, direction: Union[str, SyncDirection] = SyncDirection.REMOTE_TO_LOCAL,
                        filters: Union[SyncFilters, Dict[str, Any], None] = None,
                        batch_size: Optional[int] = None):
        if not entity or entity not in self.config.supported_entities:
            raise ValidationError(f"Неподдерживаемая сущность: {entity!r}",
                                  context={"supported": self.config.supported_entities})
        try:
            direction = SyncDirection(direction)
        except ValueError:
            raise ValidationError(f"Неизвестное направление синхронизации: {direction!r}")
        if filters is None:
            filters = SyncFilters()
        elif isinstance(filters, dict):
            try:
                filters = SyncFilters(**filters)
            except PydanticValidationError as e:
                raise ValidationError(f"Некорректные фильтры: {e}")
        if batch_size is not None and not (self.config.min_batch_size <= batch_size <= self.config.max_batch_size):
            raise ValidationError(
                f"Размер пакета {batch_size} вне диапазона "
                f"{self.config.min_batch_size}..{self.config.max_batch_size}"
            )
        return direction, filters

    def _strategy(self, direction: Union[str, SyncDirection]) -> DirectionStrategy:
        return build_strategy(SyncDirection(direction), self.erp, self.store, self.mapper)

    def _initial_batch_size(self, entity: str, batch_size: Optional[int]) -> int:
        if batch_size is not None:
            return batch_size
        size = self.config.default_batch_size
        recommendation = self.ledger.calculate_optimal_batch_size(entity)
        if recommendation.confidence in ("medium", "high") and recommendation.recommended < size:
            logger.info(f"{entity}: размер пакета {size} ограничен рекомендацией {recommendation.recommended}")
            size = recommendation.recommended
        return max(self.config.min_batch_size, min(self.config.max_batch_size, size))

    # Старт

    def start_sync(self, entity: str, direction: Union[str, SyncDirection] = SyncDirection.REMOTE_TO_LOCAL,
                   filters: Union[SyncFilters, Dict[str, Any], None] = None,
                   batch_size: Optional[int] = None) -> SyncStartResult:
        """
        Начинает новый запуск синхронизации.

        Raises:
            ValidationError: некорректные параметры
            ConcurrencyError: по сущности уже идет синхронизация
        """
        direction, filters = self.validate_params(entity, direction, filters, batch_size)

        current = self.runs.get(entity)
        if current is not None and current.status == SyncStatus.RUNNING:
            if self.lock_manager.is_locked(entity) or entity in self._active:
                raise ConcurrencyError(f"Синхронизация {entity} уже выполняется (run {current.run_id})",
                                       context={"run_id": current.run_id})
            logger.warning(f"{entity}: запуск {current.run_id} брошен без блокировки, помечаем отмененным")
            self._finalize(current, SyncStatus.CANCELLED, release_lock=False)

        if not self.lock_manager.acquire(entity):
            raise ConcurrencyError(f"Не удалось получить блокировку {entity}")

        try:
            strategy = self._strategy(direction)
            total_items = self.retry_manager.execute(
                lambda: strategy.count(entity, filters), f"count:{entity}",
                context={"entity": entity, "filters": filters.as_params()},
            )
            if not isinstance(total_items, int) or total_items < 0:
                raise MalformedResponseError(f"Некорректное количество элементов: {total_items!r}")

            size = self._initial_batch_size(entity, batch_size)
            now = self._clock()
            run = SyncRunState(
                entity=entity,
                run_id=uuid.uuid4().hex,
                direction=direction,
                status=SyncStatus.RUNNING,
                batch_size=size,
                current_batch=0,
                total_batches=math.ceil(total_items / size),
                next_offset=0,
                items_synced=0,
                total_items=total_items,
                error_count=0,
                filters=filters.model_dump(mode="json"),
                recovery_mode=False,
                cancel_requested=False,
                start_time=now,
                last_update_time=now,
            )
            run = self.runs.begin(run)
            self.markers.delete(entity)
        except Exception:
            self.lock_manager.release(entity)
            raise

        self.ledger.start_operation(run.run_id, {"entity": entity, "direction": direction.value})
        log_business_event("sync_started", f"Синхронизация {entity} начата",
                           run_id=run.run_id, direction=direction.value,
                           total_items=total_items, batch_size=size, total_batches=run.total_batches)

        if total_items == 0:
            run = self._finalize(run, SyncStatus.COMPLETED)

        return SyncStartResult(
            run_id=run.run_id,
            entity=entity,
            direction=direction.value,
            total_items=total_items,
            total_batches=run.total_batches,
            batch_size=size,
        )

    # Пакет

    def _require_running(self, entity: str) -> SyncRunState:
        run = self.runs.get(entity)
        if run is None or run.status != SyncStatus.RUNNING:
            raise ValidationError(f"Нет активной синхронизации {entity}")
        return run

    def _ensure_lock(self, entity: str):
        if self.lock_manager.owns(entity):
            self.lock_manager.update_heartbeat(entity)
            return
        if not self.lock_manager.acquire(entity, retries=0):
            raise ConcurrencyError(f"Блокировка {entity} принадлежит другому процессу")

    def process_next_batch(self, entity: str, recovery_mode: Optional[bool] = None) -> BatchProgress:
        """
        Обрабатывает следующий пакет активного запуска.

        Пакет с номером current_batch загружается диапазоном
        [next_offset + 1, next_offset + batch_size]. Загрузка обернута внешними
        повторами (recovery_retry_attempts в режиме восстановления); некорректный
        ответ или исчерпанные повторы передаются восстановлению делением.
        Ошибки элементов записываются в журнал и не прерывают пакет.

        Raises:
            MemoryPressureError: нужно приостановиться и повторить пакет позже
            RangeSyncError: диапазон не восстановлен; пакет не продвинут
            SyncError: фатальная ошибка ERP; пакет не продвинут
        """
        run = self._require_running(entity)
        if run.cancel_requested:
            run = self._finalize(run, SyncStatus.CANCELLED)
            return self._progress(run, run.current_batch, None, ApplyResult(), None, 0.0)

        self._ensure_lock(entity)

        if run.next_offset >= run.total_items:
            run = self._finalize(run, SyncStatus.COMPLETED)
            return self._progress(run, run.current_batch, None, ApplyResult(), None, 0.0)

        recovery = run.recovery_mode if recovery_mode is None else recovery_mode

        batch_size = self.memory_guard.check_pressure(run.batch_size, self.config.min_batch_size)
        if batch_size != run.batch_size:
            remaining = max(0, run.total_items - run.next_offset)
            run = self.runs.compare_and_swap(
                entity, run.version,
                batch_size=batch_size,
                total_batches=run.current_batch + math.ceil(remaining / batch_size),
            )

        batch_number = run.current_batch
        page = PageRange.from_offset(run.next_offset, batch_size)
        filters = SyncFilters(**(run.filters or {}))
        strategy = self._strategy(run.direction)

        self.markers.save(SyncProgressMarker(
            entity=entity,
            run_id=run.run_id,
            direction=run.direction,
            offset=run.next_offset,
            batch_size=batch_size,
            current_batch=batch_number,
            filters=run.filters or {},
            updated_at=self._clock(),
        ))

        def fetch(start: int, end: int) -> List[Dict[str, Any]]:
            return strategy.fetch(entity, start, end, filters)

        def apply(items: List[Dict[str, Any]]) -> ApplyResult:
            return self._apply_items(run, strategy, items)

        started = time.monotonic()
        attempts = self.config.recovery_retry_attempts if recovery else self.config.outer_retry_attempts
        range_result: Optional[RangeResult] = None
        try:
            items = self.retry_manager.execute(
                lambda: fetch(page.start, page.end),
                f"{run.run_id}:batch:{batch_number}",
                max_attempts=attempts,
                context={"entity": entity, "range": str(page)},
            )
        except MemoryPressureError:
            raise
        except SyncError as e:
            if not (isinstance(e, MalformedResponseError) or e.retryable):
                self._record_fatal(run, e)
                raise
            logger.warning(f"{entity} пакет {batch_number} {page}: {e.message}; переходим к делению диапазона")
            try:
                range_result = self.recovery.sync_range(page.start, page.end, fetch, apply, run_id=run.run_id)
            except RangeSyncError as fatal:
                self._record_fatal(run, fatal)
                raise
            applied = ApplyResult(processed=range_result.processed,
                                  errors=range_result.errors + range_result.unresolved_items)
        else:
            if len(items) > page.size:
                logger.warning(f"{entity} {page}: получено {len(items)} элементов, лишние отброшены")
                items = items[:page.size]
            applied = apply(items)

        duration = time.monotonic() - started
        self.ledger.record_batch(
            run_id=run.run_id,
            entity=entity,
            batch_number=batch_number,
            range_start=page.start,
            range_end=page.end,
            processed=applied.processed,
            errors=applied.errors,
            retry_processed=range_result.processed if range_result else 0,
            retry_errors=(range_result.errors + range_result.unresolved_items) if range_result else 0,
            duration_seconds=duration,
            batch_size=batch_size,
            memory_peak_mb=round(self.memory_guard.peak_mb, 2),
        )

        run = self.runs.compare_and_swap(
            entity, run.version,
            current_batch=batch_number + 1,
            next_offset=page.end,
            items_synced=run.items_synced + applied.processed,
            error_count=run.error_count + applied.errors,
            recovery_mode=recovery,
            last_error=None,
        )
        self.markers.save(SyncProgressMarker(
            entity=entity,
            run_id=run.run_id,
            direction=run.direction,
            offset=run.next_offset,
            batch_size=run.batch_size,
            current_batch=run.current_batch,
            filters=run.filters or {},
            updated_at=self._clock(),
        ))
        self.memory_guard.cleanup(f"batch {batch_number}")

        if run.next_offset >= run.total_items:
            run = self._finalize(run, SyncStatus.COMPLETED)

        return self._progress(run, batch_number, page, applied, range_result, duration)

    def _apply_items(self, run: SyncRunState, strategy: DirectionStrategy,
                     items: List[Dict[str, Any]]) -> ApplyResult:
        result = ApplyResult()
        for item in items:
            try:
                strategy.apply(run.entity, item, run.run_id)
            except MemoryPressureError:
                raise
            except Exception as e:
                # Ошибка одного элемента не прерывает пакет
                key = strategy.item_key(item) or "unknown"
                code = e.kind if isinstance(e, SyncError) else classify_exception(e)
                self.ledger.record_error(run.run_id, key, item, code, str(e))
                self.ledger.record_item_processed(run.run_id, success=False, error_code=code)
                result.errors += 1
                result.failed_keys.append(key)
                continue
            self.ledger.record_item_processed(run.run_id, success=True)
            result.processed += 1
            self.memory_guard.record_items(1, context=f"items {run.entity}")
        return result

    def _record_fatal(self, run: SyncRunState, error: SyncError):
        log_error_with_context(error, f"Пакет {run.current_batch} {run.entity} не обработан",
                               run_id=run.run_id, offset=run.next_offset)
        self.runs.compare_and_swap(run.entity, run.version, last_error=error.message[:1000])

    def _progress(self, run: SyncRunState, batch_number: int, page: Optional[PageRange], applied: ApplyResult,
                  range_result: Optional[RangeResult], duration: float) -> BatchProgress:
        return BatchProgress(
            run_id=run.run_id,
            entity=run.entity,
            batch_number=batch_number,
            range_start=page.start if page else 0,
            range_end=page.end if page else 0,
            processed=applied.processed,
            errors=applied.errors,
            retry_processed=range_result.processed if range_result else 0,
            retry_errors=(range_result.errors + range_result.unresolved_items) if range_result else 0,
            recovered=range_result is not None,
            items_synced=run.items_synced,
            error_count=run.error_count,
            current_batch=run.current_batch,
            total_batches=run.total_batches,
            batch_size=run.batch_size,
            status=SyncStatus(run.status).value,
            duration_seconds=round(duration, 4),
        )

    # Цикл

    def run_sync(self, entity: str) -> SyncStatusInfo:
        """
        Обрабатывает пакеты, пока запуск не выйдет из статуса running.

        При нехватке памяти делает очистку и паузу (не более memory_pause_retries
        раз подряд). Фатальная ошибка освобождает блокировку и пробрасывается,
        запуск остается доступным для resume_sync. Любая другая ошибка также
        освобождает блокировку перед пробросом.
        """
        self._active.add(entity)
        pauses = 0
        try:
            while True:
                run = self.runs.get(entity)
                if run is None or run.status != SyncStatus.RUNNING:
                    break
                try:
                    progress = self.process_next_batch(entity)
                except MemoryPressureError as e:
                    pauses += 1
                    if pauses > self.config.memory_pause_retries:
                        self._record_fatal(self.runs.get(entity), e)
                        raise
                    logger.warning(f"{entity}: {e.message}; пауза {self.config.memory_pause_seconds}с "
                                   f"({pauses}/{self.config.memory_pause_retries})")
                    self.memory_guard.cleanup("memory pause")
                    self._sleep(self.config.memory_pause_seconds)
                    continue
                pauses = 0
                if progress.status != SyncStatus.RUNNING.value:
                    break
        except SyncError:
            self.lock_manager.release(entity)
            raise
        except Exception as e:
            log_error_with_context(e, f"Непредвиденная ошибка синхронизации {entity}")
            self.lock_manager.release(entity)
            raise
        finally:
            self._active.discard(entity)
        return self.get_status(entity)

    # Завершение

    def finish_sync(self, entity: str) -> SyncStatusInfo:
        run = self._require_running(entity)
        return self._to_status(self._finalize(run, SyncStatus.COMPLETED))

    def cancel_sync(self, entity: str) -> SyncStatusInfo:
        """
        Отменяет запуск. Если по сущности сейчас идет цикл пакетов в этом экземпляре
        или блокировку держит другой живой процесс, ставится флаг отмены, и запуск
        завершается на границе пакетов. Иначе запуск отменяется сразу.
        """
        run = self._require_running(entity)
        busy_elsewhere = self.lock_manager.is_locked(entity) and not self.lock_manager.owns(entity)
        if entity in self._active or busy_elsewhere:
            run = self.runs.compare_and_swap(entity, run.version, cancel_requested=True)
            logger.info(f"{entity}: запрошена отмена запуска {run.run_id}")
            return self._to_status(run)
        return self._to_status(self._finalize(run, SyncStatus.CANCELLED))

    def _finalize(self, run: SyncRunState, status: SyncStatus, release_lock: bool = True) -> SyncRunState:
        now = self._clock()
        run = self.runs.compare_and_swap(run.entity, run.version, status=status, finished_at=now,
                                         cancel_requested=False)
        self.history.append(SyncHistoryEntry(
            run_id=run.run_id,
            entity=run.entity,
            direction=run.direction,
            status=status,
            items_synced=run.items_synced,
            total_items=run.total_items,
            error_count=run.error_count,
            batches_processed=run.current_batch,
            total_batches=run.total_batches,
            batch_size=run.batch_size,
            start_time=run.start_time,
            end_time=now,
            duration_seconds=round((now - run.start_time).total_seconds(), 3),
            last_error=run.last_error,
        ))
        if status == SyncStatus.COMPLETED:
            self.markers.delete(run.entity)
        if release_lock and self.lock_manager.owns(run.entity):
            self.lock_manager.release(run.entity)
        self.ledger.end_operation(run.run_id)
        log_business_event(f"sync_{status.value}", f"Синхронизация {run.entity} завершена: {status.value}",
                           run_id=run.run_id, items_synced=run.items_synced, total_items=run.total_items,
                           errors=run.error_count)
        return run

    # Возобновление

    def _fresh_marker(self, entity: str) -> Optional[SyncProgressMarker]:
        marker = self.markers.get(entity)
        if marker is None:
            return None
        if self._clock() - marker.updated_at > timedelta(hours=self.config.resume_staleness_hours):
            logger.info(f"{entity}: точка возобновления от {marker.updated_at} устарела и удалена")
            self.markers.delete(entity)
            return None
        return marker

    def resume_sync(self, entity: str, offset: Optional[int] = None,
                    batch_size: Optional[int] = None) -> SyncStartResult:
        """
        Возобновляет прерванный запуск с сохраненной точки в режиме восстановления.

        Raises:
            ValidationError: нет свежей точки возобновления
            ConcurrencyError: запуск выполняется живым процессом
        """
        self.validate_params(entity, batch_size=batch_size)
        marker = self._fresh_marker(entity)
        if marker is None and offset is None:
            raise ValidationError(f"Нет точки возобновления для {entity}")

        run = self.runs.get(entity)
        if run is not None and run.status == SyncStatus.RUNNING:
            if entity in self._active or (self.lock_manager.is_locked(entity) and not self.lock_manager.owns(entity)):
                raise ConcurrencyError(f"Синхронизация {entity} уже выполняется (run {run.run_id})")

        if not self.lock_manager.acquire(entity):
            raise ConcurrencyError(f"Не удалось получить блокировку {entity}")

        try:
            same_run = run is not None and marker is not None and run.run_id == marker.run_id
            source = marker or run
            direction = SyncDirection(source.direction) if source else SyncDirection.REMOTE_TO_LOCAL
            filters = (source.filters if source else None) or {}
            size = batch_size or (marker.batch_size if marker else self.config.default_batch_size)

            if offset is not None:
                resume_offset = offset
                current_batch = offset // size
            elif same_run and run.status == SyncStatus.RUNNING:
                # Запись запуска сохраняется после пакета и не опережает маркер
                resume_offset = run.next_offset
                current_batch = run.current_batch
            else:
                resume_offset = marker.offset
                current_batch = marker.current_batch

            if same_run:
                total_items = run.total_items
            else:
                strategy = self._strategy(direction)
                total_items = self.retry_manager.execute(
                    lambda: strategy.count(entity, SyncFilters(**filters)), f"count:{entity}")

            remaining = max(0, total_items - resume_offset)
            changes = dict(
                run_id=marker.run_id if marker else uuid.uuid4().hex,
                direction=direction,
                status=SyncStatus.RUNNING,
                batch_size=size,
                current_batch=current_batch,
                next_offset=resume_offset,
                total_batches=current_batch + math.ceil(remaining / size),
                total_items=total_items,
                filters=filters,
                recovery_mode=True,
                cancel_requested=False,
                last_error=None,
                finished_at=None,
            )
            if same_run:
                changes["items_synced"] = run.items_synced
                changes["error_count"] = run.error_count
            else:
                changes["items_synced"] = 0
                changes["error_count"] = 0
                changes["start_time"] = self._clock()

            if run is None:
                run = self.runs.begin(SyncRunState(entity=entity, **changes))
            else:
                run = self.runs.compare_and_swap(entity, run.version, **changes)
        except Exception:
            self.lock_manager.release(entity)
            raise

        self.ledger.start_operation(run.run_id, {"entity": entity, "resumed": True})
        log_business_event("sync_resumed", f"Синхронизация {entity} возобновлена",
                           run_id=run.run_id, offset=run.next_offset, current_batch=run.current_batch,
                           batch_size=run.batch_size)
        if run.next_offset >= run.total_items:
            run = self._finalize(run, SyncStatus.COMPLETED)

        return SyncStartResult(
            run_id=run.run_id,
            entity=entity,
            direction=SyncDirection(run.direction).value,
            total_items=run.total_items,
            total_batches=run.total_batches,
            batch_size=run.batch_size,
            recovery_mode=True,
        )

    def get_recovery_message(self, entity: str) -> Optional[str]:
        marker = self._fresh_marker(entity)
        if marker is None:
            return None
        age_minutes = int((self._clock() - marker.updated_at).total_seconds() // 60)
        return (
            f"Синхронизация {entity} была прервана: можно продолжить с позиции {marker.offset + 1} "
            f"(пакет {marker.current_batch + 1}, размер {marker.batch_size}), "
            f"точка сохранена {age_minutes} мин назад"
        )

    # Статус и статистика

    def _to_status(self, run: Optional[SyncRunState], entity: str = "") -> SyncStatusInfo:
        if run is None:
            return SyncStatusInfo(entity=entity)
        progress = round(run.items_synced / run.total_items * 100, 2) if run.total_items else 0.0
        if run.status == SyncStatus.COMPLETED:
            progress = 100.0
        return SyncStatusInfo(
            entity=run.entity,
            run_id=run.run_id,
            direction=SyncDirection(run.direction).value,
            status=SyncStatus(run.status).value,
            batch_size=run.batch_size,
            current_batch=run.current_batch,
            total_batches=run.total_batches,
            items_synced=run.items_synced,
            total_items=run.total_items,
            error_count=run.error_count,
            recovery_mode=run.recovery_mode,
            last_error=run.last_error,
            start_time=run.start_time,
            last_update_time=run.last_update_time,
            progress_percent=min(progress, 100.0),
        )

    def get_status(self, entity: Optional[str] = None) -> SyncStatusInfo:
        """Последнее сохраненное состояние запуска сущности (без entity: активный или последний обновленный)."""
        if entity:
            return self._to_status(self.runs.get(entity), entity)
        runs = self.runs.list_all()
        if not runs:
            return SyncStatusInfo(entity="")
        running = [r for r in runs if r.status == SyncStatus.RUNNING]
        pool = running or runs
        return self._to_status(max(pool, key=lambda r: r.last_update_time))

    def get_history(self, limit: int = 10, entity: Optional[str] = None) -> List[SyncHistoryEntry]:
        return self.history.list(limit, entity)

    def get_error_stats(self, run_id: Optional[str] = None, limit: int = 10) -> ErrorStats:
        return self.ledger.get_error_stats(run_id, limit)

    def get_lock_info(self, entity: str) -> LockInfo:
        return self.lock_manager.get_lock_info(entity)

    def calculate_optimal_batch_size(self, entity: Optional[str] = None) -> BatchSizeRecommendation:
        return self.ledger.calculate_optimal_batch_size(entity)

    def cleanup_old_sync_errors(self, days: Optional[int] = None) -> int:
        return self.ledger.cleanup_old_errors(days or self.config.error_retention_days)

    def get_performance_metrics(self, run_id: Optional[str] = None) -> PerformanceMetrics:
        """Скорость, доля ошибок и оценка оставшегося времени активного или прошедшего запуска."""
        now = self._clock()
        source: Optional[Union[SyncRunState, SyncHistoryEntry]] = None
        running = False
        for run in self.runs.list_all():
            if (run_id and run.run_id == run_id) or (not run_id and run.status == SyncStatus.RUNNING):
                source = run
                running = run.status == SyncStatus.RUNNING
                break
        if source is None and run_id:
            source = self.history.get_by_run(run_id)
        if source is None:
            return PerformanceMetrics(run_id=run_id)

        if running:
            elapsed = (now - source.start_time).total_seconds()
        elif isinstance(source, SyncHistoryEntry):
            elapsed = source.duration_seconds
        else:
            elapsed = ((source.finished_at or source.last_update_time) - source.start_time).total_seconds()

        items = source.items_synced
        errors = source.error_count
        per_second = items / elapsed if elapsed > 0 else 0.0
        attempted = items + errors
        eta = None
        if running and per_second > 0:
            eta = round(max(0, source.total_items - attempted) / per_second, 1)
        return PerformanceMetrics(
            run_id=source.run_id,
            items_synced=items,
            error_count=errors,
            elapsed_seconds=round(elapsed, 3),
            items_per_second=round(per_second, 3),
            items_per_minute=round(per_second * 60, 2),
            error_rate=round(errors / attempted * 100, 2) if attempted else 0.0,
            eta_seconds=eta,
        )

    # Повтор ошибок и проверка готовности

    def _entity_for_run(self, run_id: str) -> Optional[SyncRunState]:
        for run in self.runs.list_all():
            if run.run_id == run_id:
                return run
        return None

    def retry_sync_errors(self, error_ids: List[int]) -> RetryErrorsResult:
        """
        Повторно применяет элементы из журнала ошибок.

        Для строк неразрешенных диапазонов (ключ #позиция) элемент загружается
        заново одиночным диапазоном.
        """
        records = self.ledger.get_errors_by_ids(error_ids)
        result = RetryErrorsResult(requested=len(error_ids))
        for record in records:
            entry = self.history.get_by_run(record.run_id)
            run = self._entity_for_run(record.run_id)
            source = run or entry
            if source is None:
                result.details.append({"id": record.id, "status": "skipped", "reason": "запуск не найден"})
                continue
            strategy = self._strategy(source.direction)
            filters = SyncFilters(**(getattr(source, "filters", None) or {}))
            result.retried += 1
            try:
                payload = record.item_payload or {}
                if record.item_key.startswith("#") and "position" in payload:
                    position = int(payload["position"])
                    items = strategy.fetch(source.entity, position, position, filters)
                    if not items:
                        raise ValidationError(f"Элемент в позиции {position} не найден")
                    item = items[0]
                else:
                    item = payload
                strategy.apply(source.entity, item, record.run_id)
            except MemoryPressureError:
                raise
            except Exception as e:
                result.failed += 1
                code = e.kind if isinstance(e, SyncError) else classify_exception(e)
                self.ledger.record_error(record.run_id, record.item_key, record.item_payload, code,
                                         f"Повтор не удался: {e}")
                result.details.append({"id": record.id, "status": "failed", "error": str(e)})
                continue
            result.succeeded += 1
            result.details.append({"id": record.id, "status": "ok", "item_key": record.item_key})
        logger.info(f"Повтор ошибок: {result.succeeded} успешно, {result.failed} с ошибкой из {result.requested}")
        return result

    def validate_sync_prerequisites(self, entity: str,
                                    direction: Union[str, SyncDirection] = SyncDirection.REMOTE_TO_LOCAL,
                                    filters: Union[SyncFilters, Dict[str, Any], None] = None) -> PrerequisiteCheck:
        """Проверяет параметры, доступность источника (подсчет) и загрузку одного элемента."""
        try:
            direction, filters = self.validate_params(entity, direction, filters)
        except ValidationError as e:
            return PrerequisiteCheck(valid=False, problems=[e.message])

        check = PrerequisiteCheck(valid=True)
        current = self.runs.get(entity)
        if current is not None and current.status == SyncStatus.RUNNING:
            check.problems.append(f"Синхронизация уже выполняется (run {current.run_id})")

        strategy = self._strategy(direction)
        try:
            check.remote_items = strategy.count(entity, filters)
        except SyncError as e:
            check.problems.append(f"Источник недоступен: {e.message}")
        else:
            if check.remote_items > 0:
                try:
                    sample = strategy.fetch(entity, 1, 1, filters)
                    check.sample_ok = bool(sample) and strategy.item_key(sample[0]) is not None
                    if not check.sample_ok:
                        check.problems.append("Пробный элемент не содержит ключа")
                except SyncError as e:
                    check.sample_ok = False
                    check.problems.append(f"Пробная загрузка не удалась: {e.message}")
        check.valid = not check.problems
        return check


def get_sync_service() -> CatalogSyncService:
    """Сервис с зависимостями по умолчанию (ERP из настроек, локальная БД)."""
    return CatalogSyncService()

"""
 * @file: sync_metrics.py
 * @description: Журнал метрик пакетов и ошибок элементов: запись, статистика, очистка по возрасту
 * @dependencies: SyncBatchRecord, SyncErrorRecord, SessionLocal, errors
 * @created: 2025-03-02
"""

import json
import logging
import time
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Union

from sqlalchemy import delete, func
from sqlmodel import select

from catalog_sync.database import SessionLocal
from catalog_sync.models.sync_metrics import SyncBatchRecord, SyncErrorRecord
from catalog_sync.schemas.sync import ErrorStats, RetryStats, OperationSummary, BatchSizeRecommendation
from catalog_sync.services.errors import ErrorKind, ValidationError, normalize_error_code

logger = logging.getLogger("sync.metrics")

DEFAULT_BATCH_SIZE_RECOMMENDATION = 75
RECOMMENDED_MIN_BATCH = 25
RECOMMENDED_MAX_BATCH = 200


def _json_safe(payload: Any) -> Optional[Dict[str, Any]]:
    if payload is None:
        return None
    if not isinstance(payload, dict):
        payload = {"value": payload}
    return json.loads(json.dumps(payload, default=str))


class SyncMetricsLedger:
    """
    Метрики и журнал ошибок синхронизации.

    Записи пакетов и ошибок только добавляются. Счетчики операций живут в памяти
    процесса и нужны для логов и итогов операции.
    """
    def __init__(self, session_factory=None, clock: Callable[[], datetime] = datetime.utcnow):
        self.session_factory = session_factory or SessionLocal
        self._clock = clock
        self._operations: Dict[str, Dict[str, Any]] = {}

    # Счетчики операций

    def start_operation(self, operation_id: str, context: Optional[Dict[str, Any]] = None):
        self._operations[operation_id] = {
            "started": time.monotonic(),
            "processed": 0,
            "failed": 0,
            "errors_by_kind": {},
            "context": context or {},
        }
        logger.info(f"Операция {operation_id} начата | {context or {}}")

    def record_item_processed(self, operation_id: str, success: bool = True,
                              error_code: Union[ErrorKind, int, str, None] = None):
        op = self._operations.get(operation_id)
        if op is None:
            self.start_operation(operation_id)
            op = self._operations[operation_id]
        if success:
            op["processed"] += 1
            return
        op["failed"] += 1
        kind = normalize_error_code(error_code).value
        op["errors_by_kind"][kind] = op["errors_by_kind"].get(kind, 0) + 1

    def end_operation(self, operation_id: str) -> OperationSummary:
        op = self._operations.pop(operation_id, None)
        if op is None:
            return OperationSummary(operation=operation_id)
        total = op["processed"] + op["failed"]
        summary = OperationSummary(
            operation=operation_id,
            duration_seconds=round(time.monotonic() - op["started"], 3),
            items_processed=op["processed"],
            items_failed=op["failed"],
            success_rate=round(op["processed"] / total * 100, 2) if total else 100.0,
            errors_by_kind=op["errors_by_kind"],
        )
        logger.info(
            f"Операция {operation_id} завершена: {summary.items_processed} успешно, "
            f"{summary.items_failed} с ошибкой ({summary.success_rate}%) за {summary.duration_seconds}с"
        )
        return summary

    # Записи пакетов

    def record_batch(self, run_id: str, entity: str, batch_number: int, range_start: int, range_end: int,
                     processed: int, errors: int, retry_processed: int = 0, retry_errors: int = 0,
                     duration_seconds: float = 0.0, batch_size: int = 0,
                     memory_peak_mb: Optional[float] = None) -> SyncBatchRecord:
        if range_end < range_start:
            raise ValidationError(f"Некорректный диапазон пакета [{range_start}, {range_end}]")
        if processed + errors > range_end - range_start + 1:
            raise ValidationError(
                f"Пакет {batch_number}: {processed}+{errors} элементов больше диапазона [{range_start}, {range_end}]"
            )
        record = SyncBatchRecord(
            run_id=run_id,
            entity=entity,
            batch_number=batch_number,
            range_start=range_start,
            range_end=range_end,
            batch_size=batch_size or (range_end - range_start + 1),
            processed_count=processed,
            error_count=errors,
            retry_processed_count=retry_processed,
            retry_error_count=retry_errors,
            duration_seconds=round(duration_seconds, 4),
            memory_peak_mb=memory_peak_mb,
            timestamp=self._clock(),
        )
        with self.session_factory() as session:
            session.add(record)
            session.commit()
            session.refresh(record)
        logger.info(
            f"Пакет {batch_number} [{range_start}, {range_end}] run={run_id}: "
            f"обработано {processed}, ошибок {errors}, восстановлено {retry_processed}, "
            f"за {duration_seconds:.2f}с"
        )
        return record

    def get_batch_records(self, run_id: str) -> List[SyncBatchRecord]:
        with self.session_factory() as session:
            return list(session.exec(
                select(SyncBatchRecord).where(SyncBatchRecord.run_id == run_id)
                .order_by(SyncBatchRecord.batch_number, SyncBatchRecord.id)
            ).all())

    def get_retry_stats(self, run_id: str) -> RetryStats:
        records = self.get_batch_records(run_id)
        with_retries = [r for r in records if r.retry_processed_count or r.retry_error_count]
        retry_processed = sum(r.retry_processed_count for r in records)
        retry_errors = sum(r.retry_error_count for r in records)
        attempted = retry_processed + retry_errors
        return RetryStats(
            total_batches=len(records),
            batches_with_retries=len(with_retries),
            retry_processed=retry_processed,
            retry_errors=retry_errors,
            retry_success_rate=round(retry_processed / attempted * 100, 2) if attempted else 0.0,
        )

    # Журнал ошибок

    def record_error(self, run_id: str, item_key: str, item_payload: Any,
                     error_code: Union[ErrorKind, int, str, None], error_message: str) -> SyncErrorRecord:
        kind = normalize_error_code(error_code)
        message = error_message
        if error_code is not None and not isinstance(error_code, ErrorKind) and str(error_code) != kind.value:
            message = f"[{error_code}] {error_message}"
        record = SyncErrorRecord(
            run_id=run_id,
            item_key=str(item_key),
            item_payload=_json_safe(item_payload),
            error_code=kind.value,
            error_message=message[:2000],
            timestamp=self._clock(),
        )
        with self.session_factory() as session:
            session.add(record)
            session.commit()
            session.refresh(record)
        logger.warning(f"Ошибка элемента {item_key} run={run_id}: {kind.value} {message}")
        return record

    def record_range_errors(self, run_id: str, start: int, end: int,
                            error_code: Union[ErrorKind, int, str, None], error_message: str) -> int:
        """Записывает по одной строке ошибки на каждую позицию неразрешенного диапазона."""
        kind = normalize_error_code(error_code)
        now = self._clock()
        records = [
            SyncErrorRecord(
                run_id=run_id,
                item_key=f"#{position}",
                item_payload={"position": position, "range": [start, end]},
                error_code=kind.value,
                error_message=error_message[:2000],
                timestamp=now,
            )
            for position in range(start, end + 1)
        ]
        with self.session_factory() as session:
            session.add_all(records)
            session.commit()
        logger.warning(f"Диапазон [{start}, {end}] run={run_id} не синхронизирован: {error_message}")
        return len(records)

    def get_errors_by_ids(self, error_ids: List[int]) -> List[SyncErrorRecord]:
        if not error_ids:
            return []
        with self.session_factory() as session:
            return list(session.exec(select(SyncErrorRecord).where(SyncErrorRecord.id.in_(error_ids))).all())

    def get_errors_for_run(self, run_id: str, limit: Optional[int] = None) -> List[SyncErrorRecord]:
        statement = (select(SyncErrorRecord).where(SyncErrorRecord.run_id == run_id)
                     .order_by(SyncErrorRecord.id))
        if limit:
            statement = statement.limit(limit)
        with self.session_factory() as session:
            return list(session.exec(statement).all())

    def get_error_stats(self, run_id: Optional[str] = None, limit: int = 10) -> ErrorStats:
        """
        Статистика журнала ошибок.

        Returns:
            ErrorStats: общее число, распределение по кодам, последние ошибки
            и элементы, падавшие больше одного раза
        """
        with self.session_factory() as session:
            def scoped(statement):
                if run_id:
                    return statement.where(SyncErrorRecord.run_id == run_id)
                return statement

            total = session.exec(scoped(select(func.count(SyncErrorRecord.id)))).one()

            distribution_rows = session.exec(
                scoped(select(SyncErrorRecord.error_code, func.count(SyncErrorRecord.id)))
                .group_by(SyncErrorRecord.error_code)
            ).all()

            recent = session.exec(
                scoped(select(SyncErrorRecord)).order_by(SyncErrorRecord.timestamp.desc(),
                                                          SyncErrorRecord.id.desc()).limit(limit)
            ).all()

            problem_rows = session.exec(
                scoped(select(SyncErrorRecord.item_key, func.count(SyncErrorRecord.id).label("errors")))
                .group_by(SyncErrorRecord.item_key)
                .having(func.count(SyncErrorRecord.id) > 1)
                .order_by(func.count(SyncErrorRecord.id).desc())
                .limit(limit)
            ).all()

        return ErrorStats(
            total_errors=total or 0,
            error_distribution={code: count for code, count in distribution_rows},
            recent_errors=[
                {
                    "id": r.id,
                    "run_id": r.run_id,
                    "item_key": r.item_key,
                    "error_code": r.error_code,
                    "error_message": r.error_message,
                    "timestamp": r.timestamp.isoformat(),
                }
                for r in recent
            ],
            problem_items=[{"item_key": key, "errors": count} for key, count in problem_rows],
        )

    def get_error_type_stats(self, days: int = 7) -> Dict[str, int]:
        since = self._clock() - timedelta(days=days)
        with self.session_factory() as session:
            rows = session.exec(
                select(SyncErrorRecord.error_code, func.count(SyncErrorRecord.id))
                .where(SyncErrorRecord.timestamp >= since)
                .group_by(SyncErrorRecord.error_code)
            ).all()
        return {code: count for code, count in rows}

    def cleanup_old_errors(self, days: int = 30) -> int:
        cutoff = self._clock() - timedelta(days=days)
        with self.session_factory() as session:
            result = session.execute(delete(SyncErrorRecord).where(SyncErrorRecord.timestamp < cutoff))
            session.commit()
            deleted = result.rowcount or 0
        logger.info(f"Удалено {deleted} записей ошибок старше {days} дней")
        return deleted

    # Подбор размера пакета

    def calculate_optimal_batch_size(self, entity: Optional[str] = None) -> BatchSizeRecommendation:
        """
        Рекомендует размер пакета по истории длительности пакетов.

        Размеры с менее чем двумя замерами не учитываются. Оценка размера:
        элементов в секунду * min(1, замеров / 10).
        """
        statement = select(SyncBatchRecord).where(SyncBatchRecord.duration_seconds > 0)
        if entity:
            statement = statement.where(SyncBatchRecord.entity == entity)
        with self.session_factory() as session:
            records = session.exec(statement).all()

        grouped: Dict[int, Dict[str, float]] = {}
        for record in records:
            if not record.batch_size:
                continue
            group = grouped.setdefault(record.batch_size, {"count": 0, "duration": 0.0, "items": 0})
            group["count"] += 1
            group["duration"] += record.duration_seconds
            group["items"] += record.processed_count

        best_size = DEFAULT_BATCH_SIZE_RECOMMENDATION
        best_score = 0.0
        best_samples = 0
        confidence = "low"
        for size, group in grouped.items():
            if group["count"] < 2 or group["duration"] <= 0:
                continue
            items_per_second = group["items"] / group["duration"]
            score = items_per_second * min(1.0, group["count"] / 10)
            if score > best_score:
                best_score = score
                best_size = size
                best_samples = int(group["count"])
                confidence = "high" if group["count"] >= 5 else "medium"

        if best_samples == 0:
            return BatchSizeRecommendation(
                recommended=DEFAULT_BATCH_SIZE_RECOMMENDATION,
                confidence="low",
                reason="Недостаточно истории пакетов, используется значение по умолчанию",
                samples=len(records),
            )

        recommended = max(RECOMMENDED_MIN_BATCH, min(RECOMMENDED_MAX_BATCH, best_size))
        return BatchSizeRecommendation(
            recommended=recommended,
            confidence=confidence,
            reason=f"Размер {best_size}: {best_samples} замеров",
            samples=best_samples,
        )

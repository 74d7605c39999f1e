"""
 * @file: errors.py
 * @description: Таксономия ошибок синхронизации и нормализация кодов ошибок в ErrorKind
 * @dependencies: httpx
 * @created: 2025-03-02
"""
from enum import Enum
from typing import Any, Dict, Optional, Union

import httpx


class ErrorKind(str, Enum):
    """Единый тип ошибки, с которым работают повторы и метрики."""
    VALIDATION = "validation"
    NETWORK = "network"
    TIMEOUT = "timeout"
    HTTP = "http"
    RATE_LIMITED = "rate_limited"
    MALFORMED = "malformed"
    REMOTE_LOGICAL = "remote_logical"
    CIRCUIT_OPEN = "circuit_open"
    CONCURRENCY = "concurrency"
    MEMORY = "memory"
    RANGE = "range"
    EXCESSIVE_SUBDIVISION = "excessive_subdivision"
    ITEM = "item"
    UNKNOWN = "unknown"


# Числовые коды, которые встречаются в ответах ERP и в старых записях журнала
_NUMERIC_KINDS = {
    400: ErrorKind.VALIDATION,
    409: ErrorKind.CONCURRENCY,
    422: ErrorKind.VALIDATION,
    429: ErrorKind.RATE_LIMITED,
    503: ErrorKind.NETWORK,
    504: ErrorKind.TIMEOUT,
    507: ErrorKind.MEMORY,
}


class SyncError(Exception):
    """Базовая ошибка синхронизации."""
    kind: ErrorKind = ErrorKind.UNKNOWN
    retryable: bool = False
    retry_delay: float = 0.0

    def __init__(self, message: str = "", code: Union[int, str, None] = None,
                 context: Optional[Dict[str, Any]] = None):
        self.message = message or self.__class__.__name__
        self.code = code
        self.context = context or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.__class__.__name__,
            "kind": self.kind.value,
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
            "context": self.context,
        }


class ValidationError(SyncError):
    """Некорректные параметры вызова, никогда не повторяется."""
    kind = ErrorKind.VALIDATION


class NetworkError(SyncError):
    kind = ErrorKind.NETWORK
    retryable = True
    retry_delay = 5.0


class RequestTimeoutError(SyncError):
    kind = ErrorKind.TIMEOUT
    retryable = True
    retry_delay = 10.0


class HttpError(SyncError):
    """Ответ с кодом ошибки HTTP. Повторяются 5xx и 429."""
    kind = ErrorKind.HTTP

    def __init__(self, status: int, body: str = "", message: str = "", context: Optional[Dict[str, Any]] = None):
        self.status = status
        self.body = body
        super().__init__(message or f"HTTP {status}", code=status, context=context)
        self.retryable = status >= 500 or status == 429
        if status == 429:
            self.kind = ErrorKind.RATE_LIMITED


class MalformedResponseError(SyncError):
    """Пустое, обрезанное или нераспознаваемое тело ответа. Обрабатывается делением диапазона."""
    kind = ErrorKind.MALFORMED

    def __init__(self, message: str = "", truncated: bool = False, context: Optional[Dict[str, Any]] = None):
        self.truncated = truncated
        super().__init__(message or "Некорректный ответ ERP", code="malformed", context=context)


class RemoteLogicalError(SyncError):
    """Прикладная ошибка, пришедшая внутри корректного ответа ERP."""
    kind = ErrorKind.REMOTE_LOGICAL

    def __init__(self, code: Union[int, str, None], description: str = "", transient: bool = False,
                 context: Optional[Dict[str, Any]] = None):
        self.description = description
        self.transient = transient
        super().__init__(f"Ошибка ERP {code}: {description}", code=code, context=context)
        self.retryable = transient


class CircuitOpenError(SyncError):
    """Автомат разомкнут, вызов отклонен без обращения к ERP."""
    kind = ErrorKind.CIRCUIT_OPEN
    retryable = True


class ConcurrencyError(SyncError):
    """Конкуренция за блокировку или конфликт версии записи запуска."""
    kind = ErrorKind.CONCURRENCY
    retryable = True
    retry_delay = 5.0


class MemoryPressureError(SyncError):
    """Сигнал вызывающему коду приостановиться, а не ошибка элемента."""
    kind = ErrorKind.MEMORY

    def __init__(self, message: str = "", usage_mb: Optional[float] = None, limit_mb: Optional[float] = None):
        self.usage_mb = usage_mb
        self.limit_mb = limit_mb
        super().__init__(message or "Превышен лимит памяти", code=507,
                         context={"usage_mb": usage_mb, "limit_mb": limit_mb})


class RangeSyncError(SyncError):
    """Диапазон не удалось синхронизировать даже с делением."""
    kind = ErrorKind.RANGE

    def __init__(self, start: int, end: int, message: str = "", cause: Optional[BaseException] = None,
                 recorded: bool = False):
        self.start = start
        self.end = end
        self.cause = cause
        # Ошибки позиций диапазона уже записаны в журнал
        self.recorded = recorded
        super().__init__(message or f"Диапазон [{start}, {end}] не синхронизирован", code="range",
                         context={"start": start, "end": end})


class ExcessiveSubdivisionError(RangeSyncError):
    """Превышена максимальная глубина деления, нужен ручной разбор."""
    kind = ErrorKind.EXCESSIVE_SUBDIVISION

    def __init__(self, start: int, end: int, depth: int):
        self.depth = depth
        super().__init__(start, end, f"Превышена глубина деления {depth} для [{start}, {end}]")
        self.code = "excessive_subdivision"


def normalize_error_code(code: Union[ErrorKind, int, str, None]) -> ErrorKind:
    """
    Приводит код ошибки из любого источника к ErrorKind.

    Коды приходят как числа (HTTP-подобные), строки с числом, имена ErrorKind
    или произвольные строки ERP.
    """
    if code is None:
        return ErrorKind.UNKNOWN
    if isinstance(code, ErrorKind):
        return code
    if isinstance(code, bool):
        return ErrorKind.UNKNOWN
    if isinstance(code, str):
        value = code.strip()
        if value.lstrip("-").isdigit():
            return normalize_error_code(int(value))
        try:
            return ErrorKind(value.lower())
        except ValueError:
            return ErrorKind.REMOTE_LOGICAL
    if isinstance(code, int):
        if code in _NUMERIC_KINDS:
            return _NUMERIC_KINDS[code]
        if code >= 500:
            return ErrorKind.HTTP
        if 400 <= code < 500:
            return ErrorKind.VALIDATION
        return ErrorKind.UNKNOWN
    return ErrorKind.UNKNOWN


def classify_exception(exc: BaseException) -> ErrorKind:
    """Определяет ErrorKind для произвольного исключения."""
    if isinstance(exc, SyncError):
        return exc.kind
    if isinstance(exc, httpx.TimeoutException):
        return ErrorKind.TIMEOUT
    if isinstance(exc, httpx.TransportError):
        return ErrorKind.NETWORK
    if isinstance(exc, TimeoutError):
        return ErrorKind.TIMEOUT
    if isinstance(exc, (ConnectionError, OSError)):
        return ErrorKind.NETWORK
    if isinstance(exc, MemoryError):
        return ErrorKind.MEMORY
    if isinstance(exc, (ValueError, TypeError, KeyError)):
        return ErrorKind.VALIDATION
    return ErrorKind.UNKNOWN


def is_retryable(exc: BaseException) -> bool:
    """Можно ли повторить операцию после этой ошибки."""
    if isinstance(exc, SyncError):
        return exc.retryable
    return classify_exception(exc) in (ErrorKind.NETWORK, ErrorKind.TIMEOUT)

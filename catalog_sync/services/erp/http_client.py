"""
 * @file: http_client.py
 * @description: HTTP клиент ERP с таймаутами по методам, повторами с backoff и автоматическим выключателем
 * @dependencies: httpx, retry_policy, circuit_breaker, errors
 * @created: 2025-03-02
"""

import json
import logging
import time
from typing import Any, Callable, Dict, Optional

import httpx

from catalog_sync.core.sync_config import SyncConfig, sync_config
from catalog_sync.services.errors import (
    SyncError,
    ErrorKind,
    NetworkError,
    RequestTimeoutError,
    HttpError,
    MalformedResponseError,
    RemoteLogicalError,
    CircuitOpenError,
)
from catalog_sync.services.erp.base import BaseClient
from catalog_sync.services.erp.circuit_breaker import CircuitBreaker
from catalog_sync.services.erp.retry_policy import RetryPolicy, DEFAULT_POLICIES, get_policy

logger = logging.getLogger("erp.api")

# Ошибки, которые считаются отказом ERP для автоматического выключателя
BREAKER_FAILURE_KINDS = {ErrorKind.NETWORK, ErrorKind.TIMEOUT, ErrorKind.MALFORMED}


class ResilientHttpClient(BaseClient):
    """
    Клиент ERP поверх httpx.Client.

    request() возвращает декодированное тело ответа или поднимает ошибку из
    services.errors. Повторяются только ошибки с retryable=True; 4xx (кроме 429)
    и некорректные ответы поднимаются сразу, не расходуя попытки.
    """
    def __init__(
        self,
        base_url: Optional[str] = None,
        session_token: Optional[str] = None,
        session_param: Optional[str] = None,
        config: Optional[SyncConfig] = None,
        policies: Optional[Dict[str, RetryPolicy]] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        transport: Optional[httpx.BaseTransport] = None,
        sleep: Callable[[float], None] = time.sleep,
        rng: Optional[Callable[[], float]] = None,
    ):
        self.config = config or sync_config
        super().__init__(base_url, session_token, session_param, timeout=self.config.default_timeout_seconds)
        self.policies = policies or DEFAULT_POLICIES
        self.method_timeouts = {k.upper(): v for k, v in self.config.method_timeouts.items()}
        self.transient_error_codes = {str(code) for code in self.config.transient_error_codes}
        if circuit_breaker is None and self.config.circuit_breaker_enabled:
            circuit_breaker = CircuitBreaker(
                failure_threshold=self.config.circuit_failure_threshold,
                recovery_timeout=self.config.circuit_recovery_timeout_seconds,
                half_open_max_calls=self.config.circuit_half_open_max_calls,
            )
        self.circuit_breaker = circuit_breaker
        self._sleep = sleep
        self._rng = rng
        self.last_request_url: Optional[str] = None
        self.client = httpx.Client(
            base_url=self.base_url,
            headers=self.headers,
            timeout=self.timeout,
            transport=transport,
        )
        self.reset_retry_stats()

    def close(self):
        self.client.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def timeout_for(self, method: str) -> float:
        return float(self.method_timeouts.get(method.upper(), self.config.default_timeout_seconds))

    def request(
        self,
        method: str,
        endpoint: str,
        body: Optional[Any] = None,
        query: Optional[Dict[str, Any]] = None,
        options: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """
        Выполняет запрос к ERP с политикой повторов.

        Args:
            method: HTTP метод
            endpoint: Путь относительно base_url
            body: Тело запроса (JSON), для GET игнорируется
            query: Параметры строки запроса
            options: policy (имя политики), timeout, max_retries

        Returns:
            Декодированный JSON ответа

        Raises:
            NetworkError, RequestTimeoutError, HttpError, MalformedResponseError,
            RemoteLogicalError, CircuitOpenError
        """
        options = options or {}
        method = method.upper()
        policy = get_policy(options.get("policy", self.config.default_retry_policy), self.policies)
        max_retries = options.get("max_retries", policy.max_retries)
        timeout = options.get("timeout") or self.timeout_for(method)

        self.stats["total_requests"] += 1
        retries = 0
        while True:
            if self.circuit_breaker is not None and not self.circuit_breaker.allow_request():
                wait = self.circuit_breaker.seconds_until_half_open()
                logger.warning(f"{method} {endpoint}: circuit разомкнут, запрос отклонен (осталось {wait:.0f}с)")
                self.stats["rejected_by_circuit"] += 1
                raise CircuitOpenError(f"Circuit разомкнут, повтор через {wait:.0f}с",
                                       context={"endpoint": endpoint, "retry_in": wait})
            try:
                payload = self._send(method, endpoint, body, query, timeout, attempt=retries + 1)
            except SyncError as exc:
                self._record_breaker(exc)
                status = getattr(exc, "status", None)
                if exc.retryable and retries < max_retries:
                    delay = policy.compute_delay(retries, self._rng)
                    retries += 1
                    self.stats["total_retries"] += 1
                    key = str(status) if status is not None else exc.kind.value
                    self.stats["retry_by_status_code"][key] = self.stats["retry_by_status_code"].get(key, 0) + 1
                    logger.warning(
                        f"{method} {endpoint}: {exc.message}; повтор {retries}/{max_retries} "
                        f"через {delay:.2f}с (политика {policy.name})"
                    )
                    self._sleep(delay)
                    continue
                if retries > 0:
                    self.stats["failed_after_retries"] += 1
                    logger.error(f"{method} {endpoint}: не выполнен после {retries} повторов: {exc.message}")
                raise
            if self.circuit_breaker is not None:
                self.circuit_breaker.record_success()
            if retries > 0:
                self.stats["success_after_retry"] += 1
                logger.info(f"{method} {endpoint}: успешно после {retries} повторов")
            return payload

    def _record_breaker(self, exc: SyncError):
        if self.circuit_breaker is None:
            return
        status = getattr(exc, "status", None)
        if exc.kind in BREAKER_FAILURE_KINDS or (status is not None and status >= 500):
            self.circuit_breaker.record_failure()
        else:
            # ERP ответила: 4xx, 429 и прикладные ошибки не считаются отказом сервиса
            self.circuit_breaker.record_success()

    def _send(self, method: str, endpoint: str, body: Optional[Any], query: Optional[Dict[str, Any]],
              timeout: float, attempt: int) -> Any:
        params = dict(self.session_params())
        if query:
            params.update({k: v for k, v in query.items() if v is not None})
        json_body = body if method != "GET" else None

        request = self.client.build_request(method, endpoint, params=params, json=json_body, timeout=timeout)
        self.last_request_url = str(request.url)
        started = time.monotonic()
        try:
            response = self.client.send(request)
        except httpx.TimeoutException as exc:
            logger.debug(f"{method} {self.last_request_url} попытка {attempt}: таймаут {timeout}с")
            raise RequestTimeoutError(f"Таймаут {timeout}с: {exc}", code=504,
                                      context={"url": self.last_request_url})
        except httpx.RemoteProtocolError as exc:
            # Соединение оборвано посреди ответа
            logger.debug(f"{method} {self.last_request_url} попытка {attempt}: обрыв ответа {exc}")
            raise MalformedResponseError(f"Ответ оборван: {exc}", truncated=True,
                                         context={"url": self.last_request_url})
        except httpx.TransportError as exc:
            logger.debug(f"{method} {self.last_request_url} попытка {attempt}: сетевая ошибка {exc}")
            raise NetworkError(f"Сетевая ошибка: {exc}", code=503, context={"url": self.last_request_url})

        duration = time.monotonic() - started
        logger.debug(
            f"{method} {self.last_request_url} попытка {attempt}: "
            f"status={response.status_code} bytes={len(response.content)} duration={duration:.3f}s"
        )

        if response.status_code >= 400:
            raise HttpError(response.status_code, response.text[:500],
                            context={"url": self.last_request_url})

        payload = self._decode(response)
        self._raise_for_logical_error(payload)
        return payload

    def _decode(self, response: httpx.Response) -> Any:
        text = response.text
        if not text or not text.strip():
            raise MalformedResponseError("Пустой ответ ERP", context={"url": self.last_request_url})
        try:
            return json.loads(text)
        except ValueError as exc:
            stripped = text.strip()
            truncated = stripped[:1] in ("{", "[") and stripped[-1:] not in ("}", "]")
            raise MalformedResponseError(
                f"Некорректный JSON ({len(text)} байт): {exc}",
                truncated=truncated,
                context={"url": self.last_request_url, "preview": stripped[:200]},
            )

    def _raise_for_logical_error(self, payload: Any):
        if not isinstance(payload, dict) or str(payload.get("status", "")).upper() != "ERROR":
            return
        code = payload.get("error_code")
        description = payload.get("error_message", "")
        raise RemoteLogicalError(code, description, transient=str(code) in self.transient_error_codes,
                                 context={"url": self.last_request_url})

    def get_retry_stats(self) -> Dict[str, Any]:
        stats = dict(self.stats)
        stats["retry_by_status_code"] = dict(self.stats["retry_by_status_code"])
        total = stats["total_requests"]
        stats["avg_retry_count"] = round(stats["total_retries"] / total, 3) if total else 0.0
        if self.circuit_breaker is not None:
            stats["circuit"] = self.circuit_breaker.get_state()
        return stats

    def reset_retry_stats(self):
        self.stats: Dict[str, Any] = {
            "total_requests": 0,
            "total_retries": 0,
            "success_after_retry": 0,
            "failed_after_retries": 0,
            "rejected_by_circuit": 0,
            "retry_by_status_code": {},
        }

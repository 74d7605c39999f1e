import json
from datetime import date, time

import httpx
import pytest

from catalog_sync.core.sync_config import SyncConfig
from catalog_sync.schemas.sync import SyncFilters
from catalog_sync.services.erp.catalog_api import ErpCatalogClient
from catalog_sync.services.erp.circuit_breaker import CircuitBreaker, CircuitState
from catalog_sync.services.erp.http_client import ResilientHttpClient
from catalog_sync.services.errors import (
    CircuitOpenError,
    HttpError,
    MalformedResponseError,
    RemoteLogicalError,
    RequestTimeoutError,
)


class Responder:
    """Отдает заранее заданные ответы по очереди и запоминает запросы."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return response


def json_response(payload, status=200):
    return httpx.Response(status, content=json.dumps(payload).encode())


def make_client(responder, sleeps, config=None, breaker=None, monotonic=None):
    config = config or SyncConfig(circuit_failure_threshold=3, transient_error_codes=["BUSY"])
    if breaker is None:
        breaker = CircuitBreaker(failure_threshold=config.circuit_failure_threshold,
                                 recovery_timeout=60, clock=monotonic)
    return ResilientHttpClient(
        base_url="http://erp.test/api",
        session_token="tok123",
        config=config,
        circuit_breaker=breaker,
        transport=httpx.MockTransport(responder),
        sleep=sleeps,
        rng=lambda: 0.5,
    )


def test_success_sends_session_param(sleeps, monotonic):
    responder = Responder(json_response({"total": 3}))
    client = make_client(responder, sleeps, monotonic=monotonic)

    assert client.request("GET", "/products/count") == {"total": 3}
    request = responder.requests[0]
    assert request.url.path == "/api/products/count"
    assert request.url.params["session"] == "tok123"
    assert "session=tok123" in client.last_request_url
    assert sleeps.calls == []


def test_server_errors_are_retried_with_backoff(sleeps, monotonic):
    responder = Responder(
        httpx.Response(503, text="unavailable"),
        httpx.Response(502, text="bad gateway"),
        json_response([{"sku": "A"}]),
    )
    client = make_client(responder, sleeps, monotonic=monotonic)

    assert client.request("GET", "/products") == [{"sku": "A"}]
    # Политика standard: 1с, 2с; при rng=0.5 случайный сдвиг нулевой
    assert sleeps.calls == pytest.approx([1.0, 2.0])
    stats = client.get_retry_stats()
    assert stats["total_retries"] == 2
    assert stats["success_after_retry"] == 1
    assert stats["retry_by_status_code"] == {"503": 1, "502": 1}
    assert client.circuit_breaker.state == CircuitState.CLOSED


def test_client_errors_are_not_retried_and_do_not_trip_breaker(sleeps, monotonic):
    responder = Responder(httpx.Response(404, text="not found"))
    client = make_client(responder, sleeps, monotonic=monotonic)

    for _ in range(5):
        with pytest.raises(HttpError) as info:
            client.request("GET", "/products/unknown")
        assert info.value.status == 404
    assert sleeps.calls == []
    assert client.circuit_breaker.state == CircuitState.CLOSED


def test_rate_limit_is_retried(sleeps, monotonic):
    responder = Responder(httpx.Response(429, text="slow down"), json_response({"total": 1}))
    client = make_client(responder, sleeps, monotonic=monotonic)
    assert client.request("GET", "/products/count") == {"total": 1}
    assert len(sleeps.calls) == 1


def test_empty_body_is_malformed_and_not_retried(sleeps, monotonic):
    responder = Responder(httpx.Response(200, content=b""))
    client = make_client(responder, sleeps, monotonic=monotonic)

    with pytest.raises(MalformedResponseError):
        client.request("GET", "/products")
    assert len(responder.requests) == 1


def test_truncated_json_is_flagged(sleeps, monotonic):
    responder = Responder(httpx.Response(200, content=b'{"items": [{"sku": "A"}, {"sku": '))
    client = make_client(responder, sleeps, monotonic=monotonic)

    with pytest.raises(MalformedResponseError) as info:
        client.request("GET", "/products")
    assert info.value.truncated


def test_logical_error_envelope(sleeps, monotonic):
    envelope = {"status": "ERROR", "error_code": "E42", "error_message": "Producto inexistente"}
    responder = Responder(json_response(envelope))
    client = make_client(responder, sleeps, monotonic=monotonic)

    with pytest.raises(RemoteLogicalError) as info:
        client.request("GET", "/products")
    assert info.value.code == "E42"
    assert "Producto inexistente" in info.value.message
    assert len(responder.requests) == 1


def test_transient_logical_error_is_retried(sleeps, monotonic):
    busy = {"status": "ERROR", "error_code": "BUSY", "error_message": "ocupado"}
    responder = Responder(json_response(busy), json_response({"total": 5}))
    client = make_client(responder, sleeps, monotonic=monotonic)

    assert client.request("GET", "/products/count") == {"total": 5}
    assert len(responder.requests) == 2


def test_timeout_maps_to_request_timeout(sleeps, monotonic):
    request = httpx.Request("GET", "http://erp.test/api/products")
    responder = Responder(httpx.ReadTimeout("timed out", request=request))
    client = make_client(responder, sleeps, monotonic=monotonic)

    with pytest.raises(RequestTimeoutError):
        client.request("GET", "/products", options={"max_retries": 1})
    assert len(responder.requests) == 2
    assert client.get_retry_stats()["failed_after_retries"] == 1


def test_method_timeouts(sleeps, monotonic):
    client = make_client(Responder(json_response({})), sleeps, monotonic=monotonic)
    assert client.timeout_for("get") == 45
    assert client.timeout_for("POST") == 60
    assert client.timeout_for("PATCH") == 30


def test_circuit_opens_and_rejects_without_calling_erp(sleeps, monotonic):
    responder = Responder(httpx.Response(500, text="boom"))
    client = make_client(responder, sleeps, monotonic=monotonic)

    with pytest.raises(HttpError):
        client.request("GET", "/products", options={"max_retries": 0})
    with pytest.raises(HttpError):
        client.request("GET", "/products", options={"max_retries": 0})
    with pytest.raises(HttpError):
        client.request("GET", "/products", options={"max_retries": 0})
    assert client.circuit_breaker.state == CircuitState.OPEN

    with pytest.raises(CircuitOpenError):
        client.request("GET", "/products")
    assert len(responder.requests) == 3
    assert client.get_retry_stats()["rejected_by_circuit"] == 1

    # После паузы пробный запрос проходит и замыкает цепь
    monotonic.advance(60)
    responder.responses = [json_response([])]
    assert client.request("GET", "/products") == []
    assert client.circuit_breaker.state == CircuitState.CLOSED


def test_catalog_client_fetch_page_params(sleeps, monotonic):
    responder = Responder(json_response({"items": [{"sku": "A"}, {"sku": "B"}]}))
    erp = ErpCatalogClient(make_client(responder, sleeps, monotonic=monotonic))
    filters = SyncFilters(modified_after=date(2025, 1, 31), modified_after_time=time(8, 5, 0))

    items = erp.fetch_page("products", 51, 100, filters)

    assert [i["sku"] for i in items] == ["A", "B"]
    params = responder.requests[0].url.params
    assert params["inicio"] == "51"
    assert params["fin"] == "100"
    assert params["fecha"] == "2025-01-31"
    assert params["hora"] == "08:05:00"


def test_catalog_client_count_formats(sleeps, monotonic):
    responder = Responder(json_response(42), json_response({"count": "17"}), json_response({"x": 1}))
    erp = ErpCatalogClient(make_client(responder, sleeps, monotonic=monotonic))
    assert erp.count("products") == 42
    assert erp.count("products") == 17
    with pytest.raises(MalformedResponseError):
        erp.count("products")


def test_catalog_client_push_item_sends_body(sleeps, monotonic):
    responder = Responder(json_response({"status": "OK", "id": 9}))
    erp = ErpCatalogClient(make_client(responder, sleeps, monotonic=monotonic))

    assert erp.push_item("products", {"sku": "A", "name": "Silla"}) == {"status": "OK", "id": 9}
    request = responder.requests[0]
    assert request.method == "POST"
    assert json.loads(request.content) == {"sku": "A", "name": "Silla"}

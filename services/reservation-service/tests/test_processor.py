import json
from decimal import Decimal

import httpx
import pytest

from reservation_service.breaker import CircuitBreaker
from reservation_service.errors import DependencyFailure
from reservation_service.processor import HttpPaymentProcessor, PaymentProcessor, to_cents


def test_to_cents_rounds_half_up():
    assert to_cents(Decimal("20.905")) == 2091
    assert to_cents(Decimal("0.29")) == 29


async def test_authorize_sends_amount_in_cents_with_idempotency_key():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"id": "pi_1", "client_secret": "pi_1_secret"})

    processor = HttpPaymentProcessor(base_url="http://pp", api_key="sk_test", transport=httpx.MockTransport(handler))
    result = await processor.authorize(Decimal("20.90"), "usd", {"booking_id": "b1"}, "booking:b1:authorize:1")

    assert result == {"intent_id": "pi_1", "client_secret": "pi_1_secret"}
    assert seen[0].url.path == "/payment_intents"
    assert seen[0].headers["Idempotency-Key"] == "booking:b1:authorize:1"
    assert seen[0].headers["Authorization"] == "Bearer sk_test"
    assert json.loads(seen[0].content)["amount"] == 2090


async def test_upstream_error_becomes_dependency_failure():
    processor = HttpPaymentProcessor(
        base_url="http://pp",
        transport=httpx.MockTransport(lambda request: httpx.Response(502, text="bad gateway")),
    )
    with pytest.raises(DependencyFailure) as exc:
        await processor.transfer("acct_1", Decimal("19.10"), "usd", "payout:p1:transfer:1")
    assert exc.value.retryable


async def test_timeout_becomes_dependency_failure():
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    processor = HttpPaymentProcessor(base_url="http://pp", transport=httpx.MockTransport(handler))
    with pytest.raises(DependencyFailure, match="timed out"):
        await processor.cancel("pi_1", "payment:p1:cancel:1")


async def test_breaker_opens_after_repeated_failures(redis_client):
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(500)

    breaker = CircuitBreaker(redis_client, "payment-processor", failure_threshold=2, reset_timeout_seconds=60)
    processor = HttpPaymentProcessor(base_url="http://pp", breaker=breaker, transport=httpx.MockTransport(handler))

    for _ in range(2):
        with pytest.raises(DependencyFailure):
            await processor.refund("pi_1", Decimal("5.00"), "payment:p1:refund")

    with pytest.raises(DependencyFailure, match="OPEN"):
        await processor.refund("pi_1", Decimal("5.00"), "payment:p1:refund")

    assert len(calls) == 2
    assert await breaker.state() == "OPEN"


async def test_breaker_closes_on_success(redis_client):
    breaker = CircuitBreaker(redis_client, "pp", failure_threshold=3)
    await breaker.record_failure()
    await breaker.record_success()
    assert await breaker.state() == "CLOSED"
    assert await redis_client.get("cb:pp:failures") is None


def test_processor_base_is_abstract():
    with pytest.raises(TypeError):
        PaymentProcessor()


async def test_half_open_breaker_trips_again_on_failure(redis_client):
    breaker = CircuitBreaker(redis_client, "pp", failure_threshold=1, reset_timeout_seconds=0)
    await breaker.record_failure()
    assert await breaker.state() == "HALF_OPEN"
    await breaker.allow_request()

    await breaker.record_failure()
    assert await redis_client.get("cb:pp:opened_at") is not None

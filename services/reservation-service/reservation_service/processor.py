import asyncio
import logging
from abc import ABC, abstractmethod
from decimal import Decimal, ROUND_HALF_UP

import httpx

from .breaker import CircuitBreaker, CircuitBreakerOpen
from .config import (
    PAYMENT_PROCESSOR_API_KEY,
    PAYMENT_PROCESSOR_URL,
    PROCESSOR_TIMEOUT_SECONDS,
    STRIPE_FEE_FIXED,
    STRIPE_FEE_PERCENTAGE,
)
from .errors import DependencyFailure

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


def to_cents(amount: Decimal) -> int:
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class PaymentProcessor(ABC):
    """
    Boundary to the external payment processor.
    Every mutating call takes an idempotency key so a retried request is applied once.
    """

    fee_percentage = STRIPE_FEE_PERCENTAGE
    fee_fixed = STRIPE_FEE_FIXED

    def estimate_fee(self, charge_amount: Decimal) -> Decimal:
        return (charge_amount * self.fee_percentage + self.fee_fixed).quantize(CENT, rounding=ROUND_HALF_UP)

    @abstractmethod
    async def authorize(self, amount: Decimal, currency: str, metadata: dict, idempotency_key: str) -> dict:
        """Returns {"intent_id", "client_secret"}."""

    @abstractmethod
    async def cancel(self, intent_id: str, idempotency_key: str) -> None:
        """Voids an authorization that was never captured."""

    @abstractmethod
    async def refund(self, intent_id: str, amount: Decimal, idempotency_key: str) -> dict:
        """Returns {"refund_id"}."""

    @abstractmethod
    async def transfer(self, account_id: str, amount: Decimal, currency: str, idempotency_key: str) -> dict:
        """Returns {"transfer_id"}."""


class HttpPaymentProcessor(PaymentProcessor):
    def __init__(
        self,
        base_url: str = PAYMENT_PROCESSOR_URL,
        api_key: str | None = PAYMENT_PROCESSOR_API_KEY,
        timeout: float = PROCESSOR_TIMEOUT_SECONDS,
        breaker: CircuitBreaker | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.breaker = breaker
        self.transport = transport

    def _headers(self, idempotency_key: str) -> dict:
        headers = {"Idempotency-Key": idempotency_key}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def _send(self, path: str, payload: dict, idempotency_key: str) -> dict:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            resp = await client.post(f"{self.base_url}{path}", json=payload, headers=self._headers(idempotency_key))
            resp.raise_for_status()
            if resp.content:
                return resp.json()
            return {}

    async def _call(self, path: str, payload: dict, idempotency_key: str) -> dict:
        if self.breaker:
            try:
                await self.breaker.allow_request()
            except CircuitBreakerOpen as e:
                raise DependencyFailure(str(e))

        try:
            # hard upper bound even if the transport ignores its own timeout
            data = await asyncio.wait_for(self._send(path, payload, idempotency_key), timeout=self.timeout + 1)
        except (asyncio.TimeoutError, httpx.TimeoutException):
            await self._failed()
            logger.warning("payment processor timeout on %s (%s)", path, idempotency_key)
            raise DependencyFailure("payment processor timed out")
        except httpx.HTTPStatusError as e:
            await self._failed()
            logger.warning("payment processor %s on %s: %s", e.response.status_code, path, e.response.text)
            raise DependencyFailure(f"payment processor rejected the request ({e.response.status_code})")
        except httpx.HTTPError as e:
            await self._failed()
            logger.warning("payment processor unreachable on %s: %s", path, e)
            raise DependencyFailure("payment processor unavailable")

        if self.breaker:
            await self.breaker.record_success()
        return data

    async def _failed(self):
        if self.breaker:
            await self.breaker.record_failure()

    async def authorize(self, amount, currency, metadata, idempotency_key):
        data = await self._call(
            "/payment_intents",
            {"amount": to_cents(amount), "currency": currency, "metadata": metadata},
            idempotency_key,
        )
        return {"intent_id": data.get("id"), "client_secret": data.get("client_secret")}

    async def cancel(self, intent_id, idempotency_key):
        await self._call(f"/payment_intents/{intent_id}/cancel", {}, idempotency_key)

    async def refund(self, intent_id, amount, idempotency_key):
        data = await self._call(
            "/refunds",
            {"payment_intent": intent_id, "amount": to_cents(amount)},
            idempotency_key,
        )
        return {"refund_id": data.get("id")}

    async def transfer(self, account_id, amount, currency, idempotency_key):
        data = await self._call(
            "/transfers",
            {"destination": account_id, "amount": to_cents(amount), "currency": currency},
            idempotency_key,
        )
        return {"transfer_id": data.get("id")}

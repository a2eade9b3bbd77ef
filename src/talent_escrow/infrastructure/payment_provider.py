"""Payment provider clients — HTTP and simulated.

Both satisfy domain.provider_protocol.PaymentProviderClient. The HTTP
client speaks a Stripe-shaped JSON API; the simulated one keeps charges in
memory and is used in development, the simulation script and tests.

Every provider call made by the services goes through call_provider(),
which bounds each attempt with a timeout and retries only retryable
failures (network errors, 5xx, 429) with exponential backoff and jitter.

Webhook signatures use the header format ``t=<unix seconds>,v1=<hex>``
where the digest is HMAC-SHA256 over ``"<t>.<raw body>"``.
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import time
import uuid
from decimal import Decimal
from typing import TYPE_CHECKING, Any

import httpx
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random_exponential,
)

from talent_escrow.config import Settings, get_settings
from talent_escrow.domain.exceptions import (
    PaymentProviderError,
    RetryableProviderError,
    TerminalProviderError,
)
from talent_escrow.domain.provider_protocol import ChargeResult, RefundResult, TransferResult
from talent_escrow.logging_config import get_logger

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from tenacity import RetryCallState

logger = get_logger(__name__)

_CENTS = Decimal("100")


# ---------------------------------------------------------------------------
# Webhook signatures
# ---------------------------------------------------------------------------
def compute_webhook_signature(payload: bytes, secret: str, timestamp: int | None = None) -> str:
    """Build a signature header value for payload."""
    ts = int(time.time()) if timestamp is None else timestamp
    signed = f"{ts}.".encode() + payload
    digest = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={ts},v1={digest}"


def verify_hmac_signature(
    payload: bytes,
    signature: str | None,
    secret: str,
    tolerance_seconds: int = 300,
    now: float | None = None,
) -> bool:
    """Return True if signature is a valid, fresh signature of payload."""
    if not signature or not secret:
        return False

    parts: dict[str, list[str]] = {}
    for item in signature.split(","):
        key, sep, value = item.strip().partition("=")
        if sep:
            parts.setdefault(key, []).append(value)

    try:
        ts = int(parts["t"][0])
    except (KeyError, IndexError, ValueError):
        return False

    current = time.time() if now is None else now
    if tolerance_seconds and abs(current - ts) > tolerance_seconds:
        return False

    expected = compute_webhook_signature(payload, secret, ts).split("v1=", 1)[1]
    return any(hmac.compare_digest(expected, candidate) for candidate in parts.get("v1", []))


def to_minor_units(amount: Decimal) -> int:
    return int((amount * _CENTS).to_integral_value())


# ---------------------------------------------------------------------------
# Retry wrapper
# ---------------------------------------------------------------------------
def _retry_logger(operation: str) -> Callable[[RetryCallState], None]:
    def _log(retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "provider.retrying",
            operation=operation,
            attempt=retry_state.attempt_number,
            error=str(exc),
        )

    return _log


async def call_provider(
    operation: str,
    fn: Callable[..., Awaitable[Any]],
    *args: Any,
    settings: Settings | None = None,
    **kwargs: Any,
) -> Any:
    """Call a provider coroutine with a per-attempt timeout and bounded retries.

    Raises:
        RetryableProviderError: Transient failure that outlived the retry budget.
        TerminalProviderError: Non-retryable failure, raised on first occurrence.
    """
    settings = settings or get_settings()

    async def _attempt() -> Any:
        try:
            async with asyncio.timeout(settings.provider_timeout_seconds):
                return await fn(*args, **kwargs)
        except TimeoutError as exc:
            raise RetryableProviderError(
                f"{operation} timed out after {settings.provider_timeout_ms}ms"
            ) from exc

    retrying = AsyncRetrying(
        stop=stop_after_attempt(settings.provider_retry_max),
        wait=wait_random_exponential(
            multiplier=settings.provider_backoff_initial_seconds,
            max=settings.provider_backoff_max_seconds,
        ),
        retry=retry_if_exception_type(RetryableProviderError),
        before_sleep=_retry_logger(operation),
        reraise=True,
    )
    try:
        async for attempt in retrying:
            with attempt:
                return await _attempt()
    except PaymentProviderError as exc:
        logger.warning(
            "provider.call_failed",
            operation=operation,
            retryable=exc.retryable,
            status_code=exc.status_code,
            error=exc.message,
        )
        raise
    return None  # pragma: no cover


# ---------------------------------------------------------------------------
# HTTP client
# ---------------------------------------------------------------------------
class HttpPaymentProviderClient:
    """Stripe-shaped REST client over httpx.

    Amounts travel in minor units. Every mutating call carries an
    Idempotency-Key header so provider-side replays return the first result.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        webhook_tolerance_seconds: int = 300,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._tolerance = webhook_tolerance_seconds
        self._client = http_client or httpx.AsyncClient(
            base_url=self._base_url,
            headers={"Authorization": f"Bearer {api_key}"},
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _post(self, path: str, idempotency_key: str, body: dict) -> dict:
        try:
            response = await self._client.post(
                path, json=body, headers={"Idempotency-Key": idempotency_key}
            )
        except httpx.TimeoutException as exc:
            raise RetryableProviderError(f"provider timeout on {path}") from exc
        except httpx.TransportError as exc:
            raise RetryableProviderError(f"provider transport error on {path}: {exc}") from exc

        if response.status_code == 429 or response.status_code >= 500:
            raise RetryableProviderError(
                f"provider returned {response.status_code} on {path}",
                status_code=response.status_code,
            )
        if response.status_code >= 400:
            error = _error_body(response)
            raise TerminalProviderError(
                error.get("message") or f"provider rejected {path}",
                status_code=response.status_code,
                provider_code=error.get("code"),
            )
        return response.json()

    async def create_charge(
        self,
        idempotency_key: str,
        amount: Decimal,
        currency: str,
        payment_method_ref: str,
        metadata: dict | None = None,
    ) -> ChargeResult:
        data = await self._post(
            "/charges",
            idempotency_key,
            {
                "amount": to_minor_units(amount),
                "currency": currency.lower(),
                "payment_method": payment_method_ref,
                "capture_method": "manual",
                "metadata": metadata or {},
            },
        )
        return ChargeResult(charge_ref=data["id"], status=data.get("status", ""), raw=data)

    async def capture(self, charge_ref: str, idempotency_key: str) -> ChargeResult:
        data = await self._post(f"/charges/{charge_ref}/capture", idempotency_key, {})
        return ChargeResult(charge_ref=data.get("id", charge_ref), status=data.get("status", ""), raw=data)

    async def transfer(
        self,
        amount: Decimal,
        currency: str,
        destination: str,
        idempotency_key: str,
        metadata: dict | None = None,
    ) -> TransferResult:
        data = await self._post(
            "/transfers",
            idempotency_key,
            {
                "amount": to_minor_units(amount),
                "currency": currency.lower(),
                "destination": destination,
                "metadata": metadata or {},
            },
        )
        return TransferResult(transfer_ref=data["id"], status=data.get("status", ""), raw=data)

    async def refund(self, charge_ref: str, amount: Decimal, idempotency_key: str) -> RefundResult:
        data = await self._post(
            "/refunds",
            idempotency_key,
            {"charge": charge_ref, "amount": to_minor_units(amount)},
        )
        return RefundResult(refund_ref=data["id"], status=data.get("status", ""), raw=data)

    def verify_webhook_signature(self, payload: bytes, signature: str, secret: str) -> bool:
        return verify_hmac_signature(payload, signature, secret, self._tolerance)


def _error_body(response: httpx.Response) -> dict:
    try:
        body = response.json()
    except ValueError:
        return {}
    error = body.get("error", body) if isinstance(body, dict) else {}
    return error if isinstance(error, dict) else {}


# ---------------------------------------------------------------------------
# Simulated client
# ---------------------------------------------------------------------------
class SimulatedPaymentProviderClient:
    """In-memory provider.

    Args:
        confirm_synchronously: If True, charges come back "succeeded" and
            transfers "paid"; otherwise both stay "processing" and a webhook
            has to confirm them.
        decline_methods: Payment method refs that are declined terminally.
    """

    def __init__(
        self,
        confirm_synchronously: bool = True,
        decline_methods: set[str] | None = None,
        webhook_tolerance_seconds: int = 300,
    ) -> None:
        self.confirm_synchronously = confirm_synchronously
        self.decline_methods = set(decline_methods or ())
        self.transient_failures = 0
        self.calls: list[tuple[str, str]] = []
        self._results: dict[str, Any] = {}
        self._tolerance = webhook_tolerance_seconds

    def fail_transiently(self, times: int) -> None:
        """Make the next `times` calls raise RetryableProviderError."""
        self.transient_failures = times

    def _replay_or_fail(self, operation: str, idempotency_key: str) -> Any:
        self.calls.append((operation, idempotency_key))
        if self.transient_failures > 0:
            self.transient_failures -= 1
            raise RetryableProviderError(f"simulated {operation} outage", status_code=503)
        return self._results.get(idempotency_key)

    async def create_charge(
        self,
        idempotency_key: str,
        amount: Decimal,
        currency: str,
        payment_method_ref: str,
        metadata: dict | None = None,
    ) -> ChargeResult:
        previous = self._replay_or_fail("create_charge", idempotency_key)
        if previous is not None:
            return previous
        if payment_method_ref in self.decline_methods:
            raise TerminalProviderError(
                "Your card was declined.", status_code=402, provider_code="card_declined"
            )
        status = "requires_capture" if self.confirm_synchronously else "processing"
        result = ChargeResult(
            charge_ref=f"ch_{uuid.uuid4().hex[:24]}",
            status=status,
            raw={"amount": str(amount), "currency": currency, "metadata": metadata or {}},
        )
        self._results[idempotency_key] = result
        return result

    async def capture(self, charge_ref: str, idempotency_key: str) -> ChargeResult:
        previous = self._replay_or_fail("capture", idempotency_key)
        if previous is not None:
            return previous
        result = ChargeResult(charge_ref=charge_ref, status="succeeded")
        self._results[idempotency_key] = result
        return result

    async def transfer(
        self,
        amount: Decimal,
        currency: str,
        destination: str,
        idempotency_key: str,
        metadata: dict | None = None,
    ) -> TransferResult:
        previous = self._replay_or_fail("transfer", idempotency_key)
        if previous is not None:
            return previous
        result = TransferResult(
            transfer_ref=f"tr_{uuid.uuid4().hex[:24]}",
            status="paid" if self.confirm_synchronously else "pending",
            raw={
                "amount": str(amount),
                "currency": currency,
                "destination": destination,
                "metadata": metadata or {},
            },
        )
        self._results[idempotency_key] = result
        return result

    async def refund(self, charge_ref: str, amount: Decimal, idempotency_key: str) -> RefundResult:
        previous = self._replay_or_fail("refund", idempotency_key)
        if previous is not None:
            return previous
        result = RefundResult(
            refund_ref=f"re_{uuid.uuid4().hex[:24]}",
            status="succeeded",
            raw={"charge": charge_ref, "amount": str(amount)},
        )
        self._results[idempotency_key] = result
        return result

    def verify_webhook_signature(self, payload: bytes, signature: str, secret: str) -> bool:
        return verify_hmac_signature(payload, signature, secret, self._tolerance)


def build_payment_provider(settings: Settings | None = None) -> HttpPaymentProviderClient | SimulatedPaymentProviderClient:
    """Create the provider client selected by payment_provider_mode."""
    settings = settings or get_settings()
    if settings.payment_provider_mode == "http":
        logger.info("provider.http_client", base_url=settings.payment_provider_base_url)
        return HttpPaymentProviderClient(
            base_url=settings.payment_provider_base_url,
            api_key=settings.payment_provider_api_key,
            webhook_tolerance_seconds=settings.webhook_signature_tolerance_seconds,
        )
    logger.info("provider.simulated_client")
    return SimulatedPaymentProviderClient(
        webhook_tolerance_seconds=settings.webhook_signature_tolerance_seconds,
    )

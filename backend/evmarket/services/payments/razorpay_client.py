"""
Razorpay API client wrapper with error handling and retry logic.

This module wraps the three gateway operations the core needs (order
creation, payment fetch, refund) plus the two HMAC signature checks. Gateway
amounts are integers in the currency's subunit (paise); conversion happens
here and nowhere else. Failures surface as ``GatewayError`` with
``transient`` set for network errors, rate limits and 5xx responses, and
cleared for structured 4xx responses whose description is kept verbatim.
"""

import asyncio
import hashlib
import hmac
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Optional

import httpx

from evmarket.core.config import get_settings
from evmarket.core.errors import GatewayError
from evmarket.core.logging import get_logger

logger = get_logger(__name__)

SUBUNITS = Decimal("100")
MAX_NOTES = 15
MAX_NOTE_LENGTH = 256


def to_subunits(amount: Decimal) -> int:
    """Convert a currency amount to gateway subunits (paise)."""
    return int((Decimal(amount) * SUBUNITS).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_subunits(value: int) -> Decimal:
    return (Decimal(int(value)) / SUBUNITS).quantize(Decimal("0.01"))


def compute_signature(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def signature_matches(secret: str, message: bytes, signature: Optional[str]) -> bool:
    """Constant-time comparison of a hex HMAC-SHA256 signature."""
    if not secret or not signature:
        return False
    expected = compute_signature(secret, message)
    return hmac.compare_digest(expected.encode("utf-8"), signature.strip().encode("utf-8"))


@dataclass(frozen=True)
class RemoteOrder:
    id: str
    amount: Decimal
    currency: str
    receipt: str
    status: str


@dataclass(frozen=True)
class RemotePayment:
    id: str
    order_id: Optional[str]
    amount: Decimal
    currency: str
    status: str
    method: Optional[str] = None
    error_description: Optional[str] = None


@dataclass(frozen=True)
class RemoteRefund:
    id: str
    payment_id: str
    amount: Decimal
    status: str


class RazorpayClient:
    """
    Razorpay REST client with exponential backoff retry logic.

    Non-idempotent calls (refunds) are only retried when the request
    provably never reached the gateway (connection failures) or was
    rejected by rate limiting.
    """

    def __init__(
        self,
        key_id: str,
        key_secret: str,
        webhook_secret: str = "",
        base_url: str = "https://api.razorpay.com/v1",
        timeout: float = 30.0,
        max_retries: int = 3,
        initial_backoff: float = 0.5,
        max_backoff: float = 8.0,
        backoff_multiplier: float = 2.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize Razorpay client with configuration.

        Args:
            key_id: Public API key id (also handed to the checkout widget)
            key_secret: API key secret, used for basic auth and payment signatures
            webhook_secret: Secret configured for webhook signatures
            base_url: API root
            timeout: Per-request timeout in seconds
            max_retries: Maximum number of retry attempts
            initial_backoff: Initial backoff delay in seconds
            max_backoff: Maximum backoff delay in seconds
            backoff_multiplier: Backoff multiplier for exponential backoff
            transport: Optional httpx transport (tests use ``MockTransport``)
        """
        self.key_id = key_id
        self._key_secret = key_secret
        self._webhook_secret = webhook_secret
        self.max_retries = max_retries
        self.initial_backoff = initial_backoff
        self.max_backoff = max_backoff
        self.backoff_multiplier = backoff_multiplier
        self._client = httpx.AsyncClient(
            base_url=base_url,
            auth=(key_id, key_secret),
            timeout=timeout,
            transport=transport,
            headers={"Content-Type": "application/json"},
        )

        logger.info(
            "Razorpay client initialized",
            base_url=base_url,
            max_retries=max_retries,
            initial_backoff=initial_backoff,
            max_backoff=max_backoff,
        )

    async def __aenter__(self) -> "RazorpayClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    def _calculate_backoff(self, attempt: int) -> float:
        """
        Calculate exponential backoff delay.

        Args:
            attempt: Current retry attempt number (0-indexed)
        """
        return min(
            self.initial_backoff * (self.backoff_multiplier**attempt),
            self.max_backoff,
        )

    def _should_retry(self, error: GatewayError, attempt: int, idempotent: bool) -> bool:
        if attempt >= self.max_retries or not error.transient:
            return False
        if idempotent:
            return True
        return error.code in {"GATEWAY_CONNECT_ERROR", "GATEWAY_RATE_LIMITED"}

    def _translate_response(self, operation: str, response: httpx.Response) -> GatewayError:
        status = response.status_code
        if status == 429:
            return GatewayError(
                "Payment gateway is rate limiting requests, please retry",
                transient=True,
                code="GATEWAY_RATE_LIMITED",
                status_code=status,
                operation=operation,
            )
        if status >= 500:
            return GatewayError(
                "Payment gateway is temporarily unavailable, please retry",
                transient=True,
                code="GATEWAY_UNAVAILABLE",
                status_code=status,
                operation=operation,
            )

        try:
            body = response.json()
        except ValueError:
            body = {}
        error = body.get("error") if isinstance(body, dict) else None
        error = error if isinstance(error, dict) else {}
        return GatewayError(
            error.get("description") or f"Payment gateway rejected the request ({status})",
            transient=False,
            code=error.get("code") or "BAD_REQUEST_ERROR",
            status_code=status,
            error=error,
            operation=operation,
        )

    async def _execute_with_retry(
        self,
        operation: str,
        method: str,
        path: str,
        payload: Optional[dict[str, Any]] = None,
        idempotent: bool = True,
    ) -> dict[str, Any]:
        """
        Execute a gateway call with exponential backoff retry logic.

        Raises:
            GatewayError: If the call fails and is not (or no longer) retryable
        """
        attempt = 0
        while True:
            try:
                logger.debug(
                    "Executing Razorpay operation",
                    operation=operation,
                    attempt=attempt,
                    max_retries=self.max_retries,
                )
                response = await self._client.request(method, path, json=payload)
                if response.is_success:
                    if attempt > 0:
                        logger.info(
                            "Razorpay operation succeeded after retry",
                            operation=operation,
                            attempt=attempt,
                        )
                    return response.json()
                error = self._translate_response(operation, response)

            except httpx.ConnectError as e:
                error = GatewayError(
                    "Could not reach the payment gateway, please retry",
                    transient=True,
                    code="GATEWAY_CONNECT_ERROR",
                    operation=operation,
                    reason=str(e),
                )
            except (httpx.TimeoutException, httpx.TransportError) as e:
                error = GatewayError(
                    "Payment gateway did not respond, please retry",
                    transient=True,
                    code="GATEWAY_TIMEOUT",
                    operation=operation,
                    reason=type(e).__name__,
                )

            if not self._should_retry(error, attempt, idempotent):
                log = logger.warning if error.transient else logger.error
                log(
                    "Razorpay operation failed",
                    operation=operation,
                    attempt=attempt,
                    code=error.code,
                    status_code=error.status_code,
                    transient=error.transient,
                    message=error.message,
                )
                raise error

            backoff = self._calculate_backoff(attempt)
            logger.warning(
                "Razorpay call failed, retrying",
                operation=operation,
                attempt=attempt,
                code=error.code,
                backoff_seconds=backoff,
            )
            await asyncio.sleep(backoff)
            attempt += 1

    @staticmethod
    def _clean_notes(notes: Optional[dict[str, Any]]) -> dict[str, str]:
        cleaned: dict[str, str] = {}
        for key, value in (notes or {}).items():
            if value is None or len(cleaned) >= MAX_NOTES:
                continue
            cleaned[key] = str(value)[:MAX_NOTE_LENGTH]
        return cleaned

    async def create_order(
        self,
        amount: Decimal,
        currency: str,
        receipt: str,
        notes: Optional[dict[str, Any]] = None,
    ) -> RemoteOrder:
        """
        Create a gateway order the checkout widget pays against.

        Args:
            amount: Amount in currency units (converted to subunits)
            currency: ISO currency code
            receipt: Merchant receipt reference (max 40 chars)
            notes: Context echoed back in webhook payloads
        """
        logger.info(
            "Creating gateway order",
            amount=str(amount),
            currency=currency,
            receipt=receipt,
        )
        body = await self._execute_with_retry(
            "create_order",
            "POST",
            "/orders",
            {
                "amount": to_subunits(amount),
                "currency": currency,
                "receipt": receipt[:40],
                "notes": self._clean_notes(notes),
            },
        )
        order = RemoteOrder(
            id=body["id"],
            amount=from_subunits(body["amount"]),
            currency=body.get("currency", currency),
            receipt=body.get("receipt") or receipt,
            status=body.get("status", "created"),
        )
        logger.info("Gateway order created", razorpay_order_id=order.id)
        return order

    async def fetch_payment(self, payment_id: str) -> RemotePayment:
        body = await self._execute_with_retry(
            "fetch_payment", "GET", f"/payments/{payment_id}"
        )
        return RemotePayment(
            id=body["id"],
            order_id=body.get("order_id"),
            amount=from_subunits(body.get("amount", 0)),
            currency=body.get("currency", ""),
            status=body.get("status", ""),
            method=body.get("method"),
            error_description=body.get("error_description"),
        )

    async def create_refund(
        self,
        payment_id: str,
        amount: Decimal,
        notes: Optional[dict[str, Any]] = None,
    ) -> RemoteRefund:
        """
        Refund part or all of a captured payment.

        Raises:
            GatewayError: ``transient`` tells the caller whether retrying is safe
        """
        logger.info("Creating gateway refund", payment_id=payment_id, amount=str(amount))
        body = await self._execute_with_retry(
            "create_refund",
            "POST",
            f"/payments/{payment_id}/refund",
            {"amount": to_subunits(amount), "notes": self._clean_notes(notes)},
            idempotent=False,
        )
        refund = RemoteRefund(
            id=body["id"],
            payment_id=body.get("payment_id", payment_id),
            amount=from_subunits(body.get("amount", to_subunits(amount))),
            status=body.get("status", "pending"),
        )
        logger.info("Gateway refund created", refund_id=refund.id, status=refund.status)
        return refund

    def verify_payment_signature(
        self,
        order_id: str,
        payment_id: str,
        signature: Optional[str],
    ) -> bool:
        """Checkout signature: HMAC-SHA256 of ``order_id|payment_id`` with the key secret."""
        message = f"{order_id}|{payment_id}".encode("utf-8")
        return signature_matches(self._key_secret, message, signature)

    def verify_webhook_signature(self, body: bytes, signature: Optional[str]) -> bool:
        """Webhook signature: HMAC-SHA256 of the raw body with the webhook secret."""
        return signature_matches(self._webhook_secret, body, signature)


def create_razorpay_client(transport: Optional[httpx.AsyncBaseTransport] = None) -> RazorpayClient:
    """Build a client from application settings."""
    settings = get_settings()
    return RazorpayClient(
        key_id=settings.razorpay_key_id,
        key_secret=settings.razorpay_key_secret,
        webhook_secret=settings.razorpay_webhook_secret,
        base_url=settings.razorpay_base_url,
        timeout=settings.gateway_timeout_seconds,
        max_retries=settings.gateway_max_retries,
        initial_backoff=settings.gateway_initial_backoff,
        max_backoff=settings.gateway_max_backoff,
        transport=transport,
    )

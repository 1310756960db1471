"""
Gateway Adapter Base
====================
Uniform async interface every payment provider adapter implements, plus the
shared HTTP plumbing: one httpx.AsyncClient per adapter, cached bearer tokens,
bounded retry for status reads and conversion of transport failures into
structured GatewayResult failures.

Public adapter operations never raise for provider or network failures.
They return GatewayResult(success=False, error_code=...) and leave the
decision to the calling service.
"""

import asyncio
import functools
import hashlib
import hmac
import time
from abc import ABC, abstractmethod
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Callable, Dict, Mapping, Optional

import httpx
import structlog

from maison_orders.errors import ErrorCode, GatewayAuthError
from maison_orders.schemas.orders import quantize_money
from maison_orders.schemas.payments import GatewayResult, PaymentIntent, WebhookEvent

DEFAULT_TIMEOUT_SECONDS = 15.0
TOKEN_REFRESH_BUFFER_SECONDS = 60


# =============================================================================
# HELPERS
# =============================================================================

def to_minor_units(amount: Decimal) -> int:
    """Amount in cents, rounded half-up"""
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def format_amount(amount: Decimal) -> str:
    """Two-decimal string for providers that take decimal amounts"""
    return f"{quantize_money(amount):.2f}"


def as_str(value: Any) -> Optional[str]:
    """Provider ids arrive as ints or strings; store them as strings"""
    return str(value) if value not in (None, "") else None


def as_decimal(value: Any) -> Optional[Decimal]:
    if value in (None, ""):
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return None


def hmac_sha256_hex(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def secure_compare(provided: Optional[str], expected: Optional[str]) -> bool:
    """Constant-time comparison. Missing values never match."""
    if not provided or not expected:
        return False
    return hmac.compare_digest(provided.strip().lower().encode(), expected.lower().encode())


class TokenCache:
    """Holds one bearer token until `expires_in` minus a safety buffer"""

    def __init__(
        self,
        buffer_seconds: int = TOKEN_REFRESH_BUFFER_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.buffer_seconds = buffer_seconds
        self._clock = clock
        self._token: Optional[str] = None
        self._expires_at = 0.0

    def get(self) -> Optional[str]:
        if self._token and self._clock() < self._expires_at:
            return self._token
        return None

    def set(self, token: str, expires_in: float) -> None:
        self._token = token
        self._expires_at = self._clock() + max(float(expires_in) - self.buffer_seconds, 0.0)

    def clear(self) -> None:
        self._token = None
        self._expires_at = 0.0


# =============================================================================
# ADAPTER INTERFACE
# =============================================================================

class PaymentGatewayAdapter(ABC):
    """Interface shared by PayPal, Paymob and Fawry"""

    name: str = "gateway"
    currency: str = "USD"

    async def authenticate(self) -> Optional[str]:
        """Return a bearer token. Providers that sign each request return None."""
        return None

    @abstractmethod
    async def create_payment(self, intent: PaymentIntent) -> GatewayResult:
        pass

    @abstractmethod
    async def capture_payment(self, reference: str) -> GatewayResult:
        pass

    @abstractmethod
    async def check_payment_status(self, reference: str) -> GatewayResult:
        pass

    @abstractmethod
    async def refund_payment(
        self,
        transaction_id: str,
        amount: Decimal,
        currency: str,
        reason: Optional[str] = None,
    ) -> GatewayResult:
        pass

    @abstractmethod
    async def verify_webhook(self, body: bytes, headers: Mapping[str, str]) -> bool:
        """Authenticate a raw webhook delivery. Never raises."""
        pass

    @abstractmethod
    def process_webhook(self, payload: Dict[str, Any]) -> WebhookEvent:
        """Map a verified provider payload onto a WebhookEvent. No side effects."""
        pass

    async def close(self) -> None:
        pass


def gateway_call(operation: str):
    """Turn auth, transport and malformed-response failures into GatewayResult failures."""
    def decorator(func):
        @functools.wraps(func)
        async def wrapper(self: "HttpGateway", *args, **kwargs) -> GatewayResult:
            try:
                return await func(self, *args, **kwargs)
            except GatewayAuthError as e:
                self.logger.warning("gateway_auth_failed", operation=operation, error=e.message)
                return GatewayResult.failure(self.name, ErrorCode.AUTH_ERROR.value, e.message)
            except httpx.TimeoutException:
                self.logger.error("gateway_timeout", operation=operation)
                return GatewayResult.gateway_error(self.name, "Gateway request timed out")
            except httpx.HTTPError as e:
                self.logger.error("gateway_http_error", operation=operation, error=str(e))
                return GatewayResult.gateway_error(self.name)
            except (AttributeError, KeyError, IndexError, TypeError, ValueError) as e:
                self.logger.error("gateway_unexpected_response", operation=operation, error=str(e))
                return GatewayResult.gateway_error(self.name, "Unexpected gateway response")
        return wrapper
    return decorator


class HttpGateway(PaymentGatewayAdapter):
    """Adapter base with a shared httpx client and retrying status reads"""

    def __init__(
        self,
        base_url: str,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        status_attempts: int = 3,
        status_backoff_seconds: float = 0.5,
    ):
        self.base_url = base_url.rstrip("/")
        self.status_attempts = max(status_attempts, 1)
        self.status_backoff_seconds = status_backoff_seconds
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None
        self.logger = structlog.get_logger().bind(component="gateway", provider=self.name)

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _send(self, method: str, path: str, **kwargs) -> httpx.Response:
        return await self._client.request(method, f"{self.base_url}{path}", **kwargs)

    async def _send_with_retry(self, method: str, path: str, **kwargs) -> httpx.Response:
        """Status reads only: retry transport errors and 5xx with linear backoff"""
        attempt = 1
        while True:
            try:
                response = await self._send(method, path, **kwargs)
                if response.status_code < 500 or attempt >= self.status_attempts:
                    return response
                self.logger.warning("gateway_status_retry", path=path, attempt=attempt,
                                    status_code=response.status_code)
            except httpx.TransportError as e:
                if attempt >= self.status_attempts:
                    raise
                self.logger.warning("gateway_status_retry", path=path, attempt=attempt, error=str(e))
            await asyncio.sleep(self.status_backoff_seconds * attempt)
            attempt += 1

    def _failure_from_response(
        self,
        response: httpx.Response,
        default_code: str,
        default_message: str,
    ) -> GatewayResult:
        """Best-effort extraction of the provider's own error code and message"""
        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {"body": body}

        details = body.get("details") or [{}]
        first_detail = details[0] if isinstance(details, list) and details else {}
        code = (
            (first_detail or {}).get("issue")
            or body.get("name")
            or (str(body["statusCode"]) if body.get("statusCode") else None)
            or default_code
        )
        message = (
            body.get("message")
            or body.get("statusDescription")
            or body.get("detail")
            or default_message
        )
        self.logger.warning("gateway_request_failed", status_code=response.status_code, error_code=code)
        return GatewayResult.failure(self.name, code, message, raw=body)

"""
MTN Mobile Money Gateway Client.

Talks to the MoMo collection API: access tokens, request-to-pay and
transaction status. Every outbound call goes through the gateway circuit
breaker; failures surface as PaymentGatewayError.
"""

import base64
import logging
import re
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional

import httpx
from redis.exceptions import RedisError

from coop_backend.app.core.config import Settings, settings
from coop_backend.app.core.exceptions import PaymentGatewayError
from coop_backend.app.core.redis_client import redis_client
from coop_backend.app.core.reliability import CircuitBreaker, CircuitOpenError, gateway_circuit_breaker

logger = logging.getLogger(__name__)

TOKEN_CACHE_KEY = "momo:collection:access_token"


@dataclass
class GatewayPaymentRequest:
    """Result of an accepted request-to-pay."""
    reference_id: str
    external_id: str
    status: str = "PENDING"


@dataclass
class GatewayTransactionStatus:
    """Transaction state as reported by the gateway."""
    reference_id: str
    status: str
    amount: Optional[str] = None
    currency: Optional[str] = None
    external_id: Optional[str] = None
    financial_transaction_id: Optional[str] = None
    payer_message: Optional[str] = None
    payee_note: Optional[str] = None
    reason: Optional[str] = None


def format_phone_number(phone_number: str, country_code: str = "256") -> str:
    """
    Normalize a member phone number to the MSISDN format MoMo expects.

    Non-digits are stripped, a leading 0 is replaced by the country code
    and numbers without the country code get it prepended.
    """
    digits = re.sub(r"[^0-9]", "", phone_number)

    if digits.startswith("0"):
        digits = country_code + digits[1:]

    if not digits.startswith(country_code):
        digits = country_code + digits

    return digits


def _provider_message(response: httpx.Response) -> Optional[str]:
    try:
        body = response.json()
    except ValueError:
        return None
    if isinstance(body, dict):
        return body.get("message")
    return None


class PaymentGateway:
    """Interface every payment gateway client implements."""

    async def request_to_pay(
        self,
        amount: Decimal,
        phone_number: str,
        description: str,
        external_id: str,
    ) -> GatewayPaymentRequest:
        raise NotImplementedError

    async def get_payment_status(self, reference_id: str) -> GatewayTransactionStatus:
        raise NotImplementedError

    async def aclose(self) -> None:
        return None


class MtnMomoGateway(PaymentGateway):
    """
    MTN MoMo collection API client.

    Args:
        config: Settings carrying the momo_* credentials
        http_client: Optional pre-built httpx.AsyncClient (tests inject a MockTransport)
        cache: Redis-compatible cache for the access token
        circuit_breaker: Breaker guarding outbound calls
    """

    def __init__(
        self,
        config: Settings = settings,
        http_client: Optional[httpx.AsyncClient] = None,
        cache: Any = None,
        circuit_breaker: CircuitBreaker = gateway_circuit_breaker,
    ):
        self.config = config
        self.client = http_client or httpx.AsyncClient(
            base_url=config.momo_base_url,
            timeout=config.momo_timeout_seconds,
        )
        self.cache = cache if cache is not None else redis_client
        self.circuit_breaker = circuit_breaker

    async def aclose(self) -> None:
        await self.client.aclose()

    async def _send(self, method: str, url: str, **kwargs) -> httpx.Response:
        response = await self.client.request(method, url, **kwargs)
        # 5xx counts against the breaker, 4xx is a business rejection
        if response.status_code >= 500:
            response.raise_for_status()
        return response

    async def _call(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            return await self.circuit_breaker.call(self._send, method, url, **kwargs)
        except CircuitOpenError as e:
            logger.warning("MoMo call skipped, circuit open: %s %s", method, url)
            raise PaymentGatewayError("Payment gateway temporarily unavailable") from e
        except httpx.HTTPError as e:
            logger.error("MoMo call failed: %s %s: %s", method, url, e)
            raise PaymentGatewayError(f"Payment gateway request failed: {e}") from e

    def _base_headers(self) -> Dict[str, str]:
        return {
            "X-Target-Environment": self.config.momo_target_environment,
            "Ocp-Apim-Subscription-Key": self.config.momo_subscription_key or "",
        }

    async def _cached_token(self) -> Optional[str]:
        try:
            return await self.cache.get(TOKEN_CACHE_KEY)
        except RedisError as e:
            logger.warning("Token cache read failed: %s", e)
            return None

    async def _store_token(self, token: str) -> None:
        try:
            await self.cache.set(TOKEN_CACHE_KEY, token, ex=self.config.momo_token_ttl_seconds)
        except RedisError as e:
            logger.warning("Token cache write failed: %s", e)

    async def get_access_token(self) -> str:
        """
        Get an access token, reusing the cached one until it nears expiry.
        """
        token = await self._cached_token()
        if token:
            return token

        credentials = f"{self.config.momo_api_user}:{self.config.momo_api_key}"
        headers = {
            **self._base_headers(),
            "Authorization": "Basic " + base64.b64encode(credentials.encode()).decode(),
        }
        response = await self._call("POST", "/collection/token/", headers=headers)

        if response.status_code != 200:
            logger.error("MoMo token request failed: status=%s", response.status_code)
            raise PaymentGatewayError("Failed to get access token", details={"status": response.status_code})

        token = response.json().get("access_token")
        if not token:
            raise PaymentGatewayError("Failed to get access token")

        await self._store_token(token)
        return token

    async def request_to_pay(
        self,
        amount: Decimal,
        phone_number: str,
        description: str,
        external_id: str,
    ) -> GatewayPaymentRequest:
        """
        Create a collection request. MoMo answers 202 Accepted and settles later.
        """
        token = await self.get_access_token()
        reference_id = str(uuid.uuid4())

        payload = {
            "amount": str(amount),
            "currency": self.config.momo_currency,
            "externalId": external_id,
            "payer": {
                "partyIdType": "MSISDN",
                "partyId": format_phone_number(phone_number, self.config.momo_country_code),
            },
            "payerMessage": description,
            "payeeNote": description,
        }
        headers = {
            **self._base_headers(),
            "Authorization": f"Bearer {token}",
            "X-Reference-Id": reference_id,
        }
        if self.config.momo_callback_url:
            headers["X-Callback-Url"] = self.config.momo_callback_url

        response = await self._call(
            "POST", "/collection/v1_0/requesttopay", headers=headers, json=payload
        )

        if response.status_code != 202:
            message = _provider_message(response) or "Unknown error"
            logger.error(
                "MoMo request-to-pay rejected: status=%s external_id=%s message=%s",
                response.status_code, external_id, message,
            )
            raise PaymentGatewayError(
                f"Failed to create payment request: {message}",
                details={"status": response.status_code},
            )

        logger.info("MoMo request-to-pay accepted: reference_id=%s external_id=%s", reference_id, external_id)
        return GatewayPaymentRequest(reference_id=reference_id, external_id=external_id)

    async def get_payment_status(self, reference_id: str) -> GatewayTransactionStatus:
        token = await self.get_access_token()
        headers = {**self._base_headers(), "Authorization": f"Bearer {token}"}

        response = await self._call(
            "GET", f"/collection/v1_0/requesttopay/{reference_id}", headers=headers
        )

        if response.status_code != 200:
            logger.error(
                "MoMo status check failed: status=%s reference_id=%s",
                response.status_code, reference_id,
            )
            raise PaymentGatewayError(
                "Failed to check payment status",
                details={"status": response.status_code, "reference_id": reference_id},
            )

        data = response.json()
        return GatewayTransactionStatus(
            reference_id=reference_id,
            status=str(data.get("status", "unknown")).upper(),
            amount=data.get("amount"),
            currency=data.get("currency"),
            external_id=data.get("externalId"),
            financial_transaction_id=data.get("financialTransactionId"),
            payer_message=data.get("payerMessage"),
            payee_note=data.get("payeeNote"),
            reason=reason_text(data.get("reason")),
        )


def reason_text(reason: Any) -> Optional[str]:
    # The sandbox returns either a string or {"code": ..., "message": ...}
    if reason is None:
        return None
    if isinstance(reason, dict):
        return reason.get("message") or reason.get("code")
    return str(reason)


_gateway: Optional[PaymentGateway] = None


def get_payment_gateway() -> PaymentGateway:
    """
    FastAPI dependency returning the process-wide gateway client.
    """
    global _gateway
    if _gateway is None:
        _gateway = MtnMomoGateway()
    return _gateway


async def close_payment_gateway() -> None:
    global _gateway
    if _gateway is not None:
        await _gateway.aclose()
        _gateway = None

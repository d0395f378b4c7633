"""
Member Payments API Client.

Thin httpx client for the member payment endpoints, used by the payment
dialogs. Every failure surfaces as PaymentApiError carrying the server's
message.
"""

import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional, Union

import httpx

logger = logging.getLogger(__name__)


class PaymentApiError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None, error_code: Optional[str] = None):
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        super().__init__(message)


class PaymentApiClient:
    """
    Args:
        base_url: API root including the version, e.g. http://localhost:8000/v1
        token: Member's bearer token
        http_client: Optional pre-built httpx.AsyncClient
    """

    def __init__(
        self,
        base_url: str = "",
        token: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
    ):
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        if http_client is None:
            http_client = httpx.AsyncClient(base_url=base_url, timeout=timeout)
        http_client.headers.update(headers)
        self.client = http_client

    async def aclose(self) -> None:
        await self.client.aclose()

    async def _request(self, method: str, url: str, **kwargs) -> Dict[str, Any]:
        try:
            response = await self.client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            logger.warning("Payment API %s %s failed: %s", method, url, e)
            raise PaymentApiError("Unable to reach the payment service") from e

        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}

        if response.is_error or not body.get("success", False):
            raise PaymentApiError(
                body.get("message") or f"Request failed with status {response.status_code}",
                status_code=response.status_code,
                error_code=body.get("error_code"),
            )
        return body

    async def initiate_payment(
        self,
        phone_number: str,
        amount: Union[Decimal, float],
        description: str,
        fee_application_ids: List[int],
        payment_type: str = "single",
        idempotency_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        POST /member/payments/initiate.

        Returns:
            The ``data`` object, which carries ``reference_id``
        """
        headers = {"Idempotency-Key": idempotency_key} if idempotency_key else {}
        body = await self._request(
            "POST",
            "/member/payments/initiate",
            headers=headers,
            json={
                "phone_number": phone_number,
                "amount": str(amount),
                "description": description,
                "fee_application_ids": fee_application_ids,
                "payment_type": payment_type,
            },
        )
        data = body.get("data") or {}
        if not data.get("reference_id"):
            raise PaymentApiError(body.get("message") or "Failed to initiate payment")
        return data

    async def check_status(self, reference_id: str) -> str:
        """POST /member/payments/check-status, returning the provider status."""
        body = await self._request(
            "POST",
            "/member/payments/check-status",
            json={"reference_id": reference_id},
        )
        return (body.get("data") or {}).get("status", "")

    async def outstanding_fees(self) -> Dict[str, Any]:
        body = await self._request("GET", "/member/fees/outstanding")
        return body["data"]

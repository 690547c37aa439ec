from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional, Tuple

import httpx

from tenantgate.config import Settings
from tenantgate.logging import get_logger
from tenantgate.service.errors import BillingError

logger = get_logger(__name__)


def encode_form(params: Dict[str, Any], prefix: str = "") -> List[Tuple[str, str]]:
    """Flatten nested dicts/lists into Stripe's bracketed form keys.

    ``{"metadata": {"plan": "pro"}}`` becomes ``[("metadata[plan]", "pro")]`` and
    lists are indexed, e.g. ``line_items[0][price]``. ``None`` values are dropped.
    """
    pairs: List[Tuple[str, str]] = []
    for key, value in params.items():
        name = f"{prefix}[{key}]" if prefix else str(key)
        pairs.extend(_encode_value(name, value))
    return pairs


def _encode_value(name: str, value: Any) -> Iterable[Tuple[str, str]]:
    if value is None:
        return []
    if isinstance(value, dict):
        return encode_form(value, name)
    if isinstance(value, (list, tuple)):
        pairs: List[Tuple[str, str]] = []
        for index, item in enumerate(value):
            pairs.extend(_encode_value(f"{name}[{index}]", item))
        return pairs
    if isinstance(value, bool):
        return [(name, "true" if value else "false")]
    return [(name, str(value))]


class BillingService:
    """Pass-through client for the Stripe REST API.

    Responses are returned as decoded JSON objects without interpretation.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.secret_key = settings.stripe_secret_key
        self.base_url = settings.stripe_api_base.rstrip("/")
        self.timeout = settings.stripe_timeout_seconds
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.secret_key)

    async def create_customer(self, email: str) -> dict:
        return await self._request("POST", "/customers", {"email": email})

    async def get_customer(self, customer_id: str) -> dict:
        return await self._request("GET", f"/customers/{customer_id}")

    async def update_customer(
        self,
        customer_id: str,
        *,
        email: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> dict:
        return await self._request(
            "POST",
            f"/customers/{customer_id}",
            {"email": email, "metadata": metadata},
        )

    async def delete_customer(self, customer_id: str) -> dict:
        return await self._request("DELETE", f"/customers/{customer_id}")

    async def create_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
    ) -> dict:
        return await self._request(
            "POST",
            "/checkout/sessions",
            {
                "customer": customer_id,
                "mode": "subscription",
                "line_items": [{"price": price_id, "quantity": 1}],
                "success_url": success_url,
                "cancel_url": cancel_url,
            },
        )

    async def create_billing_portal_session(
        self, customer_id: str, return_url: str
    ) -> dict:
        return await self._request(
            "POST",
            "/billing_portal/sessions",
            {"customer": customer_id, "return_url": return_url},
        )

    async def _request(
        self, method: str, path: str, params: Optional[Dict[str, Any]] = None
    ) -> dict:
        if not self.secret_key:
            raise BillingError("billing is not configured")
        headers = {
            "Authorization": f"Bearer {self.secret_key}",
            "Accept": "application/json",
        }
        form = encode_form(params or {})
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                follow_redirects=False,
                transport=self._transport,
            ) as client:
                if method == "GET" or method == "DELETE":
                    response = await client.request(
                        method, path, params=form or None, headers=headers
                    )
                else:
                    response = await client.request(
                        method, path, data=dict(form) if form else None, headers=headers
                    )
        except httpx.HTTPError as exc:
            logger.error("stripe_request_failed", path=path, error=str(exc))
            raise BillingError("payment provider unavailable") from exc

        try:
            body = response.json()
        except ValueError:
            body = {}
        if response.is_error:
            provider_error = body.get("error") if isinstance(body, dict) else None
            message = (
                provider_error.get("message")
                if isinstance(provider_error, dict) and provider_error.get("message")
                else "payment provider rejected the request"
            )
            logger.warning(
                "stripe_request_rejected", path=path, status=response.status_code
            )
            raise BillingError(
                message,
                detail={
                    "provider_status": response.status_code,
                    "provider_code": provider_error.get("code")
                    if isinstance(provider_error, dict)
                    else None,
                },
            )
        if not isinstance(body, dict):
            raise BillingError("unexpected payment provider response")
        return body

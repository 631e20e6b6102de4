"""Async client for the upstream paywall API.

Only the calls the bridge needs: customer lookup/creation and purchase
cancellation. Every failure, timeouts included, surfaces as UpstreamError.
"""

import logging
from typing import Optional

import httpx

from errors import UpstreamError

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.solvapay.com"


def normalize_customer(data: dict) -> dict:
    """Map a customer payload to {customer_ref, email, name, external_ref, purchases}."""
    return {
        "customer_ref": data.get("reference") or data.get("customerRef"),
        "email": data.get("email"),
        "name": data.get("name"),
        "external_ref": data.get("externalRef"),
        "purchases": data.get("purchases") or data.get("subscriptions") or [],
    }


class PaywallClient:
    """Thin wrapper over the paywall REST API."""

    def __init__(self, api_key: str, base_url: str = DEFAULT_API_URL, timeout: float = 10.0,
                 transport: httpx.AsyncBaseTransport = None):
        if not api_key:
            logger.warning("[PAYWALL] No PAYWALL_SECRET_KEY configured, upstream calls will be rejected")
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
            transport=transport,
        )

    async def aclose(self):
        await self._client.aclose()

    async def _request(self, method: str, path: str, action: str, **kwargs) -> httpx.Response:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            logger.warning(f"[PAYWALL] {action} timed out")
            raise UpstreamError(f"{action} timed out") from e
        except httpx.HTTPError as e:
            logger.warning(f"[PAYWALL] {action} failed: {e}")
            raise UpstreamError(f"{action} failed: {e}") from e

        if response.status_code >= 400:
            logger.warning(f"[PAYWALL] {action} failed ({response.status_code}): {response.text}")
            raise UpstreamError(f"{action} failed ({response.status_code}): {response.text}",
                                status_code=response.status_code)
        return response

    @staticmethod
    def _json(response: httpx.Response, action: str):
        try:
            return response.json()
        except ValueError as e:
            raise UpstreamError(f"{action} returned invalid JSON") from e

    async def get_customer_by_external_ref(self, external_ref: str) -> Optional[dict]:
        """Return the customer whose externalRef matches, or None when there is none."""
        action = "Get customer"
        try:
            response = await self._request("GET", "/v1/sdk/customers", action,
                                           params={"externalRef": external_ref})
        except UpstreamError as e:
            if e.status_code == 404:
                return None
            raise

        data = self._json(response, action)
        # Backend may answer with the customer, a list, or a wrapper object
        if isinstance(data, list):
            customer = data[0] if data else None
        elif isinstance(data, dict) and (data.get("reference") or data.get("customerRef")):
            customer = data
        elif isinstance(data, dict) and isinstance(data.get("customer"), dict):
            customer = data["customer"]
        elif isinstance(data, dict) and isinstance(data.get("customers"), list):
            customer = data["customers"][0] if data["customers"] else None
        else:
            customer = None
        return normalize_customer(customer) if customer else None

    async def get_customer(self, customer_ref: str) -> dict:
        action = "Get customer"
        response = await self._request("GET", f"/v1/sdk/customers/{customer_ref}", action)
        data = self._json(response, action)
        if not isinstance(data, dict):
            raise UpstreamError(f"{action} returned an unexpected payload")
        return normalize_customer(data)

    async def create_customer(self, external_ref: str, email: str = None, name: str = None) -> dict:
        action = "Create customer"
        body = {
            "externalRef": external_ref,
            "email": email or f"{external_ref}@auto-created.local",
            "name": name or external_ref,
        }
        response = await self._request("POST", "/v1/sdk/customers", action, json=body)
        data = self._json(response, action)
        if not isinstance(data, dict):
            raise UpstreamError(f"{action} returned an unexpected payload")
        customer = normalize_customer(data)
        if not customer["customer_ref"]:
            raise UpstreamError(f"{action} returned no customer reference")
        logger.info(f"[PAYWALL] Created customer {customer['customer_ref']} for {external_ref}")
        return customer

    async def cancel_purchase(self, purchase_ref: str, reason: str = None) -> dict:
        action = "Cancel purchase"
        kwargs = {"json": {"reason": reason}} if reason else {}
        response = await self._request("POST", f"/v1/sdk/purchases/{purchase_ref}/cancel",
                                       action, **kwargs)
        data = self._json(response, action)
        if isinstance(data, dict) and isinstance(data.get("purchase"), dict):
            return data["purchase"]
        if isinstance(data, dict):
            return data
        raise UpstreamError(f"{action} returned an unexpected payload")

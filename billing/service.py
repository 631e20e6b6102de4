"""Customer and subscription lookups, deduplicated per subject.

Both lookups are keyed by subject (the identity provider's user id, which is
also the customer's externalRef upstream). After a mutation such as a
cancellation the subject's cached entries are invalidated so the next check
sees fresh state.
"""

import logging

from billing.client import PaywallClient
from billing.dedup import DEFAULT_MAX_SIZE, DEFAULT_TTL, DedupCache
from errors import UpstreamError

logger = logging.getLogger(__name__)

ACTIVE_STATUS = "active"


class CustomerService:

    def __init__(self, client: PaywallClient, ttl: float = DEFAULT_TTL,
                 max_size: int = DEFAULT_MAX_SIZE):
        self.client = client
        self.customers = DedupCache(self._load_customer, ttl=ttl, max_size=max_size,
                                    name="customers")
        self.subscriptions = DedupCache(self._load_subscription, ttl=ttl, max_size=max_size,
                                        name="subscriptions")

    async def _load_customer(self, subject: str) -> dict:
        customer = await self.client.get_customer_by_external_ref(subject)
        if customer is None:
            customer = await self.client.create_customer(subject)
        return customer

    async def _load_subscription(self, subject: str) -> dict:
        customer = await self.customers.get(subject)
        # The ensure call may not carry purchases; read the full record
        details = await self.client.get_customer(customer["customer_ref"])
        active = [p for p in details["purchases"] if p.get("status") == ACTIVE_STATUS]
        return {
            "customer_ref": details["customer_ref"] or customer["customer_ref"],
            "email": details["email"],
            "name": details["name"],
            "subscriptions": active,
        }

    async def ensure_customer(self, subject: str) -> str:
        """Return the upstream customer reference for `subject`, creating it if needed."""
        customer = await self.customers.get(subject)
        return customer["customer_ref"]

    async def check_subscription(self, subject: str) -> dict:
        return await self.subscriptions.get(subject)

    async def cancel_subscription(self, subject: str, purchase_ref: str, reason: str = None) -> dict:
        """Cancel one of the subject's purchases.

        Raises:
            UpstreamError: the purchase does not belong to the subject or the call failed.
        """
        status = await self.check_subscription(subject)
        if not any(p.get("reference") == purchase_ref for p in status["subscriptions"]):
            raise UpstreamError(f"Purchase {purchase_ref} is not an active purchase of this customer",
                                status_code=404)
        try:
            return await self.client.cancel_purchase(purchase_ref, reason)
        finally:
            self.invalidate(subject)

    def invalidate(self, subject: str) -> None:
        self.customers.invalidate(subject)
        self.subscriptions.invalidate(subject)
        logger.info(f"[CACHE] Invalidated customer state for {subject}")

    def stats(self) -> dict:
        return {"customers": self.customers.stats(), "subscriptions": self.subscriptions.stats()}

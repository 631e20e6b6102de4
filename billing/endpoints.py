"""Customer/subscription endpoints for the AI-agent client.

All routes sit under /api/ and are protected by BearerAuthMiddleware, which puts
the caller's subject on request.state.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from billing.service import CustomerService
from errors import UpstreamError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["billing"])

# Set by init_billing_routes()
_service: CustomerService = None


def init_billing_routes(service: CustomerService):
    """Must be called before including the router in the app."""
    global _service
    _service = service


class CancelSubscriptionRequest(BaseModel):
    purchase_ref: str
    reason: Optional[str] = None


def upstream_error_response(error: UpstreamError) -> JSONResponse:
    status_code = 404 if error.status_code == 404 else 502
    return JSONResponse(
        {"error": "upstream_error", "error_description": str(error)},
        status_code=status_code,
    )


@router.post("/sync-customer")
async def sync_customer(request: Request):
    """Ensure the caller exists as a paywall customer."""
    try:
        customer_ref = await _service.ensure_customer(request.state.subject)
    except UpstreamError as e:
        return upstream_error_response(e)
    return {"success": True, "customer_ref": customer_ref}


@router.get("/check-subscription")
async def check_subscription(request: Request):
    try:
        return await _service.check_subscription(request.state.subject)
    except UpstreamError as e:
        return upstream_error_response(e)


@router.post("/cancel-subscription")
async def cancel_subscription(request: Request, body: CancelSubscriptionRequest):
    subject = request.state.subject
    try:
        purchase = await _service.cancel_subscription(subject, body.purchase_ref, body.reason)
    except UpstreamError as e:
        return upstream_error_response(e)
    logger.info(f"[BILLING] Cancelled purchase {body.purchase_ref} for {subject}")
    return {"success": True, "purchase": purchase}

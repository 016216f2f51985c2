import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session

from eventpass.core.dependencies import (
    get_plan_catalog,
    get_subscription_service,
    read_json,
)
from eventpass.core.errors import ErrorKind, ServiceError, validation
from eventpass.core.settings import settings
from eventpass.services import payment_service
from eventpass.services.auth import get_current_user_id, require_user_id
from eventpass.services.payment_gateway import PaymentGateway, get_payment_gateway
from eventpass.services.plan_catalog import PlanCatalog
from eventpass.services.subscription_service import SubscriptionService, subscription_to_dict
from db import get_db

router = APIRouter()
audit = logging.getLogger("audit")


def _truthy(value) -> bool:
    if isinstance(value, bool):
        return value
    return str(value or "").strip().lower() in ("1", "true", "yes", "on")


@router.get("/subscriptions/plans")
def list_plans(catalog: PlanCatalog = Depends(get_plan_catalog)):
    return {"plans": [p.public() for p in catalog.list_active()]}


@router.post("/subscriptions/create")
async def create_subscription(
    request: Request,
    service: SubscriptionService = Depends(get_subscription_service),
    caller_id: Optional[int] = Depends(get_current_user_id),
):
    data = await read_json(request)
    user_id = data.get("userId") if data.get("userId") not in (None, "") else caller_id
    if user_id in (None, ""):
        raise validation("userId is required.", fields=["userId"])
    if caller_id is not None and str(caller_id) != str(user_id):
        raise validation("userId does not match the signed-in user.", fields=["userId"])
    plan_id = str(data.get("planId") or "").strip().lower()
    if not plan_id:
        raise validation("planId is required.", fields=["planId"])

    result = service.create_subscription(
        user_id,
        plan_id,
        force_renew=_truthy(data.get("forceRenew")),
        buyer={
            "email": str(data.get("email") or ""),
            "firstName": str(data.get("firstName") or ""),
            "lastName": str(data.get("lastName") or ""),
        },
        success_url=data.get("successUrl") or None,
    )
    body = {
        "success": True,
        "subscription": subscription_to_dict(result.subscription),
        "txRef": result.tx_ref,
        "replacedSubscriptionIds": result.replaced,
    }
    if result.checkout_url:
        body["checkoutUrl"] = result.checkout_url
        body["message"] = "Complete payment to activate your subscription."
    else:
        body["message"] = "Subscription activated."
    return body


@router.post("/subscriptions/check")
async def check_subscription(
    request: Request,
    service: SubscriptionService = Depends(get_subscription_service),
    caller_id: Optional[int] = Depends(get_current_user_id),
):
    data = await read_json(request)
    no_cache = any(
        "no-cache" in (request.headers.get(h) or "").lower() for h in ("cache-control", "pragma")
    )
    bypass = no_cache or _truthy(data.get("forceRefresh"))
    user_id = data.get("userId")
    if user_id in (None, "") and not data.get("email") and not data.get("tx_ref"):
        user_id = caller_id
    return service.check_status(
        user_id=user_id,
        email=data.get("email") or None,
        tx_ref=data.get("tx_ref") or data.get("txRef") or None,
        bypass_cache=bypass,
    )


@router.get("/subscriptions/callback")
def subscription_callback(
    request: Request,
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    params = request.query_params
    tx_ref = (params.get("tx_ref") or params.get("trx_ref") or "").strip()
    if not tx_ref:
        raise validation("tx_ref is required.", fields=["tx_ref"])
    status = "pending"
    try:
        tx = payment_service.verify_and_apply(db, gateway, tx_ref)
        status = tx.Status
    except ServiceError as e:
        if e.kind != ErrorKind.GATEWAY_UNAVAILABLE:
            raise
        audit.warning("subscription.callback.gateway_unavailable", extra={"tx_ref": tx_ref})
    base = settings.BASE_URL.rstrip("/")
    return RedirectResponse(
        url=f"{base}/organizer/subscribe/success?tx_ref={tx_ref}&status={status}",
        status_code=303,
    )


@router.post("/subscriptions/{subscription_id}/cancel")
async def cancel_subscription(
    subscription_id: int,
    request: Request,
    service: SubscriptionService = Depends(get_subscription_service),
    caller_id: int = Depends(require_user_id),
):
    data = await read_json(request)
    reason = str(data.get("reason") or "cancelled by user")[:255]
    sub = service.cancel_subscription(subscription_id, caller_id, reason=reason)
    return subscription_to_dict(sub)


@router.get("/subscriptions/{subscription_id}")
def get_subscription(
    subscription_id: int,
    service: SubscriptionService = Depends(get_subscription_service),
    caller_id: int = Depends(require_user_id),
):
    return subscription_to_dict(service.get_subscription(subscription_id, user_id=caller_id))

"""Dependencies for FastAPI routes."""
import json
from typing import Any, Dict

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from eventpass.core.errors import validation
from eventpass.core.settings import settings
from eventpass.services.cache import Cache, get_cache
from eventpass.services.payment_gateway import PaymentGateway, get_payment_gateway
from eventpass.services.plan_catalog import PlanCatalog
from eventpass.services.subscription_service import SubscriptionService
from db import get_db


async def read_json(request: Request) -> Dict[str, Any]:
    """Request body as a dict; an empty body reads as {}."""
    raw = await request.body()
    if not raw.strip():
        return {}
    try:
        data = json.loads(raw)
    except ValueError:
        raise validation("Request body must be valid JSON.")
    if not isinstance(data, dict):
        raise validation("Request body must be a JSON object.")
    return data


def get_cache_dep() -> Cache:
    return get_cache()


def get_plan_catalog(
    db: Session = Depends(get_db), cache: Cache = Depends(get_cache_dep)
) -> PlanCatalog:
    return PlanCatalog(db, cache, settings.PLAN_CACHE_TTL_SECONDS)


def get_subscription_service(
    db: Session = Depends(get_db),
    cache: Cache = Depends(get_cache_dep),
    gateway: PaymentGateway = Depends(get_payment_gateway),
) -> SubscriptionService:
    return SubscriptionService(db, cache, gateway=gateway)

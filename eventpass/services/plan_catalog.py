from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional, TypedDict

from sqlalchemy.orm import Session

from eventpass.models.subscription import PlanDefinition
from eventpass.services.cache import Cache

logger = logging.getLogger("plans")

_CACHE_KEY_ALL = "plans:active"


class PlanLimits(TypedDict, total=False):
    maxEvents: int  # -1 = unlimited
    maxAttendeesPerEvent: int
    maxFileUploads: int
    maxImageSize: int  # MB
    maxVideoLength: int  # minutes
    customDomain: bool
    analytics: str
    support: str
    eventTypes: List[str]
    customPricing: bool


DEFAULTS: PlanLimits = {
    "maxEvents": 0,
    "maxAttendeesPerEvent": 0,
    "maxFileUploads": 0,
    "maxImageSize": 0,
    "maxVideoLength": 0,
    "customDomain": False,
    "analytics": "",
    "support": "",
    "eventTypes": [],
    "customPricing": False,
}


def parse_plan_limits(raw: Any) -> PlanLimits:
    """Normalize arbitrary JSON (dict/str/None) into a typed limits dict with defaults."""
    limits: Dict[str, Any]
    if isinstance(raw, dict):
        limits = raw
    elif isinstance(raw, str):
        try:
            parsed = json.loads(raw)
            limits = parsed if isinstance(parsed, dict) else {}
        except ValueError:
            limits = {}
    else:
        limits = {}
    out: PlanLimits = dict(DEFAULTS)  # type: ignore[assignment]
    # ints; -1 means unlimited, anything lower is clamped to it
    for k in ("maxEvents", "maxAttendeesPerEvent", "maxFileUploads", "maxImageSize", "maxVideoLength"):
        try:
            v = int(limits[k]) if limits.get(k) is not None else DEFAULTS[k]  # type: ignore[literal-required]
            out[k] = max(-1, v)  # type: ignore[literal-required]
        except (TypeError, ValueError):
            out[k] = DEFAULTS[k]  # type: ignore[literal-required]
    for k in ("customDomain", "customPricing"):
        out[k] = bool(limits.get(k))  # type: ignore[literal-required]
    out["analytics"] = str(limits.get("analytics") or "")
    out["support"] = str(limits.get("support") or "")
    types = limits.get("eventTypes")
    out["eventTypes"] = [str(t) for t in types] if isinstance(types, (list, tuple)) else []
    return out


@dataclass(frozen=True)
class Plan:
    slug: str
    name: str
    price: Decimal
    currency: str
    duration_days: int
    description: str = ""
    is_trial: bool = False
    display_order: int = 0
    limits: PlanLimits = field(default_factory=dict)  # type: ignore[assignment]

    @property
    def is_free(self) -> bool:
        return self.is_trial or self.price <= 0

    @property
    def custom_pricing(self) -> bool:
        return bool(self.limits.get("customPricing"))

    @classmethod
    def from_row(cls, row: PlanDefinition) -> "Plan":
        return cls(
            slug=str(row.Slug),
            name=str(row.Name),
            price=Decimal(str(row.Price or 0)),
            currency=str(row.Currency or "ETB").upper(),
            duration_days=int(row.DurationDays or 0),
            description=str(row.Description or ""),
            is_trial=bool(row.IsTrial),
            display_order=int(row.DisplayOrder or 0),
            limits=parse_plan_limits(row.Limits),
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["price"] = str(self.price)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Plan":
        data = dict(data)
        data["price"] = Decimal(str(data.get("price") or 0))
        data["limits"] = parse_plan_limits(data.get("limits"))
        return cls(**data)

    def public(self) -> Dict[str, Any]:
        return {
            "slug": self.slug,
            "name": self.name,
            "description": self.description,
            "price": "Custom" if self.custom_pricing else float(self.price),
            "currency": self.currency,
            "durationDays": self.duration_days,
            "limits": dict(self.limits),
            "isTrial": self.is_trial,
            "displayOrder": self.display_order,
        }


class PlanCatalog:
    """Read-mostly lookup of plan definitions by slug, cached with a short TTL."""

    def __init__(self, db: Session, cache: Cache, ttl_seconds: int = 60) -> None:
        self.db = db
        self.cache = cache
        self.ttl_seconds = ttl_seconds

    def list_active(self) -> List[Plan]:
        cached = self.cache.get(_CACHE_KEY_ALL)
        if cached is not None:
            return [Plan.from_dict(p) for p in cached]
        rows = (
            self.db.query(PlanDefinition)
            .filter(PlanDefinition.IsActive == True)  # noqa: E712
            .order_by(PlanDefinition.DisplayOrder.asc(), PlanDefinition.PlanID.asc())
            .all()
        )
        plans = [Plan.from_row(r) for r in rows]
        self.cache.set(_CACHE_KEY_ALL, [p.to_dict() for p in plans], self.ttl_seconds)
        return plans

    def get(self, slug: str) -> Optional[Plan]:
        key = (slug or "").strip().lower()
        if not key:
            return None
        for plan in self.list_active():
            if plan.slug == key:
                return plan
        return None

    def invalidate(self) -> None:
        self.cache.delete(_CACHE_KEY_ALL)


PLANS: List[Dict[str, Any]] = [
    {
        "Slug": "trial",
        "Name": "Free Trial",
        "Description": "Try our platform risk-free",
        "Price": 0,
        "DurationDays": 14,
        "IsTrial": True,
        "DisplayOrder": 0,
        "Limits": {
            "maxEvents": 2,
            "maxAttendeesPerEvent": 50,
            "maxFileUploads": 3,
            "maxImageSize": 5,
            "maxVideoLength": 0,
            "customDomain": False,
            "analytics": "basic",
            "support": "email",
            "eventTypes": ["basic"],
        },
    },
    {
        "Slug": "basic",
        "Name": "Basic Plan",
        "Description": "Perfect for getting started",
        "Price": 500,
        "DurationDays": 30,
        "DisplayOrder": 1,
        "Limits": {
            "maxEvents": 5,
            "maxAttendeesPerEvent": 100,
            "maxFileUploads": 10,
            "maxImageSize": 10,
            "maxVideoLength": 5,
            "customDomain": False,
            "analytics": "standard",
            "support": "email",
            "eventTypes": ["basic", "advanced"],
        },
    },
    {
        "Slug": "premium",
        "Name": "Premium Plan",
        "Description": "Best for active organizers",
        "Price": 5000,
        "DurationDays": 365,
        "DisplayOrder": 2,
        "Limits": {
            "maxEvents": -1,
            "maxAttendeesPerEvent": -1,
            "maxFileUploads": 50,
            "maxImageSize": 25,
            "maxVideoLength": 30,
            "customDomain": True,
            "analytics": "advanced",
            "support": "priority",
            "eventTypes": ["basic", "advanced", "premium"],
        },
    },
    # Priced per contract; listed but not purchasable through checkout
    {
        "Slug": "enterprise",
        "Name": "Enterprise",
        "Description": "Tailored for large organizations",
        "Price": 0,
        "DurationDays": 365,
        "DisplayOrder": 3,
        "Limits": {
            "maxEvents": -1,
            "maxAttendeesPerEvent": -1,
            "maxFileUploads": -1,
            "maxImageSize": 100,
            "maxVideoLength": -1,
            "customDomain": True,
            "analytics": "custom",
            "support": "dedicated",
            "eventTypes": ["basic", "advanced", "premium", "enterprise"],
            "customPricing": True,
        },
    },
]


def upsert_plan(db: Session, definition: Dict[str, Any], currency: str = "ETB") -> PlanDefinition:
    slug = definition["Slug"].lower()
    plan = db.query(PlanDefinition).filter(PlanDefinition.Slug == slug).first()
    if not plan:
        plan = PlanDefinition(Slug=slug)
        db.add(plan)
    plan.Name = definition["Name"]
    plan.Description = definition.get("Description")
    plan.Price = Decimal(str(definition.get("Price", 0)))
    plan.Currency = definition.get("Currency", currency)
    plan.DurationDays = int(definition.get("DurationDays", 30))
    plan.Limits = json.dumps(definition.get("Limits", {}))
    plan.IsTrial = bool(definition.get("IsTrial", False))
    plan.IsActive = True
    plan.DisplayOrder = int(definition.get("DisplayOrder", 0))
    return plan


def seed_plans(db: Session, currency: str = "ETB") -> List[str]:
    slugs = []
    for definition in PLANS:
        upsert_plan(db, definition, currency=currency)
        slugs.append(definition["Slug"])
    db.commit()
    logger.info("plans.seeded", extra={"plans": slugs})
    return slugs

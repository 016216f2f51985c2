from __future__ import annotations

import logging
import math
import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from eventpass.core.errors import ErrorKind, ServiceError, conflict, not_found, validation
from eventpass.core.settings import settings
from eventpass.models.billing import PURPOSE_SUBSCRIPTION, TX_PENDING, PaymentTransaction
from eventpass.models.subscription import (
    SUB_ACTIVE,
    SUB_CANCELLED,
    SUB_EXPIRED,
    SUB_PENDING,
    Subscription,
)
from eventpass.models.user import User, utcnow
from eventpass.services.cache import Cache
from eventpass.services.payment_gateway import CheckoutRequest, PaymentGateway
from eventpass.services.plan_catalog import Plan, PlanCatalog

logger = logging.getLogger("subscriptions")
audit = logging.getLogger("audit")

PAYMENT_FAILED_REASON = "payment failed"


def new_subscription_tx_ref() -> str:
    return f"sub_{int(time.time() * 1000)}_{secrets.token_hex(5)}"


def _iso(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt else None


def subscription_to_dict(sub: Subscription) -> Dict[str, Any]:
    return {
        "id": sub.SubscriptionID,
        "userId": sub.UserID,
        "planId": sub.PlanSlug,
        "status": sub.Status,
        "startDate": _iso(sub.StartDate),
        "endDate": _iso(sub.EndDate),
        "transactionRef": sub.TransactionRef,
        "amount": float(sub.Amount or 0),
        "currency": sub.Currency,
        "cancelledAt": _iso(sub.CancelledAt),
        "cancellationReason": sub.CancellationReason,
        "replacedSubscriptionId": sub.ReplacedSubscriptionID,
        "createdAt": _iso(sub.CreatedAt),
    }


@dataclass
class SubscriptionResult:
    subscription: Subscription
    checkout_url: Optional[str] = None
    tx_ref: Optional[str] = None
    replaced: List[int] = field(default_factory=list)


class SubscriptionService:
    """Organizer plan subscriptions: trial, paid checkout, supersession, expiry.

    Status snapshots are cached through the injected cache and invalidated on
    every mutation. Subscription rows themselves are always read fresh before
    they are changed.
    """

    def __init__(
        self,
        db: Session,
        cache: Cache,
        gateway: Optional[PaymentGateway] = None,
        catalog: Optional[PlanCatalog] = None,
        now: Callable[[], datetime] = utcnow,
    ) -> None:
        self.db = db
        self.cache = cache
        self.gateway = gateway
        self.catalog = catalog or PlanCatalog(db, cache, settings.PLAN_CACHE_TTL_SECONDS)
        self.now = now

    # ----------------------------
    # Lookups
    # ----------------------------
    def _plan(self, plan_id: str) -> Plan:
        plan = self.catalog.get(plan_id)
        if plan is None:
            raise validation("Invalid plan selected.", fields=["planId"])
        return plan

    def _user(self, user_id: Any) -> User:
        try:
            uid = int(user_id)
        except (TypeError, ValueError):
            raise validation("userId is required.", fields=["userId"])
        user = self.db.query(User).filter(User.UserID == uid).first()
        if not user:
            raise not_found("User not found.")
        return user

    def _lock_user(self, user_id: int) -> None:
        # Serializes subscription writes per user until the next commit
        self.db.query(User).with_for_update().filter(User.UserID == int(user_id)).first()

    def _active_rows(self, user_id: int) -> List[Subscription]:
        return (
            self.db.query(Subscription)
            .filter(
                Subscription.UserID == user_id,
                Subscription.Status == SUB_ACTIVE,
                Subscription.EndDate > self.now(),
            )
            .order_by(Subscription.CreatedAt.desc(), Subscription.SubscriptionID.desc())
            .all()
        )

    def get_subscription(self, subscription_id: Any, user_id: Optional[int] = None) -> Subscription:
        try:
            sid = int(subscription_id)
        except (TypeError, ValueError):
            raise not_found("Subscription not found.")
        q = self.db.query(Subscription).filter(Subscription.SubscriptionID == sid)
        if user_id is not None:
            q = q.filter(Subscription.UserID == int(user_id))
        sub = q.first()
        if not sub:
            raise not_found("Subscription not found.")
        return sub

    def get_active_subscription(self, user_id: int) -> Optional[Subscription]:
        rows = self._active_rows(int(user_id))
        if not rows:
            return None
        if len(rows) > 1:
            logger.error(
                "subscription.invariant_violation",
                extra={
                    "user_id": int(user_id),
                    "active_ids": [r.SubscriptionID for r in rows],
                    "chosen_id": rows[0].SubscriptionID,
                },
            )
        return rows[0]

    # ----------------------------
    # Cache
    # ----------------------------
    @staticmethod
    def _key_user(user_id: int) -> str:
        return f"sub:user:{int(user_id)}"

    @staticmethod
    def _key_email(email: str) -> str:
        return f"sub:email:{(email or '').strip().lower()}"

    @staticmethod
    def _key_tx(tx_ref: str) -> str:
        return f"sub:tx:{tx_ref}"

    def invalidate(self, user_id: int) -> None:
        keys = [self._key_user(user_id)]
        user = self.db.query(User).filter(User.UserID == int(user_id)).first()
        if user is not None:
            keys.append(self._key_email(user.Email))
        refs = (
            self.db.query(Subscription.TransactionRef)
            .filter(Subscription.UserID == int(user_id), Subscription.TransactionRef.isnot(None))
            .all()
        )
        keys.extend(self._key_tx(r[0]) for r in refs)
        self.cache.delete_many(*keys)

    # ----------------------------
    # Mutations
    # ----------------------------
    @staticmethod
    def _active_exists(sub: Subscription) -> ServiceError:
        return ServiceError(
            ErrorKind.ACTIVE_SUBSCRIPTION_EXISTS,
            "Active subscription exists. Set forceRenew to true to replace it.",
            subscription=subscription_to_dict(sub),
        )

    def create_subscription(
        self,
        user_id: Any,
        plan_id: str,
        force_renew: bool = False,
        buyer: Optional[Dict[str, str]] = None,
        success_url: Optional[str] = None,
    ) -> SubscriptionResult:
        plan = self._plan(plan_id)
        if plan.custom_pricing:
            raise validation("This plan is priced per contract; please contact sales.")
        user = self._user(user_id)
        uid = int(user.UserID)

        active = self._active_rows(uid)
        if active and not force_renew:
            raise self._active_exists(active[0])

        tx_ref = new_subscription_tx_ref()
        checkout = None
        if not plan.is_free:
            if self.gateway is None:
                raise ServiceError(ErrorKind.CONFIGURATION_ERROR, "No payment gateway configured.")
            buyer = buyer or {}
            base = settings.BASE_URL.rstrip("/")
            # Gateway first: if it is unavailable nothing below has happened yet
            checkout = self.gateway.initiate_checkout(
                CheckoutRequest(
                    tx_ref=tx_ref,
                    amount=plan.price,
                    currency=plan.currency,
                    email=(buyer.get("email") or user.Email),
                    first_name=(buyer.get("firstName") or user.FirstName),
                    last_name=(buyer.get("lastName") or user.LastName or ""),
                    title=f"{plan.name} Subscription",
                    description=f"{plan.name} subscription ({plan.duration_days} days)",
                    success_url=success_url or f"{base}/organizer/subscribe/success?tx_ref={tx_ref}",
                    cancel_url=f"{base}/organizer/subscribe?cancelled=1",
                    callback_url=f"{settings.API_BASE_URL.rstrip('/')}/subscriptions/callback?tx_ref={tx_ref}",
                    metadata={"purpose": PURPOSE_SUBSCRIPTION, "planId": plan.slug, "userId": str(uid)},
                )
            )

        # Re-read under the user lock; another request may have committed
        # while the gateway call was in flight
        self._lock_user(uid)
        active = self._active_rows(uid)
        if active and not force_renew:
            self.db.rollback()
            raise self._active_exists(active[0])

        now = self.now()
        replaced = [s.SubscriptionID for s in active] if force_renew else []
        # Cancellations and the insert commit together, or not at all
        if force_renew:
            self.db.query(Subscription).filter(
                Subscription.UserID == uid, Subscription.Status == SUB_ACTIVE
            ).update(
                {
                    Subscription.Status: SUB_CANCELLED,
                    Subscription.CancelledAt: now,
                    Subscription.CancellationReason: f"replaced by {plan.slug}",
                },
                synchronize_session=False,
            )

        sub = Subscription(
            UserID=uid,
            PlanSlug=plan.slug,
            TransactionRef=tx_ref,
            Currency=plan.currency,
            ReplacedSubscriptionID=replaced[0] if replaced else None,
            CreatedAt=now,
        )
        if plan.is_free:
            days = plan.duration_days or (
                settings.TRIAL_DEFAULT_DAYS if plan.is_trial else settings.PAID_DEFAULT_DAYS
            )
            sub.Status = SUB_ACTIVE
            sub.Amount = Decimal("0.00")
            sub.StartDate = now
            sub.EndDate = now + timedelta(days=days)
        else:
            sub.Status = SUB_PENDING
            sub.Amount = plan.price
        self.db.add(sub)
        self.db.flush()

        if checkout is not None:
            self.db.add(
                PaymentTransaction(
                    TxRef=tx_ref,
                    Purpose=PURPOSE_SUBSCRIPTION,
                    SubscriptionID=sub.SubscriptionID,
                    Gateway=self.gateway.name,
                    GatewayRef=checkout.gateway_ref,
                    CheckoutUrl=checkout.checkout_url,
                    Amount=plan.price,
                    Currency=plan.currency,
                    Status=TX_PENDING,
                )
            )
        self.db.commit()
        self.db.refresh(sub)
        self.invalidate(uid)

        if replaced:
            audit.info(
                "subscription.replaced",
                extra={"user_id": uid, "replaced_ids": replaced, "plan": plan.slug},
            )
        audit.info(
            "subscription.created",
            extra={
                "user_id": uid,
                "subscription_id": sub.SubscriptionID,
                "plan": plan.slug,
                "status": sub.Status,
                "tx_ref": tx_ref,
            },
        )
        return SubscriptionResult(
            subscription=sub,
            checkout_url=checkout.checkout_url if checkout is not None else None,
            tx_ref=tx_ref,
            replaced=replaced,
        )

    def activate_subscription(self, tx_ref: str, transaction_ref: Optional[str] = None) -> Subscription:
        """pending -> active once payment is verified; idempotent for replays."""
        sub = self.db.query(Subscription).filter(Subscription.TransactionRef == tx_ref).first()
        if not sub:
            raise not_found("Subscription not found.")
        if sub.Status == SUB_ACTIVE:
            return sub
        if sub.Status != SUB_PENDING:
            raise conflict(f"Subscription is {sub.Status} and cannot be activated.")

        plan = self.catalog.get(sub.PlanSlug)
        days = plan.duration_days if plan and plan.duration_days else settings.PAID_DEFAULT_DAYS
        now = self.now()
        self._lock_user(int(sub.UserID))
        updated = (
            self.db.query(Subscription)
            .filter(Subscription.SubscriptionID == sub.SubscriptionID, Subscription.Status == SUB_PENDING)
            .update(
                {
                    Subscription.Status: SUB_ACTIVE,
                    Subscription.StartDate: now,
                    Subscription.EndDate: now + timedelta(days=days),
                },
                synchronize_session=False,
            )
        )
        if not updated:
            self.db.refresh(sub)
            if sub.Status == SUB_ACTIVE:
                return sub
            raise conflict(f"Subscription is {sub.Status} and cannot be activated.")

        superseded = (
            self.db.query(Subscription)
            .filter(
                Subscription.UserID == sub.UserID,
                Subscription.Status == SUB_ACTIVE,
                Subscription.SubscriptionID != sub.SubscriptionID,
            )
            .update(
                {
                    Subscription.Status: SUB_CANCELLED,
                    Subscription.CancelledAt: now,
                    Subscription.CancellationReason: f"replaced by {sub.PlanSlug}",
                },
                synchronize_session=False,
            )
        )
        self.db.commit()
        self.db.refresh(sub)
        self.invalidate(int(sub.UserID))
        audit.info(
            "subscription.activated",
            extra={
                "subscription_id": sub.SubscriptionID,
                "user_id": sub.UserID,
                "tx_ref": tx_ref,
                "transaction_ref": transaction_ref,
                "superseded": superseded,
            },
        )
        return sub

    def fail_pending_subscription(self, subscription_id: int) -> Subscription:
        sub = self.get_subscription(subscription_id)
        if sub.Status != SUB_PENDING:
            return sub
        self.db.query(Subscription).filter(
            Subscription.SubscriptionID == sub.SubscriptionID, Subscription.Status == SUB_PENDING
        ).update(
            {
                Subscription.Status: SUB_CANCELLED,
                Subscription.CancelledAt: self.now(),
                Subscription.CancellationReason: PAYMENT_FAILED_REASON,
            },
            synchronize_session=False,
        )
        self.db.commit()
        self.db.refresh(sub)
        self.invalidate(int(sub.UserID))
        audit.info("subscription.payment_failed", extra={"subscription_id": sub.SubscriptionID})
        return sub

    def cancel_subscription(
        self, subscription_id: Any, user_id: int, reason: str = "cancelled by user"
    ) -> Subscription:
        if user_id is None:
            raise not_found("Subscription not found.")
        sub = self.get_subscription(subscription_id, user_id=user_id)
        if sub.Status == SUB_CANCELLED:
            return sub
        if sub.Status == SUB_EXPIRED:
            raise conflict("Subscription has already expired.")
        sub.Status = SUB_CANCELLED
        sub.CancelledAt = self.now()
        sub.CancellationReason = reason
        self.db.commit()
        self.db.refresh(sub)
        self.invalidate(int(sub.UserID))
        audit.info(
            "subscription.cancelled",
            extra={"subscription_id": sub.SubscriptionID, "user_id": sub.UserID, "reason": reason},
        )
        return sub

    def expire_subscriptions(self, now: Optional[datetime] = None) -> List[int]:
        cutoff = now or self.now()
        rows = (
            self.db.query(Subscription)
            .filter(Subscription.Status == SUB_ACTIVE, Subscription.EndDate <= cutoff)
            .all()
        )
        for row in rows:
            row.Status = SUB_EXPIRED
        self.db.commit()
        for uid in {int(r.UserID) for r in rows}:
            self.invalidate(uid)
        ids = [int(r.SubscriptionID) for r in rows]
        if ids:
            audit.info("subscription.expired", extra={"count": len(ids), "subscription_ids": ids})
        return ids

    # ----------------------------
    # Status snapshot
    # ----------------------------
    def check_status(
        self,
        user_id: Optional[Any] = None,
        email: Optional[str] = None,
        tx_ref: Optional[str] = None,
        bypass_cache: bool = False,
    ) -> Dict[str, Any]:
        if user_id not in (None, ""):
            try:
                user_id = int(user_id)
            except (TypeError, ValueError):
                raise validation("Invalid userId.", fields=["userId"])
            key = self._key_user(user_id)
        elif email:
            key = self._key_email(email)
        elif tx_ref:
            key = self._key_tx(tx_ref)
        else:
            raise validation("One of userId, email or tx_ref is required.")

        if not bypass_cache:
            cached = self.cache.get(key)
            if cached is not None:
                cached["cached"] = True
                return cached

        tx_sub = None
        if user_id not in (None, ""):
            user = self._user(user_id)
        elif email:
            user = (
                self.db.query(User).filter(User.Email == email.strip().lower()).first()
            )
            if not user:
                raise not_found("User not found.")
        else:
            tx_sub = self.db.query(Subscription).filter(Subscription.TransactionRef == tx_ref).first()
            if not tx_sub:
                raise not_found("Subscription not found.")
            user = self._user(tx_sub.UserID)

        snapshot = self._snapshot(user)
        if tx_sub is not None:
            snapshot["subscription"] = subscription_to_dict(tx_sub)
        self.cache.set(key, snapshot, settings.SUBSCRIPTION_CACHE_TTL_SECONDS)
        snapshot["cached"] = False
        return snapshot

    def _snapshot(self, user: User) -> Dict[str, Any]:
        uid = int(user.UserID)
        now = self.now()
        active = self.get_active_subscription(uid)
        rows = self.db.query(Subscription).filter(Subscription.UserID == uid).all()
        history: Dict[str, int] = {"total": len(rows)}
        for status in (SUB_PENDING, SUB_ACTIVE, SUB_CANCELLED, SUB_EXPIRED):
            history[status] = sum(1 for r in rows if r.Status == status)
        trial_used = any(r.PlanSlug == settings.TRIAL_PLAN_SLUG for r in rows)

        snapshot: Dict[str, Any] = {
            "userId": uid,
            "hasSubscription": active is not None,
            "plan": None,
            "status": None,
            "expiresAt": None,
            "daysRemaining": 0,
            "isExpiringSoon": False,
            "trialUsed": trial_used,
            "planInfo": None,
            "activeSubscription": None,
            "history": history,
            "checkedAt": now.isoformat(),
        }
        if active is None:
            latest = max(rows, key=lambda r: (r.CreatedAt, r.SubscriptionID), default=None)
            if latest is not None:
                snapshot["status"] = latest.Status
                snapshot["plan"] = latest.PlanSlug
            return snapshot

        seconds_left = max(0.0, (active.EndDate - now).total_seconds())
        days_remaining = int(math.ceil(seconds_left / 86400))
        plan = self.catalog.get(active.PlanSlug)
        snapshot.update(
            {
                "plan": active.PlanSlug,
                "status": active.Status,
                "expiresAt": _iso(active.EndDate),
                "daysRemaining": days_remaining,
                "isExpiringSoon": 0 < days_remaining <= settings.EXPIRING_SOON_DAYS,
                "planInfo": plan.public() if plan else None,
                "activeSubscription": subscription_to_dict(active),
            }
        )
        return snapshot

"""Periodic maintenance: settle payments whose webhooks never arrived,
fail abandoned orders and expire lapsed subscriptions.

Meant to run from cron every few minutes, e.g.
    */5 * * * * cd /srv/eventpass && python -m scripts.reconcile_payments
"""

import argparse
import json
import logging
from datetime import timedelta

from sqlalchemy.orm import Session

from eventpass.core.logging_utils import configure_logging
from eventpass.core.settings import settings
from eventpass.services import order_service, payment_service
from eventpass.services.cache import get_cache
from eventpass.services.payment_gateway import get_payment_gateway
from eventpass.services.subscription_service import SubscriptionService
from db import SessionLocal

logger = logging.getLogger("jobs.reconcile")


def run(older_than_minutes: int = 10, limit: int = 200) -> dict:
    s: Session = SessionLocal()
    try:
        payments = payment_service.reconcile_pending(
            s,
            get_payment_gateway(),
            older_than=timedelta(minutes=older_than_minutes),
            limit=limit,
        )
        expired_orders = order_service.expire_stale_orders(
            s, timedelta(hours=settings.PENDING_ORDER_TTL_HOURS)
        )
        expired_subs = SubscriptionService(s, get_cache()).expire_subscriptions()
        summary = {
            "payments": payments,
            "expiredOrders": len(expired_orders),
            "expiredSubscriptions": len(expired_subs),
        }
        logger.info("reconcile.done", extra=summary)
        return summary
    finally:
        s.close()


def main():
    parser = argparse.ArgumentParser(description="Reconcile payments and expire stale records.")
    parser.add_argument("--older-than-minutes", type=int, default=10)
    parser.add_argument("--limit", type=int, default=200)
    args = parser.parse_args()
    configure_logging(settings)
    print(json.dumps(run(args.older_than_minutes, args.limit), indent=2))


if __name__ == "__main__":
    main()

import argparse

from sqlalchemy.orm import Session

from eventpass.core.logging_utils import configure_logging
from eventpass.core.settings import settings
from eventpass.services.cache import get_cache
from eventpass.services.plan_catalog import PlanCatalog, seed_plans
from db import SessionLocal


def run(currency: str) -> list[str]:
    s: Session = SessionLocal()
    try:
        slugs = seed_plans(s, currency=currency)
        # Running API processes pick the new catalog up after the cache entry is gone
        PlanCatalog(s, get_cache(), settings.PLAN_CACHE_TTL_SECONDS).invalidate()
        return slugs
    finally:
        s.close()


def main():
    parser = argparse.ArgumentParser(description="Create or update the subscription plan catalog.")
    parser.add_argument("--currency", default=settings.DEFAULT_CURRENCY)
    args = parser.parse_args()
    configure_logging(settings)
    slugs = run(args.currency.upper())
    print(f"Seeded plans: {', '.join(slugs)}")


if __name__ == "__main__":
    main()

from decimal import Decimal

from eventpass.models.subscription import PlanDefinition
from eventpass.services.plan_catalog import (
    PlanCatalog,
    parse_plan_limits,
    upsert_plan,
)


def test_parse_plan_limits_defaults_and_coercion():
    limits = parse_plan_limits('{"maxEvents": "5", "maxFileUploads": -7, "customDomain": 1}')
    assert limits["maxEvents"] == 5
    assert limits["maxFileUploads"] == -1
    assert limits["customDomain"] is True
    assert limits["eventTypes"] == []
    assert limits["analytics"] == ""

    assert parse_plan_limits("not json")["maxEvents"] == 0
    assert parse_plan_limits(None)["customPricing"] is False
    assert parse_plan_limits({"maxEvents": "many"})["maxEvents"] == 0


def test_seeded_plans_are_listed_in_display_order(db_session, cache, plans):
    catalog = PlanCatalog(db_session, cache)
    slugs = [p.slug for p in catalog.list_active()]
    assert slugs == ["trial", "basic", "premium", "enterprise"]

    trial = catalog.get("TRIAL")
    assert trial.is_trial and trial.is_free
    assert trial.duration_days == 14
    basic = catalog.get("basic")
    assert basic.price == Decimal("500.00")
    assert basic.is_free is False
    assert catalog.get("nope") is None


def test_enterprise_is_public_with_custom_price(db_session, cache, plans):
    enterprise = PlanCatalog(db_session, cache).get("enterprise")
    assert enterprise.custom_pricing is True
    public = enterprise.public()
    assert public["price"] == "Custom"
    assert public["limits"]["maxEvents"] == -1


def test_catalog_is_cached_until_invalidated(db_session, cache, plans):
    catalog = PlanCatalog(db_session, cache)
    assert catalog.get("basic").price == Decimal("500.00")

    row = db_session.query(PlanDefinition).filter(PlanDefinition.Slug == "basic").one()
    row.Price = Decimal("650.00")
    db_session.commit()
    assert catalog.get("basic").price == Decimal("500.00")

    catalog.invalidate()
    assert catalog.get("basic").price == Decimal("650.00")


def test_inactive_plans_are_hidden(db_session, cache, plans):
    row = db_session.query(PlanDefinition).filter(PlanDefinition.Slug == "premium").one()
    row.IsActive = False
    db_session.commit()
    assert PlanCatalog(db_session, cache).get("premium") is None


def test_upsert_plan_updates_in_place(db_session, plans):
    upsert_plan(
        db_session,
        {"Slug": "Basic", "Name": "Basic Plan", "Price": 550, "DurationDays": 30},
        currency="USD",
    )
    db_session.commit()
    rows = db_session.query(PlanDefinition).filter(PlanDefinition.Slug == "basic").all()
    assert len(rows) == 1
    assert rows[0].Currency == "USD"
    assert Decimal(str(rows[0].Price)) == Decimal("550")

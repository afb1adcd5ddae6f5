"""Tests for the plan catalog service."""

import uuid
from decimal import Decimal

import pytest

from app.models.subscription_enums import BillingPeriod
from app.services.activity_service import ActivityService
from app.services.plan_catalog import PlanCatalogService
from app.services.subscription_service import SubscriptionService
from app.utils.exceptions import PlanExistsException, PlanInUseException, PlanNotFoundException


async def test_list_plans_is_ordered_by_price(db, plans):
    listed = await PlanCatalogService.list_plans(db)
    assert [plan.code for plan in listed] == ["free", "standard", "premium"]


async def test_plan_payload(db, plans):
    standard = PlanCatalogService.to_schema(plans["standard"])
    assert standard.yearly_price == pytest.approx(215.89)
    assert standard.yearly_discount_rate == pytest.approx(0.10)
    assert standard.token_limit == 2000
    assert standard.unlimited is False
    assert standard.features == ["Legal Q&A", "Contract review"]

    free = PlanCatalogService.to_schema(plans["free"])
    assert free.yearly_price is None
    assert free.yearly_discount_rate == 0

    premium = PlanCatalogService.to_schema(plans["premium"]).model_dump(by_alias=True)
    assert premium["tokenLimit"] is None
    assert premium["unlimited"] is True


async def test_get_unknown_plan(db, plans):
    with pytest.raises(PlanNotFoundException):
        await PlanCatalogService.get_plan(db, uuid.uuid4())


async def test_duplicate_name_or_code_is_rejected(db, plans):
    with pytest.raises(PlanExistsException):
        await PlanCatalogService.create_plan(
            db, code="standard-2", name="Standard", monthly_price=Decimal("9.99"), token_limit=10, features=[]
        )
    with pytest.raises(PlanExistsException):
        await PlanCatalogService.create_plan(
            db, code="premium", name="Premium Plus", monthly_price=Decimal("99.99"), token_limit=None, features=[]
        )


async def test_update_can_switch_to_unlimited(db, plans):
    updated = await PlanCatalogService.update_plan(db, plans["standard"].id, {"token_limit": None})
    assert updated.is_unlimited
    # Untouched fields keep their values
    assert updated.monthly_price == Decimal("19.99")


async def test_update_does_not_change_existing_grants(db, plans, client_user):
    result = await SubscriptionService.subscribe(db, client_user.id, plans["standard"].id, BillingPeriod.MONTHLY)
    await PlanCatalogService.update_plan(db, plans["standard"].id, {"token_limit": 5000, "monthly_price": "24.99"})

    subscription = await SubscriptionService.get_subscription(db, result.subscription.id)
    assert subscription.token_limit == 2000
    assert subscription.period_price == Decimal("19.99")


async def test_inactive_plans_are_hidden(db, plans):
    await PlanCatalogService.update_plan(db, plans["free"].id, {"is_active": False})
    assert "free" not in [plan.code for plan in await PlanCatalogService.list_plans(db)]
    assert "free" in [plan.code for plan in await PlanCatalogService.list_plans(db, include_inactive=True)]


async def test_delete_plan_in_use_is_rejected(db, plans, client_user):
    await SubscriptionService.subscribe(db, client_user.id, plans["premium"].id)
    with pytest.raises(PlanInUseException):
        await PlanCatalogService.delete_plan(db, plans["premium"].id)


async def test_delete_unused_plan(db, plans, admin_user):
    await PlanCatalogService.delete_plan(db, plans["free"].id, actor_id=admin_user.id)
    with pytest.raises(PlanNotFoundException):
        await PlanCatalogService.get_plan(db, plans["free"].id)

    entries = await ActivityService.list_for_target(db, "plan", plans["free"].id)
    assert [entry.action for entry in entries] == ["plan.created", "plan.deleted"]

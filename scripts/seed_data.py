"""Seed database with initial data (plans, demo users)."""

import asyncio
import json
import uuid
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.db import get_sessionmaker
from app.core.security import hash_password
from app.models.models import User, UserRole
from app.models.plan import Plan
from app.services.plan_catalog import PlanCatalogService


PLANS = [
    {
        "code": "free",
        "name": "Free",
        "monthly_price": Decimal("0.00"),
        "token_limit": 100,
        "features": ["Legal Q&A assistant", "Document templates"],
    },
    {
        "code": "standard",
        "name": "Standard",
        "monthly_price": Decimal("19.99"),
        "token_limit": 2000,
        "features": ["Legal Q&A assistant", "Document templates", "Contract review", "Lawyer directory"],
    },
    {
        "code": "premium",
        "name": "Premium",
        "monthly_price": Decimal("49.99"),
        "token_limit": None,  # Unlimited
        "features": [
            "Legal Q&A assistant",
            "Document templates",
            "Contract review",
            "Lawyer directory",
            "Priority lawyer matching",
            "Case file storage",
        ],
    },
]

DEMO_USERS = [
    ("client@legalhub.example", "Demo Client", UserRole.CLIENT),
    ("lawyer@legalhub.example", "Demo Lawyer", UserRole.LAWYER),
    ("admin@legalhub.example", "Demo Admin", UserRole.ADMIN),
]
DEMO_PASSWORD = "demo123456"


async def seed_plans(session: AsyncSession) -> None:
    """Create or update subscription plans."""
    for plan_data in PLANS:
        result = await session.execute(select(Plan).where(Plan.code == plan_data["code"]))
        existing_plan = result.scalar_one_or_none()

        if existing_plan:
            await PlanCatalogService.update_plan(
                session,
                existing_plan.id,
                {
                    "monthly_price": plan_data["monthly_price"],
                    "token_limit": plan_data["token_limit"],
                    "features": plan_data["features"],
                },
            )
            print(f"✓ Updated plan: {plan_data['name']}")
        else:
            await PlanCatalogService.create_plan(session, **plan_data)
            print(f"✓ Created plan: {plan_data['name']} ({json.dumps(plan_data['features'])})")


async def seed_demo_users(session: AsyncSession) -> None:
    """Create one demo account per role."""
    for email, name, role in DEMO_USERS:
        result = await session.execute(select(User).where(User.email == email))
        if result.scalar_one_or_none():
            print(f"✓ Demo user already exists: {email}")
            continue

        session.add(
            User(
                id=uuid.uuid4(),
                email=email,
                password_hash=hash_password(DEMO_PASSWORD),
                name=name,
                role=role,
            )
        )
        print(f"✓ Created demo {role.value}: {email} (password: {DEMO_PASSWORD})")

    await session.commit()


async def main() -> None:
    """Run all seed operations."""
    print(f"🌱 Seeding {settings.APP_NAME} database...")

    async with get_sessionmaker()() as session:
        await seed_plans(session)
        await seed_demo_users(session)

    print("✅ Database seeding completed!")


if __name__ == "__main__":
    asyncio.run(main())

import os
import sys
import uuid
from decimal import Decimal
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("ENABLE_APP_INSIGHTS", "false")
os.environ.setdefault("PAYMENT_GATEWAY", "simulated")
os.environ.setdefault("PAYMENT_WEBHOOK_SECRET", "whsec-test")

import httpx
import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from app.core.config import settings
from app.core.db import get_db
from app.models import Base
from app.models.models import User, UserRole
from app.services.auth_service import AuthService
from app.services.payment_gateway import SimulatedPaymentGateway, get_payment_gateway
from app.services.plan_catalog import PlanCatalogService


@pytest.fixture(autouse=True)
def billing_settings(monkeypatch):
    """Pin the billing rules every test relies on."""
    monkeypatch.setattr(settings, "DOWNGRADE_POLICY", "reject")
    monkeypatch.setattr(settings, "PRORATE_UPGRADES", True)
    monkeypatch.setattr(settings, "PENDING_TIMEOUT_MINUTES", 60)
    monkeypatch.setattr(settings, "RENEWAL_GRACE_MINUTES", 1440)
    monkeypatch.setattr(settings, "YEARLY_DISCOUNT_RATE", 0.10)
    monkeypatch.setattr(settings, "PAYMENT_TIMEOUT_SECONDS", 10.0)
    monkeypatch.setattr(settings, "PAYMENT_WEBHOOK_SECRET", "whsec-test")


@pytest.fixture
async def engine(tmp_path):
    # One file per test: every session gets its own connection
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'subscriptions.db'}", poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(bind=engine, expire_on_commit=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
async def plans(db):
    """The catalog offered by the portal: Free, Standard and Premium."""
    free = await PlanCatalogService.create_plan(
        db, code="free", name="Free", monthly_price=Decimal("0"), token_limit=100, features=["Legal Q&A"]
    )
    standard = await PlanCatalogService.create_plan(
        db,
        code="standard",
        name="Standard",
        monthly_price=Decimal("19.99"),
        token_limit=2000,
        features=["Legal Q&A", "Contract review"],
    )
    premium = await PlanCatalogService.create_plan(
        db,
        code="premium",
        name="Premium",
        monthly_price=Decimal("49.99"),
        token_limit=None,
        features=["Legal Q&A", "Contract review", "Priority lawyer matching"],
    )
    return {"free": free, "standard": standard, "premium": premium}


async def _make_user(db, email: str, role: UserRole) -> User:
    user = User(id=uuid.uuid4(), email=email, password_hash=None, name=email.split("@")[0], role=role)
    db.add(user)
    await db.commit()
    return user


@pytest.fixture
async def client_user(db):
    return await _make_user(db, "client@example.com", UserRole.CLIENT)


@pytest.fixture
async def lawyer_user(db):
    return await _make_user(db, "lawyer@example.com", UserRole.LAWYER)


@pytest.fixture
async def admin_user(db):
    return await _make_user(db, "admin@example.com", UserRole.ADMIN)


def auth_headers(user: User) -> dict:
    return {"Authorization": f"Bearer {AuthService.generate_token(user)}"}


@pytest.fixture
def gateway():
    return SimulatedPaymentGateway()


@pytest.fixture
async def api(session_factory, gateway):
    """HTTP client bound to the app with the test database and gateway."""
    from app.main import app

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()

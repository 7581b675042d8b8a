from typing import Any

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from database import Base, get_db
from main import app
from models.account import Account
from routers import rate_limit
from services.billing_config import BillingConfig, get_billing_config
from services.plan_catalog import Plan, PlanCatalog


WEBHOOK_SECRET = "test-revenuecat-secret"


@pytest.fixture(autouse=True)
def reset_local_rate_limit_counters():
    """Keep in-memory rate-limit state isolated between tests."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    rate_limit._local_counters.clear()
    yield
    rate_limit._local_counters.clear()
    app.state.disable_rate_limits = previous


@pytest.fixture
def billing_config():
    catalog = PlanCatalog.from_plans(
        [
            Plan(product_id="monthly", credits_granted=200, duration_days=30),
            Plan(product_id="toonify_pro_weekly", credits_granted=50, duration_days=7),
        ]
    )
    return BillingConfig(catalog=catalog, webhook_secret=WEBHOOK_SECRET, generation_cost=1)


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    db_path = tmp_path / "toonify_billing.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}", connect_args={"timeout": 30})
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield maker
    await engine.dispose()


@pytest.fixture
def make_account(session_maker):
    async def _make_account(user_id: str, credits: int = 0, **fields: Any) -> None:
        async with session_maker() as session:
            session.add(Account(id=user_id, credits_balance=credits, **fields))
            await session.commit()

    return _make_account


@pytest.fixture
def load_account(session_maker):
    async def _load_account(user_id: str) -> Account:
        async with session_maker() as session:
            return await session.get(Account, user_id)

    return _load_account


@pytest_asyncio.fixture
async def api_client(session_maker, billing_config):
    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_billing_config] = lambda: billing_config
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.pop(get_db, None)
    app.dependency_overrides.pop(get_billing_config, None)

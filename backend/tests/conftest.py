import os
import warnings
from datetime import datetime, timezone
from decimal import Decimal

import pytest

# Set environment variables BEFORE importing giftpool modules
os.environ["POSTGRES_DSN"] = "sqlite+aiosqlite:///file:giftpool_tests?mode=memory&cache=shared&uri=true"
os.environ["JWT_SECRET_KEY"] = "test-secret-key-32-chars-minimum!!"
os.environ["FLOAT_CACHE_ENABLED"] = "false"
os.environ["CRON_SECRET"] = "test-cron-secret"
os.environ["SLACK_WEBHOOK_URL"] = ""
os.environ["RELOADLY_CLIENT_ID"] = ""
os.environ["RELOADLY_CLIENT_SECRET"] = ""

warnings.filterwarnings("ignore", category=DeprecationWarning)

from sqlalchemy import create_engine
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from giftpool.api.deps import get_balance_fetcher, get_float_gateway, get_notifier
from giftpool.core.errors import UpstreamUnavailable
from giftpool.core.security import create_access_token
from giftpool.db.session import Base, get_db
from giftpool.integrations.reloadly import FloatBalance
from giftpool.main import app
from giftpool.models.models import AlertTierEnum, Gift


def pytest_configure(config):
    warnings.filterwarnings("ignore", category=DeprecationWarning)


@pytest.fixture
def anyio_backend():
    return "asyncio"


class FakeGateway:
    """Float source with a settable balance; ``None`` means upstream is down."""

    def __init__(self, balance: Decimal | str | None = "100.00", currency_code: str = "USD") -> None:
        self.balance = Decimal(balance) if balance is not None else None
        self.currency_code = currency_code
        self.calls = 0

    async def get_balance(self) -> FloatBalance:
        self.calls += 1
        if self.balance is None:
            raise UpstreamUnavailable("Reloadly balance request failed")
        return FloatBalance(
            amount=self.balance,
            currency_code=self.currency_code,
            fetched_at=datetime.now(timezone.utc),
        )


class FakeNotifier:
    def __init__(self, enabled: bool = True, deliver: bool = True) -> None:
        self.enabled = enabled
        self.deliver = deliver
        self.sent: list[tuple[AlertTierEnum, Decimal]] = []

    async def send_balance_alert(self, tier: AlertTierEnum, balance: Decimal) -> bool:
        if not self.enabled:
            return False
        self.sent.append((tier, balance))
        return self.deliver


@pytest.fixture
def session_factory(tmp_path):
    db_path = tmp_path / "giftpool-test.db"
    from giftpool.models import models as models_module
    _ = models_module
    sync_engine = create_engine(f"sqlite:///{db_path}")
    Base.metadata.create_all(sync_engine)
    sync_engine.dispose()

    engine = create_async_engine(
        f"sqlite+aiosqlite:///{db_path}",
        poolclass=NullPool,
        connect_args={"timeout": 15},
    )
    factory = async_sessionmaker(bind=engine, expire_on_commit=False, autoflush=False)
    yield factory
    engine.sync_engine.dispose()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture(autouse=True)
def app_overrides(session_factory, gateway, notifier):
    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_float_gateway] = lambda: gateway
    app.dependency_overrides[get_balance_fetcher] = lambda: gateway.get_balance
    app.dependency_overrides[get_notifier] = lambda: notifier
    yield
    app.dependency_overrides.clear()


@pytest.fixture
def test_client():
    from fastapi.testclient import TestClient

    return TestClient(app)


def auth_headers(user_id: int) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(str(user_id))}"}


async def make_gift(
    factory,
    organizer_id: int = 1,
    target_amount: str | None = "100.00",
    deadline: datetime | None = None,
    status: str = "active",
) -> int:
    async with factory() as db:
        gift = Gift(
            organizer_id=organizer_id,
            title="Birthday present",
            target_amount=Decimal(target_amount) if target_amount is not None else None,
            deadline=deadline,
            status=status,
            collected_total=Decimal("0.00"),
        )
        db.add(gift)
        await db.commit()
        return gift.id

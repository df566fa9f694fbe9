"""Shared test infrastructure for the AgroLink test suite.

Provides:
- db_session: async SQLite in-memory session with all tables created
- make_user / make_product / make_contract: row factories
- fake_gateway: in-memory stand-in for InstamojoClient
- fake_mailer: Mailer stand-in capturing outbound notices
- realtime: ConnectionManager that records emits instead of writing to sockets
- api_client: httpx client against a FastAPI app wired to the fixtures above
"""

import itertools
from contextlib import asynccontextmanager

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from agrolink.infra.database import Base, get_db

# Import all model modules so their tables are registered with Base.metadata
import agrolink.domain.models  # noqa: F401

from agrolink.app.dependencies import get_gateway, get_mailer, get_realtime
from agrolink.app.errors import register_error_handlers
from agrolink.domain.models import Contract, Product, User
from agrolink.infra.instamojo import InstamojoConfig, PaymentGatewayError, compute_signature
from agrolink.services.auth_service import create_access_token, hash_password
from agrolink.services.email_service import MailConfig
from agrolink.services.realtime import ConnectionManager

TEST_SALT = "test-salt"
TEST_PASSWORD = "password123"
_PASSWORD_HASH = hash_password(TEST_PASSWORD)


# ---------------------------------------------------------------------------
# Database session fixture
# ---------------------------------------------------------------------------

@pytest.fixture
async def db_session():
    """Async SQLite in-memory session with all tables created.

    Creates a fresh engine + tables for each test, yields a session,
    then rolls back and tears down.
    """
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    session_factory = async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False,
    )

    async with session_factory() as session:
        yield session
        await session.rollback()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def session_factory(db_session):
    """Callable usable as ``async with factory() as db`` that hands out db_session."""

    @asynccontextmanager
    async def _factory():
        yield db_session

    return _factory


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

class FakeGateway:
    """Records gateway calls; payment request responses are configurable."""

    def __init__(self):
        self.config = InstamojoConfig(api_key="key", auth_token="token", salt=TEST_SALT)
        self.created: list[dict] = []
        self.requests: dict[str, dict] = {}
        self.fail_with: PaymentGatewayError | None = None
        # Awaited with the request kwargs before the gateway responds
        self.on_create = None
        self._ids = itertools.count(1)

    @property
    def configured(self) -> bool:
        return True

    async def create_payment_request(self, **kwargs) -> dict:
        if self.fail_with is not None:
            raise self.fail_with
        if self.on_create is not None:
            await self.on_create(kwargs)
        self.created.append(kwargs)
        request_id = f"PR-{next(self._ids)}"
        request = {
            "id": request_id,
            "longurl": f"https://test.instamojo.com/@agrolink/{request_id}",
            "status": "Pending",
            "amount": f"{kwargs['amount']:.2f}",
            "payments": [],
        }
        self.requests[request_id] = request
        return request

    async def get_payment_request(self, payment_request_id: str) -> dict:
        if self.fail_with is not None:
            raise self.fail_with
        return self.requests[payment_request_id]

    def settle(self, payment_request_id: str, status: str = "Completed", payment_id: str = "MOJO-1"):
        """Simulate the buyer finishing (or abandoning) checkout."""
        request = self.requests[payment_request_id]
        request["status"] = status
        if status == "Completed":
            request["payments"] = [{"payment_id": payment_id, "status": "Credit"}]

    async def aclose(self):
        pass


class FakeMailer:
    """Captures notices instead of calling SendGrid."""

    def __init__(self, fail: bool = False):
        self.config = MailConfig(api_key="", from_email="noreply@test.com", admin_email="admin@test.com")
        self.sent: list[tuple[str, str]] = []
        self.fail = fail

    async def _record(self, kind: str, to_email: str) -> bool:
        if self.fail:
            raise RuntimeError("mail server down")
        self.sent.append((kind, to_email))
        return True

    async def send_contract_notice(self, to_email, recipient_name, subject, contract, detail):
        return await self._record("contract", to_email)

    async def send_payment_received(self, to_email, payment, contract):
        return await self._record("payment_received", to_email)

    async def send_payment_disbursed(self, to_email, payment):
        return await self._record("payment_disbursed", to_email)


class RecordingRealtime(ConnectionManager):
    """ConnectionManager that records traffic instead of writing to sockets."""

    def __init__(self):
        super().__init__()
        self.emitted: list[tuple[str, str, dict]] = []
        self.direct: list[tuple[str, str, dict]] = []

    async def emit(self, room, event, data, exclude=None):
        self.emitted.append((room, event, data))

    async def send(self, client_id, event, data):
        self.direct.append((client_id, event, data))

    def events(self, name: str, room: str | None = None) -> list[dict]:
        return [d for r, e, d in self.emitted if e == name and (room is None or r == room)]

    def sent_to(self, client_id: str, name: str | None = None) -> list[tuple[str, dict]]:
        return [(e, d) for c, e, d in self.direct if c == client_id and (name is None or e == name)]


@pytest.fixture
def fake_gateway():
    return FakeGateway()


@pytest.fixture
def fake_mailer():
    return FakeMailer()


@pytest.fixture
def failing_mailer():
    return FakeMailer(fail=True)


@pytest.fixture
def realtime():
    return RecordingRealtime()


@pytest.fixture
def sign_webhook():
    """Signs a webhook payload with the fake gateway salt."""

    def _sign(payload: dict, salt: str = TEST_SALT) -> str:
        return compute_signature(payload, salt)

    return _sign


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------

@pytest.fixture
def make_user(db_session):
    """Factory that creates a User row.

    Usage:
        farmer = await make_user(role="farmer", name="Ravi")
    """
    counter = itertools.count(1)

    async def _factory(
        role: str = "customer",
        name: str | None = None,
        email: str | None = None,
        phone: str | None = "9999999999",
    ) -> User:
        n = next(counter)
        user = User(
            email=email or f"{role}{n}@test.com",
            password_hash=_PASSWORD_HASH,
            name=name or f"Test {role.title()} {n}",
            phone=phone,
            role=role,
            is_active=True,
        )
        db_session.add(user)
        await db_session.flush()
        return user

    return _factory


@pytest.fixture
def make_product(db_session):
    """Factory that creates a crop listing for a farmer."""

    async def _factory(farmer: User, name: str = "Basmati Rice", price: float = 50.0, **overrides) -> Product:
        fields = dict(
            farmer_id=farmer.id,
            farmer=farmer,
            name=name,
            description="Fresh crop",
            price=price,
            category="Grains",
            available_quantity=1000,
            unit="kg",
            status="active",
        )
        fields.update(overrides)
        product = Product(**fields)
        db_session.add(product)
        await db_session.flush()
        return product

    return _factory


@pytest.fixture
def make_contract(db_session, make_user, make_product):
    """Factory that creates a contract (and its parties/crop when not given).

    Usage:
        contract = await make_contract(status="accepted", quantity=10, price_per_unit=50)
    """

    async def _factory(
        farmer: User | None = None,
        buyer: User | None = None,
        status: str = "requested",
        quantity: float = 10,
        price_per_unit: float = 50,
        **overrides,
    ) -> Contract:
        farmer = farmer or await make_user(role="farmer")
        buyer = buyer or await make_user(role="customer")
        product = await make_product(farmer)
        fields = dict(
            farmer=farmer,
            buyer=buyer,
            crop=product,
            quantity=quantity,
            unit="kg",
            price_per_unit=price_per_unit,
            total_amount=round(quantity * price_per_unit, 2),
            quality_requirements="Grade A",
            status=status,
        )
        fields.update(overrides)
        contract = Contract(**fields)
        db_session.add(contract)
        await db_session.flush()
        return contract

    return _factory


# ---------------------------------------------------------------------------
# HTTP client
# ---------------------------------------------------------------------------

@pytest.fixture
def auth_headers():
    """Bearer header for a user."""

    def _headers(user: User) -> dict:
        return {"Authorization": f"Bearer {create_access_token(user.id, user.role)}"}

    return _headers


@pytest.fixture
async def api_client(db_session, fake_gateway, fake_mailer, realtime):
    """AsyncClient against an app with every router and the fakes wired in."""
    from agrolink.app.routes.auth import router as auth_router
    from agrolink.app.routes.chat import router as chat_router
    from agrolink.app.routes.contracts import router as contracts_router
    from agrolink.app.routes.notifications import router as notifications_router
    from agrolink.app.routes.payments import router as payments_router
    from agrolink.app.routes.products import router as products_router

    app = FastAPI()
    register_error_handlers(app, debug=False)
    for router in (
        auth_router,
        products_router,
        contracts_router,
        chat_router,
        notifications_router,
        payments_router,
    ):
        app.include_router(router)

    async def _get_db():
        yield db_session

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_gateway] = lambda: fake_gateway
    app.dependency_overrides[get_mailer] = lambda: fake_mailer
    app.dependency_overrides[get_realtime] = lambda: realtime

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

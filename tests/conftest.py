"""Shared test fixtures — a fresh in-memory Storage per test."""
from __future__ import annotations

import os

# Settings are read at import time; pin the ones tests depend on first
os.environ["ADMIN_API_KEY"] = "test-admin-key"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test"
os.environ["FREE_MONTHLY_MESSAGE_LIMIT"] = "5"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"

from unittest.mock import AsyncMock  # noqa: E402

import httpx  # noqa: E402
import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402

from topvoices.api.main import app, attach_services  # noqa: E402
from topvoices.models import TierPolicy  # noqa: E402
from topvoices.services.admin import SubscriptionAdmin  # noqa: E402
from topvoices.services.chat_relay import ChatRelay  # noqa: E402
from topvoices.services.gumroad_gateway import GumroadGateway  # noqa: E402
from topvoices.services.reconciliation import ReconciliationEngine  # noqa: E402
from topvoices.services.stripe_gateway import GatewayResult  # noqa: E402
from topvoices.services.usage import UsageGate, UsageMeter  # noqa: E402
from topvoices.storage.container import Storage  # noqa: E402

TEST_DB_URL = "sqlite+aiosqlite:///:memory:"
ADMIN_HEADERS = {"X-Admin-Key": "test-admin-key"}
CHAT_URL = "http://chat.test/hook"


class StubGateway:
    """Stands in for StripeGateway. Every call is an AsyncMock; by default
    Stripe is unreachable for lookups and accepts cancellations."""

    provider = "stripe"
    timeout = 1.0

    def __init__(self):
        self.verify_by_id = AsyncMock(return_value=GatewayResult.failure("Stripe unavailable"))
        self.list_by_email = AsyncMock(return_value=GatewayResult.failure("Stripe unavailable"))
        self.list_by_customer = AsyncMock(return_value=GatewayResult.failure("Stripe unavailable"))
        self.list_all = AsyncMock(return_value=GatewayResult(success=True))
        self.get_customer = AsyncMock(return_value=GatewayResult.failure("Stripe unavailable"))
        self.cancel = AsyncMock(return_value=GatewayResult(success=True))


def live_subscription(sub_id: str = "sub_live", status: str = "active", customer: str = "cus_1") -> dict:
    """A subscription in the gateway's normalized shape."""
    return {
        "id": sub_id,
        "status": status,
        "active": status in ("active", "trialing"),
        "currentPeriodEnd": "2030-01-01T00:00:00+00:00",
        "customerId": customer,
        "canceledAt": None,
    }


def make_relay(handler) -> ChatRelay:
    return ChatRelay(url=CHAT_URL, timeout=1, transport=httpx.MockTransport(handler))


def make_gumroad(handler=None) -> GumroadGateway:
    """Gumroad client over a mocked transport; unconfigured without a handler."""
    if handler is None:
        return GumroadGateway(access_token="", product_id="")
    return GumroadGateway(
        access_token="gr_test", product_id="prod_1", api_base="https://gumroad.test/v2",
        timeout=1, transport=httpx.MockTransport(handler),
    )


def _ok_reply(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, json={"response": "Here are this week's top voices."})


@pytest_asyncio.fixture
async def storage():
    store = await Storage(TEST_DB_URL).init()
    yield store
    await store.close()


@pytest.fixture
def gateway() -> StubGateway:
    return StubGateway()


@pytest.fixture
def policy() -> TierPolicy:
    return TierPolicy(
        premium=["premium", "manual_premium", "admin_added"],
        free=["free"],
        local_authoritative=["premium", "manual_premium", "admin_added"],
        trust_provider_mirrors=True,
    )


@pytest.fixture
def engine(storage, gateway, policy) -> ReconciliationEngine:
    return ReconciliationEngine(storage, gateway, policy, call_timeout=0.5)


@pytest.fixture
def strict_engine(storage, gateway) -> ReconciliationEngine:
    """Engine that re-verifies active Stripe mirrors instead of trusting them."""
    policy = TierPolicy(
        premium=["premium", "manual_premium", "admin_added"],
        free=["free"],
        local_authoritative=["premium", "manual_premium", "admin_added"],
        trust_provider_mirrors=False,
    )
    return ReconciliationEngine(storage, gateway, policy, call_timeout=0.5)


@pytest.fixture
def meter(storage) -> UsageMeter:
    return UsageMeter(storage, limit=5)


@pytest.fixture
def gate(meter, storage, policy) -> UsageGate:
    return UsageGate(meter, storage, policy)


@pytest.fixture
def admin(storage, gateway, policy) -> SubscriptionAdmin:
    return SubscriptionAdmin(storage, gateway, policy, make_gumroad())


@pytest.fixture
def relay() -> ChatRelay:
    return make_relay(_ok_reply)


@pytest_asyncio.fixture
async def client(storage, gateway, relay, policy):
    attach_services(app, storage, gateway=gateway, relay=relay, policy=policy, gumroad=make_gumroad())
    app.state.meter.limit = 5
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

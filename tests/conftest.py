from datetime import datetime, timedelta, timezone

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

import billing.auth
import billing.routes
from billing.config import GatewayConfig
from billing.database import Base, get_db
from billing.gateway import PesapalClient
from billing.main import app as fastapi_app
from billing.models import Product, User
from billing.repository import OrderStore, SubscriptionStore
from billing.subscriptions import SubscriptionLifecycleManager
from billing.token_cache import InMemoryTokenCache, TokenCacheManager

SQLALCHEMY_DATABASE_URL = "sqlite:///./test_billing.db"
engine = create_engine(SQLALCHEMY_DATABASE_URL, connect_args={
                       "check_same_thread": False})
TestingSessionLocal = sessionmaker(
    autocommit=False, autoflush=False, bind=engine)

NOW = datetime(2026, 1, 15, 9, 0, tzinfo=timezone.utc)

TIERS = {
    "free": {"price": 0, "features": "Up to 10 employees, basic payroll"},
    "basic": {"price": 2500, "features": "Up to 50 employees"},
    "premium": {"price": 5999, "features": "Unlimited employees"},
}


class FakePesapal:
    """Scripted Pesapal API behind httpx.MockTransport."""

    def __init__(self):
        self.requests = []
        self.routes = {
            "/api/Auth/RequestToken": (200, {
                "token": "tok-1",
                "expiryDate": (datetime.now(timezone.utc) + timedelta(minutes=65)).isoformat(),
                "error": None,
                "status": "200",
            }),
        }

    def reply(self, path, status=200, json=None, text=None):
        self.routes[path] = (status, json if text is None else text)

    def calls(self, path):
        return [r for r in self.requests if r.url.path == path]

    def handler(self, request):
        self.requests.append(request)
        route = self.routes.get(request.url.path)
        if route is None:
            return httpx.Response(404, text="no such endpoint")
        if callable(route):
            return route(request)
        status, body = route
        if isinstance(body, str):
            return httpx.Response(status, text=body)
        return httpx.Response(status, json=body)


@pytest.fixture(autouse=True)
def setup_db():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db():
    session = TestingSessionLocal()
    yield session
    session.close()


@pytest.fixture
def config():
    return GatewayConfig(
        consumer_key="test-key",
        consumer_secret="test-secret",
        notification_id="ipn-123",
        app_url="https://shop.test",
        base_url_override="https://pesapal.test",
    )


@pytest.fixture
def pesapal():
    return FakePesapal()


@pytest.fixture
def http_client(pesapal):
    client = httpx.Client(transport=httpx.MockTransport(pesapal.handler))
    yield client
    client.close()


@pytest.fixture
def token_manager(config, http_client):
    return TokenCacheManager(config, cache=InMemoryTokenCache(), http_client=http_client)


@pytest.fixture
def client(config, token_manager, http_client):
    return PesapalClient(config, tokens=token_manager, http_client=http_client)


@pytest.fixture
def clock():
    class Clock:
        now = NOW

        def __call__(self):
            return self.now

    return Clock()


@pytest.fixture
def manager(db, client, config, clock):
    return SubscriptionLifecycleManager(
        SubscriptionStore(db), client, config, orders=OrderStore(db), clock=clock
    )


@pytest.fixture
def user(db):
    u = User(id=1, name="Wanjiku Mwangi Njeri", email="wanjiku@example.com", phone="254700000001")
    db.add(u)
    db.commit()
    return u


@pytest.fixture
def product(db):
    p = Product(id=10, title="PayrollPro", price=0, is_subscription=True, subscription_tiers=TIERS)
    db.add(p)
    db.commit()
    return p


@pytest.fixture
def plain_product(db):
    p = Product(id=11, title="Office Chair", price=12000, is_subscription=False)
    db.add(p)
    db.commit()
    return p


def override_get_db():
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def subscriber(mocker):
    return mocker.Mock()


@pytest.fixture
def api(client, config, subscriber):
    fastapi_app.dependency_overrides[get_db] = override_get_db
    fastapi_app.dependency_overrides[billing.routes.get_client] = lambda: client
    fastapi_app.dependency_overrides[billing.routes.get_gateway_config] = lambda: config
    fastapi_app.dependency_overrides[billing.routes.get_subscriber] = lambda: subscriber
    # Bypass auth verification, user 1 is logged in
    fastapi_app.dependency_overrides[billing.auth.current_user_id] = lambda: 1
    with TestClient(fastapi_app) as c:
        yield c
    fastapi_app.dependency_overrides.clear()

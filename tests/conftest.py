import json
from decimal import Decimal

import httpx
import pytest

from storefront import catalog, db
from storefront.checkout import CheckoutEngine
from storefront.config import Settings
from storefront.gateway import MercadoPagoGateway
from storefront.main import create_app
from storefront.publisher import EventPublisher

MP_API_URL = "https://mp.test"


class PaymentProviderStub:
    """Mercado Pago API の代わりに httpx.MockTransport で応答する。"""

    def __init__(self) -> None:
        self.requests: list[dict] = []
        self.headers: list[httpx.Headers] = []
        self.mode = "ok"

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(json.loads(request.content))
        self.headers.append(request.headers)
        if self.mode == "timeout":
            raise httpx.ReadTimeout("timed out", request=request)
        if self.mode == "error":
            return httpx.Response(500, json={"message": "internal error"})
        if self.mode == "no_init_point":
            return httpx.Response(201, json={"id": "pref-x"})
        if self.mode == "bad_init_point":
            return httpx.Response(201, json={"id": "pref-x", "init_point": {"url": "x"}})
        n = len(self.requests)
        return httpx.Response(
            201,
            json={
                "id": f"pref-{n}",
                "init_point": f"https://mp.test/checkout?pref_id=pref-{n}",
            },
        )


class RecordingRedis:
    def __init__(self) -> None:
        self.messages: list[tuple[str, dict]] = []

    async def publish(self, channel: str, message: str) -> int:
        self.messages.append((channel, json.loads(message)))
        return 1


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'storefront.db'}",
        mp_access_token="TEST-TOKEN",
        mp_api_url=MP_API_URL,
        public_base_url="http://shop.test",
    )


@pytest.fixture
def provider() -> PaymentProviderStub:
    return PaymentProviderStub()


@pytest.fixture
async def http_client(provider):
    async with httpx.AsyncClient(transport=httpx.MockTransport(provider.handler)) as client:
        yield client


@pytest.fixture
def gateway(http_client, settings) -> MercadoPagoGateway:
    return MercadoPagoGateway(http_client, settings.mp_access_token, settings.mp_api_url)


@pytest.fixture
async def engine(settings):
    engine = db.create_engine(settings.database_url)
    await db.create_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return db.create_session_factory(engine)


@pytest.fixture
def redis_stub() -> RecordingRedis:
    return RecordingRedis()


@pytest.fixture
def publisher(redis_stub) -> EventPublisher:
    return EventPublisher(redis_stub)


@pytest.fixture
def checkout(session_factory, gateway, settings, publisher) -> CheckoutEngine:
    return CheckoutEngine(session_factory, gateway, settings, publisher)


@pytest.fixture
def add_product(session_factory):
    async def _add(brand="Acme", model="X1", price="100.00", stock=5, **extra) -> dict:
        async with session_factory() as session:
            async with session.begin():
                return await catalog.create_product(
                    session,
                    {"brand": brand, "model": model, "price": Decimal(price), "stock": stock, **extra},
                )

    return _add


@pytest.fixture
def get_product(session_factory):
    async def _get(product_id: int) -> dict:
        async with session_factory() as session:
            return await catalog.get_product(session, product_id)

    return _get


@pytest.fixture
async def client(settings, gateway, publisher):
    app = create_app(settings, gateway=gateway, publisher=publisher)
    async with app.router.lifespan_context(app):
        async with httpx.AsyncClient(
            transport=httpx.ASGITransport(app=app), base_url="http://shop.test"
        ) as client:
            yield client

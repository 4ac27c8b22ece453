import asyncio
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from storefront import catalog, orders
from storefront.checkout import CheckoutEngine, quote_unit_price
from storefront.db import order_items
from storefront.db import orders as orders_table
from storefront.errors import InsufficientStockError, NotFoundError, ValidationError
from storefront.gateway import MercadoPagoGateway
from storefront.schemas import CustomerInfo, RequestedItem

CUSTOMER = CustomerInfo(
    name="Ana Pérez",
    email="ana@example.com",
    address="Av. 18 de Julio 1234",
    phone="+59899123456",
)


async def _count(session_factory, table) -> int:
    async with session_factory() as session:
        return (await session.execute(select(func.count()).select_from(table))).scalar_one()


async def _get_order(session_factory, order_id: int) -> dict:
    async with session_factory() as session:
        return await orders.get_order(session, order_id)


async def test_checkout_whole_stock_then_insufficient(
    checkout, add_product, get_product, session_factory, provider
):
    product = await add_product(brand="Acme", model="X1", price="100.00", stock=5)

    result = await checkout.checkout(CUSTOMER, [RequestedItem(id=product["id"], quantity=5)])

    assert result.total == Decimal("500.00")
    assert result.redirect_url == "https://mp.test/checkout?pref_id=pref-1"
    assert (await get_product(product["id"]))["stock"] == 0
    assert provider.requests[0]["items"][0]["unit_price"] == 110.00

    with pytest.raises(InsufficientStockError) as exc_info:
        await checkout.checkout(CUSTOMER, [RequestedItem(id=product["id"], quantity=1)])

    assert exc_info.value.requested == 1
    assert exc_info.value.available == 0
    assert (await get_product(product["id"]))["stock"] == 0
    assert await _count(session_factory, order_items) == 1
    assert await _count(session_factory, orders_table) == 1
    assert len(provider.requests) == 1


async def test_stock_decrements_across_checkouts(checkout, add_product, get_product):
    product = await add_product(stock=10)

    for quantity in (1, 2, 3):
        await checkout.checkout(CUSTOMER, [RequestedItem(id=product["id"], quantity=quantity)])

    assert (await get_product(product["id"]))["stock"] == 4


async def test_total_is_sum_of_captured_prices(checkout, add_product, session_factory):
    phone = await add_product(brand="Acme", model="X1", price="199.99", stock=3)
    case = await add_product(brand="Acme", model="Case", price="12.50", stock=10)

    result = await checkout.checkout(
        CUSTOMER,
        [RequestedItem(id=phone["id"], quantity=2), RequestedItem(id=case["id"], quantity=3)],
    )

    assert result.total == Decimal("437.48")
    order = await _get_order(session_factory, result.order_id)
    assert order["total"] == 437.48
    assert order["status"] == "Pending"
    assert order["customer_name"] == "Ana Pérez"
    assert order["customer_phone"] == "+59899123456"
    assert [(i["model"], i["quantity"], i["unit_price"]) for i in order["items"]] == [
        ("X1", 2, 199.99),
        ("Case", 3, 12.5),
    ]


async def test_price_change_does_not_alter_existing_order(
    checkout, add_product, session_factory
):
    product = await add_product(price="100.00", stock=5)
    result = await checkout.checkout(CUSTOMER, [RequestedItem(id=product["id"], quantity=2)])

    async with session_factory() as session:
        async with session.begin():
            await catalog.update_product(session, product["id"], {"price": Decimal("150.00")})

    order = await _get_order(session_factory, result.order_id)
    assert order["total"] == 200.0
    assert order["items"][0]["unit_price"] == 100.0
    assert order["items"][0]["product"]["price"] == 150.0


async def test_failure_mid_cart_rolls_back_everything(
    checkout, add_product, get_product, session_factory, provider
):
    first = await add_product(model="X1", stock=5)
    second = await add_product(model="X2", stock=1)

    with pytest.raises(InsufficientStockError):
        await checkout.checkout(
            CUSTOMER,
            [RequestedItem(id=first["id"], quantity=2), RequestedItem(id=second["id"], quantity=2)],
        )

    assert (await get_product(first["id"]))["stock"] == 5
    assert (await get_product(second["id"]))["stock"] == 1
    assert await _count(session_factory, orders_table) == 0
    assert await _count(session_factory, order_items) == 0
    assert provider.requests == []


async def test_unknown_product_rolls_back(checkout, add_product, get_product, session_factory):
    product = await add_product(stock=5)

    with pytest.raises(NotFoundError):
        await checkout.checkout(
            CUSTOMER,
            [RequestedItem(id=product["id"], quantity=1), RequestedItem(id=9999, quantity=1)],
        )

    assert (await get_product(product["id"]))["stock"] == 5
    assert await _count(session_factory, orders_table) == 0


@pytest.mark.parametrize(
    "customer, items",
    [
        (CustomerInfo(name=""), [RequestedItem(id=1, quantity=1)]),
        (CustomerInfo(name="   "), [RequestedItem(id=1, quantity=1)]),
        (None, [RequestedItem(id=1, quantity=1)]),
        (CUSTOMER, []),
        (CUSTOMER, [RequestedItem(id=1, quantity=0)]),
        (CUSTOMER, [RequestedItem(id=1, quantity=-2)]),
    ],
)
async def test_validation_errors_open_no_transaction(checkout, session_factory, customer, items):
    with pytest.raises(ValidationError):
        await checkout.checkout(customer, items)

    assert await _count(session_factory, orders_table) == 0


async def test_same_product_twice_in_one_cart(checkout, add_product, get_product):
    product = await add_product(stock=3)

    await checkout.checkout(
        CUSTOMER,
        [RequestedItem(id=product["id"], quantity=2), RequestedItem(id=product["id"], quantity=1)],
    )
    assert (await get_product(product["id"]))["stock"] == 0

    other = await add_product(stock=3)
    with pytest.raises(InsufficientStockError):
        await checkout.checkout(
            CUSTOMER,
            [RequestedItem(id=other["id"], quantity=2), RequestedItem(id=other["id"], quantity=2)],
        )
    assert (await get_product(other["id"]))["stock"] == 3


async def test_concurrent_checkouts_cannot_oversell(
    checkout, add_product, get_product, session_factory
):
    product = await add_product(stock=5)
    cart = [RequestedItem(id=product["id"], quantity=3)]

    results = await asyncio.gather(
        checkout.checkout(CUSTOMER, cart),
        checkout.checkout(CUSTOMER, cart),
        return_exceptions=True,
    )

    failures = [r for r in results if isinstance(r, Exception)]
    assert len(failures) == 1
    assert isinstance(failures[0], InsufficientStockError)
    assert (await get_product(product["id"]))["stock"] == 2
    assert await _count(session_factory, orders_table) == 1
    assert await _count(session_factory, order_items) == 1


# ── 決済ゲートウェイ連携 ──


async def test_preference_payload(checkout, add_product, provider):
    product = await add_product(brand="Acme", model="X1", price="100.00", stock=5)

    result = await checkout.checkout(CUSTOMER, [RequestedItem(id=product["id"], quantity=2)])

    body = provider.requests[0]
    assert body["items"] == [
        {"title": "Acme X1", "quantity": 2, "currency_id": "UYU", "unit_price": 110.0}
    ]
    assert body["payer"] == {
        "name": "Ana Pérez",
        "email": "ana@example.com",
        "phone": {"number": "+59899123456"},
    }
    assert body["back_urls"] == {
        "success": "http://shop.test/success",
        "failure": "http://shop.test/failure",
        "pending": "http://shop.test/pending",
    }
    assert body["external_reference"] == str(result.order_id)
    assert body["statement_descriptor"] == "DULCE MIMOS"
    assert provider.headers[0]["authorization"] == "Bearer TEST-TOKEN"


@pytest.mark.parametrize(
    "price, quoted",
    [
        ("100.00", "110.00"),
        ("0.05", "0.06"),
        ("19.99", "21.99"),
        ("12.35", "13.59"),
        ("0.00", "0.00"),
    ],
)
def test_quote_unit_price_rounds_half_up(price, quoted):
    assert quote_unit_price(Decimal(price), Decimal("0.10")) == Decimal(quoted)


async def test_stored_prices_exclude_surcharge(checkout, add_product, session_factory):
    product = await add_product(price="19.99", stock=5)

    result = await checkout.checkout(CUSTOMER, [RequestedItem(id=product["id"], quantity=1)])

    order = await _get_order(session_factory, result.order_id)
    assert order["items"][0]["unit_price"] == 19.99
    assert order["total"] == 19.99


@pytest.mark.parametrize("mode", ["error", "timeout", "no_init_point", "bad_init_point"])
async def test_gateway_failure_keeps_order(
    checkout, add_product, get_product, session_factory, provider, mode
):
    provider.mode = mode
    product = await add_product(stock=5)

    result = await checkout.checkout(CUSTOMER, [RequestedItem(id=product["id"], quantity=2)])

    assert result.redirect_url is None
    assert result.total == Decimal("200.00")
    order = await _get_order(session_factory, result.order_id)
    assert order["total"] == 200.0
    assert order["redirect_url"] is None
    assert (await get_product(product["id"]))["stock"] == 3
    assert len(provider.requests) == 1


async def test_missing_access_token_keeps_order(
    session_factory, http_client, settings, add_product, provider
):
    engine = CheckoutEngine(
        session_factory, MercadoPagoGateway(http_client, None, settings.mp_api_url), settings
    )
    product = await add_product(stock=1)

    result = await engine.checkout(CUSTOMER, [RequestedItem(id=product["id"], quantity=1)])

    assert result.redirect_url is None
    assert provider.requests == []


async def test_redirect_url_is_stored_on_order(checkout, add_product, session_factory):
    product = await add_product(stock=1)

    result = await checkout.checkout(CUSTOMER, [RequestedItem(id=product["id"], quantity=1)])

    order = await _get_order(session_factory, result.order_id)
    assert order["redirect_url"] == result.redirect_url


async def test_order_placed_event_published(checkout, add_product, redis_stub):
    product = await add_product(price="100.00", stock=5)

    result = await checkout.checkout(CUSTOMER, [RequestedItem(id=product["id"], quantity=2)])

    channel, message = redis_stub.messages[-1]
    assert channel == "order_events"
    assert message["event_type"] == "OrderPlaced"
    assert message["data"]["order_id"] == result.order_id
    assert message["data"]["total"] == 200.0
    assert message["data"]["items"] == [
        {"product_id": product["id"], "quantity": 2, "unit_price": 100.0}
    ]


async def test_double_submit_creates_two_orders(checkout, add_product, session_factory):
    product = await add_product(stock=5)
    cart = [RequestedItem(id=product["id"], quantity=1)]

    first = await checkout.checkout(CUSTOMER, cart)
    second = await checkout.checkout(CUSTOMER, cart)

    assert first.order_id != second.order_id
    assert await _count(session_factory, orders_table) == 2

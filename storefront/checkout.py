"""
Storefront — チェックアウトエンジン

1 つのローカルトランザクションで:
  1. 注文を作成 (合計 0, Pending)
  2. 明細ごとに商品を行ロック → 在庫確認 → 在庫を減算 → 明細を記録
  3. 注文の合計を更新
  4. コミット (途中で失敗すれば注文・在庫・明細をすべてロールバック)

コミット後、ロックの外で決済ゲートウェイにプリファレンス作成を依頼する。
  ┌──────────────────────────────────────────────────────┐
  │  Ok    → リダイレクト URL を注文に保存して返す          │
  │  Error → ログだけ残し redirect_url = None で返す       │
  │          (ローカルの注文は取り消さない)                 │
  └──────────────────────────────────────────────────────┘
ゲートウェイへの再試行は行わない。
"""

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal

from kungfu import Error, Ok
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from . import catalog, orders
from .config import Settings
from .errors import InsufficientStockError, ValidationError
from .events import OrderLine, OrderPlaced
from .gateway import BackUrls, MercadoPagoGateway, Payer, PreferenceItem, PreferenceRequest
from .publisher import EventPublisher
from .schemas import CustomerInfo, RequestedItem

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


def quote_unit_price(price: Decimal, surcharge_rate: Decimal) -> Decimal:
    """ゲートウェイに提示する単価。手数料を上乗せし小数 2 桁に四捨五入 (ROUND_HALF_UP)。"""
    return (Decimal(price) * (1 + surcharge_rate)).quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True, slots=True)
class PurchasedLine:
    product_id: int
    brand: str
    model: str
    quantity: int
    unit_price: Decimal


@dataclass(frozen=True, slots=True)
class CheckoutResult:
    order_id: int
    total: Decimal
    redirect_url: str | None


class CheckoutEngine:
    def __init__(
        self,
        session_factory: sessionmaker,
        gateway: MercadoPagoGateway,
        settings: Settings,
        publisher: EventPublisher | None = None,
    ):
        self.session_factory = session_factory
        self.gateway = gateway
        self.settings = settings
        self.publisher = publisher

    async def checkout(
        self,
        customer: CustomerInfo,
        items: Sequence[RequestedItem],
    ) -> CheckoutResult:
        """
        カートを注文に変換する。

        ValidationError はトランザクションを開く前に送出される。
        NotFoundError / InsufficientStockError はトランザクション全体を取り消す。
        ゲートウェイの失敗は送出しない。
        """
        _validate(customer, items)

        lines: list[PurchasedLine] = []
        total = Decimal("0")

        async with self.session_factory() as session:
            async with session.begin():
                order_id = await orders.create_order(session, customer.model_dump())

                for item in items:
                    product = await catalog.lock_product(session, item.id)
                    if item.quantity > product.stock:
                        raise InsufficientStockError(
                            product.id,
                            f"{product.brand} {product.model}",
                            item.quantity,
                            product.stock,
                        )
                    await catalog.set_stock(session, product.id, product.stock - item.quantity)
                    unit_price = await orders.add_line_item(
                        session, order_id, product, item.quantity
                    )
                    total += unit_price * item.quantity
                    lines.append(
                        PurchasedLine(
                            product_id=product.id,
                            brand=product.brand,
                            model=product.model,
                            quantity=item.quantity,
                            unit_price=unit_price,
                        )
                    )

                await orders.set_total(session, order_id, total)

        logger.info("Order %s committed: %d line(s), total=%s", order_id, len(lines), total)

        redirect_url = await self._request_payment_link(order_id, customer, lines)

        if self.publisher is not None:
            await self.publisher.publish(
                OrderPlaced(
                    order_id=order_id,
                    customer_name=customer.name,
                    total=float(total),
                    items=[
                        OrderLine(
                            product_id=line.product_id,
                            quantity=line.quantity,
                            unit_price=float(line.unit_price),
                        )
                        for line in lines
                    ],
                    redirect_url=redirect_url,
                    timestamp=datetime.now(timezone.utc),
                )
            )

        return CheckoutResult(order_id=order_id, total=total, redirect_url=redirect_url)

    def build_preference(
        self,
        order_id: int,
        customer: CustomerInfo,
        lines: Sequence[PurchasedLine],
    ) -> PreferenceRequest:
        return PreferenceRequest(
            items=[
                PreferenceItem(
                    title=f"{line.brand} {line.model}",
                    quantity=line.quantity,
                    currency_id=self.settings.currency_id,
                    unit_price=quote_unit_price(line.unit_price, self.settings.surcharge_rate),
                )
                for line in lines
            ],
            payer=Payer(name=customer.name, email=customer.email, phone=customer.phone),
            back_urls=BackUrls(
                success=self.settings.back_url("success"),
                failure=self.settings.back_url("failure"),
                pending=self.settings.back_url("pending"),
            ),
            external_reference=str(order_id),
            statement_descriptor=self.settings.statement_descriptor,
        )

    async def _request_payment_link(
        self,
        order_id: int,
        customer: CustomerInfo,
        lines: Sequence[PurchasedLine],
    ) -> str | None:
        request = self.build_preference(order_id, customer, lines)
        result = await self.gateway.create_preference(request)

        match result:
            case Ok(preference):
                redirect_url = preference.init_point
            case Error(err):
                logger.warning("No payment link for order %s: %s", order_id, err.message)
                return None

        try:
            async with self.session_factory() as session:
                async with session.begin():
                    await orders.set_redirect_url(session, order_id, redirect_url)
        except SQLAlchemyError:
            logger.exception("Failed to store payment link for order %s", order_id)
        return redirect_url


def _validate(customer: CustomerInfo | None, items: Sequence[RequestedItem] | None) -> None:
    if customer is None or not (customer.name or "").strip():
        raise ValidationError("Customer name is required.")
    if not items:
        raise ValidationError("At least one item is required.")
    for item in items:
        if isinstance(item.quantity, bool) or not isinstance(item.quantity, int) or item.quantity <= 0:
            raise ValidationError(f"Quantity for product {item.id} must be a positive integer.")

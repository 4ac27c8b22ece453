"""
Storefront — 注文ストア (Order Store)

注文と明細の永続化と、明細 + 商品を結合した読み出し。
明細の作成はチェックアウトからのみ行う。
"""

import enum
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .catalog import product_to_dict
from .db import order_items, orders, products
from .errors import NotFoundError, ValidationError


class OrderStatus(str, enum.Enum):
    """
    注文ステータス

    状態遷移はチェックアウトでは行わない。Pending で作成され、
    以降は決済プロバイダの結果を受けてステータス更新 API で変更される。
    """

    PENDING = "Pending"
    APPROVED = "Approved"
    IN_PROCESS = "In Process"
    REJECTED = "Rejected"
    CANCELLED = "Cancelled"
    REFUNDED = "Refunded"


# ── 書き込み (チェックアウトのトランザクション内で呼ばれる) ──


async def create_order(session: AsyncSession, customer: dict) -> int:
    """合計 0・Pending で注文を作成し、ID を返す。明細が参照するため最初に作る。"""
    now = datetime.now(timezone.utc)
    result = await session.execute(
        insert(orders)
        .values(
            customer_name=customer["name"],
            customer_email=customer.get("email"),
            customer_address=customer.get("address"),
            customer_phone=customer.get("phone"),
            total=Decimal("0"),
            status=OrderStatus.PENDING.value,
            created_at=now,
            updated_at=now,
        )
        .returning(orders.c.id)
    )
    return result.scalar_one()


async def add_line_item(
    session: AsyncSession,
    order_id: int,
    product,
    quantity: int,
) -> Decimal:
    """購入時点の単価で明細を記録し、その単価を返す。"""
    unit_price = Decimal(product.price)
    await session.execute(
        insert(order_items).values(
            order_id=order_id,
            product_id=product.id,
            brand=product.brand,
            model=product.model,
            quantity=quantity,
            unit_price=unit_price,
            created_at=datetime.now(timezone.utc),
        )
    )
    return unit_price


async def set_total(session: AsyncSession, order_id: int, total: Decimal) -> None:
    await session.execute(
        update(orders)
        .where(orders.c.id == order_id)
        .values(total=total, updated_at=datetime.now(timezone.utc))
    )


async def set_redirect_url(session: AsyncSession, order_id: int, redirect_url: str) -> None:
    await session.execute(
        update(orders)
        .where(orders.c.id == order_id)
        .values(redirect_url=redirect_url, updated_at=datetime.now(timezone.utc))
    )


async def update_status(session: AsyncSession, order_id: int, status: str) -> dict:
    """ステータスのみを更新する。未知のステータスは ValidationError。"""
    try:
        new_status = OrderStatus(status)
    except ValueError:
        allowed = ", ".join(s.value for s in OrderStatus)
        raise ValidationError(f"Invalid status '{status}'. Allowed: {allowed}.") from None

    result = await session.execute(
        update(orders)
        .where(orders.c.id == order_id)
        .values(status=new_status.value, updated_at=datetime.now(timezone.utc))
        .returning(orders.c.id)
    )
    if result.scalar_one_or_none() is None:
        raise NotFoundError("Order", order_id)
    return await get_order(session, order_id)


# ── 読み出し ──


def _order_to_dict(row, items: list[dict]) -> dict:
    return {
        "id": row.id,
        "customer_name": row.customer_name,
        "customer_email": row.customer_email,
        "customer_address": row.customer_address,
        "customer_phone": row.customer_phone,
        "total": float(row.total),
        "status": row.status,
        "redirect_url": row.redirect_url,
        "created_at": row.created_at.isoformat() if row.created_at else None,
        "updated_at": row.updated_at.isoformat() if row.updated_at else None,
        "items": items,
    }


async def _load_items(session: AsyncSession, order_ids: list[int]) -> dict[int, list[dict]]:
    """明細を商品と LEFT JOIN して注文 ID ごとにまとめる。削除済み商品は product=None。"""
    if not order_ids:
        return {}
    result = await session.execute(
        select(
            order_items,
            products.c.id.label("p_id"),
            products.c.brand.label("p_brand"),
            products.c.model.label("p_model"),
            products.c.description.label("p_description"),
            products.c.image_url.label("p_image_url"),
            products.c.price.label("p_price"),
            products.c.stock.label("p_stock"),
            products.c.created_at.label("p_created_at"),
            products.c.updated_at.label("p_updated_at"),
        )
        .select_from(
            order_items.outerjoin(products, order_items.c.product_id == products.c.id)
        )
        .where(order_items.c.order_id.in_(order_ids))
        .order_by(order_items.c.id)
    )

    grouped: dict[int, list[dict]] = {order_id: [] for order_id in order_ids}
    for row in result.fetchall():
        product = None
        if row.p_id is not None:
            product = product_to_dict(_Prefixed(row, "p_"))
        grouped[row.order_id].append(
            {
                "id": row.id,
                "product_id": row.product_id,
                "brand": row.brand,
                "model": row.model,
                "quantity": row.quantity,
                "unit_price": float(row.unit_price),
                "product": product,
            }
        )
    return grouped


class _Prefixed:
    """JOIN 結果の p_xxx 列を product_to_dict から row.xxx として読めるようにする。"""

    def __init__(self, row, prefix: str) -> None:
        self._row = row
        self._prefix = prefix

    def __getattr__(self, name: str):
        return getattr(self._row, self._prefix + name)


async def get_order(session: AsyncSession, order_id: int) -> dict:
    result = await session.execute(select(orders).where(orders.c.id == order_id))
    row = result.fetchone()
    if not row:
        raise NotFoundError("Order", order_id)
    items = await _load_items(session, [row.id])
    return _order_to_dict(row, items[row.id])


async def list_orders(session: AsyncSession) -> list[dict]:
    result = await session.execute(
        select(orders).order_by(orders.c.created_at.desc(), orders.c.id.desc())
    )
    rows = result.fetchall()
    items = await _load_items(session, [row.id for row in rows])
    return [_order_to_dict(row, items[row.id]) for row in rows]

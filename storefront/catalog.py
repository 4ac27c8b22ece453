"""
Storefront — 商品カタログ (Catalog Store)

すべての関数は呼び出し側のセッション／トランザクションの中で動く。
コミットは呼び出し側の責務。
"""

from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import delete, insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .db import products
from .errors import NotFoundError, ValidationError

UPDATABLE_FIELDS = ("brand", "model", "description", "image_url", "price", "stock")


def product_to_dict(row) -> dict:
    return {
        "id": row.id,
        "brand": row.brand,
        "model": row.model,
        "description": row.description,
        "image_url": row.image_url,
        "price": float(row.price),
        "stock": row.stock,
        "created_at": row.created_at.isoformat() if row.created_at else None,
        "updated_at": row.updated_at.isoformat() if row.updated_at else None,
    }


def _check_values(values: dict) -> None:
    if "price" in values and (values["price"] is None or Decimal(str(values["price"])) < 0):
        raise ValidationError("price must be a non-negative number.")
    if "stock" in values and (values["stock"] is None or int(values["stock"]) < 0):
        raise ValidationError("stock must be a non-negative integer.")
    for field in ("brand", "model"):
        if field in values and not (values[field] or "").strip():
            raise ValidationError(f"{field} must not be empty.")


async def create_product(session: AsyncSession, values: dict) -> dict:
    """商品を登録して作成済みのレコードを返す。"""
    missing = [f for f in ("brand", "model", "price", "stock") if values.get(f) is None]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}.")
    _check_values(values)

    now = datetime.now(timezone.utc)
    result = await session.execute(
        insert(products)
        .values(
            brand=values["brand"],
            model=values["model"],
            description=values.get("description"),
            image_url=values.get("image_url"),
            price=Decimal(str(values["price"])),
            stock=int(values["stock"]),
            created_at=now,
            updated_at=now,
        )
        .returning(products)
    )
    return product_to_dict(result.one())


async def list_products(session: AsyncSession) -> list[dict]:
    result = await session.execute(
        select(products).order_by(products.c.created_at.desc(), products.c.id.desc())
    )
    return [product_to_dict(row) for row in result.fetchall()]


async def get_product(session: AsyncSession, product_id: int) -> dict:
    result = await session.execute(select(products).where(products.c.id == product_id))
    row = result.fetchone()
    if not row:
        raise NotFoundError("Product", product_id)
    return product_to_dict(row)


async def lock_product(session: AsyncSession, product_id: int):
    """
    商品行を排他ロック付きで読み出す (SELECT ... FOR UPDATE)。

    ロックはトランザクション終了まで保持される。
    同じ商品を買う並行チェックアウトはここで直列化される。
    """
    result = await session.execute(
        select(products).where(products.c.id == product_id).with_for_update()
    )
    row = result.fetchone()
    if not row:
        raise NotFoundError("Product", product_id)
    return row


async def set_stock(session: AsyncSession, product_id: int, stock: int) -> None:
    if stock < 0:
        raise ValidationError("stock must be a non-negative integer.")
    await session.execute(
        update(products)
        .where(products.c.id == product_id)
        .values(stock=stock, updated_at=datetime.now(timezone.utc))
    )


async def update_product(session: AsyncSession, product_id: int, values: dict) -> dict:
    """
    商品を部分更新する。

    stock を変更する場合はチェックアウトと同じ行ロックを取ってから書き込む。
    未知のフィールドは無視する。
    """
    changes = {k: v for k, v in values.items() if k in UPDATABLE_FIELDS}
    _check_values(changes)

    if "stock" in changes:
        await lock_product(session, product_id)
    else:
        await get_product(session, product_id)

    if not changes:
        return await get_product(session, product_id)

    if "price" in changes:
        changes["price"] = Decimal(str(changes["price"]))
    if "stock" in changes:
        changes["stock"] = int(changes["stock"])
    changes["updated_at"] = datetime.now(timezone.utc)

    result = await session.execute(
        update(products)
        .where(products.c.id == product_id)
        .values(**changes)
        .returning(products)
    )
    return product_to_dict(result.one())


async def delete_product(session: AsyncSession, product_id: int) -> dict:
    """
    商品を削除して削除前のレコードを返す。

    注文明細は product_id が NULL になるだけで、購入時点の単価・数量は残る。
    """
    deleted = await get_product(session, product_id)
    await session.execute(delete(products).where(products.c.id == product_id))
    return deleted

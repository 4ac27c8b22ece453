"""
Storefront — イベント定義

コミット後に order_events チャネルへ通知するイベント。
過去形で命名し、発行後は変更しない。
"""

from datetime import datetime

from pydantic import BaseModel


class OrderLine(BaseModel):
    product_id: int
    quantity: int
    unit_price: float


class OrderPlaced(BaseModel):
    """チェックアウトで注文が作成された"""
    order_id: int
    customer_name: str
    total: float
    items: list[OrderLine]
    redirect_url: str | None
    timestamp: datetime


class OrderStatusChanged(BaseModel):
    """注文ステータスが更新された"""
    order_id: int
    status: str
    timestamp: datetime

"""
Storefront — リクエストモデル

必須項目の欠落は FastAPI のバリデーションで 400 になる。
チェックアウトの入力 (顧客名・明細) はエンジン側でも検証する。
"""

from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, StrictInt


class ProductCreate(BaseModel):
    brand: str
    model: str
    price: Decimal = Field(ge=0)
    stock: int = Field(ge=0)
    description: str | None = None
    image_url: str | None = None


class ProductUpdate(BaseModel):
    brand: str | None = None
    model: str | None = None
    price: Decimal | None = Field(default=None, ge=0)
    stock: int | None = Field(default=None, ge=0)
    description: str | None = None
    image_url: str | None = None


class CustomerInfo(BaseModel):
    name: str | None = None
    email: str | None = None
    address: str | None = None
    phone: str | None = None


class RequestedItem(BaseModel):
    id: int
    quantity: StrictInt


class CreateOrderRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    customer_info: CustomerInfo | None = Field(default=None, alias="customerInfo")
    items: list[RequestedItem] = Field(default_factory=list)


class UpdateOrderStatusRequest(BaseModel):
    status: str

"""
Storefront — 設定

環境変数から読み込み、create_app() に明示的に渡す。
"""

import os
from decimal import Decimal

from pydantic import BaseModel


class Settings(BaseModel):
    database_url: str = "sqlite+aiosqlite:///./storefront.db"
    redis_url: str | None = None
    mp_access_token: str | None = None
    mp_api_url: str = "https://api.mercadopago.com"
    public_base_url: str = "http://localhost:3000"
    port: int = 3000
    currency_id: str = "UYU"
    statement_descriptor: str = "DULCE MIMOS"
    surcharge_rate: Decimal = Decimal("0.10")
    gateway_timeout: float = 10.0

    @classmethod
    def from_env(cls) -> "Settings":
        env = {
            "database_url": os.environ.get("DATABASE_URL"),
            "redis_url": os.environ.get("REDIS_URL"),
            "mp_access_token": os.environ.get("MP_ACCESS_TOKEN"),
            "mp_api_url": os.environ.get("MP_API_URL"),
            "public_base_url": os.environ.get("PUBLIC_BASE_URL"),
            "port": os.environ.get("PORT"),
            "currency_id": os.environ.get("CURRENCY_ID"),
            "statement_descriptor": os.environ.get("STATEMENT_DESCRIPTOR"),
            "gateway_timeout": os.environ.get("GATEWAY_TIMEOUT"),
        }
        return cls(**{k: v for k, v in env.items() if v is not None})

    def back_url(self, outcome: str) -> str:
        return f"{self.public_base_url.rstrip('/')}/{outcome}"

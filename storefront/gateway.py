"""
Storefront — 決済ゲートウェイアダプタ (Mercado Pago Checkout Preferences)

外部の「プリファレンス作成」API を 1 回だけ呼び、リダイレクト URL を得る。
失敗は例外で返さず Result[Preference, GatewayError] として返す。
呼び出し側 (チェックアウト) は Ok / Error をパターンマッチして分岐する。

httpx.AsyncClient は外から注入する。プロセス全体で共有するグローバルは持たない。
"""

import logging
from decimal import Decimal

import httpx
from kungfu import Error, Ok, Result
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from .errors import GatewayError

logger = logging.getLogger(__name__)


class PreferenceItem(BaseModel):
    title: str
    quantity: int
    currency_id: str
    unit_price: Decimal


class Payer(BaseModel):
    name: str
    email: str | None = None
    phone: str | None = None


class BackUrls(BaseModel):
    success: str
    failure: str
    pending: str


class PreferenceRequest(BaseModel):
    items: list[PreferenceItem]
    payer: Payer
    back_urls: BackUrls
    external_reference: str
    statement_descriptor: str

    def to_payload(self) -> dict:
        """API 送信用の JSON。金額は数値で送る。"""
        payer: dict = {"name": self.payer.name}
        if self.payer.email:
            payer["email"] = self.payer.email
        if self.payer.phone:
            payer["phone"] = {"number": self.payer.phone}
        return {
            "items": [
                {
                    "title": item.title,
                    "quantity": item.quantity,
                    "currency_id": item.currency_id,
                    "unit_price": float(item.unit_price),
                }
                for item in self.items
            ],
            "payer": payer,
            "back_urls": self.back_urls.model_dump(),
            "external_reference": self.external_reference,
            "statement_descriptor": self.statement_descriptor,
        }


class Preference(BaseModel):
    id: str
    init_point: str


class MercadoPagoGateway:
    """Mercado Pago のプリファレンス作成クライアント"""

    def __init__(
        self,
        client: httpx.AsyncClient,
        access_token: str | None,
        api_url: str = "https://api.mercadopago.com",
    ):
        self.client = client
        self.access_token = access_token
        self.api_url = api_url.rstrip("/")

    async def create_preference(
        self, request: PreferenceRequest
    ) -> Result[Preference, GatewayError]:
        if not self.access_token:
            return Error(GatewayError("Payment gateway access token is not configured."))

        try:
            resp = await self.client.post(
                f"{self.api_url}/checkout/preferences",
                json=request.to_payload(),
                headers={"Authorization": f"Bearer {self.access_token}"},
            )
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            return Error(
                GatewayError(
                    f"Payment gateway returned {e.response.status_code}: {e.response.text}"
                )
            )
        except httpx.HTTPError as e:
            return Error(GatewayError(f"Payment gateway request failed: {e!r}"))

        try:
            body = resp.json()
        except ValueError:
            return Error(GatewayError("Payment gateway returned a non-JSON body."))

        if not isinstance(body, dict) or not body.get("init_point"):
            return Error(GatewayError("Payment gateway response has no init_point."))

        try:
            preference = Preference(id=str(body.get("id", "")), init_point=body["init_point"])
        except PydanticValidationError:
            return Error(GatewayError("Payment gateway returned an invalid preference."))

        logger.info(
            "Created payment preference %s for order %s",
            preference.id,
            request.external_reference,
        )
        return Ok(preference)

"""
Storefront — エラー定義

HTTP 層は StorefrontError を捕まえて status_code と {"message": ...} に変換する。
"""


class StorefrontError(Exception):
    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(StorefrontError):
    """入力が不足・不正"""
    status_code = 400


class NotFoundError(StorefrontError):
    """指定 ID が存在しない"""
    status_code = 404

    def __init__(self, entity: str, entity_id: int) -> None:
        super().__init__(f"{entity} {entity_id} not found.")
        self.entity = entity
        self.entity_id = entity_id


class InsufficientStockError(StorefrontError):
    """在庫不足（チェックアウト中の業務ルール違反）"""
    status_code = 400

    def __init__(self, product_id: int, label: str, requested: int, available: int) -> None:
        super().__init__(
            f"Insufficient stock for {label}: requested={requested}, available={available}."
        )
        self.product_id = product_id
        self.requested = requested
        self.available = available


class GatewayError(StorefrontError):
    """決済ゲートウェイ呼び出しの失敗（チェックアウトでは表に出さない）"""
    status_code = 502


class InternalError(StorefrontError):
    status_code = 500

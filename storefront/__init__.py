"""
Storefront — 商品カタログとチェックアウトのサービス

商品 CRUD と、在庫引き当て・注文作成・決済リンク発行を
1 トランザクション + 事後の外部呼び出しで行うチェックアウトを提供する。
"""

"""
マーケットプレイスのデータアクセス層で使用する例外クラス。
"""

from typing import Optional


class MarketplaceError(Exception):
    """このアプリケーションのすべての例外の基底クラス。"""


class ValidationError(MarketplaceError, ValueError):
    """エンティティの属性に不正な値が設定された場合に送出されます。"""


class NotFoundError(MarketplaceError):
    """更新・削除の対象行が存在しない場合に送出されます。"""


class ConflictError(MarketplaceError):
    """メールアドレスの重複など、既存データと衝突する場合に送出されます。"""


class InsufficientStockError(MarketplaceError):
    """在庫が不足している商品を注文しようとした場合に送出されます。"""

    def __init__(self, product_id: int, product_name: Optional[str], requested: int,
                 available: Optional[int] = None):
        self.product_id = product_id
        self.product_name = product_name
        self.requested = requested
        self.available = available
        label = product_name or f"ID={product_id}"
        message = f"在庫不足: 商品 '{label}' の注文数 {requested}"
        if available is not None:
            message += f" (在庫 {available})"
        super().__init__(message)


class ConnectivityError(MarketplaceError):
    """データベースに接続できない、または接続が切断された場合に送出されます。"""


class DatabaseOfflineError(ConnectivityError):
    """データベースがオフラインモードに移行している場合に送出されます。"""


class ConfigurationError(MarketplaceError):
    """設定ファイルや接続文字列が不正な場合に送出されます。"""

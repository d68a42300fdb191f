import sys
from typing import Optional

from config import load_settings
from database import DatabaseManager
from errors import ConfigurationError, MarketplaceError
from logging_service import setup_logging, shutdown_logging
from models import Order
from repository import DataRepository

DEMO_CUSTOMER_EMAIL = 'john@example.com'
DEMO_CUSTOMER_PASSWORD = 'password123'


def print_catalog(repository: DataRepository):
    print("--- 商品一覧 ---")
    for product in repository.get_all_products():
        print(f"  [{product.id}] {product}")
    print("----------------")


def place_demo_order(repository: DataRepository, customer_id: int) -> Optional[Order]:
    """在庫のある最初の商品を 1 つ注文します。"""
    product = next((p for p in repository.get_all_products() if p.is_available()), None)
    if product is None:
        print("在庫のある商品がありません。注文はスキップします。")
        return None
    order = Order(customer_id=customer_id)
    order.add_item(product, 1)
    repository.add_order(order)
    print(f"注文しました: {order}")
    return order


def main(config_path: Optional[str] = None) -> int:
    try:
        settings = load_settings(config_path)
    except ConfigurationError as e:
        print(f"設定の読み込みに失敗しました: {e}", file=sys.stderr)
        return 2

    setup_logging(settings.log_level, settings.log_file)
    try:
        with DatabaseManager(settings) as database:
            if not database.is_online:
                print("データベースに接続できません。オフラインモードです。", file=sys.stderr)
                return 1

            repository = DataRepository(database)
            print_catalog(repository)

            customer = repository.authenticate_customer(DEMO_CUSTOMER_EMAIL, DEMO_CUSTOMER_PASSWORD)
            if customer is None:
                print(f"顧客 {DEMO_CUSTOMER_EMAIL} でログインできませんでした。")
                return 1
            print(f"ログイン: {customer}")

            try:
                place_demo_order(repository, customer.id)
            except MarketplaceError as e:
                print(f"注文に失敗しました: {e}")

            print("--- 注文履歴 ---")
            for order in repository.get_orders_by_customer_id(customer.id):
                print(f"  {order}")
                for item in order.items:
                    print(f"    - {item.product_name} x {item.quantity} @ ${item.unit_price}")
            return 0
    finally:
        shutdown_logging()


if __name__ == "__main__":
    sys.exit(main(sys.argv[1] if len(sys.argv) > 1 else None))

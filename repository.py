"""
商品・顧客・管理者・注文のデータアクセス。

DataRepository の各操作は、それぞれ独自のセッションを開いて閉じます。
取得したエンティティはセッションから切り離された新しいオブジェクトで、
操作をまたいでキャッシュされることはありません。
"""

from contextlib import contextmanager
from datetime import datetime
from typing import List, Optional

from sqlalchemy import delete, func, insert, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm.attributes import set_committed_value

from database import CONNECTIVITY_ERRORS, DatabaseManager
from errors import (
    ConflictError,
    ConnectivityError,
    DatabaseOfflineError,
    InsufficientStockError,
    MarketplaceError,
    NotFoundError,
    ValidationError,
)
from logging_service import get_logger
from models import Admin, Customer, Order, OrderItem, OrderStatus, Product

log = get_logger(__name__)

products = Product.__table__
customers = Customer.__table__
admins = Admin.__table__
orders = Order.__table__
order_items = OrderItem.__table__


class DataRepository:
    """ドメインエンティティと永続化層の間の唯一の窓口。"""

    def __init__(self, database: DatabaseManager):
        self._db = database

    @property
    def is_online(self) -> bool:
        return self._db.is_online

    @contextmanager
    def _operation(self, description: str):
        """
        操作中の例外をログに記録します。
        データベースの例外はすべてデータベースをオフラインに切り替えます。
        接続障害は ConnectivityError として、それ以外は元の例外のまま送出します。
        """
        if not self._db.is_online:
            raise DatabaseOfflineError(f"{description}: データベースはオフラインです。")
        try:
            yield
        except MarketplaceError as e:
            log.warning(f"{description}: {e}")
            raise
        except CONNECTIVITY_ERRORS as e:
            log.error(f"{description} 中にデータベース接続エラーが発生しました: {e}")
            self._db.mark_offline(e)
            raise ConnectivityError(f"{description}: {e}") from e
        except SQLAlchemyError as e:
            log.error(f"{description} 中にデータベースエラーが発生しました: {e}")
            self._db.mark_offline(e)
            raise
        except Exception as e:
            log.error(f"{description} 中にエラーが発生しました: {e}")
            raise

    # ---------------------------------------------------
    # 商品
    # ---------------------------------------------------

    def get_all_products(self) -> List[Product]:
        """すべての商品を取得します。"""
        with self._operation("商品一覧の取得"):
            log.debug("データベースから全商品を取得します。")
            with self._db.session() as session:
                return list(session.scalars(select(Product).order_by(Product.id)))

    def get_product_by_id(self, product_id: int) -> Optional[Product]:
        """ID を指定して商品を取得します。見つからない場合は None。"""
        with self._operation(f"商品 ID={product_id} の取得"):
            with self._db.session() as session:
                product = session.get(Product, product_id)
        if product is None:
            log.warning(f"取得: 商品 ID={product_id} が見つかりません。")
        return product

    def add_product(self, product: Product) -> Product:
        """新しい商品を登録し、採番された ID を product に設定します。"""
        if product is None:
            raise ValueError("product が指定されていません。")
        with self._operation("商品の追加"):
            with self._db.SessionLocal.begin() as session:
                result = session.execute(
                    insert(products).values(
                        name=product.name,
                        description=product.description or '',
                        price=product.price,
                        stock=product.stock,
                        category=product.category or '',
                        image_url=product.image_url or '',
                    )
                )
                product.id = result.inserted_primary_key[0]
        log.info(f"作成: 商品 ID={product.id}, 名前={product.name}, 価格={product.price}")
        return product

    def update_product(self, product: Product) -> None:
        """商品情報を更新します。"""
        if product is None:
            raise ValueError("product が指定されていません。")
        with self._operation("商品の更新"):
            with self._db.SessionLocal.begin() as session:
                result = session.execute(
                    update(products)
                    .where(products.c.id == product.id)
                    .values(
                        name=product.name,
                        description=product.description or '',
                        price=product.price,
                        stock=product.stock,
                        category=product.category or '',
                        image_url=product.image_url or '',
                    )
                )
                if result.rowcount == 0:
                    raise NotFoundError(f"商品 ID={product.id} が見つかりません。")
        log.info(f"更新: 商品 ID={product.id}, 名前={product.name}")

    def delete_product(self, product_id: int) -> None:
        """
        商品を削除します。

        Raises:
            NotFoundError: 商品が存在しない場合。
            ConflictError: 既存の注文明細から参照されている場合。
        """
        with self._operation(f"商品 ID={product_id} の削除"):
            try:
                with self._db.SessionLocal.begin() as session:
                    result = session.execute(delete(products).where(products.c.id == product_id))
                    if result.rowcount == 0:
                        raise NotFoundError(f"商品 ID={product_id} が見つかりません。")
            except IntegrityError as e:
                raise ConflictError(f"商品 ID={product_id} は既存の注文から参照されているため削除できません。") from e
        log.info(f"削除: 商品 ID={product_id}")

    # ---------------------------------------------------
    # 顧客
    # ---------------------------------------------------

    def get_all_customers(self) -> List[Customer]:
        with self._operation("顧客一覧の取得"):
            with self._db.session() as session:
                return list(session.scalars(select(Customer).order_by(Customer.id)))

    def get_customer_by_id(self, customer_id: int) -> Optional[Customer]:
        with self._operation(f"顧客 ID={customer_id} の取得"):
            with self._db.session() as session:
                return session.get(Customer, customer_id)

    def add_customer(self, customer: Customer) -> Customer:
        """
        顧客を登録します。

        Raises:
            ConflictError: 同じメールアドレスの顧客が既に存在する場合。
        """
        if customer is None:
            raise ValueError("customer が指定されていません。")
        with self._operation("顧客の登録"):
            try:
                with self._db.SessionLocal.begin() as session:
                    count = session.execute(
                        select(func.count()).select_from(customers).where(customers.c.email == customer.email)
                    ).scalar_one()
                    if count > 0:
                        raise ConflictError(f"メールアドレス {customer.email} は既に登録されています。")
                    result = session.execute(
                        insert(customers).values(
                            name=customer.name,
                            email=customer.email,
                            password=customer.password,
                            address=customer.address or '',
                            phone_number=customer.phone_number or '',
                            created_at=customer.created_at or datetime.now(),
                            is_active=customer.is_active if customer.is_active is not None else True,
                        )
                    )
                    customer.id = result.inserted_primary_key[0]
            except IntegrityError as e:
                raise ConflictError(f"メールアドレス {customer.email} は既に登録されています。") from e
        log.info(f"作成: 顧客 ID={customer.id}, 名前={customer.name}, メール={customer.email}")
        return customer

    def update_customer(self, customer: Customer) -> None:
        if customer is None:
            raise ValueError("customer が指定されていません。")
        with self._operation("顧客の更新"):
            with self._db.SessionLocal.begin() as session:
                clash = session.execute(
                    select(customers.c.id).where(customers.c.email == customer.email, customers.c.id != customer.id)
                ).first()
                if clash is not None:
                    raise ConflictError(f"メールアドレス {customer.email} は他の顧客が使用しています。")
                result = session.execute(
                    update(customers)
                    .where(customers.c.id == customer.id)
                    .values(
                        name=customer.name,
                        email=customer.email,
                        password=customer.password,
                        address=customer.address or '',
                        phone_number=customer.phone_number or '',
                        is_active=customer.is_active if customer.is_active is not None else True,
                    )
                )
                if result.rowcount == 0:
                    raise NotFoundError(f"顧客 ID={customer.id} が見つかりません。")
        log.info(f"更新: 顧客 ID={customer.id}, メール={customer.email}")

    def delete_customer(self, customer_id: int) -> None:
        """顧客と、その顧客の注文および注文明細を一つのトランザクションで削除します。"""
        with self._operation(f"顧客 ID={customer_id} の削除"):
            with self._db.SessionLocal.begin() as session:
                customer_orders = select(orders.c.id).where(orders.c.customer_id == customer_id)
                session.execute(delete(order_items).where(order_items.c.order_id.in_(customer_orders)))
                session.execute(delete(orders).where(orders.c.customer_id == customer_id))
                result = session.execute(delete(customers).where(customers.c.id == customer_id))
                if result.rowcount == 0:
                    raise NotFoundError(f"顧客 ID={customer_id} が見つかりません。")
        log.info(f"削除: 顧客 ID={customer_id} (注文を含む)")

    # ---------------------------------------------------
    # 注文
    # ---------------------------------------------------

    def get_all_orders(self) -> List[Order]:
        """すべての注文を新しい順に取得します。"""
        with self._operation("注文一覧の取得"):
            return self._load_orders(select(Order))

    def get_orders_by_customer_id(self, customer_id: int) -> List[Order]:
        """顧客の注文を新しい順に取得します。"""
        with self._operation(f"顧客 ID={customer_id} の注文の取得"):
            return self._load_orders(select(Order).where(Order.customer_id == customer_id))

    def get_order_by_id(self, order_id: int) -> Optional[Order]:
        with self._operation(f"注文 ID={order_id} の取得"):
            found = self._load_orders(select(Order).where(Order.id == order_id))
        return found[0] if found else None

    def add_order(self, order: Order) -> Order:
        """
        注文を登録します。

        注文の登録、在庫の引き当て、明細の登録を一つのトランザクションで行います。
        在庫の引き当ては ``Stock >= 数量`` を条件とした UPDATE で行い、
        更新件数が 0 の場合は注文全体をロールバックします。
        成功した場合は採番された注文 ID を order に設定します。

        Raises:
            InsufficientStockError: いずれかの商品の在庫が不足している場合。
            NotFoundError: 存在しない商品が含まれている場合。
        """
        if order is None:
            raise ValueError("order が指定されていません。")
        if not order.items:
            raise ValidationError("注文に商品が含まれていません。")

        with self._operation("注文の登録"):
            with self._db.SessionLocal.begin() as session:
                result = session.execute(
                    insert(orders).values(
                        customer_id=order.customer_id,
                        order_date=order.order_date or datetime.now(),
                        status=order.status or OrderStatus.PENDING,
                    )
                )
                order_id = result.inserted_primary_key[0]

                for item in order.items:
                    reserved = session.execute(
                        update(products)
                        .where(products.c.id == item.product_id, products.c.stock >= item.quantity)
                        .values(stock=products.c.stock - item.quantity)
                    )
                    if reserved.rowcount == 0:
                        available = session.execute(
                            select(products.c.stock).where(products.c.id == item.product_id)
                        ).scalar_one_or_none()
                        if available is None:
                            raise NotFoundError(f"商品 ID={item.product_id} が見つかりません。")
                        raise InsufficientStockError(item.product_id, item.product_name, item.quantity, available)

                    session.execute(
                        insert(order_items).values(
                            order_id=order_id,
                            product_id=item.product_id,
                            product_name=item.product_name,
                            unit_price=item.unit_price,
                            quantity=item.quantity,
                        )
                    )

        order.id = order_id
        for item in order.items:
            item.order_id = order_id
        log.info(f"作成: 注文 ID={order_id}, 顧客 ID={order.customer_id}, 合計={order.get_total()}")
        return order

    def update_order_status(self, order_id: int, status: OrderStatus) -> None:
        if not isinstance(status, OrderStatus):
            raise ValidationError(f"注文ステータスが不正です: {status!r}")
        with self._operation(f"注文 ID={order_id} のステータス更新"):
            with self._db.SessionLocal.begin() as session:
                result = session.execute(update(orders).where(orders.c.id == order_id).values(status=status))
                if result.rowcount == 0:
                    raise NotFoundError(f"注文 ID={order_id} が見つかりません。")
        log.info(f"更新: 注文 ID={order_id}, ステータス={status.value}")

    def delete_order(self, order_id: int) -> None:
        """注文と注文明細を一つのトランザクションで削除します。"""
        with self._operation(f"注文 ID={order_id} の削除"):
            with self._db.SessionLocal.begin() as session:
                session.execute(delete(order_items).where(order_items.c.order_id == order_id))
                result = session.execute(delete(orders).where(orders.c.id == order_id))
                if result.rowcount == 0:
                    raise NotFoundError(f"注文 ID={order_id} が見つかりません。")
        log.info(f"削除: 注文 ID={order_id}")

    def _load_orders(self, statement) -> List[Order]:
        with self._db.session() as session:
            loaded = list(session.scalars(
                statement.order_by(Order.order_date.desc(), Order.id.desc())
            ))
        for order in loaded:
            items = self._get_order_items(order.id)
            for item in items:
                set_committed_value(item, 'order', order)
            set_committed_value(order, 'items', items)
        return loaded

    def _get_order_items(self, order_id: int) -> List[OrderItem]:
        """注文明細を取得します。失敗した場合は空のリストを返します。"""
        try:
            with self._db.session() as session:
                return list(session.scalars(
                    select(OrderItem)
                    .where(OrderItem.order_id == order_id)
                    .order_by(OrderItem.id)
                ))
        except SQLAlchemyError as e:
            log.warning(f"注文 ID={order_id} の明細の取得に失敗しました: {e}")
            self._db.mark_offline(e)
            return []

    # ---------------------------------------------------
    # 認証
    # ---------------------------------------------------

    def authenticate_customer(self, email: str, password: str) -> Optional[Customer]:
        """メールアドレスとパスワードが一致する顧客を返します。一致しない場合は None。"""
        with self._operation("顧客の認証"):
            with self._db.session() as session:
                customer = session.scalars(
                    select(Customer).where(Customer.email == email, Customer.password == password)
                ).first()
        if customer is None:
            log.warning(f"顧客の認証に失敗しました: {email}")
        else:
            log.info(f"顧客を認証しました: {email}")
        return customer

    def authenticate_admin(self, email: str, password: str) -> Optional[Admin]:
        """メールアドレスとパスワードが一致する管理者を返します。一致しない場合は None。"""
        with self._operation("管理者の認証"):
            with self._db.session() as session:
                admin = session.scalars(
                    select(Admin).where(Admin.email == email, Admin.password == password)
                ).first()
        if admin is None:
            log.warning(f"管理者の認証に失敗しました: {email}")
        else:
            log.info(f"管理者を認証しました: {email}")
        return admin

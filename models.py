import enum
import re
from datetime import datetime
from decimal import Decimal, InvalidOperation

from sqlalchemy import Boolean, Column, DateTime, Enum, ForeignKey, Integer, Numeric, String, Text
from sqlalchemy.orm import declarative_base, relationship, validates
from sqlalchemy.sql import func

from errors import InsufficientStockError, ValidationError

Base = declarative_base()

EMAIL_PATTERN = re.compile(r"^[a-zA-Z0-9_.+-]+@[a-zA-Z0-9-]+(\.[a-zA-Z0-9-]+)+$")
MIN_PASSWORD_LENGTH = 6


def _to_decimal(value, field: str) -> Decimal:
    """価格などの数値を Decimal に変換します。変換できない場合は ValidationError。"""
    if isinstance(value, bool):
        raise ValidationError(f"{field} は数値で指定してください。")
    try:
        result = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise ValidationError(f"{field} は数値で指定してください: {value!r}")
    if not result.is_finite():
        raise ValidationError(f"{field} に有限でない値は指定できません: {value!r}")
    return result


def _require_positive_quantity(quantity) -> int:
    if isinstance(quantity, bool) or not isinstance(quantity, int):
        raise ValidationError("数量は整数で指定してください。")
    if quantity <= 0:
        raise ValidationError("数量は 1 以上で指定してください。")
    return quantity


class Product(Base):
    """
    販売する商品の情報。
    価格と在庫数が負になることはなく、在庫は add_stock / reduce_stock で増減します。
    """
    __tablename__ = 'products'

    id = Column(Integer, primary_key=True, autoincrement=True, comment='商品ID')
    name = Column(String(length=255), nullable=False, comment='商品名')
    description = Column(Text, comment='商品説明')
    price = Column(Numeric(10, 2), nullable=False, comment='商品価格')
    stock = Column(Integer, nullable=False, default=0, comment='在庫数')
    category = Column(String(length=100), index=True, comment='商品のカテゴリ。例: Electronics, Accessories')
    image_url = Column(String(length=255), comment='商品画像のURL')
    created_at = Column(DateTime, server_default=func.now(), comment='作成日時')

    def __init__(self, **kwargs):
        kwargs.setdefault('stock', 0)
        super().__init__(**kwargs)

    @validates('name')
    def _validate_name(self, key, value):
        if value is None or not str(value).strip():
            raise ValidationError("商品名を空にすることはできません。")
        return value

    @validates('price')
    def _validate_price(self, key, value):
        price = _to_decimal(value, "価格")
        if price < 0:
            raise ValidationError("価格に負の値は指定できません。")
        return price

    @validates('stock')
    def _validate_stock(self, key, value):
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValidationError("在庫数は整数で指定してください。")
        if value < 0:
            raise ValidationError("在庫数に負の値は指定できません。")
        return value

    def reduce_stock(self, quantity: int) -> None:
        """購入時に在庫を減らします。"""
        _require_positive_quantity(quantity)
        if quantity > self.stock:
            raise InsufficientStockError(self.id, self.name, quantity, self.stock)
        self.stock -= quantity

    def add_stock(self, quantity: int) -> None:
        """入荷時に在庫を増やします。"""
        _require_positive_quantity(quantity)
        self.stock += quantity

    def is_available(self) -> bool:
        return (self.stock or 0) > 0

    def __str__(self):
        return f"Product: {self.name} | Price: ${self.price} | Stock: {self.stock}"


class UserMixin:
    """
    顧客と管理者に共通するユーザー情報。
    パスワードは平文のまま保存・比較されます (既存データとの互換性のため)。
    """
    role = ''

    id = Column(Integer, primary_key=True, autoincrement=True, comment='ユーザーID')
    name = Column(String(length=255), nullable=False, comment='ユーザー名')
    email = Column(String(length=255), nullable=False, unique=True, comment='メールアドレス')
    password = Column(String(length=255), nullable=False, comment='パスワード (平文)')
    created_at = Column(DateTime, server_default=func.now(), comment='作成日時')
    is_active = Column(Boolean, nullable=False, default=True, comment='有効フラグ')

    def __init__(self, **kwargs):
        kwargs.setdefault('created_at', datetime.now())
        kwargs.setdefault('is_active', True)
        super().__init__(**kwargs)

    @validates('email')
    def _validate_email(self, key, value):
        if not isinstance(value, str) or not EMAIL_PATTERN.match(value):
            raise ValidationError(f"メールアドレスの形式が不正です: {value!r}")
        return value

    @validates('password')
    def _validate_password(self, key, value):
        if not isinstance(value, str) or not value.strip() or len(value) < MIN_PASSWORD_LENGTH:
            raise ValidationError(f"パスワードは {MIN_PASSWORD_LENGTH} 文字以上で指定してください。")
        return value

    @property
    def user_role(self) -> str:
        return self.role

    def __str__(self):
        return f"{self.name} ({self.user_role}) - {self.email}"


class Customer(UserMixin, Base):
    """商品を購入する顧客。"""
    __tablename__ = 'customers'

    role = 'Customer'

    address = Column(String(length=500), comment='住所')
    phone_number = Column(String(length=20), comment='電話番号')


class Admin(UserMixin, Base):
    """バックオフィスを操作する管理者。"""
    __tablename__ = 'admins'

    role = 'Admin'

    department = Column(String(length=100), comment='所属部署')


class OrderStatus(enum.Enum):
    PENDING = 'Pending'
    CONFIRMED = 'Confirmed'
    SHIPPED = 'Shipped'
    DELIVERED = 'Delivered'
    CANCELLED = 'Cancelled'


class Order(Base):
    """
    顧客の注文。
    注文明細 (OrderItem) を所有し、注文の削除時には明細も削除されます。
    """
    __tablename__ = 'orders'

    id = Column(Integer, primary_key=True, autoincrement=True, comment='注文ID')
    customer_id = Column(Integer, ForeignKey('customers.id', ondelete='CASCADE'), nullable=False, index=True, comment='顧客ID')
    order_date = Column(DateTime, nullable=False, server_default=func.now(), comment='注文日時')
    status = Column(
        Enum(OrderStatus, native_enum=False, length=50, values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=OrderStatus.PENDING,
        comment='注文ステータス',
    )

    items = relationship(
        'OrderItem',
        back_populates='order',
        cascade='all, delete-orphan',
        passive_deletes=True,
        order_by='OrderItem.id',
    )

    def __init__(self, **kwargs):
        kwargs.setdefault('order_date', datetime.now())
        kwargs.setdefault('status', OrderStatus.PENDING)
        super().__init__(**kwargs)

    def add_item(self, product: Product, quantity: int) -> 'OrderItem':
        """
        注文に商品を追加します。
        同じ商品が既に含まれている場合は明細を増やさず数量を加算します。
        商品名と単価は追加時点の値が明細に記録されます。
        """
        if product is None:
            raise ValidationError("商品が指定されていません。")
        if product.id is None:
            raise ValidationError(f"未登録の商品は注文に追加できません: {product.name}")
        _require_positive_quantity(quantity)

        existing = next((item for item in self.items if item.product_id == product.id), None)
        if existing is not None:
            existing.quantity += quantity
            return existing

        item = OrderItem(
            product_id=product.id,
            product_name=product.name,
            unit_price=product.price,
            quantity=quantity,
        )
        self.items.append(item)
        return item

    def get_total(self) -> Decimal:
        return sum((item.get_line_total() for item in self.items), Decimal('0'))

    def get_item_count(self) -> int:
        return sum(item.quantity for item in self.items)

    def __str__(self):
        status = self.status.value if self.status else ''
        return f"Order #{self.id} | Customer: {self.customer_id} | Status: {status} | Total: ${self.get_total():.2f}"


class OrderItem(Base):
    """注文明細。商品名と単価は注文時点のスナップショットです。"""
    __tablename__ = 'order_items'

    id = Column(Integer, primary_key=True, autoincrement=True, comment='明細ID')
    order_id = Column(Integer, ForeignKey('orders.id', ondelete='CASCADE'), nullable=False, index=True, comment='注文ID')
    product_id = Column(Integer, ForeignKey('products.id'), nullable=False, index=True, comment='商品ID')
    product_name = Column(String(length=255), comment='注文時の商品名')
    unit_price = Column(Numeric(10, 2), comment='注文時の単価')
    quantity = Column(Integer, nullable=False, comment='数量')

    order = relationship('Order', back_populates='items')

    @validates('unit_price')
    def _validate_unit_price(self, key, value):
        price = _to_decimal(value, "単価")
        if price < 0:
            raise ValidationError("単価に負の値は指定できません。")
        return price

    @validates('quantity')
    def _validate_quantity(self, key, value):
        return _require_positive_quantity(value)

    def get_line_total(self) -> Decimal:
        return (self.unit_price or Decimal('0')) * self.quantity

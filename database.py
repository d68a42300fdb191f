"""
データベース接続とスキーマの管理。

DatabaseManager は起動時に以下を順に実行します。
    1. 接続の確認 (失敗時は回数を決めてリトライ)
    2. データベースの作成 (MySQL のみ。存在する場合は何もしない)
    3. テーブルの作成 (存在する場合は何もしない)
    4. 商品テーブルが空の場合のみ初期データを投入

接続できなかった場合は例外を送出せず、is_online を False にしてオフラインモードになります。
一度オフラインになったプロセスが自動的にオンラインへ戻ることはありません。
"""

import time
from typing import Any, Callable, Dict, List, Optional

import yaml
from sqlalchemy import create_engine, event, func, select, text
from sqlalchemy.engine import URL, Engine
from sqlalchemy.exc import InterfaceError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from config import Settings
from logging_service import get_logger
from models import Admin, Base, Customer, Product

log = get_logger(__name__)

# 接続障害とみなすドライバの例外
CONNECTIVITY_ERRORS = (OperationalError, InterfaceError)

SEED_DATA_YAML = """
products:
  - {name: Laptop Pro, description: High-performance laptop for professionals, price: '1299.99', stock: 15, category: Electronics, image_url: laptop.png}
  - {name: Wireless Mouse, description: Ergonomic wireless mouse with 3 buttons, price: '29.99', stock: 50, category: Accessories, image_url: mouse.png}
  - {name: USB-C Cable, description: 'Fast charging USB-C cable, 2 meters', price: '14.99', stock: 100, category: Cables, image_url: cable.png}
  - {name: Mechanical Keyboard, description: RGB mechanical keyboard with 104 keys, price: '129.99', stock: 25, category: Accessories, image_url: keyboard.png}
  - {name: 4K Monitor, description: 32-inch 4K UltraHD monitor, price: '499.99', stock: 10, category: Electronics, image_url: monitor.png}
customers:
  - {name: John Doe, email: john@example.com, password: password123, address: '123 Main St, Springfield', phone_number: 555-0100}
  - {name: Jane Smith, email: jane@example.com, password: password123, address: '456 Oak Ave, Shelbyville', phone_number: 555-0101}
admins:
  - {name: Admin User, email: admin@apache.com, password: adminpass123, department: Management}
"""

_SEED_TABLES = (
    ('products', Product),
    ('customers', Customer),
    ('admins', Admin),
)


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def build_engine(url: URL) -> Engine:
    """接続 URL からエンジンを作成します。SQLite の場合は外部キー制約を有効にします。"""
    if url.get_backend_name() == 'sqlite':
        engine = create_engine(url, connect_args={'timeout': 30, 'check_same_thread': False})
        event.listen(engine, 'connect', _enable_sqlite_foreign_keys)
        return engine
    return create_engine(url, pool_pre_ping=True)


class DatabaseManager:
    """
    データベースへの接続、スキーマの作成、初期データの投入、およびオンライン状態を管理します。

    Args:
        settings: 接続文字列とリトライ設定。
        sleep: リトライ間の待機に使う関数 (テストでは差し替え可能)。
        initialize: True の場合、生成時に initialize() を実行します。
    """

    def __init__(self, settings: Settings, sleep: Callable[[float], None] = time.sleep, initialize: bool = True):
        self.settings = settings
        self.database_url: URL = settings.database_url
        self.server_url: URL = settings.server_url
        self._sleep = sleep
        self._is_online = False
        self.engine: Engine = build_engine(self.database_url)
        self.SessionLocal = sessionmaker(
            autocommit=False, autoflush=False, expire_on_commit=False, bind=self.engine
        )
        if initialize:
            self.initialize()

    # ---------------------------------------------------
    # 状態
    # ---------------------------------------------------

    @property
    def is_online(self) -> bool:
        return self._is_online

    @property
    def supports_create_database(self) -> bool:
        return self.database_url.get_backend_name() == 'mysql' and bool(self.database_url.database)

    def mark_offline(self, reason: Optional[BaseException] = None):
        """オフラインモードに移行します。元に戻すことはできません。"""
        if self._is_online:
            log.warning(f"データベースをオフラインモードに切り替えます: {reason}")
        self._is_online = False

    def session(self) -> Session:
        return self.SessionLocal()

    def dispose(self):
        """接続プールを破棄します。"""
        self.engine.dispose()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.dispose()

    # ---------------------------------------------------
    # 初期化
    # ---------------------------------------------------

    def initialize(self) -> bool:
        """
        接続を確認し、データベース・テーブル・初期データを準備します。

        Returns:
            オンラインになった場合は True。
        """
        if not self.connect_with_retry():
            log.error("データベースに接続できませんでした。オフラインモードで起動します。")
            self._is_online = False
            return False

        self._is_online = True
        self.create_database_if_not_exists()
        self.create_tables_if_not_exist()
        if self.settings.seed:
            self.seed_initial_data()
        log.info("データベースの初期化が完了しました。")
        return self._is_online

    def connect_with_retry(self) -> bool:
        """
        接続を試み、失敗した場合は max_retries 回までリトライします。
        n 回目の失敗後は n * retry_delay 秒待機します。
        """
        probe_engine = build_engine(self.server_url) if self.supports_create_database else self.engine
        max_attempts = self.settings.max_retries
        try:
            for attempt in range(1, max_attempts + 1):
                try:
                    with probe_engine.connect() as connection:
                        connection.execute(text("SELECT 1"))
                    log.info(f"データベースに接続しました (試行 {attempt}/{max_attempts})")
                    return True
                except SQLAlchemyError as e:
                    log.warning(f"データベース接続に失敗しました (試行 {attempt}/{max_attempts}): {e}")
                    if attempt < max_attempts:
                        self._sleep(self.settings.retry_delay * attempt)
            return False
        finally:
            if probe_engine is not self.engine:
                probe_engine.dispose()

    def create_database_if_not_exists(self):
        """MySQL の場合、データベース名を除いた接続で CREATE DATABASE IF NOT EXISTS を実行します。"""
        if not self.supports_create_database:
            return
        database_name = self.database_url.database
        server_engine = build_engine(self.server_url)
        quoted = server_engine.dialect.identifier_preparer.quote_identifier(database_name)
        try:
            with server_engine.begin() as connection:
                connection.execute(text(f"CREATE DATABASE IF NOT EXISTS {quoted}"))
            log.info(f"データベース '{database_name}' の準備ができました。")
        except SQLAlchemyError as e:
            log.warning(f"データベース '{database_name}' の作成に失敗しました: {e}")
            self._absorb(e)
        finally:
            server_engine.dispose()

    def create_tables_if_not_exist(self):
        """テーブルを一つずつ作成します。失敗したテーブルは警告を出して次に進みます。"""
        for table in Base.metadata.sorted_tables:
            try:
                table.create(bind=self.engine, checkfirst=True)
            except SQLAlchemyError as e:
                log.warning(f"テーブル '{table.name}' の作成に失敗しました: {e}")
                self._absorb(e)
        log.info("テーブルの作成/確認が完了しました。")

    def seed_initial_data(self):
        """商品テーブルが空の場合のみ初期データを投入します。"""
        try:
            with self.engine.connect() as connection:
                product_count = connection.execute(
                    select(func.count()).select_from(Product.__table__)
                ).scalar_one()
        except SQLAlchemyError as e:
            log.warning(f"商品数の確認に失敗したため、初期データの投入をスキップします: {e}")
            self._absorb(e)
            return

        if product_count:
            log.debug("既存の商品が存在します。初期データの投入はスキップします。")
            return

        seed: Dict[str, List[Dict[str, Any]]] = yaml.safe_load(SEED_DATA_YAML)
        inserted = 0
        for key, model in _SEED_TABLES:
            for row in seed.get(key, []):
                try:
                    with self.engine.begin() as connection:
                        connection.execute(model.__table__.insert().values(**row))
                    inserted += 1
                except SQLAlchemyError as e:
                    log.warning(f"初期データの投入に失敗しました ({model.__tablename__}): {e}")
                    self._absorb(e)
        log.info(f"初期データを {inserted} 件投入しました。")

    def _absorb(self, error: SQLAlchemyError):
        if isinstance(error, CONNECTIVITY_ERRORS):
            self.mark_offline(error)

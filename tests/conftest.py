import pytest

from config import Settings
from database import DatabaseManager
from models import Customer, Product
from repository import DataRepository


class SleepRecorder:
    """リトライ間の待機時間を記録するだけの sleep 関数。"""

    def __init__(self):
        self.calls = []

    def __call__(self, seconds):
        self.calls.append(seconds)


def sqlite_settings(path, **overrides) -> Settings:
    options = dict(
        connection_string=f"sqlite:///{path}",
        max_retries=3,
        retry_delay=0.5,
        emulator=False,
        seed=True,
        log_file=None,
    )
    options.update(overrides)
    return Settings(**options)


@pytest.fixture
def sleep_recorder():
    return SleepRecorder()


@pytest.fixture
def database(tmp_path, sleep_recorder):
    manager = DatabaseManager(sqlite_settings(tmp_path / "marketplace.db"), sleep=sleep_recorder)
    yield manager
    manager.dispose()


@pytest.fixture
def empty_database(tmp_path, sleep_recorder):
    manager = DatabaseManager(sqlite_settings(tmp_path / "empty.db", seed=False), sleep=sleep_recorder)
    yield manager
    manager.dispose()


@pytest.fixture
def repository(database):
    return DataRepository(database)


@pytest.fixture
def product(repository):
    return repository.add_product(Product(name="Test Widget", price="10.00", stock=5, category="Test"))


@pytest.fixture
def customer(repository):
    return repository.add_customer(Customer(name="Test Buyer", email="buyer@example.com", password="secret123"))

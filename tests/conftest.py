"""
Общие фикстуры тестов: временная SQLite база, настройки, фейковый клиент Bybit
"""

import os
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional

_TEST_DIR = tempfile.mkdtemp(prefix="trading_bot_tests_")

# Настройки читаются из окружения один раз (lru_cache), поэтому до импорта приложения
os.environ["DATABASE_URL"] = f"sqlite:///{Path(_TEST_DIR) / 'app.db'}"
os.environ["LOG_TO_FILE"] = "false"
os.environ["BYBIT_TPSL_DELAY"] = "0"
os.environ["BYBIT_PROXY_URL"] = ""

import pytest
from fastapi.testclient import TestClient

from app.config.settings import Settings
from core.bybit_client import BybitAPIError, CloseAllResult, OpenPositionResult
from core.cloudfront_guard import reset_shutdown_flag
from data.database import Database
from data.models import BotSettings


# ============================================================================
# FAKE BYBIT CLIENT
# ============================================================================

class FakeBybitClient:
    """
    Клиент с заранее заданными ответами. Вызовы записываются в calls.
    Исключение в поле *_error пробрасывается из соответствующего метода.
    """

    def __init__(self):
        self.calls: List[tuple] = []
        self.wallet: Dict[str, Any] = {'list': []}
        self.positions: List[Dict[str, Any]] = []
        self.close_all_result = CloseAllResult()
        self.open_result: Optional[OpenPositionResult] = None
        self.close_result: Dict[str, Any] = {'orderId': 'close-1', 'orderLinkId': 'link-1'}

        self.open_error: Optional[Exception] = None
        self.close_error: Optional[Exception] = None
        self.wallet_error: Optional[Exception] = None
        self.positions_error: Optional[Exception] = None
        self.cancel_error: Optional[Exception] = None
        self.tpsl_error: Optional[Exception] = None
        self.order_error: Optional[Exception] = None

        self.credentials: Optional[tuple] = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return False

    async def get_wallet_balance(self):
        self.calls.append(('get_wallet_balance',))
        if self.wallet_error:
            raise self.wallet_error
        return self.wallet

    async def get_positions(self, symbol=None):
        self.calls.append(('get_positions', symbol))
        if self.positions_error:
            raise self.positions_error
        return self.positions

    async def get_open_positions(self):
        self.calls.append(('get_open_positions',))
        if self.positions_error:
            raise self.positions_error
        return [p for p in self.positions if float(p.get('size') or 0) != 0]

    async def open_position(self, symbol, side, qty, leverage, stop_loss=None, take_profit=None):
        self.calls.append(('open_position', symbol, side, qty, leverage, stop_loss, take_profit))
        if self.open_error:
            raise self.open_error
        return self.open_result or OpenPositionResult(
            order_id='order-1', symbol=f"{symbol}USDT", side=side, qty=f"{qty:.4f}", leverage=leverage
        )

    async def close_position(self, symbol, side, qty):
        self.calls.append(('close_position', symbol, side, qty))
        if self.close_error:
            raise self.close_error
        return self.close_result

    async def close_all_positions(self):
        self.calls.append(('close_all_positions',))
        return self.close_all_result

    async def place_order(self, symbol, side, order_type, qty, price=None, stop_loss=None, take_profit=None,
                          reduce_only=False, time_in_force='GTC', order_link_id=None):
        self.calls.append(('place_order', symbol, side, order_type, qty, price, reduce_only, order_link_id))
        if self.order_error:
            raise self.order_error
        return {'orderId': f"limit-{len(self.calls)}", 'orderLinkId': order_link_id}

    async def cancel_order(self, symbol, order_id=None, order_link_id=None):
        self.calls.append(('cancel_order', symbol, order_link_id))
        if self.cancel_error:
            raise self.cancel_error
        return {'orderLinkId': order_link_id}

    async def set_trading_stop(self, symbol, stop_loss=None, take_profit=None):
        self.calls.append(('set_trading_stop', symbol, stop_loss, take_profit))
        if self.tpsl_error:
            raise self.tpsl_error
        return {}

    def called(self, name: str) -> List[tuple]:
        return [call for call in self.calls if call[0] == name]


def make_factory(client: FakeBybitClient):
    def factory(api_key, api_secret, environment='mainnet'):
        client.credentials = (api_key, api_secret, environment)
        return client
    return factory


def bybit_error(ret_code: int = 10001, ret_msg: str = "params error") -> BybitAPIError:
    return BybitAPIError(ret_code=ret_code, ret_msg=ret_msg)


# ============================================================================
# БАЗА ДАННЫХ ДЛЯ ASYNC ТЕСТОВ
# ============================================================================

@pytest.fixture
def test_settings(tmp_path) -> Settings:
    return Settings(
        DATABASE_URL=f"sqlite:///{tmp_path / 'unit.db'}",
        LOG_TO_FILE=False,
        BYBIT_TPSL_DELAY=0,
        BYBIT_PROXY_URL="",
        ALERT_RETENTION_DAYS=30,
    )


@pytest.fixture
async def db(test_settings):
    database = Database(test_settings)
    await database.init()
    reset_shutdown_flag()
    yield database
    await database.close()
    reset_shutdown_flag()


async def save_bot_settings(database: Database, **values) -> BotSettings:
    """Строка настроек с ключами и включенным ботом по умолчанию"""
    bot_settings = await database.ensure_bot_settings()
    defaults = {
        'bot_enabled': True,
        'api_key': 'test-key',
        'api_secret': 'test-secret',
        'environment': 'testnet',
    }
    defaults.update(values)
    return await database.update_bot_settings(defaults)


@pytest.fixture
def fake_client() -> FakeBybitClient:
    return FakeBybitClient()


# ============================================================================
# HTTP КЛИЕНТ
# ============================================================================

@pytest.fixture(scope="session")
def app_client():
    from app.main import app

    with TestClient(app) as client:
        yield client


@pytest.fixture
def api(app_client, fake_client):
    """
    TestClient с чистыми таблицами, строкой настроек по умолчанию
    и подмененной фабрикой клиентов Bybit
    """
    from app.api.dependencies import get_client_factory
    from app.main import app
    from data.database import get_database

    database = get_database()
    database.reset_tables()
    with database.get_sync_session() as session:
        session.add(BotSettings())
        session.commit()

    reset_shutdown_flag()
    app.dependency_overrides[get_client_factory] = lambda: make_factory(fake_client)
    yield app_client
    app.dependency_overrides.clear()
    reset_shutdown_flag()


@pytest.fixture
def sync_session(api):
    from data.database import get_database

    with get_database().get_sync_session() as session:
        yield session

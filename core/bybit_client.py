"""
Trading Bot Bybit API Client
HTTP клиент для работы с Bybit v5 REST API (USDT Perpetual)
"""

import asyncio
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

import aiohttp

from app.config.settings import Settings, get_settings
from core.rate_limiter import RateLimiter, get_bybit_rate_limiter
from utils.helpers import (
    NetworkError, Timer, format_fixed, generate_signature, get_current_timestamp,
    mask_secret, safe_float, truncate_string
)
from utils.logger import setup_logger


# ============================================================================
# CONSTANTS AND ENUMS
# ============================================================================

CATEGORY_LINEAR = 'linear'
SETTLE_COIN = 'USDT'
ACCOUNT_TYPE_UNIFIED = 'UNIFIED'

# "leverage not modified" - плечо уже установлено
RET_CODE_LEVERAGE_NOT_MODIFIED = 110043

HTML_MARKERS = ('<!DOCTYPE html', '<html')


class OrderSide(str, Enum):
    """Order sides"""
    BUY = "Buy"
    SELL = "Sell"


class OrderType(str, Enum):
    """Order types"""
    MARKET = "Market"
    LIMIT = "Limit"


class TimeInForce(str, Enum):
    """Time in force"""
    GTC = "GTC"  # Good Till Cancel
    IOC = "IOC"  # Immediate or Cancel
    FOK = "FOK"  # Fill or Kill


@dataclass
class BybitAPIError(Exception):
    """Bybit API error"""
    ret_code: int
    ret_msg: str
    ext_code: Optional[str] = None
    ext_info: Optional[str] = None

    def __str__(self):
        return f"Bybit API Error {self.ret_code}: {self.ret_msg}"


class CloudFrontBlockError(Exception):
    """Ответ заблокирован CloudFront (гео-блокировка сервера)"""

    def __init__(self, message: str = "CloudFront block detected", status: Optional[int] = None):
        super().__init__(message)
        self.status = status


@dataclass
class OpenPositionResult:
    """Результат открытия позиции"""
    order_id: str
    symbol: str
    side: str
    qty: str
    leverage: Optional[int]
    leverage_set: bool = True
    sl_tp_set: bool = True
    sl_tp_error: Optional[str] = None


@dataclass
class CloseAllResult:
    """Результат закрытия всех позиций"""
    total: int = 0
    closed: int = 0
    errors: List[str] = field(default_factory=list)
    details: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors


# ============================================================================
# SIGNING AND HELPERS
# ============================================================================

def build_query_string(params: Optional[Mapping[str, Any]]) -> str:
    """
    Отсортированная строка key=value&... без URL-кодирования.
    Эта же строка подписывается и отправляется.
    """
    if not params:
        return ""
    return "&".join(f"{key}={params[key]}" for key in sorted(params))


def sign_request(
    api_key: str,
    api_secret: str,
    timestamp: Union[int, str],
    recv_window: Union[int, str],
    payload: str
) -> str:
    """HMAC-SHA256 hex от timestamp + apiKey + recvWindow + payload"""
    return generate_signature(api_secret, f"{timestamp}{api_key}{recv_window}{payload}")


def build_auth_headers(
    api_key: str,
    api_secret: str,
    payload: str,
    recv_window: int = 5000,
    timestamp: Optional[int] = None
) -> Dict[str, str]:
    """Заголовки аутентификации Bybit v5"""
    timestamp = timestamp or get_current_timestamp()
    return {
        'X-BAPI-API-KEY': api_key,
        'X-BAPI-TIMESTAMP': str(timestamp),
        'X-BAPI-SIGN': sign_request(api_key, api_secret, timestamp, recv_window, payload),
        'X-BAPI-SIGN-TYPE': '2',
        'X-BAPI-RECV-WINDOW': str(recv_window),
        'Content-Type': 'application/json',
    }


def is_cloudfront_block(status: int, headers: Optional[Mapping[str, str]], text: str) -> bool:
    """
    Признаки блокировки CloudFront: HTML страница вместо JSON,
    HTTP 403 или заголовок server: CloudFront
    """
    if text and any(marker in text for marker in HTML_MARKERS):
        return True

    if status == 403:
        return True

    server = ""
    for key, value in (headers or {}).items():
        if key.lower() == 'server':
            server = value or ""
            break
    return 'CloudFront' in server


def convert_symbol_to_bybit(symbol: str) -> str:
    """btc.p -> BTCUSDT"""
    clean = "".join(symbol.split()).upper()
    if clean.endswith('.P'):
        clean = clean[:-2]
    if clean.endswith(SETTLE_COIN):
        return clean
    return f"{clean}{SETTLE_COIN}"


def convert_symbol_from_bybit(bybit_symbol: str) -> str:
    if bybit_symbol.endswith(SETTLE_COIN):
        return bybit_symbol[:-len(SETTLE_COIN)]
    return bybit_symbol


def to_bybit_side(side: str) -> str:
    """BUY/buy/Buy -> Buy"""
    return OrderSide.BUY.value if side.upper() == 'BUY' else OrderSide.SELL.value


def opposite_side(side: str) -> str:
    return OrderSide.SELL.value if to_bybit_side(side) == OrderSide.BUY.value else OrderSide.BUY.value


# ============================================================================
# BYBIT CLIENT
# ============================================================================

class BybitClient:
    """
    Клиент для работы с Bybit Linear (USDT Perpetual) API

    Поддерживает:
    - Подписанные GET/POST запросы v5
    - Баланс, позиции, ордера, SL/TP, закрытый PnL
    - Определение блокировки CloudFront
    - Общий rate limiter для всех запросов
    """

    def __init__(
        self,
        api_key: str,
        api_secret: str,
        environment: str = 'mainnet',
        settings: Optional[Settings] = None,
        base_url: Optional[str] = None,
        rate_limiter: Optional[RateLimiter] = None
    ):
        self.settings = settings or get_settings()
        self.logger = setup_logger(f"{__name__}.BybitClient")

        self.api_key = api_key
        self.api_secret = api_secret
        self.environment = environment or 'mainnet'
        self.base_url = (base_url or self.settings.get_bybit_base_url(self.environment)).rstrip('/')

        self.recv_window = self.settings.BYBIT_RECV_WINDOW
        self.timeout = self.settings.BYBIT_TIMEOUT
        self.tpsl_delay = self.settings.BYBIT_TPSL_DELAY

        self.rate_limiter = rate_limiter or get_bybit_rate_limiter()
        self._session: Optional[aiohttp.ClientSession] = None

        self.stats = {
            'total_requests': 0,
            'successful_requests': 0,
            'failed_requests': 0,
            'cloudfront_blocks': 0,
        }

        self.logger.debug(
            f"🔌 Bybit client initialized (env: {self.environment}, key: {mask_secret(api_key)})"
        )

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def _create_session(self):
        """Создание HTTP сессии"""
        if self._session is None:
            timeout = aiohttp.ClientTimeout(total=self.timeout)
            connector = aiohttp.TCPConnector(
                limit=20,
                ttl_dns_cache=300,
                use_dns_cache=True
            )
            self._session = aiohttp.ClientSession(
                timeout=timeout,
                connector=connector,
                headers={'User-Agent': 'TradingBot/1.0.0'}
            )

    async def close(self):
        """Закрытие сессии"""
        if self._session:
            await self._session.close()
            self._session = None
            self.logger.debug("🔌 Bybit client session closed")

    # ========================================================================
    # TRANSPORT
    # ========================================================================

    async def _send(
        self,
        method: str,
        url: str,
        headers: Dict[str, str],
        body: Optional[str] = None
    ) -> Tuple[int, Dict[str, str], str]:
        """Сырой HTTP запрос: (status, headers, text)"""
        await self._create_session()
        async with self._session.request(method, url, headers=headers, data=body) as response:
            text = await response.text()
            return response.status, dict(response.headers), text

    async def _request(
        self,
        method: str,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """
        Подписанный запрос к Bybit API

        GET подписывает отсортированную query строку,
        POST подписывает JSON тело ровно в том виде, в каком оно отправляется.

        Returns:
            Поле result ответа
        """
        method = method.upper()
        params = params or {}
        url = f"{self.base_url}{endpoint}"
        body = None

        if method == 'GET':
            payload = build_query_string(params)
            if payload:
                url = f"{url}?{payload}"
        elif method == 'POST':
            body = json.dumps(params)
            payload = body
        else:
            raise ValueError(f"Unsupported HTTP method: {method}")

        self.stats['total_requests'] += 1

        async def call():
            headers = build_auth_headers(self.api_key, self.api_secret, payload, self.recv_window)
            return await self._send(method, url, headers, body)

        try:
            with Timer(f"Bybit API {method} {endpoint}"):
                status, headers, text = await self.rate_limiter.execute(call)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            self.stats['failed_requests'] += 1
            self.logger.error(f"❌ API request failed: {method} {endpoint} - {e!r}")
            raise NetworkError(f"Network error: {e or 'timeout'}") from e

        try:
            result = self._handle_response(status, headers, text)
        except Exception as e:
            self.stats['failed_requests'] += 1
            self.logger.error(f"❌ API request failed: {method} {endpoint} - {e}")
            raise

        self.stats['successful_requests'] += 1
        if self.settings.LOG_RESPONSES:
            self.logger.debug(f"📤 API Response: {truncate_string(text, 500)}")
        return result

    def _handle_response(self, status: int, headers: Dict[str, str], text: str) -> Dict[str, Any]:
        """Разбор ответа и проверка ошибок"""
        if is_cloudfront_block(status, headers, text):
            self.stats['cloudfront_blocks'] += 1
            self.logger.error(
                f"🚨 CloudFront block detected (status: {status}): {truncate_string(text or '', 200)}"
            )
            raise CloudFrontBlockError(f"CloudFront block detected (HTTP {status})", status=status)

        try:
            data = json.loads(text)
        except (TypeError, ValueError):
            raise BybitAPIError(ret_code=-1, ret_msg=f"Invalid JSON response (HTTP {status})")

        if not isinstance(data, dict):
            raise BybitAPIError(ret_code=-1, ret_msg="Unexpected response format")

        if status >= 400:
            raise BybitAPIError(ret_code=status, ret_msg=data.get('retMsg') or f"HTTP Error {status}")

        ret_code = data.get('retCode', 0)
        if ret_code != 0:
            ext_info = data.get('retExtInfo') or {}
            raise BybitAPIError(
                ret_code=ret_code,
                ret_msg=data.get('retMsg', 'Unknown error'),
                ext_code=ext_info.get('code') if isinstance(ext_info, dict) else None,
                ext_info=ext_info.get('msg') if isinstance(ext_info, dict) else None
            )

        return data.get('result') or {}

    # ========================================================================
    # ACCOUNT ENDPOINTS
    # ========================================================================

    async def get_wallet_balance(self, account_type: str = ACCOUNT_TYPE_UNIFIED) -> Dict[str, Any]:
        """
        Получение баланса кошелька

        Args:
            account_type: Тип аккаунта ('UNIFIED', 'CONTRACT')
        """
        return await self._request('GET', '/v5/account/wallet-balance', {'accountType': account_type})

    async def get_positions(self, symbol: Optional[str] = None) -> List[Dict[str, Any]]:
        """Позиции (linear, USDT)"""
        params = {'category': CATEGORY_LINEAR, 'settleCoin': SETTLE_COIN}
        if symbol:
            params['symbol'] = symbol

        result = await self._request('GET', '/v5/position/list', params)
        return result.get('list') or []

    async def get_open_positions(self) -> List[Dict[str, Any]]:
        """Только позиции с ненулевым размером"""
        positions = await self.get_positions()
        return [p for p in positions if safe_float(p.get('size')) != 0]

    async def get_closed_pnl(
        self,
        start_time: Optional[int] = None,
        end_time: Optional[int] = None,
        limit: int = 100,
        cursor: Optional[str] = None,
        symbol: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Закрытый PnL (result.list + result.nextPageCursor)
        """
        params: Dict[str, Any] = {'category': CATEGORY_LINEAR, 'limit': limit}
        if start_time is not None:
            params['startTime'] = start_time
        if end_time is not None:
            params['endTime'] = end_time
        if cursor:
            params['cursor'] = cursor
        if symbol:
            params['symbol'] = symbol

        return await self._request('GET', '/v5/position/closed-pnl', params)

    # ========================================================================
    # ORDER MANAGEMENT ENDPOINTS
    # ========================================================================

    async def place_order(
        self,
        symbol: str,
        side: Union[str, OrderSide],
        order_type: Union[str, OrderType],
        qty: str,
        price: Optional[str] = None,
        stop_loss: Optional[str] = None,
        take_profit: Optional[str] = None,
        reduce_only: bool = False,
        time_in_force: Union[str, TimeInForce] = TimeInForce.GTC,
        order_link_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Размещение ордера (one-way mode, positionIdx 0)

        Returns:
            result с orderId / orderLinkId
        """
        params: Dict[str, Any] = {
            'category': CATEGORY_LINEAR,
            'symbol': symbol,
            'side': side.value if isinstance(side, OrderSide) else to_bybit_side(side),
            'orderType': order_type.value if isinstance(order_type, OrderType) else order_type,
            'qty': str(qty),
            'timeInForce': time_in_force.value if isinstance(time_in_force, TimeInForce) else time_in_force,
            'positionIdx': 0,
        }

        if price:
            params['price'] = str(price)
        if stop_loss:
            params['stopLoss'] = str(stop_loss)
        if take_profit:
            params['takeProfit'] = str(take_profit)
        if reduce_only:
            params['reduceOnly'] = True
        if order_link_id:
            params['orderLinkId'] = order_link_id

        result = await self._request('POST', '/v5/order/create', params)
        self.logger.info(
            f"📝 Order placed: {symbol} {params['side']} {params['orderType']} qty={params['qty']} "
            f"(orderId: {result.get('orderId', 'unknown')})"
        )
        return result

    async def set_leverage(self, symbol: str, leverage: int) -> bool:
        """
        Установка плеча. Ошибки не пробрасываются, только логируются.

        Returns:
            True если плечо установлено (или уже было таким)
        """
        params = {
            'category': CATEGORY_LINEAR,
            'symbol': symbol,
            'buyLeverage': str(leverage),
            'sellLeverage': str(leverage),
        }
        try:
            await self._request('POST', '/v5/position/set-leverage', params)
            return True
        except BybitAPIError as e:
            if e.ret_code == RET_CODE_LEVERAGE_NOT_MODIFIED:
                return True
            self.logger.warning(f"⚠️ Failed to set leverage {leverage}x for {symbol}: {e}")
            return False

    async def set_trading_stop(
        self,
        symbol: str,
        stop_loss: Optional[float] = None,
        take_profit: Optional[float] = None
    ) -> Dict[str, Any]:
        """Установка SL/TP на позицию (цены с 2 знаками)"""
        params: Dict[str, Any] = {
            'category': CATEGORY_LINEAR,
            'symbol': symbol,
            'positionIdx': 0,
            'tpslMode': 'Full',
        }
        if stop_loss:
            params['stopLoss'] = format_fixed(stop_loss, 2)
        if take_profit:
            params['takeProfit'] = format_fixed(take_profit, 2)

        result = await self._request('POST', '/v5/position/trading-stop', params)
        self.logger.info(f"🎯 Trading stop set for {symbol}: SL={params.get('stopLoss')} TP={params.get('takeProfit')}")
        return result

    async def cancel_order(
        self,
        symbol: str,
        order_id: Optional[str] = None,
        order_link_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """Отмена ордера по orderId или orderLinkId"""
        params: Dict[str, Any] = {'category': CATEGORY_LINEAR, 'symbol': symbol}
        if order_id:
            params['orderId'] = order_id
        if order_link_id:
            params['orderLinkId'] = order_link_id

        return await self._request('POST', '/v5/order/cancel', params)

    async def close_position(self, symbol: str, side: str, qty: Union[str, float]) -> Dict[str, Any]:
        """
        Закрытие позиции рыночным reduce-only ордером противоположной стороны

        Args:
            side: Сторона ПОЗИЦИИ (Buy/Sell)
        """
        return await self.place_order(
            symbol=symbol,
            side=opposite_side(side),
            order_type=OrderType.MARKET,
            qty=str(qty),
            reduce_only=True,
        )

    async def close_position_by_symbol(self, symbol: str, side: str) -> Dict[str, Any]:
        """Закрытие позиции с поиском ее размера на бирже"""
        bybit_symbol = convert_symbol_to_bybit(symbol)
        bybit_side = to_bybit_side(side)

        positions = await self.get_positions(bybit_symbol)
        position = next(
            (
                p for p in positions
                if p.get('symbol') == bybit_symbol
                and p.get('side') == bybit_side
                and safe_float(p.get('size')) != 0
            ),
            None
        )
        if position is None:
            raise BybitAPIError(ret_code=-1, ret_msg=f"No position found for {symbol} {side}")

        qty = abs(safe_float(position.get('size')))
        return await self.close_position(bybit_symbol, bybit_side, qty)

    async def close_all_positions(self) -> CloseAllResult:
        """
        Закрытие всех открытых позиций. Ошибки по отдельным символам собираются.
        """
        positions = await self.get_open_positions()
        result = CloseAllResult(total=len(positions))

        for position in positions:
            symbol = position.get('symbol')
            size = abs(safe_float(position.get('size')))
            try:
                order = await self.close_position(symbol, position.get('side', 'Buy'), size)
                result.closed += 1
                result.details.append({
                    'symbol': symbol,
                    'side': position.get('side'),
                    'size': size,
                    'success': True,
                    'orderId': order.get('orderId'),
                })
            except (BybitAPIError, NetworkError) as e:
                error_message = f"Failed to close {symbol}: {e}"
                self.logger.error(f"❌ {error_message}")
                result.errors.append(error_message)
                result.details.append({
                    'symbol': symbol,
                    'side': position.get('side'),
                    'size': size,
                    'success': False,
                    'error': str(e),
                })

        self.logger.info(f"✅ Close all complete: {result.closed}/{result.total} positions closed")
        return result

    async def open_position(
        self,
        symbol: str,
        side: str,
        qty: float,
        leverage: Optional[int],
        stop_loss: Optional[float] = None,
        take_profit: Optional[float] = None
    ) -> OpenPositionResult:
        """
        Открытие позиции: плечо -> market ордер -> пауза -> SL/TP

        Ошибка установки SL/TP не прерывает открытие, а возвращается в результате.
        Без leverage плечо на бирже не меняется.
        """
        bybit_symbol = convert_symbol_to_bybit(symbol)
        bybit_side = to_bybit_side(side)
        qty_str = format_fixed(qty, 4)

        leverage_set = await self.set_leverage(bybit_symbol, leverage) if leverage else False

        order = await self.place_order(
            symbol=bybit_symbol,
            side=bybit_side,
            order_type=OrderType.MARKET,
            qty=qty_str,
            time_in_force=TimeInForce.GTC,
        )

        result = OpenPositionResult(
            order_id=order.get('orderId') or 'unknown',
            symbol=bybit_symbol,
            side=bybit_side,
            qty=qty_str,
            leverage=leverage,
            leverage_set=leverage_set,
        )

        if stop_loss or take_profit:
            if self.tpsl_delay > 0:
                await asyncio.sleep(self.tpsl_delay)
            try:
                await self.set_trading_stop(bybit_symbol, stop_loss, take_profit)
            except BybitAPIError as e:
                self.logger.warning(f"⚠️ SL/TP not set for {bybit_symbol}: {e}")
                result.sl_tp_set = False
                result.sl_tp_error = str(e)

        return result

    # ========================================================================
    # UTILITY METHODS
    # ========================================================================

    async def test_connection(self) -> bool:
        """
        Тестирование подключения к API (запрос баланса)
        """
        try:
            await self.get_wallet_balance()
            self.logger.info("✅ Bybit API connection test successful")
            return True
        except (BybitAPIError, NetworkError) as e:
            self.logger.error(f"❌ Bybit API connection test failed: {e}")
            return False

    def get_stats(self) -> Dict[str, Any]:
        """Получение статистики клиента"""
        total = self.stats['total_requests']
        success_rate = (self.stats['successful_requests'] / total) * 100 if total else 0

        return {
            **self.stats,
            'success_rate_pct': round(success_rate, 2),
            'environment': self.environment,
            'rate_limiter': self.rate_limiter.get_status(),
        }


# ============================================================================
# CONVENIENCE FUNCTIONS
# ============================================================================

def parse_wallet_balance(result: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """
    USDT баланс из ответа wallet-balance

    Returns:
        None если в ответе нет аккаунта
    """
    accounts = result.get('list') or []
    if not accounts:
        return None

    usdt = next((c for c in accounts[0].get('coin') or [] if c.get('coin') == SETTLE_COIN), None)
    if usdt is None:
        return {'balances': [], 'totalUSDT': 0}

    total = safe_float(usdt.get('walletBalance'))
    available = safe_float(usdt.get('availableToWithdraw'))
    locked = total - available

    return {
        'balances': [{
            'asset': SETTLE_COIN,
            'free': format_fixed(available, 2),
            'locked': format_fixed(locked, 2),
            'total': format_fixed(total, 2),
        }],
        'totalUSDT': total,
    }

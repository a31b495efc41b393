"""
Trading Bot Exchange Router
Ручные операции с Bybit: баланс, позиции, открытие и закрытие, SL/TP, проверка ключей
"""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query, Request

from app.api.dependencies import (
    get_client_factory, get_db, get_sms, read_json_body, require_fields, server_info
)
from core.bybit_client import (
    BybitAPIError, CloudFrontBlockError, convert_symbol_to_bybit, opposite_side, parse_wallet_balance
)
from core.cloudfront_guard import bybit_fetch_with_guard
from core.webhook_processor import ClientFactory
from data.database import Database
from services.sms_service import SMSService
from utils.helpers import APIError, NetworkError, format_fixed, parse_float_strict, parse_int_strict, safe_float
from utils.logger import setup_logger

router = APIRouter(prefix="/api/exchange", tags=["Exchange"])
logger = setup_logger(__name__)

SUPPORTED_EXCHANGE = 'bybit'
DEFAULT_ENVIRONMENT = 'mainnet'
MANUAL_CLOSE_ALL_REASON = 'manual_close_all'

EXCHANGE_ERRORS = (BybitAPIError, CloudFrontBlockError, NetworkError)


def _failure(message: str, status_code: int, **extra: Any) -> APIError:
    """Ошибка биржевого эндпоинта: {success: false, message, ...}"""
    return APIError(message, status_code, response_data={'message': message, **extra})


def _require_bybit(body: Dict[str, Any]) -> None:
    if body.get('exchange') != SUPPORTED_EXCHANGE:
        raise _failure("Only Bybit is supported", 400)


def _optional_price(body: Dict[str, Any], field_name: str) -> Optional[float]:
    if not body.get(field_name):
        return None
    value = parse_float_strict(body[field_name])
    if value is None or value < 0:
        raise _failure(f"Invalid {field_name}", 400, field=field_name)
    return value


# ============================================================================
# БАЛАНС
# ============================================================================

async def _wallet_balance(
    client_factory: ClientFactory,
    api_key: Optional[str],
    api_secret: Optional[str],
    environment: Optional[str]
) -> Dict[str, Any]:
    if not api_key or not api_secret:
        raise _failure("Missing API credentials", 400)

    try:
        async with client_factory(api_key, api_secret, environment or DEFAULT_ENVIRONMENT) as client:
            result = await client.get_wallet_balance()
    except EXCHANGE_ERRORS as e:
        logger.error(f"❌ Balance fetch failed: {e}")
        raise _failure(str(e) or "Failed to fetch balance", 500)

    balance = parse_wallet_balance(result)
    if balance is None:
        return {'success': False, 'message': "No account data found"}

    logger.info(f"💵 Balance fetched: {balance['totalUSDT']:.2f} USDT")
    return {'success': True, **balance}


@router.get("/balance")
async def get_balance(
    apiKey: Optional[str] = Query(None),
    apiSecret: Optional[str] = Query(None),
    environment: Optional[str] = Query(None),
    client_factory: ClientFactory = Depends(get_client_factory)
):
    return await _wallet_balance(client_factory, apiKey, apiSecret, environment)


@router.post("/balance")
async def post_balance(request: Request, client_factory: ClientFactory = Depends(get_client_factory)):
    body = await read_json_body(request)
    return await _wallet_balance(client_factory, body.get('apiKey'), body.get('apiSecret'), body.get('environment'))


# ============================================================================
# ПОЗИЦИИ
# ============================================================================

def map_exchange_position(position: Dict[str, Any]) -> Dict[str, Any]:
    return {
        'symbol': position.get('symbol'),
        'side': position.get('side'),
        'size': position.get('size'),
        'entryPrice': position.get('avgPrice'),
        'markPrice': position.get('markPrice'),
        'leverage': position.get('leverage'),
        'unrealisedPnl': position.get('unrealisedPnl'),
        'takeProfit': position.get('takeProfit') or '0',
        'stopLoss': position.get('stopLoss') or '0',
        'positionValue': position.get('positionValue'),
        'liqPrice': position.get('liqPrice') or '0',
    }


@router.get("/positions")
async def get_exchange_positions(
    request: Request,
    db: Database = Depends(get_db),
    client_factory: ClientFactory = Depends(get_client_factory)
):
    """Открытые позиции на бирже по ключам из настроек бота"""
    bot_settings = await db.get_bot_settings()
    if bot_settings is None or not bot_settings.has_credentials:
        raise _failure("Missing API credentials in database", 400)

    try:
        async with client_factory(bot_settings.api_key, bot_settings.api_secret, bot_settings.environment) as client:
            positions = await bybit_fetch_with_guard(
                db, client.get_positions, "exchange_positions", server_info(request)
            )
    except EXCHANGE_ERRORS as e:
        logger.error(f"❌ Positions fetch failed: {e}")
        raise _failure(str(e) or "Failed to fetch positions", 500)

    open_positions = [map_exchange_position(p) for p in positions if safe_float(p.get('size')) > 0]
    return {'success': True, 'positions': open_positions, 'total': len(open_positions)}


# ============================================================================
# ОТКРЫТИЕ ПОЗИЦИИ
# ============================================================================

TP_MODE_MULTIPLE = 'multiple'
TP_SPLIT = (('TP2', 'tp2', 0.3), ('TP3', 'tp3', 0.2))


def _open_failure(message: str, status_code: int, code: str, **extra: Any) -> APIError:
    return APIError(message, status_code, response_data=extra, code=code)


@router.post("/open-position")
async def open_position(
    request: Request,
    db: Database = Depends(get_db),
    client_factory: ClientFactory = Depends(get_client_factory)
):
    """
    Ручное открытие позиции market ордером

    tpMode=multiple: takeProfit позиции = tp1, tp2/tp3 выставляются
    reduce-only лимитками на 30% и 20% объема. Ошибки лимиток только логируются.
    """
    body = await read_json_body(request)
    if any(not body.get(name) for name in ('exchange', 'apiKey', 'apiSecret', 'symbol', 'side', 'quantity')):
        raise _open_failure("Missing required fields", 400, "MISSING_FIELDS")
    if body['exchange'] != SUPPORTED_EXCHANGE:
        raise _open_failure("Only Bybit is currently supported", 400, "UNSUPPORTED_EXCHANGE")
    if body['side'] not in ('Buy', 'Sell'):
        raise _open_failure('Side must be "Buy" or "Sell"', 400, "INVALID_SIDE")

    quantity = parse_float_strict(body['quantity'])
    if quantity is None or quantity <= 0:
        raise _open_failure("Quantity must be a positive number", 400, "INVALID_QUANTITY")

    leverage = None
    if body.get('leverage'):
        leverage = parse_int_strict(body['leverage'])
        if leverage is None or leverage < 1:
            raise _open_failure("Leverage must be a positive integer", 400, "INVALID_LEVERAGE")

    tp_mode = body.get('tpMode') or 'main_only'
    stop_loss = _optional_price(body, 'stopLoss')
    take_profit = _optional_price(body, 'tp1' if tp_mode == TP_MODE_MULTIPLE else 'takeProfit')
    tp_targets = []
    if tp_mode == TP_MODE_MULTIPLE:
        for label, field_name, share in TP_SPLIT:
            price = _optional_price(body, field_name)
            if price is not None:
                tp_targets.append((label, price, share))
    symbol = convert_symbol_to_bybit(body['symbol'])

    try:
        async with client_factory(
            body['apiKey'], body['apiSecret'], body.get('environment') or DEFAULT_ENVIRONMENT
        ) as client:
            result = await bybit_fetch_with_guard(
                db,
                lambda: client.open_position(symbol, body['side'], quantity, leverage, stop_loss, take_profit),
                "manual_open_position",
                server_info(request)
            )

            tp_orders = []
            for label, price, share in tp_targets:
                try:
                    order = await client.place_order(
                        symbol, opposite_side(body['side']), 'Limit', format_fixed(quantity * share, 4),
                        price=str(price), reduce_only=True, order_link_id=f"{result.order_id}_{label}"
                    )
                    tp_orders.append({'label': label, 'orderId': order.get('orderId')})
                except (BybitAPIError, NetworkError) as e:
                    logger.warning(f"⚠️ {label} order not placed for {symbol}: {e}")

    except BybitAPIError as e:
        logger.error(f"❌ Manual open failed: {e}")
        raise _open_failure(
            f"Bybit order failed: {e.ret_msg}", 400, "ORDER_FAILED",
            details={'retCode': e.ret_code, 'retMsg': e.ret_msg}
        )
    except (CloudFrontBlockError, NetworkError) as e:
        raise _open_failure(str(e) or "Unknown error", 500, "INTERNAL_ERROR")

    logger.info(f"📈 Manual position opened: {symbol} {body['side']} qty={result.qty}")
    return {
        'success': True,
        'orderId': result.order_id,
        'symbol': result.symbol,
        'side': result.side,
        'quantity': result.qty,
        'leverage': leverage,
        'stopLoss': stop_loss,
        'takeProfit': take_profit,
        'tpMode': tp_mode,
        'tpOrders': tp_orders,
        'leverageSet': result.leverage_set,
        'slTpSet': result.sl_tp_set,
        'message': "Position opened successfully",
    }


# ============================================================================
# ЗАКРЫТИЕ ПОЗИЦИЙ
# ============================================================================

@router.post("/close-position")
async def close_position(request: Request, client_factory: ClientFactory = Depends(get_client_factory)):
    """
    Закрытие позиции reduce-only market ордером.
    Перед закрытием отменяются переданные orderLinkIds (ошибки отмены только логируются).
    """
    body = await read_json_body(request)
    require_fields(body, ('exchange', 'apiKey', 'apiSecret', 'symbol', 'side'))
    _require_bybit(body)

    symbol = convert_symbol_to_bybit(body['symbol'])
    order_link_ids = body.get('orderLinkIds') or []

    try:
        async with client_factory(
            body['apiKey'], body['apiSecret'], body.get('environment') or DEFAULT_ENVIRONMENT
        ) as client:
            for order_link_id in order_link_ids:
                try:
                    await client.cancel_order(symbol, order_link_id=order_link_id)
                    logger.info(f"✅ Cancelled order: {order_link_id}")
                except BybitAPIError as e:
                    logger.warning(f"⚠️ Failed to cancel order {order_link_id}: {e.ret_msg}")

            result = await client.close_position(symbol, body['side'], body.get('qty') or "0")

    except BybitAPIError as e:
        raise _failure(f"Failed to close position: {e.ret_msg}", 400, retCode=e.ret_code)
    except (CloudFrontBlockError, NetworkError) as e:
        raise _failure(str(e), 500)

    return {
        'success': True,
        'message': "Position closed successfully",
        'orderId': result.get('orderId'),
        'orderLinkId': result.get('orderLinkId'),
        'cancelledOrders': len(order_link_ids),
        'data': result,
    }


@router.post("/close-all-positions")
async def close_all_positions(
    request: Request,
    db: Database = Depends(get_db),
    client_factory: ClientFactory = Depends(get_client_factory),
    sms_service: SMSService = Depends(get_sms)
):
    """Закрытие всех позиций; при частичной неудаче отправляется SMS"""
    body = await read_json_body(request)
    require_fields(body, ('exchange', 'apiKey', 'apiSecret'))
    _require_bybit(body)

    try:
        async with client_factory(
            body['apiKey'], body['apiSecret'], body.get('environment') or DEFAULT_ENVIRONMENT
        ) as client:
            close_result = await bybit_fetch_with_guard(
                db, client.close_all_positions, "close_all_positions", server_info(request)
            )
    except EXCHANGE_ERRORS as e:
        logger.error(f"❌ Close all positions failed: {e}")
        raise _failure(
            str(e) or "Unknown error", 500,
            results={'positionsClosed': 0, 'errors': [str(e)], 'details': []}
        )

    for detail in close_result.details:
        if detail.get('success'):
            await db.mark_positions_closed(detail['symbol'], detail.get('side') or '', MANUAL_CLOSE_ALL_REASON)

    failed = close_result.total - close_result.closed
    if failed > 0:
        logger.warning(f"📱 Sending SMS alert for {failed} failed closes")
        sms_result = await sms_service.send_emergency_close_failure_alert(failed, close_result.total)
        if not sms_result.success:
            logger.warning(f"⚠️ SMS alert failed: {sms_result.error}")

    return {
        'success': True,
        'message': f"Closed {close_result.closed} positions",
        'results': {
            'positionsClosed': close_result.closed,
            'errors': close_result.errors,
            'details': close_result.details,
        },
    }


# ============================================================================
# SL/TP И ПРОВЕРКА КЛЮЧЕЙ
# ============================================================================

@router.post("/modify-tpsl")
async def modify_tpsl(request: Request, client_factory: ClientFactory = Depends(get_client_factory)):
    body = await read_json_body(request)
    require_fields(body, ('exchange', 'apiKey', 'apiSecret', 'symbol'))
    _require_bybit(body)

    stop_loss = _optional_price(body, 'stopLoss')
    take_profit = _optional_price(body, 'takeProfit')

    try:
        async with client_factory(
            body['apiKey'], body['apiSecret'], body.get('environment') or DEFAULT_ENVIRONMENT
        ) as client:
            await client.set_trading_stop(convert_symbol_to_bybit(body['symbol']), stop_loss, take_profit)
    except EXCHANGE_ERRORS as e:
        raise _failure(str(e) or "Unknown error", 400)

    return {'success': True, 'message': "TP/SL modifications completed"}


@router.post("/test-connection")
async def test_connection(request: Request, client_factory: ClientFactory = Depends(get_client_factory)):
    """Проверка ключей запросом баланса"""
    body = await read_json_body(request)
    if not body.get('apiKey') or not body.get('apiSecret'):
        raise _failure("API Key and Secret are required", 400)
    if body.get('exchange') and body['exchange'] != SUPPORTED_EXCHANGE:
        raise _failure("Only Bybit is supported", 400)

    environment = body.get('environment') or DEFAULT_ENVIRONMENT
    try:
        async with client_factory(body['apiKey'], body['apiSecret'], environment) as client:
            result = await client.get_wallet_balance()
    except BybitAPIError as e:
        logger.warning(f"⚠️ Connection test failed: {e}")
        return {'success': False, 'message': f"Bybit API Error ({e.ret_code}): {e.ret_msg}"}
    except (CloudFrontBlockError, NetworkError) as e:
        logger.warning(f"⚠️ Connection test failed: {e}")
        return {'success': False, 'message': f"Connection error: {e}"}

    balance = parse_wallet_balance(result) or {'balances': []}
    return {
        'success': True,
        'message': f"✅ Connected to Bybit {environment}",
        'accountInfo': {
            'canTrade': True,
            'balances': balance['balances'],
        },
    }

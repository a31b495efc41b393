"""
Trading Bot Settings Router
Настройки бота и API ключи биржи
"""

from typing import Any, Callable, Dict, Optional, Tuple

from fastapi import APIRouter, Depends, Request

from app.api.dependencies import get_db, read_json_body
from data.database import Database
from utils.helpers import APIError, camel_to_snake, parse_float_strict, parse_int_strict, safe_json_dumps
from utils.logger import setup_logger

router = APIRouter(prefix="/api/bot", tags=["Bot Settings"])
logger = setup_logger(__name__)


# ============================================================================
# ПРАВИЛА ВАЛИДАЦИИ
# ============================================================================

ENUM_FIELDS: Dict[str, Tuple[str, ...]] = {
    'positionSizeMode': ('percent', 'fixed_amount'),
    'leverageMode': ('from_alert', 'fixed'),
    'tierFilteringMode': ('all', 'custom'),
    'tpStrategy': ('multiple', 'main_only'),
    'sameSymbolBehavior': ('ignore', 'track_confirmations', 'upgrade_tp', 'emergency_override'),
    'oppositeDirectionStrategy': (
        'market_reversal', 'immediate_reverse', 'defensive_close', 'ignore_opposite', 'tier_based'
    ),
    'emergencyOverrideMode': ('always', 'only_profit', 'profit_above_x', 'never'),
}

# ключ -> (колонка, парсер, проверка, сообщение)
NUMERIC_FIELDS: Dict[str, Tuple[str, Callable[[Any], Optional[float]], Callable[[float], bool], str]] = {
    'reversalWaitBars': (
        'reversal_wait_bars', parse_int_strict, lambda v: 1 <= v <= 3,
        "reversalWaitBars must be between 1 and 3"
    ),
    'positionSizePercent': (
        'position_size_percent', parse_float_strict, lambda v: 0 < v <= 100,
        "positionSizePercent must be between 0 and 100"
    ),
    'leverageFixed': (
        'leverage_fixed', parse_int_strict, lambda v: v > 0,
        "leverageFixed must be greater than 0"
    ),
    'maxConcurrentPositions': (
        'max_concurrent_positions', parse_int_strict, lambda v: v > 0,
        "maxConcurrentPositions must be greater than 0"
    ),
    'defaultSlRR': ('default_sl_rr', parse_float_strict, lambda v: v > 0, "defaultSlRR must be greater than 0"),
    'defaultTp1RR': ('default_tp1_rr', parse_float_strict, lambda v: v > 0, "defaultTp1RR must be greater than 0"),
    'defaultTp2RR': ('default_tp2_rr', parse_float_strict, lambda v: v > 0, "defaultTp2RR must be greater than 0"),
    'defaultTp3RR': ('default_tp3_rr', parse_float_strict, lambda v: v > 0, "defaultTp3RR must be greater than 0"),
}

# camelCase из to_dict настроек
NUMERIC_ALIASES = {
    'defaultSlRr': 'defaultSlRR',
    'defaultTp1Rr': 'defaultTp1RR',
    'defaultTp2Rr': 'defaultTp2RR',
    'defaultTp3Rr': 'defaultTp3RR',
}

BOOLEAN_FIELDS = ('botEnabled', 'emergencyCanReverse', 'useDefaultSlTp', 'smsAlertsEnabled')

FLOAT_FIELDS = (
    'positionSizeFixed',
    'reversalMinStrength',
    'emergencyMinProfitPercent',
    'defaultSlPercent',
    'defaultTp1Percent',
    'defaultTp2Percent',
    'defaultTp3Percent',
)

TEXT_FIELDS = ('twilioAccountSid', 'twilioAuthToken', 'twilioPhoneNumber', 'alertPhoneNumber')

VALID_EXCHANGES = ('bybit', 'binance')
VALID_ENVIRONMENTS = ('demo', 'testnet', 'mainnet')


def _field_code(key: str) -> str:
    return f"INVALID_{camel_to_snake(key).upper()}"


def validate_settings_update(body: Dict[str, Any]) -> Dict[str, Any]:
    """
    Тело запроса -> значения колонок bot_settings

    Raises:
        APIError с кодом INVALID_<FIELD> и полем field
    """
    values: Dict[str, Any] = {}

    for key, allowed in ENUM_FIELDS.items():
        if key not in body:
            continue
        if body[key] not in allowed:
            raise APIError(
                f"Invalid {key}. Must be one of: {', '.join(allowed)}",
                400, response_data={'field': key}, code=_field_code(key)
            )
        values[camel_to_snake(key)] = body[key]

    for alias, key in NUMERIC_ALIASES.items():
        if alias in body and key not in body:
            body = {**body, key: body[alias]}

    for key, (column, parser, check, message) in NUMERIC_FIELDS.items():
        if key not in body:
            continue
        value = parser(body[key])
        if value is None or not check(value):
            raise APIError(message, 400, response_data={'field': key}, code=f"INVALID_{column.upper()}")
        values[column] = value

    for key in BOOLEAN_FIELDS:
        if key in body:
            values[camel_to_snake(key)] = bool(body[key])

    for key in FLOAT_FIELDS:
        if key not in body:
            continue
        value = parse_float_strict(body[key])
        if value is None:
            raise APIError(f"{key} must be a valid number", 400, response_data={'field': key}, code=_field_code(key))
        values[camel_to_snake(key)] = value

    for key in TEXT_FIELDS:
        if key in body:
            values[camel_to_snake(key)] = body[key] or None

    if 'disabledTiers' in body:
        tiers = body['disabledTiers']
        if not isinstance(tiers, list):
            raise APIError(
                "disabledTiers must be an array", 400,
                response_data={'field': 'disabledTiers'}, code="INVALID_DISABLED_TIERS"
            )
        values['disabled_tiers'] = safe_json_dumps(tiers, default='[]')

    return values


# ============================================================================
# НАСТРОЙКИ
# ============================================================================

@router.get("/settings")
async def get_bot_settings(db: Database = Depends(get_db)):
    bot_settings = await db.get_bot_settings()
    if bot_settings is None:
        raise APIError("Bot settings not found", 404, code="SETTINGS_NOT_FOUND")
    return {'success': True, 'settings': bot_settings.to_dict()}


@router.api_route("/settings", methods=["PUT", "POST"])
async def update_bot_settings(request: Request, db: Database = Depends(get_db)):
    body = await read_json_body(request)
    values = validate_settings_update(body)

    bot_settings = await db.update_bot_settings(values)
    if bot_settings is None:
        raise APIError("Bot settings not found. Cannot update non-existent settings.", 404, code="SETTINGS_NOT_FOUND")

    logger.info(f"⚙️ Bot settings updated: {', '.join(values.keys()) or 'no changes'}")
    return {'success': True, 'settings': bot_settings.to_dict()}


# ============================================================================
# API КЛЮЧИ
# ============================================================================

@router.get("/credentials")
async def get_credentials(db: Database = Depends(get_db)):
    bot_settings = await db.get_bot_settings()
    if bot_settings is None:
        credentials = {'apiKey': '', 'apiSecret': '', 'exchange': 'bybit', 'environment': 'demo'}
    else:
        credentials = {
            'apiKey': bot_settings.api_key or '',
            'apiSecret': bot_settings.api_secret or '',
            'exchange': bot_settings.exchange or 'bybit',
            'environment': bot_settings.environment or 'demo',
        }
    return {'success': True, 'credentials': credentials}


@router.post("/credentials")
async def update_credentials(request: Request, db: Database = Depends(get_db)):
    body = await read_json_body(request)
    values: Dict[str, Any] = {}

    if 'exchange' in body:
        if body['exchange'] not in VALID_EXCHANGES:
            raise APIError(
                f"Invalid exchange. Must be one of: {', '.join(VALID_EXCHANGES)}", 400, code="INVALID_EXCHANGE"
            )
        values['exchange'] = body['exchange']

    if 'environment' in body:
        if body['environment'] not in VALID_ENVIRONMENTS:
            raise APIError(
                f"Invalid environment. Must be one of: {', '.join(VALID_ENVIRONMENTS)}", 400,
                code="INVALID_ENVIRONMENT"
            )
        values['environment'] = body['environment']

    if 'apiKey' in body:
        values['api_key'] = body['apiKey'] or None
    if 'apiSecret' in body:
        values['api_secret'] = body['apiSecret'] or None

    bot_settings = await db.update_bot_settings(values)
    if bot_settings is None:
        raise APIError("Bot settings not found", 404, code="SETTINGS_NOT_FOUND")

    logger.info(f"🔑 API credentials updated (exchange: {bot_settings.exchange}, env: {bot_settings.environment})")
    return {'success': True, 'message': "API credentials updated successfully"}

"""
Trading Bot Webhook Processor
Обработка алертов TradingView: валидация, фильтры, конфликты позиций, открытие на Bybit
"""

import json
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError

from app.config.settings import Settings, get_settings
from core.bybit_client import (
    BybitAPIError, BybitClient, CloudFrontBlockError, OpenPositionResult,
    convert_symbol_to_bybit
)
from core.cloudfront_guard import bybit_fetch_with_guard
from core.error_classifier import classify_error, requires_permanent_lock
from data.database import Database
from data.models import Alert, BotPosition, BotSettings, ExecutionStatus, PositionStatus
from utils.helpers import (
    NetworkError, convert_keys_to_camel, format_fixed, get_current_timestamp,
    parse_float_strict, safe_float, safe_int, timestamp_to_datetime, utc_iso
)
from utils.logger import setup_logger


# ============================================================================
# CONSTANTS
# ============================================================================

REQUIRED_FIELDS = ("symbol", "side", "tier", "entryPrice")

DUPLICATE_WINDOW_SECONDS = 5
DUPLICATE_LOOKBACK = 10

WEBHOOK_ENDPOINT = "/api/webhook/tradingview"

ClientFactory = Callable[[str, str, str], BybitClient]


def _or(value: Any, default: Any) -> Any:
    """Значение или default, если значение пустое (None, 0, '', False)"""
    return value if value else default


@dataclass
class WebhookResult:
    """HTTP статус и JSON тело ответа"""
    status_code: int
    body: Dict[str, Any] = field(default_factory=dict)


@dataclass
class TradeLevels:
    """SL/TP для новой позиции"""
    sl: float
    tp1: float
    tp2: Optional[float] = None
    tp3: Optional[float] = None


# ============================================================================
# WEBHOOK PROCESSOR
# ============================================================================

class WebhookProcessor:
    """
    Обработчик алертов TradingView

    Порядок проверок:
    1. нормализация и обязательные поля
    2. дубликаты (тот же symbol/side/tier в пределах 5 секунд)
    3. сохранение алерта
    4. настройки, ключи, включенность бота, фильтр tier, блокировка символа
    5. существующая позиция (игнор, разворот, подтверждение)
    6. лимит позиций, SL/TP, размер и плечо
    7. открытие на бирже и запись позиции
    """

    def __init__(
        self,
        db: Database,
        settings: Optional[Settings] = None,
        client_factory: Optional[ClientFactory] = None
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.logger = setup_logger(f"{__name__}.WebhookProcessor")
        self.client_factory = client_factory or (
            lambda api_key, api_secret, environment: BybitClient(
                api_key, api_secret, environment, settings=self.settings
            )
        )

        self.stats = {
            'alerts_received': 0,
            'duplicates_ignored': 0,
            'alerts_rejected': 0,
            'positions_opened': 0,
            'positions_failed': 0,
        }

    # ========================================================================
    # PUBLIC API
    # ========================================================================

    async def test_endpoint(self, url: str) -> Dict[str, Any]:
        """GET проверка доступности вебхука"""
        timestamp = utc_iso()
        await self._log('info', 'webhook_test', "Webhook endpoint tested via GET", {'timestamp': timestamp, 'url': url})
        return {
            'status': 'online',
            'message': "TradingView Webhook Endpoint is working!",
            'timestamp': timestamp,
            'endpoint': WEBHOOK_ENDPOINT,
            'methods': ['GET (test)', 'POST (receive alerts)'],
        }

    async def process(self, raw_body: str) -> WebhookResult:
        """
        Обработка тела POST запроса

        Returns:
            WebhookResult (400 - невалидный запрос, 500 - внутренняя ошибка)
        """
        try:
            return await self._process(raw_body)
        except Exception as e:
            self.logger.error(f"❌ Webhook error: {e}", exc_info=True)
            await self._log('error', 'webhook_error', f"Critical error: {e}", {'error': str(e)})
            return WebhookResult(500, {'error': str(e) or "Internal server error"})

    def get_stats(self) -> Dict[str, int]:
        return dict(self.stats)

    # ========================================================================
    # PIPELINE
    # ========================================================================

    async def _process(self, raw_body: str) -> WebhookResult:
        try:
            raw_data = json.loads(raw_body)
        except (TypeError, ValueError) as e:
            await self._log('error', 'parse_error', "Failed to parse JSON", {
                'error': str(e),
                'rawBodyPreview': (raw_body or "")[:500],
            })
            return WebhookResult(400, {'error': "Invalid JSON format"})

        if not isinstance(raw_data, dict):
            return WebhookResult(400, {'error': "Invalid JSON format"})

        data = convert_keys_to_camel(raw_data)

        for field_name in REQUIRED_FIELDS:
            if field_name not in data:
                await self._log('error', 'validation_failed', f"Missing field: {field_name}", {
                    'field': field_name,
                    'data': data,
                })
                return WebhookResult(400, {'error': f"Missing required field: {field_name}"})

        symbol = str(data['symbol'])
        if symbol.endswith('.P'):
            symbol = symbol[:-2]
        data['symbol'] = symbol

        entry_price = parse_float_strict(data.get('entryPrice'))
        if entry_price is None or entry_price <= 0:
            await self._log('error', 'validation_failed', "Invalid entryPrice", {'entryPrice': data.get('entryPrice')})
            return WebhookResult(400, {'error': "Invalid numeric field: entryPrice"})

        self.stats['alerts_received'] += 1

        received_at_ms = get_current_timestamp()
        alert_timestamp = safe_int(_or(data.get('timestamp'), data.get('tvTs'))) or received_at_ms // 1000
        latency = max(0, received_at_ms - alert_timestamp * 1000)

        # Дубликаты
        recent = await self.db.find_recent_alerts(symbol, data['side'], data['tier'], DUPLICATE_LOOKBACK)
        if any(abs(a.timestamp - alert_timestamp) < DUPLICATE_WINDOW_SECONDS for a in recent):
            self.stats['duplicates_ignored'] += 1
            await self._log('warning', 'duplicate_ignored', f"Duplicate: {symbol} {data['side']}", {
                'symbol': symbol,
                'side': data['side'],
            })
            return WebhookResult(200, {'success': True, 'message': "Duplicate alert ignored", 'duplicate': True})

        alert = await self.db.create_alert(self._build_alert_values(data, alert_timestamp, latency, entry_price))
        await self._log('info', 'alert_received', f"Alert received: {symbol} {data['side']} {data['tier']}", {
            'symbol': symbol,
            'side': data['side'],
            'tier': data['tier'],
        }, alert_id=alert.id)

        bot_settings = await self.db.get_bot_settings()
        if bot_settings is None:
            return await self._reject(alert, 'no_bot_settings', "Alert saved, bot settings missing",
                                      'error', "Bot settings not configured")

        if not bot_settings.has_credentials:
            return await self._reject(alert, 'no_api_credentials', "Alert saved, API credentials missing",
                                      'error', "API credentials not configured")

        if not bot_settings.bot_enabled:
            return await self._reject(alert, 'bot_disabled', "Bot is disabled", 'warning', "Bot is disabled")

        if alert.tier in bot_settings.disabled_tiers_list:
            return await self._reject(alert, 'tier_disabled', f"Tier {alert.tier} disabled",
                                      'warning', f"Tier {alert.tier} disabled", {'tier': alert.tier})

        lock = await self.db.get_active_symbol_lock(symbol)
        if lock is not None:
            return await self._reject(alert, 'symbol_locked', f"Symbol {symbol} is locked",
                                      'warning', f"Symbol {symbol} locked: {lock.lock_reason}",
                                      {'lockReason': lock.lock_reason, 'lockedAt': lock.locked_at})

        # Существующая позиция по символу
        existing_positions = await self.db.get_open_positions(symbol)
        if existing_positions:
            conflict = await self._resolve_existing_position(alert, data, bot_settings, existing_positions[0])
            if conflict is not None:
                return conflict

        open_count = await self.db.count_open_positions()
        if open_count >= bot_settings.max_concurrent_positions:
            return await self._reject(alert, 'max_positions_reached', "Max concurrent positions reached",
                                      'warning', f"Max concurrent positions reached ({open_count})",
                                      {'openPositions': open_count, 'max': bot_settings.max_concurrent_positions})

        levels = self._calculate_levels(alert, bot_settings)
        if levels is None:
            return await self._reject(alert, 'no_sl_tp', "No SL/TP provided", 'error', "No SL/TP provided")

        position_size = bot_settings.position_size_fixed
        quantity = position_size / entry_price
        if bot_settings.leverage_mode == 'from_alert':
            leverage = safe_int(_or(data.get('leverage'), bot_settings.leverage_fixed))
        else:
            leverage = bot_settings.leverage_fixed

        return await self._open_position(
            alert, bot_settings, levels, quantity, leverage, position_size, received_at_ms
        )

    # ========================================================================
    # ШАГИ
    # ========================================================================

    def _build_alert_values(
        self,
        data: Dict[str, Any],
        alert_timestamp: int,
        latency: int,
        entry_price: float
    ) -> Dict[str, Any]:
        """Поля строки alerts с значениями по умолчанию"""
        return {
            'timestamp': alert_timestamp,
            'symbol': data['symbol'],
            'side': data['side'],
            'tier': data['tier'],
            'tier_numeric': safe_int(_or(data.get('tierNumeric'), 3)),
            'strength': safe_float(_or(data.get('strength'), 0.5)),
            'entry_price': entry_price,
            'sl': safe_float(data.get('sl')),
            'tp1': safe_float(data.get('tp1')),
            'tp2': safe_float(data.get('tp2')),
            'tp3': safe_float(data.get('tp3')),
            'main_tp': safe_float(_or(data.get('mainTp'), data.get('tp1'))),
            'atr': safe_float(data.get('atr')),
            'volume_ratio': safe_float(_or(data.get('volumeRatio'), 1)),
            'session': str(_or(data.get('session'), "unknown")),
            'regime': str(_or(data.get('regime'), "neutral")),
            'regime_confidence': safe_float(_or(data.get('regimeConfidence'), 0.5)),
            'mtf_agreement': safe_float(_or(data.get('mtfAgreement'), 0.5)),
            'leverage': safe_int(_or(data.get('leverage'), 10)),
            'in_ob': bool(data.get('inOb')),
            'in_fvg': bool(data.get('inFvg')),
            'ob_score': safe_float(data.get('obScore')),
            'fvg_score': safe_float(data.get('fvgScore')),
            'institutional_flow': parse_float_strict(_or(data.get('institutionalFlow'), None)),
            'accumulation': parse_float_strict(_or(data.get('accumulation'), None)),
            'volume_climax': bool(data['volumeClimax']) if data.get('volumeClimax') else None,
            'latency': latency,
            'raw_json': json.dumps(data, default=str),
            'execution_status': ExecutionStatus.PENDING.value,
            'retention_days': self.settings.ALERT_RETENTION_DAYS,
        }

    async def _resolve_existing_position(
        self,
        alert: Alert,
        data: Dict[str, Any],
        bot_settings: BotSettings,
        existing: BotPosition
    ) -> Optional[WebhookResult]:
        """
        Конфликт с открытой позицией по символу

        Returns:
            None если можно открывать новую позицию
        """
        if bot_settings.same_symbol_behavior == 'ignore':
            return await self._reject(alert, 'same_symbol_exists', "Same symbol position exists",
                                      'info', f"Position exists on {alert.symbol}", position_id=existing.id)

        is_opposite = existing.side.upper() != str(data['side']).upper()

        if is_opposite:
            if bot_settings.opposite_direction_strategy != 'market_reversal':
                return await self._reject(alert, 'opposite_ignored', "Opposite direction ignored",
                                          'info', "Opposite direction ignored", position_id=existing.id)
            return await self._reverse_position(alert, bot_settings, existing)

        if bot_settings.same_symbol_behavior == 'track_confirmations':
            count = existing.confirmation_count + 1
            await self.db.update_position(existing.id, confirmation_count=count)
            await self.db.update_alert(alert.id, execution_status=ExecutionStatus.EXECUTED.value)
            await self._log('info', 'confirmation_tracked', f"Confirmation tracked for {alert.symbol}",
                            {'count': count}, alert_id=alert.id, position_id=existing.id)
            return WebhookResult(200, {'success': True, 'alert_id': alert.id, 'message': "Confirmation tracked"})

        return None

    async def _reverse_position(
        self,
        alert: Alert,
        bot_settings: BotSettings,
        existing: BotPosition
    ) -> Optional[WebhookResult]:
        """Закрытие противоположной позиции перед открытием новой"""
        await self._log('info', 'reversal_attempt', f"Reversing {alert.symbol}", {
            'existingPosition': existing.side,
            'newPosition': alert.side,
        }, alert_id=alert.id, position_id=existing.id)

        try:
            async with self.client_factory(
                bot_settings.api_key, bot_settings.api_secret, bot_settings.environment
            ) as client:
                order = await bybit_fetch_with_guard(
                    self.db,
                    lambda: client.close_position(
                        convert_symbol_to_bybit(existing.symbol),
                        existing.side,
                        format_fixed(existing.quantity, 4)
                    ),
                    context="webhook close opposite"
                )
        except CloudFrontBlockError as e:
            return await self._reject(alert, 'cloudfront_block', "CloudFront block - bot disabled",
                                      'error', str(e), position_id=existing.id)
        except (BybitAPIError, NetworkError) as e:
            await self.db.update_alert(
                alert.id,
                execution_status=ExecutionStatus.REJECTED.value,
                rejection_reason='failed_close_opposite'
            )
            self.stats['alerts_rejected'] += 1
            await self._log('error', 'close_failed', f"Failed to close opposite: {e}",
                            {'error': str(e)}, alert_id=alert.id, position_id=existing.id)
            return WebhookResult(200, {
                'success': True,
                'alert_id': alert.id,
                'error': "Failed to close opposite position",
            })

        close_order_id = order.get('orderId') or 'unknown'
        await self.db.close_position_record(existing, 'opposite_signal')
        await self.db.add_bot_action(
            'position_closed', 'opposite_signal', True,
            symbol=existing.symbol, side=existing.side, tier=existing.tier,
            alert_id=alert.id, position_id=existing.id,
            details={'closeOrderId': close_order_id}
        )
        await self._log('success', 'position_closed', f"Bybit position closed: {existing.symbol}",
                        {'orderId': close_order_id, 'symbol': existing.symbol},
                        alert_id=alert.id, position_id=existing.id)
        return None

    def _calculate_levels(self, alert: Alert, bot_settings: BotSettings) -> Optional[TradeLevels]:
        """SL/TP из алерта или из процентов по умолчанию"""
        if alert.sl > 0 and alert.tp1 > 0:
            return TradeLevels(
                sl=alert.sl,
                tp1=alert.tp1,
                tp2=alert.tp2 or None,
                tp3=alert.tp3 or None,
            )

        if not bot_settings.use_default_sl_tp:
            return None

        entry = alert.entry_price
        sl_pct = bot_settings.default_sl_percent / 100
        tp_pcts = (
            bot_settings.default_tp1_percent / 100,
            bot_settings.default_tp2_percent / 100,
            bot_settings.default_tp3_percent / 100,
        )
        direction = 1 if alert.side.upper() == 'BUY' else -1

        tp1, tp2, tp3 = (entry * (1 + direction * pct) for pct in tp_pcts)
        return TradeLevels(sl=entry * (1 - direction * sl_pct), tp1=tp1, tp2=tp2, tp3=tp3)

    async def _open_position(
        self,
        alert: Alert,
        bot_settings: BotSettings,
        levels: TradeLevels,
        quantity: float,
        leverage: int,
        position_size: float,
        received_at_ms: int
    ) -> WebhookResult:
        """Открытие позиции на бирже и запись в БД"""
        exchange = bot_settings.exchange
        environment = bot_settings.environment

        await self._log('info', 'opening_position',
                        f"Opening {alert.symbol} {alert.side} {leverage}x on {exchange.upper()}", {
                            'symbol': alert.symbol,
                            'side': alert.side,
                            'leverage': leverage,
                            'quantity': quantity,
                            'exchange': exchange,
                            'environment': environment,
                        }, alert_id=alert.id)

        try:
            async with self.client_factory(bot_settings.api_key, bot_settings.api_secret, environment) as client:
                result: OpenPositionResult = await bybit_fetch_with_guard(
                    self.db,
                    lambda: client.open_position(
                        alert.symbol, alert.side, quantity, leverage, levels.sl, levels.tp1
                    ),
                    context="webhook open position"
                )
        except CloudFrontBlockError as e:
            return await self._reject(alert, 'cloudfront_block', "CloudFront block - bot disabled",
                                      'error', str(e))
        except (BybitAPIError, NetworkError) as e:
            return await self._exchange_failure(alert, exchange, e)

        if not result.leverage_set:
            await self._log('warning', 'leverage_warning', f"Bybit leverage {leverage}x not set",
                            {'leverage': leverage}, alert_id=alert.id)
        if not result.sl_tp_set:
            await self._log('warning', 'sl_tp_warning', f"Bybit SL/TP: {result.sl_tp_error}",
                            {'error': result.sl_tp_error}, alert_id=alert.id)

        position = await self.db.create_position({
            'alert_id': alert.id,
            'symbol': alert.symbol,
            'side': alert.side,
            'tier': alert.tier,
            'entry_price': alert.entry_price,
            'quantity': quantity,
            'leverage': leverage,
            'stop_loss': levels.sl,
            'tp1_price': levels.tp1,
            'tp2_price': levels.tp2,
            'tp3_price': levels.tp3,
            'main_tp_price': levels.tp1,
            'current_sl': levels.sl,
            'position_value': position_size,
            'initial_margin': position_size / leverage if leverage else position_size,
            'confidence_score': alert.strength,
            'confirmation_count': 1,
            'status': PositionStatus.OPEN.value,
            'bybit_order_id': result.order_id,
            'alert_data': alert.raw_json,
            'received_at': utc_iso(timestamp_to_datetime(received_at_ms)),
        })

        await self.db.update_alert(alert.id, execution_status=ExecutionStatus.EXECUTED.value)
        await self.db.add_bot_action(
            'position_opened', 'new_signal', True,
            symbol=alert.symbol, side=alert.side, tier=alert.tier,
            alert_id=alert.id, position_id=position.id,
            details={'orderId': result.order_id, 'exchange': exchange, 'environment': environment}
        )
        await self._log('success', 'position_opened',
                        f"✅ Position opened: {alert.symbol} {alert.side} {leverage}x on {exchange.upper()}", {
                            'positionId': position.id,
                            'orderId': result.order_id,
                            'symbol': alert.symbol,
                            'side': alert.side,
                            'leverage': leverage,
                            'quantity': quantity,
                            'entryPrice': alert.entry_price,
                            'sl': levels.sl,
                            'tp': levels.tp1,
                            'exchange': exchange,
                            'environment': environment,
                        }, alert_id=alert.id, position_id=position.id)

        self.stats['positions_opened'] += 1
        self.logger.info(f"✅ Position opened: {alert.symbol} {alert.side} {leverage}x (id: {position.id})")

        return WebhookResult(200, {
            'success': True,
            'alert_id': alert.id,
            'position_id': position.id,
            'message': "Position opened successfully",
            'exchange': exchange,
            'environment': environment,
            'position': {
                'symbol': alert.symbol,
                'side': alert.side,
                'entry': alert.entry_price,
                'quantity': quantity,
                'sl': levels.sl,
                'tp': levels.tp1,
            },
        })

    async def _exchange_failure(self, alert: Alert, exchange: str, error: Exception) -> WebhookResult:
        """Ошибка биржи: классификация, блокировка символа при trade_fault"""
        classified = classify_error(getattr(error, 'ret_code', None), str(error))
        self.stats['positions_failed'] += 1

        await self.db.update_alert(
            alert.id,
            execution_status=ExecutionStatus.ERROR_REJECTED.value,
            rejection_reason='exchange_error',
            error_type=classified.type.value
        )

        if requires_permanent_lock(classified.type):
            await self.db.lock_symbol(alert.symbol, classified.type.value, str(error), permanent=True)

        await self.db.add_bot_action(
            'position_failed', 'exchange_error', False,
            symbol=alert.symbol, side=alert.side, tier=alert.tier, alert_id=alert.id,
            details={'error': str(error), 'exchange': exchange, 'errorType': classified.type.value},
            error_message=str(error)
        )
        await self._log('error', 'position_failed', f"❌ Position opening failed: {error}", {
            'error': str(error),
            'symbol': alert.symbol,
            'exchange': exchange,
            'errorType': classified.type.value,
        }, alert_id=alert.id)

        return WebhookResult(200, {
            'success': True,
            'alert_id': alert.id,
            'error': str(error),
            'errorType': classified.type.value,
            'message': "Alert saved but position opening failed",
        })

    # ========================================================================
    # HELPERS
    # ========================================================================

    async def _reject(
        self,
        alert: Alert,
        reason: str,
        response_message: str,
        level: str,
        log_message: str,
        details: Optional[Dict[str, Any]] = None,
        position_id: Optional[int] = None
    ) -> WebhookResult:
        """Алерт отклонен: статус rejected + причина, запись в журнал"""
        self.stats['alerts_rejected'] += 1
        await self.db.update_alert(
            alert.id,
            execution_status=ExecutionStatus.REJECTED.value,
            rejection_reason=reason
        )
        await self._log(level, 'rejected', log_message, {'reason': reason, **(details or {})},
                        alert_id=alert.id, position_id=position_id)
        self.logger.info(f"🚫 Alert {alert.id} rejected: {reason}")
        return WebhookResult(200, {'success': True, 'alert_id': alert.id, 'message': response_message})

    async def _log(
        self,
        level: str,
        action: str,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        alert_id: Optional[int] = None,
        position_id: Optional[int] = None
    ) -> None:
        """Запись в журнал бота. Ошибка записи не прерывает обработку алерта."""
        try:
            await self.db.add_bot_log(level, action, message, details, alert_id, position_id)
        except SQLAlchemyError as e:
            self.logger.error(f"❌ Failed to write bot log ({action}): {e}")


"""
Trading Bot Dashboard Router
Позиции и их сверка с Bybit, история, журнал и действия бота, импорт и синхронизация истории Bybit
"""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy import case, func, select
from sqlalchemy.exc import SQLAlchemyError

from app.api.dependencies import (
    get_app_settings, get_client_factory, get_db, get_proxy_fetcher, parse_limit, parse_offset,
    parse_positive_id, read_json_body, server_info, validate_side_param
)
from app.config.settings import Settings
from core.bybit_client import BybitAPIError, CloudFrontBlockError, convert_symbol_to_bybit
from core.cloudfront_guard import bybit_fetch_with_guard
from core.proxy_fallback import ProxyFallbackFetcher
from core.webhook_processor import ClientFactory
from data.database import OPEN_POSITION_STATUSES, Database
from data.models import BotAction, BotLog, BotPosition, LogLevel, PositionHistory
from services.history_importer import BybitHistoryImporter
from utils.helpers import (
    APIError, NetworkError, parse_float_strict, parse_int_strict, parse_iso_datetime,
    round_to, safe_float, safe_json_dumps, utc_iso
)
from utils.logger import setup_logger

router = APIRouter(prefix="/api/bot", tags=["Bot"])
logger = setup_logger(__name__)

HISTORY_DEFAULT_LIMIT = 50
HISTORY_MAX_LIMIT = 200
JOURNAL_DEFAULT_LIMIT = 50
JOURNAL_MAX_LIMIT = 200
DEFAULT_IMPORT_DAYS = 30
SYNC_CLOSE_REASON = 'auto_sync'

LOG_LEVELS = [level.value for level in LogLevel]


def _parse_date(value: Optional[str], message: str, code: str) -> Optional[str]:
    """ISO дата фильтра -> нормализованная строка для сравнения с колонкой"""
    if value is None:
        return None
    parsed = parse_iso_datetime(value)
    if parsed is None:
        raise APIError(message, 400, code=code)
    return utc_iso(parsed)


def _is_non_negative_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value >= 0


# ============================================================================
# ПОЗИЦИИ
# ============================================================================

async def _merge_live_positions(
    db: Database,
    positions: List[Dict[str, Any]],
    client_factory: ClientFactory
) -> bool:
    """
    Подмешивает unrealisedPnl и SL/TP с биржи.

    Returns:
        False если живые данные недоступны
    """
    bot_settings = await db.get_bot_settings()
    if bot_settings is None or not bot_settings.has_credentials:
        return False

    try:
        async with client_factory(bot_settings.api_key, bot_settings.api_secret, bot_settings.environment) as client:
            live_positions = await bybit_fetch_with_guard(db, client.get_open_positions, "positions_live_pnl")
    except (BybitAPIError, CloudFrontBlockError, NetworkError) as e:
        logger.warning(f"⚠️ Live PnL unavailable: {e}")
        return False

    live_map = {
        (item.get('symbol'), (item.get('side') or '').upper()): item
        for item in live_positions
    }
    for position in positions:
        match = live_map.get((convert_symbol_to_bybit(position['symbol']), position['side'].upper()))
        if match is None:
            continue
        position['unrealisedPnl'] = safe_float(match.get('unrealisedPnl'))
        position['liveSlPrice'] = safe_float(match.get('stopLoss')) or None
        position['liveTp1Price'] = safe_float(match.get('takeProfit')) or None

    return True


@router.get("/positions")
async def list_positions(
    status: Optional[str] = Query(None),
    symbol: Optional[str] = Query(None),
    side: Optional[str] = Query(None),
    tier: Optional[str] = Query(None),
    db: Database = Depends(get_db),
    client_factory: ClientFactory = Depends(get_client_factory)
):
    """Открытые позиции (по умолчанию open и partial_close) с живым PnL"""
    validate_side_param(side)

    conditions = [
        BotPosition.status == status if status else BotPosition.status.in_(OPEN_POSITION_STATUSES)
    ]
    if symbol:
        conditions.append(BotPosition.symbol.like(f"%{symbol}%"))
    if side:
        conditions.append(func.upper(BotPosition.side) == side.upper())
    if tier:
        conditions.append(BotPosition.tier == tier)

    async with db.get_session() as session:
        rows = (await session.execute(
            select(BotPosition).where(*conditions).order_by(BotPosition.opened_at.desc())
        )).scalars().all()
    positions = [row.to_dict() for row in rows]

    live_enabled = bool(positions) and await _merge_live_positions(db, positions, client_factory)

    return {
        'success': True,
        'positions': positions,
        'count': len(positions),
        'livePnlEnabled': live_enabled,
        'liveSlTpEnabled': live_enabled,
    }


@router.post("/sync-positions")
async def sync_positions(
    request: Request,
    db: Database = Depends(get_db),
    client_factory: ClientFactory = Depends(get_client_factory)
):
    """
    Сверка открытых позиций БД с Bybit

    Позиция, которой больше нет на бирже, закрывается в БД с причиной auto_sync
    и переносится в историю с последним известным PnL. У остальных обновляется unrealisedPnl.
    """
    bot_settings = await db.get_bot_settings()
    if bot_settings is None or not bot_settings.has_credentials:
        message = "Bybit API credentials not configured in bot settings"
        raise APIError(message, 400, response_data={'message': message})

    db_positions = await db.get_open_positions()
    logger.info(f"🔄 Position sync: {len(db_positions)} open positions in database")

    try:
        async with client_factory(bot_settings.api_key, bot_settings.api_secret, bot_settings.environment) as client:
            live_positions = await bybit_fetch_with_guard(
                db, client.get_open_positions, "sync_positions", server_info(request)
            )
    except (BybitAPIError, CloudFrontBlockError, NetworkError) as e:
        message = f"Failed to fetch Bybit positions: {e}"
        logger.error(f"❌ {message}")
        raise APIError(message, 500, response_data={'message': message})

    live_map = {
        (item.get('symbol'), (item.get('side') or '').upper()): item
        for item in live_positions
    }
    results: Dict[str, Any] = {'checked': 0, 'closed': 0, 'stillOpen': 0, 'errors': []}

    for position in db_positions:
        results['checked'] += 1
        live = live_map.get((convert_symbol_to_bybit(position.symbol), position.side.upper()))

        if live is not None:
            results['stillOpen'] += 1
            live_pnl = safe_float(live.get('unrealisedPnl'))
            if abs(live_pnl - position.unrealised_pnl) > 0.01:
                await db.update_position(position.id, unrealised_pnl=live_pnl, last_updated=utc_iso())
            continue

        try:
            await db.close_position_record(position, SYNC_CLOSE_REASON, pnl=position.unrealised_pnl)
            await db.add_bot_action(
                'position_closed', SYNC_CLOSE_REASON, True,
                symbol=position.symbol, side=position.side, tier=position.tier, position_id=position.id,
                details={'message': "Position closed on Bybit, synced to database", 'positionId': position.id}
            )
            results['closed'] += 1
            logger.info(f"✅ Synced closed position {position.symbol} {position.side}")
        except SQLAlchemyError as e:
            error_message = f"Failed to sync {position.symbol} {position.side}: {e}"
            logger.error(f"❌ {error_message}")
            results['errors'].append(error_message)

    logger.info(f"🔄 Position sync complete: {results['closed']} closed, {results['stillOpen']} still open")
    return {'success': True, 'message': "Position sync completed", 'results': results}


# ============================================================================
# ИСТОРИЯ
# ============================================================================

@router.get("/history")
async def list_history(
    limit: Optional[str] = Query(None),
    offset: Optional[str] = Query(None),
    symbol: Optional[str] = Query(None),
    side: Optional[str] = Query(None),
    tier: Optional[str] = Query(None),
    startDate: Optional[str] = Query(None),
    endDate: Optional[str] = Query(None),
    minPnl: Optional[str] = Query(None),
    maxPnl: Optional[str] = Query(None),
    profitOnly: Optional[str] = Query(None),
    lossOnly: Optional[str] = Query(None),
    db: Database = Depends(get_db)
):
    limit_value = parse_limit(limit, HISTORY_DEFAULT_LIMIT, HISTORY_MAX_LIMIT)
    offset_value = parse_offset(offset)
    validate_side_param(side)

    conditions = []
    if symbol:
        conditions.append(PositionHistory.symbol.like(f"%{symbol}%"))
    if side:
        conditions.append(func.upper(PositionHistory.side) == side.upper())
    if tier:
        conditions.append(PositionHistory.tier == tier)
    if startDate:
        conditions.append(PositionHistory.closed_at >= startDate)
    if endDate:
        conditions.append(PositionHistory.closed_at <= endDate)

    if minPnl is not None:
        min_pnl = parse_float_strict(minPnl)
        if min_pnl is None:
            raise APIError("minPnl must be a valid number", 400, code="INVALID_MIN_PNL")
        conditions.append(PositionHistory.pnl >= min_pnl)
    if maxPnl is not None:
        max_pnl = parse_float_strict(maxPnl)
        if max_pnl is None:
            raise APIError("maxPnl must be a valid number", 400, code="INVALID_MAX_PNL")
        conditions.append(PositionHistory.pnl <= max_pnl)

    if profitOnly == 'true':
        conditions.append(PositionHistory.pnl > 0)
    if lossOnly == 'true':
        conditions.append(PositionHistory.pnl < 0)

    async with db.get_session() as session:
        total_pnl, avg_pnl, total, wins = (await session.execute(
            select(
                func.sum(PositionHistory.pnl),
                func.avg(PositionHistory.pnl),
                func.count(PositionHistory.id),
                func.sum(case((PositionHistory.pnl > 0, 1), else_=0)),
            ).where(*conditions)
        )).one()

        rows = (await session.execute(
            select(PositionHistory)
            .where(*conditions)
            .order_by(PositionHistory.closed_at.desc())
            .limit(limit_value)
            .offset(offset_value)
        )).scalars().all()

    total = total or 0
    return {
        'success': True,
        'history': [row.to_dict() for row in rows],
        'total': total,
        'limit': limit_value,
        'offset': offset_value,
        'stats': {
            'totalPnl': total_pnl or 0.0,
            'avgPnl': avg_pnl or 0.0,
            'winRate': round_to((wins or 0) / total * 100, 2) if total else 0,
            'totalPositions': total,
        },
    }


# ============================================================================
# ДЕЙСТВИЯ БОТА
# ============================================================================

@router.get("/actions")
async def list_actions(
    limit: Optional[str] = Query(None),
    offset: Optional[str] = Query(None),
    actionType: Optional[str] = Query(None),
    symbol: Optional[str] = Query(None),
    success: Optional[str] = Query(None),
    startDate: Optional[str] = Query(None),
    endDate: Optional[str] = Query(None),
    db: Database = Depends(get_db)
):
    limit_value = parse_limit(limit, JOURNAL_DEFAULT_LIMIT, JOURNAL_MAX_LIMIT, clamp=False)
    offset_value = parse_offset(offset)

    conditions = []
    if actionType:
        conditions.append(BotAction.action_type == actionType)
    if symbol:
        conditions.append(BotAction.symbol.like(f"%{symbol}%"))
    if success is not None:
        if success not in ('true', 'false'):
            raise APIError("success must be 'true' or 'false'", 400, code="INVALID_SUCCESS_PARAM")
        conditions.append(BotAction.success.is_(success == 'true'))

    start = _parse_date(startDate, "Invalid startDate format", "INVALID_START_DATE")
    end = _parse_date(endDate, "Invalid endDate format", "INVALID_END_DATE")
    if start:
        conditions.append(BotAction.created_at >= start)
    if end:
        conditions.append(BotAction.created_at <= end)

    async with db.get_session() as session:
        total = await session.scalar(select(func.count(BotAction.id)).where(*conditions))
        rows = (await session.execute(
            select(BotAction)
            .where(*conditions)
            .order_by(BotAction.created_at.desc())
            .limit(limit_value)
            .offset(offset_value)
        )).scalars().all()

    return {
        'success': True,
        'actions': [row.to_dict() for row in rows],
        'total': total or 0,
        'limit': limit_value,
        'offset': offset_value,
    }


# ============================================================================
# ЖУРНАЛ БОТА
# ============================================================================

@router.get("/logs")
async def list_logs(
    limit: Optional[str] = Query(None),
    offset: Optional[str] = Query(None),
    level: Optional[str] = Query(None),
    action: Optional[str] = Query(None),
    startTimestamp: Optional[str] = Query(None),
    endTimestamp: Optional[str] = Query(None),
    alertId: Optional[str] = Query(None),
    positionId: Optional[str] = Query(None),
    db: Database = Depends(get_db)
):
    limit_value = parse_limit(limit, JOURNAL_DEFAULT_LIMIT, JOURNAL_MAX_LIMIT, clamp=False)
    offset_value = parse_offset(offset)

    conditions = []
    if level is not None:
        if level not in LOG_LEVELS:
            raise APIError(f"Level must be one of: {', '.join(LOG_LEVELS)}", 400, code="INVALID_LEVEL")
        conditions.append(BotLog.level == level)
    if action:
        conditions.append(BotLog.action == action)

    if startTimestamp is not None:
        start = parse_int_strict(startTimestamp)
        if start is None or start < 0:
            raise APIError("startTimestamp must be a non-negative integer", 400, code="INVALID_START_TIMESTAMP")
        conditions.append(BotLog.timestamp >= start)
    if endTimestamp is not None:
        end = parse_int_strict(endTimestamp)
        if end is None or end < 0:
            raise APIError("endTimestamp must be a non-negative integer", 400, code="INVALID_END_TIMESTAMP")
        conditions.append(BotLog.timestamp <= end)

    if alertId is not None:
        conditions.append(BotLog.alert_id == parse_positive_id(
            alertId, "alertId must be a positive integer", "INVALID_ALERT_ID"
        ))
    if positionId is not None:
        conditions.append(BotLog.position_id == parse_positive_id(
            positionId, "positionId must be a positive integer", "INVALID_POSITION_ID"
        ))

    async with db.get_session() as session:
        total = await session.scalar(select(func.count(BotLog.id)).where(*conditions))
        rows = (await session.execute(
            select(BotLog)
            .where(*conditions)
            .order_by(BotLog.timestamp.desc())
            .limit(limit_value)
            .offset(offset_value)
        )).scalars().all()

    return {
        'success': True,
        'logs': [row.to_dict() for row in rows],
        'total': total or 0,
        'limit': limit_value,
        'offset': offset_value,
    }


@router.post("/logs")
async def create_log(request: Request, db: Database = Depends(get_db)):
    """Запись в журнал от дашборда (timestamp и createdAt в секундах)"""
    body = await read_json_body(request)

    for field_name, code in (
        ('timestamp', 'MISSING_TIMESTAMP'),
        ('level', 'MISSING_LEVEL'),
        ('action', 'MISSING_ACTION'),
        ('message', 'MISSING_MESSAGE'),
        ('createdAt', 'MISSING_CREATED_AT'),
    ):
        if body.get(field_name) in (None, ''):
            raise APIError(f"{field_name} is required", 400, code=code)

    if body['level'] not in LOG_LEVELS:
        raise APIError(f"Level must be one of: {', '.join(LOG_LEVELS)}", 400, code="INVALID_LEVEL")
    if not _is_non_negative_int(body['timestamp']):
        raise APIError("timestamp must be a non-negative integer", 400, code="INVALID_TIMESTAMP")
    if not _is_non_negative_int(body['createdAt']):
        raise APIError("createdAt must be a non-negative integer", 400, code="INVALID_CREATED_AT")
    if not isinstance(body['message'], str) or not body['message'].strip():
        raise APIError("message must be a non-empty string", 400, code="INVALID_MESSAGE")

    for field_name, code in (('alertId', 'INVALID_ALERT_ID'), ('positionId', 'INVALID_POSITION_ID')):
        value = body.get(field_name)
        if value is not None and not (_is_non_negative_int(value) and value >= 1):
            raise APIError(f"{field_name} must be a positive integer", 400, code=code)

    details = body.get('details')
    if details is not None and not isinstance(details, str):
        details = safe_json_dumps(details)

    async with db.get_session() as session:
        log = BotLog(
            timestamp=body['timestamp'],
            level=body['level'],
            action=str(body['action']),
            message=body['message'].strip(),
            details=details,
            alert_id=body.get('alertId'),
            position_id=body.get('positionId'),
            created_at=body['createdAt'],
        )
        session.add(log)
        await session.flush()
        data = log.to_dict()

    return JSONResponse(content={'success': True, 'log': data}, status_code=201)


# ============================================================================
# ИМПОРТ ИСТОРИИ
# ============================================================================

@router.post("/import-bybit-history")
async def import_bybit_history(
    request: Request,
    db: Database = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
    fetcher: ProxyFallbackFetcher = Depends(get_proxy_fetcher)
):
    body = await read_json_body(request)
    api_key = body.get('apiKey')
    api_secret = body.get('apiSecret')

    if not api_key or not api_secret:
        raise APIError("Missing API credentials", 400, response_data={'message': "Missing API credentials"})

    days_back = DEFAULT_IMPORT_DAYS
    if body.get('daysBack') is not None:
        days_back = parse_int_strict(body['daysBack'])
        if days_back is None or days_back < 1:
            raise APIError("daysBack must be a positive integer", 400, code="INVALID_DAYS_BACK")

    importer = BybitHistoryImporter(db, fetcher, settings)
    try:
        return await importer.import_history(api_key, api_secret, days_back)
    except (SQLAlchemyError, BybitAPIError, NetworkError) as e:
        logger.error(f"❌ History import failed: {e}")
        raise APIError(str(e), 500, response_data={'message': str(e)})


@router.post("/sync-bybit-history")
async def sync_bybit_history(
    db: Database = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
    fetcher: ProxyFallbackFetcher = Depends(get_proxy_fetcher)
):
    """Полная замена истории позиций данными Bybit за 30 дней (ключи из настроек бота)"""
    bot_settings = await db.get_bot_settings()
    if bot_settings is None or not bot_settings.has_credentials:
        message = "Bybit API credentials not configured in bot settings"
        raise APIError(message, 400, response_data={'message': message})

    importer = BybitHistoryImporter(db, fetcher, settings)
    try:
        result = await importer.sync_history(bot_settings.api_key, bot_settings.api_secret, DEFAULT_IMPORT_DAYS)
    except SQLAlchemyError as e:
        logger.error(f"❌ History sync failed: {e}")
        raise APIError(str(e), 500, response_data={'message': str(e)})

    if not result['success']:
        raise APIError(result['message'], 502, response_data=result)
    return result

"""
Trading Bot Export Service
Экспорт истории позиций в JSON и CSV (pandas) с данными исходного алерта
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import pandas as pd
from sqlalchemy import func, select

from data.database import Database
from data.models import PositionHistory
from utils.helpers import days_ago_iso, parse_int_strict, safe_json_loads, split_csv_param, utc_iso
from utils.logger import setup_logger


DEFAULT_EXPORT_DAYS = 30

VALID_SIDES = ('Buy', 'Sell')

# (заголовок CSV, ключ позиции или None, ключ алерта или None)
CSV_COLUMNS = [
    ('Position ID', 'positionId', None),
    ('Symbol', 'symbol', None),
    ('Side', 'side', None),
    ('Tier', 'tier', None),
    ('Entry Price', 'entryPrice', None),
    ('Close Price', 'closePrice', None),
    ('Quantity', 'quantity', None),
    ('Leverage', 'leverage', None),
    ('PnL (USDT)', 'pnl', None),
    ('PnL (%)', 'pnlPercent', None),
    ('Close Reason', 'closeReason', None),
    ('TP1 Hit', 'tp1Hit', None),
    ('TP2 Hit', 'tp2Hit', None),
    ('TP3 Hit', 'tp3Hit', None),
    ('Confirmation Count', 'confirmationCount', None),
    ('Opened At', 'openedAt', None),
    ('Closed At', 'closedAt', None),
    ('Duration (min)', 'durationMinutes', None),
    ('Alert Strength', None, 'strength'),
    ('Alert Tier Numeric', None, 'tierNumeric'),
    ('Alert Mode', None, 'mode'),
    ('ATR', None, 'atr'),
    ('Volume Ratio', None, 'volumeRatio'),
    ('Session', None, 'session'),
    ('Regime', None, 'regime'),
    ('Regime Confidence', None, 'regimeConfidence'),
    ('MTF Agreement', None, 'mtfAgreement'),
    ('ADX', None, 'adx'),
    ('MFI', None, 'mfi'),
    ('EMA Alignment', None, 'emaAlignment'),
    ('VWAP Position', None, 'vwapPosition'),
    ('Institutional Flow', None, 'institutionalFlow'),
    ('Accumulation', None, 'accumulation'),
    ('Volume Climax', None, 'volumeClimax'),
    ('In OB', None, 'inOb'),
    ('In FVG', None, 'inFvg'),
    ('OB Score', None, 'obScore'),
    ('FVG Score', None, 'fvgScore'),
    ('Liquidity Sweep', None, 'liquiditySweep'),
    ('CVD Divergence', None, 'cvdDivergence'),
    ('BTC Correlation', None, 'btcCorrelation'),
    ('Market Condition', None, 'marketCondition'),
    ('Fake Breakout Penalty', None, 'fakeBreakoutPenalty'),
    ('Wave Multiplier', None, 'waveMultiplier'),
    ('Volume Multiplier', None, 'volumeMultiplier'),
    ('Regime Multiplier', None, 'regimeMultiplier'),
    ('TradingView Timestamp', None, 'tvTs'),
]

CSV_HEADERS = [header for header, _, _ in CSV_COLUMNS]

BOOLEAN_FIELDS = ('tp1Hit', 'tp2Hit', 'tp3Hit')


@dataclass
class ExportFilters:
    """Фильтры экспорта из query параметров"""
    format: str = 'json'
    date_from: Optional[str] = None
    date_to: Optional[str] = None
    days: Optional[str] = None
    all: bool = False
    tier: Optional[str] = None
    symbol: Optional[str] = None
    side: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'format': self.format,
            'from': self.date_from,
            'to': self.date_to,
            'days': self.days,
            'all': self.all,
            'tier': self.tier,
            'symbol': self.symbol,
            'side': self.side,
        }


@dataclass
class ExportResult:
    filters: ExportFilters
    positions: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.positions)


def _first(*values: Any) -> Any:
    """Первое непустое значение или None"""
    for value in values:
        if value:
            return value
    return None


def _nested(data: Dict[str, Any], section: str, key: str) -> Any:
    block = data.get(section)
    return block.get(key) if isinstance(block, dict) else None


def extract_alert_fields(alert_data: Optional[str]) -> Optional[Dict[str, Any]]:
    """
    Поля алерта из сохраненного alertData (JSON)

    Часть полей лежит во вложенных блоках timing/smcContext/technical/filters,
    плоские поля используются как запасной вариант.
    """
    data = safe_json_loads(alert_data)
    if not isinstance(data, dict):
        return None

    return {
        'strength': _first(data.get('strength')),
        'tierNumeric': _first(data.get('tierNumeric')),
        'mode': _first(data.get('mode')),
        'atr': _first(data.get('atr')),
        'volumeRatio': _first(data.get('volumeRatio')),
        'session': _first(_nested(data, 'timing', 'session'), data.get('session')),
        'regime': _first(_nested(data, 'smcContext', 'regime'), data.get('regime')),
        'regimeConfidence': _first(_nested(data, 'smcContext', 'regimeConfidence'), data.get('regimeConfidence')),
        'mtfAgreement': _first(_nested(data, 'technical', 'mtfAgreement'), data.get('mtfAgreement')),
        'adx': _first(_nested(data, 'technical', 'adx')),
        'mfi': _first(_nested(data, 'technical', 'mfi')),
        'emaAlignment': _first(_nested(data, 'technical', 'emaAlignment')),
        'vwapPosition': _first(_nested(data, 'technical', 'vwapPosition')),
        'institutionalFlow': _first(data.get('institutionalFlow')),
        'accumulation': _first(data.get('accumulation')),
        'volumeClimax': _first(data.get('volumeClimax')),
        'inOb': _first(data.get('inOb')),
        'inFvg': _first(data.get('inFvg')),
        'obScore': _first(data.get('obScore')),
        'fvgScore': _first(data.get('fvgScore')),
        'liquiditySweep': _first(_nested(data, 'smcContext', 'liquiditySweep')),
        'cvdDivergence': _first(_nested(data, 'smcContext', 'cvdDivergence')),
        'btcCorrelation': _first(_nested(data, 'smcContext', 'btcCorrelation')),
        'marketCondition': _first(_nested(data, 'filters', 'marketCondition')),
        'fakeBreakoutPenalty': _first(_nested(data, 'filters', 'fakeBreakoutPenalty')),
        'waveMultiplier': _first(_nested(data, 'filters', 'waveMultiplier')),
        'volumeMultiplier': _first(_nested(data, 'filters', 'volumeMultiplier')),
        'regimeMultiplier': _first(_nested(data, 'filters', 'regimeMultiplier')),
        'tvTs': _first(data.get('tvTs')),
    }


def enrich_position(position: PositionHistory) -> Dict[str, Any]:
    return {
        'positionId': position.id,
        'symbol': position.symbol,
        'side': position.side,
        'tier': position.tier,
        'entryPrice': position.entry_price,
        'closePrice': position.close_price,
        'quantity': position.quantity,
        'leverage': position.leverage,
        'pnl': position.pnl,
        'pnlPercent': position.pnl_percent,
        'closeReason': position.close_reason,
        'tp1Hit': position.tp1_hit,
        'tp2Hit': position.tp2_hit,
        'tp3Hit': position.tp3_hit,
        'confirmationCount': position.confirmation_count,
        'openedAt': position.opened_at,
        'closedAt': position.closed_at,
        'durationMinutes': position.duration_minutes,
        'alert': extract_alert_fields(position.alert_data),
    }


def _csv_value(position: Dict[str, Any], position_key: Optional[str], alert_key: Optional[str]) -> Any:
    if position_key in BOOLEAN_FIELDS:
        return 'true' if position[position_key] else 'false'
    if position_key == 'durationMinutes':
        return position[position_key] or ''
    if position_key:
        return position[position_key]

    alert = position.get('alert') or {}
    value = alert.get(alert_key)
    return '' if value is None else value


def positions_to_csv(positions: List[Dict[str, Any]]) -> str:
    """CSV с фиксированным набором колонок"""
    rows = [
        [_csv_value(position, position_key, alert_key) for _, position_key, alert_key in CSV_COLUMNS]
        for position in positions
    ]
    frame = pd.DataFrame(rows, columns=CSV_HEADERS)
    return frame.to_csv(index=False, lineterminator='\n')


def export_filename() -> str:
    return f"positions_export_{utc_iso()[:10]}.csv"


class PositionExporter:
    """Выборка position_history по фильтрам дашборда"""

    def __init__(self, db: Database):
        self.db = db
        self.logger = setup_logger(f"{__name__}.PositionExporter")

    def _build_conditions(self, filters: ExportFilters) -> List[Any]:
        conditions = []
        closed_at = PositionHistory.closed_at
        days = parse_int_strict(filters.days)

        if filters.all:
            self.logger.info("📤 Exporting ALL positions")
        elif days is not None:
            conditions.append(closed_at >= days_ago_iso(days))
            self.logger.info(f"📤 Exporting last {days} days")
        elif filters.date_from or filters.date_to:
            if filters.date_from:
                conditions.append(closed_at >= filters.date_from)
            if filters.date_to:
                conditions.append(closed_at <= filters.date_to)
            self.logger.info(f"📤 Exporting range: {filters.date_from} to {filters.date_to}")
        else:
            conditions.append(closed_at >= days_ago_iso(DEFAULT_EXPORT_DAYS))
            self.logger.info(f"📤 Exporting last {DEFAULT_EXPORT_DAYS} days (default)")

        tiers = split_csv_param(filters.tier)
        if tiers:
            conditions.append(PositionHistory.tier.in_(tiers))

        symbols = split_csv_param(filters.symbol)
        if symbols:
            conditions.append(PositionHistory.symbol.in_(symbols))

        if filters.side in VALID_SIDES:
            conditions.append(func.upper(PositionHistory.side) == filters.side.upper())

        return conditions

    async def export(self, filters: ExportFilters) -> ExportResult:
        stmt = (
            select(PositionHistory)
            .where(*self._build_conditions(filters))
            .order_by(PositionHistory.closed_at.desc())
        )
        async with self.db.get_session() as session:
            rows = (await session.execute(stmt)).scalars().all()
            positions = [enrich_position(row) for row in rows]

        self.logger.info(f"📤 Found {len(positions)} positions to export")
        return ExportResult(filters=filters, positions=positions)

"""
Trading Bot History Importer
Импорт закрытых позиций Bybit (closed PnL) в position_history через цепочку прокси
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import delete, select

from app.config.settings import Settings, get_settings
from core.bybit_client import BybitAPIError, CATEGORY_LINEAR, opposite_side
from core.proxy_fallback import ProxyFallbackFetcher
from data.database import Database
from data.models import PositionHistory
from utils.helpers import (
    NetworkError, get_current_timestamp, parse_iso_datetime, safe_float, safe_int,
    timestamp_to_datetime, utc_iso
)
from utils.logger import setup_logger


# ============================================================================
# CONSTANTS
# ============================================================================

CLOSED_PNL_ENDPOINT = "/v5/position/closed-pnl"

DAY_MS = 24 * 60 * 60 * 1000
SEGMENT_MS = 7 * DAY_MS
PAGE_LIMIT = 100
MAX_PAGES_PER_SEGMENT = 20

ENTRY_PRICE_TOLERANCE = 0.001
CLOSE_TIME_TOLERANCE_MS = 300000

IMPORTED_TIER = "Standard"
TAKER_FEE_RATE = 0.00055


@dataclass
class HistoryKey:
    """Поля для поиска дубликатов"""
    symbol: str
    side: str
    entry_price: float
    closed_at_ms: Optional[int]

    def matches(self, other: "HistoryKey") -> bool:
        if self.closed_at_ms is None or other.closed_at_ms is None:
            return False
        return (
            self.symbol == other.symbol
            and self.side.upper() == other.side.upper()
            and abs(self.entry_price - other.entry_price) < other.entry_price * ENTRY_PRICE_TOLERANCE
            and abs(self.closed_at_ms - other.closed_at_ms) < CLOSE_TIME_TOLERANCE_MS
        )


def build_segments(days_back: int, now_ms: Optional[int] = None) -> List[Tuple[int, int]]:
    """Интервал [now - days, now] по кускам не длиннее 7 дней (лимит closed-pnl)"""
    now_ms = now_ms or get_current_timestamp()
    segments = []
    start = now_ms - days_back * DAY_MS
    while start < now_ms:
        end = min(start + SEGMENT_MS, now_ms)
        segments.append((start, end))
        start = end
    return segments


def resolve_close_reason(pnl: float) -> str:
    if pnl > 0:
        return "tp_main_hit"
    if pnl < 0:
        return "sl_hit"
    return "closed_on_exchange"


def map_closed_pnl(record: Dict[str, Any]) -> Dict[str, Any]:
    """
    Запись closed-pnl Bybit -> поля position_history

    side в closed-pnl - сторона закрывающего ордера (Sell закрывает Buy),
    в историю пишется сторона позиции.
    """
    entry_price = safe_float(record.get('avgEntryPrice'))
    quantity = safe_float(record.get('qty'))
    leverage = safe_int(record.get('leverage'), 1) or 1
    pnl = safe_float(record.get('closedPnl'))

    opened_at = timestamp_to_datetime(safe_int(record.get('createdTime')))
    closed_at = timestamp_to_datetime(safe_int(record.get('updatedTime')))

    initial_margin = quantity * entry_price / leverage
    pnl_percent = pnl / initial_margin * 100 if initial_margin > 0 else 0.0

    return {
        'position_id': None,
        'alert_id': None,
        'symbol': record.get('symbol', ''),
        'side': opposite_side(record.get('side', 'Sell')).upper(),
        'tier': IMPORTED_TIER,
        'entry_price': entry_price,
        'close_price': safe_float(record.get('avgExitPrice')),
        'quantity': quantity,
        'leverage': leverage,
        'pnl': pnl,
        'pnl_percent': pnl_percent,
        'close_reason': resolve_close_reason(pnl),
        'tp1_hit': False,
        'tp2_hit': False,
        'tp3_hit': False,
        'confirmation_count': 0,
        'opened_at': utc_iso(opened_at),
        'closed_at': utc_iso(closed_at),
        'duration_minutes': round((closed_at - opened_at).total_seconds() / 60),
    }


# ============================================================================
# ПОЛНАЯ СИНХРОНИЗАЦИЯ: ФИЛЬТР FUNDING, АГРЕГАЦИЯ, КОМИССИИ
# ============================================================================

def is_real_position(record: Dict[str, Any]) -> bool:
    """
    False для записей funding: мгновенное "открытие-закрытие" без движения цены
    """
    entry_price = safe_float(record.get('avgEntryPrice'))
    exit_price = safe_float(record.get('avgExitPrice'))
    pnl = abs(safe_float(record.get('closedPnl')))
    duration_seconds = (safe_int(record.get('updatedTime')) - safe_int(record.get('createdTime'))) / 1000
    price_diff_pct = abs(entry_price - exit_price) / entry_price * 100 if entry_price > 0 else 0.0

    if duration_seconds < 10 and price_diff_pct < 0.01:
        return False
    if pnl < 0.0001 and price_diff_pct < 0.0001:
        return False
    if duration_seconds < 30 and price_diff_pct < 0.001 and pnl < 0.01:
        return False
    return True


def aggregate_partial_closes(records: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """
    Частичные закрытия одной позиции -> одна запись

    Группа: symbol + side + цена входа (2 знака) + день открытия.
    qty и closedPnl суммируются, цена выхода средневзвешенная по qty,
    updatedTime берется у последнего закрытия.
    """
    groups: Dict[Tuple[str, str, float, int], List[Dict[str, Any]]] = {}
    for record in records:
        key = (
            record.get('symbol', ''),
            record.get('side', ''),
            round(safe_float(record.get('avgEntryPrice')), 2),
            safe_int(record.get('createdTime')) // DAY_MS,
        )
        groups.setdefault(key, []).append(record)

    aggregated = []
    for group in groups.values():
        if len(group) == 1:
            aggregated.append({**group[0], 'partialCloseCount': 1})
            continue

        group.sort(key=lambda r: safe_int(r.get('updatedTime')))
        total_qty = sum(safe_float(r.get('qty')) for r in group)
        total_pnl = sum(safe_float(r.get('closedPnl')) for r in group)
        exit_value = sum(safe_float(r.get('qty')) * safe_float(r.get('avgExitPrice')) for r in group)

        aggregated.append({
            **group[0],
            'qty': str(total_qty),
            'closedPnl': str(total_pnl),
            'avgExitPrice': str(exit_value / total_qty if total_qty else 0),
            'updatedTime': group[-1].get('updatedTime'),
            'orderId': f"{group[0].get('orderId', '')}_aggregated_{len(group)}",
            'partialCloseCount': len(group),
        })

    return aggregated


def calculate_fees(values: Dict[str, Any]) -> Dict[str, float]:
    """Gross PnL и оценка комиссий (taker с обеих сторон, остаток - funding)"""
    entry_price = values['entry_price']
    close_price = values['close_price']
    quantity = values['quantity']

    if values['side'] == 'BUY':
        gross_pnl = (close_price - entry_price) * quantity
    else:
        gross_pnl = (entry_price - close_price) * quantity

    total_fees = abs(gross_pnl - values['pnl'])
    trading_fees = (quantity * entry_price + quantity * close_price) * TAKER_FEE_RATE

    return {
        'gross_pnl': gross_pnl,
        'trading_fees': trading_fees,
        'funding_fees': max(0.0, total_fees - trading_fees),
        'total_fees': total_fees,
    }


def _iso_to_ms(value: Optional[str]) -> Optional[int]:
    parsed = parse_iso_datetime(value) if value else None
    return int(parsed.timestamp() * 1000) if parsed else None


class BybitHistoryImporter:
    """
    Импорт истории Bybit

    Каждый 7-дневный сегмент читается постранично (cursor, до 20 страниц).
    Ошибка сегмента логируется, импорт продолжается со следующего.
    """

    def __init__(
        self,
        db: Database,
        fetcher: ProxyFallbackFetcher,
        settings: Optional[Settings] = None
    ):
        self.db = db
        self.fetcher = fetcher
        self.settings = settings or get_settings()
        self.logger = setup_logger(f"{__name__}.BybitHistoryImporter")

    async def fetch_page(
        self,
        api_key: str,
        api_secret: str,
        start_ms: int,
        end_ms: int,
        cursor: Optional[str] = None
    ) -> Tuple[List[Dict[str, Any]], Optional[str]]:
        params: Dict[str, Any] = {
            'category': CATEGORY_LINEAR,
            'startTime': str(start_ms),
            'endTime': str(end_ms),
            'limit': PAGE_LIMIT,
        }
        if cursor:
            params['cursor'] = cursor

        fetched = await self.fetcher.fetch(CLOSED_PNL_ENDPOINT, params, api_key, api_secret)
        return fetched.result.get('list') or [], fetched.result.get('nextPageCursor') or None

    async def fetch_segment(self, api_key: str, api_secret: str, start_ms: int, end_ms: int) -> List[Dict[str, Any]]:
        records: List[Dict[str, Any]] = []
        cursor: Optional[str] = None

        for page in range(1, MAX_PAGES_PER_SEGMENT + 1):
            positions, cursor = await self.fetch_page(api_key, api_secret, start_ms, end_ms, cursor)
            records.extend(positions)
            if not cursor:
                break
            if page == MAX_PAGES_PER_SEGMENT:
                self.logger.warning(f"⚠️ Reached safety limit of {MAX_PAGES_PER_SEGMENT} pages for segment")

        return records

    async def fetch_all_segments(
        self,
        api_key: str,
        api_secret: str,
        segments: List[Tuple[int, int]]
    ) -> Tuple[List[Dict[str, Any]], int]:
        """
        Все записи по сегментам

        Returns:
            (records, failed_segments)
        """
        records: List[Dict[str, Any]] = []
        failed = 0
        for index, (start_ms, end_ms) in enumerate(segments, start=1):
            start_date = utc_iso(timestamp_to_datetime(start_ms))[:10]
            end_date = utc_iso(timestamp_to_datetime(end_ms))[:10]
            try:
                segment_records = await self.fetch_segment(api_key, api_secret, start_ms, end_ms)
            except (BybitAPIError, NetworkError) as e:
                self.logger.error(f"❌ Segment {index}/{len(segments)} ({start_date} - {end_date}) failed: {e}")
                failed += 1
                continue

            records.extend(segment_records)
            self.logger.info(
                f"📥 Segment {index}/{len(segments)}: {len(segment_records)} positions, total {len(records)}"
            )
        return records, failed

    async def import_history(self, api_key: str, api_secret: str, days_back: int = 30) -> Dict[str, Any]:
        """
        Импорт за последние days_back дней

        Returns:
            {success, message, imported, skipped, total, segments}
        """
        segments = build_segments(days_back)
        self.logger.info(f"🚀 Starting Bybit history import: {days_back} days, {len(segments)} segments")

        records, _ = await self.fetch_all_segments(api_key, api_secret, segments)

        if not records:
            return {
                'success': False,
                'message': "Failed to fetch data from Bybit - all proxies blocked by CloudFront",
                'imported': 0,
                'skipped': 0,
                'total': 0,
            }

        async with self.db.get_session() as session:
            existing = (await session.execute(select(PositionHistory))).scalars().all()
            known = [
                HistoryKey(row.symbol, row.side, row.entry_price, _iso_to_ms(row.closed_at))
                for row in existing
            ]
            self.logger.info(f"📊 Found {len(known)} positions in bot history")

            imported = 0
            skipped = 0
            for record in records:
                values = map_closed_pnl(record)
                key = HistoryKey(
                    values['symbol'], values['side'], values['entry_price'], _iso_to_ms(values['closed_at'])
                )
                if any(existing_key.matches(key) for existing_key in known):
                    skipped += 1
                    continue

                session.add(PositionHistory(**values))
                known.append(key)
                imported += 1

        self.logger.info(f"✅ Import complete: {imported} imported, {skipped} skipped of {len(records)}")
        return {
            'success': True,
            'message': f"✅ Import complete: {imported} new positions, {skipped} already in database",
            'imported': imported,
            'skipped': skipped,
            'total': len(records),
            'segments': len(segments),
        }

    async def sync_history(self, api_key: str, api_secret: str, days_back: int = 30) -> Dict[str, Any]:
        """
        Полная пересинхронизация position_history с Bybit

        Записи funding отбрасываются, частичные закрытия объединяются,
        таблица заменяется целиком одной транзакцией. Если ни один сегмент
        не загрузился, история не трогается.
        """
        segments = build_segments(days_back)
        self.logger.info(f"🔄 Full Bybit history sync: {days_back} days, {len(segments)} segments")

        records, failed = await self.fetch_all_segments(api_key, api_secret, segments)
        if failed == len(segments):
            return {
                'success': False,
                'message': "Failed to fetch data from Bybit - history left unchanged",
                'deleted': 0,
                'imported': 0,
            }

        real_records = [record for record in records if is_real_position(record)]
        filtered = len(records) - len(real_records)
        positions = aggregate_partial_closes(real_records)
        self.logger.info(
            f"🔍 {len(real_records)} real positions, {filtered} funding records removed, "
            f"{len(positions)} after aggregation"
        )

        async with self.db.get_session() as session:
            deleted = (await session.execute(delete(PositionHistory))).rowcount or 0
            for record in positions:
                values = map_closed_pnl(record)
                values.update(calculate_fees(values))
                values['partial_close_count'] = record['partialCloseCount']
                session.add(PositionHistory(**values))

        self.logger.info(f"✅ History sync complete: {deleted} deleted, {len(positions)} imported")
        return {
            'success': True,
            'message': f"✅ Synced {len(positions)} positions from Bybit",
            'deleted': deleted,
            'imported': len(positions),
            'filtered': filtered,
            'aggregated': len(real_records) - len(positions),
            'daysBack': days_back,
        }

"""
Тесты импорта закрытых позиций Bybit
"""

import pytest
from sqlalchemy import select

from core.bybit_client import BybitAPIError
from core.proxy_fallback import ProxyFetchResult
from data.models import PositionHistory
from services.history_importer import (
    DAY_MS, BybitHistoryImporter, aggregate_partial_closes, build_segments, calculate_fees, is_real_position,
    map_closed_pnl, resolve_close_reason
)
from utils.helpers import NetworkError, get_current_timestamp, utc_iso, timestamp_to_datetime


def closed_pnl(symbol='BTCUSDT', side='Sell', entry='50000', exit_price='51000', pnl='10',
               created=None, updated=None, qty='0.01', leverage='10'):
    updated = updated or get_current_timestamp() - DAY_MS
    created = created or updated - 60 * 60 * 1000
    return {
        'symbol': symbol,
        'side': side,
        'avgEntryPrice': entry,
        'avgExitPrice': exit_price,
        'closedPnl': pnl,
        'qty': qty,
        'leverage': leverage,
        'createdTime': str(created),
        'updatedTime': str(updated),
    }


class FakeFetcher:
    """Страницы closed-pnl по порядку запросов"""

    def __init__(self, pages):
        self.pages = pages
        self.params = []

    async def fetch(self, endpoint, params, api_key, api_secret):
        self.params.append(dict(params))
        page = self.pages.pop(0) if self.pages else {'list': []}
        if isinstance(page, Exception):
            raise page
        return ProxyFetchResult(result=page, url="https://api.bybit.com", attempts=1)


class TestMapping:

    def test_segments_cover_interval(self):
        now = 100 * DAY_MS
        segments = build_segments(16, now_ms=now)

        assert segments[0][0] == now - 16 * DAY_MS
        assert segments[-1][1] == now
        assert [end - start for start, end in segments] == [7 * DAY_MS, 7 * DAY_MS, 2 * DAY_MS]

    def test_close_reason(self):
        assert resolve_close_reason(5) == 'tp_main_hit'
        assert resolve_close_reason(-5) == 'sl_hit'
        assert resolve_close_reason(0) == 'closed_on_exchange'

    def test_map_record(self):
        record = closed_pnl(side='Sell', pnl='-5', created=1700000000000, updated=1700003600000)

        values = map_closed_pnl(record)

        assert values['side'] == 'BUY'
        assert values['tier'] == 'Standard'
        assert values['entry_price'] == 50000
        assert values['pnl_percent'] == pytest.approx(-10.0)
        assert values['close_reason'] == 'sl_hit'
        assert values['duration_minutes'] == 60
        assert values['closed_at'] == utc_iso(timestamp_to_datetime(1700003600000))
        assert values['confirmation_count'] == 0

    def test_buy_close_maps_to_short(self):
        assert map_closed_pnl(closed_pnl(side='Buy'))['side'] == 'SELL'


class TestImport:

    async def test_imports_and_paginates(self, db, test_settings):
        fetcher = FakeFetcher([
            {'list': [closed_pnl(symbol='BTCUSDT')], 'nextPageCursor': 'page-2'},
            {'list': [closed_pnl(symbol='ETHUSDT', entry='3000')], 'nextPageCursor': ''},
        ])
        importer = BybitHistoryImporter(db, fetcher, test_settings)

        result = await importer.import_history('k', 's', days_back=3)

        assert result['success'] is True
        assert result['imported'] == 2
        assert result['skipped'] == 0
        assert result['segments'] == 1
        assert fetcher.params[0]['category'] == 'linear'
        assert 'cursor' not in fetcher.params[0]
        assert fetcher.params[1]['cursor'] == 'page-2'

        async with db.get_session() as session:
            rows = (await session.execute(select(PositionHistory))).scalars().all()
        assert sorted(row.symbol for row in rows) == ['BTCUSDT', 'ETHUSDT']

    async def test_skips_duplicates(self, db, test_settings):
        record = closed_pnl()
        importer = BybitHistoryImporter(db, FakeFetcher([{'list': [record]}]), test_settings)
        await importer.import_history('k', 's', days_back=3)

        # та же сделка с небольшим расхождением цены и времени
        updated = int(record['updatedTime']) + 60000
        repeat = closed_pnl(entry='50010', updated=updated)
        importer = BybitHistoryImporter(db, FakeFetcher([{'list': [repeat, closed_pnl(symbol='XRPUSDT')]}]),
                                        test_settings)

        result = await importer.import_history('k', 's', days_back=3)

        assert result['imported'] == 1
        assert result['skipped'] == 1
        assert result['total'] == 2

    async def test_failed_segment_is_skipped(self, db, test_settings):
        fetcher = FakeFetcher([
            NetworkError("Geo-blocked by CloudFront"),
            {'list': [closed_pnl()]},
        ])
        importer = BybitHistoryImporter(db, fetcher, test_settings)

        result = await importer.import_history('k', 's', days_back=10)

        assert result['success'] is True
        assert result['imported'] == 1
        assert result['segments'] == 2

    async def test_nothing_fetched(self, db, test_settings):
        fetcher = FakeFetcher([BybitAPIError(ret_code=10003, ret_msg="invalid key")])
        importer = BybitHistoryImporter(db, fetcher, test_settings)

        result = await importer.import_history('k', 's', days_back=5)

        assert result['success'] is False
        assert result['imported'] == 0
        assert "all proxies blocked" in result['message']


class TestFullSync:

    def test_funding_records_filtered(self):
        updated = 1700000000000
        funding = closed_pnl(entry='50000', exit_price='50000', pnl='0', created=updated, updated=updated)

        assert is_real_position(funding) is False
        assert is_real_position(closed_pnl()) is True

    def test_partial_closes_aggregated(self):
        created = 1700000000000
        first = closed_pnl(qty='0.01', exit_price='51000', pnl='10', created=created, updated=created + 60000)
        second = closed_pnl(qty='0.03', exit_price='52000', pnl='40', created=created, updated=created + 120000)
        other = closed_pnl(symbol='ETHUSDT', entry='3000', created=created)
        first['orderId'] = 'o-1'

        records = aggregate_partial_closes([second, other, first])

        assert len(records) == 2
        merged = records[0]
        assert float(merged['qty']) == pytest.approx(0.04)
        assert float(merged['closedPnl']) == pytest.approx(50)
        assert float(merged['avgExitPrice']) == pytest.approx(51750)
        assert merged['updatedTime'] == str(created + 120000)
        assert merged['orderId'] == 'o-1_aggregated_2'
        assert merged['partialCloseCount'] == 2
        assert records[1]['partialCloseCount'] == 1

    def test_fee_estimate(self):
        fees = calculate_fees({'side': 'BUY', 'entry_price': 100.0, 'close_price': 110.0, 'quantity': 1.0, 'pnl': 9.8})

        assert fees['gross_pnl'] == pytest.approx(10.0)
        assert fees['total_fees'] == pytest.approx(0.2)
        assert fees['trading_fees'] == pytest.approx(0.1155)
        assert fees['funding_fees'] == pytest.approx(0.0845)

    def test_short_gross_pnl(self):
        fees = calculate_fees({'side': 'SELL', 'entry_price': 100.0, 'close_price': 90.0, 'quantity': 2.0, 'pnl': 19.0})
        assert fees['gross_pnl'] == pytest.approx(20.0)

    async def test_replaces_history(self, db, test_settings):
        async with db.get_session() as session:
            session.add(PositionHistory(**map_closed_pnl(closed_pnl(symbol='OLDUSDT'))))

        created = get_current_timestamp() - DAY_MS
        fetcher = FakeFetcher([{'list': [
            closed_pnl(qty='0.01', exit_price='51000', pnl='10', created=created, updated=created + 60000),
            closed_pnl(qty='0.03', exit_price='52000', pnl='40', created=created, updated=created + 120000),
            closed_pnl(symbol='ETHUSDT', entry='3000', exit_price='3000', pnl='0', created=created, updated=created),
            closed_pnl(symbol='SOLUSDT', entry='100', exit_price='110', pnl='1'),
        ]}])
        importer = BybitHistoryImporter(db, fetcher, test_settings)

        result = await importer.sync_history('k', 's', days_back=3)

        assert result['success'] is True
        assert result['deleted'] == 1
        assert result['imported'] == 2
        assert result['filtered'] == 1
        assert result['aggregated'] == 1

        async with db.get_session() as session:
            rows = (await session.execute(select(PositionHistory).order_by(PositionHistory.id))).scalars().all()
        assert [row.symbol for row in rows] == ['BTCUSDT', 'SOLUSDT']
        assert rows[0].side == 'BUY'
        assert rows[0].partial_close_count == 2
        assert rows[0].pnl == pytest.approx(50)
        assert rows[0].gross_pnl == pytest.approx(70)
        assert rows[1].partial_close_count == 1

    async def test_failed_fetch_keeps_history(self, db, test_settings):
        async with db.get_session() as session:
            session.add(PositionHistory(**map_closed_pnl(closed_pnl())))
        importer = BybitHistoryImporter(db, FakeFetcher([NetworkError("blocked")]), test_settings)

        result = await importer.sync_history('k', 's', days_back=3)

        assert result['success'] is False
        assert result['imported'] == 0
        async with db.get_session() as session:
            assert len((await session.execute(select(PositionHistory))).scalars().all()) == 1

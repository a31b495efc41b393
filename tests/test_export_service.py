"""
Тесты экспорта истории позиций
"""

import io
import json

import pandas as pd

from data.models import PositionHistory
from services.export_service import (
    CSV_HEADERS, ExportFilters, PositionExporter, enrich_position, extract_alert_fields, positions_to_csv
)
from utils.helpers import days_ago_iso


def history_row(**overrides):
    values = {
        'symbol': 'BTCUSDT',
        'side': 'BUY',
        'tier': 'Premium',
        'entry_price': 50000.0,
        'close_price': 51000.0,
        'quantity': 0.01,
        'leverage': 10,
        'pnl': 10.0,
        'pnl_percent': 20.0,
        'close_reason': 'tp_main_hit',
        'tp1_hit': True,
        'opened_at': days_ago_iso(3),
        'closed_at': days_ago_iso(2),
        'duration_minutes': 1440,
    }
    values.update(overrides)
    return PositionHistory(**values)


async def seed(db, *rows):
    async with db.get_session() as session:
        session.add_all(rows)


class TestAlertFields:

    def test_nested_blocks_preferred(self):
        alert_data = json.dumps({
            'strength': 0.9,
            'session': 'flat-session',
            'timing': {'session': 'london'},
            'smcContext': {'regime': 'trending', 'liquiditySweep': True},
            'technical': {'adx': 31.5},
            'filters': {'waveMultiplier': 1.2},
            'tvTs': 1700000000,
        })

        fields = extract_alert_fields(alert_data)

        assert fields['strength'] == 0.9
        assert fields['session'] == 'london'
        assert fields['regime'] == 'trending'
        assert fields['liquiditySweep'] is True
        assert fields['adx'] == 31.5
        assert fields['waveMultiplier'] == 1.2
        assert fields['mfi'] is None
        assert fields['tvTs'] == 1700000000

    def test_flat_fallback(self):
        fields = extract_alert_fields(json.dumps({'session': 'asia', 'regime': 'ranging'}))
        assert fields['session'] == 'asia'
        assert fields['regime'] == 'ranging'

    def test_invalid_alert_data(self):
        assert extract_alert_fields(None) is None
        assert extract_alert_fields("not json") is None
        assert extract_alert_fields("[1, 2]") is None


class TestCsv:

    def test_headers_and_values(self):
        position = enrich_position(history_row(
            id=7, tp2_hit=False, tp3_hit=False, confirmation_count=2, duration_minutes=None,
            alert_data=json.dumps({'strength': 0.7, 'timing': {'session': 'ny'}})
        ))

        frame = pd.read_csv(io.StringIO(positions_to_csv([position])), dtype=str, keep_default_na=False)

        assert list(frame.columns) == CSV_HEADERS
        row = frame.iloc[0]
        assert row['Position ID'] == '7'
        assert row['TP1 Hit'] == 'true'
        assert row['TP2 Hit'] == 'false'
        assert row['Duration (min)'] == ''
        assert row['Alert Strength'] == '0.7'
        assert row['Session'] == 'ny'
        assert row['ADX'] == ''

    def test_position_without_alert(self):
        csv_text = positions_to_csv([enrich_position(history_row(id=1))])
        lines = csv_text.strip().split('\n')
        assert len(lines) == 2
        assert lines[0].startswith("Position ID,Symbol,Side,Tier")


class TestPositionExporter:

    async def test_default_last_30_days(self, db):
        await seed(
            db,
            history_row(symbol='BTCUSDT', closed_at=days_ago_iso(1)),
            history_row(symbol='ETHUSDT', closed_at=days_ago_iso(45)),
        )

        result = await PositionExporter(db).export(ExportFilters())

        assert [p['symbol'] for p in result.positions] == ['BTCUSDT']

    async def test_all_and_days(self, db):
        await seed(
            db,
            history_row(closed_at=days_ago_iso(1)),
            history_row(closed_at=days_ago_iso(10)),
            history_row(closed_at=days_ago_iso(100)),
        )
        exporter = PositionExporter(db)

        assert (await exporter.export(ExportFilters(all=True))).count == 3
        assert (await exporter.export(ExportFilters(days='7'))).count == 1
        assert (await exporter.export(ExportFilters(date_from=days_ago_iso(20), date_to=days_ago_iso(5)))).count == 1

    async def test_filters(self, db):
        await seed(
            db,
            history_row(symbol='BTCUSDT', tier='Premium', side='BUY'),
            history_row(symbol='ETHUSDT', tier='Standard', side='SELL'),
            history_row(symbol='SOLUSDT', tier='Quick', side='Buy'),
        )
        exporter = PositionExporter(db)

        tiers = await exporter.export(ExportFilters(tier='Premium, Quick'))
        assert sorted(p['symbol'] for p in tiers.positions) == ['BTCUSDT', 'SOLUSDT']

        symbols = await exporter.export(ExportFilters(symbol='ETHUSDT'))
        assert [p['symbol'] for p in symbols.positions] == ['ETHUSDT']

        buys = await exporter.export(ExportFilters(side='Buy'))
        assert sorted(p['symbol'] for p in buys.positions) == ['BTCUSDT', 'SOLUSDT']

        # неизвестная сторона не фильтрует
        assert (await exporter.export(ExportFilters(side='Long'))).count == 3

    async def test_ordered_by_close_time(self, db):
        await seed(
            db,
            history_row(symbol='OLD', closed_at=days_ago_iso(5)),
            history_row(symbol='NEW', closed_at=days_ago_iso(1)),
        )

        result = await PositionExporter(db).export(ExportFilters())

        assert [p['symbol'] for p in result.positions] == ['NEW', 'OLD']
        assert result.positions[0]['alert'] is None

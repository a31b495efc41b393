"""
Тесты защиты от блокировки CloudFront
"""

from unittest.mock import patch

import pytest
from sqlalchemy import select

from core.bybit_client import CloseAllResult, CloudFrontBlockError
from core.cloudfront_guard import (
    bybit_fetch_with_guard, get_lock_status, is_shutdown_active, reset_lock, trigger_emergency_shutdown
)
from data.models import BotLog, BotPosition, DiagnosticFailure

from tests.conftest import save_bot_settings


async def open_position(db, symbol="BTC"):
    return await db.create_position({
        'symbol': symbol,
        'side': 'BUY',
        'tier': 'Standard',
        'entry_price': 50000.0,
        'quantity': 0.01,
        'leverage': 10,
        'stop_loss': 49000.0,
        'main_tp_price': 52000.0,
        'current_sl': 49000.0,
        'position_value': 500.0,
        'initial_margin': 50.0,
        'confidence_score': 0.8,
    })


class TestEmergencyShutdown:

    async def test_disables_bot_and_records_failure(self, db):
        await save_bot_settings(db, api_key=None, api_secret=None)
        await open_position(db)

        summary = await trigger_emergency_shutdown(db, "CloudFront block detected in test", {'region': 'US'})

        assert summary['skipped'] is False
        assert summary['botDisabled'] is True
        assert summary['positionsInDb'] == 1
        assert summary['closeErrors'] == ["No API credentials"]
        assert summary['smsSent'] is False

        bot_settings = await db.get_bot_settings()
        assert bot_settings.bot_enabled is False
        assert bot_settings.migration_date.startswith("CLOUDFRONT_LOCK:")

        async with db.get_session() as session:
            failures = (await session.execute(select(DiagnosticFailure))).scalars().all()
            logs = (await session.execute(
                select(BotLog).where(BotLog.action == 'cloudfront_emergency_shutdown')
            )).scalars().all()
        assert [f.failure_type for f in failures] == ['emergency_close']
        assert '"region": "US"' in failures[0].error_details
        assert len(logs) == 1

    async def test_duplicate_trigger_skipped(self, db):
        await save_bot_settings(db)

        await trigger_emergency_shutdown(db, "first")
        assert is_shutdown_active()

        summary = await trigger_emergency_shutdown(db, "second")
        assert summary == {'skipped': True}

        async with db.get_session() as session:
            failures = (await session.execute(select(DiagnosticFailure))).scalars().all()
        assert len(failures) == 1

    async def test_partial_close_marks_closed_symbols_only(self, db, fake_client):
        await save_bot_settings(db)
        await open_position(db, "BTCUSDT")
        await open_position(db, "ETHUSDT")
        fake_client.close_all_result = CloseAllResult(
            total=2,
            closed=1,
            errors=["Failed to close ETHUSDT: timeout"],
            details=[
                {'symbol': 'BTCUSDT', 'side': 'Buy', 'size': 0.01, 'success': True, 'orderId': 'c-1'},
                {'symbol': 'ETHUSDT', 'side': 'Buy', 'size': 0.01, 'success': False, 'error': 'timeout'},
            ],
        )

        with patch('core.cloudfront_guard.BybitClient', return_value=fake_client):
            summary = await trigger_emergency_shutdown(db, "blocked")

        assert summary['positionsClosed'] == 1
        assert summary['closeErrors'] == ["Failed to close ETHUSDT: timeout"]

        async with db.get_session() as session:
            positions = (await session.execute(select(BotPosition).order_by(BotPosition.id))).scalars().all()
        assert [(p.symbol, p.status, p.close_reason) for p in positions] == [
            ('BTCUSDT', 'closed', 'cloudfront_emergency_shutdown'),
            ('ETHUSDT', 'open', None),
        ]

    async def test_no_exchange_positions_closes_db_records(self, db, fake_client):
        await save_bot_settings(db)
        await open_position(db, "BTCUSDT")

        with patch('core.cloudfront_guard.BybitClient', return_value=fake_client):
            await trigger_emergency_shutdown(db, "blocked")

        assert await db.get_open_positions() == []

    async def test_without_settings(self, db):
        summary = await trigger_emergency_shutdown(db, "no settings")
        assert summary['botDisabled'] is False
        assert summary['positionsInDb'] == 0


class TestFetchWithGuard:

    async def test_passes_result_through(self, db):
        async def call():
            return {'ok': True}

        assert await bybit_fetch_with_guard(db, call, "unit") == {'ok': True}

    async def test_other_errors_propagate_without_shutdown(self, db):
        await save_bot_settings(db)

        async def call():
            raise ValueError("bad")

        with pytest.raises(ValueError):
            await bybit_fetch_with_guard(db, call, "unit")
        assert (await db.get_bot_settings()).bot_enabled is True

    async def test_block_triggers_shutdown(self, db):
        await save_bot_settings(db)

        async def call():
            raise CloudFrontBlockError("blocked", status=403)

        with pytest.raises(CloudFrontBlockError) as exc_info:
            await bybit_fetch_with_guard(db, call, "positions_live_pnl")

        assert str(exc_info.value) == "CLOUDFRONT_BLOCK: positions_live_pnl"
        assert exc_info.value.status == 403
        assert (await db.get_bot_settings()).bot_enabled is False


class TestLockStatus:

    async def test_no_settings(self, db):
        status = await get_lock_status(db)
        assert status['lockActive'] is False
        assert status['message'] == "No settings found - lock not active"

    async def test_active_then_reset(self, db):
        await save_bot_settings(db)
        await trigger_emergency_shutdown(db, "blocked")

        status = await get_lock_status(db)
        assert status['lockActive'] is True
        assert status['botEnabled'] is False
        assert status['lockSetAt'].startswith("CLOUDFRONT_LOCK:")

        await reset_lock(db)

        status = await get_lock_status(db)
        assert status['lockActive'] is False
        assert status['lockSetAt'] is None
        assert status['botEnabled'] is False
        assert not is_shutdown_active()

    async def test_disabled_bot_without_flag_is_not_locked(self, db):
        await save_bot_settings(db, bot_enabled=False)
        assert (await get_lock_status(db))['lockActive'] is False

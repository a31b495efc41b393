"""
Тесты HTTP API дашборда: алерты, позиции, журнал, настройки, диагностика
"""

import time

import pytest

from app.api.dependencies import get_proxy_fetcher
from data.models import (
    BotAction, BotPosition, BotSettings, DiagnosticFailure, PositionHistory, SymbolLock, TpslRetryAttempt
)
from utils.helpers import NetworkError, days_ago_iso, utc_iso

from tests.conftest import bybit_error
from tests.factories import (
    add_rows, enable_trading, make_alert, make_history, make_position, update_bot_settings
)
from tests.test_history_importer import FakeFetcher, closed_pnl


class TestCore:

    def test_root(self, api):
        data = api.get("/").json()
        assert data['status'] == 'running'
        assert data['webhook'] == "/api/webhook/tradingview"

    def test_health(self, api):
        response = api.get("/health")

        data = response.json()
        assert data['database']['connection'] is True
        assert data['stats']['total_alerts'] == 0
        assert 'rateLimiter' in data
        assert 'memory' in data

    def test_unknown_json_body(self, api):
        response = api.post("/api/bot/logs", content="[1, 2]")
        assert response.status_code == 400
        assert response.json()['code'] == 'INVALID_JSON'


class TestWebhookRoutes:

    def test_get_status(self, api):
        data = api.get("/api/webhook/tradingview").json()
        assert data['status'] == 'online'

    def test_post_without_credentials(self, api):
        response = api.post("/api/webhook/tradingview", json={
            'symbol': 'BTCUSDT', 'side': 'BUY', 'tier': 'Premium', 'entryPrice': 50000,
            'timestamp': int(time.time()),
        })

        assert response.status_code == 200
        assert response.json()['message'] == "Alert saved, API credentials missing"

    def test_post_invalid_json(self, api):
        response = api.post("/api/webhook/tradingview", content="{broken")
        assert response.status_code == 400
        assert response.json() == {'error': "Invalid JSON format"}


class TestAlertRoutes:

    def test_list_with_pagination(self, api, sync_session):
        add_rows(sync_session, make_alert(symbol='BTCUSDT'), make_alert(symbol='ETHUSDT'))

        data = api.get("/api/alerts", params={'limit': 1}).json()

        assert data['total'] == 2
        assert len(data['alerts']) == 1
        assert data['limit'] == 1

    def test_limit_is_clamped(self, api):
        assert api.get("/api/alerts", params={'limit': 9999}).json()['limit'] == 500

    def test_invalid_limit(self, api):
        response = api.get("/api/alerts", params={'limit': 'abc'})
        assert response.status_code == 400
        assert response.json()['code'] == 'INVALID_LIMIT'

    def test_delete(self, api, sync_session):
        alert = make_alert()
        add_rows(sync_session, alert)

        response = api.delete(f"/api/alerts/{alert.id}")

        assert response.status_code == 200
        assert response.json()['deletedId'] == alert.id
        assert api.get("/api/alerts").json()['total'] == 0

    def test_delete_invalid_and_missing(self, api):
        invalid = api.delete("/api/alerts/abc")
        assert invalid.status_code == 400
        assert invalid.json()['code'] == 'INVALID_ID'

        missing = api.delete("/api/alerts/999")
        assert missing.status_code == 404
        assert missing.json() == {'success': False, 'error': "Alert not found", 'code': 'ALERT_NOT_FOUND'}

    def test_cleanup_old(self, api, sync_session):
        add_rows(
            sync_session,
            make_alert(symbol='OLD', created_at=days_ago_iso(40)),
            make_alert(symbol='FRESH', created_at=days_ago_iso(5)),
        )

        stats = api.get("/api/alerts/cleanup-old").json()
        assert stats['totalAlertsToDelete'] == 1
        assert stats['breakdown'] == [{'retentionDays': 30, 'count': 1}]

        preview = api.post("/api/alerts/cleanup-old", params={'dryRun': 'true'}).json()
        assert preview['dryRun'] is True
        assert preview['count'] == 1
        assert preview['preview'][0]['symbol'] == 'OLD'
        assert preview['preview'][0]['age'] == "40 days"
        assert api.get("/api/alerts").json()['total'] == 2

        result = api.post("/api/alerts/cleanup-old").json()
        assert result['deletedCount'] == 1
        assert [a['symbol'] for a in api.get("/api/alerts").json()['alerts']] == ['FRESH']

    def test_cleanup_nothing_expired(self, api):
        result = api.post("/api/alerts/cleanup-old").json()
        assert result == {'success': True, 'message': "No old alerts found to delete", 'deletedCount': 0}

    def test_cleanup_before_today(self, api, sync_session):
        add_rows(sync_session, make_alert(symbol='OLD', created_at=days_ago_iso(1)), make_alert(symbol='TODAY'))

        result = api.delete("/api/alerts/cleanup").json()

        assert result['success'] is True
        assert result['deleted'] == 1
        assert [a['symbol'] for a in api.get("/api/alerts").json()['alerts']] == ['TODAY']

    def test_cleanup_all_but_last(self, api, sync_session):
        first, second, last = make_alert(symbol='A'), make_alert(symbol='B'), make_alert(symbol='C')
        add_rows(sync_session, first, second, last)
        add_rows(sync_session, make_position(alert_id=first.id), make_position(symbol='ETHUSDT', alert_id=last.id))

        result = api.delete("/api/alerts/cleanup-all-but-last").json()

        assert result['deleted'] == 2
        assert [a['symbol'] for a in api.get("/api/alerts").json()['alerts']] == ['C']
        sync_session.expire_all()
        assert [p.symbol for p in sync_session.query(BotPosition).all()] == ['ETHUSDT']

    def test_cleanup_all_but_last_empty(self, api):
        result = api.delete("/api/alerts/cleanup-all-but-last").json()
        assert result['deleted'] == 0


class TestPositionRoutes:

    def test_positions_without_credentials(self, api, sync_session, fake_client):
        add_rows(sync_session, make_position(), make_position(symbol='ETHUSDT', status='closed'))

        data = api.get("/api/bot/positions").json()

        assert data['count'] == 1
        assert data['livePnlEnabled'] is False
        assert fake_client.calls == []

    def test_live_pnl_merge(self, api, sync_session, fake_client):
        enable_trading(sync_session)
        add_rows(sync_session, make_position(symbol='BTCUSDT', side='BUY'))
        fake_client.positions = [{
            'symbol': 'BTCUSDT', 'side': 'Buy', 'size': '0.01',
            'unrealisedPnl': '12.5', 'stopLoss': '49500', 'takeProfit': '',
        }]

        data = api.get("/api/bot/positions").json()

        position = data['positions'][0]
        assert data['livePnlEnabled'] is True
        assert position['unrealisedPnl'] == 12.5
        assert position['liveSlPrice'] == 49500
        assert position['liveTp1Price'] is None
        assert fake_client.credentials == ('db-key', 'db-secret', 'testnet')

    def test_live_pnl_failure_keeps_db_data(self, api, sync_session, fake_client):
        enable_trading(sync_session)
        add_rows(sync_session, make_position())
        fake_client.positions_error = bybit_error(10002, "timestamp expired")

        data = api.get("/api/bot/positions").json()

        assert data['count'] == 1
        assert data['livePnlEnabled'] is False
        assert data['positions'][0]['unrealisedPnl'] == 0

    def test_invalid_side(self, api):
        response = api.get("/api/bot/positions", params={'side': 'BUY'})
        assert response.status_code == 400
        assert response.json()['code'] == 'INVALID_SIDE'

    def test_sync_requires_credentials(self, api):
        response = api.post("/api/bot/sync-positions")

        assert response.status_code == 400
        assert response.json()['message'] == "Bybit API credentials not configured in bot settings"

    def test_sync_closes_missing_positions(self, api, sync_session, fake_client):
        enable_trading(sync_session)
        add_rows(
            sync_session,
            make_position(symbol='BTCUSDT', side='BUY', unrealised_pnl=5.0),
            make_position(symbol='ETHUSDT', side='SELL'),
        )
        fake_client.positions = [{'symbol': 'ETHUSDT', 'side': 'Sell', 'size': '1', 'unrealisedPnl': '3.5'}]

        data = api.post("/api/bot/sync-positions").json()

        assert data['success'] is True
        assert data['results'] == {'checked': 2, 'closed': 1, 'stillOpen': 1, 'errors': []}

        sync_session.expire_all()
        positions = {p.symbol: p for p in sync_session.query(BotPosition).all()}
        assert positions['BTCUSDT'].status == 'closed'
        assert positions['BTCUSDT'].close_reason == 'auto_sync'
        assert positions['ETHUSDT'].status == 'open'
        assert positions['ETHUSDT'].unrealised_pnl == 3.5

        history = sync_session.query(PositionHistory).all()
        assert [(h.symbol, h.close_reason, h.pnl, h.pnl_percent) for h in history] == [
            ('BTCUSDT', 'auto_sync', 5.0, 10.0)
        ]
        assert [a.reason for a in sync_session.query(BotAction).all()] == ['auto_sync']

    def test_sync_fetch_failure(self, api, sync_session, fake_client):
        enable_trading(sync_session)
        add_rows(sync_session, make_position())
        fake_client.positions_error = bybit_error(10002, "timestamp expired")

        response = api.post("/api/bot/sync-positions")

        assert response.status_code == 500
        assert response.json()['message'].startswith("Failed to fetch Bybit positions")
        sync_session.expire_all()
        assert sync_session.query(BotPosition).one().status == 'open'


class TestHistoryRoutes:

    def test_stats_and_filters(self, api, sync_session):
        add_rows(
            sync_session,
            make_history(symbol='BTCUSDT', pnl=10.0),
            make_history(symbol='ETHUSDT', pnl=-5.0, side='SELL'),
            make_history(symbol='SOLUSDT', pnl=20.0),
        )

        data = api.get("/api/bot/history").json()
        assert data['total'] == 3
        assert data['stats']['totalPnl'] == pytest.approx(25.0)
        assert data['stats']['avgPnl'] == pytest.approx(25.0 / 3)
        assert data['stats']['winRate'] == pytest.approx(66.67)

        sells = api.get("/api/bot/history", params={'side': 'Sell'}).json()
        assert [h['symbol'] for h in sells['history']] == ['ETHUSDT']

        profit = api.get("/api/bot/history", params={'profitOnly': 'true', 'minPnl': '15'}).json()
        assert [h['symbol'] for h in profit['history']] == ['SOLUSDT']

    def test_empty_stats(self, api):
        stats = api.get("/api/bot/history").json()['stats']
        assert stats == {'totalPnl': 0.0, 'avgPnl': 0.0, 'winRate': 0, 'totalPositions': 0}

    def test_invalid_pnl_filter(self, api):
        response = api.get("/api/bot/history", params={'minPnl': 'lots'})
        assert response.json()['code'] == 'INVALID_MIN_PNL'

    def test_sync_history_requires_credentials(self, api):
        response = api.post("/api/bot/sync-bybit-history")

        assert response.status_code == 400
        assert response.json()['message'] == "Bybit API credentials not configured in bot settings"

    def test_sync_history_replaces_rows(self, api, sync_session):
        from app.main import app

        enable_trading(sync_session)
        add_rows(sync_session, make_history(symbol='OLDUSDT'))
        fetcher = FakeFetcher([{'list': [closed_pnl(symbol='SOLUSDT')]}])
        app.dependency_overrides[get_proxy_fetcher] = lambda: fetcher

        data = api.post("/api/bot/sync-bybit-history").json()

        assert data['success'] is True
        assert data['deleted'] == 1
        assert data['imported'] == 1
        assert data['daysBack'] == 30
        sync_session.expire_all()
        assert [h.symbol for h in sync_session.query(PositionHistory).all()] == ['SOLUSDT']

    def test_sync_history_fetch_failure(self, api, sync_session):
        from app.main import app

        enable_trading(sync_session)
        add_rows(sync_session, make_history(symbol='OLDUSDT'))
        fetcher = FakeFetcher([NetworkError("blocked") for _ in range(5)])
        app.dependency_overrides[get_proxy_fetcher] = lambda: fetcher

        response = api.post("/api/bot/sync-bybit-history")

        assert response.status_code == 502
        assert response.json()['imported'] == 0
        sync_session.expire_all()
        assert [h.symbol for h in sync_session.query(PositionHistory).all()] == ['OLDUSDT']


class TestJournalRoutes:

    def test_actions_validation(self, api):
        exceeded = api.get("/api/bot/actions", params={'limit': 500})
        assert exceeded.status_code == 400
        assert exceeded.json()['error'] == "Limit cannot exceed 200"
        assert exceeded.json()['code'] == 'LIMIT_EXCEEDED'

        invalid = api.get("/api/bot/actions", params={'success': 'maybe'})
        assert invalid.json()['code'] == 'INVALID_SUCCESS_PARAM'

        bad_date = api.get("/api/bot/actions", params={'startDate': 'yesterday'})
        assert bad_date.json()['code'] == 'INVALID_START_DATE'

    def test_create_and_list_logs(self, api):
        now = int(time.time())
        response = api.post("/api/bot/logs", json={
            'timestamp': now, 'level': 'info', 'action': 'manual_note',
            'message': "  Checked dashboard  ", 'details': {'page': 'positions'}, 'createdAt': now,
        })

        assert response.status_code == 201
        log = response.json()['log']
        assert log['message'] == "Checked dashboard"
        assert log['details'] == '{"page": "positions"}'

        data = api.get("/api/bot/logs", params={'level': 'info', 'action': 'manual_note'}).json()
        assert data['total'] == 1

    @pytest.mark.parametrize('body, code', [
        ({'level': 'info', 'action': 'a', 'message': 'm', 'createdAt': 1}, 'MISSING_TIMESTAMP'),
        ({'timestamp': 1, 'level': 'debug', 'action': 'a', 'message': 'm', 'createdAt': 1}, 'INVALID_LEVEL'),
        ({'timestamp': -1, 'level': 'info', 'action': 'a', 'message': 'm', 'createdAt': 1}, 'INVALID_TIMESTAMP'),
        ({'timestamp': 1, 'level': 'info', 'action': 'a', 'message': 'm', 'createdAt': 1, 'alertId': 0},
         'INVALID_ALERT_ID'),
    ])
    def test_log_validation(self, api, body, code):
        response = api.post("/api/bot/logs", json=body)
        assert response.status_code == 400
        assert response.json()['code'] == code

    def test_list_logs_invalid_level(self, api):
        assert api.get("/api/bot/logs", params={'level': 'trace'}).json()['code'] == 'INVALID_LEVEL'

    def test_import_requires_credentials(self, api):
        response = api.post("/api/bot/import-bybit-history", json={'apiKey': 'k'})

        assert response.status_code == 400
        assert response.json()['message'] == "Missing API credentials"


class TestSettingsRoutes:

    def test_get_defaults(self, api):
        settings = api.get("/api/bot/settings").json()['settings']

        assert settings['botEnabled'] is False
        assert settings['positionSizeMode'] == 'percent'
        assert settings['disabledTiers'] == []

    def test_update(self, api):
        response = api.put("/api/bot/settings", json={
            'botEnabled': True,
            'maxConcurrentPositions': 3,
            'disabledTiers': ['Quick'],
            'leverageMode': 'fixed',
            'defaultSlRr': 1.5,
        })

        assert response.status_code == 200
        settings = response.json()['settings']
        assert settings['botEnabled'] is True
        assert settings['maxConcurrentPositions'] == 3
        assert settings['disabledTiers'] == ['Quick']
        assert settings['leverageMode'] == 'fixed'
        assert settings['defaultSlRr'] == 1.5

    @pytest.mark.parametrize('body, code, field', [
        ({'positionSizeMode': 'all_in'}, 'INVALID_POSITION_SIZE_MODE', 'positionSizeMode'),
        ({'reversalWaitBars': 5}, 'INVALID_REVERSAL_WAIT_BARS', 'reversalWaitBars'),
        ({'positionSizePercent': 150}, 'INVALID_POSITION_SIZE_PERCENT', 'positionSizePercent'),
        ({'disabledTiers': 'Quick'}, 'INVALID_DISABLED_TIERS', 'disabledTiers'),
    ])
    def test_update_validation(self, api, body, code, field):
        response = api.put("/api/bot/settings", json=body)

        assert response.status_code == 400
        assert response.json()['code'] == code
        assert response.json()['field'] == field

    def test_missing_settings_row(self, api, sync_session):
        sync_session.query(BotSettings).delete()
        sync_session.commit()

        assert api.get("/api/bot/settings").status_code == 404
        assert api.put("/api/bot/settings", json={'botEnabled': True}).json()['code'] == 'SETTINGS_NOT_FOUND'

        credentials = api.get("/api/bot/credentials").json()['credentials']
        assert credentials == {'apiKey': '', 'apiSecret': '', 'exchange': 'bybit', 'environment': 'demo'}

    def test_credentials(self, api):
        response = api.post("/api/bot/credentials", json={
            'apiKey': 'new-key', 'apiSecret': 'new-secret', 'environment': 'testnet',
        })
        assert response.json()['success'] is True

        credentials = api.get("/api/bot/credentials").json()['credentials']
        assert credentials == {
            'apiKey': 'new-key', 'apiSecret': 'new-secret', 'exchange': 'bybit', 'environment': 'testnet',
        }

    def test_credentials_validation(self, api):
        assert api.post("/api/bot/credentials", json={'exchange': 'kraken'}).json()['code'] == 'INVALID_EXCHANGE'
        assert api.post("/api/bot/credentials", json={'environment': 'prod'}).json()['code'] == 'INVALID_ENVIRONMENT'


class TestSafetyRoutes:

    def test_lock_status_and_reset(self, api, sync_session):
        update_bot_settings(sync_session, migration_date=f"CLOUDFRONT_LOCK:{utc_iso()}")

        status = api.get("/api/bot/cloudfront-lock-status").json()
        assert status['success'] is True
        assert status['lockActive'] is True

        reset = api.post("/api/bot/reset-cloudfront-lock").json()
        assert reset['success'] is True

        status = api.get("/api/bot/cloudfront-lock-status").json()
        assert status['lockActive'] is False
        assert status['botEnabled'] is False

    def test_send_sms_validation(self, api):
        missing = api.post("/api/bot/send-sms", json={})
        assert missing.json()['code'] == 'MISSING_MESSAGE'

        level = api.post("/api/bot/send-sms", json={'message': 'hi', 'alertLevel': 'loud'})
        assert level.json()['code'] == 'INVALID_ALERT_LEVEL'

    def test_send_sms_disabled(self, api):
        response = api.post("/api/bot/send-sms", json={'message': 'hi'})

        assert response.status_code == 500
        assert response.json() == {'success': False, 'attempt': 0, 'error': "SMS alerts disabled"}

    def test_test_sms_disabled(self, api):
        response = api.post("/api/bot/test-sms")
        assert response.status_code == 500
        assert response.json()['success'] is False


class TestDiagnosticsRoutes:

    @pytest.fixture
    def seeded(self, sync_session):
        position = make_position()
        add_rows(sync_session, position)
        add_rows(
            sync_session,
            SymbolLock(symbol='BTCUSDT', lock_reason='trade_fault', failure_count=1, is_permanent=True),
            SymbolLock(symbol='ETHUSDT', lock_reason='trade_fault', failure_count=1, unlocked_at=utc_iso()),
            DiagnosticFailure(position_id=position.id, failure_type='emergency_close', reason="SL failed",
                              attempt_count=3),
            TpslRetryAttempt(position_id=position.id, attempt_number=1, order_type='sl', trigger_price=49000,
                             success=False, error_message="rejected"),
            TpslRetryAttempt(position_id=position.id, attempt_number=2, order_type='sl', trigger_price=49000,
                             success=True),
            make_alert(execution_status='error_rejected', error_type='trade_fault', rejection_reason='trade_fault'),
            make_alert(execution_status='error_rejected', error_type='api_temporary'),
        )
        return position

    def test_summary(self, api, seeded):
        data = api.get("/api/bot/diagnostics/summary").json()

        summary = data['summary']
        assert summary['activeSymbolLocks'] == 1
        assert summary['totalSymbolLocks'] == 2
        assert summary['emergencyCloses'] == 1
        assert summary['totalErrorAlerts'] == 2
        assert summary['tradeFaultErrors'] == 1
        assert summary['apiTemporaryErrors'] == 1
        assert summary['recentRetryAttempts'] == 2
        assert summary['retryFailureRate'] == "50.00%"
        assert [lock['symbol'] for lock in data['activeLocks']] == ['BTCUSDT']

    def test_locks_and_unlock(self, api, seeded):
        locks = api.get("/api/bot/diagnostics/locks").json()
        assert locks['activeCount'] == 1
        assert locks['totalCount'] == 2

        assert api.post("/api/bot/diagnostics/locks", json={}).json()['code'] == 'MISSING_SYMBOL'

        result = api.post("/api/bot/diagnostics/locks", json={'symbol': 'BTCUSDT'}).json()
        assert result['message'] == "Symbol BTCUSDT unlocked successfully"
        assert api.get("/api/bot/diagnostics/locks").json()['activeCount'] == 0

    def test_failures(self, api, seeded):
        data = api.get("/api/bot/diagnostics/failures").json()

        assert data['totalCount'] == 1
        assert data['emergencyCloses'] == 1
        assert data['failures'][0]['position']['symbol'] == 'BTCUSDT'
        assert api.get("/api/bot/diagnostics/failures", params={'type': 'tpsl_set_failed'}).json()['totalCount'] == 0

    def test_retry_attempts(self, api, seeded):
        data = api.get("/api/bot/diagnostics/retry-attempts", params={'positionId': seeded.id}).json()

        assert data['totalCount'] == 2
        assert data['failedCount'] == 1
        assert data['failureRate'] == "50.00"
        assert list(data['byPosition'].keys()) == [str(seeded.id)]

    def test_error_alerts(self, api, seeded):
        data = api.get("/api/bot/diagnostics/error-alerts").json()

        assert data['totalCount'] == 2
        assert data['tradeFault'] == 1
        assert data['apiTemporary'] == 1
        assert data['reasonCounts'] == {'trade_fault': 1, 'unknown': 1}

    def test_cleanup(self, api, seeded):
        invalid = api.post("/api/bot/diagnostics/cleanup", json={'type': 'verifications'})
        assert invalid.status_code == 400
        assert invalid.json()['code'] == 'INVALID_CLEANUP_TYPE'

        result = api.post("/api/bot/diagnostics/cleanup", json={'type': 'all'}).json()
        assert result['details'] == {'failures': 1, 'errorAlerts': 2, 'retries': 2, 'historyLocks': 1}
        assert result['deletedCount'] == 6

        # активная блокировка остается
        assert api.get("/api/bot/diagnostics/locks").json()['activeCount'] == 1

"""
Тесты SMS сервиса: номер телефона, backoff и повторы отправки
"""

from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import select

from data.models import BotLog
from services.sms_service import (
    AlertLevel, SMSAlert, SMSService, calculate_backoff_delay, is_retryable_error,
    normalize_phone_number, validate_e164
)

from tests.conftest import save_bot_settings


async def enable_sms(db, **values):
    settings = {
        'sms_alerts_enabled': True,
        'twilio_account_sid': 'AC123',
        'twilio_auth_token': 'token',
        'twilio_phone_number': '+15550001111',
        'alert_phone_number': '+48123456789',
    }
    settings.update(values)
    return await save_bot_settings(db, **settings)


def scripted_twilio(service, responses):
    """Подмена _post_twilio списком ответов (status, data) или исключений"""
    calls = []

    async def post(account_sid, auth_token, payload):
        calls.append(payload)
        response = responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    service._post_twilio = post
    return calls


async def sms_logs(db):
    async with db.get_session() as session:
        return (await session.execute(select(BotLog).order_by(BotLog.id))).scalars().all()


class TestPhoneNumbers:

    @pytest.mark.parametrize("raw,expected", [
        ("+48 123 456 789", "+48123456789"),
        ("123456789", "+48123456789"),
        ("0123456789", "+48123456789"),
        ("48123456789", "+48123456789"),
        ("+1 (555) 000-1111", "+15550001111"),
    ])
    def test_normalize(self, raw, expected):
        assert normalize_phone_number(raw) == expected

    def test_short_local_number_not_prefixed(self):
        assert normalize_phone_number("12345") == "+12345"

    def test_validate_e164(self):
        assert validate_e164("+48123456789")
        assert not validate_e164("48123456789")
        assert not validate_e164("+0123")
        assert not validate_e164("+1234567890123456")


class TestRetryPolicy:

    def test_retryable_messages(self):
        assert is_retryable_error("Twilio request timeout")
        assert is_retryable_error("ECONNREFUSED: cannot connect")
        assert is_retryable_error("Too many", status=429)
        assert not is_retryable_error("The 'To' number is not a valid phone number", status=400)

    def test_backoff_grows_and_caps(self):
        with patch('services.sms_service.random.random', return_value=0.5):
            assert calculate_backoff_delay(0, 500, 30000) == 525
            assert calculate_backoff_delay(2, 500, 30000) == 2025
            assert calculate_backoff_delay(10, 500, 30000) == 30000


class TestSendSMS:

    async def test_precondition_failures_are_attempt_zero(self, db, test_settings):
        service = SMSService(db=db, settings=test_settings)

        result = await service.send_sms(SMSAlert("hi"))
        assert (result.success, result.attempt, result.error) == (False, 0, "No bot settings configured")

        await save_bot_settings(db)
        result = await service.send_sms(SMSAlert("hi"))
        assert result.error == "SMS alerts disabled"

        await save_bot_settings(db, sms_alerts_enabled=True)
        result = await service.send_sms(SMSAlert("hi"))
        assert result.error == "Twilio credentials not configured"

        await enable_sms(db, alert_phone_number=None)
        result = await service.send_sms(SMSAlert("hi"))
        assert result.error == "Alert phone number not configured"

        await enable_sms(db, alert_phone_number="abc")
        result = await service.send_sms(SMSAlert("hi"))
        assert result.attempt == 0
        assert result.error.startswith("Invalid phone format")

    async def test_sends_and_logs(self, db, test_settings):
        await enable_sms(db, alert_phone_number="123 456 789")
        service = SMSService(db=db, settings=test_settings)
        calls = scripted_twilio(service, [(201, {'sid': 'SM1'})])

        result = await service.send_sms(SMSAlert("hello", AlertLevel.WARNING, "unit"))

        assert result.success
        assert result.message_id == 'SM1'
        assert result.attempt == 1
        assert calls == [{'From': '+15550001111', 'To': '+48123456789', 'Body': 'hello'}]

        logs = await sms_logs(db)
        assert logs[-1].action == 'sms_sent'
        assert '"alertLevel": "warning"' in logs[-1].details

    async def test_truncates_long_message(self, db, test_settings):
        await enable_sms(db)
        service = SMSService(db=db, settings=test_settings)
        calls = scripted_twilio(service, [(201, {'sid': 'SM2'})])

        await service.send_sms(SMSAlert("x" * 500))

        assert len(calls[0]['Body']) == 160
        assert calls[0]['Body'].endswith("...")

    async def test_retries_temporary_errors(self, db, test_settings):
        await enable_sms(db)
        service = SMSService(db=db, settings=test_settings)
        scripted_twilio(service, [
            (503, {'message': 'Service unavailable'}),
            (429, {'message': 'Too many requests'}),
            (201, {'sid': 'SM3'}),
        ])

        with patch('services.sms_service.asyncio.sleep', new=AsyncMock()) as sleep:
            result = await service.send_sms(SMSAlert("retry me"))

        assert result.success
        assert result.attempt == 3
        assert sleep.await_count == 2
        assert service.stats['retry_attempts'] == 2

    async def test_non_retryable_stops_immediately(self, db, test_settings):
        await enable_sms(db)
        service = SMSService(db=db, settings=test_settings)
        calls = scripted_twilio(service, [(400, {'message': "Invalid 'To' Phone Number"})])

        result = await service.send_sms(SMSAlert("bad"))

        assert not result.success
        assert result.attempt == 1
        assert result.error == "Invalid 'To' Phone Number"
        assert len(calls) == 1
        assert (await sms_logs(db))[-1].action == 'sms_failed'

    async def test_gives_up_after_max_attempts(self, db, test_settings):
        await enable_sms(db)
        service = SMSService(db=db, settings=test_settings)
        calls = scripted_twilio(service, [(502, {}) for _ in range(5)])

        with patch('services.sms_service.asyncio.sleep', new=AsyncMock()) as sleep:
            result = await service.send_sms(SMSAlert("down"))

        assert not result.success
        assert result.attempt == 5
        assert result.error == "Max retry attempts exceeded"
        assert len(calls) == 5
        assert sleep.await_count == 4

    async def test_cloudfront_alert_message(self, db, test_settings):
        await enable_sms(db)
        service = SMSService(db=db, settings=test_settings)
        calls = scripted_twilio(service, [(201, {'sid': 'SM4'})])

        await service.send_cloudfront_block_alert({'region': 'DE'})

        assert "CloudFront blocks region: DE" in calls[0]['Body']

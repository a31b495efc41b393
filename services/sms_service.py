"""
Trading Bot SMS Service
Критические SMS алерты через Twilio REST API с повторными попытками
"""

import asyncio
import random
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Tuple

import aiohttp

from app.config.settings import Settings, get_settings
from data.database import Database, get_database
from utils.helpers import truncate_string
from utils.logger import setup_logger


# ============================================================================
# CONSTANTS AND ENUMS
# ============================================================================

E164_PATTERN = re.compile(r'^\+[1-9]\d{1,14}$')
NON_DIGITS = re.compile(r'\D')

RETRYABLE_PATTERNS = (
    'timeout',
    'econnrefused',
    'etimedout',
    '429',
    '503',
    '502',
    'connection reset',
    'network unreachable',
    'temporarily unavailable',
)

RETRYABLE_STATUSES = (429, 502, 503)

DEFAULT_COUNTRY_CODE = '48'


class AlertLevel(str, Enum):
    """Уровни SMS алертов"""
    CRITICAL = "critical"
    WARNING = "warning"
    INFO = "info"


class SMSError(Exception):
    """Ошибки Twilio API"""
    def __init__(self, message: str, status: Optional[int] = None):
        self.status = status
        super().__init__(message)


@dataclass
class SMSAlert:
    """SMS для отправки (номер берется из настроек бота)"""
    message: str
    alert_level: AlertLevel = AlertLevel.INFO
    context: str = "manual"


@dataclass
class SMSResult:
    """Результат отправки"""
    success: bool
    attempt: int
    message_id: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {'success': self.success, 'attempt': self.attempt}
        if self.message_id:
            data['messageId'] = self.message_id
        if self.error:
            data['error'] = self.error
        return data


# ============================================================================
# HELPERS
# ============================================================================

def validate_e164(phone: str) -> bool:
    return bool(E164_PATTERN.match(phone or ""))


def normalize_phone_number(phone: str, country_code: str = DEFAULT_COUNTRY_CODE) -> str:
    """
    Приведение номера к E.164

    Номер с '+' считается международным. Локальный номер (9+ цифр)
    получает код страны, ведущий 0 отбрасывается.
    """
    phone = (phone or "").strip()
    digits = NON_DIGITS.sub('', phone)

    if not phone.startswith('+') and not digits.startswith(country_code) and len(digits) >= 9:
        if digits.startswith('0'):
            digits = digits[1:]
        digits = country_code + digits

    return f"+{digits}"


def is_retryable_error(error: str, status: Optional[int] = None) -> bool:
    if status in RETRYABLE_STATUSES:
        return True
    lowered = (error or "").lower()
    return any(pattern in lowered for pattern in RETRYABLE_PATTERNS)


def calculate_backoff_delay(attempt: int, base_delay_ms: int = 500, max_delay_ms: int = 30000) -> float:
    """Задержка в мс: base * 2^attempt + jitter (до 10% base), не больше max"""
    exponential = base_delay_ms * (2 ** attempt)
    jitter = random.random() * 0.1 * base_delay_ms
    return min(exponential + jitter, max_delay_ms)


# ============================================================================
# SMS SERVICE
# ============================================================================

class SMSService:
    """
    Сервис отправки SMS через Twilio

    Возможности:
    - Проверка настроек и номера телефона
    - Exponential backoff с jitter для временных ошибок
    - Запись результата в журнал бота
    """

    def __init__(self, db: Optional[Database] = None, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.db = db or get_database()
        self.logger = setup_logger(f"{__name__}.SMSService")

        config = self.settings.get_sms_config()
        self.api_url = config['api_url'].rstrip('/')
        self.timeout = config['timeout']
        self.max_attempts = config['max_attempts']
        self.base_delay_ms = config['base_delay_ms']
        self.max_delay_ms = config['max_delay_ms']
        self.max_length = config['max_length']

        self.stats = {
            'sms_sent': 0,
            'sms_failed': 0,
            'retry_attempts': 0,
        }

    # ========================================================================
    # TWILIO TRANSPORT
    # ========================================================================

    async def _post_twilio(
        self,
        account_sid: str,
        auth_token: str,
        payload: Dict[str, str]
    ) -> Tuple[int, Dict[str, Any]]:
        """POST Messages.json: (status, json)"""
        url = f"{self.api_url}/Accounts/{account_sid}/Messages.json"
        timeout = aiohttp.ClientTimeout(total=self.timeout)

        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.post(
                url,
                data=payload,
                auth=aiohttp.BasicAuth(account_sid, auth_token)
            ) as response:
                data = await response.json(content_type=None)
                return response.status, data if isinstance(data, dict) else {}

    async def _send_twilio_message(
        self,
        account_sid: str,
        auth_token: str,
        from_number: str,
        to_number: str,
        body: str
    ) -> str:
        """
        Отправка одного SMS

        Returns:
            SID сообщения
        """
        payload = {'From': from_number, 'To': to_number, 'Body': body}

        try:
            status, data = await self._post_twilio(account_sid, auth_token, payload)
        except asyncio.TimeoutError:
            raise SMSError("Twilio request timeout")
        except aiohttp.ClientConnectorError as e:
            raise SMSError(f"ECONNREFUSED: {e}")
        except (aiohttp.ServerDisconnectedError, aiohttp.ClientOSError) as e:
            raise SMSError(f"Connection reset: {e}")
        except aiohttp.ClientError as e:
            raise SMSError(str(e))

        if not 200 <= status < 300:
            raise SMSError(data.get('message') or f"Twilio API error: {status}", status=status)

        return data.get('sid', '')

    # ========================================================================
    # PUBLIC API
    # ========================================================================

    async def send_sms(self, alert: SMSAlert) -> SMSResult:
        """
        Отправка SMS на номер из настроек бота

        Предусловия проверяются до первой попытки (attempt 0).
        Временные ошибки повторяются до max_attempts раз.
        """
        config = await self.db.get_bot_settings()

        if config is None:
            self.logger.error("❌ No bot settings found")
            return SMSResult(success=False, attempt=0, error="No bot settings configured")

        if not config.sms_alerts_enabled:
            return SMSResult(success=False, attempt=0, error="SMS alerts disabled")

        if not (config.twilio_account_sid and config.twilio_auth_token and config.twilio_phone_number):
            self.logger.error("❌ Twilio credentials not configured")
            return SMSResult(success=False, attempt=0, error="Twilio credentials not configured")

        if not config.alert_phone_number:
            self.logger.error("❌ Alert phone number not configured")
            return SMSResult(success=False, attempt=0, error="Alert phone number not configured")

        phone = normalize_phone_number(config.alert_phone_number)
        if not validate_e164(phone):
            self.logger.error(f"❌ Invalid phone format: {config.alert_phone_number}")
            return SMSResult(
                success=False, attempt=0, error=f"Invalid phone format: {config.alert_phone_number}"
            )

        message = alert.message
        if len(message) > self.max_length:
            self.logger.warning(f"⚠️ Message too long, truncating to {self.max_length} chars")
            message = truncate_string(message, self.max_length)

        alert_level = AlertLevel(alert.alert_level).value

        for attempt in range(self.max_attempts):
            try:
                message_id = await self._send_twilio_message(
                    config.twilio_account_sid,
                    config.twilio_auth_token,
                    config.twilio_phone_number,
                    phone,
                    message
                )
            except SMSError as e:
                error = str(e)
                self.logger.warning(f"⚠️ SMS attempt {attempt + 1}/{self.max_attempts} failed: {error}")

                if not is_retryable_error(error, e.status):
                    self.stats['sms_failed'] += 1
                    await self.db.add_bot_log(
                        'error', 'sms_failed',
                        f"SMS alert failed (non-retryable): {alert.context}",
                        details={
                            'error': error,
                            'phone': phone,
                            'alertLevel': alert_level,
                            'attempt': attempt + 1,
                        }
                    )
                    return SMSResult(success=False, attempt=attempt + 1, error=error)

                if attempt < self.max_attempts - 1:
                    self.stats['retry_attempts'] += 1
                    delay_ms = calculate_backoff_delay(attempt, self.base_delay_ms, self.max_delay_ms)
                    self.logger.debug(f"⏳ Retrying SMS in {delay_ms:.0f}ms")
                    await asyncio.sleep(delay_ms / 1000)
                continue

            self.stats['sms_sent'] += 1
            self.logger.info(f"📱 SMS sent ({alert.context}, attempt {attempt + 1}): {message_id}")
            await self.db.add_bot_log(
                'info', 'sms_sent',
                f"SMS alert sent: {alert.context}",
                details={
                    'messageId': message_id,
                    'phone': phone,
                    'alertLevel': alert_level,
                    'attempt': attempt + 1,
                }
            )
            return SMSResult(success=True, attempt=attempt + 1, message_id=message_id)

        self.stats['sms_failed'] += 1
        self.logger.error(f"❌ All {self.max_attempts} SMS attempts exhausted ({alert.context})")
        await self.db.add_bot_log(
            'error', 'sms_failed',
            f"SMS alert failed after {self.max_attempts} attempts: {alert.context}",
            details={
                'phone': phone,
                'alertLevel': alert_level,
                'attempts': self.max_attempts,
            }
        )
        return SMSResult(success=False, attempt=self.max_attempts, error="Max retry attempts exceeded")

    async def send_cloudfront_block_alert(self, server_info: Optional[Dict[str, Any]] = None) -> SMSResult:
        """Бот отключен из-за блокировки CloudFront"""
        region = (server_info or {}).get('region') or 'Unknown'
        return await self.send_sms(SMSAlert(
            message=(
                f"🚨 CRITICAL: Bot disabled! CloudFront blocks region: {region}. "
                f"All positions closed. Check dashboard."
            ),
            alert_level=AlertLevel.CRITICAL,
            context='cloudfront_block',
        ))

    async def send_emergency_close_failure_alert(self, failed_positions: int, total_positions: int) -> SMSResult:
        return await self.send_sms(SMSAlert(
            message=(
                f"⚠️ ALERT: Emergency close failed for {failed_positions}/{total_positions} positions! "
                f"Manual intervention needed. Check bot logs."
            ),
            alert_level=AlertLevel.CRITICAL,
            context='emergency_close_failure',
        ))

    async def send_test_sms(self) -> SMSResult:
        return await self.send_sms(SMSAlert(
            message="🧪 Test SMS: Trading bot alert system is working!",
            alert_level=AlertLevel.INFO,
            context='test_sms',
        ))

    def get_stats(self) -> Dict[str, Any]:
        return dict(self.stats)


"""
Trading Bot CloudFront Guard
Обнаружение блокировки CloudFront и аварийная остановка бота
"""

import time
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from app.config.settings import get_settings
from core.bybit_client import BybitAPIError, BybitClient, CloudFrontBlockError, is_cloudfront_block
from data.database import Database
from data.models import DiagnosticFailure, PositionStatus, utc_now
from services.sms_service import SMSService
from utils.helpers import NetworkError, safe_json_dumps, utc_iso
from utils.logger import setup_logger


T = TypeVar('T')

LOCK_PREFIX = "CLOUDFRONT_LOCK"
CLOSE_REASON = "cloudfront_emergency_shutdown"

logger = setup_logger(__name__)

__all__ = [
    'is_cloudfront_block',
    'trigger_emergency_shutdown',
    'bybit_fetch_with_guard',
    'get_lock_status',
    'reset_lock',
    'is_shutdown_active',
]


# ============================================================================
# ФЛАГ АВАРИЙНОЙ ОСТАНОВКИ
# ============================================================================

_shutdown_in_progress = False
_shutdown_finished_at: Optional[float] = None


def is_shutdown_active() -> bool:
    """Остановка идет сейчас или завершилась менее CLOUDFRONT_LOCK_RESET_SECONDS назад"""
    if _shutdown_in_progress:
        return True
    if _shutdown_finished_at is None:
        return False
    return time.monotonic() - _shutdown_finished_at < get_settings().CLOUDFRONT_LOCK_RESET_SECONDS


def reset_shutdown_flag() -> None:
    global _shutdown_in_progress, _shutdown_finished_at
    _shutdown_in_progress = False
    _shutdown_finished_at = None


# ============================================================================
# АВАРИЙНАЯ ОСТАНОВКА
# ============================================================================

async def trigger_emergency_shutdown(
    db: Database,
    reason: str,
    server_info: Optional[Dict[str, Any]] = None,
    sms_service: Optional[SMSService] = None
) -> Dict[str, Any]:
    """
    Аварийная остановка:
    1. отключение бота и отметка CLOUDFRONT_LOCK
    2. закрытие позиций на бирже (если есть ключи)
    3. закрытие позиций в БД
    4. запись в diagnostic_failures и журнал бота
    5. SMS алерт

    Повторный вызов во время активного флага пропускается.
    """
    global _shutdown_in_progress, _shutdown_finished_at

    if is_shutdown_active():
        logger.warning("🚨 Shutdown already in progress - skipping duplicate")
        return {'skipped': True}

    _shutdown_in_progress = True
    summary: Dict[str, Any] = {
        'skipped': False,
        'botDisabled': False,
        'positionsInDb': 0,
        'positionsClosed': 0,
        'closeErrors': [],
        'smsSent': False,
    }

    try:
        logger.critical(f"🚨🚨🚨 CLOUDFRONT GUARD: EMERGENCY SHUTDOWN TRIGGERED - {reason}")

        # Шаг 1: отключение бота
        bot_settings = await db.update_bot_settings({
            'bot_enabled': False,
            'migration_date': f"{LOCK_PREFIX}:{utc_iso()}",
        })
        if bot_settings is None:
            logger.error("❌ No bot settings found - cannot disable bot")
        else:
            summary['botDisabled'] = True
            logger.info("🔴 Bot DISABLED")

        # Шаг 2-3: закрытие позиций
        open_positions = await db.get_open_positions()
        summary['positionsInDb'] = len(open_positions)

        if not open_positions:
            logger.info("✅ No positions to close")
        elif bot_settings is None or not bot_settings.has_credentials:
            logger.error("❌ No API credentials - cannot close positions")
            summary['closeErrors'].append("No API credentials")
        else:
            try:
                async with BybitClient(
                    bot_settings.api_key, bot_settings.api_secret, bot_settings.environment
                ) as client:
                    close_result = await client.close_all_positions()

                summary['positionsClosed'] = close_result.closed
                summary['closeErrors'].extend(close_result.errors)

                if close_result.total == 0:
                    # На бирже позиций нет, записи в БД устарели
                    closed_at = utc_now()
                    for position in open_positions:
                        await db.update_position(
                            position.id,
                            status=PositionStatus.CLOSED.value,
                            close_reason=CLOSE_REASON,
                            closed_at=closed_at,
                        )
                else:
                    for detail in close_result.details:
                        if detail.get('success'):
                            await db.mark_positions_closed(detail['symbol'], detail.get('side') or '', CLOSE_REASON)

                if not close_result.success:
                    logger.error(f"❌ Failed to close some positions: {close_result.errors}")

            except (BybitAPIError, CloudFrontBlockError, NetworkError) as e:
                logger.error(f"❌ Emergency close failed: {e}")
                summary['closeErrors'].append(str(e))

        # Шаг 4: диагностика
        async with db.get_session() as session:
            session.add(DiagnosticFailure(
                failure_type='emergency_close',
                reason=reason,
                attempt_count=1,
                error_details=safe_json_dumps({
                    'serverInfo': server_info or {},
                    'positionsInDb': summary['positionsInDb'],
                    'positionsClosed': summary['positionsClosed'],
                    'errors': summary['closeErrors'],
                }),
            ))

        await db.add_bot_log(
            'error', 'cloudfront_emergency_shutdown',
            f"Emergency shutdown: {reason}",
            details={**summary, 'serverInfo': server_info or {}}
        )

        # Шаг 5: SMS
        sms_service = sms_service or SMSService(db=db)
        sms_result = await sms_service.send_cloudfront_block_alert(server_info or {'region': 'Unknown'})
        summary['smsSent'] = sms_result.success
        if not sms_result.success:
            logger.error(f"❌ SMS alert failed: {sms_result.error}")

        logger.critical("🚨 CLOUDFRONT GUARD: emergency shutdown complete - manual intervention required")

    except Exception as e:
        logger.error(f"❌ Emergency shutdown error: {e}")
        summary['error'] = str(e)

    finally:
        _shutdown_in_progress = False
        _shutdown_finished_at = time.monotonic()

    return summary


async def bybit_fetch_with_guard(
    db: Database,
    factory: Callable[[], Awaitable[T]],
    context: str = "Unknown",
    server_info: Optional[Dict[str, Any]] = None
) -> T:
    """
    Вызов биржи с контролем CloudFront

    Raises:
        CloudFrontBlockError("CLOUDFRONT_BLOCK: <context>") после аварийной остановки
    """
    try:
        return await factory()
    except CloudFrontBlockError as e:
        logger.error(f"🚨 CloudFront block detected in {context} (status: {e.status})")
        await trigger_emergency_shutdown(
            db,
            f"CloudFront block detected in {context}",
            {**(server_info or {}), 'context': context, 'status': e.status}
        )
        raise CloudFrontBlockError(f"CLOUDFRONT_BLOCK: {context}", status=e.status) from e


# ============================================================================
# СТАТУС БЛОКИРОВКИ
# ============================================================================

async def get_lock_status(db: Database) -> Dict[str, Any]:
    """Активна ли блокировка: бот выключен и стоит отметка CLOUDFRONT_LOCK"""
    bot_settings = await db.get_bot_settings()
    if bot_settings is None:
        return {
            'lockActive': False,
            'botEnabled': False,
            'lockSetAt': None,
            'message': "No settings found - lock not active",
        }

    has_flag = LOCK_PREFIX in (bot_settings.migration_date or "")
    lock_active = not bot_settings.bot_enabled and has_flag

    return {
        'lockActive': lock_active,
        'botEnabled': bot_settings.bot_enabled,
        'lockSetAt': bot_settings.migration_date if has_flag else None,
        'message': (
            "CloudFront lock is ACTIVE - bot disabled for safety"
            if lock_active else
            "No CloudFront lock - bot can operate normally"
        ),
    }


async def reset_lock(db: Database) -> None:
    """
    Снятие блокировки. Бот остается выключенным до ручного включения.
    """
    bot_settings = await db.get_bot_settings()
    if bot_settings is not None and LOCK_PREFIX in (bot_settings.migration_date or ""):
        await db.update_bot_settings({'migration_date': None})

    reset_shutdown_flag()
    await db.add_bot_log('info', 'cloudfront_lock_reset', "CloudFront lock reset manually")
    logger.info("🔓 CloudFront lock reset")

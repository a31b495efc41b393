"""
Trading Bot Diagnostics Router
Блокировки символов, ошибки исполнения, повторы SL/TP и очистка диагностики
"""

from collections import defaultdict
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy import delete, func, select

from app.api.dependencies import get_db, parse_limit, parse_positive_id, read_json_body
from core.error_classifier import ErrorType
from data.database import Database
from data.models import Alert, BotPosition, DiagnosticFailure, ExecutionStatus, SymbolLock, TpslRetryAttempt
from utils.helpers import APIError, days_ago_iso
from utils.logger import setup_logger

router = APIRouter(prefix="/api/bot/diagnostics", tags=["Diagnostics"])
logger = setup_logger(__name__)

DIAGNOSTICS_DEFAULT_LIMIT = 100
DIAGNOSTICS_MAX_LIMIT = 1000

CONFIGURATION_ERROR_TYPES = ('configuration_missing', 'configuration_error')


def _failure_rate(failed: int, total: int) -> str:
    return f"{failed / total * 100:.2f}" if total else "0"


def _position_dict(position: Optional[BotPosition]) -> Optional[Dict[str, Any]]:
    return position.to_dict() if position is not None else None


# ============================================================================
# СВОДКА
# ============================================================================

@router.get("/summary")
async def diagnostics_summary(db: Database = Depends(get_db)):
    error_status = ExecutionStatus.ERROR_REJECTED.value

    async with db.get_session() as session:
        active_locks = (await session.execute(
            select(SymbolLock).where(SymbolLock.unlocked_at.is_(None))
        )).scalars().all()
        total_locks = await session.scalar(select(func.count(SymbolLock.id)))

        total_failures = await session.scalar(select(func.count(DiagnosticFailure.id)))
        emergency_closes = await session.scalar(
            select(func.count(DiagnosticFailure.id)).where(DiagnosticFailure.failure_type == 'emergency_close')
        )

        error_counts = dict((await session.execute(
            select(Alert.error_type, func.count(Alert.id))
            .where(Alert.execution_status == error_status)
            .group_by(Alert.error_type)
        )).all())

        recent_retries = await session.scalar(
            select(func.count(TpslRetryAttempt.id)).where(TpslRetryAttempt.created_at >= days_ago_iso(1))
        )
        failed_retries = await session.scalar(
            select(func.count(TpslRetryAttempt.id)).where(
                TpslRetryAttempt.created_at >= days_ago_iso(1),
                TpslRetryAttempt.error_message.is_not(None),
            )
        )

    return {
        'success': True,
        'summary': {
            'activeSymbolLocks': len(active_locks),
            'totalSymbolLocks': total_locks or 0,
            'totalDiagnosticFailures': total_failures or 0,
            'emergencyCloses': emergency_closes or 0,
            'totalErrorAlerts': sum(error_counts.values()),
            'apiTemporaryErrors': error_counts.get(ErrorType.API_TEMPORARY.value, 0),
            'tradeFaultErrors': error_counts.get(ErrorType.TRADE_FAULT.value, 0),
            'recentRetryAttempts': recent_retries or 0,
            'retryFailureRate': f"{_failure_rate(failed_retries or 0, recent_retries or 0)}%",
        },
        'activeLocks': [
            {
                'symbol': lock.symbol,
                'reason': lock.lock_reason,
                'lockedAt': lock.locked_at,
                'failureCount': lock.failure_count,
            }
            for lock in active_locks
        ],
    }


# ============================================================================
# БЛОКИРОВКИ СИМВОЛОВ
# ============================================================================

@router.get("/locks")
async def list_locks(db: Database = Depends(get_db)):
    async with db.get_session() as session:
        locks = (await session.execute(select(SymbolLock).order_by(SymbolLock.locked_at))).scalars().all()

    return {
        'success': True,
        'locks': [lock.to_dict() for lock in locks],
        'activeCount': sum(1 for lock in locks if lock.unlocked_at is None),
        'totalCount': len(locks),
    }


@router.post("/locks")
async def unlock_symbol(request: Request, db: Database = Depends(get_db)):
    body = await read_json_body(request)
    symbol = body.get('symbol')
    if not symbol:
        raise APIError("Symbol is required", 400, code="MISSING_SYMBOL")

    await db.unlock_symbol(symbol)
    return {'success': True, 'message': f"Symbol {symbol} unlocked successfully"}


# ============================================================================
# ОШИБКИ И ПОВТОРЫ
# ============================================================================

@router.get("/failures")
async def list_failures(
    limit: Optional[str] = Query(None),
    type: Optional[str] = Query(None),
    db: Database = Depends(get_db)
):
    limit_value = parse_limit(limit, DIAGNOSTICS_DEFAULT_LIMIT, DIAGNOSTICS_MAX_LIMIT)

    query = select(DiagnosticFailure, BotPosition).outerjoin(
        BotPosition, DiagnosticFailure.position_id == BotPosition.id
    )
    if type:
        query = query.where(DiagnosticFailure.failure_type == type)

    async with db.get_session() as session:
        rows = (await session.execute(
            query.order_by(DiagnosticFailure.created_at.desc()).limit(limit_value)
        )).all()

    failures: List[Dict[str, Any]] = []
    grouped: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
    for failure, position in rows:
        item = {'failure': failure.to_dict(), 'position': _position_dict(position)}
        failures.append(item)
        grouped[failure.failure_type].append(item)

    def count_type(failure_type: str) -> int:
        return len(grouped.get(failure_type, []))

    return {
        'success': True,
        'failures': failures,
        'grouped': dict(grouped),
        'totalCount': len(failures),
        'emergencyCloses': count_type('emergency_close'),
        'tpslFailures': count_type('tpsl_set_failed'),
        'cleanupFailures': count_type('order_cleanup_failed'),
    }


@router.get("/retry-attempts")
async def list_retry_attempts(
    limit: Optional[str] = Query(None),
    positionId: Optional[str] = Query(None),
    db: Database = Depends(get_db)
):
    limit_value = parse_limit(limit, DIAGNOSTICS_DEFAULT_LIMIT, DIAGNOSTICS_MAX_LIMIT)

    query = select(TpslRetryAttempt, BotPosition).outerjoin(
        BotPosition, TpslRetryAttempt.position_id == BotPosition.id
    )
    if positionId is not None:
        query = query.where(TpslRetryAttempt.position_id == parse_positive_id(
            positionId, "positionId must be a positive integer", "INVALID_POSITION_ID"
        ))

    async with db.get_session() as session:
        rows = (await session.execute(
            query.order_by(TpslRetryAttempt.created_at.desc()).limit(limit_value)
        )).all()

    attempts: List[Dict[str, Any]] = []
    by_position: Dict[int, List[Dict[str, Any]]] = defaultdict(list)
    failed = 0
    for attempt, position in rows:
        item = {'attempt': attempt.to_dict(), 'position': _position_dict(position)}
        attempts.append(item)
        by_position[attempt.position_id].append(item)
        if attempt.error_message is not None:
            failed += 1

    return {
        'success': True,
        'attempts': attempts,
        'byPosition': dict(by_position),
        'totalCount': len(attempts),
        'failedCount': failed,
        'successfulCount': len(attempts) - failed,
        'failureRate': _failure_rate(failed, len(attempts)),
    }


@router.get("/error-alerts")
async def list_error_alerts(limit: Optional[str] = Query(None), db: Database = Depends(get_db)):
    limit_value = parse_limit(limit, DIAGNOSTICS_DEFAULT_LIMIT, DIAGNOSTICS_MAX_LIMIT)

    async with db.get_session() as session:
        alerts = (await session.execute(
            select(Alert)
            .where(Alert.execution_status == ExecutionStatus.ERROR_REJECTED.value)
            .order_by(Alert.created_at.desc())
            .limit(limit_value)
        )).scalars().all()

    error_alerts = [alert.to_dict() for alert in alerts]
    grouped: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
    reason_counts: Dict[str, int] = defaultdict(int)
    for alert in error_alerts:
        grouped[alert['errorType'] or 'unknown'].append(alert)
        reason_counts[alert['rejectionReason'] or 'unknown'] += 1

    return {
        'success': True,
        'errorAlerts': error_alerts,
        'grouped': dict(grouped),
        'reasonCounts': dict(reason_counts),
        'totalCount': len(error_alerts),
        'apiTemporary': sum(1 for a in error_alerts if a['errorType'] == ErrorType.API_TEMPORARY.value),
        'tradeFault': sum(1 for a in error_alerts if a['errorType'] == ErrorType.TRADE_FAULT.value),
        'configurationError': sum(1 for a in error_alerts if a['errorType'] in CONFIGURATION_ERROR_TYPES),
    }


# ============================================================================
# ОЧИСТКА
# ============================================================================

CLEANUP_STATEMENTS = {
    'failures': lambda: delete(DiagnosticFailure),
    'errorAlerts': lambda: delete(Alert).where(Alert.execution_status == ExecutionStatus.ERROR_REJECTED.value),
    'retries': lambda: delete(TpslRetryAttempt),
    'historyLocks': lambda: delete(SymbolLock).where(SymbolLock.unlocked_at.is_not(None)),
}

CLEANUP_TARGETS = {
    'failures': ('failures',),
    'error_alerts': ('errorAlerts',),
    'retries': ('retries',),
    'history_locks': ('historyLocks',),
    'all': ('failures', 'errorAlerts', 'retries', 'historyLocks'),
}


@router.post("/cleanup")
async def cleanup_diagnostics(request: Request, db: Database = Depends(get_db)):
    """Очистка диагностики. Активные блокировки символов не удаляются."""
    body = await read_json_body(request)
    cleanup_type = body.get('type')
    if cleanup_type not in CLEANUP_TARGETS:
        raise APIError("Invalid cleanup type", 400, code="INVALID_CLEANUP_TYPE")

    logger.info(f"🧹 Starting diagnostics cleanup: {cleanup_type}")

    details: Dict[str, int] = {}
    async with db.get_session() as session:
        for target in CLEANUP_TARGETS[cleanup_type]:
            result = await session.execute(CLEANUP_STATEMENTS[target]())
            details[target] = result.rowcount or 0

    deleted_count = sum(details.values())
    logger.info(f"✅ Diagnostics cleanup complete: {deleted_count} records ({details})")

    return {
        'success': True,
        'message': f"Cleaned {deleted_count} entries",
        'deletedCount': deleted_count,
        'details': details,
    }

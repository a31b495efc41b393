"""
Trading Bot Alerts Router
Список алертов, удаление и очистка (по сроку хранения, до сегодня, все кроме последнего)
"""

from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy import func, select

from app.api.dependencies import get_db, parse_limit, parse_offset, parse_positive_id
from data.database import Database
from data.models import Alert
from utils.helpers import APIError, parse_iso_datetime, utc_iso
from utils.logger import setup_logger

router = APIRouter(prefix="/api/alerts", tags=["Alerts"])
logger = setup_logger(__name__)

ALERTS_DEFAULT_LIMIT = 50
ALERTS_MAX_LIMIT = 500
PREVIEW_SIZE = 10


@router.get("")
async def list_alerts(
    limit: Optional[str] = Query(None),
    offset: Optional[str] = Query(None),
    db: Database = Depends(get_db)
):
    limit_value = parse_limit(limit, ALERTS_DEFAULT_LIMIT, ALERTS_MAX_LIMIT)
    offset_value = parse_offset(offset)

    async with db.get_session() as session:
        total = await session.scalar(select(func.count(Alert.id)))
        alerts = (await session.execute(
            select(Alert).order_by(Alert.created_at.desc()).limit(limit_value).offset(offset_value)
        )).scalars().all()

    return {
        'success': True,
        'alerts': [alert.to_dict() for alert in alerts],
        'total': total or 0,
        'limit': limit_value,
        'offset': offset_value,
    }


@router.post("/cleanup-old")
async def cleanup_old_alerts(dryRun: Optional[str] = Query(None), db: Database = Depends(get_db)):
    """Удаление алертов с истекшим retentionDays (dryRun=true - только превью)"""
    expired = await db.get_expired_alerts()

    if dryRun == 'true':
        now = datetime.now(timezone.utc)
        preview = []
        for alert in expired[:PREVIEW_SIZE]:
            created_at = parse_iso_datetime(alert.created_at)
            preview.append({
                'id': alert.id,
                'symbol': alert.symbol,
                'tier': alert.tier,
                'createdAt': alert.created_at,
                'retentionDays': alert.retention_days,
                'age': f"{(now - created_at).days} days" if created_at else None,
            })
        return {
            'success': True,
            'dryRun': True,
            'message': f"Would delete {len(expired)} alerts",
            'count': len(expired),
            'preview': preview,
        }

    if not expired:
        return {'success': True, 'message': "No old alerts found to delete", 'deletedCount': 0}

    deleted = await db.delete_alerts_by_ids([alert.id for alert in expired])
    logger.info(f"🧹 Old alerts cleanup: {deleted} deleted")

    return {
        'success': True,
        'message': f"Successfully deleted {deleted} old alerts",
        'deletedCount': deleted,
        'deletedAt': utc_iso(),
    }


@router.get("/cleanup-old")
async def cleanup_stats(db: Database = Depends(get_db)):
    expired = await db.get_expired_alerts()

    breakdown = {}
    for alert in expired:
        breakdown[alert.retention_days] = breakdown.get(alert.retention_days, 0) + 1

    return {
        'success': True,
        'totalAlertsToDelete': len(expired),
        'breakdown': [
            {'retentionDays': days, 'count': count}
            for days, count in sorted(breakdown.items())
        ],
        'message': f"{len(expired)} alerts are eligible for deletion",
    }


@router.delete("/cleanup")
async def cleanup_before_today(db: Database = Depends(get_db)):
    """Удаление всех алертов, созданных до начала текущих суток (UTC)"""
    today_start = datetime.now(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
    deleted = await db.delete_alerts_created_before(utc_iso(today_start))

    return {
        'success': True,
        'deleted': deleted,
        'message': f"Deleted {deleted} alerts created before today",
    }


@router.delete("/cleanup-all-but-last")
async def cleanup_all_but_last(db: Database = Depends(get_db)):
    deleted = await db.delete_all_alerts_but_last()
    return {
        'success': True,
        'deleted': deleted,
        'message': f"Deleted {deleted} alerts, kept the latest",
    }


@router.delete("/{alert_id}")
async def delete_alert(alert_id: str, db: Database = Depends(get_db)):
    parsed_id = parse_positive_id(alert_id, "Valid positive integer ID is required", "INVALID_ID")

    async with db.get_session() as session:
        alert = await session.get(Alert, parsed_id)
        if alert is not None:
            await session.delete(alert)

    if alert is None:
        raise APIError("Alert not found", 404, code="ALERT_NOT_FOUND")

    logger.info(f"🗑️ Alert {parsed_id} deleted")
    return {'success': True, 'message': "Alert deleted successfully", 'deletedId': parsed_id}

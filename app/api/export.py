"""
Trading Bot Export Router
Выгрузка истории позиций в JSON или CSV
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import Response

from app.api.dependencies import get_db
from data.database import Database
from services.export_service import ExportFilters, PositionExporter, export_filename, positions_to_csv
from utils.helpers import utc_iso

router = APIRouter(prefix="/api/export", tags=["Export"])


@router.get("/positions")
async def export_positions(
    format: str = Query('json'),
    from_: Optional[str] = Query(None, alias='from'),
    to: Optional[str] = Query(None),
    days: Optional[str] = Query(None),
    all: Optional[str] = Query(None),
    tier: Optional[str] = Query(None),
    symbol: Optional[str] = Query(None),
    side: Optional[str] = Query(None),
    db: Database = Depends(get_db)
):
    filters = ExportFilters(
        format=format,
        date_from=from_,
        date_to=to,
        days=days,
        all=all == 'true',
        tier=tier,
        symbol=symbol,
        side=side,
    )
    result = await PositionExporter(db).export(filters)

    if result.count == 0:
        return {'success': False, 'message': "No positions found for the selected filters", 'count': 0}

    if format == 'csv':
        return Response(
            content=positions_to_csv(result.positions),
            media_type='text/csv; charset=utf-8',
            headers={'Content-Disposition': f'attachment; filename="{export_filename()}"'},
        )

    return {
        'success': True,
        'count': result.count,
        'exported_at': utc_iso(),
        'filters': filters.to_dict(),
        'positions': result.positions,
    }

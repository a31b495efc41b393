"""
Trading Bot Safety Router
Блокировка CloudFront и SMS алерты
"""

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from app.api.dependencies import get_db, get_sms, read_json_body, server_info
from core.cloudfront_guard import get_lock_status, reset_lock
from data.database import Database
from services.sms_service import AlertLevel, SMSAlert, SMSService
from utils.helpers import APIError

router = APIRouter(prefix="/api/bot", tags=["Safety"])


@router.get("/cloudfront-lock-status")
async def cloudfront_lock_status(db: Database = Depends(get_db)):
    return {'success': True, **(await get_lock_status(db))}


@router.post("/reset-cloudfront-lock")
async def reset_cloudfront_lock(db: Database = Depends(get_db)):
    await reset_lock(db)
    return {
        'success': True,
        'message': "CloudFront lock reset. Bot remains disabled - enable it manually in settings.",
    }


@router.post("/send-sms")
async def send_sms(request: Request, sms_service: SMSService = Depends(get_sms)):
    body = await read_json_body(request)
    message = body.get('message')
    if not message or not isinstance(message, str):
        raise APIError("Message is required", 400, code="MISSING_MESSAGE")

    alert_level = body.get('alertLevel') or AlertLevel.INFO.value
    if alert_level not in [level.value for level in AlertLevel]:
        raise APIError("Invalid alertLevel", 400, code="INVALID_ALERT_LEVEL")

    result = await sms_service.send_sms(SMSAlert(
        message=message,
        alert_level=AlertLevel(alert_level),
        context=body.get('context') or 'manual',
    ))
    return JSONResponse(content=result.to_dict(), status_code=200 if result.success else 500)


@router.post("/test-sms")
async def test_sms(sms_service: SMSService = Depends(get_sms)):
    result = await sms_service.send_test_sms()
    if not result.success:
        return JSONResponse(
            content={'success': False, 'error': result.error, 'attempt': result.attempt},
            status_code=500
        )
    return {
        'success': True,
        'message': "Test SMS sent successfully",
        'messageId': result.message_id,
        'attempt': result.attempt,
    }


@router.post("/send-cloudfront-alert")
async def send_cloudfront_alert(request: Request, sms_service: SMSService = Depends(get_sms)):
    body = await read_json_body(request)
    result = await sms_service.send_cloudfront_block_alert(body.get('serverInfo') or server_info(request))
    if not result.success:
        return JSONResponse(content={'success': False, 'error': result.error}, status_code=500)
    return {'success': True, 'messageId': result.message_id}

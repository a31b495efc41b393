"""
Trading Bot Webhook Router
Прием алертов TradingView
"""

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from app.api.dependencies import get_webhook_processor
from core.webhook_processor import WebhookProcessor

router = APIRouter(prefix="/api/webhook", tags=["Webhook"])


@router.get("/tradingview")
async def webhook_status(request: Request, processor: WebhookProcessor = Depends(get_webhook_processor)):
    return await processor.test_endpoint(str(request.url))


@router.post("/tradingview")
async def receive_alert(request: Request, processor: WebhookProcessor = Depends(get_webhook_processor)):
    raw_body = (await request.body()).decode('utf-8', errors='replace')
    result = await processor.process(raw_body)
    return JSONResponse(content=result.body, status_code=result.status_code)

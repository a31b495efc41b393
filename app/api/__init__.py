"""
Trading Bot API
HTTP роутеры дашборда, вебхука и биржевых операций
"""

from app.api import alerts, bot, bot_settings, diagnostics, edge_proxy, exchange, export, safety, webhook

ROUTERS = [
    webhook.router,
    alerts.router,
    bot.router,
    bot_settings.router,
    safety.router,
    diagnostics.router,
    exchange.router,
    export.router,
    edge_proxy.router,
]

__all__ = ['ROUTERS']

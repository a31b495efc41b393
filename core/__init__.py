"""
Trading Bot Core Module
Ядро системы - клиент Bybit, rate limiter и классификация ошибок
"""

# ============================================================================
# BYBIT CLIENT
# ============================================================================
from .bybit_client import (
    BybitClient,
    BybitAPIError,
    CloudFrontBlockError,
    OrderSide,
    OrderType,
    TimeInForce,
    convert_symbol_to_bybit,
    parse_wallet_balance,
)

# ============================================================================
# RATE LIMITING
# ============================================================================
from .rate_limiter import RateLimiter, get_bybit_rate_limiter

# ============================================================================
# ERROR CLASSIFICATION
# ============================================================================
from .error_classifier import ClassifiedError, ErrorType, classify_error

# ============================================================================
# MODULE INFO
# ============================================================================

__version__ = "1.0.0"

__all__ = [
    # Bybit API Client
    "BybitClient",
    "BybitAPIError",
    "CloudFrontBlockError",
    "OrderSide",
    "OrderType",
    "TimeInForce",
    "convert_symbol_to_bybit",
    "parse_wallet_balance",

    # Rate limiting
    "RateLimiter",
    "get_bybit_rate_limiter",

    # Errors
    "ClassifiedError",
    "ErrorType",
    "classify_error",
]

"""
Trading Bot Services Module
SMS алерты, экспорт истории и импорт закрытых позиций Bybit
"""

# ============================================================================
# SMS ALERTS
# ============================================================================
from .sms_service import AlertLevel, SMSAlert, SMSResult, SMSService

# ============================================================================
# EXPORT
# ============================================================================
from .export_service import ExportFilters, ExportResult, PositionExporter, positions_to_csv

# ============================================================================
# HISTORY IMPORT
# ============================================================================
from .history_importer import BybitHistoryImporter

# ============================================================================
# MODULE INFO
# ============================================================================

__version__ = "1.0.0"

__all__ = [
    "AlertLevel",
    "SMSAlert",
    "SMSResult",
    "SMSService",
    "ExportFilters",
    "ExportResult",
    "PositionExporter",
    "positions_to_csv",
    "BybitHistoryImporter",
]

"""
Logging Context

Stamps the kiosk identity (deviceId, stationId) on every log record once it
is known. Identity is process-wide, so it lives in module state rather than
per-task context.
"""

import logging
from typing import Optional, Dict

_context: Dict[str, Optional[str]] = {
    'deviceId': None,
    'stationId': None,
}


class StationContextFilter(logging.Filter):
    """
    Logging filter that adds kiosk identity to all log records
    """

    def filter(self, record):
        for key, value in _context.items():
            if value and not hasattr(record, key):
                setattr(record, key, value)
        return True


def setStationContext(deviceId: Optional[str] = None, stationId: Optional[str] = None):
    """
    Set identity fields for logging. None leaves a field unchanged.

    Args:
        deviceId: Local installation identifier
        stationId: Registered station identifier
    """
    if deviceId is not None:
        _context['deviceId'] = deviceId
    if stationId is not None:
        _context['stationId'] = stationId


def getStationContext() -> dict:
    """Get current identity context"""
    return dict(_context)


def clearStationContext(stationOnly: bool = False):
    """Clear identity context (station only after a configuration reset)"""
    _context['stationId'] = None
    if not stationOnly:
        _context['deviceId'] = None

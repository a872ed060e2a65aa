"""
Kiosk Logging - hierarchical structured logger with automatic name detection.

API:
    from kiosk.log import getLogger

    class AdminGate:
        def __init__(self, store):
            self.log = getLogger()  # Auto: 'kiosk.core.adminGate.AdminGate'

        def setPin(self, pin):
            self.log.info("Admin PIN updated", scheme=self.scheme)

    # Global configuration (once at app startup)
    from kiosk.log import configureLogging
    configureLogging(logDir=str(dataDir / 'logs'), maxTotalMb=100)

    # Identity stamped on every record once the device is known
    from kiosk.log import setStationContext
    setStationContext(deviceId=doc['deviceId'])
"""

from .logger import getLogger, configureLogging
from .context import (
    setStationContext,
    getStationContext,
    clearStationContext,
    StationContextFilter
)

__all__ = [
    'getLogger',
    'configureLogging',
    'setStationContext',
    'getStationContext',
    'clearStationContext',
    'StationContextFilter'
]

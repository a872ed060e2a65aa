"""
Device Identity - stable per-installation identifier.

The deviceId is generated once (128 bits from the OS CSPRNG) and never
regenerated; the deviceLabel defaults to the host name and may be overridden.

Property of Uncompromising Sensors LLC.
"""

import secrets
import socket
from typing import Any, Dict

from kiosk.core.configStore import ConfigStore
from kiosk.log import getLogger, setStationContext


def generateDeviceId() -> str:
    """128-bit random identifier, hex encoded"""
    return secrets.token_hex(16)


class DeviceIdentity:
    """Ensures the configuration document carries a device identity."""

    def __init__(self, store: ConfigStore):
        self.store = store
        self.log = getLogger()

    def ensure(self) -> Dict[str, Any]:
        """
        Return the document, creating the device identity on first call.

        Idempotent: once a deviceId exists this is a pure read.
        """
        existing = self.store.load() or {}
        if existing.get('deviceId'):
            return existing

        deviceId = generateDeviceId()
        partial = {
            'deviceId': deviceId,
            'deviceLabel': existing.get('deviceLabel') or socket.gethostname(),
        }
        doc = self.store.merge(partial)

        setStationContext(deviceId=deviceId)
        self.log.info("[DeviceIdentity] Generated device identity", deviceLabel=partial['deviceLabel'])
        return doc

    def info(self) -> Dict[str, str]:
        """Device identity for the UI: {deviceId, deviceLabel}"""
        doc = self.ensure()
        return {
            'deviceId': doc['deviceId'],
            'deviceLabel': doc.get('deviceLabel') or socket.gethostname(),
        }

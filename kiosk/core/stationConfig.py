"""
Station configuration: UI-facing config operations and station registration.

- updateConfig(): set-config with protected fields stripped
- resetStationConfig(): clear-config, keeps device identity, PIN hash and zoom
- buildPosLoginUrl(): POS login page for the registered station
- StationLoginClient: remote station login against the POS API (aiohttp)

Property of Uncompromising Sensors LLC.
"""

import asyncio
from typing import Any, Dict, Mapping, Optional
from urllib.parse import urlencode

import aiohttp

from kiosk.core.configStore import STATION_FIELDS, isNumber
from kiosk.log import getLogger, setStationContext, clearStationContext
from kiosk.settings import posLoginUrl

log = getLogger()

# Never writable through set-config: identity is generated once, PIN has its own gate
PROTECTED_FIELDS = ('deviceId', 'adminPinHash')

STATION_LOGIN_PATH = '/auth/pos-station-login'


class StationLoginError(Exception):
    """Remote station login rejected or unreachable"""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


# =============================================================================
# Config operations
# =============================================================================

def updateConfig(context, partial: Mapping[str, Any]) -> Dict[str, Any]:
    """Shallow-merge a UI partial; protected fields are ignored"""
    cleaned = {k: v for k, v in partial.items() if k not in PROTECTED_FIELDS}
    dropped = sorted(set(partial.keys()) - set(cleaned.keys()))
    if dropped:
        log.warning("Ignoring protected config fields", fields=dropped)
    if not cleaned:
        return context.store.load() or {}

    doc = context.store.merge(cleaned)
    if any(f in cleaned for f in STATION_FIELDS):
        if doc.get('stationId'):
            setStationContext(stationId=str(doc['stationId']))
        else:
            clearStationContext(stationOnly=True)
    return doc


def resetStationConfig(context) -> Dict[str, Any]:
    """Drop station identity, keep device identity, PIN hash and a numeric zoom"""
    current = context.deviceIdentity.ensure()

    preserve: Dict[str, Any] = {
        'deviceId': current['deviceId'],
        'deviceLabel': current.get('deviceLabel') or context.deviceIdentity.info()['deviceLabel'],
    }
    if current.get('adminPinHash'):
        preserve['adminPinHash'] = current['adminPinHash']
    if isNumber(current.get('uiZoomFactor')):
        preserve['uiZoomFactor'] = current['uiZoomFactor']

    doc = context.store.reset(preserve)
    clearStationContext(stationOnly=True)
    return doc


def isStationRegistered(doc: Optional[Mapping[str, Any]]) -> bool:
    return bool(doc and doc.get('stationId'))


def buildPosLoginUrl(settings: Dict[str, Any], doc: Optional[Mapping[str, Any]]) -> str:
    """{posBase}/login-pos, with station query parameters once registered"""
    base = posLoginUrl(settings)
    if not isStationRegistered(doc):
        return base

    params = {
        'station_id': doc.get('stationId') or '',
        'station_label': doc.get('stationLabel') or '',
        'station_email': doc.get('stationEmail') or '',
    }
    return f"{base}?{urlencode(params)}"


# =============================================================================
# Remote station login
# =============================================================================

class StationLoginClient:
    """POS API client for terminal (station) authentication."""

    def __init__(self, baseUrl: str, timeoutSeconds: float = 15.0):
        self.baseUrl = baseUrl.rstrip('/')
        self.timeout = aiohttp.ClientTimeout(total=timeoutSeconds)
        self.log = getLogger()

    async def login(self, email: str, password: str, deviceId: str, deviceLabel: str) -> Dict[str, Any]:
        """
        Authenticate the station.

        Returns {'stationId', 'stationLabel', 'stationEmail'}; raises
        StationLoginError with the backend's detail on rejection.
        """
        url = f"{self.baseUrl}{STATION_LOGIN_PATH}"
        body = {
            'station_email': email,
            'station_password': password,
            'device_id': deviceId,
            'device_label': deviceLabel,
        }

        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.post(url, json=body) as resp:
                    try:
                        data = await resp.json(content_type=None)
                    except ValueError:
                        data = None
                    status = resp.status
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            self.log.error(f"[StationLogin] Request failed: {e}", url=url)
            raise StationLoginError(f"Station login unavailable: {e}") from e

        if not isinstance(data, dict):
            data = {}

        if status >= 400 or not data.get('station_id'):
            detail = data.get('detail') or f"Station login failed (HTTP {status})"
            if not isinstance(detail, str):
                detail = str(detail)
            self.log.warning("[StationLogin] Login rejected", status=status)
            raise StationLoginError(detail, status=status)

        return {
            'stationId': data.get('station_id'),
            'stationLabel': data.get('station_label'),
            'stationEmail': data.get('station_email') or email,
        }


async def registerStation(context, client: StationLoginClient, email: Any, password: Any) -> Dict[str, Any]:
    """
    Log the station in and persist its identity.

    Returns {'ok': True, 'config': doc} or {'ok': False, 'error': detail}.
    """
    email = str(email or '').strip()
    password = str(password or '')
    if not email or not password:
        return {'ok': False, 'error': 'Station email and password are required'}

    device = await asyncio.to_thread(context.deviceIdentity.info)
    try:
        station = await client.login(email, password, device['deviceId'], device['deviceLabel'])
    except StationLoginError as e:
        return {'ok': False, 'error': str(e)}

    doc = await context.store.mergeAsync(station)
    setStationContext(stationId=str(station['stationId']))
    log.info("Station registered", stationLabel=station['stationLabel'])
    return {'ok': True, 'config': doc}

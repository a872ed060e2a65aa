"""
WebSocket display surface.

One connected UI shell = one surface. Messages core -> UI are JSON objects
with a 'type' field ('updateStatus', 'zoom', 'navigate', 'focus', 'error')
and are sent fire-and-forget: a closed socket or a failed send is logged and
dropped, never raised to the caller.

Property of Uncompromising Sensors LLC.
"""

import asyncio
from typing import Any, Dict, Optional, Set

from aiohttp import web

from kiosk.core.context import DisplaySurface
from kiosk.core.contracts import MessageType
from kiosk.log import getLogger


class WebSocketSurface(DisplaySurface):
    """
    Ephemeral UI connection state.

    Exists only while the WebSocket is open. Remembers the last zoom it was
    told to apply so a reconnecting shell can be brought up to date.
    """

    def __init__(self, connId: str, ws: web.WebSocketResponse, loop: Optional[asyncio.AbstractEventLoop] = None):
        self.connId = connId
        self.ws = ws
        self.loop = loop or asyncio.get_running_loop()
        self.zoomFactor: Optional[float] = None
        self.log = getLogger()
        self._pending: Set[asyncio.Task] = set()

    # =========================================================================
    # DisplaySurface
    # =========================================================================

    def setZoomFactor(self, value: float) -> None:
        self.zoomFactor = value
        self.post({'type': MessageType.ZOOM.value, 'zoomFactor': value})

    def pushUpdateStatus(self, snapshot: Dict[str, Any]) -> None:
        self.post({'type': MessageType.UPDATE_STATUS.value, **snapshot})

    def navigate(self, url: str) -> None:
        self.post({'type': MessageType.NAVIGATE.value, 'url': url})

    def focus(self) -> None:
        self.post({'type': MessageType.FOCUS.value})

    # =========================================================================
    # Delivery
    # =========================================================================

    @property
    def closed(self) -> bool:
        return self.ws.closed

    def post(self, message: Dict[str, Any]):
        """Schedule a send and return immediately; safe to call from worker threads"""
        if self.ws.closed:
            self.log.debug(f"[Surface {self.connId}] Dropping message, socket closed", messageType=message.get('type'))
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None

        if running is self.loop:
            self._schedule(message)
            return
        try:
            self.loop.call_soon_threadsafe(self._schedule, message)
        except RuntimeError:
            self.log.debug(f"[Surface {self.connId}] Dropping message, loop closed", messageType=message.get('type'))

    def _schedule(self, message: Dict[str, Any]):
        task = self.loop.create_task(self.sendMessage(message))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def sendMessage(self, message: Dict[str, Any]):
        """Send JSON message to the shell; failures are logged only"""
        if self.ws.closed:
            return
        try:
            await self.ws.send_json(message)
        except (ConnectionError, RuntimeError) as e:
            self.log.warning(f"[Surface {self.connId}] Send failed: {e}", messageType=message.get('type'))

    async def sendError(self, error: str):
        await self.sendMessage({'type': MessageType.ERROR.value, 'error': error})

    async def drain(self):
        """Wait for messages already scheduled (used on shutdown and in tests)"""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

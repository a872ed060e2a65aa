"""
Application context: the single owner of process-wide kiosk state.

Owns:
- settings, config store and the services built on it
- the attached display surface (UI shell), if any
- the update lifecycle and its timers
- the quit request used by the boundary and by install-on-restart

Created once per process; a surface attaches and detaches as the UI shell
connects and disconnects.

Property of Uncompromising Sensors LLC.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from kiosk import __version__
from kiosk.core.adminGate import AdminGate
from kiosk.core.configStore import ConfigStore
from kiosk.core.deviceIdentity import DeviceIdentity
from kiosk.core.displayZoom import DisplayZoomPolicy
from kiosk.log import getLogger


class DisplaySurface(ABC):
    """
    The UI shell showing the kiosk pages.

    Implementations deliver messages fire-and-forget: no acknowledgement, no
    backpressure.
    """

    @abstractmethod
    def setZoomFactor(self, value: float) -> None:
        pass

    @abstractmethod
    def pushUpdateStatus(self, snapshot: Dict[str, Any]) -> None:
        pass

    @abstractmethod
    def navigate(self, url: str) -> None:
        pass

    @abstractmethod
    def focus(self) -> None:
        pass


class ApplicationContext:
    """Explicitly owned process state passed to components that need it."""

    def __init__(self, settings: Dict[str, Any], store: Optional[ConfigStore] = None):
        self.settings = settings
        self.log = getLogger()
        self.version = __version__

        self.store = store or ConfigStore(settings['dataDir'])
        self.deviceIdentity = DeviceIdentity(self.store)
        self.adminGate = AdminGate(self.store, scheme=settings.get('admin', {}).get('pinHashScheme', 'sha256'))
        self.zoomPolicy = DisplayZoomPolicy(self.store, self)

        # Set by main once the update feed is built
        self.updateLifecycle = None

        self._surface: Optional[DisplaySurface] = None
        self._quitEvent: Optional[asyncio.Event] = None

    # =========================================================================
    # Surface
    # =========================================================================

    @property
    def surface(self) -> Optional[DisplaySurface]:
        return self._surface

    def attachSurface(self, surface: DisplaySurface):
        """Attach (or replace) the active display surface"""
        self._surface = surface
        self.log.info("[Context] Display surface attached", surface=type(surface).__name__)

    def detachSurface(self, surface: Optional[DisplaySurface] = None):
        """Detach the surface (only if it is still the active one when given)"""
        if surface is None or surface is self._surface:
            self._surface = None
            self.log.info("[Context] Display surface detached")

    def sendUpdateStatus(self, snapshot: Dict[str, Any]):
        """Fire-and-forget; no-op without a surface"""
        if self._surface is None:
            return
        self._surface.pushUpdateStatus(snapshot)

    # =========================================================================
    # Quit
    # =========================================================================

    def _getQuitEvent(self) -> asyncio.Event:
        if self._quitEvent is None:
            self._quitEvent = asyncio.Event()
        return self._quitEvent

    def requestQuit(self, reason: str = 'requested'):
        self.log.info("[Context] Quit requested", reason=reason)
        self._getQuitEvent().set()

    @property
    def quitRequested(self) -> bool:
        return self._quitEvent is not None and self._quitEvent.is_set()

    async def waitForQuit(self):
        await self._getQuitEvent().wait()

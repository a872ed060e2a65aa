"""
Display Zoom Policy - bounded zoom factor for the kiosk surface.

The persisted uiZoomFactor is always clamped into [0.5, 1.2]; anything missing,
non-numeric or non-finite resolves to the neutral 1.0. The surface zoom is
reapplied after every navigation/load event and every zoom gesture, so native
zoom changes never drift outside the bounds.

Property of Uncompromising Sensors LLC.
"""

import math
from typing import Any, Optional

from kiosk.core.configStore import ConfigStore, isNumber
from kiosk.core.contracts import SurfaceEvent
from kiosk.log import getLogger


MIN_ZOOM = 0.5
MAX_ZOOM = 1.2
NEUTRAL_ZOOM = 1.0


def clampZoomFactor(value: Any) -> float:
    """Clamp into [MIN_ZOOM, MAX_ZOOM]; missing/non-finite -> NEUTRAL_ZOOM"""
    if value is None:
        return NEUTRAL_ZOOM
    try:
        number = float(value)
    except (TypeError, ValueError):
        return NEUTRAL_ZOOM
    if not math.isfinite(number):
        return NEUTRAL_ZOOM
    return min(MAX_ZOOM, max(MIN_ZOOM, number))


class DisplayZoomPolicy:
    """Reads/writes uiZoomFactor and keeps the active surface within bounds."""

    def __init__(self, store: ConfigStore, context: Optional[Any] = None):
        self.store = store
        self.context = context
        self.log = getLogger()

    clamp = staticmethod(clampZoomFactor)

    def get(self) -> float:
        doc = self.store.load()
        if doc and isNumber(doc.get('uiZoomFactor')):
            return clampZoomFactor(doc['uiZoomFactor'])
        return NEUTRAL_ZOOM

    def set(self, value: Any) -> float:
        """Clamp, persist, apply to the surface; returns the stored value"""
        zoomFactor = clampZoomFactor(value)
        self.store.merge({'uiZoomFactor': zoomFactor})
        self.apply(zoomFactor)
        self.log.info("[Zoom] Zoom factor set", requested=value, zoomFactor=zoomFactor)
        return zoomFactor

    def apply(self, value: Any):
        """Push the clamped value to the active surface; no-op without one"""
        surface = self.context.surface if self.context is not None else None
        if surface is None:
            return
        surface.setZoomFactor(clampZoomFactor(value))

    def reapply(self) -> float:
        """Re-enforce the persisted zoom on the surface"""
        zoomFactor = self.get()
        self.apply(zoomFactor)
        return zoomFactor

    def onSurfaceEvent(self, event: str) -> Optional[float]:
        """
        Handle a surface event. Navigation/load and zoom gestures reapply the
        policy zoom; unknown events are ignored (returns None).
        """
        try:
            surfaceEvent = SurfaceEvent(event)
        except ValueError:
            self.log.debug("[Zoom] Ignoring unknown surface event", surfaceEvent=event)
            return None

        zoomFactor = self.reapply()
        if surfaceEvent == SurfaceEvent.ZOOM_CHANGED:
            self.log.debug("[Zoom] Zoom gesture overridden", zoomFactor=zoomFactor)
        return zoomFactor

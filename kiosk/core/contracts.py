"""
Contracts between the kiosk core and its collaborators.

- UpdatePhase / UpdateStatus: update state machine and the snapshot pushed to the UI
- UpdateEventType / UpdateEvent: events emitted by an update feed
- SurfaceEvent: display-surface events that force zoom reapplication
- MessageType: WebSocket push message types (core -> UI surface)

Snapshots are plain dicts on the wire; None fields are omitted.

Property of Uncompromising Sensors LLC.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional


class UpdatePhase(str, Enum):
    """Update lifecycle states"""
    IDLE = "idle"
    CHECKING = "checking"
    AVAILABLE = "available"
    NONE = "none"
    DOWNLOADING = "downloading"
    DOWNLOADED = "downloaded"
    RESTARTING = "restarting"
    ERROR = "error"


# Expected transitions; anything else is applied but logged
UPDATE_TRANSITIONS = {
    UpdatePhase.IDLE: {UpdatePhase.CHECKING},
    UpdatePhase.CHECKING: {UpdatePhase.AVAILABLE, UpdatePhase.NONE, UpdatePhase.DOWNLOADED, UpdatePhase.ERROR},
    UpdatePhase.AVAILABLE: {UpdatePhase.DOWNLOADING, UpdatePhase.DOWNLOADED, UpdatePhase.ERROR},
    UpdatePhase.DOWNLOADING: {UpdatePhase.DOWNLOADING, UpdatePhase.DOWNLOADED, UpdatePhase.ERROR},
    UpdatePhase.DOWNLOADED: {UpdatePhase.DOWNLOADED, UpdatePhase.RESTARTING, UpdatePhase.CHECKING, UpdatePhase.ERROR},
    UpdatePhase.NONE: {UpdatePhase.CHECKING, UpdatePhase.ERROR},
    UpdatePhase.ERROR: {UpdatePhase.CHECKING, UpdatePhase.ERROR},
    UpdatePhase.RESTARTING: {UpdatePhase.ERROR},
}


def isExpectedTransition(current: UpdatePhase, target: UpdatePhase) -> bool:
    return target in UPDATE_TRANSITIONS.get(current, set())


class UpdateEventType(str, Enum):
    """Events emitted by an update feed"""
    CHECK_STARTED = "checkStarted"
    UPDATE_FOUND = "updateFound"
    UPDATE_ABSENT = "updateAbsent"
    DOWNLOAD_PROGRESS = "downloadProgress"
    DOWNLOAD_COMPLETE = "downloadComplete"
    FAILURE = "failure"


@dataclass
class UpdateEvent:
    """Single event from an update feed"""
    type: UpdateEventType
    info: Optional[Dict[str, Any]] = None        # {version, releaseNotes?, ...}
    progress: Optional[Dict[str, Any]] = None    # {percent, transferred, total, bytesPerSecond}
    message: Optional[str] = None

    @classmethod
    def checkStarted(cls) -> 'UpdateEvent':
        return cls(UpdateEventType.CHECK_STARTED)

    @classmethod
    def updateFound(cls, info: Dict[str, Any]) -> 'UpdateEvent':
        return cls(UpdateEventType.UPDATE_FOUND, info=info)

    @classmethod
    def updateAbsent(cls, info: Optional[Dict[str, Any]] = None) -> 'UpdateEvent':
        return cls(UpdateEventType.UPDATE_ABSENT, info=info)

    @classmethod
    def downloadProgress(cls, progress: Dict[str, Any]) -> 'UpdateEvent':
        return cls(UpdateEventType.DOWNLOAD_PROGRESS, progress=progress)

    @classmethod
    def downloadComplete(cls, info: Dict[str, Any]) -> 'UpdateEvent':
        return cls(UpdateEventType.DOWNLOAD_COMPLETE, info=info)

    @classmethod
    def failure(cls, message: str) -> 'UpdateEvent':
        return cls(UpdateEventType.FAILURE, message=message)


@dataclass
class UpdateStatus:
    """Snapshot pushed to the UI on every update transition"""
    status: UpdatePhase
    info: Optional[Dict[str, Any]] = None
    progress: Optional[Dict[str, Any]] = None
    countdownSeconds: Optional[int] = None
    message: Optional[str] = None

    def toDict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {'status': self.status.value}
        if self.info is not None:
            d['info'] = self.info
        if self.progress is not None:
            d['progress'] = self.progress
        if self.countdownSeconds is not None:
            d['countdownSeconds'] = self.countdownSeconds
        if self.message is not None:
            d['message'] = self.message
        return d


class SurfaceEvent(str, Enum):
    """Display-surface events reported by the UI shell"""
    DID_FINISH_LOAD = "didFinishLoad"
    DOM_READY = "domReady"
    DID_NAVIGATE = "didNavigate"
    DID_NAVIGATE_IN_PAGE = "didNavigateInPage"
    ZOOM_CHANGED = "zoomChanged"


class MessageType(str, Enum):
    """Push messages core -> UI surface"""
    UPDATE_STATUS = "updateStatus"
    ZOOM = "zoom"
    NAVIGATE = "navigate"
    FOCUS = "focus"
    ERROR = "error"

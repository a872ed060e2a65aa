"""
Update Lifecycle - update state machine with countdown-forced restart.

States:
    idle -> checking -> available -> downloading -> downloaded -> restarting
                     -> none
    error is reachable from any non-idle state

Events come from an UpdateFeed (check started, update found/absent, download
progress, download complete, failure). Every transition pushes a status
snapshot {status, info?, progress?, countdownSeconds?, message?} to the UI
surface through the ApplicationContext (fire-and-forget).

Countdown:
- Entering downloaded arms a countdown (15 by default, one tick per second)
- Each tick decrements and pushes {status: downloaded, countdownSeconds}
- Reaching zero moves to restarting exactly once and calls the feed's
  quitAndInstall with forced relaunch
- Once armed it runs to completion; a new downloaded event cancels the armed
  timer and re-arms from the start (one timer at most)
- Once restarting, further feed events are ignored; an installer that fails
  to start moves to error so the next check can retry

Re-checks run every 6 hours in packaged builds only.

Property of Uncompromising Sensors LLC.
"""

import asyncio
from typing import Any, Dict, Optional

from kiosk.core.contracts import (
    UpdatePhase, UpdateStatus, UpdateEvent, UpdateEventType, isExpectedTransition
)
from kiosk.log import getLogger


DEFAULT_COUNTDOWN_SECONDS = 15
DEFAULT_TICK_SECONDS = 1.0
DEFAULT_CHECK_INTERVAL_SECONDS = 6 * 60 * 60


def _runningLoop() -> Optional[asyncio.AbstractEventLoop]:
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None


class UpdateLifecycle:
    """
    Single active update state machine per process.

    Timer tasks:
    - countdown: one asyncio task, replaced (cancel then reschedule) on re-arm
    - re-check: one asyncio task looping check -> sleep, never overlapping
    Without a running event loop the countdown only advances through tick().
    """

    def __init__(self, context, feed=None, packaged: bool = False,
                 countdownSeconds: int = DEFAULT_COUNTDOWN_SECONDS,
                 tickSeconds: float = DEFAULT_TICK_SECONDS,
                 checkIntervalSeconds: float = DEFAULT_CHECK_INTERVAL_SECONDS):
        self.context = context
        self.feed = feed
        self.packaged = packaged
        self.countdownSeconds = countdownSeconds
        self.tickSeconds = tickSeconds
        self.checkIntervalSeconds = checkIntervalSeconds
        self.log = getLogger()

        self.phase = UpdatePhase.IDLE
        self.info: Optional[Dict[str, Any]] = None
        self.progress: Optional[Dict[str, Any]] = None
        self.countdownRemaining: Optional[int] = None
        self.message: Optional[str] = None
        self.restartCount = 0

        self._restartTriggered = False
        self._countdownTask: Optional[asyncio.Task] = None
        self._recheckTask: Optional[asyncio.Task] = None
        self._lastStatus = UpdateStatus(UpdatePhase.IDLE)

        if self.feed is not None:
            self.feed.setListener(self.handleEvent)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self) -> bool:
        """Start periodic checks. Returns False when checks are suppressed."""
        if not self.packaged:
            self.log.info("[Update] Development build, update checks disabled")
            return False
        if self.feed is None:
            self.log.warning("[Update] No update feed configured, update checks disabled")
            return False
        if self._recheckTask is not None and not self._recheckTask.done():
            return True

        self._recheckTask = asyncio.get_running_loop().create_task(self._recheckLoop())
        self.log.info("[Update] Periodic update checks started", intervalSeconds=self.checkIntervalSeconds)
        return True

    async def stop(self):
        """Cancel timers (process shutdown only)"""
        for task in (self._recheckTask, self._countdownTask):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._recheckTask = None
        self._countdownTask = None

    async def _recheckLoop(self):
        while True:
            await self.checkNow()
            await asyncio.sleep(self.checkIntervalSeconds)

    async def checkNow(self):
        """Ask the feed to check; feed exceptions become a failure event"""
        if self.feed is None or self.phase == UpdatePhase.RESTARTING:
            return
        try:
            await self.feed.checkForUpdates()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.log.error(f"[Update] Update check failed: {e}", exc_info=True)
            self.handleEvent(UpdateEvent.failure(str(e)))

    # =========================================================================
    # Events
    # =========================================================================

    def handleEvent(self, event: UpdateEvent):
        """Apply a feed event to the state machine"""
        if self.phase == UpdatePhase.RESTARTING:
            self.log.debug("[Update] Ignoring event while restarting", eventType=event.type.value)
            return

        if event.type == UpdateEventType.CHECK_STARTED:
            self._transition(UpdatePhase.CHECKING)
        elif event.type == UpdateEventType.UPDATE_FOUND:
            self.info = event.info
            self._transition(UpdatePhase.AVAILABLE, info=event.info)
        elif event.type == UpdateEventType.UPDATE_ABSENT:
            self._transition(UpdatePhase.NONE)
        elif event.type == UpdateEventType.DOWNLOAD_PROGRESS:
            self.progress = event.progress
            self._transition(UpdatePhase.DOWNLOADING, progress=event.progress)
        elif event.type == UpdateEventType.DOWNLOAD_COMPLETE:
            self.info = event.info
            self.armCountdown(event.info)
        elif event.type == UpdateEventType.FAILURE:
            self.message = event.message or 'Unknown update error'
            self._transition(UpdatePhase.ERROR, message=self.message)
        else:
            self.log.warning("[Update] Unknown update event", eventType=str(event.type))

    def _transition(self, target: UpdatePhase, **fields):
        if not isExpectedTransition(self.phase, target):
            self.log.warning("[Update] Unexpected transition", fromPhase=self.phase.value, toPhase=target.value)
        else:
            self.log.info("[Update] Transition", fromPhase=self.phase.value, toPhase=target.value)
        self.phase = target
        self._publish(UpdateStatus(target, **fields))

    def _publish(self, status: UpdateStatus):
        self._lastStatus = status
        self.context.sendUpdateStatus(status.toDict())

    @property
    def status(self) -> Dict[str, Any]:
        """Last snapshot pushed to the UI"""
        return self._lastStatus.toDict()

    # =========================================================================
    # Countdown
    # =========================================================================

    def armCountdown(self, info: Optional[Dict[str, Any]] = None):
        """Enter downloaded and (re)arm the restart countdown from the start"""
        self._cancelCountdownTask()

        self._restartTriggered = False
        self.countdownRemaining = self.countdownSeconds
        self._transition(UpdatePhase.DOWNLOADED, info=info, countdownSeconds=self.countdownRemaining)

        loop = _runningLoop()
        if loop is None:
            self.log.debug("[Update] No running loop, countdown advances by tick() only")
            return
        self._countdownTask = loop.create_task(self._runCountdown())
        self.log.info("[Update] Restart countdown armed", countdownSeconds=self.countdownRemaining)

    async def _runCountdown(self):
        while True:
            await asyncio.sleep(self.tickSeconds)
            if self.tick():
                return

    def tick(self) -> bool:
        """
        Advance the countdown by one second.

        Returns True when the countdown is finished (restart triggered or none armed).
        """
        if self.countdownRemaining is None or self._restartTriggered:
            return True

        self.countdownRemaining -= 1
        if self.countdownRemaining <= 0:
            self.countdownRemaining = 0
            self._triggerRestart()
            return True

        # The armed countdown owns the phase until it expires
        self.phase = UpdatePhase.DOWNLOADED
        self._publish(UpdateStatus(UpdatePhase.DOWNLOADED, info=self.info,
                                   countdownSeconds=self.countdownRemaining))
        return False

    def _triggerRestart(self):
        if self._restartTriggered:
            return
        self._restartTriggered = True
        self.restartCount += 1

        task = self._countdownTask
        self._countdownTask = None
        if task is not None and task is not self._currentTask():
            task.cancel()

        self._transition(UpdatePhase.RESTARTING, info=self.info)

        if self.feed is None:
            self.log.warning("[Update] Restart requested without an update feed")
            return
        try:
            launched = self.feed.quitAndInstall(isSilent=False, isForceRunAfter=True)
        except Exception as e:
            self.log.error(f"[Update] Install on restart failed: {e}", exc_info=True)
            self.message = str(e)
            self._transition(UpdatePhase.ERROR, message=self.message)
            return

        # Leave restarting so the next periodic check can start over
        if launched is False:
            self.message = 'Update installer could not be started'
            self.log.error("[Update] Install on restart did not start")
            self._transition(UpdatePhase.ERROR, message=self.message)

    def _cancelCountdownTask(self):
        task = self._countdownTask
        self._countdownTask = None
        if task is not None and not task.done():
            task.cancel()

    @staticmethod
    def _currentTask() -> Optional[asyncio.Task]:
        if _runningLoop() is None:
            return None
        return asyncio.current_task()

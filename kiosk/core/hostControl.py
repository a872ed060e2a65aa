"""
Host Control - OS-level operations for the kiosk process.

- requestShutdown(): powers off the terminal (Windows only)
- InstanceLock: single running kiosk per data directory (filelock)
- notifyRunningInstance(): a second process asks the first to focus its window

Property of Uncompromising Sensors LLC.
"""


# Imports
import asyncio, subprocess, sys
from pathlib import Path
from typing import Any, Optional

import aiohttp
from filelock import FileLock, Timeout

from kiosk.log import getLogger

# Module-level logger (auto-detects: 'kiosk.core.hostControl')
log = getLogger()

LOCK_FILE = 'kiosk.lock'


# Functions
async def requestShutdown() -> bool:
    """Best-effort OS shutdown. False on unsupported platforms or command failure, never raises."""
    if sys.platform != 'win32':
        log.warning("Shutdown not supported on this platform", platform=sys.platform)
        return False
    try:
        log.info("Requesting OS shutdown")
        proc = await asyncio.create_subprocess_exec("shutdown", "/s", "/t", "0", stdout=subprocess.PIPE, stderr=subprocess.PIPE)
        _, stderr = await proc.communicate()
        if proc.returncode == 0:
            return True
        log.error("Shutdown command failed", exitCode=proc.returncode,
                  stderr=stderr.decode('utf-8', errors='ignore').strip())
        return False
    except Exception as e:
        log.error(f"Shutdown exception: {e}", exception=str(e))
        return False


async def notifyRunningInstance(host: str, port: int, timeoutSeconds: float = 3.0) -> bool:
    """Ask the running instance to bring its window to front"""
    url = f"http://{host}:{port}/api/app/focus"
    try:
        timeout = aiohttp.ClientTimeout(total=timeoutSeconds)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.post(url) as resp:
                return resp.status == 200
    except (aiohttp.ClientError, asyncio.TimeoutError) as e:
        log.warning(f"Could not reach running instance: {e}", url=url)
        return False


# Classes
class InstanceLock:
    """Non-blocking single-instance lock held for the life of the process"""

    def __init__(self, dataDir: str):
        self.path = Path(dataDir) / LOCK_FILE
        self._lock: Optional[FileLock] = None

    def acquire(self) -> bool:
        """True if this process is the primary instance"""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        lock = FileLock(str(self.path), timeout=0)
        try:
            lock.acquire()
        except Timeout:
            log.info("Another kiosk instance holds the lock", path=str(self.path))
            return False
        self._lock = lock
        log.debug("Instance lock acquired", path=str(self.path))
        return True

    def release(self):
        if self._lock is not None:
            self._lock.release()
            self._lock = None

    @property
    def held(self) -> bool:
        return self._lock is not None and self._lock.is_locked

    def __enter__(self) -> 'InstanceLock':
        return self

    def __exit__(self, *exc: Any):
        self.release()

"""
Update feeds: the source of update lifecycle events.

UpdateFeed: abstract base
    checkForUpdates()             async, emits events through the listener
    quitAndInstall(silent, run)   hand over to the installer and quit
    setListener(callback)         UpdateLifecycle.handleEvent

ManifestUpdateFeed: polls a JSON manifest over HTTPS (aiohttp)
    {"version": "1.4.0", "url": "https://.../KensarKiosk-Setup-1.4.0.exe",
     "releaseNotes": "...", "releaseDate": "..."}
    - compares against the running version (packaging.version)
    - streams the package into <dataDir>/pending with progress events
    - quitAndInstall launches the installer (NSIS flags) and requests app quit

Package signature verification is not performed here.

Property of Uncompromising Sensors LLC.
"""

import asyncio
import os
import subprocess
import sys
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Callable, Dict, Optional
from urllib.parse import urlparse

import aiohttp
from packaging.version import InvalidVersion, Version

from kiosk.core.contracts import UpdateEvent
from kiosk.log import getLogger


CHUNK_SIZE = 64 * 1024
PROGRESS_INTERVAL_SECONDS = 0.5


class UpdateFeedError(Exception):
    """Manifest or package could not be used"""
    pass


class UpdateFeed(ABC):
    """Abstract base class for update event sources."""

    def __init__(self):
        self.log = getLogger()
        self._listener: Optional[Callable[[UpdateEvent], None]] = None

    def setListener(self, listener: Callable[[UpdateEvent], None]):
        self._listener = listener

    def emit(self, event: UpdateEvent):
        if self._listener is None:
            self.log.debug("Dropping update event without listener", eventType=event.type.value)
            return
        self._listener(event)

    @abstractmethod
    async def checkForUpdates(self):
        pass

    @abstractmethod
    def quitAndInstall(self, isSilent: bool = False, isForceRunAfter: bool = True) -> bool:
        pass


class ManifestUpdateFeed(UpdateFeed):
    """Update feed backed by a JSON release manifest."""

    def __init__(self, manifestUrl: str, currentVersion: str, downloadDir: str,
                 onQuit: Optional[Callable[[str], None]] = None, timeoutSeconds: float = 30.0):
        super().__init__()
        self.manifestUrl = manifestUrl
        self.currentVersion = currentVersion
        self.downloadDir = Path(downloadDir)
        self.onQuit = onQuit
        self.timeout = aiohttp.ClientTimeout(total=None, sock_connect=timeoutSeconds, sock_read=timeoutSeconds)

        self._downloadedPath: Optional[Path] = None
        self._downloadedVersion: Optional[str] = None
        self._checking = False

    @property
    def downloadedPath(self) -> Optional[Path]:
        return self._downloadedPath

    # =========================================================================
    # Check + download
    # =========================================================================

    async def checkForUpdates(self):
        if self._checking:
            self.log.debug("Update check already in progress")
            return
        self._checking = True
        self.emit(UpdateEvent.checkStarted())
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                manifest = await self._fetchManifest(session)
                info = self._buildInfo(manifest)

                if Version(info['version']) <= Version(self.currentVersion):
                    self.log.info("No update available", currentVersion=self.currentVersion,
                                  latestVersion=info['version'])
                    self.emit(UpdateEvent.updateAbsent(info))
                    return

                self.log.info("Update available", currentVersion=self.currentVersion,
                              latestVersion=info['version'])
                self.emit(UpdateEvent.updateFound(info))

                if self._downloadedVersion == info['version'] and self._downloadedPath and self._downloadedPath.exists():
                    self.emit(UpdateEvent.downloadComplete(info))
                    return

                path = await self._download(session, manifest['url'])
                self._downloadedPath = path
                self._downloadedVersion = info['version']
                self.emit(UpdateEvent.downloadComplete({**info, 'downloadedFile': str(path)}))

        except (aiohttp.ClientError, asyncio.TimeoutError, UpdateFeedError, InvalidVersion, OSError) as e:
            message = str(e) or type(e).__name__
            self.log.error(f"Update check failed: {message}", errorClass=type(e).__name__)
            self.emit(UpdateEvent.failure(message))
        finally:
            self._checking = False

    async def _fetchManifest(self, session: aiohttp.ClientSession) -> Dict[str, Any]:
        async with session.get(self.manifestUrl) as resp:
            if resp.status != 200:
                raise UpdateFeedError(f"Manifest request failed with HTTP {resp.status}")
            try:
                manifest = await resp.json(content_type=None)
            except ValueError as e:
                raise UpdateFeedError(f"Manifest is not valid JSON: {e}") from e

        if not isinstance(manifest, dict):
            raise UpdateFeedError("Manifest is not a JSON object")
        for key in ('version', 'url'):
            if not isinstance(manifest.get(key), str) or not manifest[key]:
                raise UpdateFeedError(f"Manifest is missing '{key}'")
        return manifest

    @staticmethod
    def _buildInfo(manifest: Dict[str, Any]) -> Dict[str, Any]:
        info = {'version': manifest['version']}
        for key in ('releaseNotes', 'releaseDate', 'releaseName'):
            if manifest.get(key) is not None:
                info[key] = manifest[key]
        return info

    async def _download(self, session: aiohttp.ClientSession, url: str) -> Path:
        fileName = Path(urlparse(url).path).name or 'update-package'
        self.downloadDir.mkdir(parents=True, exist_ok=True)
        target = self.downloadDir / fileName
        partial = self.downloadDir / f"{fileName}.part"

        async with session.get(url) as resp:
            if resp.status != 200:
                raise UpdateFeedError(f"Package download failed with HTTP {resp.status}")

            total = resp.content_length or 0
            transferred = 0
            started = time.monotonic()
            lastReport = 0.0

            with open(partial, 'wb') as f:
                async for chunk in resp.content.iter_chunked(CHUNK_SIZE):
                    f.write(chunk)
                    transferred += len(chunk)

                    now = time.monotonic()
                    if now - lastReport >= PROGRESS_INTERVAL_SECONDS or (total and transferred >= total):
                        lastReport = now
                        self.emit(UpdateEvent.downloadProgress(
                            self._progress(transferred, total, now - started)))

        if total and transferred != total:
            raise UpdateFeedError(f"Package truncated: {transferred} of {total} bytes")

        os.replace(partial, target)
        if sys.platform != 'win32':
            target.chmod(0o755)

        self.log.info("Update package downloaded", path=str(target), bytes=transferred)
        return target

    @staticmethod
    def _progress(transferred: int, total: int, elapsed: float) -> Dict[str, Any]:
        return {
            'percent': round(transferred * 100.0 / total, 2) if total else None,
            'transferred': transferred,
            'total': total or None,
            'bytesPerSecond': int(transferred / elapsed) if elapsed > 0 else 0,
        }

    # =========================================================================
    # Install
    # =========================================================================

    def quitAndInstall(self, isSilent: bool = False, isForceRunAfter: bool = True) -> bool:
        """Launch the downloaded installer detached, then request application quit"""
        if self._downloadedPath is None or not self._downloadedPath.exists():
            self.log.warning("quitAndInstall called without a downloaded package")
            return False

        args = [str(self._downloadedPath), '--updated']
        if isSilent:
            args.append('/S')
        if isForceRunAfter:
            args.append('--force-run')

        popenKwargs: Dict[str, Any] = {'close_fds': True}
        if sys.platform == 'win32':
            popenKwargs['creationflags'] = subprocess.DETACHED_PROCESS | subprocess.CREATE_NEW_PROCESS_GROUP
        else:
            popenKwargs['start_new_session'] = True

        subprocess.Popen(args, **popenKwargs)
        self.log.info("Installer launched", installerArgs=args)

        if self.onQuit:
            self.onQuit('install-update')
        return True

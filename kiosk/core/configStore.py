"""
Station Config Store - durable JSON document with backup and self-healing.

Storage Layout (per-installation data directory):
- station.json      primary document (pretty-printed)
- station.json.bak  copy of the last successful write, recovery source
- station.json.tmp  transient, exists only while a save is in flight

Invariants:
- The primary file is always the previous valid document or the new one, never
  a truncated write (temp file + atomic replace)
- Load falls back to the backup and re-promotes it when the primary is unreadable
- Missing/unreadable configuration is "first run", not an error (load() -> None)
- All operations are serialized inside the process; there is no cross-process
  locking (single owning process, see kiosk.core.hostControl.InstanceLock)

Failure policy:
- Essential steps (temp write, replace) raise ConfigStoreError
- Best-effort steps (backup copy, stale-primary removal, temp cleanup, restore
  during load) return their error; callers log it and discard it

Property of Uncompromising Sensors LLC.
"""

import asyncio
import os
import shutil
import threading
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional

import orjson

from kiosk.log import getLogger


CONFIG_FILE = 'station.json'
CONFIG_BACKUP_FILE = 'station.json.bak'
CONFIG_TMP_FILE = 'station.json.tmp'

# Reset keeps these; station identity fields are dropped
DEVICE_FIELDS = ('deviceId', 'deviceLabel')
STATION_FIELDS = ('stationId', 'stationLabel', 'stationEmail')


class ConfigStoreError(Exception):
    """Essential save step failed; the primary document is unchanged"""
    pass


def isNumber(value: Any) -> bool:
    """True for int/float values (bool excluded)"""
    return isinstance(value, (int, float)) and not isinstance(value, bool)


class ConfigStore:
    """
    Atomic read/write/recover of the station configuration document.

    Document is a flat dict: deviceId, deviceLabel, stationId, stationLabel,
    stationEmail, adminPinHash, uiZoomFactor.
    """

    def __init__(self, dataDir: str):
        self.log = getLogger()
        self.dataDir = Path(dataDir)
        self.primaryPath = self.dataDir / CONFIG_FILE
        self.backupPath = self.dataDir / CONFIG_BACKUP_FILE
        self.tmpPath = self.dataDir / CONFIG_TMP_FILE

        # Re-entrant: merge() and load() call save() while holding it
        self._lock = threading.RLock()

        self.dataDir.mkdir(parents=True, exist_ok=True)

    # =========================================================================
    # Public API
    # =========================================================================

    def load(self) -> Optional[Dict[str, Any]]:
        """
        Load the current document.

        Returns the primary if readable, else the backup (restored to primary as
        a side effect), else None.
        """
        with self._lock:
            primary = self._readDocument(self.primaryPath)
            if primary is not None:
                return primary

            backup = self._readDocument(self.backupPath)
            if backup is None:
                return None

            self.log.warning("[ConfigStore] Primary unreadable, restoring from backup",
                             primaryPath=str(self.primaryPath))
            error = self._bestEffort(lambda: self._write(backup, backupFirst=False),
                                     "restore from backup")
            if error is None:
                self.log.info("[ConfigStore] Backup promoted to primary")
            return backup

    def save(self, doc: Mapping[str, Any]) -> None:
        """
        Persist doc atomically.

        Raises ConfigStoreError if the temp write or the replace fails; the
        previous primary is left intact in that case.
        """
        with self._lock:
            self._write(dict(doc), backupFirst=True)

    def merge(self, partial: Mapping[str, Any]) -> Dict[str, Any]:
        """Shallow-merge partial over the current document (absent = empty), save, return result"""
        with self._lock:
            current = self.load() or {}
            merged = {**current, **dict(partial)}
            self.save(merged)
            self.log.debug("[ConfigStore] Merged fields", keys=sorted(partial.keys()))
            return merged

    def reset(self, preserve: Mapping[str, Any]) -> Dict[str, Any]:
        """
        Replace the stored document with the preserved subset only.

        preserve must carry deviceId and deviceLabel. adminPinHash is kept when
        present; uiZoomFactor only when it is a number.
        """
        missing = [f for f in DEVICE_FIELDS if not preserve.get(f)]
        if missing:
            raise ValueError(f"reset requires device identity fields: {', '.join(missing)}")

        doc: Dict[str, Any] = {f: preserve[f] for f in DEVICE_FIELDS}
        if preserve.get('adminPinHash'):
            doc['adminPinHash'] = preserve['adminPinHash']
        if isNumber(preserve.get('uiZoomFactor')):
            doc['uiZoomFactor'] = preserve['uiZoomFactor']

        with self._lock:
            self.save(doc)

        self.log.info("[ConfigStore] Configuration reset", kept=sorted(doc.keys()))
        return doc

    # Async wrappers: run on the default worker pool, still serialized by the lock

    async def loadAsync(self) -> Optional[Dict[str, Any]]:
        return await asyncio.to_thread(self.load)

    async def saveAsync(self, doc: Mapping[str, Any]) -> None:
        await asyncio.to_thread(self.save, doc)

    async def mergeAsync(self, partial: Mapping[str, Any]) -> Dict[str, Any]:
        return await asyncio.to_thread(self.merge, partial)

    async def resetAsync(self, preserve: Mapping[str, Any]) -> Dict[str, Any]:
        return await asyncio.to_thread(self.reset, preserve)

    # =========================================================================
    # Internals
    # =========================================================================

    def _readDocument(self, path: Path) -> Optional[Dict[str, Any]]:
        """Parse path as a JSON object; None if missing, unreadable or not an object"""
        try:
            data = orjson.loads(path.read_bytes())
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as e:
            self.log.warning(f"[ConfigStore] Unreadable document: {e}", path=str(path))
            return None

        if not isinstance(data, dict):
            self.log.warning("[ConfigStore] Document is not an object", path=str(path),
                             type=type(data).__name__)
            return None
        return data

    def _write(self, doc: Dict[str, Any], backupFirst: bool) -> None:
        payload = orjson.dumps(doc, option=orjson.OPT_INDENT_2)

        try:
            if backupFirst and self.primaryPath.exists():
                # Only observable when this save fails: the refresh below overwrites it on success.
                # Discarded: a missing backup only weakens recovery
                self._bestEffort(lambda: shutil.copyfile(self.primaryPath, self.backupPath),
                                 "backup copy")

            try:
                with open(self.tmpPath, 'wb') as f:
                    f.write(payload)
                    f.flush()
                    os.fsync(f.fileno())
            except OSError as e:
                raise ConfigStoreError(f"Failed to write temp file {self.tmpPath}: {e}") from e

            self._replacePrimary()
        finally:
            # Discarded: a stale temp file is overwritten by the next save
            self._bestEffort(self._removeTmp, "temp cleanup")

        # Keep the backup equal to the last successful write; discarded on failure
        self._bestEffort(lambda: shutil.copyfile(self.primaryPath, self.backupPath),
                         "backup refresh")

    def _replacePrimary(self) -> None:
        try:
            os.replace(self.tmpPath, self.primaryPath)
            return
        except OSError as e:
            if not self.primaryPath.exists():
                raise ConfigStoreError(f"Failed to move {self.tmpPath} onto {self.primaryPath}: {e}") from e
            self.log.warning(f"[ConfigStore] Replace refused, removing stale primary: {e}")

        # Discarded: the rename below reports the real failure
        self._bestEffort(self.primaryPath.unlink, "stale primary removal")
        try:
            os.rename(self.tmpPath, self.primaryPath)
        except OSError as e:
            raise ConfigStoreError(f"Failed to move {self.tmpPath} onto {self.primaryPath}: {e}") from e

    def _removeTmp(self) -> None:
        if self.tmpPath.exists():
            self.tmpPath.unlink()

    def _bestEffort(self, action: Callable[[], Any], description: str) -> Optional[Exception]:
        """Run a non-essential step. Returns the error instead of raising it."""
        try:
            action()
            return None
        except Exception as e:
            self.log.warning(f"[ConfigStore] Ignored failure during {description}: {e}")
            return e

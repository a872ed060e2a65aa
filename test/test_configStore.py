"""
Config Store Tests

Durable station configuration: atomic save, backup recovery, merge, reset.

Invariants:
- Primary is always the previous or the new document, never partial
- Unreadable primary -> backup is returned and re-promoted
- Nothing readable -> None (first run)
- Reset keeps device identity, PIN hash and numeric zoom; drops station identity

Run: python -m pytest test/test_configStore.py -v
"""

import asyncio
import os
import shutil
import tempfile
from pathlib import Path

import orjson
import pytest

# Add parent to path
import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from kiosk.core import configStore as configStoreModule
from kiosk.core.configStore import (
    ConfigStore, ConfigStoreError, CONFIG_FILE, CONFIG_BACKUP_FILE, CONFIG_TMP_FILE
)


@pytest.fixture
def dataDir():
    """Create and cleanup temp data directory"""
    tmpDir = Path(tempfile.mkdtemp())
    yield tmpDir
    shutil.rmtree(tmpDir, ignore_errors=True)


@pytest.fixture
def store(dataDir):
    return ConfigStore(str(dataDir))


@pytest.fixture
def fullDoc():
    return {
        'deviceId': 'a' * 32,
        'deviceLabel': 'FRONT-TILL',
        'stationId': 'st_42',
        'stationLabel': 'Caja 1',
        'stationEmail': 'caja1@example.com',
        'adminPinHash': 'f' * 64,
        'uiZoomFactor': 0.8,
    }


class TestLoadSave:
    """Basic persistence"""

    def test_load_without_files_is_none(self, store):
        assert store.load() is None

    def test_save_then_load(self, store, fullDoc):
        store.save(fullDoc)
        assert store.load() == fullDoc

    def test_primary_is_pretty_printed(self, store, dataDir):
        store.save({'deviceId': 'abc', 'deviceLabel': 'x'})
        text = (dataDir / CONFIG_FILE).read_text(encoding='utf-8')
        assert '\n  "deviceId": "abc"' in text
        assert orjson.loads(text) == {'deviceId': 'abc', 'deviceLabel': 'x'}

    def test_no_temp_file_after_save(self, store, dataDir):
        store.save({'deviceId': 'abc'})
        assert not (dataDir / CONFIG_TMP_FILE).exists()

    def test_backup_holds_last_successful_write(self, store, dataDir):
        store.save({'deviceId': 'abc', 'n': 1})
        store.save({'deviceId': 'abc', 'n': 2})
        backup = orjson.loads((dataDir / CONFIG_BACKUP_FILE).read_bytes())
        assert backup['n'] == 2

    def test_leftover_temp_file_is_ignored_and_cleaned(self, store, dataDir):
        store.save({'deviceId': 'abc'})
        # Simulate a crash mid-write
        (dataDir / CONFIG_TMP_FILE).write_bytes(b'{"deviceId": "trunc')

        assert store.load() == {'deviceId': 'abc'}

        store.save({'deviceId': 'abc', 'n': 1})
        assert not (dataDir / CONFIG_TMP_FILE).exists()
        assert store.load() == {'deviceId': 'abc', 'n': 1}


class TestRecovery:
    """Backup fallback and re-promotion"""

    def test_deleted_primary_recovered_from_backup(self, store, dataDir, fullDoc):
        store.save(fullDoc)
        (dataDir / CONFIG_FILE).unlink()

        assert store.load() == fullDoc
        # Re-promoted to primary
        assert orjson.loads((dataDir / CONFIG_FILE).read_bytes()) == fullDoc

    def test_corrupt_primary_recovered_from_backup(self, store, dataDir, fullDoc):
        store.save(fullDoc)
        (dataDir / CONFIG_FILE).write_bytes(b'{not json')

        assert store.load() == fullDoc
        assert orjson.loads((dataDir / CONFIG_FILE).read_bytes()) == fullDoc

    def test_non_object_primary_falls_back(self, store, dataDir):
        store.save({'deviceId': 'abc'})
        (dataDir / CONFIG_FILE).write_bytes(b'[1, 2, 3]')

        assert store.load() == {'deviceId': 'abc'}

    def test_both_unreadable_is_none(self, store, dataDir):
        (dataDir / CONFIG_FILE).write_bytes(b'garbage')
        (dataDir / CONFIG_BACKUP_FILE).write_bytes(b'"a string"')

        assert store.load() is None

    def test_restore_does_not_overwrite_backup_with_corrupt_primary(self, store, dataDir):
        store.save({'deviceId': 'abc'})
        (dataDir / CONFIG_FILE).write_bytes(b'{broken')

        store.load()
        backup = orjson.loads((dataDir / CONFIG_BACKUP_FILE).read_bytes())
        assert backup == {'deviceId': 'abc'}


class TestFailures:
    """Essential steps raise, best-effort steps do not"""

    def test_temp_write_failure_raises_and_keeps_primary(self, store, dataDir, monkeypatch):
        store.save({'deviceId': 'abc', 'n': 1})

        def failingFsync(fd):
            raise OSError(28, 'No space left on device')

        monkeypatch.setattr(configStoreModule.os, 'fsync', failingFsync)

        with pytest.raises(ConfigStoreError):
            store.save({'deviceId': 'abc', 'n': 2})

        monkeypatch.undo()
        assert store.load() == {'deviceId': 'abc', 'n': 1}
        assert not (dataDir / CONFIG_TMP_FILE).exists()

    def test_failed_save_backs_up_current_primary(self, store, dataDir, monkeypatch):
        store.save({'deviceId': 'abc', 'n': 1})
        # Primary changed outside the store since the last commit
        (dataDir / CONFIG_FILE).write_bytes(orjson.dumps({'deviceId': 'abc', 'n': 5}))

        def failingFsync(fd):
            raise OSError(28, 'No space left on device')

        monkeypatch.setattr(configStoreModule.os, 'fsync', failingFsync)
        with pytest.raises(ConfigStoreError):
            store.save({'deviceId': 'abc', 'n': 6})

        monkeypatch.undo()
        assert orjson.loads((dataDir / CONFIG_BACKUP_FILE).read_bytes()) == {'deviceId': 'abc', 'n': 5}
        assert store.load() == {'deviceId': 'abc', 'n': 5}

    def test_replace_failure_without_primary_raises(self, store, dataDir, monkeypatch):
        def failingReplace(src, dst):
            raise PermissionError(13, 'Access is denied')

        monkeypatch.setattr(configStoreModule.os, 'replace', failingReplace)

        with pytest.raises(ConfigStoreError):
            store.save({'deviceId': 'abc'})

        assert not (dataDir / CONFIG_TMP_FILE).exists()

    def test_replace_refused_with_primary_falls_back_to_rename(self, store, monkeypatch):
        store.save({'deviceId': 'abc', 'n': 1})

        def failingReplace(src, dst):
            raise PermissionError(13, 'Access is denied')

        monkeypatch.setattr(configStoreModule.os, 'replace', failingReplace)
        store.save({'deviceId': 'abc', 'n': 2})

        monkeypatch.undo()
        assert store.load() == {'deviceId': 'abc', 'n': 2}

    def test_backup_copy_failure_is_ignored(self, store, monkeypatch):
        store.save({'deviceId': 'abc', 'n': 1})

        def failingCopy(src, dst):
            raise OSError('disk busy')

        monkeypatch.setattr(configStoreModule.shutil, 'copyfile', failingCopy)
        store.save({'deviceId': 'abc', 'n': 2})

        monkeypatch.undo()
        assert store.load() == {'deviceId': 'abc', 'n': 2}


class TestMergeReset:
    """Mutation primitives"""

    def test_merge_into_empty(self, store):
        merged = store.merge({'deviceLabel': 'TILL'})
        assert merged == {'deviceLabel': 'TILL'}
        assert store.load() == {'deviceLabel': 'TILL'}

    def test_merge_is_shallow(self, store):
        store.save({'deviceId': 'abc', 'uiZoomFactor': 0.9})
        merged = store.merge({'uiZoomFactor': 1.1, 'stationId': 's1'})
        assert merged == {'deviceId': 'abc', 'uiZoomFactor': 1.1, 'stationId': 's1'}

    def test_reset_preserves_identity_pin_and_zoom(self, store, fullDoc):
        store.save(fullDoc)

        doc = store.reset({
            'deviceId': fullDoc['deviceId'],
            'deviceLabel': fullDoc['deviceLabel'],
            'adminPinHash': fullDoc['adminPinHash'],
            'uiZoomFactor': fullDoc['uiZoomFactor'],
        })

        expected = {
            'deviceId': fullDoc['deviceId'],
            'deviceLabel': fullDoc['deviceLabel'],
            'adminPinHash': fullDoc['adminPinHash'],
            'uiZoomFactor': 0.8,
        }
        assert doc == expected
        assert store.load() == expected
        for field in ('stationId', 'stationLabel', 'stationEmail'):
            assert field not in store.load()

    def test_reset_without_optional_fields(self, store):
        doc = store.reset({'deviceId': 'abc', 'deviceLabel': 'TILL'})
        assert doc == {'deviceId': 'abc', 'deviceLabel': 'TILL'}

    def test_reset_drops_non_numeric_zoom(self, store):
        doc = store.reset({'deviceId': 'abc', 'deviceLabel': 'TILL', 'uiZoomFactor': True})
        assert 'uiZoomFactor' not in doc

        doc = store.reset({'deviceId': 'abc', 'deviceLabel': 'TILL', 'uiZoomFactor': '0.8'})
        assert 'uiZoomFactor' not in doc

    def test_reset_requires_device_identity(self, store):
        with pytest.raises(ValueError):
            store.reset({'deviceLabel': 'TILL'})
        assert store.load() is None


class TestAsyncWrappers:

    @pytest.mark.asyncio
    async def test_merge_and_load_async(self, store):
        await store.mergeAsync({'deviceId': 'abc'})
        await asyncio.gather(store.mergeAsync({'a': 1}), store.mergeAsync({'b': 2}))

        doc = await store.loadAsync()
        assert doc == {'deviceId': 'abc', 'a': 1, 'b': 2}

    @pytest.mark.asyncio
    async def test_reset_async(self, store):
        await store.saveAsync({'deviceId': 'abc', 'deviceLabel': 'TILL', 'stationId': 's1'})
        doc = await store.resetAsync({'deviceId': 'abc', 'deviceLabel': 'TILL'})
        assert doc == {'deviceId': 'abc', 'deviceLabel': 'TILL'}

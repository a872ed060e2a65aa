"""
Display Zoom Policy Tests

Invariants:
- Persisted zoom always within [0.5, 1.2]
- Missing / non-numeric / non-finite -> 1.0
- Surface events reapply the persisted zoom

Run: python -m pytest test/test_displayZoom.py -v
"""

import math
import shutil
import tempfile
from pathlib import Path
from unittest.mock import MagicMock

import pytest

# Add parent to path
import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from kiosk.core.configStore import ConfigStore
from kiosk.core.displayZoom import DisplayZoomPolicy, clampZoomFactor


@pytest.fixture
def store():
    tmpDir = Path(tempfile.mkdtemp())
    yield ConfigStore(str(tmpDir))
    shutil.rmtree(tmpDir, ignore_errors=True)


@pytest.fixture
def context():
    """Context stand-in with an attached surface"""
    ctx = MagicMock()
    ctx.surface = MagicMock()
    return ctx


class TestClamp:

    @pytest.mark.parametrize("value,expected", [
        (0.1, 0.5),
        (5, 1.2),
        (float('nan'), 1.0),
        (0.9, 0.9),
        (0.5, 0.5),
        (1.2, 1.2),
        (None, 1.0),
        ("abc", 1.0),
        (float('inf'), 1.0),
        (-math.inf, 1.0),
        ("0.75", 0.75),
        ([], 1.0),
    ])
    def test_clamp(self, value, expected):
        assert clampZoomFactor(value) == expected

    def test_policy_exposes_clamp(self):
        assert DisplayZoomPolicy.clamp(0.1) == 0.5


class TestPolicy:

    def test_get_default(self, store):
        assert DisplayZoomPolicy(store).get() == 1.0

    def test_get_clamps_stored_value(self, store):
        store.save({'uiZoomFactor': 3})
        assert DisplayZoomPolicy(store).get() == 1.2

    def test_get_ignores_non_numeric_stored_value(self, store):
        store.save({'uiZoomFactor': '0.7'})
        assert DisplayZoomPolicy(store).get() == 1.0

    def test_set_persists_clamped_and_applies(self, store, context):
        policy = DisplayZoomPolicy(store, context)

        assert policy.set(0.1) == 0.5
        assert store.load()['uiZoomFactor'] == 0.5
        context.surface.setZoomFactor.assert_called_once_with(0.5)

    def test_set_without_surface(self, store):
        ctx = MagicMock()
        ctx.surface = None
        assert DisplayZoomPolicy(store, ctx).set(0.9) == 0.9

    @pytest.mark.parametrize("event", ["didFinishLoad", "domReady", "didNavigate", "didNavigateInPage", "zoomChanged"])
    def test_surface_events_reapply(self, store, context, event):
        store.save({'uiZoomFactor': 0.8})
        policy = DisplayZoomPolicy(store, context)

        assert policy.onSurfaceEvent(event) == 0.8
        context.surface.setZoomFactor.assert_called_once_with(0.8)

    def test_unknown_surface_event_ignored(self, store, context):
        policy = DisplayZoomPolicy(store, context)
        assert policy.onSurfaceEvent("resize") is None
        context.surface.setZoomFactor.assert_not_called()

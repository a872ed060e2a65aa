"""
Station Configuration Tests

Covers set-config / clear-config semantics, POS login URL assembly and the
remote station login (against a local aiohttp server).

Run: python -m pytest test/test_stationConfig.py -v
"""

import shutil
import tempfile
from pathlib import Path
from urllib.parse import parse_qs, urlparse

import pytest
from aiohttp import test_utils, web

# Add parent to path
import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from kiosk.core.context import ApplicationContext
from kiosk.core.stationConfig import (
    StationLoginClient, StationLoginError, buildPosLoginUrl, registerStation,
    resetStationConfig, updateConfig
)
from kiosk.log import getStationContext, clearStationContext
from kiosk.settings import loadSettings


@pytest.fixture
def context():
    tmpDir = Path(tempfile.mkdtemp())
    settings = loadSettings(environ={'KIOSK_DATA_DIR': str(tmpDir)})
    yield ApplicationContext(settings)
    clearStationContext()
    shutil.rmtree(tmpDir, ignore_errors=True)


def loginApp(seen):
    async def handleLogin(request):
        body = await request.json()
        seen.append(body)
        if body['station_password'] != 'secret':
            return web.json_response({'detail': 'Invalid station credentials'}, status=401)
        return web.json_response({
            'station_id': 'st_7',
            'station_label': 'Caja 7',
            'station_email': body['station_email'],
        })

    app = web.Application()
    app.router.add_post('/auth/pos-station-login', handleLogin)
    return app


class TestPosLoginUrl:

    def test_without_station(self):
        settings = loadSettings(environ={'KIOSK_DATA_DIR': '/tmp/kiosk-test'})
        assert buildPosLoginUrl(settings, None) == 'https://www.metrikpos.com/login-pos'
        assert buildPosLoginUrl(settings, {'deviceId': 'abc'}) == 'https://www.metrikpos.com/login-pos'

    def test_with_station_local(self):
        settings = loadSettings(environ={'KIOSK_DATA_DIR': '/tmp/kiosk-test', 'POS_ENV': 'local'})
        url = buildPosLoginUrl(settings, {
            'stationId': 'st_1', 'stationLabel': 'Caja 1', 'stationEmail': 'caja1@example.com'
        })

        parsed = urlparse(url)
        assert f"{parsed.scheme}://{parsed.netloc}{parsed.path}" == 'http://localhost:3000/login-pos'
        assert parse_qs(parsed.query) == {
            'station_id': ['st_1'],
            'station_label': ['Caja 1'],
            'station_email': ['caja1@example.com'],
        }


class TestConfigOperations:

    def test_update_config_ignores_protected_fields(self, context):
        original = context.deviceIdentity.ensure()

        doc = updateConfig(context, {'deviceId': 'forged', 'adminPinHash': 'x', 'deviceLabel': 'TILL-2'})

        assert doc['deviceId'] == original['deviceId']
        assert doc['deviceLabel'] == 'TILL-2'
        assert 'adminPinHash' not in doc

    def test_update_config_sets_station_context(self, context):
        updateConfig(context, {'stationId': 'st_9', 'stationLabel': 'Caja 9'})
        assert getStationContext()['stationId'] == 'st_9'

    def test_reset_keeps_identity_pin_and_zoom(self, context):
        deviceId = context.deviceIdentity.ensure()['deviceId']
        context.adminGate.setPin('1234')
        context.zoomPolicy.set(0.8)
        updateConfig(context, {'stationId': 'st_1', 'stationLabel': 'Caja 1', 'stationEmail': 'c@example.com'})

        doc = resetStationConfig(context)

        assert doc['deviceId'] == deviceId
        assert doc['uiZoomFactor'] == 0.8
        assert context.adminGate.verifyPin('1234') is True
        for field in ('stationId', 'stationLabel', 'stationEmail'):
            assert field not in doc
        assert getStationContext()['stationId'] is None

    def test_reset_on_first_run_creates_identity(self, context):
        doc = resetStationConfig(context)
        assert len(doc['deviceId']) == 32
        assert set(doc.keys()) == {'deviceId', 'deviceLabel'}


class TestStationLogin:

    @pytest.mark.asyncio
    async def test_login_success_registers_station(self, context):
        seen = []
        server = test_utils.TestServer(loginApp(seen))
        await server.start_server()
        try:
            client = StationLoginClient(str(server.make_url('/')))
            result = await registerStation(context, client, ' caja7@example.com ', 'secret')
        finally:
            await server.close()

        assert result['ok'] is True
        assert result['config']['stationId'] == 'st_7'
        assert result['config']['stationLabel'] == 'Caja 7'
        assert result['config']['stationEmail'] == 'caja7@example.com'

        device = context.deviceIdentity.info()
        assert seen[0] == {
            'station_email': 'caja7@example.com',
            'station_password': 'secret',
            'device_id': device['deviceId'],
            'device_label': device['deviceLabel'],
        }

    @pytest.mark.asyncio
    async def test_login_rejected_returns_detail(self, context):
        server = test_utils.TestServer(loginApp([]))
        await server.start_server()
        try:
            client = StationLoginClient(str(server.make_url('/')))
            result = await registerStation(context, client, 'caja7@example.com', 'wrong')

            with pytest.raises(StationLoginError) as excInfo:
                await client.login('caja7@example.com', 'wrong', 'dev', 'label')
        finally:
            await server.close()

        assert result == {'ok': False, 'error': 'Invalid station credentials'}
        assert excInfo.value.status == 401
        assert 'stationId' not in (context.store.load() or {})

    @pytest.mark.asyncio
    async def test_missing_credentials(self, context):
        result = await registerStation(context, StationLoginClient('http://127.0.0.1:1'), '', '')
        assert result['ok'] is False

    @pytest.mark.asyncio
    async def test_unreachable_backend(self, context):
        client = StationLoginClient('http://127.0.0.1:1', timeoutSeconds=2)
        with pytest.raises(StationLoginError):
            await client.login('a@example.com', 'x', 'dev', 'label')

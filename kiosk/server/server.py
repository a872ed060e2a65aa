"""
Kiosk Server - loopback HTTP/WebSocket boundary for the UI shell.

Request/response operations map 1:1 onto the core services; the WebSocket
(/ws) is the one-way push channel (update status, zoom, navigation, focus)
and the inbound channel for surface events.

Architecture invariants:
- Bound to loopback only; the UI shell is the single client
- The core (ApplicationContext) is authoritative, handlers hold no state
- Store I/O runs on worker threads, never on the event loop
- At most one attached surface; the latest connection wins
- Browser requests from foreign origins never reach a state-changing route

Property of Uncompromising Sensors LLC.
"""

import asyncio
import orjson
import uuid
from pathlib import Path
from typing import Any, Dict, Optional

from aiohttp import web, WSMsgType

from kiosk.core.configStore import ConfigStoreError
from kiosk.core.context import ApplicationContext
from kiosk.core.hostControl import requestShutdown
from kiosk.core.stationConfig import (
    StationLoginClient, buildPosLoginUrl, isStationRegistered, registerStation,
    resetStationConfig, updateConfig
)
from kiosk.log import getLogger
from kiosk.server.surface import WebSocketSurface
from kiosk.settings import allowedOrigins, configPageUrl, isKioskModeAllowed


class KioskServer:
    """aiohttp application exposing the kiosk control plane to the UI shell"""

    def __init__(self, context: ApplicationContext, loginClient: Optional[StationLoginClient] = None):
        self.context = context
        self.settings = context.settings
        self.log = getLogger()

        api = self.settings.get('api', {})
        self.loginClient = loginClient or StationLoginClient(api.get('baseUrl', ''), api.get('timeoutSeconds', 15))

        self.connections: Dict[str, WebSocketSurface] = {}
        self.allowedOrigins = allowedOrigins(self.settings)

        self.app = web.Application(middlewares=[self._originMiddleware, self._errorMiddleware])
        self._setupRoutes()

        self._runner: Optional[web.AppRunner] = None
        self._site: Optional[web.TCPSite] = None

    def _setupRoutes(self):
        """Setup HTTP and WebSocket routes"""
        self.app.router.add_get('/ws', self.handleWebSocket)
        self.app.router.add_get('/health', self.handleHealth)
        self.app.router.add_get('/api/ui-config', self.handleUiConfig)

        # Configuration
        self.app.router.add_get('/api/config', self.handleGetConfig)
        self.app.router.add_post('/api/config', self.handleSetConfig)
        self.app.router.add_post('/api/config/clear', self.handleClearConfig)
        self.app.router.add_get('/api/device', self.handleDeviceInfo)
        self.app.router.add_post('/api/station/login', self.handleStationLogin)

        # Admin PIN
        self.app.router.add_get('/api/admin/pin', self.handleHasPin)
        self.app.router.add_post('/api/admin/pin', self.handleSetPin)
        self.app.router.add_post('/api/admin/pin/verify', self.handleVerifyPin)

        # Display
        self.app.router.add_get('/api/zoom', self.handleGetZoom)
        self.app.router.add_post('/api/zoom', self.handleSetZoom)
        self.app.router.add_post('/api/navigate/config', self.handleNavigateConfig)
        self.app.router.add_post('/api/navigate/pos', self.handleNavigatePos)

        # Application
        self.app.router.add_get('/api/app/version', self.handleVersion)
        self.app.router.add_post('/api/app/quit', self.handleQuit)
        self.app.router.add_post('/api/app/shutdown', self.handleShutdown)
        self.app.router.add_post('/api/app/focus', self.handleFocus)

        staticDir = self.settings.get('ui', {}).get('staticDir')
        if staticDir and Path(staticDir).is_dir():
            self.app.router.add_static('/ui', staticDir, name='ui', show_index=False)

    async def start(self):
        """Start Server"""
        self.log.info("[Server] Starting...")

        self._runner = web.AppRunner(self.app)
        await self._runner.setup()

        server = self.settings.get('server', {})
        host = server.get('host', '127.0.0.1')
        port = server.get('port', 8765)

        self._site = web.TCPSite(self._runner, host, port)
        await self._site.start()

        self.log.info(f"[Server] Listening on {host}:{port}")

    async def stop(self):
        """Stop Server"""
        self.log.info("[Server] Stopping...")

        for surface in list(self.connections.values()):
            await surface.drain()
            await surface.ws.close()

        if self._site:
            await self._site.stop()
        if self._runner:
            await self._runner.cleanup()

        self.log.info("[Server] Stopped")

    @web.middleware
    async def _originMiddleware(self, request: web.Request, handler):
        """Refuse state changes and /ws upgrades sent by pages from other origins"""
        if request.method not in ('GET', 'HEAD', 'OPTIONS') or request.path == '/ws':
            origin = request.headers.get('Origin')
            if origin is not None and origin not in self.allowedOrigins:
                self.log.warning("[Server] Request from foreign origin refused", origin=origin,
                                 method=request.method, path=request.path)
                return web.json_response({'error': 'Origin not allowed'}, status=403)
        return await handler(request)

    @web.middleware
    async def _errorMiddleware(self, request: web.Request, handler):
        try:
            return await handler(request)
        except web.HTTPException:
            raise
        except ConfigStoreError as e:
            self.log.error(f"[Server] Configuration store failure: {e}", path=request.path)
            return web.json_response({'error': str(e)}, status=500)
        except Exception as e:
            self.log.error(f"[Server] Unhandled error: {e}", path=request.path, exc_info=True)
            return web.json_response({'error': str(e)}, status=500)

    async def _readJson(self, request: web.Request) -> Dict[str, Any]:
        """Request body as a JSON object (empty body = {}); 415 unless JSON, 400 if malformed"""
        if not request.can_read_body:
            return {}
        if request.content_type != 'application/json':
            raise web.HTTPUnsupportedMediaType(text=orjson.dumps({'error': 'application/json body required'}).decode(),
                                               content_type='application/json')
        try:
            data = orjson.loads(await request.read())
        except orjson.JSONDecodeError:
            raise web.HTTPBadRequest(text=orjson.dumps({'error': 'Invalid JSON body'}).decode(),
                                     content_type='application/json')
        if not isinstance(data, dict):
            raise web.HTTPBadRequest(text=orjson.dumps({'error': 'JSON object expected'}).decode(),
                                     content_type='application/json')
        return data

    # =========================================================================
    # HTTP Handlers
    # =========================================================================

    async def handleHealth(self, request: web.Request) -> web.Response:
        return web.json_response({'status': 'ok'})

    async def handleUiConfig(self, request: web.Request) -> web.Response:
        """Start page and shell settings for the UI shell"""
        doc = await self.context.store.loadAsync()
        zoomFactor = await asyncio.to_thread(self.context.zoomPolicy.get)
        startUrl = buildPosLoginUrl(self.settings, doc) if isStationRegistered(doc) else configPageUrl(self.settings)

        return web.json_response({
            'posEnv': self.settings.get('posEnv'),
            'startUrl': startUrl,
            'kioskMode': isKioskModeAllowed(self.settings),
            'zoomFactor': zoomFactor,
            'version': self.context.version,
        })

    async def handleGetConfig(self, request: web.Request) -> web.Response:
        doc = await self.context.store.loadAsync()
        return web.json_response({'config': doc})

    async def handleSetConfig(self, request: web.Request) -> web.Response:
        partial = await self._readJson(request)
        doc = await asyncio.to_thread(updateConfig, self.context, partial)
        return web.json_response({'config': doc})

    async def handleClearConfig(self, request: web.Request) -> web.Response:
        doc = await asyncio.to_thread(resetStationConfig, self.context)
        return web.json_response({'config': doc})

    async def handleDeviceInfo(self, request: web.Request) -> web.Response:
        info = await asyncio.to_thread(self.context.deviceIdentity.info)
        return web.json_response(info)

    async def handleStationLogin(self, request: web.Request) -> web.Response:
        data = await self._readJson(request)
        result = await registerStation(self.context, self.loginClient, data.get('email'), data.get('password'))
        return web.json_response(result)

    async def handleHasPin(self, request: web.Request) -> web.Response:
        hasPin = await asyncio.to_thread(self.context.adminGate.hasPin)
        return web.json_response({'hasPin': hasPin})

    async def handleSetPin(self, request: web.Request) -> web.Response:
        data = await self._readJson(request)
        result = await asyncio.to_thread(self.context.adminGate.setPin, data.get('pin'))
        return web.json_response(result)

    async def handleVerifyPin(self, request: web.Request) -> web.Response:
        data = await self._readJson(request)
        valid = await asyncio.to_thread(self.context.adminGate.verifyPin, data.get('pin'))
        return web.json_response({'valid': valid})

    async def handleGetZoom(self, request: web.Request) -> web.Response:
        zoomFactor = await asyncio.to_thread(self.context.zoomPolicy.get)
        return web.json_response({'zoomFactor': zoomFactor})

    async def handleSetZoom(self, request: web.Request) -> web.Response:
        data = await self._readJson(request)
        zoomFactor = await asyncio.to_thread(self.context.zoomPolicy.set, data.get('zoomFactor'))
        return web.json_response({'zoomFactor': zoomFactor})

    async def handleNavigateConfig(self, request: web.Request) -> web.Response:
        return self._navigate(configPageUrl(self.settings))

    async def handleNavigatePos(self, request: web.Request) -> web.Response:
        doc = await self.context.store.loadAsync()
        return self._navigate(buildPosLoginUrl(self.settings, doc))

    def _navigate(self, url: str) -> web.Response:
        surface = self.context.surface
        if surface is None:
            return web.json_response({'ok': False, 'error': 'No display surface attached'}, status=409)
        surface.navigate(url)
        return web.json_response({'ok': True, 'url': url})

    async def handleVersion(self, request: web.Request) -> web.Response:
        return web.json_response({'version': self.context.version})

    async def handleQuit(self, request: web.Request) -> web.Response:
        self.context.requestQuit('ui')
        return web.json_response({'ok': True})

    async def handleShutdown(self, request: web.Request) -> web.Response:
        ok = await requestShutdown()
        return web.json_response({'ok': ok})

    async def handleFocus(self, request: web.Request) -> web.Response:
        """Second-instance ping: bring the running shell to front"""
        surface = self.context.surface
        if surface is not None:
            surface.focus()
        self.log.info("[Server] Focus requested by another instance", surfaceAttached=surface is not None)
        return web.json_response({'ok': surface is not None})

    # =========================================================================
    # WebSocket
    # =========================================================================

    async def handleWebSocket(self, request: web.Request) -> web.WebSocketResponse:
        """UI shell connection: becomes the active display surface while open"""
        connId = str(uuid.uuid4())
        self.log.info(f"[Server] WebSocket connection: {connId} from {request.remote}")

        ws = web.WebSocketResponse()
        await ws.prepare(request)

        surface = WebSocketSurface(connId, ws)
        self.connections[connId] = surface
        self.context.attachSurface(surface)

        # Bring the new shell up to date
        await asyncio.to_thread(self.context.zoomPolicy.reapply)
        lifecycle = self.context.updateLifecycle
        if lifecycle is not None:
            surface.pushUpdateStatus(lifecycle.status)

        try:
            async for msg in ws:
                if msg.type == WSMsgType.TEXT:
                    await self._handleMessage(surface, msg.data)
                elif msg.type == WSMsgType.ERROR:
                    self.log.error(f"[Server] WebSocket error: {ws.exception()}")

        except Exception as e:
            self.log.error(f"[Server] Error in WebSocket loop: {e}", exc_info=True)

        finally:
            self.connections.pop(connId, None)
            self.context.detachSurface(surface)
            self.log.info(f"[Server] Disconnected: {connId}")

        return ws

    async def _handleMessage(self, surface: WebSocketSurface, data: str):
        """Handle inbound message from the shell"""
        try:
            msg = orjson.loads(data)
        except orjson.JSONDecodeError:
            await surface.sendError('Invalid JSON')
            return
        if not isinstance(msg, dict):
            await surface.sendError('JSON object expected')
            return

        msgType = msg.get('type')
        if msgType == 'surfaceEvent':
            await asyncio.to_thread(self.context.zoomPolicy.onSurfaceEvent, str(msg.get('event')))
        elif msgType == 'ping':
            await surface.sendMessage({'type': 'pong'})
        else:
            self.log.warning(f"[Server] Unknown message type: {msgType}")
            await surface.sendError(f'Unknown message type: {msgType}')

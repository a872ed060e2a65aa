"""
Kensar Kiosk main entry point.

Runs the local control plane for one kiosk terminal: configuration store,
admin PIN gate, display zoom, update lifecycle and the loopback HTTP/WebSocket
boundary the UI shell talks to.

Startup:
- settings (defaults < --config file < environment)
- logging into <dataDir>/logs
- single-instance lock; a second process pings the first and exits
- device identity ensured before anything else touches the store

Usage:
    python -m kiosk [--config path/to/settings.json]

Property of Uncompromising Sensors LLC.
"""

import asyncio
import argparse
import signal
import sys
from pathlib import Path
from typing import Any, Dict, Optional

from kiosk import __version__
from kiosk.core.context import ApplicationContext
from kiosk.core.hostControl import InstanceLock, notifyRunningInstance
from kiosk.core.updateFeed import ManifestUpdateFeed, UpdateFeed
from kiosk.core.updateLifecycle import UpdateLifecycle
from kiosk.log import getLogger, configureLogging, setStationContext
from kiosk.server.server import KioskServer
from kiosk.settings import loadSettings


def buildUpdateFeed(settings: Dict[str, Any], context: ApplicationContext) -> Optional[UpdateFeed]:
    """Manifest feed when a manifest URL is configured, else no feed"""
    manifestUrl = settings.get('update', {}).get('manifestUrl')
    if not manifestUrl:
        return None
    return ManifestUpdateFeed(
        manifestUrl,
        currentVersion=__version__,
        downloadDir=str(Path(settings['dataDir']) / 'pending'),
        onQuit=context.requestQuit,
    )


def buildLifecycle(settings: Dict[str, Any], context: ApplicationContext,
                   feed: Optional[UpdateFeed]) -> UpdateLifecycle:
    updateConfig = settings.get('update', {})
    return UpdateLifecycle(
        context,
        feed=feed,
        packaged=bool(settings.get('packaged')),
        countdownSeconds=int(updateConfig.get('countdownSeconds', 15)),
        tickSeconds=float(updateConfig.get('tickSeconds', 1.0)),
        checkIntervalSeconds=float(updateConfig.get('checkIntervalHours', 6)) * 3600,
    )


async def runKiosk(settings: Dict[str, Any]):
    """Run until the UI, a signal or install-on-restart requests quit"""
    log = getLogger()

    context = ApplicationContext(settings)
    doc = await asyncio.to_thread(context.deviceIdentity.ensure)
    setStationContext(deviceId=doc['deviceId'], stationId=str(doc['stationId']) if doc.get('stationId') else None)

    feed = buildUpdateFeed(settings, context)
    lifecycle = buildLifecycle(settings, context, feed)
    context.updateLifecycle = lifecycle

    server = KioskServer(context)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, context.requestQuit, 'signal')
        except (NotImplementedError, RuntimeError):
            # Windows event loops do not support signal handlers
            pass

    try:
        await server.start()
        lifecycle.start()
        log.info("[Main] Kiosk running", version=__version__, posEnv=settings.get('posEnv'),
                 packaged=settings.get('packaged'))
        await context.waitForQuit()

    except Exception as e:
        log.error(f"[Main] Fatal error: {e}", exc_info=True)
        raise

    finally:
        await lifecycle.stop()
        await server.stop()
        log.info("[Main] Kiosk stopped")


def main(argv=None) -> int:
    """Main entry point"""
    parser = argparse.ArgumentParser(description='Kensar Kiosk - station control plane')
    parser.add_argument('--config', default=None, help='Path to settings file (JSON)')
    args = parser.parse_args(argv)

    settings = loadSettings(args.config)
    dataDir = Path(settings['dataDir'])
    dataDir.mkdir(parents=True, exist_ok=True)

    logConfig = settings.get('logging', {})
    configureLogging(
        logDir=str(dataDir / 'logs'),
        maxBytes=logConfig.get('maxBytes', 5_000_000),
        backupCount=logConfig.get('backupCount', 5),
        maxTotalMb=logConfig.get('maxTotalMb', 100),
        console=logConfig.get('console', True),
        level=logConfig.get('level', 'INFO'),
    )
    log = getLogger()
    log.info("=" * 60)
    log.info(f"Kensar Kiosk {__version__}")
    log.info("=" * 60)
    if args.config:
        # Re-read with a logger so a broken settings file is reported
        settings = loadSettings(args.config, log=log)
    log.info(f"Data directory: {dataDir}")

    lock = InstanceLock(str(dataDir))
    if not lock.acquire():
        server = settings.get('server', {})
        asyncio.run(notifyRunningInstance(server.get('host', '127.0.0.1'), server.get('port', 8765)))
        log.info("[Main] Another instance is running, exiting")
        return 0

    try:
        asyncio.run(runKiosk(settings))
    except KeyboardInterrupt:
        log.info("[Main] Shutdown signal received")
    except Exception:
        return 1
    finally:
        lock.release()
    return 0


if __name__ == '__main__':
    sys.exit(main())

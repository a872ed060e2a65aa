"""
Kiosk settings: built-in defaults, optional JSON override file, environment toggles.

- Defaults cover every key the application reads
- An override file (--config) is deep-merged over the defaults
- An unreadable override file falls back to defaults (logged, never fatal)
- Environment: POS_ENV (local|prod), KIOSK_DATA_DIR, KIOSK_PACKAGED

Property of Uncompromising Sensors LLC.
"""

import copy
import os
import platform
import sys
from pathlib import Path
from typing import Any, Dict, Optional

import orjson

APP_NAME = 'KensarKiosk'
APP_SLUG = 'kensar-kiosk'

POS_ENV_LOCAL = 'local'
POS_ENV_PROD = 'prod'

POS_BASE_URLS = {
    POS_ENV_LOCAL: 'http://localhost:3000',
    POS_ENV_PROD: 'https://www.metrikpos.com',
}

DEFAULT_SETTINGS: Dict[str, Any] = {
    'posEnv': POS_ENV_PROD,
    'dataDir': None,            # Resolved per platform when None
    'packaged': None,           # Resolved from sys.frozen when None
    'server': {
        'host': '127.0.0.1',
        'port': 8765,
        'allowedOrigins': [],   # Extra browser origins allowed to call the API
    },
    'api': {
        'baseUrl': 'https://api.metrikpos.com',
        'timeoutSeconds': 15,
    },
    'ui': {
        'staticDir': None,       # Served at /ui when set (config page, assets)
        'configPage': 'config.html',
    },
    'admin': {
        'pinHashScheme': 'sha256',   # 'sha256' (legacy-compatible) or 'bcrypt'
    },
    'update': {
        'manifestUrl': None,
        'checkIntervalHours': 6,
        'countdownSeconds': 15,
        'tickSeconds': 1.0,
    },
    'logging': {
        'level': 'INFO',
        'console': True,
        'maxBytes': 5_000_000,
        'backupCount': 5,
        'maxTotalMb': 100,
    },
}


def _deepMerge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Merge override into a copy of base, recursing into nested dicts"""
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deepMerge(merged[key], value)
        else:
            merged[key] = value
    return merged


def defaultDataDir() -> Path:
    """Per-installation private data directory for the current platform"""
    system = platform.system().lower()
    home = Path.home()
    if system == 'windows':
        root = os.environ.get('APPDATA')
        return Path(root) / APP_NAME if root else home / 'AppData' / 'Roaming' / APP_NAME
    if system == 'darwin':
        return home / 'Library' / 'Application Support' / APP_NAME
    xdg = os.environ.get('XDG_CONFIG_HOME')
    return (Path(xdg) if xdg else home / '.config') / APP_SLUG


def _envFlag(value: str) -> bool:
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


def loadSettings(configPath: Optional[str] = None, environ: Optional[Dict[str, str]] = None,
                 log: Optional[object] = None) -> Dict[str, Any]:
    """
    Build the effective settings dict.

    Precedence: defaults < override file < environment.
    """
    environ = os.environ if environ is None else environ
    settings = copy.deepcopy(DEFAULT_SETTINGS)

    if configPath:
        cfgPath = Path(configPath)
        try:
            override = orjson.loads(cfgPath.read_bytes())
            if not isinstance(override, dict):
                raise ValueError('settings file is not a JSON object')
            settings = _deepMerge(settings, override)
            if log:
                log.info('Loaded settings file', configPath=str(cfgPath))
        except (OSError, ValueError) as exc:
            # orjson.JSONDecodeError subclasses ValueError
            if log:
                log.error('Failed to load settings file, using defaults', configPath=str(cfgPath),
                          errorClass=type(exc).__name__, errorMsg=str(exc))

    posEnv = environ.get('POS_ENV')
    if posEnv:
        settings['posEnv'] = posEnv
    if settings['posEnv'] not in POS_BASE_URLS:
        settings['posEnv'] = POS_ENV_PROD

    if environ.get('KIOSK_DATA_DIR'):
        settings['dataDir'] = environ['KIOSK_DATA_DIR']
    if not settings.get('dataDir'):
        settings['dataDir'] = str(defaultDataDir())

    if environ.get('KIOSK_PACKAGED'):
        settings['packaged'] = _envFlag(environ['KIOSK_PACKAGED'])
    if settings.get('packaged') is None:
        settings['packaged'] = bool(getattr(sys, 'frozen', False))

    return settings


def posBaseUrl(settings: Dict[str, Any]) -> str:
    """POS web origin for the configured environment"""
    return POS_BASE_URLS.get(settings.get('posEnv'), POS_BASE_URLS[POS_ENV_PROD])


def posLoginUrl(settings: Dict[str, Any]) -> str:
    return f"{posBaseUrl(settings)}/login-pos"


def isKioskModeAllowed(settings: Dict[str, Any]) -> bool:
    """Locked-down kiosk window only on Windows outside the local environment"""
    return platform.system().lower() == 'windows' and settings.get('posEnv') != POS_ENV_LOCAL


def serverOrigin(settings: Dict[str, Any]) -> str:
    server = settings.get('server', {})
    return f"http://{server.get('host', '127.0.0.1')}:{server.get('port', 8765)}"


def configPageUrl(settings: Dict[str, Any]) -> str:
    """Local station configuration page served by the control plane"""
    page = settings.get('ui', {}).get('configPage') or 'config.html'
    return f"{serverOrigin(settings)}/ui/{page}"


def allowedOrigins(settings: Dict[str, Any]) -> set:
    """Browser origins that may call the local API (the server's own plus configured extras)"""
    server = settings.get('server', {})
    port = server.get('port', 8765)
    origins = {serverOrigin(settings), f"http://127.0.0.1:{port}", f"http://localhost:{port}"}
    origins.update(server.get('allowedOrigins') or [])
    return origins

"""
Kiosk Server Package

Loopback HTTP/WebSocket boundary between the UI shell and the core.
"""

from .server import KioskServer
from .surface import WebSocketSurface

__all__ = ['KioskServer', 'WebSocketSurface']

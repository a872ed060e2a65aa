"""kiosk - Kensar Kiosk station control plane

Contains:
    - core: configuration store, device identity, admin PIN gate, display
      zoom policy, update lifecycle
    - server: loopback HTTP/WebSocket boundary for the UI shell
    - log: structured logging
    - settings: defaults, settings file and environment toggles
"""

__version__ = "1.0.0"

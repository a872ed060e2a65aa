"""
Kiosk Core Package

Owns the station configuration document and everything derived from it.

Architecture Invariants:
- Single configuration file per installation, single writer process
- Primary file is always the previous or the new document, never partial
- deviceId generated once, never regenerated
- One update countdown at most
"""

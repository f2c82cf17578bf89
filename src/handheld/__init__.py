"""
Handheld-side modules for servesync.

Modules:
- responder: NDJSON/TCP responder for round-trip clock synchronization
"""

from .responder import ResponderConfig, ResponderServer

__all__ = [
    "ResponderConfig",
    "ResponderServer",
]

"""Adapter modules for external integrations."""

from .http import HttpTransport
from .realtime import RealtimeSocket

__all__ = [
    "HttpTransport",
    "RealtimeSocket",
]

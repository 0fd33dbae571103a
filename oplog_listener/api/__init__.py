"""
HTTP status API.
"""

from .status_api import create_status_app, StatusServer, ListenerStatus

__all__ = ["create_status_app", "StatusServer", "ListenerStatus"]

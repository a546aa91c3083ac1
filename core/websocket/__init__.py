"""
PostureCare WebSocket Module

Connection registry, message envelope and the shared endpoint loop.
"""

from .manager import (
    ClientRole,
    ConnectedClient,
    ConnectionManager,
    MessageType,
    WebSocketMessage,
    connection_manager,
    websocket_endpoint,
)

__all__ = [
    'ClientRole',
    'ConnectedClient',
    'ConnectionManager',
    'MessageType',
    'WebSocketMessage',
    'connection_manager',
    'websocket_endpoint',
]

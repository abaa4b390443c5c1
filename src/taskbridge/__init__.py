"""
Taskbridge - OAuth 2.0 authorization server that hands MCP clients opaque
tokens carrying encrypted task-tracker credentials.
"""

from .core import create_app

__all__ = [
    'create_app',
]

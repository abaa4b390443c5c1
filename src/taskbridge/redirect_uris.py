"""
Redirect URI whitelist for MCP clients.

MCP clients (Claude Desktop, Cursor, etc.) typically run locally, so
redirects are restricted to loopback addresses and a few known client
schemes. Operators can extend the list with OAUTH_REDIRECT_URI_PATTERNS.
"""

import re
import logging
from typing import Iterable

logger = logging.getLogger(__name__)

DEFAULT_PATTERNS = [
    r'^https?://(localhost|127\.0\.0\.1)(:\d+)?(/.*)?$',
    r'^cursor://anysphere\.cursor-mcp(/.*)?$',
    r'^https://claude\.ai/api/mcp/auth_callback$',
]


def parse_patterns(value: str) -> list[str]:
    """Split a comma-separated pattern list from config."""
    return [p.strip() for p in (value or '').split(',') if p.strip()]


class RedirectUriValidator:
    """Whitelist gate for client redirect URIs."""

    def __init__(self, additional_patterns: Iterable[str] = ()):
        self._additional = list(additional_patterns)
        # Bad operator patterns fail at startup, not on the first request
        self._compiled = [re.compile(p) for p in DEFAULT_PATTERNS + self._additional]

    def is_allowed(self, redirect_uri: str) -> bool:
        """Check if a redirect URI is allowed."""
        if not redirect_uri:
            return False

        for pattern in self._compiled:
            if pattern.fullmatch(redirect_uri):
                return True

        logger.debug(f"Redirect URI rejected: {redirect_uri[:80]}")
        return False

    def allowed_patterns(self) -> list[str]:
        """Get all allowed patterns (for debugging/admin display)."""
        return DEFAULT_PATTERNS + self._additional

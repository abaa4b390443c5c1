"""
Authorization code issuance and the token endpoint grants.

Everything here raises OAuthError with one of the fixed error codes; the
HTTP layer turns that into {error, error_description} without leaking
internals.
"""

import secrets
import logging
from urllib.parse import urlencode, urlsplit

from .code_store import AuthorizationCodePayload, AuthorizationCodeStore
from .crypto import CredentialDecryptionError, CredentialsBundle, InvalidCredentialsBundle
from .tokens import TokenPair, TokenService
from .users import Organization, User, UserRepository

logger = logging.getLogger(__name__)

INVALID_REQUEST = 'invalid_request'
INVALID_GRANT = 'invalid_grant'
UNSUPPORTED_GRANT_TYPE = 'unsupported_grant_type'
ACCESS_DENIED = 'access_denied'
SERVER_ERROR = 'server_error'


class OAuthError(Exception):
    """An OAuth protocol error destined for the client."""

    def __init__(self, error: str, description: str = '', status: int = 400):
        super().__init__(description or error)
        self.error = error
        self.description = description
        self.status = status

    def to_dict(self) -> dict:
        body = {'error': self.error}
        if self.description:
            body['error_description'] = self.description
        return body


def build_client_redirect(redirect_uri: str, params: dict) -> str:
    """Append query params to the client's redirect URI, keeping its own query."""
    query = urlencode({k: v for k, v in params.items() if v})
    separator = '&' if urlsplit(redirect_uri).query else '?'
    return f"{redirect_uri}{separator}{query}"


def issue_authorization_code(code_store: AuthorizationCodeStore, params: dict, user: User,
                             organization: Organization, user_credentials: dict) -> str:
    """Store a fresh code bound to the user + redirect target + credentials.

    Args:
        params: pending MCP OAuth request (client_id, redirect_uri, state)

    Returns:
        The URL to send the browser back to the client with
    """
    bundle = CredentialsBundle(
        provider=organization.provider,
        org_config=organization.provider_config,
        user_credentials=user_credentials,
    )

    auth_code = secrets.token_hex(32)
    code_store.store(auth_code, AuthorizationCodePayload(
        user_id=user.id,
        client_id=params['client_id'],
        redirect_uri=params['redirect_uri'],
        bundle=bundle,
    ))

    logger.info(f"MCP OAuth: Issued auth code for user {user.id} to client {params['client_id']}")

    return build_client_redirect(params['redirect_uri'], {'code': auth_code, 'state': params.get('state')})


def exchange_authorization_code(code_store: AuthorizationCodeStore, token_service: TokenService,
                                users: UserRepository, code: str, redirect_uri: str) -> TokenPair:
    """authorization_code grant."""
    if not code:
        raise OAuthError(INVALID_REQUEST, 'Missing code parameter')
    if not redirect_uri:
        raise OAuthError(INVALID_REQUEST, 'Missing redirect_uri parameter')

    try:
        payload = code_store.consume_once(code)
    except (CredentialDecryptionError, InvalidCredentialsBundle, ValueError, KeyError) as e:
        logger.error(f"MCP OAuth: Stored authorization code payload unreadable: {type(e).__name__}")
        raise OAuthError(SERVER_ERROR, 'Unable to process authorization code', 500)

    if payload is None:
        logger.warning("MCP OAuth: Unknown, expired or already used authorization code")
        raise OAuthError(INVALID_GRANT, 'Invalid or expired authorization code')

    # Exact match: the code is only good for the redirect it was issued to
    if payload.redirect_uri != redirect_uri:
        logger.warning(f"MCP OAuth: redirect_uri mismatch for client {payload.client_id}")
        raise OAuthError(INVALID_GRANT, 'Redirect URI mismatch')

    user = users.find(payload.user_id)
    if user is None:
        raise OAuthError(INVALID_GRANT, 'User not found')

    return token_service.issue_pair(user.id, payload.bundle, client_id=payload.client_id)


def refresh_access_token(token_service: TokenService, refresh_token: str) -> TokenPair:
    """refresh_token grant."""
    if not refresh_token:
        raise OAuthError(INVALID_REQUEST, 'Missing refresh_token parameter')

    token = token_service.validate_refresh(refresh_token)
    if token is None:
        raise OAuthError(INVALID_GRANT, 'Invalid or expired refresh token')

    try:
        pair = token_service.refresh(token)
    except (CredentialDecryptionError, InvalidCredentialsBundle) as e:
        logger.error(f"MCP OAuth: Credentials on refresh token {token.id} unreadable: {type(e).__name__}")
        raise OAuthError(SERVER_ERROR, 'Unable to refresh token', 500)

    if pair is None:
        raise OAuthError(INVALID_GRANT, 'Invalid or expired refresh token')
    return pair

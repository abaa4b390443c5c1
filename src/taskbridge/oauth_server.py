"""
OAuth 2.0 Authorization Server for MCP clients

Implements RFC 8414 (server metadata), RFC 9728 (protected resource
metadata), a stub of RFC 7591 (DCR) and RFC 7009 (revocation).

Authentication flow:
1. The MCP client discovers metadata via /.well-known/oauth-authorization-server
2. The client "registers" via /oauth/register (stub, nothing is stored)
3. /oauth/authorize validates the redirect URI and sends the user to the
   social login provider
4. /oauth/callback identifies the user, collects their provider credentials
   and redirects back to the client with a one-time code
5. /oauth/token exchanges the code for an opaque access/refresh pair that
   embeds the (encrypted) provider credentials
"""

import time
import secrets
import logging
from dataclasses import dataclass, field
from functools import wraps

from flask import Blueprint, request, jsonify, redirect, session, current_app, g, url_for

from .auth import handle_admin_login_callback, handle_invite_callback, handle_signup_callback
from .core import get_services
from .crypto import CredentialDecryptionError, InvalidCredentialsBundle, Provider
from .grants import (
    OAuthError, ACCESS_DENIED, INVALID_REQUEST, SERVER_ERROR, UNSUPPORTED_GRANT_TYPE,
    exchange_authorization_code, issue_authorization_code, refresh_access_token,
)
from .session_flow import AdminLogin, Invite, SessionExpiredError, SessionFlowManager
from .social_auth import SocialAuthError
from .users import PROVIDER_USER_FIELDS, missing_user_fields

logger = logging.getLogger(__name__)

oauth_bp = Blueprint('oauth', __name__)


def get_base_url() -> str:
    """Get the base URL respecting proxy headers and PREFERRED_URL_SCHEME.

    Uses url_for with _external=True so ProxyFix-adjusted hosts are honoured.
    """
    root = url_for('oauth.oauth_discovery', _external=True)
    # Strip the endpoint path to get base URL
    return root.rsplit('/.well-known/', 1)[0]


def get_flow_manager() -> SessionFlowManager:
    return SessionFlowManager(get_services().social_auth, session)


def _callback_url() -> str:
    return url_for('oauth.callback', _external=True)


def _no_store(response):
    response.headers['Cache-Control'] = 'no-store'
    response.headers['Pragma'] = 'no-cache'
    return response


@oauth_bp.app_errorhandler(OAuthError)
def handle_oauth_error(error: OAuthError):
    return _no_store(jsonify(error.to_dict())), error.status


# ============ OAuth Discovery ============

@oauth_bp.route('/.well-known/oauth-authorization-server')
def oauth_discovery():
    """OAuth 2.0 Authorization Server Metadata (RFC 8414)."""
    base = get_base_url()

    return jsonify({
        "issuer": base,
        "authorization_endpoint": f"{base}/oauth/authorize",
        "token_endpoint": f"{base}/oauth/token",
        "registration_endpoint": f"{base}/oauth/register",
        "revocation_endpoint": f"{base}/oauth/revoke",
        "response_types_supported": ["code"],
        "grant_types_supported": ["authorization_code", "refresh_token"],
        "token_endpoint_auth_methods_supported": ["none"],
    })


@oauth_bp.route('/.well-known/oauth-protected-resource')
def oauth_protected_resource():
    """OAuth 2.0 Protected Resource Metadata (RFC 9728)."""
    base = get_base_url()

    return jsonify({
        "resource": f"{base}/mcp",
        "authorization_servers": [base],
        "bearer_methods_supported": ["header"],
    })


# ============ Dynamic Client Registration (RFC 7591) ============

@oauth_bp.route('/oauth/register', methods=['POST'])
def register_client():
    """Dynamic Client Registration stub.

    MCP clients expect DCR before starting the auth flow. Clients are not
    persisted: any client_id is accepted at /oauth/authorize, the redirect
    URI whitelist is what actually gates access.
    """
    data = request.get_json(silent=True) or {}

    redirect_uris = data.get('redirect_uris', [])
    if not isinstance(redirect_uris, list):
        raise OAuthError('invalid_client_metadata', 'redirect_uris must be a list')

    client_id = f"mcp-{secrets.token_hex(16)}"
    logger.info(f"Registered OAuth client {client_id} ({data.get('client_name', 'unnamed')})")

    return jsonify({
        "client_id": client_id,
        "client_secret": secrets.token_hex(32),
        "client_id_issued_at": int(time.time()),
        "client_secret_expires_at": 0,
        "redirect_uris": redirect_uris,
        "token_endpoint_auth_method": "none",
        "grant_types": ["authorization_code", "refresh_token"],
        "response_types": ["code"],
    }), 201


# ============ Authorization Flow ============

@oauth_bp.route('/oauth/authorize')
def authorize():
    """OAuth authorization endpoint.

    Validates the request, stores it in the session and redirects to the
    social login provider.

    Query params:
    - client_id: From DCR registration
    - redirect_uri: Where to send the auth code (must be whitelisted)
    - state: Client CSRF token, echoed back
    """
    services = get_services()
    client_id = request.args.get('client_id', '')
    redirect_uri = request.args.get('redirect_uri', '')
    state = request.args.get('state', '')

    if not client_id or not redirect_uri:
        raise OAuthError(INVALID_REQUEST, 'Missing client_id or redirect_uri')

    # Nothing is written to the session before the redirect target is vetted
    if not services.redirect_validator.is_allowed(redirect_uri):
        logger.warning(f"OAuth authorize: rejected redirect_uri for client {client_id}")
        raise OAuthError(
            INVALID_REQUEST,
            'Invalid redirect_uri. Only localhost URLs and known MCP clients are allowed.'
        )

    flow = get_flow_manager()
    flow.store_mcp_oauth_params(client_id, redirect_uri, state)
    auth_url = flow.start_auth(_callback_url())

    logger.info(f"MCP OAuth: redirecting to {flow.provider_key} for client {client_id}")
    return redirect(auth_url)


@oauth_bp.route('/oauth/callback', methods=['GET', 'POST'])
def callback():
    """Social login callback, shared by every flow.

    GET with code/state: finish the identity handshake and dispatch on the
    active flow. Otherwise: the MCP credential step.
    """
    flow = get_flow_manager()

    if request.method == 'GET' and request.args.get('error'):
        logger.warning(f"Identity provider returned error: {request.args.get('error')}")
        raise OAuthError(ACCESS_DENIED, 'User denied access or identity provider error')

    if request.method == 'GET' and 'code' in request.args:
        try:
            identity = flow.handle_callback(
                request.args.get('code', ''),
                request.args.get('state', ''),
                _callback_url(),
            )
        except SessionExpiredError as e:
            raise OAuthError(INVALID_REQUEST, str(e))
        except SocialAuthError as e:
            logger.error(f"Social login failed ({flow.provider_key}): {e}")
            raise OAuthError(SERVER_ERROR, 'Authentication with the identity provider failed', 500)

        current = flow.current_flow()
        if flow.is_signup_flow():
            return handle_signup_callback(flow, identity)
        if isinstance(current, AdminLogin):
            return handle_admin_login_callback(flow, identity)
        if isinstance(current, Invite):
            return handle_invite_callback(flow, identity)

        # Default: MCP OAuth flow
        try:
            flow.store_mcp_user(identity)
        except SessionExpiredError as e:
            raise OAuthError(INVALID_REQUEST, str(e))
        return redirect(url_for('oauth.callback'))

    return _mcp_credentials_step(flow)


def _mcp_credentials_step(flow: SessionFlowManager):
    """Resolve provider credentials for the signed-in user, then issue a code."""
    services = get_services()

    identity = flow.get_mcp_user()
    params = flow.get_mcp_oauth_params()
    if identity is None or params is None:
        raise OAuthError(INVALID_REQUEST, str(SessionExpiredError()))

    # User must exist (created via invite link or by an admin) and be approved
    user = services.users.find_by_email(identity.email)
    if user is None:
        logger.warning(f"MCP OAuth: unregistered identity tried to authorize client {params['client_id']}")
        raise OAuthError(ACCESS_DENIED, 'This account is not registered. Ask your administrator for an invite.', 403)
    if not user.is_approved:
        logger.info(f"MCP OAuth: user {user.id} is pending approval")
        raise OAuthError(ACCESS_DENIED, 'This account is pending administrator approval.', 403)

    organization = services.users.find_organization(user.organization_id)
    if organization is None:
        logger.error(f"MCP OAuth: user {user.id} has no organization {user.organization_id}")
        raise OAuthError(SERVER_ERROR, 'Account is misconfigured', 500)

    if user.has_provider_credentials:
        try:
            user_credentials = services.vault.decrypt_json(user.provider_credentials)
        except CredentialDecryptionError:
            logger.error(f"MCP OAuth: stored provider credentials for user {user.id} are unreadable")
            raise OAuthError(SERVER_ERROR, 'Stored credentials could not be read', 500)
    elif request.method == 'POST':
        fields = PROVIDER_USER_FIELDS[organization.provider]
        user_credentials = {f: request.form.get(f, '').strip() for f in fields}
        missing = missing_user_fields(organization.provider, user_credentials)
        if missing:
            raise OAuthError(INVALID_REQUEST, f"Missing credential fields: {', '.join(missing)}")

        # Kept encrypted on the user so the next authorization is automatic
        services.users.set_provider_credentials(user.id, services.vault.encrypt_json(user_credentials))
        logger.info(f"Stored {organization.provider.value} credentials for user {user.id}")
    else:
        return jsonify({
            "credentials_required": True,
            "provider": organization.provider.value,
            "organization": organization.name,
            "fields": PROVIDER_USER_FIELDS[organization.provider],
            "user": {"email": identity.email, "name": identity.name},
        })

    redirect_url = issue_authorization_code(services.code_store, params, user, organization, user_credentials)
    services.users.touch(user.id)
    flow.clear_mcp_oauth_flow()

    return redirect(redirect_url)


# ============ Token Endpoint ============

def _get_token_param(key: str) -> str | None:
    """Get a parameter from either form data or JSON body.

    OAuth requires application/x-www-form-urlencoded, but some clients
    send JSON. Support both.
    """
    value = request.form.get(key)
    if value:
        return value

    json_data = request.get_json(silent=True)
    if isinstance(json_data, dict) and isinstance(json_data.get(key), str):
        return json_data.get(key)

    return None


@oauth_bp.route('/oauth/token', methods=['POST', 'OPTIONS'])
def token():
    """Token endpoint - authorization_code and refresh_token grants.

    Response:
    {
        "access_token": "...",
        "refresh_token": "...",
        "token_type": "Bearer",
        "expires_in": 86400
    }
    """
    # Handle CORS preflight
    if request.method == 'OPTIONS':
        response = current_app.make_default_options_response()
        response.headers['Access-Control-Allow-Headers'] = 'Content-Type, Authorization'
        response.headers['Access-Control-Allow-Methods'] = 'POST, OPTIONS'
        return response

    services = get_services()
    grant_type = _get_token_param('grant_type')

    logger.info(f"Token request: grant_type={grant_type}, client_id={_get_token_param('client_id')}")

    if grant_type == 'authorization_code':
        pair = exchange_authorization_code(
            services.code_store,
            services.token_service,
            services.users,
            _get_token_param('code'),
            _get_token_param('redirect_uri'),
        )
    elif grant_type == 'refresh_token':
        pair = refresh_access_token(services.token_service, _get_token_param('refresh_token'))
    else:
        logger.warning(f"Unsupported grant type: {grant_type}")
        raise OAuthError(UNSUPPORTED_GRANT_TYPE)

    return _no_store(jsonify(pair.to_dict()))


@oauth_bp.route('/oauth/revoke', methods=['POST'])
def revoke():
    """Token revocation (RFC 7009). Unknown tokens are not an error."""
    plain_token = _get_token_param('token')
    if not plain_token:
        raise OAuthError(INVALID_REQUEST, 'Missing token parameter')

    get_services().token_service.revoke(plain_token)
    return _no_store(jsonify({}))


# ============ Bearer Authentication ============

@dataclass(frozen=True)
class UserCredential:
    """What a validated access token lets the gateway act with."""
    user_id: str
    provider: Provider
    org_config: dict = field(default_factory=dict)
    user_credentials: dict = field(default_factory=dict)
    role: str = 'user'

    def __repr__(self) -> str:
        return f"UserCredential(user_id={self.user_id!r}, provider={self.provider.value!r}, role={self.role!r})"


def _unauthorized(description: str, error: str = 'unauthorized'):
    resource_metadata = f"{get_base_url()}/.well-known/oauth-protected-resource"
    return jsonify({
        "error": error,
        "error_description": description
    }), 401, {
        'WWW-Authenticate': f'Bearer resource_metadata="{resource_metadata}"'
    }


def require_mcp_auth(f):
    """Decorator to require a valid access token.

    On success the decrypted credentials are on g.mcp_credential and the
    token row on g.mcp_token.
    """
    @wraps(f)
    def decorated(*args, **kwargs):
        auth_header = request.headers.get('Authorization', '')

        if not auth_header.startswith('Bearer '):
            return _unauthorized("Access token is missing. Include Authorization: Bearer <token> header.")

        services = get_services()
        access_token = services.token_service.validate_access(auth_header[7:].strip())
        if access_token is None:
            return _unauthorized("The access token is invalid or expired.", error='invalid_token')

        try:
            bundle = services.token_service.extract_credentials(access_token)
        except (CredentialDecryptionError, InvalidCredentialsBundle):
            logger.error(f"Credentials on access token {access_token.id} are unreadable")
            return jsonify({"error": SERVER_ERROR}), 500

        user = services.users.find(access_token.user_id)
        if user is None:
            return _unauthorized("The access token is invalid or expired.", error='invalid_token')

        g.mcp_token = access_token
        g.mcp_credential = UserCredential(
            user_id=str(user.id),
            provider=bundle.provider,
            org_config=bundle.org_config,
            user_credentials=bundle.user_credentials,
            role='admin' if user.is_admin else 'user',
        )

        return f(*args, **kwargs)
    return decorated


@oauth_bp.route('/oauth/tokeninfo')
@require_mcp_auth
def token_info():
    """Describe the presented access token (never its secrets)."""
    access_token = g.mcp_token
    credential = g.mcp_credential

    return _no_store(jsonify({
        "user_id": credential.user_id,
        "provider": credential.provider.value,
        "role": credential.role,
        "client_id": access_token.client_id,
        "expires_at": access_token.expires_at.isoformat(),
    }))

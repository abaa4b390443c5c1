"""
Social-auth session flows.

One identity-provider round trip serves four purposes:
- Signup flow (new organization creation)
- Invite flow (user joining via invite link)
- Admin login flow
- MCP OAuth flow (connecting an AI assistant) - the default

The active flow is a single tagged value stored under one session key, so
two flows can never be active at once; starting one replaces the other.
The verified identity travels inside the flow payload, so it is dropped
together with the flow that obtained it.
The manager never touches flask.session directly: callers pass in the
session mapping, which keeps it testable with a plain dict.
"""

import logging
from dataclasses import asdict, dataclass, replace
from typing import ClassVar, MutableMapping, Optional, Union

from .social_auth import Identity, SocialAuthBridge

logger = logging.getLogger(__name__)

# Session keys (provider-agnostic, shared by all flows)
AUTH_STATE = 'auth_oauth_state'
AUTH_PROVIDER = 'auth_provider'

# The active flow and its payload, including the verified identity
FLOW = 'auth_flow'

SHARED_KEYS = (AUTH_STATE, AUTH_PROVIDER)


class SessionExpiredError(Exception):
    """Session state needed for this step is gone; the user should restart."""

    def __init__(self, message: str = "Session expired, please start authorization again"):
        super().__init__(message)


@dataclass(frozen=True)
class Idle:
    kind: ClassVar[str] = 'idle'


@dataclass(frozen=True)
class Signup:
    kind: ClassVar[str] = 'signup'
    user: Optional[dict] = None


@dataclass(frozen=True)
class AdminLogin:
    kind: ClassVar[str] = 'admin_login'


@dataclass(frozen=True)
class Invite:
    kind: ClassVar[str] = 'invite'
    token: str = ''
    user: Optional[dict] = None


@dataclass(frozen=True)
class McpOAuth:
    kind: ClassVar[str] = 'mcp_oauth'
    client_id: str = ''
    redirect_uri: str = ''
    state: str = ''
    user: Optional[dict] = None


FlowState = Union[Idle, Signup, AdminLogin, Invite, McpOAuth]

_FLOW_TYPES = {cls.kind: cls for cls in (Signup, AdminLogin, Invite, McpOAuth)}


def _identity_from(data) -> Optional[Identity]:
    """Validate a stored identity dict; None for anything malformed."""
    if not isinstance(data, dict):
        return None
    email, name, user_id = data.get('email'), data.get('name'), data.get('id')
    if not isinstance(email, str) or not email or not isinstance(user_id, str):
        return None
    return Identity(email=email, name=name if isinstance(name, str) else '', id=user_id)


class SessionFlowManager:
    """Centralized session handling for the social auth round trip."""

    def __init__(self, auth_provider: SocialAuthBridge, session: MutableMapping):
        self.auth_provider = auth_provider
        self.session = session

    @property
    def provider_key(self) -> str:
        return self.auth_provider.key

    # ============ Flow state ============

    def current_flow(self) -> FlowState:
        data = self.session.get(FLOW)
        if not isinstance(data, dict):
            return Idle()

        flow_cls = _FLOW_TYPES.get(data.get('kind'))
        if flow_cls is None:
            return Idle()

        payload = {k: v for k, v in data.items() if k != 'kind'}
        try:
            return flow_cls(**payload)
        except TypeError:
            logger.warning(f"Discarding malformed {data.get('kind')} flow state")
            return Idle()

    def _set_flow(self, flow: FlowState) -> None:
        previous = self.current_flow()
        if not isinstance(previous, (Idle, type(flow))):
            logger.info(f"Replacing active {previous.kind} flow with {flow.kind}")
        self.session[FLOW] = {'kind': flow.kind, **asdict(flow)}

    def _clear(self) -> None:
        self.session.pop(FLOW, None)
        for key in SHARED_KEYS:
            self.session.pop(key, None)

    # ============ Identity provider round trip ============

    def start_auth(self, callback_url: Optional[str] = None) -> str:
        """Start social auth and return the URL to redirect to."""
        auth = self.auth_provider.get_authorization_url(callback_url)
        self.session[AUTH_STATE] = auth['state']
        self.session[AUTH_PROVIDER] = self.auth_provider.key
        logger.debug(f"Started {self.auth_provider.key} auth for {self.current_flow().kind} flow")
        return auth['url']

    def handle_callback(self, code: str, state: str, callback_url: Optional[str] = None) -> Identity:
        """Complete the provider handshake.

        Raises:
            SessionExpiredError: no pending state in this session
            SocialAuthError: state mismatch or provider failure
        """
        expected_state = self.session.get(AUTH_STATE)
        if not isinstance(expected_state, str) or not expected_state:
            raise SessionExpiredError()

        identity = self.auth_provider.handle_callback(code, state or '', expected_state, callback_url)

        # The state is single use; the flow's own payload stays until cleared
        self.session.pop(AUTH_STATE, None)
        return identity

    # ============ Signup Flow ============

    def mark_as_signup_flow(self) -> None:
        self._set_flow(Signup())

    def is_signup_flow(self) -> bool:
        """True while signup is waiting for the identity provider."""
        flow = self.current_flow()
        return isinstance(flow, Signup) and flow.user is None

    def store_signup_user(self, user: Identity) -> None:
        # Replaces the pending marker; the wizard reads the user from here
        self._set_flow(Signup(user=user.to_dict()))

    def get_signup_user(self) -> Optional[Identity]:
        flow = self.current_flow()
        if not isinstance(flow, Signup):
            return None
        return _identity_from(flow.user)

    def clear_signup_flow(self) -> None:
        self._clear()

    # ============ Admin Login Flow ============

    def mark_as_admin_login(self) -> None:
        self._set_flow(AdminLogin())

    def is_admin_login(self) -> bool:
        return isinstance(self.current_flow(), AdminLogin)

    def clear_admin_login(self) -> None:
        self._clear()

    # ============ Invite Flow ============

    def store_invite_token(self, token: str) -> None:
        self._set_flow(Invite(token=token))

    def get_invite_token(self) -> Optional[str]:
        flow = self.current_flow()
        if isinstance(flow, Invite) and flow.token:
            return flow.token
        return None

    def store_invite_user(self, user: Identity) -> None:
        flow = self.current_flow()
        if not isinstance(flow, Invite):
            raise SessionExpiredError()
        self._set_flow(replace(flow, user=user.to_dict()))

    def get_invite_user(self) -> Optional[Identity]:
        flow = self.current_flow()
        if not isinstance(flow, Invite):
            return None
        return _identity_from(flow.user)

    def clear_invite_flow(self) -> None:
        self._clear()

    # ============ MCP OAuth Flow ============

    def store_mcp_oauth_params(self, client_id: str, redirect_uri: str, state: str) -> None:
        self._set_flow(McpOAuth(client_id=client_id, redirect_uri=redirect_uri, state=state or ''))

    def get_mcp_oauth_params(self) -> Optional[dict]:
        flow = self.current_flow()
        if not isinstance(flow, McpOAuth) or not flow.redirect_uri:
            return None
        return {
            'client_id': flow.client_id,
            'redirect_uri': flow.redirect_uri,
            'state': flow.state,
        }

    def store_mcp_user(self, user: Identity) -> None:
        """Attach the verified identity to the pending authorization request."""
        flow = self.current_flow()
        if not isinstance(flow, McpOAuth):
            raise SessionExpiredError()
        self._set_flow(replace(flow, user=user.to_dict()))

    def get_mcp_user(self) -> Optional[Identity]:
        flow = self.current_flow()
        if not isinstance(flow, McpOAuth):
            return None
        return _identity_from(flow.user)

    def clear_mcp_oauth_flow(self) -> None:
        self._clear()

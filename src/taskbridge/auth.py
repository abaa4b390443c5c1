"""
Social login entry points for Taskbridge.

All flows share one identity-provider callback (/oauth/callback); the
routes here only mark which flow is starting. Once the provider hands back
an identity, the callback dispatches to the hand-offs below for everything
that is not an MCP authorization.

Security measures:
- State parameter to prevent CSRF attacks (see SessionFlowManager)
- Only pre-registered admins can open an admin session
- Session is cleared before an admin session is established
"""
import logging
from urllib.parse import urlencode

from flask import Blueprint, redirect, url_for, session, current_app

from .core import get_services
from .grants import OAuthError, ACCESS_DENIED, INVALID_REQUEST
from .session_flow import SessionExpiredError, SessionFlowManager
from .social_auth import Identity

logger = logging.getLogger(__name__)

auth_bp = Blueprint('auth', __name__, url_prefix='/auth')

ADMIN_SESSION_KEY = 'admin_user_id'


def _flow_manager() -> SessionFlowManager:
    return SessionFlowManager(get_services().social_auth, session)


def _start(flow: SessionFlowManager):
    return redirect(flow.start_auth(url_for('oauth.callback', _external=True)))


@auth_bp.route('/signup')
def signup():
    """Start organization signup with a social login."""
    flow = _flow_manager()
    flow.mark_as_signup_flow()
    return _start(flow)


@auth_bp.route('/admin/login')
def admin_login():
    """Start an admin login."""
    flow = _flow_manager()
    flow.mark_as_admin_login()
    return _start(flow)


@auth_bp.route('/invite/<token>')
def accept_invite(token):
    """Start the invite flow for an invite link."""
    flow = _flow_manager()
    flow.store_invite_token(token)
    return _start(flow)


@auth_bp.route('/logout')
def logout():
    """Log out the current user."""
    user_id = session.get(ADMIN_SESSION_KEY, 'anonymous')
    session.clear()
    logger.info(f"Session cleared for {user_id}")
    return redirect(current_app.config['ADMIN_DASHBOARD_URL'])


# =============================================================================
# Hand-offs from the shared callback
# =============================================================================

def handle_signup_callback(flow: SessionFlowManager, identity: Identity):
    """New organization: remember who is signing up, continue in the wizard."""
    if get_services().users.find_by_email(identity.email) is not None:
        flow.clear_signup_flow()
        raise OAuthError(ACCESS_DENIED, 'An account already exists for this email. Please log in instead.')

    flow.store_signup_user(identity)
    logger.info("Signup: identity verified, continuing to wizard")
    return redirect(current_app.config['SIGNUP_WIZARD_URL'])


def handle_admin_login_callback(flow: SessionFlowManager, identity: Identity):
    flow.clear_admin_login()

    user = get_services().users.find_by_email(identity.email)
    if user is None or not user.is_admin:
        logger.warning("Admin login refused for non-admin identity")
        raise OAuthError(ACCESS_DENIED, 'This account does not have admin access.', 403)

    # Session fixation protection
    session.clear()
    session[ADMIN_SESSION_KEY] = user.id
    session.permanent = True

    logger.info(f"Admin login: user {user.id}")
    return redirect(current_app.config['ADMIN_DASHBOARD_URL'])


def handle_invite_callback(flow: SessionFlowManager, identity: Identity):
    """Invitee verified: the accept page reads the identity from the session."""
    invite_token = flow.get_invite_token()
    if not invite_token:
        raise OAuthError(INVALID_REQUEST, str(SessionExpiredError()))

    flow.store_invite_user(identity)
    return redirect(f"{current_app.config['INVITE_ACCEPT_URL']}?{urlencode({'token': invite_token})}")

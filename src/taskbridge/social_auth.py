"""
Social login bridges.

Each bridge wraps one identity provider's OAuth2 handshake and hands back a
verified (email, name, id) identity. Nothing past that point knows which
provider was used.
"""

import secrets
import logging
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlencode

import requests

logger = logging.getLogger(__name__)

# Google OAuth endpoints
GOOGLE_AUTHORIZE_URL = 'https://accounts.google.com/o/oauth2/v2/auth'
GOOGLE_TOKEN_URL = 'https://oauth2.googleapis.com/token'
GOOGLE_USERINFO_URL = 'https://openidconnect.googleapis.com/v1/userinfo'

# GitHub OAuth endpoints
GITHUB_AUTHORIZE_URL = 'https://github.com/login/oauth/authorize'
GITHUB_TOKEN_URL = 'https://github.com/login/oauth/access_token'
GITHUB_USER_URL = 'https://api.github.com/user'
GITHUB_EMAILS_URL = 'https://api.github.com/user/emails'


class SocialAuthError(Exception):
    """Raised when the identity provider handshake fails."""


@dataclass(frozen=True)
class Identity:
    email: str
    name: str
    id: str

    def to_dict(self) -> dict:
        return {'email': self.email, 'name': self.name, 'id': self.id}


class SocialAuthBridge:
    """Interface for social authentication providers (Google, GitHub, ...)."""

    key = ''

    def get_authorization_url(self, callback_url: Optional[str] = None) -> dict:
        """Return {'url': ..., 'state': ...} for redirecting the user."""
        raise NotImplementedError

    def handle_callback(self, code: str, state: str, expected_state: str,
                        callback_url: Optional[str] = None) -> Identity:
        """Validate state, exchange the code and fetch the user profile.

        Raises:
            SocialAuthError: state mismatch or any provider failure
        """
        raise NotImplementedError

    @staticmethod
    def check_state(state: str, expected_state: str) -> None:
        if not state or not expected_state or not secrets.compare_digest(state, expected_state):
            raise SocialAuthError("Invalid state parameter (CSRF protection)")


class GoogleAuthBridge(SocialAuthBridge):
    """Google OAuth2 (OpenID Connect userinfo)."""

    key = 'google'

    def __init__(self, client_id: str, client_secret: str, redirect_uri: Optional[str] = None):
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri

    def get_authorization_url(self, callback_url: Optional[str] = None) -> dict:
        state = secrets.token_urlsafe(32)
        params = {
            'client_id': self.client_id,
            'redirect_uri': callback_url or self.redirect_uri,
            'response_type': 'code',
            'scope': 'openid email profile',
            'state': state,
            'prompt': 'select_account',
        }
        return {'url': f"{GOOGLE_AUTHORIZE_URL}?{urlencode(params)}", 'state': state}

    def handle_callback(self, code: str, state: str, expected_state: str,
                        callback_url: Optional[str] = None) -> Identity:
        self.check_state(state, expected_state)

        try:
            token_response = requests.post(
                GOOGLE_TOKEN_URL,
                data={
                    'client_id': self.client_id,
                    'client_secret': self.client_secret,
                    'code': code,
                    'grant_type': 'authorization_code',
                    'redirect_uri': callback_url or self.redirect_uri,
                },
                headers={'Accept': 'application/json'},
                timeout=10
            )
            token_response.raise_for_status()
            access_token = token_response.json().get('access_token')
            if not access_token:
                raise SocialAuthError("No access token from Google")

            user_response = requests.get(
                GOOGLE_USERINFO_URL,
                headers={'Authorization': f'Bearer {access_token}'},
                timeout=10
            )
            user_response.raise_for_status()
            profile = user_response.json()
        except (requests.RequestException, ValueError) as e:
            logger.error(f"Google OAuth handshake failed: {e}")
            raise SocialAuthError("Failed to authenticate with Google") from e

        if not profile.get('email') or not profile.get('email_verified', True):
            raise SocialAuthError("Google account has no verified email")

        return Identity(
            email=profile['email'],
            name=profile.get('name') or profile['email'],
            id=str(profile.get('sub', '')),
        )


class GitHubAuthBridge(SocialAuthBridge):
    """GitHub OAuth App login."""

    key = 'github'

    def __init__(self, client_id: str, client_secret: str, redirect_uri: Optional[str] = None):
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri

    def get_authorization_url(self, callback_url: Optional[str] = None) -> dict:
        state = secrets.token_urlsafe(32)
        params = {
            'client_id': self.client_id,
            'redirect_uri': callback_url or self.redirect_uri,
            'scope': 'read:user user:email',
            'state': state,
        }
        return {'url': f"{GITHUB_AUTHORIZE_URL}?{urlencode(params)}", 'state': state}

    def handle_callback(self, code: str, state: str, expected_state: str,
                        callback_url: Optional[str] = None) -> Identity:
        self.check_state(state, expected_state)

        try:
            token_response = requests.post(
                GITHUB_TOKEN_URL,
                data={
                    'client_id': self.client_id,
                    'client_secret': self.client_secret,
                    'code': code,
                    'redirect_uri': callback_url or self.redirect_uri,
                },
                headers={'Accept': 'application/json'},
                timeout=10
            )
            token_response.raise_for_status()
            github_token = token_response.json().get('access_token')
            if not github_token:
                raise SocialAuthError("No access token from GitHub")

            headers = {
                'Authorization': f'Bearer {github_token}',
                'Accept': 'application/vnd.github+json'
            }
            user_response = requests.get(GITHUB_USER_URL, headers=headers, timeout=10)
            user_response.raise_for_status()
            github_user = user_response.json()

            email = github_user.get('email')
            if not email:
                # Private email: ask for the primary verified one
                emails_response = requests.get(GITHUB_EMAILS_URL, headers=headers, timeout=10)
                emails_response.raise_for_status()
                email = next(
                    (e['email'] for e in emails_response.json() if e.get('primary') and e.get('verified')),
                    None
                )
        except (requests.RequestException, ValueError) as e:
            logger.error(f"GitHub OAuth handshake failed: {e}")
            raise SocialAuthError("Failed to authenticate with GitHub") from e

        if not email:
            raise SocialAuthError("GitHub account has no verified email")

        return Identity(
            email=email,
            name=github_user.get('name') or github_user.get('login') or email,
            id=str(github_user.get('id', '')),
        )


def create_social_auth(config: dict) -> SocialAuthBridge:
    """Build the configured bridge from app config."""
    provider = config.get('SOCIAL_AUTH_PROVIDER', 'google')

    if provider == 'google':
        if not config.get('GOOGLE_CLIENT_ID'):
            logger.warning("GOOGLE_CLIENT_ID not set - social login will fail")
        return GoogleAuthBridge(config.get('GOOGLE_CLIENT_ID') or '', config.get('GOOGLE_CLIENT_SECRET') or '')
    if provider == 'github':
        if not config.get('GITHUB_CLIENT_ID'):
            logger.warning("GITHUB_CLIENT_ID not set - social login will fail")
        return GitHubAuthBridge(config.get('GITHUB_CLIENT_ID') or '', config.get('GITHUB_CLIENT_SECRET') or '')

    raise ValueError(f"Unknown SOCIAL_AUTH_PROVIDER: {provider}")

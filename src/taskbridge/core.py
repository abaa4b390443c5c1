"""
Taskbridge Core Application

OAuth 2.0 authorization server that lets MCP clients act on a user's
Redmine / Jira / Monday account without ever seeing their credentials.
"""
import os
import secrets
import logging
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

from flask import Flask, current_app
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from werkzeug.middleware.proxy_fix import ProxyFix

from .code_store import AuthorizationCodeStore, create_code_cache
from .crypto import CredentialVault, create_vault
from .database import get_db_path, init_db
from .redirect_uris import RedirectUriValidator, parse_patterns
from .social_auth import SocialAuthBridge, create_social_auth
from .tokens import TokenRepository, TokenService
from .users import UserRepository

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Per-app collaborators, built once in create_app."""
    db_path: Path
    vault: CredentialVault
    redirect_validator: RedirectUriValidator
    code_store: AuthorizationCodeStore
    token_service: TokenService
    users: UserRepository
    social_auth: SocialAuthBridge


def get_services() -> Services:
    return current_app.extensions['taskbridge']


def _as_list(value) -> list:
    """Config lists may come from env (comma separated) or test config (list)."""
    if isinstance(value, str):
        return parse_patterns(value)
    return list(value or [])


def create_app(test_config=None):
    """Application factory."""
    app = Flask(__name__)

    # Apply proxy fix for Fly.io (trust X-Forwarded-* headers)
    app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1, x_prefix=1)

    # Security configuration
    is_production = os.getenv('FLASK_ENV') == 'production'
    app.config.update(
        SECRET_KEY=os.getenv('FLASK_SECRET_KEY', secrets.token_hex(32)),
        SESSION_COOKIE_SECURE=is_production,
        SESSION_COOKIE_HTTPONLY=True,
        SESSION_COOKIE_SAMESITE='Lax',
        PERMANENT_SESSION_LIFETIME=timedelta(hours=1),
        PREFERRED_URL_SCHEME='https' if is_production else 'http',

        # Storage
        DB_PATH=os.getenv('TASKBRIDGE_DB_PATH'),
        CODE_STORE_BACKEND=os.getenv('CODE_STORE_BACKEND', 'sqlite'),

        # Credential vault (auto-generated and stored in the DB when unset)
        MASTER_KEY=os.getenv('TASKBRIDGE_MASTER_KEY'),
        PREVIOUS_MASTER_KEYS=os.getenv('TASKBRIDGE_PREVIOUS_MASTER_KEYS', ''),

        # Social login (env vars use GH_ prefix to avoid GitHub's reserved GITHUB_ prefix)
        SOCIAL_AUTH_PROVIDER=os.getenv('SOCIAL_AUTH_PROVIDER', 'google'),
        GOOGLE_CLIENT_ID=os.getenv('GOOGLE_CLIENT_ID'),
        GOOGLE_CLIENT_SECRET=os.getenv('GOOGLE_CLIENT_SECRET'),
        GITHUB_CLIENT_ID=os.getenv('GH_OAUTH_CLIENT_ID'),
        GITHUB_CLIENT_SECRET=os.getenv('GH_OAUTH_CLIENT_SECRET'),

        # OAuth server
        REDIRECT_URI_PATTERNS=os.getenv('OAUTH_REDIRECT_URI_PATTERNS', ''),
        OAUTH_RATE_LIMIT=os.getenv('OAUTH_RATE_LIMIT', '60 per minute'),

        # Where the non-MCP flows continue (admin UI)
        SIGNUP_WIZARD_URL=os.getenv('SIGNUP_WIZARD_URL', '/admin/signup'),
        ADMIN_DASHBOARD_URL=os.getenv('ADMIN_DASHBOARD_URL', '/admin'),
        INVITE_ACCEPT_URL=os.getenv('INVITE_ACCEPT_URL', '/invite/accept'),

        APP_NAME='Taskbridge',
    )

    if test_config:
        app.config.update(test_config)

    # Rate limiting
    limiter = Limiter(
        key_func=get_remote_address,
        app=app,
        default_limits=["1000 per day", "200 per hour"],
        storage_uri="memory://"
    )
    app.limiter = limiter

    db_path = init_db(app.config['DB_PATH'] or get_db_path())

    vault = create_vault(app.config['MASTER_KEY'], db_path, _as_list(app.config['PREVIOUS_MASTER_KEYS']))
    patterns = _as_list(app.config['REDIRECT_URI_PATTERNS'])

    app.extensions['taskbridge'] = Services(
        db_path=db_path,
        vault=vault,
        redirect_validator=RedirectUriValidator(patterns),
        code_store=AuthorizationCodeStore(create_code_cache(app.config['CODE_STORE_BACKEND'], db_path), vault),
        token_service=TokenService(TokenRepository(db_path), vault),
        users=UserRepository(db_path),
        social_auth=create_social_auth(app.config),
    )

    # Register blueprints
    from .auth import auth_bp
    from .oauth_server import oauth_bp

    limiter.limit(app.config['OAUTH_RATE_LIMIT'])(oauth_bp)

    app.register_blueprint(auth_bp)
    app.register_blueprint(oauth_bp)  # OAuth 2.0 AS for MCP clients

    from .cli import register_commands
    register_commands(app)

    logger.info(f"Taskbridge initialized (db={db_path}, auth={app.config['SOCIAL_AUTH_PROVIDER']})")

    return app

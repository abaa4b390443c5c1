"""
Operator commands, registered on the app's Flask CLI.

    flask --app main create-organization Acme --provider redmine --config url=https://redmine.acme.test
    flask --app main create-user alice@acme.test --org 1 --approved
    flask --app main approve-user alice@acme.test
    flask --app main revoke-tokens alice@acme.test
"""
import logging

import click

from .crypto import Provider
from .users import ROLE_ORG_ADMIN, ROLE_USER, STATUS_APPROVED, STATUS_PENDING

logger = logging.getLogger(__name__)


def _parse_config(pairs) -> dict:
    config = {}
    for pair in pairs:
        key, sep, value = pair.partition('=')
        if not sep or not key.strip():
            raise click.BadParameter(f"expected KEY=VALUE, got {pair!r}", param_hint='--config')
        config[key.strip()] = value.strip()
    return config


def register_commands(app):
    """Attach the operator commands to app.cli."""

    def services():
        return app.extensions['taskbridge']

    def find_user(email):
        user = services().users.find_by_email(email)
        if user is None:
            raise click.ClickException(f"No user with email {email}")
        return user

    @app.cli.command('create-organization')
    @click.argument('name')
    @click.option('--provider', required=True, type=click.Choice([p.value for p in Provider]))
    @click.option('--config', 'config_pairs', multiple=True, metavar='KEY=VALUE',
                  help='Organization-level provider setting, e.g. url=https://redmine.example.com')
    def create_organization(name, provider, config_pairs):
        """Create an organization bound to one task-tracker provider."""
        org = services().users.create_organization(name, Provider(provider), _parse_config(config_pairs))
        click.echo(f"Created organization {org.name} (id={org.id}, provider={org.provider.value})")

    @app.cli.command('create-user')
    @click.argument('email')
    @click.option('--org', 'org_id', required=True, type=int)
    @click.option('--name', default=None)
    @click.option('--admin', is_flag=True, help='Grant the organization admin role')
    @click.option('--approved', is_flag=True, help='Skip the approval step')
    def create_user(email, org_id, name, admin, approved):
        """Create a user in an organization."""
        if services().users.find_organization(org_id) is None:
            raise click.ClickException(f"No organization with id {org_id}")
        if services().users.find_by_email(email) is not None:
            raise click.ClickException(f"User {email} already exists")

        roles = [ROLE_USER, ROLE_ORG_ADMIN] if admin else [ROLE_USER]
        user = services().users.create_user(
            email, org_id, name=name, roles=roles,
            status=STATUS_APPROVED if approved else STATUS_PENDING,
        )
        click.echo(f"Created user {user.email} (id={user.id}, status={user.status})")

    @app.cli.command('approve-user')
    @click.argument('email')
    def approve_user(email):
        """Approve a pending user."""
        user = find_user(email)
        services().users.approve(user.id)
        click.echo(f"Approved {user.email}")

    @app.cli.command('revoke-tokens')
    @click.argument('email')
    @click.option('--reset-credentials', is_flag=True,
                  help='Also forget the stored provider credentials')
    def revoke_tokens(email, reset_credentials):
        """Revoke every active token of a user (account disable / credential change)."""
        user = find_user(email)
        if reset_credentials:
            services().users.set_provider_credentials(user.id, None)
            logger.info(f"Cleared provider credentials for user {user.id}")
        count = services().token_service.revoke_all_for_user(user.id)
        click.echo(f"Revoked {count} token(s) for {user.email}")

    @app.cli.command('purge-codes')
    def purge_codes():
        """Delete expired authorization codes and locks from the cache."""
        count = services().code_store.cache.purge_expired()
        click.echo(f"Purged {count} expired code(s)")

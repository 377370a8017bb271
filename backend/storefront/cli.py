# Overview: Flask CLI command groups for administrator bootstrap and periodic maintenance.

# backend/storefront/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# Administrator bootstrap:
# - python -m flask users create-admin --email admin@example.com --name "Admin" --role super_admin
#   Create an administrator (prompts for the password). MFA enrolment happens at first login.
# - python -m flask users list
#   List administrators with role, MFA, and active status.
#
# Maintenance:
# - python -m flask maintenance cleanup-rate-limits
#   Delete rate-limit rows whose window and lockout have lapsed.
# - python -m flask maintenance cleanup-revoked-tokens
#   Delete revoked refresh-token ids past their expiry.
#
# Schema (Flask-Migrate):
# - python -m flask db upgrade

import click
from flask.cli import with_appcontext

from .extensions import db
from .models import AdminUser
from .permissions import ADMIN_ROLES
from .services import rate_limit_service, session_service
from .services.auth_service import PasswordValidationError, create_admin_user


@click.group('users')
def users_group():
    """Administrator inspection and bootstrap commands."""


@users_group.command('create-admin')
@click.option('--email', prompt=True, help='Email address')
@click.option('--name', prompt=True, help='Display name')
@click.option('--password', prompt=True, hide_input=True, confirmation_prompt=True, help='Password')
@click.option('--role', type=click.Choice(list(ADMIN_ROLES)), default='super_admin', show_default=True)
@with_appcontext
def create_admin_cli(email, name, password, role):
    """
    Create an administrator.

    Password must meet strength requirements:
    - Minimum 12 characters
    - At least one uppercase letter
    - At least one lowercase letter
    - At least one digit
    """
    try:
        user = create_admin_user(email, name, password, role)
    except PasswordValidationError as e:
        raise click.ClickException(f"Password validation failed: {e}")
    except ValueError as e:
        raise click.ClickException(str(e))
    click.echo(f"OK Created admin '{user.email}' (id={user.id}, role={user.role})")


@users_group.command('list')
@with_appcontext
def list_admins_cli():
    """List all administrators."""
    users = db.session.query(AdminUser).order_by(AdminUser.id).all()
    if not users:
        click.echo("No administrators found.")
        return

    click.echo("\n" + "=" * 90)
    click.echo(f"{'ID':<5} {'Email':<35} {'Role':<22} {'MFA':<6} {'Active'}")
    click.echo("=" * 90)
    for user in users:
        mfa = "Yes" if user.mfa_enabled else "No"
        active = "Yes" if user.is_active else "No"
        click.echo(f"{user.id:<5} {user.email:<35} {user.role:<22} {mfa:<6} {active}")
    click.echo("=" * 90 + "\n")


@click.group('maintenance')
def maintenance_group():
    """Data retention commands."""


@maintenance_group.command('cleanup-rate-limits')
@with_appcontext
def cleanup_rate_limits_cli():
    deleted = rate_limit_service.cleanup_expired()
    click.echo(f"Deleted {deleted} expired rate-limit records.")


@maintenance_group.command('cleanup-revoked-tokens')
@with_appcontext
def cleanup_revoked_tokens_cli():
    deleted = session_service.cleanup_expired()
    click.echo(f"Deleted {deleted} expired revoked tokens.")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(users_group)
    app.cli.add_command(maintenance_group)

"""Session maintenance CLI commands."""

import click
from sqlalchemy.engine import Engine

from fieldforge.auth.token_service import TokenService
from fieldforge.core.config import Settings
from fieldforge.db.engine import create_db_engine
from fieldforge.services.sessions import REASON_ADMIN_FORCED


def _token_service(settings: Settings, engine: Engine) -> TokenService:
    return TokenService(
        engine,
        settings.secret_key,
        access_token_ttl=settings.access_token_ttl,
        refresh_token_ttl=settings.refresh_token_ttl,
        retention_days=settings.token_retention_days,
    )


@click.group()
@click.pass_context
def tokens(ctx: click.Context):
    """Refresh-token session commands."""
    ctx.ensure_object(dict)
    if "settings" not in ctx.obj:
        ctx.obj["settings"] = Settings.from_env()


@tokens.command()
@click.option(
    "--retention-days",
    type=click.IntRange(min=0),
    default=None,
    help="Override FIELDFORGE_TOKEN_RETENTION_DAYS for this run.",
)
@click.pass_context
def cleanup(ctx: click.Context, retention_days: int | None):
    """Delete sessions that expired longer ago than the retention window."""
    settings: Settings = ctx.obj["settings"]
    engine = create_db_engine(settings.database)
    try:
        service = _token_service(settings, engine)
        if retention_days is not None:
            service.retention_days = retention_days
        purged = service.cleanup_expired_tokens()
    finally:
        engine.dispose()
    click.echo(f"Purged {purged} expired session(s).")


@tokens.command("revoke-user")
@click.argument("user_id", type=int)
@click.pass_context
def revoke_user(ctx: click.Context, user_id: int):
    """Revoke every active session of USER_ID (forced logout)."""
    settings: Settings = ctx.obj["settings"]
    engine = create_db_engine(settings.database)
    try:
        revoked = _token_service(settings, engine).revoke_all_user_tokens(
            user_id, REASON_ADMIN_FORCED
        )
    finally:
        engine.dispose()
    click.echo(f"Revoked {revoked} session(s) for user {user_id}.")

"""CLI tools for sync administration."""

from uuid import UUID

import click

from crm_sync.core.async_utils import run_async
from crm_sync.core.config import settings
from crm_sync.db.enums import IntegrationType, SyncMode
from crm_sync.db.models import User
from crm_sync.db.session import SessionLocal

INTEGRATION_CHOICES = click.Choice([t.value for t in IntegrationType])


@click.group()
def cli():
    """CRM sync CLI tools."""
    pass


@cli.command()
@click.option("--email", required=True, help="User email address")
@click.option("--name", default=None, help="Optional display name")
def create_user(email: str, name: str | None):
    """
    Create a user that integrations can be connected to.

    Example:
        crm-sync create-user --email "me@example.com" --name "Me"
    """
    db = SessionLocal()
    try:
        email = email.strip().lower()
        existing = db.query(User).filter(User.email == email).first()
        if existing:
            click.echo(f"❌ User already exists: {email} ({existing.id})")
            return

        user = User(email=email, display_name=name)
        db.add(user)
        db.commit()
        click.echo(f"✓ Created user {email}")
        click.echo(f"  ID: {user.id}")
    except Exception as e:
        db.rollback()
        click.echo(f"❌ Error: {e}")
    finally:
        db.close()


@cli.command()
def schedule_sync():
    """
    Enqueue the periodic incremental sync for every eligible integration.

    Example:
        crm-sync schedule-sync
    """
    from crm_sync.services import sync_scheduler

    db = SessionLocal()
    try:
        counts = sync_scheduler.schedule_periodic_sync(db)
        click.echo(
            f"✓ Eligible: {counts['eligible']}, created: {counts['jobs_created']}, "
            f"already queued: {counts['duplicates_skipped']}"
        )
    except Exception as e:
        db.rollback()
        click.echo(f"❌ Error: {e}")
    finally:
        db.close()


@cli.command()
@click.option("--user-id", required=True, type=click.UUID, help="User UUID")
@click.option("--type", "integration_type", required=True, type=INTEGRATION_CHOICES)
@click.option("--full", is_flag=True, help="Discard cursors and re-import the look-back window")
def sync_user(user_id: UUID, integration_type: str, full: bool):
    """
    Run one sync pass inline, bypassing the job queue.

    Example:
        crm-sync sync-user --user-id <uuid> --type calendar_google --full
    """
    from crm_sync.services import sync_service

    mode = SyncMode.FULL if full else SyncMode.INCREMENTAL
    db = SessionLocal()
    try:
        outcome = run_async(
            sync_service.sync_user(db, user_id, integration_type, mode=mode),
            timeout=settings.SYNC_JOB_TIMEOUT_SECONDS,
        )
        click.echo(f"✓ Synced {integration_type} for {user_id}")
        click.echo(
            f"  added={outcome.added} updated={outcome.updated} skipped={outcome.skipped} "
            f"fallback={outcome.fell_back_to_full}"
        )
    except Exception as e:
        db.rollback()
        click.echo(f"❌ Error: {e}")
    finally:
        db.close()


@cli.command()
@click.option("--user-id", required=True, type=click.UUID, help="User UUID")
@click.option("--type", "integration_type", required=True, type=INTEGRATION_CHOICES)
def sync_status(user_id: UUID, integration_type: str):
    """Show connection and sync status for a user's integration."""
    from crm_sync.services import integration_service

    db = SessionLocal()
    try:
        status = integration_service.get_status(db, user_id, IntegrationType(integration_type))
        for key, value in status.model_dump().items():
            click.echo(f"  {key}: {value}")
    finally:
        db.close()


@cli.command()
@click.option("--max-age-minutes", default=None, type=int, help="Override stale job age")
def purge_stale_jobs(max_age_minutes: int | None):
    """Delete stale queued jobs and fail jobs abandoned mid-run."""
    from datetime import timedelta

    from crm_sync.services import job_service

    db = SessionLocal()
    try:
        max_age = timedelta(minutes=max_age_minutes) if max_age_minutes else None
        purged = job_service.purge_stale_jobs(db, max_age=max_age)
        click.echo(f"✓ Purged {purged} stale jobs")
    except Exception as e:
        db.rollback()
        click.echo(f"❌ Error: {e}")
    finally:
        db.close()


@cli.command()
def queue_stats():
    """Show job counts by status."""
    from crm_sync.services import job_service

    db = SessionLocal()
    try:
        stats = job_service.get_queue_stats(db)
        click.echo(
            f"pending={stats.pending} running={stats.running} "
            f"completed={stats.completed} failed={stats.failed}"
        )
    finally:
        db.close()


if __name__ == "__main__":
    cli()

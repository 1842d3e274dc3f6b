#!/usr/bin/env python3
"""
Speculate Management CLI

Command-line access to the scheduled jobs and repair paths, for cron-driven
deployments and for operators.
"""

import os

import click
from flask.cli import with_appcontext
from flask_migrate import downgrade, migrate, upgrade
from sqlalchemy import text

# One-off commands run their work inline rather than on the background scheduler
os.environ.setdefault("SCHEDULER_ENABLED", "False")
os.environ.setdefault("TASKS_EAGER", "True")

from speculate import create_app, db  # noqa: E402
from speculate.models import Prediction, PredictionOptionStats, User  # noqa: E402
from speculate.models.prediction import STATE_LOCKED, STATE_OPEN  # noqa: E402

app = create_app()


@click.group()
def cli():
    """Speculate Management CLI"""
    pass


# Job Commands
@cli.group()
def jobs():
    """Run scheduled jobs by hand"""
    pass


@jobs.command()
@with_appcontext
def lock_sweep():
    """Lock every open prediction past its lock time"""
    from speculate.services.prediction_engine import lock_due_predictions
    from speculate.utils.catalog_sync import CatalogSync

    locked = lock_due_predictions()
    aired = CatalogSync().mark_aired()
    click.echo(f"✅ Locked {locked} predictions, marked {aired} episodes aired")


@jobs.command()
@with_appcontext
def streak_bonus():
    """Award today's streak bonuses"""
    from speculate.services.points_service import award_streak_bonuses

    awarded = award_streak_bonuses()
    click.echo(f"✅ Awarded streak bonuses to {len(awarded)} users")
    for item in awarded:
        click.echo(f"   user {item['user_id']}: {item['streak']}-day streak, +{item['points']}")


@jobs.command()
@with_appcontext
def leaderboards():
    """Recompute the global, weekly and daily leaderboards"""
    from speculate.services.leaderboard_service import compute_all_leaderboards

    results = compute_all_leaderboards()
    for kind, info in results.items():
        click.echo(f"✅ {kind}: {info['period_key']} ({info['entries']} entries)")


@jobs.command()
@with_appcontext
def reconcile():
    """Recount option pick counters from pick rows"""
    ids = [
        row[0]
        for row in db.session.query(Prediction.id)
        .filter(Prediction.state.in_([STATE_OPEN, STATE_LOCKED]))
        .all()
    ]
    corrected = sum(PredictionOptionStats.recount(prediction_id) for prediction_id in ids)
    db.session.commit()
    click.echo(f"✅ Checked {len(ids)} predictions, corrected {corrected} counters")


@jobs.command()
@click.option("--user-id", type=int, help="Rebuild a single user (default: everyone)")
@with_appcontext
def rebuild_stats(user_id):
    """Recompute user stats from picks and the points ledger"""
    from speculate.services.stats_aggregator import (
        rebuild_all_user_stats,
        rebuild_user_stats,
    )

    try:
        if user_id:
            if db.session.get(User, user_id) is None:
                click.echo(f"❌ User {user_id} not found")
                return
            rebuild_user_stats(user_id)
            count = 1
        else:
            count = rebuild_all_user_stats()
        db.session.commit()
        click.echo(f"✅ Rebuilt stats for {count} users")
    except Exception as e:
        db.session.rollback()
        click.echo(f"❌ Error rebuilding stats: {str(e)}")


@jobs.command()
@click.option("--feed-url", help="Override CATALOG_FEED_URL")
@with_appcontext
def catalog_sync(feed_url):
    """Fetch the catalog feed and upsert shows and episodes"""
    from speculate.utils.catalog_sync import CatalogSync

    success, message = CatalogSync(feed_url=feed_url).sync()
    click.echo(f"{'✅' if success else '❌'} {message}")


@cli.command()
@with_appcontext
def scheduler_status():
    """Show the configured scheduler jobs"""
    from speculate.services.scheduler_service import scheduler_service

    status = scheduler_service.get_status()
    click.echo(f"Scheduler running: {status['is_running']}")
    for job in status["jobs"]:
        click.echo(f"  {job['id']}: next run {job['next_run']} ({job['trigger']})")


# User Commands
@cli.group()
def user():
    """User management commands"""
    pass


@user.command()
@click.argument("external_id")
@click.option("--admin", is_flag=True, help="Grant admin instead of moderator")
@with_appcontext
def promote(external_id, admin):
    """Grant moderator (or admin) privileges"""
    u = User.query.filter_by(external_id=external_id).first()
    if not u:
        click.echo(f"❌ No user with external id '{external_id}'")
        return

    u.is_moderator = True
    if admin:
        u.is_admin = True
    db.session.commit()
    click.echo(f"✅ {u.name} is now {'an admin' if admin else 'a moderator'}")


# Database Commands
@cli.group()
def db_cmd():
    """Database commands"""
    pass


@db_cmd.command()
@with_appcontext
def init_db():
    """Initialize database tables"""
    try:
        db.create_all()
        click.echo("✅ Database tables created successfully!")
    except Exception as e:
        click.echo(f"❌ Error initializing database: {str(e)}")


@db_cmd.command()
@click.option("-m", "--message", required=True, help="Migration message")
@with_appcontext
def create_migration(message):
    """Create a new migration"""
    try:
        migrate(message=message)
        click.echo(f"✅ Migration created: {message}")
    except Exception as e:
        click.echo(f"❌ Error creating migration: {str(e)}")


@db_cmd.command()
@click.option("--revision", default="head", help="Revision to upgrade to")
@with_appcontext
def apply_migrations(revision):
    """Apply migrations to database"""
    try:
        upgrade(revision=revision)
        click.echo(f"✅ Migrations applied to {revision}")
    except Exception as e:
        click.echo(f"❌ Error applying migrations: {str(e)}")


@db_cmd.command()
@click.option("--revision", required=True, help="Revision to downgrade to")
@with_appcontext
def rollback_migration(revision):
    """Rollback migrations to specific revision"""
    try:
        downgrade(revision=revision)
        click.echo(f"✅ Rolled back to {revision}")
    except Exception as e:
        click.echo(f"❌ Error rolling back: {str(e)}")


@cli.command()
@with_appcontext
def status():
    """Show application status"""
    click.echo("Speculate Status")
    click.echo("=" * 40)

    try:
        db.session.execute(text("SELECT 1"))
        click.echo("✅ Database: Connected")
    except Exception as e:
        click.echo(f"❌ Database: Error - {str(e)}")

    user_count = User.query.filter_by(is_active=True).count()
    click.echo(f"👥 Active Users: {user_count}")

    open_count = Prediction.query.filter_by(state=STATE_OPEN).count()
    locked_count = Prediction.query.filter_by(state=STATE_LOCKED).count()
    click.echo(f"🔮 Predictions: {open_count} open, {locked_count} awaiting resolution")


if __name__ == "__main__":
    with app.app_context():
        cli()

"""
Speculate Background Scheduler Service

Runs the periodic jobs with APScheduler: the lock sweep, daily streak bonuses,
leaderboard snapshots, option counter reconciliation and the catalog sync.
The same BackgroundScheduler also carries the one-shot jobs of the task queue.
"""

import atexit
import logging
from datetime import datetime, timezone

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from speculate import db

logger = logging.getLogger(__name__)


class SchedulerService:
    """Manages the background scheduler and its periodic jobs"""

    def __init__(self, app=None):
        self.scheduler = None
        self.app = app
        self.is_running = False
        self.job_stats = {
            "last_run": None,
            "total_runs": 0,
            "successful_runs": 0,
            "failed_runs": 0,
            "last_error": None,
        }

        if app:
            self.init_app(app)

    def init_app(self, app):
        """Initialize scheduler with Flask app"""
        self.app = app
        self.scheduler = BackgroundScheduler(daemon=True, timezone="UTC")

        # Register shutdown
        atexit.register(self.shutdown)

        # Start scheduler if enabled
        if app.config.get("SCHEDULER_ENABLED", True):
            self.start()

    def start(self):
        """Start the background scheduler"""
        if self.is_running:
            return

        try:
            # Clear any existing jobs
            self.scheduler.remove_all_jobs()

            # Add scheduled jobs
            self._add_core_jobs()

            # Start scheduler
            self.scheduler.start()
            self.is_running = True

            logger.info("Scheduler started successfully")

        except Exception as e:
            logger.error(f"Failed to start scheduler: {e}")
            raise

    def stop(self):
        """Stop the background scheduler"""
        if not self.is_running:
            return

        try:
            self.scheduler.shutdown(wait=False)
            self.is_running = False
            logger.info("Scheduler stopped")

        except Exception as e:
            logger.error(f"Error stopping scheduler: {e}")

    def shutdown(self):
        """Graceful shutdown"""
        self.stop()

    def _add_core_jobs(self):
        """Add core scheduled jobs"""

        # Lock predictions whose lock time has passed (every 5 minutes)
        self.scheduler.add_job(
            func=self._lock_sweep,
            trigger=IntervalTrigger(minutes=5),
            id="lock_sweep",
            name="Lock Due Predictions",
            max_instances=1,
            coalesce=True,
            misfire_grace_time=60,
        )

        # Option counter reconciliation (top of every hour)
        self.scheduler.add_job(
            func=self._reconcile_option_stats,
            trigger=CronTrigger(minute=0),
            id="reconcile_option_stats",
            name="Reconcile Option Pick Counts",
            max_instances=1,
            coalesce=True,
            misfire_grace_time=300,
        )

        # Streak bonuses (1 AM UTC)
        self.scheduler.add_job(
            func=self._streak_bonuses,
            trigger=CronTrigger(hour=1, minute=0),
            id="streak_bonuses",
            name="Award Streak Bonuses",
            max_instances=1,
            coalesce=True,
            misfire_grace_time=3600,
        )

        # Leaderboard snapshots (2 AM UTC)
        self.scheduler.add_job(
            func=self._leaderboards,
            trigger=CronTrigger(hour=2, minute=0),
            id="leaderboards",
            name="Compute Leaderboards",
            max_instances=1,
            coalesce=True,
            misfire_grace_time=3600,
        )

        # Catalog sync (3 AM UTC), only when a feed is configured
        if self.app.config.get("CATALOG_FEED_URL"):
            self.scheduler.add_job(
                func=self._catalog_sync,
                trigger=CronTrigger(hour=3, minute=0),
                id="catalog_sync",
                name="Catalog Sync",
                max_instances=1,
                coalesce=True,
                misfire_grace_time=3600,
            )

        logger.info("Core scheduled jobs added")

    def _run_job(self, name, func):
        """Run a job body inside an app context and record the outcome"""
        with self.app.app_context():
            try:
                result = func()
                self._update_stats(True)
                return result
            except Exception as e:
                db.session.rollback()
                self._update_stats(False)
                self.job_stats["last_error"] = f"{name}: {e}"
                logger.error(f"Error in {name}: {e}", exc_info=True)
                return None

    def _lock_sweep(self):
        from speculate.services.prediction_engine import lock_due_predictions
        from speculate.utils.catalog_sync import CatalogSync

        def run():
            locked = lock_due_predictions()
            aired = CatalogSync().mark_aired()
            if locked or aired:
                logger.info(f"Lock sweep: {locked} predictions locked, {aired} episodes aired")
            return locked

        return self._run_job("lock sweep", run)

    def _reconcile_option_stats(self):
        from speculate.models import Prediction, PredictionOptionStats
        from speculate.models.prediction import STATE_LOCKED, STATE_OPEN

        def run():
            ids = [
                row[0]
                for row in db.session.query(Prediction.id)
                .filter(Prediction.state.in_([STATE_OPEN, STATE_LOCKED]))
                .all()
            ]
            corrected = sum(PredictionOptionStats.recount(prediction_id) for prediction_id in ids)
            db.session.commit()
            logger.info(
                f"Option stats reconciled for {len(ids)} predictions ({corrected} counters corrected)"
            )
            return corrected

        return self._run_job("option stats reconciliation", run)

    def _streak_bonuses(self):
        from speculate.services.points_service import award_streak_bonuses

        return self._run_job("streak bonuses", award_streak_bonuses)

    def _leaderboards(self):
        from speculate.services.leaderboard_service import compute_all_leaderboards

        return self._run_job("leaderboards", compute_all_leaderboards)

    def _catalog_sync(self):
        from speculate.utils.catalog_sync import CatalogSync

        def run():
            success, message = CatalogSync().sync()
            if not success:
                raise RuntimeError(message)
            logger.info(message)
            return message

        return self._run_job("catalog sync", run)

    def _update_stats(self, success):
        """Update job statistics"""
        self.job_stats["last_run"] = datetime.now(timezone.utc)
        self.job_stats["total_runs"] += 1

        if success:
            self.job_stats["successful_runs"] += 1
            self.job_stats["last_error"] = None
        else:
            self.job_stats["failed_runs"] += 1

    def get_status(self):
        """Get scheduler status information"""
        jobs = []
        if self.scheduler:
            for job in self.scheduler.get_jobs():
                if job.id.startswith("task:"):
                    continue
                next_run = job.next_run_time
                jobs.append(
                    {
                        "id": job.id,
                        "name": job.name,
                        "next_run": next_run.isoformat() if next_run else None,
                        "trigger": str(job.trigger),
                    }
                )

        stats = dict(self.job_stats)
        if stats["last_run"]:
            stats["last_run"] = stats["last_run"].isoformat()

        return {"is_running": self.is_running, "jobs": jobs, "stats": stats}

    def force_run(self, job_type):
        """Manually trigger a job"""
        jobs = {
            "lock_sweep": self._lock_sweep,
            "reconcile": self._reconcile_option_stats,
            "streaks": self._streak_bonuses,
            "leaderboards": self._leaderboards,
            "catalog": self._catalog_sync,
        }
        if job_type not in jobs:
            return False, f"Unknown job type: {job_type}"
        if self.app is None:
            return False, "Scheduler is not initialized"

        failures = self.job_stats["failed_runs"]
        jobs[job_type]()
        if self.job_stats["failed_runs"] > failures:
            return False, f"Manual {job_type} run failed: {self.job_stats['last_error']}"
        return True, f"Manual {job_type} run completed"

    def pause_job(self, job_id):
        """Pause a specific job"""
        try:
            self.scheduler.pause_job(job_id)
            return True, f"Job {job_id} paused"
        except Exception as e:
            return False, f"Failed to pause job: {e}"

    def resume_job(self, job_id):
        """Resume a specific job"""
        try:
            self.scheduler.resume_job(job_id)
            return True, f"Job {job_id} resumed"
        except Exception as e:
            return False, f"Failed to resume job: {e}"


# Global scheduler instance
scheduler_service = SchedulerService()

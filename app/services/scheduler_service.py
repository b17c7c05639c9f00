# =====================================================
# FILE: app/services/scheduler_service.py
# Background Job Scheduler for step timeouts and approval reminders
# =====================================================

import asyncio
from datetime import datetime
from typing import Callable, List
import logging

from app.core.config import settings
from app.core.database import SessionLocal
from app.services.notification_sink import build_default_sink
from app.services.workflow_engine import WorkflowEngine
from app.utils.datetime_helpers import utcnow

logger = logging.getLogger(__name__)


class SchedulerService:
    """Background job scheduler"""

    def __init__(self, tick_seconds: int = 60):
        self.jobs: List[dict] = []
        self.running = False
        self.tick_seconds = tick_seconds

    def add_job(self, name: str, func: Callable, interval_minutes: int):
        """Add a scheduled job"""
        self.jobs.append({
            "name": name,
            "func": func,
            "interval": interval_minutes,
            "last_run": None
        })
        logger.info(f"Scheduled job '{name}' every {interval_minutes} minutes")

    def due_jobs(self, now: datetime) -> List[dict]:
        return [
            job for job in self.jobs
            if job["last_run"] is None
            or (now - job["last_run"]).total_seconds() >= job["interval"] * 60
        ]

    async def run_pending(self, now: datetime = None):
        """Run every job whose interval has elapsed; one failing job does not stop the others"""
        now = now or utcnow()
        for job in self.due_jobs(now):
            try:
                logger.info(f"Running job: {job['name']}")
                if asyncio.iscoroutinefunction(job["func"]):
                    await job["func"]()
                else:
                    await asyncio.to_thread(job["func"])
                logger.info(f"Job completed: {job['name']}")
            except Exception as e:
                logger.error(f"Job failed: {job['name']} - {e}")
            job["last_run"] = now

    async def start(self):
        """Start the scheduler"""
        self.running = True
        logger.info("Background scheduler started")

        while self.running:
            await self.run_pending()
            await asyncio.sleep(self.tick_seconds)

    def stop(self):
        """Stop the scheduler"""
        self.running = False
        logger.info("Scheduler stopped")


# =====================================================
# SCHEDULED JOB FUNCTIONS
# =====================================================

def sweep_step_timeouts():
    """Time out overdue step executions and escalate where configured"""
    db = SessionLocal()
    try:
        engine = WorkflowEngine(db, build_default_sink(SessionLocal))
        result = engine.sweep_timeouts()
        logger.info(f"Timeout sweep complete: {result}")
        return result
    finally:
        db.close()


def send_approval_reminders():
    """Remind assignees of approval requests waiting too long"""
    db = SessionLocal()
    try:
        engine = WorkflowEngine(db, build_default_sink(SessionLocal))
        result = engine.send_reminders()
        logger.info(f"Approval reminder run complete: {result}")
        return result
    finally:
        db.close()


# =====================================================
# SCHEDULER INITIALIZATION
# =====================================================

scheduler = SchedulerService()


def setup_scheduler():
    """Configure all scheduled jobs"""
    scheduler.add_job("Step Timeout Sweep", sweep_step_timeouts, settings.TIMEOUT_SWEEP_INTERVAL_MINUTES)
    scheduler.add_job("Approval Reminders", send_approval_reminders, settings.REMINDER_INTERVAL_MINUTES)

    return scheduler

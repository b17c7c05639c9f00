import asyncio
from datetime import timedelta

from app.services.scheduler_service import SchedulerService
from app.utils.datetime_helpers import utcnow


def test_jobs_run_when_their_interval_elapsed():
    calls = []
    scheduler = SchedulerService()
    scheduler.add_job("sweep", lambda: calls.append("sweep"), 5)
    scheduler.add_job("reminders", lambda: calls.append("reminders"), 60)
    start = utcnow()

    asyncio.run(scheduler.run_pending(now=start))
    asyncio.run(scheduler.run_pending(now=start + timedelta(minutes=6)))

    assert calls == ["sweep", "reminders", "sweep"]
    assert [job["name"] for job in scheduler.due_jobs(start + timedelta(minutes=61))] == ["sweep", "reminders"]


def test_failing_job_does_not_stop_the_others():
    calls = []

    def broken():
        raise RuntimeError("database unavailable")

    async def reminders():
        calls.append("reminders")

    scheduler = SchedulerService()
    scheduler.add_job("sweep", broken, 5)
    scheduler.add_job("reminders", reminders, 60)
    now = utcnow()

    asyncio.run(scheduler.run_pending(now=now))

    assert calls == ["reminders"]
    assert all(job["last_run"] == now for job in scheduler.jobs)

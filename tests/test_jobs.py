"""Tests for the periodic jobs and the maintenance job entry points."""

import asyncio
from datetime import timedelta

from support_service.jobs import BackgroundJobs, run_tracking_cleanup_job
from support_service.jobs.scheduler import (
    SCHEDULED_NOTIFICATIONS_JOB,
    TICKET_AUTO_ROUTING_JOB,
    TRACKING_CLEANUP_JOB,
)
from support_service.models import (
    DeliveryTrackingRecord,
    Notification,
    NotificationChannel,
    NotificationStatus,
    SupportTicket,
    TicketPriority,
    TicketStatus,
    utcnow,
)


class TestBackgroundJobs:
    async def test_registers_interval_jobs(self, session_factory, worker, registry, bus, settings):
        jobs = BackgroundJobs(session_factory, worker, registry, bus, settings)

        by_id = {job.id: job for job in jobs.scheduler.get_jobs()}

        assert set(by_id) == {
            SCHEDULED_NOTIFICATIONS_JOB,
            TICKET_AUTO_ROUTING_JOB,
            TRACKING_CLEANUP_JOB,
        }
        assert by_id[SCHEDULED_NOTIFICATIONS_JOB].trigger.interval == timedelta(
            seconds=settings.scheduled_sweep_interval_seconds
        )
        assert by_id[TICKET_AUTO_ROUTING_JOB].trigger.interval == timedelta(
            seconds=settings.auto_route_interval_seconds
        )

    async def test_sweep_runs_on_schedule_until_stopped(
        self, session_factory, worker, registry, bus, settings
    ):
        ticks = []

        async def sweep() -> int:
            ticks.append(utcnow())
            return 0

        worker.sweep_scheduled = sweep
        fast = settings.model_copy(update={"scheduled_sweep_interval_seconds": 0.05})
        jobs = BackgroundJobs(session_factory, worker, registry, bus, fast)

        jobs.start()
        assert jobs.running
        await asyncio.sleep(0.4)
        await jobs.stop()
        count = len(ticks)
        await asyncio.sleep(0.15)

        assert count >= 2
        assert len(ticks) == count
        assert not jobs.running

    async def test_routes_pending_tickets(self, session_factory, worker, registry, bus, settings):
        async with session_factory() as session:
            session.add(
                SupportTicket(
                    user_id="user-1",
                    subject="Login",
                    description="Cannot sign in",
                    category="account_access",
                    priority=TicketPriority.HIGH,
                    status=TicketStatus.OPEN,
                )
            )
            await session.commit()
        jobs = BackgroundJobs(session_factory, worker, registry, bus, settings)

        routed = await jobs.route_pending_tickets()

        assert routed == 1
        assert registry.workloads["technical"] == 1

    async def test_cleanup_tracking(self, session_factory, worker, registry, bus, settings):
        async with session_factory() as session:
            notification = Notification(
                user_id="user-1",
                type="onboarding",
                channel=NotificationChannel.SMS,
                recipient="x",
                message="Hi",
                status=NotificationStatus.SENT,
            )
            session.add(notification)
            await session.flush()
            session.add(
                DeliveryTrackingRecord(
                    notification_id=notification.id,
                    channel=NotificationChannel.SMS,
                    status=NotificationStatus.SENT,
                    timestamp=utcnow() - timedelta(days=settings.tracking_retention_days + 1),
                )
            )
            await session.commit()
        jobs = BackgroundJobs(session_factory, worker, registry, bus, settings)

        assert await jobs.cleanup_tracking() == 1


class TestMaintenanceJobs:
    async def test_cleanup_job_reports_results(self, db_engine):
        database_url = str(db_engine.url)

        results = await run_tracking_cleanup_job(database_url, retention_days=30)

        assert results["purged_count"] == 0
        assert results["retention_days"] == 30
        assert results["completed_at"] is not None

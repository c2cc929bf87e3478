"""
In-process periodic jobs started from the application lifespan.

- Scheduled notification sweep (every 60s by default)
- Ticket auto-routing sweep (every 5 min by default)
- Delivery tracking retention cleanup (daily by default)

Overlap is handled by the job itself as well as by the scheduler: the
notification sweep skips while a previous run is in flight, and ticket
routing only picks up unassigned rows.
"""

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..core.config import Settings
from ..core.database import get_session_context
from ..core.messaging import MessageBus
from ..services.delivery_tracking import DeliveryTrackingService
from ..services.notification_worker import NotificationWorker
from ..services.support_routing import SupportRoutingService, TeamRegistry

logger = logging.getLogger(__name__)

SCHEDULED_NOTIFICATIONS_JOB = "scheduled-notifications"
TICKET_AUTO_ROUTING_JOB = "ticket-auto-routing"
TRACKING_CLEANUP_JOB = "tracking-cleanup"


class BackgroundJobs:
    """The service's periodic jobs, wired to shared components."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        worker: NotificationWorker,
        registry: TeamRegistry,
        bus: MessageBus,
        settings: Settings,
    ):
        self.session_factory = session_factory
        self.worker = worker
        self.registry = registry
        self.bus = bus
        self.settings = settings

        self.scheduler = AsyncIOScheduler(timezone="UTC")
        self.scheduler.add_job(
            self.worker.sweep_scheduled,
            "interval",
            seconds=settings.scheduled_sweep_interval_seconds,
            id=SCHEDULED_NOTIFICATIONS_JOB,
            coalesce=True,
            replace_existing=True,
        )
        self.scheduler.add_job(
            self.route_pending_tickets,
            "interval",
            seconds=settings.auto_route_interval_seconds,
            id=TICKET_AUTO_ROUTING_JOB,
            coalesce=True,
            replace_existing=True,
        )
        self.scheduler.add_job(
            self.cleanup_tracking,
            "interval",
            seconds=settings.tracking_cleanup_interval_seconds,
            id=TRACKING_CLEANUP_JOB,
            coalesce=True,
            replace_existing=True,
        )

    @property
    def running(self) -> bool:
        return self.scheduler.running

    async def route_pending_tickets(self) -> int:
        async with get_session_context(self.session_factory) as session:
            routing = SupportRoutingService(session, self.registry, self.bus)
            routings = await routing.auto_route_pending_tickets(
                batch_size=self.settings.auto_route_batch_size
            )
        return len(routings)

    async def cleanup_tracking(self) -> int:
        async with get_session_context(self.session_factory) as session:
            tracking = DeliveryTrackingService(session)
            return await tracking.purge_old_records(self.settings.tracking_retention_days)

    def start(self) -> None:
        if self.scheduler.running:
            return
        self.scheduler.start()
        for job in self.scheduler.get_jobs():
            logger.info(f"Scheduled {job.id} ({job.trigger})")

    async def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Background jobs stopped")

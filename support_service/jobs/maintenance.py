"""
Maintenance jobs runnable outside the API process.

When background jobs are disabled in the app (e.g. several API replicas),
these run from cron or a scheduler instead:

    python -m support_service.jobs.maintenance cleanup   # 0 3 * * *
    python -m support_service.jobs.maintenance route     # */5 * * * *
"""

import asyncio
import logging
import os
import sys
import traceback
from datetime import datetime, timezone
from typing import Any

import httpx

from ..core.config import get_settings
from ..core.database import build_engine, build_session_factory, get_session_context
from ..core.messaging import create_message_bus
from ..services.delivery_tracking import DeliveryTrackingService
from ..services.support_routing import SupportRoutingService, TeamRegistry

logger = logging.getLogger(__name__)


# =============================================================================
# ALERTING
# =============================================================================


async def send_alert(
    title: str,
    message: str,
    severity: str = "error",
    details: dict | None = None,
) -> None:
    """Log the failure and forward it to the alert webhook, if configured."""
    log_message = f"[JOB ALERT] {title}: {message}"
    if details:
        log_message += f" | Details: {details}"

    if severity == "critical":
        logger.critical(log_message)
    else:
        logger.error(log_message)

    webhook_url = get_settings().alert_webhook_url
    if not webhook_url:
        return

    payload = {
        "title": title,
        "message": message,
        "severity": severity,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "source": "support-service-jobs",
        "details": details or {},
    }
    try:
        async with httpx.AsyncClient() as client:
            response = await client.post(webhook_url, json=payload, timeout=10)
            response.raise_for_status()
    except httpx.HTTPError as e:
        logger.error(f"Failed to send webhook alert: {e}")


# =============================================================================
# JOBS
# =============================================================================


async def run_tracking_cleanup_job(database_url: str, retention_days: int = 90) -> dict[str, Any]:
    """Purge delivery tracking rows older than the retention window."""
    start_time = datetime.now(timezone.utc)
    logger.info(f"Starting tracking cleanup at {start_time.isoformat()}")

    engine = build_engine(database_url)
    session_factory = build_session_factory(engine)

    results: dict[str, Any] = {
        "started_at": start_time.isoformat(),
        "completed_at": None,
        "retention_days": retention_days,
        "purged_count": 0,
    }

    try:
        async with get_session_context(session_factory) as session:
            tracking = DeliveryTrackingService(session)
            results["purged_count"] = await tracking.purge_old_records(retention_days)
    except Exception as e:
        await send_alert(
            title="Tracking Cleanup Job Failed",
            message="The delivery tracking retention job crashed unexpectedly.",
            severity="critical",
            details={
                "error": str(e),
                "traceback": traceback.format_exc()[-500:],
                "started_at": results["started_at"],
            },
        )
        raise
    finally:
        await engine.dispose()

    end_time = datetime.now(timezone.utc)
    results["completed_at"] = end_time.isoformat()
    results["duration_seconds"] = (end_time - start_time).total_seconds()

    logger.info(
        f"Tracking cleanup completed in {results['duration_seconds']:.2f}s: "
        f"{results['purged_count']} records purged"
    )
    return results


async def run_auto_route_job(database_url: str, batch_size: int = 20) -> dict[str, Any]:
    """Route unassigned open tickets with the default team registry."""
    start_time = datetime.now(timezone.utc)
    logger.info(f"Starting ticket auto-routing at {start_time.isoformat()}")

    engine = build_engine(database_url)
    session_factory = build_session_factory(engine)
    bus = create_message_bus(get_settings())

    results: dict[str, Any] = {
        "started_at": start_time.isoformat(),
        "completed_at": None,
        "routed_count": 0,
        "assignments": {},
    }

    try:
        await bus.connect()
        async with get_session_context(session_factory) as session:
            routing = SupportRoutingService(session, TeamRegistry(), bus)
            routings = await routing.auto_route_pending_tickets(batch_size=batch_size)

        results["routed_count"] = len(routings)
        for routed in routings:
            results["assignments"][routed.team_id] = results["assignments"].get(routed.team_id, 0) + 1
    except Exception as e:
        await send_alert(
            title="Ticket Auto-Routing Job Failed",
            message="The pending ticket routing job crashed unexpectedly.",
            severity="critical",
            details={
                "error": str(e),
                "traceback": traceback.format_exc()[-500:],
                "started_at": results["started_at"],
            },
        )
        raise
    finally:
        await bus.close()
        await engine.dispose()

    end_time = datetime.now(timezone.utc)
    results["completed_at"] = end_time.isoformat()
    results["duration_seconds"] = (end_time - start_time).total_seconds()

    logger.info(
        f"Auto-routing completed in {results['duration_seconds']:.2f}s: "
        f"{results['routed_count']} tickets routed"
    )
    return results


# =============================================================================
# CLI ENTRY POINT
# =============================================================================


def main():
    """CLI entry point for the maintenance jobs."""
    import argparse

    settings = get_settings()

    parser = argparse.ArgumentParser(description="Run support service maintenance jobs")
    parser.add_argument("job", choices=["cleanup", "route"], help="Job to run")
    parser.add_argument(
        "--database-url",
        default=os.environ.get("DATABASE_URL") or settings.database_url_async,
        help="Database connection string",
    )
    parser.add_argument(
        "--retention-days",
        type=int,
        default=settings.tracking_retention_days,
        help="Days of delivery tracking history to keep",
    )
    parser.add_argument(
        "--batch-size",
        type=int,
        default=settings.auto_route_batch_size,
        help="Maximum tickets to route per run",
    )

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    database_url = args.database_url
    if database_url.startswith("postgresql://"):
        database_url = database_url.replace("postgresql://", "postgresql+asyncpg://", 1)

    try:
        if args.job == "cleanup":
            results = asyncio.run(run_tracking_cleanup_job(database_url, args.retention_days))
        else:
            results = asyncio.run(run_auto_route_job(database_url, args.batch_size))
        print(f"Job completed: {results}")
    except Exception as e:
        print(f"Job failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()

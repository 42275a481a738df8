"""
Periodic cleanup of deployments that ended without being acknowledged.

CRASHED and FAILED deployments are kept for inspection; once they are older
than ``cleanup_after`` seconds a scheduled sweep purges them.
"""
import asyncio
import logging
from typing import TYPE_CHECKING

from apscheduler.schedulers.asyncio import AsyncIOScheduler

if TYPE_CHECKING:
    from local_deployer.services.deployment.supervisor import DeploymentSupervisor

logger = logging.getLogger(__name__)

CLEANUP_JOB_ID = "purge-stale-deployments"


def schedule_cleanup(
    supervisor: "DeploymentSupervisor",
    interval: int,
    max_age: int,
) -> AsyncIOScheduler:
    """
    Start a scheduler that purges stale deployments every ``interval`` seconds.

    Must be called from within a running event loop.

    Args:
        supervisor: Supervisor whose deployments are swept
        interval: Seconds between sweeps
        max_age: Minimum age in seconds of a CRASHED/FAILED deployment to purge

    Returns:
        The started scheduler; call ``shutdown`` on it when done
    """
    scheduler = AsyncIOScheduler(event_loop=asyncio.get_running_loop())
    scheduler.add_job(
        supervisor.purge_stale,
        "interval",
        seconds=interval,
        kwargs={"max_age": max_age},
        id=CLEANUP_JOB_ID,
        coalesce=True,
        max_instances=1,
    )
    scheduler.start()
    logger.info(f"Scheduled stale deployment cleanup every {interval}s (max age {max_age}s)")
    return scheduler

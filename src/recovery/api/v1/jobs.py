"""Scheduled job triggers for external cron callers."""
from datetime import datetime

import structlog
from fastapi import APIRouter, Depends

from recovery.api.deps import get_coordinator, verify_cron_secret
from recovery.services.recovery_coordinator import RecoveryCoordinator

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/jobs", tags=["Jobs"], dependencies=[Depends(verify_cron_secret)])


def _job_response(job: str, results: dict[str, int]) -> dict:
    return {
        "job": job,
        "status": "completed",
        "results": results,
        "timestamp": datetime.utcnow().isoformat(),
    }


@router.post("/retries")
async def run_payment_retries(coordinator: RecoveryCoordinator = Depends(get_coordinator)) -> dict:
    """Run the due payment retries."""
    results = await coordinator.run_due_retries()
    logger.info("cron_job_completed", job="retries", **results)
    return _job_response("retries", results)


@router.post("/notifications")
async def run_dunning_notifications(coordinator: RecoveryCoordinator = Depends(get_coordinator)) -> dict:
    """Send the due dunning notifications."""
    results = await coordinator.run_due_notifications()
    logger.info("cron_job_completed", job="notifications", **results)
    return _job_response("notifications", results)


@router.post("/cancellations")
async def run_subscription_cancellations(coordinator: RecoveryCoordinator = Depends(get_coordinator)) -> dict:
    """Execute the due subscription cancellations."""
    results = await coordinator.run_due_cancellations()
    logger.info("cron_job_completed", job="cancellations", **results)
    return _job_response("cancellations", results)

import logging

from fastapi import APIRouter, Depends

from coordinator.api.deps import DbSession, ServicesDep, SchedulerAuth
from coordinator.commands.enqueue_job import enqueue_job
from coordinator.domain.jobs import ReminderBatchJob, REMINDER_QUEUE, dump_job_payload
from coordinator.processors.cases import tenants_with_open_cases
from coordinator.services.rate_limiter import RateLimit

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/reminders", dependencies=[SchedulerAuth, Depends(RateLimit("scheduler", "control"))])
async def trigger_reminders(session: DbSession, services: ServicesDep):
    """
    Fans out one reminder run per tenant with open cases.

    Each tenant's job carries singleton key `reminders:<tenant>`, so firing
    this twice (overlapping cron, manual retrigger) still leaves one live run
    per tenant.
    """
    tenants = await tenants_with_open_cases(session)
    jobs = {}
    for tenant_id in tenants:
        job_id = await enqueue_job(
            session,
            REMINDER_QUEUE,
            dump_job_payload(ReminderBatchJob(tenant_id=tenant_id)),
            services.reminder_options(tenant_id),
        )
        jobs[tenant_id] = str(job_id)
    await session.commit()

    logger.info(f"Scheduled reminder runs for {len(jobs)} tenants")
    return {"success": True, "tenants": len(jobs), "jobs": jobs}

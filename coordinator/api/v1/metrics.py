from prometheus_client import Counter, Gauge, Histogram, generate_latest, CONTENT_TYPE_LATEST
from fastapi import APIRouter, Response

router = APIRouter()

# Queue
QUEUE_DEPTH = Gauge('job_queue_depth', 'Number of jobs per queue and state', ['queue', 'state'])
JOB_FAILURES_TOTAL = Counter('job_failures_total', 'Total job failures', ['queue', 'type']) # type=retryable|permanent|exhausted|expired
JOB_COMPLETE_TOTAL = Counter('job_complete_total', 'Total jobs completed', ['queue'])
JOB_START_DELAY = Histogram('job_start_delay_seconds', 'Time from run_after to claim', buckets=[0.1, 0.5, 1.0, 5.0, 10.0, 30.0, 60.0, 300.0])
JOB_DURATION = Histogram('job_duration_seconds', 'Time from claim to completion', buckets=[0.1, 0.5, 1.0, 5.0, 10.0, 60.0, 120.0])

SINGLETON_COLLAPSES_TOTAL = Counter(
    "singleton_collapses_total",
    "Enqueues that resolved to an existing live job with the same singleton key",
    ["queue"]
)

# Ingestion
WEBHOOK_EVENTS_TOTAL = Counter(
    "webhook_events_total",
    "Inbound webhook events by admission outcome",
    ["outcome"] # admitted|duplicate
)

SIGNATURE_FAILURES_TOTAL = Counter(
    "webhook_signature_failures_total",
    "Inbound requests rejected by signature verification"
)

RECONCILED_EVENTS_TOTAL = Counter(
    "reconciled_events_total",
    "Admitted events re-enqueued because their job was never created"
)

# Coordination
RATE_LIMIT_DECISIONS_TOTAL = Counter(
    "rate_limit_decisions_total",
    "Rate limiter decisions",
    ["purpose", "decision"] # allowed|rejected|degraded
)

LOCK_ACQUISITIONS_TOTAL = Counter(
    "advisory_lock_acquisitions_total",
    "Advisory lock attempts",
    ["resource", "result"] # acquired|contended
)

LEADER_STATUS = Gauge(
    "instance_leader_status",
    "Whether this instance is currently the maintenance leader (1 for leader, 0 for follower)"
)

@router.get("/metrics")
async def metrics():
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

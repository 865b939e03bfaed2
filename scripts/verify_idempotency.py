#!/usr/bin/env python3
"""
Fires the same signed webhook at a running instance many times concurrently
and checks that exactly one delivery was admitted.

    WEBHOOK_SECRET=... python scripts/verify_idempotency.py
"""
import asyncio
import json
import os
import sys
import time
import uuid

import httpx

sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from coordinator.auth.signature import sign_payload

API_URL = os.getenv("API_URL", "http://localhost:8000")
SECRET = os.getenv("WEBHOOK_SECRET", "")
DELIVERIES = int(os.getenv("DELIVERIES", "20"))

async def verify_idempotency():
    event_id = f"evt_{uuid.uuid4().hex[:12]}"
    body = json.dumps({
        "id": event_id,
        "type": "payment_failed",
        "created_at": int(time.time()),
        "data": {"company_id": "tenant-verify", "membership_id": f"mem_{uuid.uuid4().hex[:8]}"},
    }).encode("utf-8")
    headers = {
        "Content-Type": "application/json",
        "X-Webhook-Signature": sign_payload(body, SECRET),
        "X-Webhook-Timestamp": str(int(time.time())),
    }

    print(f"1. Delivering {event_id} {DELIVERIES} times concurrently...")
    async with httpx.AsyncClient(base_url=API_URL, timeout=10.0) as client:
        responses = await asyncio.gather(*(
            client.post("/api/v1/webhooks/events", content=body, headers=headers)
            for _ in range(DELIVERIES)
        ))

    statuses = [r.status_code for r in responses]
    if any(s != 200 for s in statuses):
        print(f"   FAILURE: non-200 responses: {statuses}")
        return False

    fresh = [r.json() for r in responses if not r.json().get("duplicate", False)]
    print(f"   {len(fresh)} admitted, {DELIVERIES - len(fresh)} duplicates")
    if len(fresh) != 1:
        print("   FAILURE: expected exactly one admission")
        return False

    print("2. Checking the webhook queue...")
    async with httpx.AsyncClient(base_url=API_URL) as client:
        stats = (await client.get("/api/v1/jobs/stats", params={"queue": "webhook-processing"})).json()
    print(f"   {stats['queues']}")
    print("SUCCESS")
    return True

if __name__ == "__main__":
    ok = asyncio.run(verify_idempotency())
    sys.exit(0 if ok else 1)

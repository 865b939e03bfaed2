#!/usr/bin/env python3
"""
Races many advisory-lock acquisitions for one tenant against a real Postgres
and checks that exactly one wins while the others return immediately.

    SQLALCHEMY_DATABASE_URI=postgresql+asyncpg://... python scripts/verify_tenant_lock.py
"""
import asyncio
import os
import sys
import time

sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from coordinator.db.session import build_engine
from coordinator.settings import settings
from coordinator.utils.locking import AdvisoryLock, tenant_reminder_resource

CONTENDERS = int(os.getenv("CONTENDERS", "10"))

async def verify_tenant_lock():
    engine = build_engine(settings.SQLALCHEMY_DATABASE_URI, pool_size=CONTENDERS + 2)
    # One AdvisoryLock per contender, as if each were its own instance
    locks = [AdvisoryLock(engine) for _ in range(CONTENDERS)]
    resource = tenant_reminder_resource("tenant-verify")

    print(f"1. {CONTENDERS} instances racing for {resource}...")
    started = time.monotonic()
    results = await asyncio.gather(*(lock.try_acquire(resource) for lock in locks))
    elapsed = time.monotonic() - started

    winners = sum(results)
    print(f"   {winners} acquired, {CONTENDERS - winners} skipped in {elapsed:.3f}s")

    for lock in locks:
        await lock.release_all()

    print("2. Lock is free again after release...")
    again = await locks[0].try_acquire(resource)
    await locks[0].release(resource)
    await engine.dispose()

    if winners != 1 or not again:
        print("FAILURE")
        return False
    print("SUCCESS")
    return True

if __name__ == "__main__":
    ok = asyncio.run(verify_tenant_lock())
    sys.exit(0 if ok else 1)

#!/usr/bin/env python3
"""
Diagnose discovery lock state and provide recovery recommendations.
"""

import asyncio
from datetime import datetime
from pathlib import Path
import sys

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from listing_tracker.db.session import engine
from listing_tracker.db.store import TrackerStore
from listing_tracker.worker.coordinator import RUN_TYPE
from listing_tracker.worker.run_lock import RunLock


async def diagnose() -> None:
    lock = RunLock()
    store = TrackerStore()
    try:
        lock_info = await lock.info()
        heartbeat_age = await lock.heartbeat_age()
        running_runs = await store.list_running_runs(RUN_TYPE)
    finally:
        await lock.close()
        await engine.dispose()

    print("Discovery Lock Diagnosis")
    print("========================")
    print(f"LOCK_KEY: {lock.lock_key}")
    print(f"HEARTBEAT_KEY: {lock.heartbeat_key}")
    print("")

    if not lock_info:
        print("Lock: none")
    else:
        print("Lock: present")
        print(f"  run_id: {lock_info.get('run_id')}")
        print(f"  started_at: {lock_info.get('started_at')}")
        print(f"  ttl_seconds: {lock_info.get('ttl_seconds')}")

    print(f"Heartbeat age (seconds): {heartbeat_age}")
    print("")

    if not running_runs:
        print("Running discovery runs: none")
    else:
        print(f"Running discovery runs: {len(running_runs)}")
        for run in running_runs:
            age_s = (datetime.utcnow() - run.started_at).total_seconds()
            print(f"  - id={run.id} started_at={run.started_at} age_s={age_s:.0f}")

    print("")
    print("Recommendations")
    print("----------------")
    if lock_info and not heartbeat_age:
        print("- Lock exists but heartbeat missing. The scheduler watchdog will clear it.")
    if heartbeat_age and heartbeat_age > 300:
        print("- Heartbeat is stale (> 300s). Lock likely stuck; the watchdog clears it and fails the run.")
    if lock_info and heartbeat_age is not None and heartbeat_age <= 300:
        print("- Heartbeat appears healthy. A discovery pass is in progress.")
    if not lock_info and running_runs:
        print("- Running discovery run without lock present. The watchdog will mark it failed.")
    if not lock_info and not running_runs:
        print("- No issues detected.")


if __name__ == "__main__":
    asyncio.run(diagnose())

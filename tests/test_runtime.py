"""Tests for process lifecycle helpers."""

import pytest
import redis.exceptions

from listing_tracker.worker.runtime import StopFlag, run_process


@pytest.mark.asyncio
async def test_lost_coordination_layer_exits_nonzero_after_cleanup():
    closed = []

    async def main(stop):
        raise redis.exceptions.ConnectionError("redis gone")

    async def cleanup():
        closed.append(True)

    assert await run_process("worker", main, cleanup) == 1
    assert closed == [True]


@pytest.mark.asyncio
async def test_clean_run_exits_zero():
    async def main(stop):
        assert not stop.requested
        return "done"

    assert await run_process("verifier", main) == 0


@pytest.mark.asyncio
async def test_stop_flag_wakes_sleepers():
    stop = StopFlag()
    stop.request("test")
    assert await stop.sleep(5) is True
    assert await stop.sleep(0) is True

"""Tests for the command line surface."""

import pytest

from listing_tracker.cli import build_parser, cmd_queue


def parse(*argv):
    return build_parser().parse_args(list(argv))


def test_discover_arguments():
    args = parse("discover", "--area", "milano", "--area", "roma", "--max-pages", "3")
    assert args.command == "discover"
    assert args.area == ["milano", "roma"]
    assert args.max_pages == 3


def test_worker_and_verifier_defaults():
    assert parse("worker").forever is False
    assert parse("verifier").hours is None
    assert parse("verifier", "--hours", "12").hours == 12.0


def test_unknown_queue_action_is_rejected():
    with pytest.raises(SystemExit):
        parse("queue", "explode")


def test_command_is_required():
    with pytest.raises(SystemExit):
        parse()


@pytest.mark.asyncio
async def test_queue_stats(queue, capsys):
    await queue.enqueue(["1", "2", "3"])
    await queue.mark_failed("3", "HTTP 500")

    assert await cmd_queue(parse("queue", "stats"), queue=queue) == 0

    out = capsys.readouterr().out
    assert "Total discovered: 3" in out
    assert "Queue depth: 2" in out
    assert "Failed: 1" in out


@pytest.mark.asyncio
async def test_queue_show_failed(queue, capsys):
    for i in range(4):
        await queue.mark_failed(f"id{i}", f"boom {i}")

    assert await cmd_queue(parse("queue", "show-failed", "--limit", "2"), queue=queue) == 0

    out = capsys.readouterr().out
    assert "Failed listings (4):" in out
    assert "id0: boom 0" in out
    assert "id3" not in out
    assert "... and 2 more" in out


@pytest.mark.asyncio
async def test_queue_retry_failed(queue, capsys):
    await queue.mark_failed("a", "boom")

    assert await cmd_queue(parse("queue", "retry-failed"), queue=queue) == 0

    assert "Re-queued 1 failed listings" in capsys.readouterr().out
    assert await queue.queue_depth() == 1


@pytest.mark.asyncio
async def test_queue_clear_without_confirmation(queue, capsys):
    await queue.enqueue(["1"])

    assert await cmd_queue(parse("queue", "clear", "--yes"), queue=queue) == 0

    assert "Queue cleared successfully" in capsys.readouterr().out
    assert (await queue.stats()).total_discovered == 0

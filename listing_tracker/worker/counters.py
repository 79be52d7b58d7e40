"""Per-process run counters.

Each coordinator, worker and verifier keeps its own tallies in a
RunCounters value and writes them to its scrape_runs row when it finishes.
"""

from dataclasses import dataclass, fields


@dataclass
class RunCounters:
    """Tallies of one run."""

    discovered: int = 0
    enqueued: int = 0
    new: int = 0
    processed: int = 0
    changed: int = 0
    unchanged: int = 0
    skipped: int = 0
    requeued: int = 0
    failed: int = 0
    active: int = 0
    inactive: int = 0
    errors: int = 0

    def as_dict(self) -> dict[str, int]:
        return {f.name: getattr(self, f.name) for f in fields(self)}

"""Basic commit round metrics."""

from __future__ import annotations

from dataclasses import asdict, dataclass


@dataclass
class CommitStats:
    """Running counters for one coordinator instance."""

    rounds_started: int = 0
    rounds_committed: int = 0
    rounds_partial: int = 0
    rounds_timed_out: int = 0
    rounds_failed: int = 0
    rounds_cancelled: int = 0
    table_commits: int = 0
    table_conflicts: int = 0
    table_failures: int = 0
    late_responses: int = 0
    duplicate_responses: int = 0
    files_already_committed: int = 0
    last_commit_duration_ms: float = 0.0

    def as_dict(self) -> dict[str, float]:
        return asdict(self)

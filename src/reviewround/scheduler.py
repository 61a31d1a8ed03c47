from __future__ import annotations

from collections.abc import Sequence
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Final

from reviewround.models import ReviewRound


DEFAULT_BACKOFF_SECONDS: Final[tuple[int, ...]] = (30, 120, 300)


def schedule_after_attempt(
    round_: ReviewRound,
    *,
    actionable_count: int,
    backoff_seconds: Sequence[int],
    now: datetime,
) -> ReviewRound:
    """Record one fetch attempt and decide whether to finish or retry.

    The backoff list doubles as the attempt budget: attempt ``n`` (1-indexed)
    waits ``backoff_seconds[n - 1]`` before the next try, and the round is
    completed once ``n >= len(backoff_seconds)``.
    """
    attempt_count = round_.attempt_count + 1
    if actionable_count > 0 or attempt_count >= len(backoff_seconds):
        return replace(
            round_,
            attempt_count=attempt_count,
            actionable_count=actionable_count,
            status="complete",
            completed_at=now,
            next_fetch_at=None,
            updated_at=now,
        )
    delay = backoff_seconds[attempt_count - 1]
    return replace(
        round_,
        attempt_count=attempt_count,
        actionable_count=actionable_count,
        next_fetch_at=now + timedelta(seconds=delay),
        updated_at=now,
    )


def complete_foreign_round(
    round_: ReviewRound, *, actionable_count: int, now: datetime
) -> ReviewRound:
    # Foreign rounds have no check to wait for, so they never enter the retry path.
    if actionable_count > 0 and not round_.is_complete:
        return replace(
            round_,
            actionable_count=actionable_count,
            status="complete",
            completed_at=now,
            next_fetch_at=None,
            updated_at=now,
        )
    return replace(round_, actionable_count=actionable_count, updated_at=now)

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Final

from reviewround.feedback import parse_timestamp
from reviewround.models import FeedbackDraft, ReviewRound


# Tolerates skew between the reviewer posting and us observing the check.
WINDOW_SLACK: Final[timedelta] = timedelta(minutes=10)


@dataclass(frozen=True)
class Correlation:
    current: tuple[FeedbackDraft, ...]
    foreign_by_commit: dict[str, tuple[FeedbackDraft, ...]] = field(default_factory=dict)
    dropped: tuple[FeedbackDraft, ...] = ()


def within_window(created_at: datetime, *, start: datetime | None, end: datetime) -> bool:
    if created_at > end:
        return False
    if start is not None:
        return created_at >= start
    return True


def correlate(
    round_: ReviewRound,
    drafts: Iterable[FeedbackDraft],
    *,
    observed_at: datetime,
) -> Correlation:
    """Partition drafts into this round, foreign commits, and out-of-window drops.

    Drafts carrying a commit id are routed by that id alone. Commit-less drafts
    belong here only when created inside
    ``[round.check_started_at, observed_at + WINDOW_SLACK]``.
    """
    window_start = parse_timestamp(round_.check_started_at)
    window_end = observed_at + WINDOW_SLACK
    head = round_.head_sha.lower()

    current: list[FeedbackDraft] = []
    foreign: dict[str, list[FeedbackDraft]] = {}
    dropped: list[FeedbackDraft] = []
    for draft in drafts:
        if draft.commit_id is not None:
            if draft.commit_id.lower() == head:
                current.append(draft)
            else:
                foreign.setdefault(draft.commit_id, []).append(draft)
            continue
        if within_window(draft.created_at, start=window_start, end=window_end):
            current.append(draft)
        else:
            dropped.append(draft)

    return Correlation(
        current=tuple(current),
        foreign_by_commit={commit: tuple(group) for commit, group in foreign.items()},
        dropped=tuple(dropped),
    )


def foreign_round_anchor(drafts: Sequence[FeedbackDraft], *, default: datetime) -> datetime:
    if not drafts:
        return default
    return min(draft.created_at for draft in drafts)

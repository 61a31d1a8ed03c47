from __future__ import annotations

from collections.abc import Iterable
from typing import Final

from reviewround.models import CheckState, CompletionSignal, PullRequestStatus, StatusCheck


REVIEWER_CHECK_CONTEXT: Final[str] = "CodeRabbit"
TERMINAL_CHECK_STATES: Final[frozenset[CheckState]] = frozenset(
    {"success", "failure", "error", "cancelled", "skipped"}
)

_LEGACY_STATES: Final[dict[str, CheckState]] = {
    "SUCCESS": "success",
    "FAILURE": "failure",
    "ERROR": "error",
    "PENDING": "pending",
    "EXPECTED": "pending",
}
_CHECK_RUN_CONCLUSIONS: Final[dict[str, CheckState]] = {
    "SUCCESS": "success",
    "NEUTRAL": "success",
    "FAILURE": "failure",
    "TIMED_OUT": "failure",
    "ACTION_REQUIRED": "failure",
    "CANCELLED": "cancelled",
    "SKIPPED": "skipped",
}


def is_terminal(state: CheckState) -> bool:
    return state in TERMINAL_CHECK_STATES


def classify_check(check: StatusCheck) -> CheckState:
    """Map either raw check shape onto a canonical state.

    Legacy status contexts carry ``state``; check runs carry ``status`` plus
    ``conclusion``. A non-empty ``state`` always wins.
    """
    if check.state:
        return _LEGACY_STATES.get(check.state.strip().upper(), "unknown")

    status = (check.status or "").strip().upper()
    if status != "COMPLETED":
        return "pending"
    conclusion = (check.conclusion or "").strip().upper()
    return _CHECK_RUN_CONCLUSIONS.get(conclusion, "unknown")


def find_reviewer_check(
    checks: Iterable[StatusCheck], *, context: str = REVIEWER_CHECK_CONTEXT
) -> StatusCheck | None:
    for check in checks:
        if check.context == context or check.name == context:
            return check
    return None


def check_run_key(check: StatusCheck) -> str | None:
    return check.started_at or check.completed_at


def detect_completion(
    previous: PullRequestStatus | None,
    current: PullRequestStatus,
    *,
    context: str = REVIEWER_CHECK_CONTEXT,
) -> CompletionSignal | None:
    if current.number is None or not current.head_sha:
        return None

    current_check = find_reviewer_check(current.status_checks, context=context)
    if current_check is None:
        return None
    current_state = classify_check(current_check)
    if not is_terminal(current_state):
        return None

    if previous is not None:
        previous_check = find_reviewer_check(previous.status_checks, context=context)
        if previous_check is not None:
            previous_state = classify_check(previous_check)
            # Same terminal outcome for the same check run: nothing changed.
            if (
                is_terminal(previous_state)
                and previous_state == current_state
                and check_run_key(previous_check) == check_run_key(current_check)
            ):
                return None

    return CompletionSignal(
        pr_number=current.number,
        head_sha=current.head_sha,
        check_state=current_state,
        check_started_at=current_check.started_at,
        check_completed_at=current_check.completed_at,
    )

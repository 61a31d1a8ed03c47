from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
import json
import logging
from pathlib import Path
import threading
from typing import TypeVar, cast

from reviewround.models import (
    FeedbackPayload,
    PullRequestIssueComment,
    PullRequestReview,
    PullRequestReviewComment,
    PullRequestStatus,
    StatusCheck,
)
from reviewround.observability import log_event, log_warning
from reviewround.shell import CommandError, run


LOGGER = logging.getLogger("reviewround.github_gateway")
_PR_VIEW_FIELDS = "number,headRefOid,state,statusCheckRollup"
_NO_PULL_REQUEST_MARKER = "no pull requests found"
_T = TypeVar("_T")


class GitHubPollingError(RuntimeError):
    """Recoverable GitHub read failure; caller should retry on a later pass."""


@dataclass(frozen=True)
class GitHubGateway:
    timeout_seconds: float | None = None

    def get_pull_request_status(self, working_dir: Path) -> PullRequestStatus | None:
        argv = ["gh", "pr", "view", "--json", _PR_VIEW_FIELDS]
        try:
            raw = run(argv, cwd=working_dir, timeout_seconds=self.timeout_seconds)
        except CommandError as exc:
            if _NO_PULL_REQUEST_MARKER in str(exc).lower():
                log_event(
                    LOGGER,
                    "github_read",
                    endpoint="pr_view",
                    working_dir=working_dir,
                    found=False,
                )
                return None
            raise GitHubPollingError(f"gh pr view failed in {working_dir}: {exc}") from exc

        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise GitHubPollingError(f"gh pr view returned invalid JSON: {exc}") from exc
        payload_obj = _as_object_dict(payload)
        if payload_obj is None:
            raise GitHubPollingError("Unexpected gh pr view response: expected object")

        status = parse_pull_request_status(payload_obj)
        log_event(
            LOGGER,
            "github_read",
            endpoint="pr_view",
            pr_number=status.number,
            head_sha=status.head_sha,
            check_count=len(status.status_checks),
        )
        return status

    def fetch_feedback(self, working_dir: Path, pr_number: int) -> FeedbackPayload:
        review_comments = self._api_paginated(
            working_dir, f"repos/{{owner}}/{{repo}}/pulls/{pr_number}/comments?per_page=100"
        )
        issue_comments = self._api_paginated(
            working_dir, f"repos/{{owner}}/{{repo}}/issues/{pr_number}/comments?per_page=100"
        )
        reviews = self._api_paginated(
            working_dir, f"repos/{{owner}}/{{repo}}/pulls/{pr_number}/reviews?per_page=100"
        )
        payload = FeedbackPayload(
            review_comments=_parse_each(review_comments, parse_review_comment, "review_comment"),
            issue_comments=_parse_each(issue_comments, parse_issue_comment, "issue_comment"),
            reviews=_parse_each(reviews, parse_review, "review"),
        )
        log_event(
            LOGGER,
            "github_read",
            endpoint="pull_request_feedback",
            pr_number=pr_number,
            review_comment_count=len(payload.review_comments),
            issue_comment_count=len(payload.issue_comments),
            review_count=len(payload.reviews),
        )
        return payload

    def _api_paginated(self, working_dir: Path, endpoint: str) -> list[object]:
        argv = ["gh", "api", "--paginate", "--slurp", endpoint]
        try:
            raw = run(argv, cwd=working_dir, timeout_seconds=self.timeout_seconds)
            return flatten_pages(json.loads(raw))
        except (CommandError, json.JSONDecodeError) as exc:
            log_warning(
                LOGGER,
                "github_poll_get_failed",
                endpoint=endpoint,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise GitHubPollingError(f"GitHub read failed for {endpoint}: {exc}") from exc


class GhAvailability:
    """Caches whether the ``gh`` CLI is usable for ``ttl_seconds``.

    Callers pass ``now`` (monotonic seconds) explicitly so staleness can be
    driven without sleeping.
    """

    def __init__(self, *, ttl_seconds: float, probe: Callable[[], bool] | None = None) -> None:
        self._ttl_seconds = ttl_seconds
        self._probe = probe or probe_gh_cli
        self._lock = threading.Lock()
        self._checked_at: float | None = None
        self._available = False

    def is_available(self, *, now: float) -> bool:
        with self._lock:
            if self._checked_at is not None and now - self._checked_at < self._ttl_seconds:
                return self._available
            self._available = self._probe()
            self._checked_at = now
            log_event(LOGGER, "gh_availability_checked", available=self._available)
            return self._available

    def invalidate(self) -> None:
        with self._lock:
            self._checked_at = None


def probe_gh_cli() -> bool:
    try:
        run(["gh", "auth", "status"], timeout_seconds=30)
    except CommandError:
        return False
    return True


def flatten_pages(value: object) -> list[object]:
    # --slurp wraps each page in an outer array; older gh builds emit a flat array.
    if isinstance(value, list):
        if value and all(isinstance(page, list) for page in value):
            flattened: list[object] = []
            for page in value:
                flattened.extend(cast(list[object], page))
            return flattened
        return list(value)
    return [value]


def parse_pull_request_status(payload: dict[str, object]) -> PullRequestStatus:
    checks: list[StatusCheck] = []
    rollup = payload.get("statusCheckRollup")
    if isinstance(rollup, list):
        for entry in rollup:
            entry_obj = _as_object_dict(entry)
            if entry_obj is None:
                continue
            checks.append(
                StatusCheck(
                    context=_as_optional_str(entry_obj.get("context")),
                    name=_as_optional_str(entry_obj.get("name")),
                    state=_as_optional_str(entry_obj.get("state")),
                    status=_as_optional_str(entry_obj.get("status")),
                    conclusion=_as_optional_str(entry_obj.get("conclusion")),
                    started_at=_as_optional_str(entry_obj.get("startedAt")),
                    completed_at=_as_optional_str(entry_obj.get("completedAt")),
                )
            )
    return PullRequestStatus(
        number=_as_optional_int(payload.get("number")),
        head_sha=_as_optional_str(payload.get("headRefOid")),
        state=_as_string(payload.get("state")).upper(),
        status_checks=tuple(checks),
    )


def parse_review_comment(item: dict[str, object]) -> PullRequestReviewComment:
    user_obj = _as_object_dict(item.get("user"))
    return PullRequestReviewComment(
        comment_id=_as_int(item.get("id"), field="id"),
        user_login=_as_string(user_obj.get("login") if user_obj else None),
        body=_as_string(item.get("body")),
        html_url=_as_string(item.get("html_url")),
        path=_as_optional_str(item.get("path")),
        line=_as_optional_int(item.get("line")),
        original_line=_as_optional_int(item.get("original_line")),
        diff_hunk=_as_optional_str(item.get("diff_hunk")),
        commit_id=_as_optional_str(item.get("commit_id")),
        created_at=_as_string(item.get("created_at")),
        updated_at=_as_string(item.get("updated_at")),
    )


def parse_issue_comment(item: dict[str, object]) -> PullRequestIssueComment:
    user_obj = _as_object_dict(item.get("user"))
    return PullRequestIssueComment(
        comment_id=_as_int(item.get("id"), field="id"),
        user_login=_as_string(user_obj.get("login") if user_obj else None),
        body=_as_string(item.get("body")),
        html_url=_as_string(item.get("html_url")),
        created_at=_as_string(item.get("created_at")),
        updated_at=_as_string(item.get("updated_at")),
    )


def parse_review(item: dict[str, object]) -> PullRequestReview:
    user_obj = _as_object_dict(item.get("user"))
    return PullRequestReview(
        review_id=_as_int(item.get("id"), field="id"),
        user_login=_as_string(user_obj.get("login") if user_obj else None),
        body=_as_optional_str(item.get("body")),
        html_url=_as_string(item.get("html_url")),
        commit_id=_as_optional_str(item.get("commit_id")),
        submitted_at=_as_optional_str(item.get("submitted_at")),
    )


def _parse_each(
    items: list[object], parser: Callable[[dict[str, object]], _T], kind: str
) -> tuple[_T, ...]:
    parsed: list[_T] = []
    for item in items:
        item_obj = _as_object_dict(item)
        if item_obj is None:
            log_warning(LOGGER, "feedback_record_skipped", kind=kind, reason="not_an_object")
            continue
        try:
            parsed.append(parser(item_obj))
        except RuntimeError as exc:
            log_warning(
                LOGGER,
                "feedback_record_skipped",
                kind=kind,
                reason=str(exc),
            )
    return tuple(parsed)


def _as_object_dict(value: object) -> dict[str, object] | None:
    if not isinstance(value, dict):
        return None
    if not all(isinstance(key, str) for key in value.keys()):
        return None
    return cast(dict[str, object], value)


def _as_string(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return str(value)


def _as_optional_str(value: object) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        return value or None
    return str(value)


def _as_int(value: object, *, field: str) -> int:
    if isinstance(value, bool):
        raise RuntimeError(f"Unexpected GitHub response type for {field}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError as exc:
            raise RuntimeError(f"Unexpected GitHub response value for {field}: {value}") from exc
    raise RuntimeError(f"Unexpected GitHub response type for {field}")


def _as_optional_int(value: object) -> int | None:
    if value is None:
        return None
    if isinstance(value, bool):
        raise RuntimeError("Unexpected GitHub response type for optional int field")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError as exc:
            raise RuntimeError(
                f"Unexpected GitHub response value for optional int field: {value}"
            ) from exc
    raise RuntimeError("Unexpected GitHub response type for optional int field")

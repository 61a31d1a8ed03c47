from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Literal


CheckState = Literal["pending", "success", "failure", "error", "cancelled", "skipped", "unknown"]
RoundStatus = Literal["pending", "complete"]
ItemSource = Literal["review_comment", "issue_comment", "review"]
ItemCategory = Literal["potential_issue", "refactor_suggestion"]
ItemSeverity = Literal["critical", "major", "minor", "trivial", "info"]
RetentionPolicy = Literal["keep", "delete-on-close"]


@dataclass(frozen=True)
class StatusCheck:
    context: str | None = None
    name: str | None = None
    state: str | None = None
    status: str | None = None
    conclusion: str | None = None
    started_at: str | None = None
    completed_at: str | None = None


@dataclass(frozen=True)
class PullRequestStatus:
    number: int | None
    head_sha: str | None
    state: str
    status_checks: tuple[StatusCheck, ...]


@dataclass(frozen=True)
class CompletionSignal:
    pr_number: int
    head_sha: str
    check_state: CheckState
    check_started_at: str | None
    check_completed_at: str | None


@dataclass(frozen=True)
class PullRequestReviewComment:
    comment_id: int
    user_login: str
    body: str
    html_url: str
    path: str | None
    line: int | None
    original_line: int | None
    diff_hunk: str | None
    commit_id: str | None
    created_at: str
    updated_at: str


@dataclass(frozen=True)
class PullRequestIssueComment:
    comment_id: int
    user_login: str
    body: str
    html_url: str
    created_at: str
    updated_at: str


@dataclass(frozen=True)
class PullRequestReview:
    review_id: int
    user_login: str
    body: str | None
    html_url: str
    commit_id: str | None
    submitted_at: str | None


@dataclass(frozen=True)
class FeedbackPayload:
    review_comments: tuple[PullRequestReviewComment, ...] = ()
    issue_comments: tuple[PullRequestIssueComment, ...] = ()
    reviews: tuple[PullRequestReview, ...] = ()


@dataclass(frozen=True)
class RoundKey:
    repo_id: str
    pr_number: int
    head_sha: str
    check_started_at: str


@dataclass(frozen=True)
class ReviewRound:
    round_id: int
    repo_id: str
    pr_number: int
    head_sha: str
    check_started_at: str
    workspace_id: str | None
    check_state: str
    status: RoundStatus
    attempt_count: int
    actionable_count: int
    next_fetch_at: datetime | None
    completed_at: datetime | None
    created_at: datetime
    updated_at: datetime

    @property
    def key(self) -> RoundKey:
        return RoundKey(
            repo_id=self.repo_id,
            pr_number=self.pr_number,
            head_sha=self.head_sha,
            check_started_at=self.check_started_at,
        )

    @property
    def is_complete(self) -> bool:
        return self.status == "complete"


@dataclass(frozen=True)
class FeedbackDraft:
    comment_id: int
    commit_id: str | None
    source: ItemSource
    category: ItemCategory
    severity: ItemSeverity | None
    file_path: str | None
    line: int | None
    original_line: int | None
    diff_hunk: str | None
    html_url: str
    body: str
    instruction: str | None
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class FeedbackItem:
    round_id: int
    comment_id: int
    source: ItemSource
    category: ItemCategory
    severity: ItemSeverity | None
    file_path: str | None
    line: int | None
    original_line: int | None
    diff_hunk: str | None
    html_url: str
    body: str
    instruction: str | None
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class Workspace:
    workspace_id: str
    repo_id: str
    path: Path

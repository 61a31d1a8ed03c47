from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime, timezone
import logging
from typing import Final

from reviewround.models import (
    FeedbackDraft,
    FeedbackPayload,
    ItemCategory,
    ItemSeverity,
    PullRequestIssueComment,
    PullRequestReview,
    PullRequestReviewComment,
)
from reviewround.observability import log_event


LOGGER = logging.getLogger("reviewround.feedback")

REVIEWER_LOGINS: Final[tuple[str, ...]] = ("coderabbitai[bot]", "coderabbitai")
INSTRUCTION_MARKER: Final[str] = "Prompt for AI Agents"
_FENCE: Final[str] = "```"
_INTERNAL_STATE_START: Final[str] = "<!-- internal state start -->"
_INTERNAL_STATE_END: Final[str] = "<!-- internal state end -->"

# Order matters: first match wins.
_CATEGORY_KEYWORDS: Final[tuple[tuple[str, ItemCategory], ...]] = (
    ("potential issue", "potential_issue"),
    ("refactor suggestion", "refactor_suggestion"),
)
_SEVERITY_KEYWORDS: Final[tuple[ItemSeverity, ...]] = (
    "critical",
    "major",
    "minor",
    "trivial",
    "info",
)


def is_reviewer_login(login: str, logins: Iterable[str] = REVIEWER_LOGINS) -> bool:
    normalized = login.strip().lower()
    if not normalized:
        return False
    return any(candidate.lower() == normalized for candidate in logins)


def classify_body(body: str) -> tuple[ItemCategory, ItemSeverity | None] | None:
    lowered = body.lower()
    category: ItemCategory | None = None
    for keyword, candidate in _CATEGORY_KEYWORDS:
        if keyword in lowered:
            category = candidate
            break
    if category is None:
        return None

    severity: ItemSeverity | None = None
    for keyword in _SEVERITY_KEYWORDS:
        if keyword in lowered:
            severity = keyword
            break
    return category, severity


def extract_instruction_block(body: str) -> str | None:
    marker_at = body.find(INSTRUCTION_MARKER)
    if marker_at < 0:
        return None
    rest = body[marker_at:]
    fence_start = rest.find(_FENCE)
    if fence_start < 0:
        return None
    rest = rest[fence_start + len(_FENCE) :]
    fence_end = rest.find(_FENCE)
    if fence_end < 0:
        return None
    instruction = rest[:fence_end].strip()
    return instruction or None


def strip_internal_state(body: str) -> str:
    """Drop the reviewer's hidden bookkeeping blocks from a comment body.

    An unterminated block leaves the body as-is.
    """
    result: list[str] = []
    remaining = body
    while True:
        start = remaining.find(_INTERNAL_STATE_START)
        if start < 0:
            result.append(remaining)
            break
        after_start = remaining[start + len(_INTERNAL_STATE_START) :]
        end = after_start.find(_INTERNAL_STATE_END)
        if end < 0:
            return body
        result.append(remaining[:start])
        remaining = after_start[end + len(_INTERNAL_STATE_END) :]
    return "".join(result)


def parse_timestamp(raw: str | None) -> datetime | None:
    if not raw:
        return None
    try:
        parsed = datetime.fromisoformat(raw.strip())
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return None
    return parsed.astimezone(timezone.utc)


def extract_feedback(
    payload: FeedbackPayload,
    *,
    observed_at: datetime,
    logins: Iterable[str] = REVIEWER_LOGINS,
) -> list[FeedbackDraft]:
    reviewer_logins = tuple(logins)
    drafts: list[FeedbackDraft] = []
    for review_comment in payload.review_comments:
        draft = _from_review_comment(review_comment, observed_at, reviewer_logins)
        if draft is not None:
            drafts.append(draft)
    for issue_comment in payload.issue_comments:
        draft = _from_issue_comment(issue_comment, observed_at, reviewer_logins)
        if draft is not None:
            drafts.append(draft)
    for review in payload.reviews:
        draft = _from_review(review, observed_at, reviewer_logins)
        if draft is not None:
            drafts.append(draft)

    log_event(
        LOGGER,
        "feedback_extracted",
        review_comment_count=len(payload.review_comments),
        issue_comment_count=len(payload.issue_comments),
        review_count=len(payload.reviews),
        actionable_count=len(drafts),
    )
    return drafts


def _from_review_comment(
    comment: PullRequestReviewComment, observed_at: datetime, logins: tuple[str, ...]
) -> FeedbackDraft | None:
    if not is_reviewer_login(comment.user_login, logins):
        return None
    body = strip_internal_state(comment.body)
    classified = classify_body(body)
    if classified is None:
        return None
    category, severity = classified
    created_at = parse_timestamp(comment.created_at) or observed_at
    return FeedbackDraft(
        comment_id=comment.comment_id,
        commit_id=comment.commit_id or None,
        source="review_comment",
        category=category,
        severity=severity,
        file_path=comment.path,
        line=comment.line,
        original_line=comment.original_line,
        diff_hunk=comment.diff_hunk,
        html_url=comment.html_url,
        body=body,
        instruction=extract_instruction_block(body),
        created_at=created_at,
        updated_at=parse_timestamp(comment.updated_at) or created_at,
    )


def _from_issue_comment(
    comment: PullRequestIssueComment, observed_at: datetime, logins: tuple[str, ...]
) -> FeedbackDraft | None:
    if not is_reviewer_login(comment.user_login, logins):
        return None
    body = strip_internal_state(comment.body)
    classified = classify_body(body)
    if classified is None:
        return None
    category, severity = classified
    created_at = parse_timestamp(comment.created_at) or observed_at
    return FeedbackDraft(
        comment_id=comment.comment_id,
        commit_id=None,
        source="issue_comment",
        category=category,
        severity=severity,
        file_path=None,
        line=None,
        original_line=None,
        diff_hunk=None,
        html_url=comment.html_url,
        body=body,
        instruction=extract_instruction_block(body),
        created_at=created_at,
        updated_at=parse_timestamp(comment.updated_at) or created_at,
    )


def _from_review(
    review: PullRequestReview, observed_at: datetime, logins: tuple[str, ...]
) -> FeedbackDraft | None:
    if not is_reviewer_login(review.user_login, logins):
        return None
    if not review.body:
        return None
    body = strip_internal_state(review.body)
    classified = classify_body(body)
    if classified is None:
        return None
    category, severity = classified
    created_at = parse_timestamp(review.submitted_at) or observed_at
    return FeedbackDraft(
        comment_id=review.review_id,
        commit_id=review.commit_id or None,
        source="review",
        category=category,
        severity=severity,
        file_path=None,
        line=None,
        original_line=None,
        diff_hunk=None,
        html_url=review.html_url,
        body=body,
        instruction=extract_instruction_block(body),
        created_at=created_at,
        updated_at=created_at,
    )

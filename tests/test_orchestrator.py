from __future__ import annotations

from collections.abc import Iterator
from dataclasses import replace
from datetime import datetime, timedelta, timezone
import logging
from pathlib import Path
import sqlite3

import pytest

from reviewround.config import AppConfig, RepoConfig, RepoSettings, RuntimeConfig
from reviewround.github_gateway import GhAvailability, GitHubPollingError
from reviewround.models import (
    CompletionSignal,
    FeedbackPayload,
    PullRequestIssueComment,
    PullRequestReviewComment,
    PullRequestStatus,
    ReviewRound,
    RoundKey,
    StatusCheck,
)
from reviewround.observability import configure_logging
from reviewround.orchestrator import ReviewRoundOrchestrator, WorkspaceNotFoundError
from reviewround.state import StateStore, format_timestamp


T0 = datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)
CHECK_STARTED = "2024-05-01T10:00:00Z"


@pytest.fixture(autouse=True)
def restore_reviewround_logger_state() -> Iterator[None]:
    logger = logging.getLogger("reviewround")
    original_handlers = list(logger.handlers)
    original_level = logger.level
    original_propagate = logger.propagate
    try:
        yield
    finally:
        logger.handlers.clear()
        for handler in original_handlers:
            logger.addHandler(handler)
        logger.setLevel(original_level)
        logger.propagate = original_propagate


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: int) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class FakeGitHub:
    def __init__(self) -> None:
        self.statuses: list[PullRequestStatus | None | Exception] = []
        self.status_calls: list[Path] = []
        self.feedback: dict[int, list[FeedbackPayload | Exception]] = {}
        self.fetch_calls: list[tuple[Path, int]] = []

    def get_pull_request_status(self, working_dir: Path) -> PullRequestStatus | None:
        self.status_calls.append(working_dir)
        result = self.statuses.pop(0)
        if isinstance(result, Exception):
            raise result
        return result

    def fetch_feedback(self, working_dir: Path, pr_number: int) -> FeedbackPayload:
        self.fetch_calls.append((working_dir, pr_number))
        queued = self.feedback.get(pr_number, [])
        if not queued:
            return FeedbackPayload()
        result = queued.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


class FakeAvailability:
    def __init__(self) -> None:
        self.invalidations = 0

    def is_available(self, *, now: float) -> bool:
        return True

    def invalidate(self) -> None:
        self.invalidations += 1


def _config(
    tmp_path: Path,
    *,
    enabled: bool = True,
    backoff_seconds: tuple[int, ...] = (30, 120, 300),
    retention: str = "keep",
    base_path: Path | None = None,
) -> AppConfig:
    return AppConfig(
        runtime=RuntimeConfig(
            base_dir=tmp_path / "state",
            worker_count=2,
            poll_interval_seconds=60,
        ),
        repos=(
            RepoConfig(
                repo_id="app",
                owner="acme",
                name="app",
                base_path=base_path,
                settings=RepoSettings(
                    enabled=enabled,
                    backoff_seconds=backoff_seconds,
                    retention=retention,  # type: ignore[arg-type]
                ),
            ),
        ),
    )


def _harness(
    tmp_path: Path, *, availability: object | None = None, **config_kwargs: object
) -> tuple[ReviewRoundOrchestrator, StateStore, FakeGitHub, FakeClock, Path]:
    config = _config(tmp_path, **config_kwargs)  # type: ignore[arg-type]
    state = StateStore(config.runtime.state_db_path)
    github = FakeGitHub()
    clock = FakeClock(T0 + timedelta(minutes=5))
    workspace_path = tmp_path / "checkout"
    workspace_path.mkdir(parents=True)
    state.register_workspace(workspace_id="ws", repo_id="app", path=workspace_path)
    if availability is None:
        availability = GhAvailability(ttl_seconds=300, probe=lambda: True)
    orchestrator = ReviewRoundOrchestrator(
        config,
        state=state,
        github=github,  # type: ignore[arg-type]
        clock=clock,
        gh_availability=availability,  # type: ignore[arg-type]
    )
    return orchestrator, state, github, clock, workspace_path


def _signal(
    *,
    pr_number: int = 7,
    head_sha: str = "abc123",
    started_at: str | None = CHECK_STARTED,
    completed_at: str | None = "2024-05-01T10:03:00Z",
) -> CompletionSignal:
    return CompletionSignal(
        pr_number=pr_number,
        head_sha=head_sha,
        check_state="success",
        check_started_at=started_at,
        check_completed_at=completed_at,
    )


def _review_comment(
    comment_id: int,
    *,
    commit_id: str = "abc123",
    body: str = "Potential issue: the null check is missing.",
    created_at: str = "2024-05-01T10:04:00Z",
) -> PullRequestReviewComment:
    return PullRequestReviewComment(
        comment_id=comment_id,
        user_login="coderabbitai[bot]",
        body=body,
        html_url=f"https://github.com/acme/app/pull/7#discussion_r{comment_id}",
        path="src/app.py",
        line=10,
        original_line=10,
        diff_hunk="@@",
        commit_id=commit_id,
        created_at=created_at,
        updated_at=created_at,
    )


def _status(
    *,
    state: str = "OPEN",
    check_status: str = "COMPLETED",
    conclusion: str | None = "SUCCESS",
) -> PullRequestStatus:
    return PullRequestStatus(
        number=7,
        head_sha="abc123",
        state=state,
        status_checks=(
            StatusCheck(
                name="CodeRabbit",
                status=check_status,
                conclusion=conclusion,
                started_at=CHECK_STARTED,
                completed_at="2024-05-01T10:03:00Z" if check_status == "COMPLETED" else None,
            ),
        ),
    )


def test_completion_with_matching_feedback_completes_on_first_attempt(tmp_path: Path) -> None:
    orchestrator, state, github, clock, workspace_path = _harness(tmp_path)
    github.feedback[7] = [FeedbackPayload(review_comments=(_review_comment(1),))]

    round_ = orchestrator.handle_completion("app", "ws", _signal())

    assert round_ is not None
    assert round_.status == "complete"
    assert round_.attempt_count == 1
    assert round_.actionable_count == 1
    assert round_.completed_at == clock.now
    assert round_.next_fetch_at is None
    assert round_.check_started_at == "2024-05-01T10:00:00.000000Z"
    assert github.fetch_calls == [(workspace_path, 7)]

    [item] = state.list_items_for_round(round_.round_id)
    assert item.category == "potential_issue"
    assert item.severity is None
    assert item.file_path == "src/app.py"
    assert state.get_round(round_.round_id) == round_


def test_empty_fetches_retry_on_backoff_until_exhausted(tmp_path: Path) -> None:
    orchestrator, state, github, clock, _ = _harness(tmp_path)
    start = clock.now

    round_ = orchestrator.handle_completion("app", "ws", _signal())

    assert round_ is not None
    assert round_.status == "pending"
    assert round_.attempt_count == 1
    assert round_.next_fetch_at == start + timedelta(seconds=30)
    assert orchestrator.process_due_rounds() == []

    clock.advance(30)
    [second] = orchestrator.process_due_rounds()
    assert second.status == "pending"
    assert second.attempt_count == 2
    assert second.next_fetch_at == start + timedelta(seconds=150)

    clock.advance(120)
    [third] = orchestrator.process_due_rounds()
    assert third.status == "complete"
    assert third.attempt_count == 3
    assert third.actionable_count == 0
    assert third.completed_at == start + timedelta(seconds=150)

    clock.advance(3600)
    assert orchestrator.process_due_rounds() == []
    assert len(github.fetch_calls) == 3
    stored = state.get_round(round_.round_id)
    assert stored is not None
    assert stored.is_complete


def test_late_feedback_found_on_retry_completes_round(tmp_path: Path) -> None:
    orchestrator, _, github, clock, _ = _harness(tmp_path)
    github.feedback[7] = [
        FeedbackPayload(),
        FeedbackPayload(review_comments=(_review_comment(1), _review_comment(2))),
    ]

    orchestrator.handle_completion("app", "ws", _signal())
    clock.advance(30)
    [round_] = orchestrator.process_due_rounds()

    assert round_.status == "complete"
    assert round_.attempt_count == 2
    assert round_.actionable_count == 2


def test_foreign_commit_feedback_creates_completed_round(tmp_path: Path) -> None:
    orchestrator, state, github, clock, _ = _harness(tmp_path)
    github.feedback[7] = [
        FeedbackPayload(
            review_comments=(
                _review_comment(5, commit_id="def456", created_at="2024-05-01T09:50:00Z"),
                _review_comment(6, commit_id="def456", created_at="2024-05-01T09:40:00Z"),
            )
        )
    ]

    base = orchestrator.handle_completion("app", "ws", _signal())

    assert base is not None
    assert base.status == "pending"
    assert base.actionable_count == 0
    assert state.count_items_for_round(base.round_id) == 0

    foreign = state.get_latest_round_for_head("app", 7, "def456")
    assert foreign is not None
    assert foreign.round_id != base.round_id
    assert foreign.status == "complete"
    assert foreign.actionable_count == 2
    assert foreign.attempt_count == 0
    assert foreign.check_state == "unknown"
    assert foreign.workspace_id == "ws"
    assert foreign.completed_at == clock.now
    assert foreign.next_fetch_at is None
    assert foreign.check_started_at == "2024-05-01T09:40:00.000000Z"


def test_foreign_feedback_reuses_existing_round_for_commit(tmp_path: Path) -> None:
    orchestrator, state, github, clock, _ = _harness(tmp_path)
    older = state.create_round(
        RoundKey("app", 7, "def456", format_timestamp(T0 - timedelta(hours=1))),
        workspace_id="ws",
        check_state="success",
        now=T0,
    )
    github.feedback[7] = [
        FeedbackPayload(review_comments=(_review_comment(5, commit_id="DEF456"),)),
        FeedbackPayload(review_comments=(_review_comment(5, commit_id="DEF456"),)),
    ]

    orchestrator.handle_completion("app", "ws", _signal())
    clock.advance(30)
    orchestrator.process_due_rounds()

    assert len(state.list_rounds()) == 2
    stored = state.get_round(older.round_id)
    assert stored is not None
    assert stored.status == "complete"
    assert stored.actionable_count == 1
    assert stored.check_state == "success"


def test_repeated_signal_for_completed_round_is_ignored(tmp_path: Path) -> None:
    orchestrator, state, github, _, _ = _harness(tmp_path)
    github.feedback[7] = [FeedbackPayload(review_comments=(_review_comment(1),))]

    first = orchestrator.handle_completion("app", "ws", _signal())
    second = orchestrator.handle_completion("app", "ws", _signal())

    assert first is not None
    assert first.is_complete
    assert second is None
    assert len(state.list_rounds()) == 1
    assert len(github.fetch_calls) == 1


def test_new_check_run_on_same_head_opens_new_round(tmp_path: Path) -> None:
    orchestrator, state, github, _, _ = _harness(tmp_path)
    github.feedback[7] = [
        FeedbackPayload(review_comments=(_review_comment(1),)),
        FeedbackPayload(review_comments=(_review_comment(1), _review_comment(2))),
    ]

    first = orchestrator.handle_completion("app", "ws", _signal())
    second = orchestrator.handle_completion(
        "app", "ws", _signal(started_at="2024-05-01T10:04:30Z")
    )

    assert first is not None
    assert second is not None
    assert first.round_id != second.round_id
    assert second.actionable_count == 2
    assert len(state.list_rounds()) == 2


def test_signal_without_start_time_anchors_on_completion(tmp_path: Path) -> None:
    orchestrator, state, github, _, _ = _harness(tmp_path)
    github.feedback[7] = [FeedbackPayload(review_comments=(_review_comment(1),))]

    first = orchestrator.handle_completion("app", "ws", _signal(started_at=None))
    second = orchestrator.handle_completion("app", "ws", _signal(started_at=None))

    assert first is not None
    assert first.check_started_at == "2024-05-01T10:03:00.000000Z"
    assert second is None
    assert len(state.list_rounds()) == 1


def test_signal_without_any_check_times_anchors_on_now(tmp_path: Path) -> None:
    orchestrator, _, _, clock, _ = _harness(tmp_path)

    round_ = orchestrator.handle_completion(
        "app", "ws", _signal(started_at=None, completed_at=None)
    )

    assert round_ is not None
    assert round_.check_started_at == format_timestamp(clock.now)


def test_disabled_repo_ignores_signals(tmp_path: Path) -> None:
    orchestrator, state, github, _, _ = _harness(tmp_path, enabled=False)

    assert orchestrator.handle_completion("app", "ws", _signal()) is None
    assert state.list_rounds() == ()
    assert github.fetch_calls == []


def test_fetch_failure_counts_as_empty_attempt(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    configure_logging(verbose=True)
    orchestrator, _, github, clock, _ = _harness(tmp_path)
    github.feedback[7] = [GitHubPollingError("HTTP 502")]

    round_ = orchestrator.handle_completion("app", "ws", _signal())

    assert round_ is not None
    assert round_.status == "pending"
    assert round_.attempt_count == 1
    assert round_.next_fetch_at == clock.now + timedelta(seconds=30)
    assert "event=round_fetch_failed" in capsys.readouterr().err


def test_commitless_feedback_outside_window_is_not_counted(tmp_path: Path) -> None:
    orchestrator, state, github, _, _ = _harness(tmp_path)
    early = PullRequestIssueComment(
        comment_id=40,
        user_login="coderabbitai[bot]",
        body="Potential issue | Major",
        html_url="https://github.com/acme/app/pull/7#issuecomment-40",
        created_at="2024-05-01T09:59:59Z",
        updated_at="2024-05-01T09:59:59Z",
    )
    inside = replace(early, comment_id=41, created_at="2024-05-01T10:01:00Z")
    github.feedback[7] = [FeedbackPayload(issue_comments=(early, inside))]

    round_ = orchestrator.handle_completion("app", "ws", _signal())

    assert round_ is not None
    assert round_.actionable_count == 1
    assert [item.comment_id for item in state.list_items_for_round(round_.round_id)] == [41]


def test_resolve_working_dir_prefers_workspace_then_base_path(tmp_path: Path) -> None:
    base_path = tmp_path / "base"
    base_path.mkdir()
    orchestrator, state, _, _, workspace_path = _harness(tmp_path, base_path=base_path)
    round_ = state.create_round(
        RoundKey("app", 7, "abc123", "2024-05-01T10:00:00.000000Z"),
        workspace_id="ws",
        check_state="success",
        now=T0,
    )

    assert orchestrator.resolve_working_dir(round_) == workspace_path
    assert orchestrator.resolve_working_dir(replace(round_, workspace_id=None)) == base_path
    assert orchestrator.resolve_working_dir(replace(round_, workspace_id="gone")) == base_path

    workspace_path.rmdir()
    assert orchestrator.resolve_working_dir(round_) == base_path


def test_resolve_working_dir_raises_without_candidates(tmp_path: Path) -> None:
    orchestrator, state, _, _, _ = _harness(tmp_path, base_path=tmp_path / "missing")
    round_ = state.create_round(
        RoundKey("app", 7, "abc123", "2024-05-01T10:00:00.000000Z"),
        workspace_id=None,
        check_state="success",
        now=T0,
    )

    with pytest.raises(WorkspaceNotFoundError, match="does not exist"):
        orchestrator.resolve_working_dir(round_)
    with pytest.raises(WorkspaceNotFoundError, match="Unknown repo id"):
        orchestrator.resolve_working_dir(replace(round_, repo_id="other"))


def test_completion_without_working_dir_leaves_round_due(tmp_path: Path) -> None:
    orchestrator, state, github, clock, workspace_path = _harness(tmp_path)
    workspace_path.rmdir()

    round_ = orchestrator.handle_completion("app", "ws", _signal())

    assert round_ is not None
    assert round_.status == "pending"
    assert round_.attempt_count == 0
    assert round_.next_fetch_at == clock.now
    assert github.fetch_calls == []
    assert [due.round_id for due in state.list_pending_due(clock.now)] == [round_.round_id]


def test_sweep_skips_unresolvable_rounds_and_isolates_failures(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    configure_logging(verbose=True)
    orchestrator, state, github, clock, _ = _harness(tmp_path)
    broken = state.create_round(
        RoundKey("app", 8, "bbb", CHECK_STARTED), workspace_id="ws", check_state="success", now=T0
    )
    healthy = state.create_round(
        RoundKey("app", 9, "ccc", CHECK_STARTED), workspace_id="ws", check_state="success", now=T0
    )
    orphan = state.create_round(
        RoundKey("gone", 1, "ddd", CHECK_STARTED), workspace_id=None, check_state="success", now=T0
    )
    lost = state.create_round(
        RoundKey("app", 10, "eee", CHECK_STARTED),
        workspace_id="lost",
        check_state="success",
        now=T0,
    )
    for round_ in (broken, healthy, orphan, lost):
        state.update_round(replace(round_, next_fetch_at=T0))
    github.feedback[8] = [RuntimeError("boom")]
    github.feedback[9] = [
        FeedbackPayload(review_comments=(_review_comment(1, commit_id="ccc"),))
    ]

    processed = orchestrator.process_due_rounds()

    assert [round_.round_id for round_ in processed] == [healthy.round_id]
    assert processed[0].is_complete
    stored_broken = state.get_round(broken.round_id)
    stored_orphan = state.get_round(orphan.round_id)
    assert stored_broken is not None and stored_broken.status == "pending"
    assert stored_orphan is not None and stored_orphan.status == "pending"
    assert stored_orphan.attempt_count == 0
    stderr = capsys.readouterr().err
    assert "event=round_sweep_failed" in stderr
    assert "event=round_skipped_missing_repo" in stderr
    assert f"event=round_skipped_missing_workspace round_id={lost.round_id}" in stderr
    assert f"round_skipped_missing_workspace round_id={orphan.round_id}" not in stderr
    assert sorted(pr for _, pr in github.fetch_calls) == [8, 9]


def test_cleanup_respects_retention_policy(tmp_path: Path) -> None:
    orchestrator, state, _, _, _ = _harness(tmp_path)
    state.create_round(
        RoundKey("app", 7, "abc123", CHECK_STARTED), workspace_id="ws", check_state="success", now=T0
    )

    assert orchestrator.cleanup_rounds_if_needed("app", 7) is False
    assert len(state.list_rounds()) == 1

    deleting, deleting_state, _, _, _ = _harness(tmp_path / "other", retention="delete-on-close")
    deleting_state.create_round(
        RoundKey("app", 7, "abc123", CHECK_STARTED), workspace_id="ws", check_state="success", now=T0
    )
    deleting_state.create_round(
        RoundKey("app", 8, "abc123", CHECK_STARTED), workspace_id="ws", check_state="success", now=T0
    )

    assert deleting.cleanup_rounds_if_needed("app", 7) is True
    assert [round_.pr_number for round_ in deleting_state.list_rounds()] == [8]


def test_poll_once_detects_completion_transition(tmp_path: Path) -> None:
    orchestrator, state, github, _, workspace_path = _harness(tmp_path)
    github.statuses = [
        _status(check_status="IN_PROGRESS", conclusion=None),
        _status(),
        _status(),
    ]
    github.feedback[7] = [FeedbackPayload(review_comments=(_review_comment(1),))]

    orchestrator.poll_once()
    assert state.list_rounds() == ()

    orchestrator.poll_once()
    [round_] = state.list_rounds()
    assert round_.is_complete
    assert round_.workspace_id == "ws"

    orchestrator.poll_once()
    assert len(state.list_rounds()) == 1
    assert len(github.fetch_calls) == 1
    assert github.status_calls == [workspace_path] * 3


def test_poll_once_applies_retention_when_pr_first_seen_closed(tmp_path: Path) -> None:
    orchestrator, state, github, _, _ = _harness(tmp_path, retention="delete-on-close")
    state.create_round(
        RoundKey("app", 7, "abc123", CHECK_STARTED), workspace_id="ws", check_state="success", now=T0
    )
    github.statuses = [_status(state="MERGED"), _status(state="MERGED")]

    orchestrator.poll_once()
    assert state.list_rounds() == ()

    state.create_round(
        RoundKey("app", 7, "abc123", "later"), workspace_id="ws", check_state="success", now=T0
    )
    orchestrator.poll_once()
    assert len(state.list_rounds()) == 1


def test_poll_once_skips_disabled_repos_and_missing_prs(tmp_path: Path) -> None:
    disabled, _, disabled_github, _, _ = _harness(tmp_path / "a", enabled=False)
    disabled.poll_once()
    assert disabled_github.status_calls == []

    orchestrator, state, github, _, _ = _harness(tmp_path / "b")
    github.statuses = [None]
    orchestrator.poll_once()
    assert state.list_rounds() == ()


def test_poll_once_logs_status_failures_and_still_sweeps(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    configure_logging(verbose=True)
    availability = FakeAvailability()
    orchestrator, state, github, clock, _ = _harness(tmp_path, availability=availability)
    due = state.create_round(
        RoundKey("app", 7, "abc123", CHECK_STARTED), workspace_id="ws", check_state="success", now=T0
    )
    state.update_round(replace(due, next_fetch_at=T0))
    github.statuses = [GitHubPollingError("gh pr view failed")]

    orchestrator.poll_once()

    assert "event=workspace_poll_failed" in capsys.readouterr().err
    assert availability.invalidations == 1
    stored = state.get_round(due.round_id)
    assert stored is not None
    assert stored.attempt_count == 1
    assert stored.next_fetch_at == clock.now + timedelta(seconds=30)


def test_poll_once_isolates_unexpected_workspace_errors(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    configure_logging(verbose=True)
    availability = FakeAvailability()
    orchestrator, state, github, clock, _ = _harness(tmp_path, availability=availability)
    second_path = tmp_path / "second"
    second_path.mkdir()
    state.register_workspace(workspace_id="ws2", repo_id="app", path=second_path)
    due = state.create_round(
        RoundKey("app", 7, "abc123", CHECK_STARTED), workspace_id="ws", check_state="success", now=T0
    )
    state.update_round(replace(due, next_fetch_at=T0))
    github.statuses = [RuntimeError("Invalid integer field: number"), None]

    orchestrator.poll_once()

    stderr = capsys.readouterr().err
    assert "event=workspace_poll_failed workspace_id=ws repo_id=app" in stderr
    assert "error_type=RuntimeError" in stderr
    assert len(github.status_calls) == 2
    assert github.status_calls[1] == second_path
    assert [pr for _, pr in github.fetch_calls] == [7]
    assert availability.invalidations == 0
    stored = state.get_round(due.round_id)
    assert stored is not None
    assert stored.attempt_count == 1


def test_store_failure_during_completion_replays_signal_next_poll(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    orchestrator, state, github, _, _ = _harness(tmp_path)
    github.statuses = [
        _status(check_status="IN_PROGRESS", conclusion=None),
        _status(),
        _status(),
    ]
    github.feedback[7] = [FeedbackPayload(review_comments=(_review_comment(1),))]
    create_round = state.create_round
    failures = {"remaining": 1}

    def flaky_create_round(*args: object, **kwargs: object) -> object:
        if failures["remaining"]:
            failures["remaining"] -= 1
            raise sqlite3.OperationalError("database is locked")
        return create_round(*args, **kwargs)  # type: ignore[arg-type]

    monkeypatch.setattr(state, "create_round", flaky_create_round)

    orchestrator.poll_once()
    orchestrator.poll_once()
    assert state.list_rounds() == ()

    orchestrator.poll_once()

    [round_] = state.list_rounds()
    assert round_.is_complete
    assert round_.actionable_count == 1
    assert len(github.fetch_calls) == 1


def test_stale_pending_attempt_cannot_reopen_completed_round(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    orchestrator, state, github, clock, workspace_path = _harness(tmp_path)
    current = state.create_round(
        RoundKey("app", 7, "abc123", CHECK_STARTED), workspace_id="ws", check_state="success", now=T0
    )
    other_head = state.create_round(
        RoundKey("app", 7, "def456", CHECK_STARTED), workspace_id="ws", check_state="success", now=T0
    )
    github.feedback[7] = [
        FeedbackPayload(),
        FeedbackPayload(review_comments=(_review_comment(3, commit_id="def456"),)),
    ]
    settings = _config(tmp_path).settings_for_repo("app")
    update_round = state.update_round
    interleaved = {"done": False}

    def update_after_concurrent_capture(round_: ReviewRound) -> bool:
        # The current-head attempt finishes between the other round's recount and its write.
        if round_.round_id == other_head.round_id and not interleaved["done"]:
            interleaved["done"] = True
            orchestrator.fetch_and_update_round(current, settings, workspace_path)
        return update_round(round_)

    monkeypatch.setattr(state, "update_round", update_after_concurrent_capture)

    result = orchestrator.fetch_and_update_round(other_head, settings, workspace_path)

    stored = state.get_round(other_head.round_id)
    assert stored is not None
    assert stored.is_complete
    assert stored.actionable_count == 1
    assert stored.attempt_count == 0
    assert result == stored
    assert [due.round_id for due in state.list_pending_due(clock.now + timedelta(days=1))] == [
        current.round_id
    ]


def test_poll_once_skips_everything_when_gh_unavailable(tmp_path: Path) -> None:
    config = _config(tmp_path)
    state = StateStore(config.runtime.state_db_path)
    github = FakeGitHub()
    state.register_workspace(workspace_id="ws", repo_id="app", path=tmp_path)
    orchestrator = ReviewRoundOrchestrator(
        config,
        state=state,
        github=github,  # type: ignore[arg-type]
        clock=FakeClock(T0),
        gh_availability=GhAvailability(ttl_seconds=300, probe=lambda: False),
    )

    orchestrator.poll_once()

    assert github.status_calls == []
    assert github.fetch_calls == []


def test_run_once_polls_a_single_cycle(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    orchestrator, _, _, _, _ = _harness(tmp_path)
    calls = {"count": 0}

    def fake_poll_once() -> None:
        calls["count"] += 1

    monkeypatch.setattr(orchestrator, "poll_once", fake_poll_once)

    orchestrator.run(once=True)

    assert calls["count"] == 1


def test_run_survives_store_errors_and_sleeps_between_cycles(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    orchestrator, _, _, _, _ = _harness(tmp_path)
    calls = {"count": 0}
    sleeps: list[float] = []

    def flaky_poll_once() -> None:
        calls["count"] += 1
        if calls["count"] == 1:
            raise sqlite3.OperationalError("database is locked")
        raise KeyboardInterrupt

    monkeypatch.setattr(orchestrator, "poll_once", flaky_poll_once)
    monkeypatch.setattr("reviewround.orchestrator.time.sleep", lambda seconds: sleeps.append(seconds))

    with pytest.raises(KeyboardInterrupt):
        orchestrator.run(once=False)

    assert calls["count"] == 2
    assert sleeps == [60]

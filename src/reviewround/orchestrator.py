from __future__ import annotations

from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from datetime import datetime, timezone
import logging
from pathlib import Path
import threading
import time
from typing import Final

from reviewround.checks import detect_completion
from reviewround.config import AppConfig, ConfigError, RepoSettings
from reviewround.correlation import correlate, foreign_round_anchor
from reviewround.feedback import extract_feedback, parse_timestamp
from reviewround.github_gateway import GhAvailability, GitHubGateway, GitHubPollingError
from reviewround.models import (
    CompletionSignal,
    FeedbackDraft,
    FeedbackPayload,
    PullRequestStatus,
    ReviewRound,
    RoundKey,
    Workspace,
)
from reviewround.observability import log_event, log_warning, logging_round_context
from reviewround.scheduler import complete_foreign_round, schedule_after_attempt
from reviewround.state import StateStore, format_timestamp


LOGGER = logging.getLogger("reviewround.orchestrator")
_CLOSED_PR_STATES: Final[frozenset[str]] = frozenset({"CLOSED", "MERGED"})


class WorkspaceNotFoundError(LookupError):
    """No usable working directory for a round; skip it this cycle."""


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ReviewRoundOrchestrator:
    def __init__(
        self,
        config: AppConfig,
        *,
        state: StateStore,
        github: GitHubGateway,
        clock: Callable[[], datetime] = _utc_now,
        gh_availability: GhAvailability | None = None,
    ) -> None:
        self._config = config
        self._state = state
        self._github = github
        self._clock = clock
        self._gh_availability = gh_availability or GhAvailability(
            ttl_seconds=config.runtime.gh_check_ttl_seconds
        )
        self._snapshots: dict[str, PullRequestStatus] = {}
        self._snapshots_lock = threading.Lock()

    def run(self, *, once: bool) -> None:
        while True:
            log_event(LOGGER, "poll_started", once=once)
            try:
                self.poll_once()
            except Exception as exc:  # noqa: BLE001
                log_warning(
                    LOGGER,
                    "poll_failed",
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
            log_event(LOGGER, "poll_completed", once=once)

            if once:
                break

            time.sleep(self._config.runtime.poll_interval_seconds)

    def poll_once(self) -> None:
        if not self._gh_availability.is_available(now=time.monotonic()):
            log_warning(LOGGER, "poll_skipped", reason="gh_unavailable")
            return

        for workspace in self._state.list_workspaces():
            try:
                self.observe_workspace(workspace)
            except Exception as exc:  # noqa: BLE001
                if isinstance(exc, GitHubPollingError):
                    self._gh_availability.invalidate()
                log_warning(
                    LOGGER,
                    "workspace_poll_failed",
                    workspace_id=workspace.workspace_id,
                    repo_id=workspace.repo_id,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
        self.process_due_rounds()

    def observe_workspace(self, workspace: Workspace) -> None:
        settings = self._config.settings_for_repo(workspace.repo_id)
        if not settings.enabled:
            return

        current = self._github.get_pull_request_status(workspace.path)
        with self._snapshots_lock:
            previous = self._snapshots.get(workspace.workspace_id)
        if current is None:
            self._remember_snapshot(workspace.workspace_id, None)
            return

        if current.state in _CLOSED_PR_STATES:
            first_seen_closed = previous is None or previous.state not in _CLOSED_PR_STATES
            if first_seen_closed and current.number is not None:
                self.cleanup_rounds_if_needed(workspace.repo_id, current.number)
            self._remember_snapshot(workspace.workspace_id, current)
            return

        signal = detect_completion(
            previous, current, context=self._config.reviewer.check_context
        )
        if signal is not None:
            log_event(
                LOGGER,
                "completion_detected",
                repo_id=workspace.repo_id,
                workspace_id=workspace.workspace_id,
                pr_number=signal.pr_number,
                head_sha=signal.head_sha,
                check_state=signal.check_state,
                check_started_at=signal.check_started_at,
            )
            with logging_round_context(workspace.repo_id, signal.pr_number):
                self.handle_completion(workspace.repo_id, workspace.workspace_id, signal)
        # Only a handled snapshot becomes the baseline; a failure replays the transition.
        self._remember_snapshot(workspace.workspace_id, current)

    def _remember_snapshot(self, workspace_id: str, snapshot: PullRequestStatus | None) -> None:
        with self._snapshots_lock:
            if snapshot is None:
                self._snapshots.pop(workspace_id, None)
            else:
                self._snapshots[workspace_id] = snapshot

    def handle_completion(
        self, repo_id: str, workspace_id: str | None, signal: CompletionSignal
    ) -> ReviewRound | None:
        settings = self._config.settings_for_repo(repo_id)
        if not settings.enabled:
            return None

        now = self._clock()
        parsed_started_at = parse_timestamp(signal.check_started_at)
        anchor = parsed_started_at or parse_timestamp(signal.check_completed_at) or now
        key = RoundKey(
            repo_id=repo_id,
            pr_number=signal.pr_number,
            head_sha=signal.head_sha,
            check_started_at=format_timestamp(anchor),
        )

        if parsed_started_at is not None:
            existing = self._state.get_round_by_key(key)
        else:
            # Without a start time the key is not stable across observations.
            existing = self._state.get_latest_round_for_head(
                repo_id, signal.pr_number, signal.head_sha
            )
        if existing is None:
            round_ = self._state.create_round(
                key, workspace_id=workspace_id, check_state=signal.check_state, now=now
            )
            log_event(
                LOGGER,
                "round_created",
                round_id=round_.round_id,
                repo_id=repo_id,
                pr_number=signal.pr_number,
                head_sha=signal.head_sha,
                origin="completion",
            )
        else:
            round_ = existing

        if not round_.is_complete:
            round_ = replace(
                round_,
                check_state=signal.check_state,
                workspace_id=round_.workspace_id or workspace_id,
                next_fetch_at=now,
                updated_at=now,
            )
        if round_.is_complete or not self._state.update_round(round_):
            log_event(
                LOGGER,
                "completion_ignored",
                round_id=round_.round_id,
                reason="round_complete",
            )
            return None

        try:
            working_dir = self.resolve_working_dir(round_)
        except WorkspaceNotFoundError as exc:
            log_warning(
                LOGGER,
                "round_skipped_missing_workspace",
                round_id=round_.round_id,
                error=str(exc),
            )
            return round_
        return self.fetch_and_update_round(round_, settings, working_dir)

    def process_due_rounds(self) -> list[ReviewRound]:
        now = self._clock()
        due_rounds = self._state.list_pending_due(now)
        log_event(LOGGER, "sweep_started", due_round_count=len(due_rounds))
        if not due_rounds:
            return []

        with ThreadPoolExecutor(max_workers=self._config.runtime.worker_count) as pool:
            results = list(pool.map(self._process_due_round, due_rounds))
        processed = [round_ for round_ in results if round_ is not None]
        log_event(
            LOGGER,
            "sweep_completed",
            due_round_count=len(due_rounds),
            processed_count=len(processed),
        )
        return processed

    def _process_due_round(self, round_: ReviewRound) -> ReviewRound | None:
        with logging_round_context(round_.repo_id, round_.pr_number):
            return self._process_due_round_in_context(round_)

    def _process_due_round_in_context(self, round_: ReviewRound) -> ReviewRound | None:
        try:
            settings = self._config.settings_for_repo(round_.repo_id)
        except ConfigError as exc:
            log_warning(
                LOGGER,
                "round_skipped_missing_repo",
                round_id=round_.round_id,
                repo_id=round_.repo_id,
                error=str(exc),
            )
            return None
        if not settings.enabled:
            return None
        try:
            working_dir = self.resolve_working_dir(round_)
        except WorkspaceNotFoundError as exc:
            log_warning(
                LOGGER,
                "round_skipped_missing_workspace",
                round_id=round_.round_id,
                repo_id=round_.repo_id,
                error=str(exc),
            )
            return None

        try:
            return self.fetch_and_update_round(round_, settings, working_dir)
        except Exception as exc:  # noqa: BLE001
            log_warning(
                LOGGER,
                "round_sweep_failed",
                round_id=round_.round_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return None

    def cleanup_rounds_if_needed(self, repo_id: str, pr_number: int) -> bool:
        settings = self._config.settings_for_repo(repo_id)
        if settings.retention != "delete-on-close":
            return False
        deleted = self._state.delete_rounds_for_pr(repo_id, pr_number)
        log_event(
            LOGGER,
            "rounds_deleted_on_close",
            repo_id=repo_id,
            pr_number=pr_number,
            deleted_count=deleted,
        )
        return True

    def resolve_working_dir(self, round_: ReviewRound) -> Path:
        if round_.workspace_id is not None:
            workspace = self._state.get_workspace(round_.workspace_id)
            if workspace is not None and workspace.path.is_dir():
                return workspace.path
        try:
            repo = self._config.repo_by_id(round_.repo_id)
        except ConfigError as exc:
            raise WorkspaceNotFoundError(str(exc)) from exc
        if repo.base_path is None:
            raise WorkspaceNotFoundError(
                f"No workspace or base_path available for repo {round_.repo_id!r}"
            )
        if not repo.base_path.is_dir():
            raise WorkspaceNotFoundError(f"Repository base_path does not exist: {repo.base_path}")
        return repo.base_path

    def fetch_and_update_round(
        self, round_: ReviewRound, settings: RepoSettings, working_dir: Path
    ) -> ReviewRound:
        now = self._clock()
        try:
            payload = self._github.fetch_feedback(working_dir, round_.pr_number)
        except GitHubPollingError as exc:
            log_warning(
                LOGGER,
                "round_fetch_failed",
                round_id=round_.round_id,
                pr_number=round_.pr_number,
                error=str(exc),
            )
            payload = FeedbackPayload()

        drafts = extract_feedback(payload, observed_at=now, logins=self._config.reviewer.logins)
        correlation = correlate(round_, drafts, observed_at=now)
        if correlation.current:
            self._state.insert_items(round_.round_id, correlation.current)
        actionable_count = self._state.count_items_for_round(round_.round_id)

        updated = schedule_after_attempt(
            round_,
            actionable_count=actionable_count,
            backoff_seconds=settings.backoff_seconds,
            now=now,
        )
        if not self._state.update_round(updated):
            log_event(
                LOGGER,
                "round_update_skipped",
                round_id=updated.round_id,
                reason="round_complete",
            )
            updated = self._state.get_round_by_key(updated.key) or updated
        elif updated.is_complete:
            log_event(
                LOGGER,
                "round_completed",
                round_id=updated.round_id,
                pr_number=updated.pr_number,
                attempt_count=updated.attempt_count,
                actionable_count=updated.actionable_count,
                dropped_count=len(correlation.dropped),
            )
        else:
            log_event(
                LOGGER,
                "round_retry_scheduled",
                round_id=updated.round_id,
                pr_number=updated.pr_number,
                attempt_count=updated.attempt_count,
                next_fetch_at=updated.next_fetch_at,
            )

        for commit_id, group in correlation.foreign_by_commit.items():
            self._capture_foreign_round(updated, commit_id, group, now)
        return updated

    def _capture_foreign_round(
        self,
        base_round: ReviewRound,
        commit_id: str,
        drafts: tuple[FeedbackDraft, ...],
        now: datetime,
    ) -> ReviewRound:
        round_ = self._state.get_latest_round_for_head(
            base_round.repo_id, base_round.pr_number, commit_id
        )
        if round_ is None:
            anchor = foreign_round_anchor(drafts, default=now)
            key = RoundKey(
                repo_id=base_round.repo_id,
                pr_number=base_round.pr_number,
                head_sha=commit_id,
                check_started_at=format_timestamp(anchor),
            )
            round_ = self._state.create_round(
                key, workspace_id=base_round.workspace_id, check_state="unknown", now=now
            )
            log_event(
                LOGGER,
                "round_created",
                round_id=round_.round_id,
                repo_id=round_.repo_id,
                pr_number=round_.pr_number,
                head_sha=commit_id,
                origin="foreign_commit",
            )

        self._state.insert_items(round_.round_id, drafts)
        actionable_count = self._state.count_items_for_round(round_.round_id)
        was_complete = round_.is_complete
        updated = complete_foreign_round(round_, actionable_count=actionable_count, now=now)
        self._state.update_round(updated)
        if updated.is_complete and not was_complete:
            log_event(
                LOGGER,
                "foreign_round_completed",
                round_id=updated.round_id,
                base_round_id=base_round.round_id,
                head_sha=commit_id,
                actionable_count=actionable_count,
            )
        return updated

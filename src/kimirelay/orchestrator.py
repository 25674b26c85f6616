from __future__ import annotations

import logging

from kimirelay.agent_adapter import AgentAdapter
from kimirelay.config import AppConfig
from kimirelay.error_classifier import ErrorClassification, classify_error
from kimirelay.github_gateway import GitHubGateway
from kimirelay.models import (
    FixPrFailures,
    ImplementIssue,
    RespondToReview,
    Task,
    TaskResult,
    session_prefix,
)
from kimirelay.notifier import Notifier
from kimirelay.observability import log_event, log_warning
from kimirelay.prompts import (
    build_fix_prompt,
    build_implementation_prompt,
    build_review_prompt,
)
from kimirelay.retry_policy import RetryPolicy
from kimirelay.workspace import WorkspaceManager


LOGGER = logging.getLogger("kimirelay.orchestrator")

LABEL_WORKING = "kimi-working"
LABEL_IN_PROGRESS = "in-progress"
LABEL_IMPLEMENTED = "kimi-implemented"
LABEL_FAILED = "kimi-failed"
LABEL_NEEDS_HUMAN_REVIEW = "needs-human-review"
_IN_PROGRESS_LABELS = (LABEL_WORKING, LABEL_IN_PROGRESS)


class NoChangesError(RuntimeError):
    """The agent finished without modifying any tracked file."""


class UnknownTaskKindError(RuntimeError):
    pass


class TaskOrchestrator:
    def __init__(
        self,
        config: AppConfig,
        *,
        workspace: WorkspaceManager,
        agent: AgentAdapter,
        github: GitHubGateway,
        notifier: Notifier,
    ) -> None:
        self._config = config
        self._workspace = workspace
        self._agent = agent
        self._github = github
        self._notifier = notifier
        self._retry = RetryPolicy(config.retry)

    def run(self, task: Task) -> TaskResult:
        try:
            return self._run_steps(task)
        except Exception as exc:  # noqa: BLE001
            self.handle_failure(task, exc)
            # Re-raise so the scheduler makes the retry/terminal decision.
            raise

    def _run_steps(self, task: Task) -> TaskResult:
        repository = task.repository
        log_event(
            LOGGER,
            "task_processing_started",
            repository=repository,
            kind=task.kind,
            attempt=task.retries + 1,
        )
        self._workspace.clone_if_needed(repository)
        self._workspace.sync(repository)
        self._workspace.install_dependencies(repository)

        payload = task.payload
        if isinstance(payload, ImplementIssue):
            return self._implement_issue(task, payload)
        if isinstance(payload, FixPrFailures):
            return self._fix_pr_failures(task, payload)
        if isinstance(payload, RespondToReview):
            return self._respond_to_review(task, payload)
        raise UnknownTaskKindError(f"Unknown action: {getattr(payload, 'kind', payload)!r}")

    def _implement_issue(self, task: Task, payload: ImplementIssue) -> TaskResult:
        repository = task.repository
        issue = payload.issue
        branch = self._workspace.create_issue_branch(
            repository,
            issue.number,
            base_branch=self._config.github.default_base_branch,
            prefix=self._config.github.branch_prefix,
        )
        prompt = build_implementation_prompt(issue=issue, repository=repository, branch=branch)
        self._agent.invoke(
            prompt=prompt,
            session_id=f"{session_prefix(repository)}-issue-{issue.number}",
            cwd=self._workspace.repo_path(repository),
        )

        commit_message = f"feat: implement issue #{issue.number}\n\n{issue.title}"
        if not self._workspace.commit_and_push(repository, commit_message, branch):
            raise NoChangesError("No changes were made by the agent")

        pr = self._github.create_pull_request(
            repository,
            head=branch,
            title=f"[Kimi] {issue.title}",
            body=(
                f"Closes #{issue.number}\n\n"
                "This PR was automatically generated by the Kimi GitHub relay.\n\n"
                "## Changes\n\n"
                f"Implemented solution for issue #{issue.number}."
            ),
            base=self._config.github.default_base_branch,
        )
        self._github.add_labels(repository, issue.number, [LABEL_IMPLEMENTED])
        self._remove_labels_quietly(task, (LABEL_WORKING,))
        log_event(
            LOGGER,
            "issue_implemented",
            repository=repository,
            issue_number=issue.number,
            pr_number=pr.number,
            branch=branch,
        )
        return TaskResult(
            success=True,
            branch=branch,
            pr_number=pr.number,
            pr_url=pr.html_url,
            attempt=task.retries + 1,
        )

    def _fix_pr_failures(self, task: Task, payload: FixPrFailures) -> TaskResult:
        repository = task.repository
        pr = payload.pull_request
        branch = self._workspace.checkout_branch(repository, pr.head_ref)
        attempt = task.retries + 1
        prompt = build_fix_prompt(
            payload=payload,
            repository=repository,
            attempt=attempt,
            max_attempts=self._config.retry.max_attempts,
        )
        self._agent.invoke(
            prompt=prompt,
            session_id=f"{session_prefix(repository)}-pr-{pr.number}",
            cwd=self._workspace.repo_path(repository),
        )

        commit_message = f"fix: address CI failures in PR #{pr.number} (attempt {attempt})"
        has_changes = self._workspace.commit_and_push(repository, commit_message, branch)
        if not has_changes:
            log_event(
                LOGGER,
                "pr_fix_without_changes",
                repository=repository,
                pr_number=pr.number,
                attempt=attempt,
            )
            self._notifier.human_required(
                task, "The agent could not produce fixes for the CI failures"
            )
            self._github.post_comment(
                repository,
                pr.number,
                "⚠️ Automated fix attempt did not produce changes. Human review may be needed.",
            )
        return TaskResult(success=has_changes, branch=branch, pr_number=pr.number, attempt=attempt)

    def _respond_to_review(self, task: Task, payload: RespondToReview) -> TaskResult:
        repository = task.repository
        pr = payload.pull_request
        branch = self._workspace.checkout_branch(repository, pr.head_ref)
        prompt = build_review_prompt(payload=payload, repository=repository)
        self._agent.invoke(
            prompt=prompt,
            session_id=f"{session_prefix(repository)}-pr-{pr.number}-review",
            cwd=self._workspace.repo_path(repository),
        )
        self._workspace.commit_and_push(
            repository, f"fix: address review comments in PR #{pr.number}", branch
        )
        return TaskResult(
            success=True,
            branch=branch,
            pr_number=pr.number,
            attempt=task.retries + 1,
        )

    def handle_failure(self, task: Task, error: BaseException) -> ErrorClassification:
        """Comment, relabel and notify for a failed attempt. Never raises."""
        classification = classify_error(error)
        will_retry = self._retry.will_retry(task.retries, str(error))
        log_warning(
            LOGGER,
            "task_attempt_failed",
            repository=task.repository,
            kind=task.kind,
            attempt=task.retries + 1,
            error_type=classification.error_type,
            will_retry=will_retry,
            error=str(error),
        )

        number = task.target_number
        try:
            self._github.post_comment(
                task.repository,
                number,
                self._render_failure_comment(task, error, classification, will_retry),
            )
        except Exception as exc:  # noqa: BLE001
            log_warning(
                LOGGER,
                "failure_comment_failed",
                repository=task.repository,
                number=number,
                error=str(exc),
            )

        try:
            self._github.add_labels(
                task.repository, number, self._failure_labels(task, classification, will_retry)
            )
        except Exception as exc:  # noqa: BLE001
            log_warning(
                LOGGER,
                "failure_labels_failed",
                repository=task.repository,
                number=number,
                error=str(exc),
            )
        self._remove_labels_quietly(task, _IN_PROGRESS_LABELS)

        if self._config.retry.notify_on_failure:
            self._notifier.task_failed(task, error, classification.error_type, will_retry)
        return classification

    def _failure_labels(
        self,
        task: Task,
        classification: ErrorClassification,
        will_retry: bool,
    ) -> list[str]:
        labels = [f"error-{classification.error_type}"]
        if will_retry:
            labels.append(f"retry-{task.retries + 1}")
            return labels
        labels.append(LABEL_FAILED)
        if self._retry.budget_exhausted(task.retries):
            labels.append(LABEL_NEEDS_HUMAN_REVIEW)
        return labels

    def _render_failure_comment(
        self,
        task: Task,
        error: BaseException,
        classification: ErrorClassification,
        will_retry: bool,
    ) -> str:
        details = classification.details
        attempt_suffix = f" (Attempt {task.retries + 1})" if task.retries else ""
        lines = [
            f"## {details.title}{attempt_suffix}",
            "",
            f"**Description:** {details.description}",
            "",
            "**Error Message:**",
            "```",
            str(error),
            "```",
            "",
            "**Suggestions:**",
            *(f"- {suggestion}" for suggestion in details.suggestions),
        ]
        max_attempts = self._retry.max_attempts
        if will_retry:
            next_retry = task.retries + 1
            delay = self._retry.delay_minutes(next_retry)
            lines.extend(
                [
                    "",
                    "**Auto-retry:** This task will be retried automatically in "
                    f"approximately {delay:g} minutes.",
                    f"Retry {next_retry} of {max_attempts}",
                ]
            )
        elif self._retry.budget_exhausted(task.retries):
            lines.extend(
                ["", "**⚠️ Maximum retries reached.** Human intervention is required."]
            )
        else:
            lines.extend(["", "This error is not eligible for automatic retry."])
        return "\n".join(lines) + "\n"

    def _remove_labels_quietly(self, task: Task, labels: tuple[str, ...]) -> None:
        for label in labels:
            try:
                self._github.remove_label(task.repository, task.target_number, label)
            except Exception as exc:  # noqa: BLE001
                log_warning(
                    LOGGER,
                    "label_remove_failed",
                    repository=task.repository,
                    number=task.target_number,
                    label=label,
                    error=str(exc),
                )

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import re
import secrets
import string
import time
from typing import Literal, cast


TaskKind = Literal["implement_issue", "fix_pr_failures", "respond_to_review"]
TASK_KINDS: tuple[TaskKind, ...] = ("implement_issue", "fix_pr_failures", "respond_to_review")

_REPOSITORY_RE = re.compile(r"^[A-Za-z0-9_.-]+/[A-Za-z0-9_.-]+$")
_ID_ALPHABET = string.ascii_lowercase + string.digits


class TaskValidationError(ValueError):
    pass


@dataclass(frozen=True)
class Issue:
    number: int
    title: str
    body: str = ""
    html_url: str = ""


@dataclass(frozen=True)
class PullRequest:
    number: int
    head_ref: str
    title: str = ""
    html_url: str = ""


@dataclass(frozen=True)
class WorkflowRun:
    name: str | None = None
    conclusion: str | None = None
    logs: str | None = None


@dataclass(frozen=True)
class ReviewComment:
    path: str
    line: int | None
    body: str


@dataclass(frozen=True)
class Review:
    reviewer: str | None = None
    comments: tuple[ReviewComment, ...] = ()


@dataclass(frozen=True)
class ImplementIssue:
    issue: Issue
    kind: TaskKind = field(default="implement_issue", init=False)


@dataclass(frozen=True)
class FixPrFailures:
    pull_request: PullRequest
    workflow_run: WorkflowRun | None = None
    kind: TaskKind = field(default="fix_pr_failures", init=False)


@dataclass(frozen=True)
class RespondToReview:
    pull_request: PullRequest
    review: Review = Review()
    kind: TaskKind = field(default="respond_to_review", init=False)


TaskPayload = ImplementIssue | FixPrFailures | RespondToReview


@dataclass
class Task:
    repository: str
    payload: TaskPayload
    task_id: str = field(default_factory=lambda: new_task_id())
    retries: int = 0
    enqueued_at: str = field(default_factory=lambda: utc_now_iso())

    def __post_init__(self) -> None:
        if not _REPOSITORY_RE.match(self.repository):
            raise TaskValidationError(
                f"Invalid repository format {self.repository!r}. Expected: owner/repo"
            )

    @property
    def kind(self) -> TaskKind:
        return self.payload.kind

    @property
    def issue(self) -> Issue | None:
        if isinstance(self.payload, ImplementIssue):
            return self.payload.issue
        return None

    @property
    def pull_request(self) -> PullRequest | None:
        if isinstance(self.payload, FixPrFailures | RespondToReview):
            return self.payload.pull_request
        return None

    @property
    def target_number(self) -> int:
        """Issue or pull request number that comments and labels go to."""
        if isinstance(self.payload, ImplementIssue):
            return self.payload.issue.number
        return self.payload.pull_request.number


@dataclass(frozen=True)
class TaskResult:
    success: bool
    branch: str
    pr_number: int | None = None
    pr_url: str | None = None
    attempt: int | None = None


def new_task_id() -> str:
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(9))
    return f"{int(time.time() * 1000)}-{suffix}"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def session_prefix(repository: str) -> str:
    return repository.replace("/", "-")


def parse_task(payload: object) -> Task:
    """Validate a webhook-derived task object and build the matching payload variant.

    Accepts `kind` (or the legacy `action` key), `repository`, and the camelCase
    payload fields produced by the ingress layer: `issue`, `pullRequest`,
    `workflowRun` and `review`.
    """
    data = _as_object_dict(payload)
    if data is None:
        raise TaskValidationError("Task payload must be a JSON object")

    kind = data.get("kind", data.get("action"))
    repository = data.get("repository")
    if not isinstance(kind, str) or not kind:
        raise TaskValidationError("Missing required field: kind")
    if not isinstance(repository, str) or not repository:
        raise TaskValidationError("Missing required field: repository")
    if kind not in TASK_KINDS:
        raise TaskValidationError(f"Unknown task kind: {kind}")

    task_payload: TaskPayload
    if kind == "implement_issue":
        task_payload = ImplementIssue(issue=_parse_issue(data.get("issue")))
    elif kind == "fix_pr_failures":
        task_payload = FixPrFailures(
            pull_request=_parse_pull_request(data.get("pullRequest"), kind=kind),
            workflow_run=_parse_workflow_run(data.get("workflowRun")),
        )
    else:
        task_payload = RespondToReview(
            pull_request=_parse_pull_request(data.get("pullRequest"), kind=kind),
            review=_parse_review(data.get("review")),
        )

    task = Task(repository=repository, payload=task_payload)
    task_id = data.get("id")
    if isinstance(task_id, str) and task_id:
        task.task_id = task_id
    return task


def _parse_issue(value: object) -> Issue:
    data = _as_object_dict(value)
    if data is None:
        raise TaskValidationError("Missing required field for implement_issue: issue")
    return Issue(
        number=_require_int(data, "number", where="issue"),
        title=_as_string(data.get("title")),
        body=_as_string(data.get("body")),
        html_url=_as_string(data.get("html_url")),
    )


def _parse_pull_request(value: object, *, kind: str) -> PullRequest:
    data = _as_object_dict(value)
    if data is None:
        raise TaskValidationError(f"Missing required field for {kind}: pullRequest")
    head = _as_object_dict(data.get("head"))
    head_ref = head.get("ref") if head is not None else None
    if not isinstance(head_ref, str) or not head_ref:
        raise TaskValidationError(f"Missing required field for {kind}: pullRequest.head.ref")
    return PullRequest(
        number=_require_int(data, "number", where="pullRequest"),
        head_ref=head_ref,
        title=_as_string(data.get("title")),
        html_url=_as_string(data.get("html_url")),
    )


def _parse_workflow_run(value: object) -> WorkflowRun | None:
    data = _as_object_dict(value)
    if data is None:
        return None
    return WorkflowRun(
        name=_optional_str(data.get("name")),
        conclusion=_optional_str(data.get("conclusion")),
        logs=_optional_str(data.get("logs")),
    )


def _parse_review(value: object) -> Review:
    data = _as_object_dict(value)
    if data is None:
        return Review()
    user = _as_object_dict(data.get("user"))
    comments: list[ReviewComment] = []
    raw_comments = data.get("comments")
    if isinstance(raw_comments, list):
        for item in raw_comments:
            comment = _as_object_dict(item)
            if comment is None:
                continue
            line = comment.get("line")
            comments.append(
                ReviewComment(
                    path=_as_string(comment.get("path")),
                    line=line if isinstance(line, int) and not isinstance(line, bool) else None,
                    body=_as_string(comment.get("body")),
                )
            )
    return Review(
        reviewer=_optional_str(user.get("login")) if user is not None else None,
        comments=tuple(comments),
    )


def _require_int(data: dict[str, object], key: str, *, where: str) -> int:
    value = data.get(key)
    if not isinstance(value, int) or isinstance(value, bool) or value < 1:
        raise TaskValidationError(f"{where}.{key} must be a positive integer")
    return value


def _as_string(value: object) -> str:
    return value if isinstance(value, str) else ""


def _optional_str(value: object) -> str | None:
    if isinstance(value, str) and value:
        return value
    return None


def _as_object_dict(value: object) -> dict[str, object] | None:
    if not isinstance(value, dict):
        return None
    if not all(isinstance(key, str) for key in value.keys()):
        return None
    return cast(dict[str, object], value)

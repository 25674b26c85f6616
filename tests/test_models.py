from __future__ import annotations

import re

import pytest

from kimirelay import __version__
from kimirelay.models import (
    FixPrFailures,
    ImplementIssue,
    Issue,
    PullRequest,
    RespondToReview,
    Review,
    ReviewComment,
    Task,
    TaskValidationError,
    WorkflowRun,
    new_task_id,
    parse_task,
    session_prefix,
)


def test_version_is_set() -> None:
    assert __version__


def test_parse_implement_issue() -> None:
    task = parse_task(
        {
            "kind": "implement_issue",
            "repository": "octo/widgets",
            "issue": {
                "number": 7,
                "title": "Add button",
                "body": "Please",
                "html_url": "https://github.com/octo/widgets/issues/7",
            },
        }
    )

    assert task.kind == "implement_issue"
    assert task.repository == "octo/widgets"
    assert task.retries == 0
    assert task.payload == ImplementIssue(
        issue=Issue(
            number=7,
            title="Add button",
            body="Please",
            html_url="https://github.com/octo/widgets/issues/7",
        )
    )
    assert task.issue is not None
    assert task.pull_request is None
    assert task.target_number == 7
    assert re.fullmatch(r"\d+-[a-z0-9]{9}", task.task_id)


def test_parse_accepts_legacy_action_key_and_id() -> None:
    task = parse_task(
        {
            "action": "fix_pr_failures",
            "id": "given-id",
            "repository": "o/r",
            "pullRequest": {"number": 3, "head": {"ref": "kimi/issue-1"}, "title": "PR"},
            "workflowRun": {"name": "CI", "conclusion": "failure", "logs": "boom"},
        }
    )

    assert task.task_id == "given-id"
    assert task.payload == FixPrFailures(
        pull_request=PullRequest(number=3, head_ref="kimi/issue-1", title="PR"),
        workflow_run=WorkflowRun(name="CI", conclusion="failure", logs="boom"),
    )
    assert task.issue is None
    assert task.target_number == 3


def test_parse_fix_pr_failures_without_workflow_run() -> None:
    task = parse_task(
        {
            "kind": "fix_pr_failures",
            "repository": "o/r",
            "pullRequest": {"number": 3, "head": {"ref": "b"}},
        }
    )
    assert isinstance(task.payload, FixPrFailures)
    assert task.payload.workflow_run is None


def test_parse_respond_to_review_skips_malformed_comments() -> None:
    task = parse_task(
        {
            "kind": "respond_to_review",
            "repository": "o/r",
            "pullRequest": {"number": 9, "head": {"ref": "feature"}},
            "review": {
                "user": {"login": "alice"},
                "comments": [
                    {"path": "a.py", "line": 4, "body": "rename"},
                    {"path": "b.py", "body": "no line"},
                    "junk",
                ],
            },
        }
    )

    assert task.payload == RespondToReview(
        pull_request=PullRequest(number=9, head_ref="feature"),
        review=Review(
            reviewer="alice",
            comments=(
                ReviewComment(path="a.py", line=4, body="rename"),
                ReviewComment(path="b.py", line=None, body="no line"),
            ),
        ),
    )


def test_parse_respond_to_review_defaults_review() -> None:
    task = parse_task(
        {
            "kind": "respond_to_review",
            "repository": "o/r",
            "pullRequest": {"number": 9, "head": {"ref": "feature"}},
        }
    )
    assert isinstance(task.payload, RespondToReview)
    assert task.payload.review == Review()


@pytest.mark.parametrize(
    ("payload", "message"),
    [
        ([], "must be a JSON object"),
        ({"repository": "o/r"}, "Missing required field: kind"),
        ({"kind": "implement_issue"}, "Missing required field: repository"),
        ({"kind": "deploy", "repository": "o/r"}, "Unknown task kind: deploy"),
        ({"kind": "implement_issue", "repository": "o/r"}, "implement_issue: issue"),
        (
            {"kind": "implement_issue", "repository": "o/r", "issue": {"number": 0}},
            "issue.number must be a positive integer",
        ),
        (
            {"kind": "fix_pr_failures", "repository": "o/r", "pullRequest": {"number": 1}},
            "pullRequest.head.ref",
        ),
        ({"kind": "respond_to_review", "repository": "o/r"}, "respond_to_review: pullRequest"),
        (
            {"kind": "implement_issue", "repository": "not a repo", "issue": {"number": 1}},
            "Invalid repository format",
        ),
    ],
)
def test_parse_task_rejects_invalid_payloads(payload: object, message: str) -> None:
    with pytest.raises(TaskValidationError, match=message):
        parse_task(payload)


def test_task_validates_repository_on_construction() -> None:
    with pytest.raises(TaskValidationError):
        Task(repository="owner-only", payload=ImplementIssue(issue=Issue(number=1, title="t")))


def test_task_ids_are_unique() -> None:
    assert len({new_task_id() for _ in range(50)}) == 50


def test_session_prefix_replaces_slash() -> None:
    assert session_prefix("octo/widgets") == "octo-widgets"

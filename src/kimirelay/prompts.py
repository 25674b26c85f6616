from __future__ import annotations

from kimirelay.models import FixPrFailures, Issue, RespondToReview


_NO_LOGS = "No logs available"


def build_implementation_prompt(*, issue: Issue, repository: str, branch: str) -> str:
    return f"""
You are an autonomous GitHub agent working on repository {repository}.

## Task: Implement Issue #{issue.number}

**Title:** {issue.title}

**Description:**
{issue.body or "No description provided"}

**Branch:** {branch}

## Instructions

1. Analyze the issue requirements carefully
2. Implement the solution following the existing code style and conventions
3. Include appropriate tests if applicable
4. Ensure all existing tests still pass

## Important Notes

- Make minimal, focused changes that directly address the issue
- Preserve existing functionality
- DO NOT commit or push - the relay handles this automatically
- DO NOT create a pull request - the relay handles this automatically
- Simply create/modify the files needed to implement the solution

Please implement this issue now.
""".strip()


def build_fix_prompt(
    *,
    payload: FixPrFailures,
    repository: str,
    attempt: int,
    max_attempts: int,
) -> str:
    run = payload.workflow_run
    logs = (run.logs if run is not None else None) or _NO_LOGS
    run_name = (run.name if run is not None else None) or "Unknown"
    conclusion = (run.conclusion if run is not None else None) or "failed"
    pr = payload.pull_request
    return f"""
You are an autonomous GitHub agent working on repository {repository}.

## Task: Fix CI Failures in PR #{pr.number}

**PR Title:** {pr.title}

**Attempt:** {attempt} of {max_attempts}

**Workflow Run:** {run_name}
**Status:** {conclusion}

## Failure Logs

```
{logs}
```

## Instructions

1. Analyze the failure logs carefully
2. Identify the root cause of the failures
3. Implement fixes for the identified issues
4. Ensure all tests pass after your changes

## Important Notes

- Focus on fixing the specific failures shown in the logs
- Make minimal changes necessary to fix the issues
- DO NOT commit or push - the relay handles this automatically
- If the issue is not fixable automatically, explain why

Please fix these CI failures now.
""".strip()


def build_review_prompt(*, payload: RespondToReview, repository: str) -> str:
    pr = payload.pull_request
    review = payload.review
    comment_blocks = [
        f"### Comment {index} ({comment.path}:{comment.line if comment.line is not None else '?'})\n"
        f"{comment.body}"
        for index, comment in enumerate(review.comments, start=1)
    ]
    comments_text = "\n\n".join(comment_blocks) or "No specific comments provided"
    return f"""
You are an autonomous GitHub agent working on repository {repository}.

## Task: Address Review Comments on PR #{pr.number}

**PR Title:** {pr.title}

**Reviewer:** {review.reviewer or "Unknown"}

## Review Comments

{comments_text}

## Instructions

1. Read and understand each review comment
2. Implement the requested changes
3. Ensure the changes address the reviewer's concerns
4. Test your changes

## Important Notes

- Address all review comments thoroughly
- Make only the changes requested by the reviewer
- Preserve existing functionality
- DO NOT commit or push - the relay handles this automatically

Please address these review comments now.
""".strip()

from __future__ import annotations

from dataclasses import dataclass, field
import json
import logging
from typing import cast
from urllib.parse import quote

from kimirelay.observability import log_event
from kimirelay.shell import CommandError, run


LOGGER = logging.getLogger("kimirelay.github_gateway")


class GitHubError(RuntimeError):
    pass


@dataclass(frozen=True)
class PullRequestRef:
    number: int
    html_url: str


@dataclass(frozen=True)
class GitHubGateway:
    """Thin REST client over the `gh api` CLI."""

    token: str | None = field(default=None, repr=False)

    def create_pull_request(
        self,
        repository: str,
        *,
        head: str,
        title: str,
        body: str,
        base: str,
    ) -> PullRequestRef:
        try:
            payload = self._api_json(
                "POST",
                f"/repos/{repository}/pulls",
                payload={"title": title, "head": head, "base": base, "body": body},
            )
            payload_obj = _as_object_dict(payload)
            if payload_obj is None:
                raise GitHubError("Unexpected GitHub response: expected object for PR")
            number = payload_obj.get("number")
            if not isinstance(number, int):
                raise GitHubError("Unexpected GitHub response: PR number missing")
            html_url = payload_obj.get("html_url")
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "github_pr_create_failed",
                repository=repository,
                base=base,
                head=head,
                error_type=type(exc).__name__,
            )
            raise
        ref = PullRequestRef(number=number, html_url=html_url if isinstance(html_url, str) else "")
        log_event(
            LOGGER,
            "github_pr_created",
            repository=repository,
            pr_number=ref.number,
            pr_url=ref.html_url,
            base=base,
            head=head,
        )
        return ref

    def add_labels(self, repository: str, number: int, labels: list[str]) -> None:
        if not labels:
            return
        self._api_json(
            "POST",
            f"/repos/{repository}/issues/{number}/labels",
            payload={"labels": labels},
        )
        log_event(
            LOGGER,
            "github_labels_added",
            repository=repository,
            number=number,
            labels=",".join(labels),
        )

    def remove_label(self, repository: str, number: int, label: str) -> None:
        """Remove a label; a label that is not present is not an error."""
        path = f"/repos/{repository}/issues/{number}/labels/{quote(label, safe='')}"
        try:
            self._api_json("DELETE", path)
        except GitHubError as exc:
            if "404" in str(exc):
                return
            raise
        log_event(
            LOGGER,
            "github_label_removed",
            repository=repository,
            number=number,
            label=label,
        )

    def post_comment(self, repository: str, number: int, body: str) -> None:
        self._api_json(
            "POST",
            f"/repos/{repository}/issues/{number}/comments",
            payload={"body": body},
        )
        log_event(LOGGER, "github_comment_posted", repository=repository, number=number)

    def _api_json(
        self, method: str, path: str, payload: dict[str, object] | None = None
    ) -> object:
        cmd = ["gh", "api", "--method", method.upper(), path]
        stdin_payload: str | None = None
        if payload is not None:
            cmd.extend(["--input", "-"])
            stdin_payload = json.dumps(payload)
        env = {"GH_TOKEN": self.token} if self.token else None
        secrets = (self.token,) if self.token else ()
        try:
            raw = run(cmd, env=env, input_text=stdin_payload, secrets=secrets)
        except CommandError as exc:
            raise GitHubError(
                f"GitHub API request failed: {method.upper()} {path}: "
                f"{exc.stderr.strip() or exc.stdout.strip()}"
            ) from exc
        if not raw.strip():
            return None
        return json.loads(raw)


def _as_object_dict(value: object) -> dict[str, object] | None:
    if not isinstance(value, dict):
        return None
    if not all(isinstance(key, str) for key in value.keys()):
        return None
    return cast(dict[str, object], value)

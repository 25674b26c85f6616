from __future__ import annotations

import json

import pytest

from kimirelay.github_gateway import GitHubError, GitHubGateway, PullRequestRef, _as_object_dict
from kimirelay.observability import configure_logging
from kimirelay.shell import CommandError


def test_create_pull_request_posts_payload(
    monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    configure_logging(verbose=True)
    gateway = GitHubGateway()
    calls: list[tuple[str, str, dict[str, object] | None]] = []

    def fake_api(
        self: GitHubGateway, method: str, path: str, payload: dict[str, object] | None = None
    ) -> object:
        _ = self
        calls.append((method, path, payload))
        return {"number": 17, "html_url": "https://github.com/o/r/pull/17"}

    monkeypatch.setattr(GitHubGateway, "_api_json", fake_api)

    ref = gateway.create_pull_request(
        "o/r", head="kimi/issue-3", title="[Kimi] Thing", body="Closes #3", base="main"
    )

    assert ref == PullRequestRef(number=17, html_url="https://github.com/o/r/pull/17")
    assert calls == [
        (
            "POST",
            "/repos/o/r/pulls",
            {"title": "[Kimi] Thing", "head": "kimi/issue-3", "base": "main", "body": "Closes #3"},
        )
    ]
    assert "event=github_pr_created" in capsys.readouterr().err


def test_create_pull_request_rejects_malformed_response(
    monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    configure_logging(verbose=True)
    monkeypatch.setattr(
        GitHubGateway, "_api_json", lambda self, method, path, payload=None: {"html_url": "u"}
    )

    with pytest.raises(GitHubError, match="PR number missing"):
        GitHubGateway().create_pull_request("o/r", head="h", title="t", body="b", base="main")
    assert "event=github_pr_create_failed" in capsys.readouterr().err


def test_add_labels_and_comment_paths(monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[tuple[str, str, dict[str, object] | None]] = []

    def fake_api(
        self: GitHubGateway, method: str, path: str, payload: dict[str, object] | None = None
    ) -> object:
        _ = self
        calls.append((method, path, payload))
        return None

    monkeypatch.setattr(GitHubGateway, "_api_json", fake_api)
    gateway = GitHubGateway()

    gateway.add_labels("o/r", 4, ["kimi-failed", "error-unknown"])
    gateway.add_labels("o/r", 4, [])
    gateway.post_comment("o/r", 4, "hello")
    gateway.remove_label("o/r", 4, "needs human")

    assert calls == [
        ("POST", "/repos/o/r/issues/4/labels", {"labels": ["kimi-failed", "error-unknown"]}),
        ("POST", "/repos/o/r/issues/4/comments", {"body": "hello"}),
        ("DELETE", "/repos/o/r/issues/4/labels/needs%20human", None),
    ]


def test_remove_label_ignores_missing_label(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_api(
        self: GitHubGateway, method: str, path: str, payload: dict[str, object] | None = None
    ) -> object:
        _ = self, payload
        raise GitHubError(f"GitHub API request failed: {method} {path}: HTTP 404: Label does not exist")

    monkeypatch.setattr(GitHubGateway, "_api_json", fake_api)

    GitHubGateway().remove_label("o/r", 1, "kimi-working")


def test_remove_label_propagates_other_errors(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_api(
        self: GitHubGateway, method: str, path: str, payload: dict[str, object] | None = None
    ) -> object:
        _ = self, method, path, payload
        raise GitHubError("HTTP 403: forbidden")

    monkeypatch.setattr(GitHubGateway, "_api_json", fake_api)

    with pytest.raises(GitHubError, match="403"):
        GitHubGateway().remove_label("o/r", 1, "kimi-working")


def test_api_json_invokes_gh_with_token(monkeypatch: pytest.MonkeyPatch) -> None:
    called: dict[str, object] = {}

    def fake_run(cmd: list[str], **kwargs: object) -> str:
        called["cmd"] = cmd
        called.update(kwargs)
        return '{"ok": true}'

    monkeypatch.setattr("kimirelay.github_gateway.run", fake_run)

    out = GitHubGateway(token="ghs_x")._api_json("post", "/repos/o/r/issues/1/comments", {"body": "b"})

    assert out == {"ok": True}
    assert called["cmd"] == [
        "gh",
        "api",
        "--method",
        "POST",
        "/repos/o/r/issues/1/comments",
        "--input",
        "-",
    ]
    assert json.loads(str(called["input_text"])) == {"body": "b"}
    assert called["env"] == {"GH_TOKEN": "ghs_x"}
    assert called["secrets"] == ("ghs_x",)


def test_api_json_empty_body_and_errors(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("kimirelay.github_gateway.run", lambda cmd, **kwargs: "  ")
    assert GitHubGateway()._api_json("DELETE", "/x") is None

    def failing_run(cmd: list[str], **kwargs: object) -> str:
        _ = cmd, kwargs
        raise CommandError("Command failed", returncode=1, stdout="", stderr="HTTP 404: Not Found")

    monkeypatch.setattr("kimirelay.github_gateway.run", failing_run)
    with pytest.raises(GitHubError, match="DELETE /x: HTTP 404: Not Found"):
        GitHubGateway()._api_json("DELETE", "/x")


def test_token_not_in_repr() -> None:
    assert "ghs_x" not in repr(GitHubGateway(token="ghs_x"))


def test_as_object_dict() -> None:
    assert _as_object_dict({"a": 1}) == {"a": 1}
    assert _as_object_dict([1]) is None
    assert _as_object_dict({1: "a"}) is None

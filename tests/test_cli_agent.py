from __future__ import annotations

import io
from pathlib import Path
import sys

import pytest

from kimirelay.agent_adapter import AgentExitError, AgentSpawnError, AgentTimeoutError
from kimirelay.cli_agent import CliAgentAdapter, agent_version
from kimirelay.config import AgentConfig
from kimirelay.context import ContextTracker
from kimirelay.observability import configure_logging


def _script_config(script: str, *, timeout_seconds: float = 30) -> AgentConfig:
    # The prompt is appended after the script and arrives as sys.argv[1].
    return AgentConfig(
        executable=sys.executable,
        timeout_seconds=timeout_seconds,
        extra_args=("-c", script),
    )


def _adapter(
    tmp_path: Path, config: AgentConfig
) -> tuple[CliAgentAdapter, ContextTracker, io.StringIO, io.StringIO]:
    context = ContextTracker(tmp_path / "sessions", max_tokens=1000)
    out = io.StringIO()
    err = io.StringIO()
    return CliAgentAdapter(config, context, stdout=out, stderr=err), context, out, err


def test_invoke_returns_output_and_records_session(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    configure_logging(verbose=True)
    script = "import sys; print('got:' + sys.argv[1]); print('warn', file=sys.stderr)"
    adapter, context, out, err = _adapter(tmp_path, _script_config(script))

    result = adapter.invoke(prompt="do it", session_id="o-r-issue-1", cwd=tmp_path)

    assert result.exit_code == 0
    assert result.output == "got:do it\n"
    assert out.getvalue() == "got:do it\n"
    assert err.getvalue() == "warn\n"
    session = context.load("o-r-issue-1")
    assert [(m.role, m.content) for m in session.messages] == [
        ("user", "do it"),
        ("assistant", "got:do it\n"),
    ]
    stderr = capsys.readouterr().err
    assert "event=agent_invocation_started" in stderr
    assert "event=agent_invocation_finished" in stderr


def test_invoke_runs_in_working_directory(tmp_path: Path) -> None:
    workdir = tmp_path / "repo"
    workdir.mkdir()
    script = "import os; print(os.getcwd())"
    adapter, _, _, _ = _adapter(tmp_path, _script_config(script))

    result = adapter.invoke(prompt="p", session_id="s", cwd=workdir)

    assert Path(result.output.strip()).resolve() == workdir.resolve()


def test_invoke_nonzero_exit_raises_with_stderr(tmp_path: Path) -> None:
    script = "import sys; print('bad things', file=sys.stderr); sys.exit(3)"
    adapter, context, _, _ = _adapter(tmp_path, _script_config(script))

    with pytest.raises(AgentExitError, match="Agent exited with code 3: bad things") as exc_info:
        adapter.invoke(prompt="p", session_id="s", cwd=tmp_path)

    assert exc_info.value.exit_code == 3
    assert context.load("s").messages[-1].content == "bad things\n"


def test_invoke_timeout_terminates_process(tmp_path: Path) -> None:
    script = "import time; print('working on it', flush=True); time.sleep(30)"
    adapter, context, _, _ = _adapter(tmp_path, _script_config(script, timeout_seconds=0.5))

    with pytest.raises(AgentTimeoutError, match="timed out after 0.5s"):
        adapter.invoke(prompt="p", session_id="s", cwd=tmp_path)

    assert [(m.role, m.content) for m in context.load("s").messages] == [
        ("user", "p"),
        ("assistant", "working on it\n"),
    ]


def test_invoke_tolerates_invalid_utf8_and_large_output(tmp_path: Path) -> None:
    # More than a pipe buffer follows the undecodable byte.
    script = (
        "import sys; "
        "sys.stdout.buffer.write(b'caf\\xe9\\n' + b'x' * 400000 + b'\\n'); "
        "sys.stdout.flush()"
    )
    adapter, context, out, _ = _adapter(tmp_path, _script_config(script, timeout_seconds=20))

    result = adapter.invoke(prompt="p", session_id="s", cwd=tmp_path)

    assert result.exit_code == 0
    assert result.output.startswith("caf\ufffd\n")
    assert len(result.output) == 4 + 1 + 400000 + 1
    assert out.getvalue() == result.output
    last = context.load("s").messages[-1]
    assert last.role == "assistant"
    assert last.content == result.output


def test_invoke_mirrors_agent_stdout_to_stderr_by_default(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    config = _script_config("print('agent says hi')")
    context = ContextTracker(tmp_path / "sessions", max_tokens=1000)
    adapter = CliAgentAdapter(config, context)

    adapter.invoke(prompt="p", session_id="s", cwd=tmp_path)

    captured = capsys.readouterr()
    assert "agent says hi" not in captured.out
    assert "agent says hi" in captured.err


def test_invoke_keeps_capturing_when_mirror_breaks(tmp_path: Path) -> None:
    class ClosedMirror(io.StringIO):
        def write(self, s: str) -> int:
            raise ValueError("I/O operation on closed file")

    config = _script_config("print('\\n'.join(str(i) for i in range(20000)))")
    context = ContextTracker(tmp_path / "sessions", max_tokens=1000)
    adapter = CliAgentAdapter(config, context, stdout=ClosedMirror(), stderr=io.StringIO())

    result = adapter.invoke(prompt="p", session_id="s", cwd=tmp_path)

    assert result.output.splitlines()[-1] == "19999"


def test_invoke_missing_executable_raises_spawn_error(tmp_path: Path) -> None:
    config = AgentConfig(executable=str(tmp_path / "missing-kimi"))
    adapter, _, _, _ = _adapter(tmp_path, config)

    with pytest.raises(AgentSpawnError, match="Failed to execute agent"):
        adapter.invoke(prompt="p", session_id="s", cwd=tmp_path)


def test_agent_version_extracts_semver(monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[list[str]] = []

    def fake_run(cmd: list[str], **kwargs: object) -> str:
        _ = kwargs
        calls.append(cmd)
        return "kimi, version 0.42.1\n"

    monkeypatch.setattr("kimirelay.cli_agent.run", fake_run)

    assert agent_version(AgentConfig()) == "0.42.1"
    assert calls == [["kimi", "--version"]]


def test_agent_version_missing_executable(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_run(cmd: list[str], **kwargs: object) -> str:
        _ = kwargs
        raise FileNotFoundError(cmd[0])

    monkeypatch.setattr("kimirelay.cli_agent.run", fake_run)

    with pytest.raises(AgentSpawnError, match="Agent executable not found: kimi"):
        agent_version(AgentConfig())

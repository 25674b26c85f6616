from __future__ import annotations

from pathlib import Path
import logging
import re
import subprocess
import sys
import threading
from typing import IO, TextIO

from kimirelay.agent_adapter import (
    AgentAdapter,
    AgentExitError,
    AgentResult,
    AgentSpawnError,
    AgentTimeoutError,
)
from kimirelay.config import AgentConfig
from kimirelay.context import ContextTracker
from kimirelay.observability import log_event
from kimirelay.shell import run


LOGGER = logging.getLogger("kimirelay.cli_agent")
_KILL_GRACE_SECONDS = 10.0
_READER_JOIN_SECONDS = 5.0
_VERSION_RE = re.compile(r"\d+\.\d+\.\d+")


class CliAgentAdapter(AgentAdapter):
    """Runs the agent executable with the prompt as its final argument.

    Agent output is mirrored to stderr by default so that stdout stays free for
    command results such as the `kimirelay run` summary.
    """

    def __init__(
        self,
        config: AgentConfig,
        context: ContextTracker,
        *,
        stdout: TextIO | None = None,
        stderr: TextIO | None = None,
    ) -> None:
        self._config = config
        self._context = context
        self._stdout = stdout
        self._stderr = stderr

    def invoke(self, *, prompt: str, session_id: str, cwd: Path) -> AgentResult:
        argv = [self._config.executable, *self._config.extra_args, prompt]
        self._context.add_message(session_id, "user", prompt)
        log_event(
            LOGGER,
            "agent_invocation_started",
            session_id=session_id,
            cwd=str(cwd),
            prompt_chars=len(prompt),
            timeout_seconds=self._config.timeout_seconds,
        )

        try:
            proc = subprocess.Popen(
                argv,
                cwd=str(cwd),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
            )
        except OSError as exc:
            raise AgentSpawnError(f"Failed to execute agent: {exc}") from exc

        stdout_chunks: list[str] = []
        stderr_chunks: list[str] = []
        readers = [
            threading.Thread(
                target=_pump,
                args=(proc.stdout, stdout_chunks, self._stdout or sys.stderr),
                name="agent-stdout",
                daemon=True,
            ),
            threading.Thread(
                target=_pump,
                args=(proc.stderr, stderr_chunks, self._stderr or sys.stderr),
                name="agent-stderr",
                daemon=True,
            ),
        ]
        for reader in readers:
            reader.start()

        timed_out = False
        try:
            exit_code = proc.wait(timeout=self._config.timeout_seconds)
        except subprocess.TimeoutExpired:
            timed_out = True
            proc.terminate()
            try:
                proc.wait(timeout=_KILL_GRACE_SECONDS)
            except subprocess.TimeoutExpired:
                proc.kill()
                proc.wait()
            exit_code = proc.returncode
        for reader in readers:
            reader.join(timeout=_READER_JOIN_SECONDS)

        output = "".join(stdout_chunks)
        errors = "".join(stderr_chunks)
        self._context.add_message(session_id, "assistant", output or errors)
        log_event(
            LOGGER,
            "agent_invocation_finished",
            session_id=session_id,
            exit_code=exit_code,
            timed_out=timed_out,
            output_chars=len(output),
        )

        if timed_out:
            raise AgentTimeoutError(
                f"Agent execution timed out after {self._config.timeout_seconds:g}s"
            )
        if exit_code != 0:
            raise AgentExitError(
                f"Agent exited with code {exit_code}: {errors.strip()}",
                exit_code=exit_code,
            )
        return AgentResult(output=output, exit_code=exit_code)


def agent_version(config: AgentConfig) -> str:
    """Return the agent's reported version, raising if it cannot be run."""
    try:
        output = run([config.executable, "--version"])
    except OSError as exc:
        raise AgentSpawnError(f"Agent executable not found: {config.executable}") from exc
    match = _VERSION_RE.search(output)
    return match.group(0) if match else output.strip()


def _pump(stream: IO[str] | None, chunks: list[str], mirror: TextIO) -> None:
    if stream is None:
        return
    mirroring = True
    try:
        # Keep draining after a mirror failure or the agent blocks on a full pipe.
        for line in iter(stream.readline, ""):
            chunks.append(line)
            if not mirroring:
                continue
            try:
                mirror.write(line)
                mirror.flush()
            except (OSError, ValueError):
                mirroring = False
    finally:
        stream.close()

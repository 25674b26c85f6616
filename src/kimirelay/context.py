"""Per-session conversational history with token-budget accounting.

The tracker only detects when a session approaches its budget. Producing the
summary is left to the caller: `summary_prompt` renders the history that needs
condensing and `reset_with_summary` installs the result.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
import json
import logging
import math
import os
from pathlib import Path
import threading
import time
from typing import Final, cast

from kimirelay.observability import log_event, log_warning


LOGGER = logging.getLogger("kimirelay.context")

CHARS_PER_TOKEN: Final[int] = 4
KEEP_RECENT_MESSAGES: Final[int] = 5
_SUMMARY_HEADER: Final[str] = "Previous conversation summary:\n"


@dataclass(frozen=True)
class Message:
    role: str
    content: str
    tokens: int
    timestamp: str


@dataclass(frozen=True)
class SummaryRecord:
    content: str
    message_count: int
    token_count: int
    summarized_at: str


@dataclass
class Session:
    session_id: str
    created_at: str
    updated_at: str
    messages: list[Message] = field(default_factory=list)
    token_count: int = 0
    summaries: list[SummaryRecord] = field(default_factory=list)
    needs_summary: bool = False
    last_reset_at: str | None = None

    def to_json(self) -> dict[str, object]:
        return {
            "session_id": self.session_id,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "messages": [asdict(message) for message in self.messages],
            "token_count": self.token_count,
            "summaries": [asdict(summary) for summary in self.summaries],
            "needs_summary": self.needs_summary,
            "last_reset_at": self.last_reset_at,
        }

    @classmethod
    def from_json(cls, payload: dict[str, object]) -> Session:
        messages = [
            Message(
                role=str(item["role"]),
                content=str(item["content"]),
                tokens=int(item["tokens"]),
                timestamp=str(item["timestamp"]),
            )
            for item in _as_list_of_dicts(payload.get("messages"))
        ]
        summaries = [
            SummaryRecord(
                content=str(item["content"]),
                message_count=int(item["message_count"]),
                token_count=int(item["token_count"]),
                summarized_at=str(item["summarized_at"]),
            )
            for item in _as_list_of_dicts(payload.get("summaries"))
        ]
        last_reset_at = payload.get("last_reset_at")
        return cls(
            session_id=str(payload["session_id"]),
            created_at=str(payload["created_at"]),
            updated_at=str(payload["updated_at"]),
            messages=messages,
            token_count=int(cast(int, payload["token_count"])),
            summaries=summaries,
            needs_summary=bool(payload.get("needs_summary", False)),
            last_reset_at=last_reset_at if isinstance(last_reset_at, str) else None,
        )


@dataclass(frozen=True)
class SessionStats:
    session_id: str
    token_count: int
    max_tokens: int
    utilization_percent: float
    message_count: int
    summary_count: int
    needs_summary: bool


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / CHARS_PER_TOKEN)


class ContextTracker:
    def __init__(
        self,
        sessions_dir: Path,
        *,
        max_tokens: int = 100_000,
        summarization_threshold: float = 0.8,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        self.sessions_dir = sessions_dir
        self.max_tokens = max_tokens
        self.summarization_threshold = summarization_threshold
        self._now = now or (lambda: datetime.now(timezone.utc))
        self._lock = threading.Lock()
        self.sessions_dir.mkdir(parents=True, exist_ok=True)

    def session_path(self, session_id: str) -> Path:
        return self.sessions_dir / f"{session_id}.json"

    def load(self, session_id: str) -> Session:
        with self._lock:
            return self._load_locked(session_id)

    def add_message(self, session_id: str, role: str, content: str) -> Session:
        with self._lock:
            session = self._load_locked(session_id)
            now = self._timestamp()
            message = Message(
                role=role,
                content=content,
                tokens=estimate_tokens(content),
                timestamp=now,
            )
            session.messages.append(message)
            session.token_count += message.tokens
            session.updated_at = now
            if self.should_summarize(session):
                if not session.needs_summary:
                    log_warning(
                        LOGGER,
                        "context_near_limit",
                        session_id=session_id,
                        token_count=session.token_count,
                        max_tokens=self.max_tokens,
                    )
                session.needs_summary = True
            self._save_locked(session)
            return session

    def should_summarize(self, session: Session) -> bool:
        return session.token_count >= self.max_tokens * self.summarization_threshold

    def summary_prompt(self, session_id: str) -> str:
        session = self.load(session_id)
        to_summarize = session.messages[:-KEEP_RECENT_MESSAGES]
        transcript = "\n\n".join(f"{message.role}: {message.content}" for message in to_summarize)
        return f"""
Please provide a concise summary of the following conversation history, focusing on key decisions, outcomes, and context needed for continuing the task:

{transcript}

Summary:
""".strip()

    def reset_with_summary(self, session_id: str, summary: str) -> Session:
        with self._lock:
            session = self._load_locked(session_id)
            now = self._timestamp()
            session.summaries.append(
                SummaryRecord(
                    content=summary,
                    message_count=len(session.messages),
                    token_count=session.token_count,
                    summarized_at=now,
                )
            )
            summary_content = f"{_SUMMARY_HEADER}{summary}"
            recent = session.messages[-KEEP_RECENT_MESSAGES:]
            session.messages = [
                Message(
                    role="system",
                    content=summary_content,
                    tokens=estimate_tokens(summary_content),
                    timestamp=now,
                ),
                *recent,
            ]
            session.token_count = sum(message.tokens for message in session.messages)
            session.needs_summary = False
            session.last_reset_at = now
            session.updated_at = now
            self._save_locked(session)
        log_event(
            LOGGER,
            "context_reset_with_summary",
            session_id=session_id,
            token_count=session.token_count,
            summary_count=len(session.summaries),
        )
        return session

    def stats(self, session_id: str) -> SessionStats:
        session = self.load(session_id)
        return SessionStats(
            session_id=session.session_id,
            token_count=session.token_count,
            max_tokens=self.max_tokens,
            utilization_percent=round(session.token_count / self.max_tokens * 100, 1),
            message_count=len(session.messages),
            summary_count=len(session.summaries),
            needs_summary=session.needs_summary,
        )

    def cleanup_old_sessions(self, days: int = 30) -> int:
        cutoff = time.time() - timedelta(days=days).total_seconds()
        deleted = 0
        with self._lock:
            for path in sorted(self.sessions_dir.glob("*.json")):
                try:
                    if path.stat().st_mtime < cutoff:
                        path.unlink()
                        deleted += 1
                except OSError as exc:
                    log_warning(
                        LOGGER,
                        "context_cleanup_failed",
                        path=str(path),
                        error=str(exc),
                    )
        if deleted:
            log_event(LOGGER, "context_sessions_cleaned", deleted=deleted, days=days)
        return deleted

    def _load_locked(self, session_id: str) -> Session:
        path = self.session_path(session_id)
        if not path.exists():
            return self._new_session(session_id)
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
            if not isinstance(payload, dict):
                raise ValueError("session file must contain a JSON object")
            return Session.from_json(cast(dict[str, object], payload))
        except (OSError, ValueError, KeyError, TypeError) as exc:
            log_warning(
                LOGGER,
                "context_session_load_failed",
                session_id=session_id,
                error=str(exc),
            )
            return self._new_session(session_id)

    def _save_locked(self, session: Session) -> None:
        path = self.session_path(session.session_id)
        tmp_path = path.with_suffix(".json.tmp")
        tmp_path.write_text(json.dumps(session.to_json(), indent=2), encoding="utf-8")
        os.replace(tmp_path, path)

    def _new_session(self, session_id: str) -> Session:
        now = self._timestamp()
        return Session(session_id=session_id, created_at=now, updated_at=now)

    def _timestamp(self) -> str:
        return self._now().isoformat()


def _as_list_of_dicts(value: object) -> list[dict[str, object]]:
    if not isinstance(value, list):
        return []
    return [cast(dict[str, object], item) for item in value if isinstance(item, dict)]

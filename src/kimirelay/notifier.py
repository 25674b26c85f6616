from __future__ import annotations

from abc import ABC, abstractmethod
import json
import logging
from typing import Any
import urllib.error
import urllib.request

from kimirelay.error_classifier import ErrorType
from kimirelay.models import Task, TaskResult
from kimirelay.observability import log_event, log_warning


LOGGER = logging.getLogger("kimirelay.notifier")
_TELEGRAM_TIMEOUT_SECONDS = 45


class NotificationError(RuntimeError):
    pass


class Notifier(ABC):
    """Fire-and-forget chat notifications. Delivery failures are logged, never raised."""

    def __init__(self, *, max_attempts: int) -> None:
        self._max_attempts = max_attempts

    @abstractmethod
    def send(self, text: str) -> None:
        """Deliver one message, raising NotificationError on failure."""

    def task_started(self, task: Task) -> None:
        self._deliver("task_started", task, render_task_started(task))

    def task_succeeded(self, task: Task, result: TaskResult) -> None:
        self._deliver("task_succeeded", task, render_task_succeeded(task, result))

    def task_failed(
        self,
        task: Task,
        error: BaseException,
        error_type: ErrorType,
        will_retry: bool,
    ) -> None:
        text = render_task_failed(
            task,
            error,
            error_type=error_type,
            will_retry=will_retry,
            max_attempts=self._max_attempts,
        )
        self._deliver("task_failed", task, text)

    def retry_scheduled(self, task: Task, delay_minutes: float) -> None:
        text = render_retry_scheduled(task, delay_minutes, max_attempts=self._max_attempts)
        self._deliver("retry_scheduled", task, text)

    def human_required(self, task: Task, reason: str) -> None:
        self._deliver("human_required", task, render_human_required(task, reason))

    def _deliver(self, kind: str, task: Task, text: str) -> None:
        try:
            self.send(text)
        except Exception as exc:  # noqa: BLE001
            log_warning(
                LOGGER,
                "notification_failed",
                kind=kind,
                task_id=task.task_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return
        log_event(LOGGER, "notification_sent", kind=kind, task_id=task.task_id)


class NullNotifier(Notifier):
    def send(self, text: str) -> None:
        _ = text


class TelegramNotifier(Notifier):
    def __init__(self, *, bot_token: str, chat_id: int, max_attempts: int) -> None:
        super().__init__(max_attempts=max_attempts)
        self._base_url = f"https://api.telegram.org/bot{bot_token}"
        self._chat_id = chat_id

    def send(self, text: str) -> None:
        self._call(
            "sendMessage",
            {
                "chat_id": self._chat_id,
                "text": text,
                "disable_web_page_preview": True,
            },
        )

    def _call(self, method: str, payload: dict[str, Any]) -> Any:
        request = urllib.request.Request(
            url=f"{self._base_url}/{method}",
            data=json.dumps(payload).encode("utf-8"),
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=_TELEGRAM_TIMEOUT_SECONDS) as response:
                body = response.read().decode("utf-8")
        except urllib.error.URLError as exc:
            raise NotificationError(f"Telegram API request failed: {exc.reason}") from exc
        try:
            payload_json = json.loads(body)
        except json.JSONDecodeError as exc:
            raise NotificationError(f"Invalid Telegram API response: {body[:200]}") from exc
        if not payload_json.get("ok", False):
            raise NotificationError(f"Telegram API error: {payload_json.get('description')}")
        return payload_json.get("result")


def _subject_lines(task: Task, *, with_links: bool) -> list[str]:
    lines = [f"Repository: {task.repository}", f"Action: {task.kind}"]
    issue = task.issue
    if issue is not None:
        lines.append(f"Issue: #{issue.number} - {issue.title}")
        if with_links and issue.html_url:
            lines.append(f"Link: {issue.html_url}")
    pr = task.pull_request
    if pr is not None:
        lines.append(f"PR: #{pr.number} - {pr.title}")
        if with_links and pr.html_url:
            lines.append(f"Link: {pr.html_url}")
    return lines


def render_task_started(task: Task) -> str:
    return "\n".join(["🚀 Task Started", "", *_subject_lines(task, with_links=True)])


def render_task_succeeded(task: Task, result: TaskResult) -> str:
    lines = ["✅ Task Completed Successfully", "", *_subject_lines(task, with_links=False)]
    if result.pr_number is not None:
        lines.append(f"Pull Request: #{result.pr_number}")
    if result.pr_url:
        lines.append(f"Link: {result.pr_url}")
    if not result.success:
        lines.append("Note: no changes were produced")
    return "\n".join(lines)


def render_task_failed(
    task: Task,
    error: BaseException,
    *,
    error_type: ErrorType,
    will_retry: bool,
    max_attempts: int,
) -> str:
    lines = [
        "❌ Task Failed",
        "",
        *_subject_lines(task, with_links=False),
        f"Error type: {error_type}",
        f"Attempts: {task.retries + 1}/{max_attempts + 1}",
        f"Error: {error}",
    ]
    if will_retry:
        lines.append("")
        lines.append("🔄 A retry will be scheduled.")
    elif task.retries >= max_attempts:
        lines.append("")
        lines.append("⚠️ Max retries reached. Human intervention required.")
    return "\n".join(lines)


def render_retry_scheduled(task: Task, delay_minutes: float, *, max_attempts: int) -> str:
    return "\n".join(
        [
            "🔄 Retry Scheduled",
            "",
            *_subject_lines(task, with_links=False),
            f"Retry: {task.retries} of {max_attempts}",
            f"Delay: {delay_minutes:g} minutes",
        ]
    )


def render_human_required(task: Task, reason: str) -> str:
    return "\n".join(
        [
            "⚠️ Human Intervention Required",
            "",
            *_subject_lines(task, with_links=True),
            "",
            f"Reason: {reason}",
        ]
    )

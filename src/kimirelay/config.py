from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
import os
from pathlib import Path
import tomllib
from typing import cast


@dataclass(frozen=True)
class RuntimeConfig:
    base_dir: Path
    workspaces_dir: Path
    sessions_dir: Path


@dataclass(frozen=True)
class GitHubConfig:
    default_base_branch: str = "main"
    branch_prefix: str = "kimi"
    token_env: str = "GITHUB_TOKEN"
    token: str | None = field(default=None, repr=False)


@dataclass(frozen=True)
class RetryConfig:
    max_attempts: int = 3
    delay_minutes: tuple[float, ...] = (5, 15, 30)
    enable_auto_retry: bool = True
    notify_on_failure: bool = True


@dataclass(frozen=True)
class AgentConfig:
    executable: str = "kimi"
    timeout_seconds: float = 900
    extra_args: tuple[str, ...] = ()


@dataclass(frozen=True)
class ContextConfig:
    max_tokens: int = 100_000
    summarization_threshold: float = 0.8
    retention_days: int = 30


@dataclass(frozen=True)
class TelegramConfig:
    bot_token: str | None = field(default=None, repr=False)
    chat_id: int | None = None

    @property
    def enabled(self) -> bool:
        return bool(self.bot_token) and self.chat_id is not None


@dataclass(frozen=True)
class AppConfig:
    runtime: RuntimeConfig
    github: GitHubConfig = GitHubConfig()
    retry: RetryConfig = RetryConfig()
    agent: AgentConfig = AgentConfig()
    context: ContextConfig = ContextConfig()
    telegram: TelegramConfig = TelegramConfig()


class ConfigError(ValueError):
    pass


def load_config(path: Path, *, environ: Mapping[str, str] | None = None) -> AppConfig:
    with path.open("rb") as fh:
        data = tomllib.load(fh)
    return parse_config(data, environ=os.environ if environ is None else environ)


def parse_config(data: dict[str, object], *, environ: Mapping[str, str]) -> AppConfig:
    runtime_data = _require_table(data, "runtime")
    github_data = _optional_table(data, "github") or {}
    retry_data = _optional_table(data, "retry") or {}
    agent_data = _optional_table(data, "agent") or {}
    context_data = _optional_table(data, "context") or {}
    telegram_data = _optional_table(data, "telegram") or {}

    base_dir = Path(_require_str(runtime_data, "base_dir")).expanduser()
    runtime = RuntimeConfig(
        base_dir=base_dir,
        workspaces_dir=_optional_path(runtime_data, "workspaces_dir") or base_dir / "workspaces",
        sessions_dir=_optional_path(runtime_data, "sessions_dir") or base_dir / "sessions",
    )

    token_env = _str_with_default(github_data, "token_env", "GITHUB_TOKEN")
    github = GitHubConfig(
        default_base_branch=_str_with_default(github_data, "default_base_branch", "main"),
        branch_prefix=_str_with_default(github_data, "branch_prefix", "kimi"),
        token_env=token_env,
        token=environ.get(token_env) or None,
    )

    retry = RetryConfig(
        max_attempts=_int_with_default(retry_data, "max_attempts", 3),
        delay_minutes=_delay_minutes_with_default(retry_data, "delay_minutes", (5, 15, 30)),
        enable_auto_retry=_bool_with_default(retry_data, "enable_auto_retry", True),
        notify_on_failure=_bool_with_default(retry_data, "notify_on_failure", True),
    )
    if retry.max_attempts < 0:
        raise ConfigError("retry.max_attempts must be >= 0")

    agent = AgentConfig(
        executable=_str_with_default(agent_data, "executable", "kimi"),
        timeout_seconds=_number_with_default(agent_data, "timeout_seconds", 900),
        extra_args=_tuple_of_str_with_default(agent_data, "extra_args", ()),
    )
    if agent.timeout_seconds <= 0:
        raise ConfigError("agent.timeout_seconds must be > 0")

    context = ContextConfig(
        max_tokens=_int_with_default(context_data, "max_tokens", 100_000),
        summarization_threshold=_number_with_default(
            context_data, "summarization_threshold", 0.8
        ),
        retention_days=_int_with_default(context_data, "retention_days", 30),
    )
    if context.max_tokens < 1:
        raise ConfigError("context.max_tokens must be >= 1")
    if not 0 < context.summarization_threshold <= 1:
        raise ConfigError("context.summarization_threshold must be in (0, 1]")
    if context.retention_days < 1:
        raise ConfigError("context.retention_days must be >= 1")

    bot_token_env = _str_with_default(telegram_data, "bot_token_env", "TELEGRAM_BOT_TOKEN")
    telegram = TelegramConfig(
        bot_token=environ.get(bot_token_env) or None,
        chat_id=_optional_int(telegram_data, "chat_id"),
    )

    return AppConfig(
        runtime=runtime,
        github=github,
        retry=retry,
        agent=agent,
        context=context,
        telegram=telegram,
    )


def _require_table(data: dict[str, object], key: str) -> dict[str, object]:
    value = data.get(key)
    if not isinstance(value, dict):
        raise ConfigError(f"[{key}] is required and must be a TOML table")
    if not all(isinstance(item, str) for item in value.keys()):
        raise ConfigError(f"[{key}] must have string keys")
    return cast(dict[str, object], value)


def _optional_table(data: dict[str, object], key: str) -> dict[str, object] | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, dict):
        raise ConfigError(f"[{key}] must be a TOML table when provided")
    if not all(isinstance(item, str) for item in value.keys()):
        raise ConfigError(f"[{key}] must have string keys")
    return cast(dict[str, object], value)


def _require_str(data: dict[str, object], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} is required and must be a non-empty string")
    return value


def _optional_str(data: dict[str, object], key: str) -> str | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} must be a non-empty string if provided")
    return value


def _str_with_default(data: dict[str, object], key: str, default: str) -> str:
    value = data.get(key, default)
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} must be a non-empty string")
    return value


def _int_with_default(data: dict[str, object], key: str, default: int) -> int:
    value = data.get(key, default)
    if not isinstance(value, int) or isinstance(value, bool):
        raise ConfigError(f"{key} must be an integer")
    return value


def _optional_int(data: dict[str, object], key: str) -> int | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, int) or isinstance(value, bool):
        raise ConfigError(f"{key} must be an integer if provided")
    return value


def _number_with_default(data: dict[str, object], key: str, default: float) -> float:
    value = data.get(key, default)
    if not isinstance(value, int | float) or isinstance(value, bool):
        raise ConfigError(f"{key} must be a number")
    return float(value)


def _bool_with_default(data: dict[str, object], key: str, default: bool) -> bool:
    value = data.get(key, default)
    if not isinstance(value, bool):
        raise ConfigError(f"{key} must be a boolean")
    return value


def _tuple_of_str_with_default(
    data: dict[str, object], key: str, default: tuple[str, ...]
) -> tuple[str, ...]:
    if key not in data:
        return default
    value = data.get(key)
    if not isinstance(value, list):
        raise ConfigError(f"{key} must be a list of strings")
    out: list[str] = []
    for item in value:
        if not isinstance(item, str):
            raise ConfigError(f"{key} must be a list of strings")
        out.append(item)
    return tuple(out)


def _delay_minutes_with_default(
    data: dict[str, object], key: str, default: tuple[float, ...]
) -> tuple[float, ...]:
    if key not in data:
        return default
    value = data.get(key)
    if not isinstance(value, list) or not value:
        raise ConfigError(f"{key} must be a non-empty list of numbers")
    out: list[float] = []
    for item in value:
        if not isinstance(item, int | float) or isinstance(item, bool) or item < 0:
            raise ConfigError(f"{key} must be a non-empty list of non-negative numbers")
        out.append(item)
    return tuple(out)


def _optional_path(data: dict[str, object], key: str) -> Path | None:
    value = _optional_str(data, key)
    if value is None:
        return None
    return Path(value).expanduser()

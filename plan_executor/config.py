from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field, replace
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping

import yaml

from .errors import ConfigError

LOGGER = logging.getLogger(__name__)


def _get_env_float(name: str, default: str) -> float:
    return float(os.getenv(name, default))


def _get_env_int(name: str, default: str) -> int:
    return int(os.getenv(name, default))


def _get_env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Config:
    commit_config_path: str = os.getenv("PLANX_COMMIT_CONFIG", ".plan-executor/execute.yml")
    git_max_retries: int = _get_env_int("PLANX_GIT_MAX_RETRIES", "3")
    git_retry_delay_s: float = _get_env_float("PLANX_GIT_RETRY_DELAY", "1.0")
    git_timeout_s: float = _get_env_float("PLANX_GIT_TIMEOUT", "60")
    quality_timeout_s: float = _get_env_float("PLANX_QUALITY_TIMEOUT", "300")
    script_timeout_s: float = _get_env_float("PLANX_SCRIPT_TIMEOUT", "300")
    max_error_lines: int = _get_env_int("PLANX_MAX_ERROR_LINES", "10")
    safety_delay_s: float = _get_env_float("PLANX_SAFETY_DELAY", "5")
    rate_limit_capacity: int = _get_env_int("PLANX_GIT_OPS_BURST", "10")
    rate_limit_per_minute: int = _get_env_int("PLANX_GIT_OPS_PER_MINUTE", "60")
    audit_capacity: int = _get_env_int("PLANX_AUDIT_CAPACITY", "100")
    audit_log_path: str = os.getenv("PLANX_AUDIT_LOG_PATH", ".plan-executor/state/audit.jsonl")
    audit_echo: bool = _get_env_bool("AUDIT_LOG", "false")
    runs_dir: str = os.getenv("PLANX_RUNS_DIR", ".plan-executor/runs")


COMMIT_TYPES = ("feat", "fix", "chore", "refactor", "test", "docs")
CO_AUTHOR_PATTERN = re.compile(r"^.+\s+<[^@\s]+@[^@\s]+\.[^@\s]+>$")

DEFAULT_TYPE_MAPPING: Mapping[str, str | None] = MappingProxyType(
    {
        "create_file": "feat",
        "refactor_file": "refactor",
        "delete_file": "chore",
        "folder": "chore",
        "branch": None,
        "pull_request": None,
        "validation": None,
        "test": "test",
        "conditional_file": "feat",
    }
)


@dataclass(frozen=True)
class QualityChecksConfig:
    lint: bool = True
    test: bool = True
    lint_command: str = "make lint"
    test_command: str = "make test"


@dataclass(frozen=True)
class CommitConfig:
    """Process-wide commit settings, loaded once per run."""

    enabled: bool = True
    quality_checks: QualityChecksConfig = field(default_factory=QualityChecksConfig)
    conventional_commits: bool = True
    type_mapping: Mapping[str, str | None] = field(default_factory=lambda: DEFAULT_TYPE_MAPPING)
    co_author: str = "Plan Executor <noreply@plan-executor.dev>"
    emoji_enabled: bool = True
    emoji_robot: str = "\U0001F916"
    interactive_safety: bool = True

    def commit_type_for(self, step_type: str) -> str | None:
        return self.type_mapping.get(step_type)

    def should_commit(self, step_type: str) -> bool:
        if not self.enabled or not self.conventional_commits:
            return False
        return self.commit_type_for(step_type) is not None

    def with_overrides(self, **changes: Any) -> CommitConfig:
        return replace(self, **changes)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> CommitConfig:
        """Validate a ``{"commit": {...}}`` document; raises ConfigError listing every problem."""
        errors: list[str] = []
        if not isinstance(payload, Mapping):
            raise ConfigError(["document must be a mapping"])
        commit = payload.get("commit")
        if not isinstance(commit, Mapping):
            raise ConfigError(["commit: required mapping is missing"])

        defaults = cls()
        enabled = _bool(commit, "enabled", defaults.enabled, "commit", errors)

        checks_raw = commit.get("quality_checks") or {}
        if not isinstance(checks_raw, Mapping):
            errors.append("commit.quality_checks: must be a mapping")
            checks_raw = {}
        base_checks = defaults.quality_checks
        checks = QualityChecksConfig(
            lint=_bool(checks_raw, "lint", base_checks.lint, "commit.quality_checks", errors),
            test=_bool(checks_raw, "test", base_checks.test, "commit.quality_checks", errors),
            lint_command=_str(
                checks_raw, "lint_command", base_checks.lint_command, "commit.quality_checks", errors
            ),
            test_command=_str(
                checks_raw, "test_command", base_checks.test_command, "commit.quality_checks", errors
            ),
        )

        conventional_raw = commit.get("conventional_commits") or {}
        if not isinstance(conventional_raw, Mapping):
            errors.append("commit.conventional_commits: must be a mapping")
            conventional_raw = {}
        conventional = _bool(
            conventional_raw, "enabled", defaults.conventional_commits, "commit.conventional_commits", errors
        )
        mapping = dict(DEFAULT_TYPE_MAPPING)
        overrides = conventional_raw.get("type_mapping") or {}
        if not isinstance(overrides, Mapping):
            errors.append("commit.conventional_commits.type_mapping: must be a mapping")
            overrides = {}
        for step_type, commit_type in overrides.items():
            if step_type not in DEFAULT_TYPE_MAPPING:
                errors.append(f"commit.conventional_commits.type_mapping.{step_type}: unknown step type")
                continue
            if commit_type is not None and commit_type not in COMMIT_TYPES:
                errors.append(
                    f"commit.conventional_commits.type_mapping.{step_type}: "
                    f"must be one of {', '.join(COMMIT_TYPES)} or null"
                )
                continue
            mapping[step_type] = commit_type

        co_author = _str(commit, "co_author", defaults.co_author, "commit", errors)
        if not CO_AUTHOR_PATTERN.match(co_author):
            errors.append('commit.co_author: must be in format "Name <email@example.com>"')

        emoji_raw = commit.get("emoji") or {}
        if not isinstance(emoji_raw, Mapping):
            errors.append("commit.emoji: must be a mapping")
            emoji_raw = {}
        emoji_enabled = _bool(emoji_raw, "enabled", defaults.emoji_enabled, "commit.emoji", errors)
        robot = _str(emoji_raw, "robot", defaults.emoji_robot, "commit.emoji", errors)

        interactive = _bool(commit, "interactive_safety", defaults.interactive_safety, "commit", errors)

        if errors:
            raise ConfigError(errors)
        return cls(
            enabled=enabled,
            quality_checks=checks,
            conventional_commits=conventional,
            type_mapping=MappingProxyType(mapping),
            co_author=co_author,
            emoji_enabled=emoji_enabled,
            emoji_robot=robot,
            interactive_safety=interactive,
        )


def _bool(section: Mapping[str, Any], key: str, default: bool, prefix: str, errors: list[str]) -> bool:
    value = section.get(key)
    if value is None:
        return default
    if not isinstance(value, bool):
        errors.append(f"{prefix}.{key}: must be a boolean (type={type(value).__name__})")
        return default
    return value


def _str(section: Mapping[str, Any], key: str, default: str, prefix: str, errors: list[str]) -> str:
    value = section.get(key)
    if value is None:
        return default
    if not isinstance(value, str) or not value.strip():
        errors.append(f"{prefix}.{key}: must be a non-empty string (type={type(value).__name__})")
        return default
    return value


def load_commit_config(path: str | Path) -> CommitConfig:
    """Load the commit configuration, falling back to defaults on any problem."""
    path = Path(path)
    if not path.exists():
        LOGGER.info("No execute config found at %s, using defaults", path)
        return CommitConfig()
    try:
        payload = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        config = CommitConfig.from_dict(payload)
    except ConfigError as exc:
        LOGGER.warning("Configuration validation errors in %s:", path)
        for error in exc.errors:
            LOGGER.warning("  - %s", error)
        LOGGER.warning("Using default configuration")
        return CommitConfig()
    except (OSError, yaml.YAMLError) as exc:
        LOGGER.warning("Failed to load config %s: %s, using defaults", path, exc)
        return CommitConfig()
    LOGGER.info("Loaded commit configuration from %s", path)
    return config

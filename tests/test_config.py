from __future__ import annotations

from pathlib import Path
import sys

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from plan_executor.config import CommitConfig, load_commit_config
from plan_executor.errors import ConfigError


def test_defaults_map_step_types() -> None:
    config = CommitConfig()
    assert config.commit_type_for("create_file") == "feat"
    assert config.commit_type_for("folder") == "chore"
    assert config.should_commit("refactor_file")
    assert not config.should_commit("branch")
    assert not config.should_commit("pull_request")
    assert not config.should_commit("validation")


def test_from_dict_merges_type_mapping_overrides() -> None:
    config = CommitConfig.from_dict(
        {
            "commit": {
                "enabled": True,
                "quality_checks": {"lint": False, "test_command": "make check"},
                "conventional_commits": {"type_mapping": {"folder": None, "delete_file": "refactor"}},
                "co_author": "Build Bot <bot@example.com>",
                "emoji": {"enabled": False},
                "interactive_safety": False,
            }
        }
    )
    assert config.quality_checks.lint is False
    assert config.quality_checks.test is True
    assert config.quality_checks.test_command == "make check"
    assert config.quality_checks.lint_command == "make lint"
    assert not config.should_commit("folder")
    assert config.commit_type_for("delete_file") == "refactor"
    assert config.commit_type_for("create_file") == "feat"
    assert config.co_author == "Build Bot <bot@example.com>"
    assert config.emoji_enabled is False
    assert config.interactive_safety is False


def test_disabled_commits_never_commit() -> None:
    config = CommitConfig.from_dict({"commit": {"enabled": False}})
    assert not config.should_commit("create_file")
    config = CommitConfig.from_dict({"commit": {"conventional_commits": {"enabled": False}}})
    assert not config.should_commit("create_file")


def test_from_dict_reports_every_error() -> None:
    with pytest.raises(ConfigError) as excinfo:
        CommitConfig.from_dict(
            {
                "commit": {
                    "enabled": "yes",
                    "co_author": "no email here",
                    "conventional_commits": {"type_mapping": {"create_file": "feature", "bogus": "feat"}},
                }
            }
        )
    errors = excinfo.value.errors
    assert any(error.startswith("commit.enabled") for error in errors)
    assert any(error.startswith("commit.co_author") for error in errors)
    assert any("type_mapping.create_file" in error for error in errors)
    assert any("type_mapping.bogus" in error for error in errors)


def test_missing_commit_section_is_an_error() -> None:
    with pytest.raises(ConfigError):
        CommitConfig.from_dict({"other": {}})


def test_load_falls_back_to_defaults(tmp_path: Path) -> None:
    assert load_commit_config(tmp_path / "missing.yml") == CommitConfig()

    invalid = tmp_path / "invalid.yml"
    invalid.write_text("commit:\n  enabled: sometimes\n", encoding="utf-8")
    assert load_commit_config(invalid) == CommitConfig()

    broken = tmp_path / "broken.yml"
    broken.write_text("commit: [\n", encoding="utf-8")
    assert load_commit_config(broken) == CommitConfig()


def test_load_reads_valid_file(tmp_path: Path) -> None:
    path = tmp_path / "execute.yml"
    path.write_text("commit:\n  quality_checks:\n    lint: false\n", encoding="utf-8")
    config = load_commit_config(path)
    assert config.quality_checks.lint is False
    assert config.should_commit("create_file")

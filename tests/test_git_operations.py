from __future__ import annotations

from pathlib import Path
import sys

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from plan_executor.errors import TerminalOperationError, TransientOperationError
from plan_executor.gitops import CommandOutcome, GitClient, execute_git_operation, sanitize_path
from plan_executor.gitops.operations import CommandFailed


class FakeRunner:
    def __init__(self, outcomes: list[CommandOutcome] | None = None) -> None:
        self.outcomes = list(outcomes or [])
        self.calls: list[list[str]] = []

    def __call__(self, argv, cwd, timeout_s) -> CommandOutcome:
        self.calls.append(list(argv))
        if self.outcomes:
            return self.outcomes.pop(0)
        return CommandOutcome(0, "", "")


class CountingLimiter:
    def __init__(self) -> None:
        self.acquired = 0

    def acquire(self) -> float:
        self.acquired += 1
        return 0.0


def _client(runner: FakeRunner, sleeps: list[float] | None = None, **kwargs) -> GitClient:
    sink = sleeps if sleeps is not None else []
    return GitClient("/repo", runner=runner, sleep=sink.append, **kwargs)


def test_terminal_error_is_attempted_once() -> None:
    runner = FakeRunner([CommandOutcome(1, "", "fatal: not a git repository (or any parent)")])
    sleeps: list[float] = []
    result = _client(runner, sleeps).status()

    assert not result.success
    assert result.terminal
    assert result.retries == 0
    assert len(runner.calls) == 1
    assert sleeps == []
    assert "Suggestion:" in result.error
    with pytest.raises(TerminalOperationError):
        result.raise_for_status()


def test_transient_error_retries_with_linear_backoff() -> None:
    runner = FakeRunner(
        [
            CommandOutcome(128, "", "fatal: Unable to create '.git/index.lock': File exists."),
            CommandOutcome(128, "", "fatal: Unable to create '.git/index.lock': File exists."),
            CommandOutcome(0, "ok", ""),
        ]
    )
    sleeps: list[float] = []
    result = _client(runner, sleeps).add("src/a.ts")

    assert result.success
    assert result.retries == 2
    assert sleeps == [1.0, 2.0]
    assert len(runner.calls) == 3


def test_exhausted_retries_report_transient_error() -> None:
    runner = FakeRunner([CommandOutcome(1, "", "error: could not lock config file")] * 5)
    sleeps: list[float] = []
    result = _client(runner, sleeps, max_retries=3).commit("feat(core): x")

    assert not result.success
    assert not result.terminal
    assert result.retries == 3
    assert len(runner.calls) == 4
    assert sleeps == [1.0, 2.0, 3.0]
    with pytest.raises(TransientOperationError) as excinfo:
        result.raise_for_status()
    assert excinfo.value.retries == 3
    assert excinfo.value.operation == "commit"


def test_execute_git_operation_handles_os_errors() -> None:
    attempts = []

    def thunk() -> str:
        attempts.append(1)
        if len(attempts) < 2:
            raise OSError("resource temporarily unavailable")
        return "done"

    sleeps: list[float] = []
    result = execute_git_operation("status", thunk, base_delay_s=0.5, sleep=sleeps.append)
    assert result.success
    assert result.output == "done"
    assert sleeps == [0.5]


def test_nothing_to_commit_is_terminal() -> None:
    def thunk() -> str:
        raise CommandFailed(CommandOutcome(1, "nothing to commit, working tree clean", ""))

    result = execute_git_operation("commit", thunk, sleep=lambda s: None)
    assert result.terminal
    assert result.error.startswith("Git commit failed: nothing to commit")


def test_add_strips_shell_metacharacters() -> None:
    runner = FakeRunner()
    _client(runner).add("src/a.ts; rm -rf /")

    argv = runner.calls[0]
    assert argv[:3] == ["git", "add", "--"]
    assert argv[-1] == "src/a.ts rm -rf /"
    assert len(argv) == 4


def test_sanitize_path_removes_every_metacharacter() -> None:
    assert sanitize_path("a$(whoami)`id`|b&c") == "awhoamiidbc"
    assert sanitize_path("src/domain/user.ts") == "src/domain/user.ts"


def test_rate_limiter_only_guards_mutations() -> None:
    limiter = CountingLimiter()
    client = _client(FakeRunner(), rate_limiter=limiter)
    client.status()
    client.is_repository()
    assert limiter.acquired == 0
    client.add(["a"], all_changes=True)
    client.commit("msg")
    client.checkout("main")
    client.reset("abc123")
    assert limiter.acquired == 4


def test_probe_answers_instead_of_raising() -> None:
    def missing_git(argv, cwd, timeout_s):
        raise FileNotFoundError("git")

    client = GitClient("/repo", runner=missing_git)
    assert client.is_repository() is False
    assert client.has_commits() is False
    assert client.head_hash() is None


def test_changed_paths_parses_porcelain() -> None:
    status = " M src/a.ts\0?? new/file.txt\0R  renamed.ts\0old.ts\0?? src/domain/models/café.ts\0"
    runner = FakeRunner([CommandOutcome(0, status, "")])
    client = _client(runner)
    assert client.changed_paths() == {"src/a.ts", "new/file.txt", "renamed.ts", "src/domain/models/café.ts"}
    assert "-z" in runner.calls[0]


def test_untracked_files_keeps_non_ascii_names() -> None:
    runner = FakeRunner([CommandOutcome(0, "docs/naïve notes.md\0src/café.ts\0", "")])
    client = _client(runner)
    assert client.untracked_files() == {"docs/naïve notes.md", "src/café.ts"}
    assert runner.calls[0][:3] == ["git", "ls-files", "-z"]


def test_branch_commands() -> None:
    runner = FakeRunner()
    client = _client(runner)
    client.create_branch("feature/T1")
    client.checkout("HEAD", ["src/a.ts"])
    assert runner.calls[0] == ["git", "checkout", "-b", "feature/T1"]
    assert runner.calls[1] == ["git", "checkout", "HEAD", "--", "src/a.ts"]

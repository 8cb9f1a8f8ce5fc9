from __future__ import annotations

import logging
import os
import re
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, Sequence

from ..errors import TerminalOperationError, TransientOperationError
from .rate_limit import TokenBucket

LOGGER = logging.getLogger(__name__)

# Matched against git's human-readable output, so a git release that rewords
# one of these messages (or a non-English locale) turns a terminal failure
# into a retried one. LC_ALL=C is forced on every invocation below.
TERMINAL_PATTERNS = (
    re.compile(r"not a git repository", re.IGNORECASE),
    re.compile(r"no changes added to commit", re.IGNORECASE),
    re.compile(r"nothing to commit", re.IGNORECASE),
    re.compile(r"pathspec .* did not match", re.IGNORECASE),
    re.compile(r"fatal: bad object", re.IGNORECASE),
    re.compile(r"permission denied", re.IGNORECASE),
)

SUGGESTIONS = {
    "add": "Check that the file paths exist and are not ignored by .gitignore.",
    "commit": "Make sure there are staged changes and that user.name/user.email are configured.",
    "reset": "Verify the target commit exists (git log --oneline).",
    "status": "Run the command from inside a git repository.",
    "checkout": "Verify the branch or path exists and that the working tree has no conflicting changes.",
}
DEFAULT_SUGGESTION = "Inspect the repository state with 'git status' and retry."

SHELL_METACHARACTERS = re.compile(r"[;&|`$()]")


@dataclass
class CommandOutcome:
    returncode: int
    stdout: str
    stderr: str

    @property
    def combined(self) -> str:
        return "\n".join(part for part in (self.stdout.strip(), self.stderr.strip()) if part)


@dataclass
class GitOperationResult:
    operation: str
    success: bool
    output: str = ""
    error: str | None = None
    retries: int = 0
    terminal: bool = False

    def raise_for_status(self) -> GitOperationResult:
        if self.success:
            return self
        error_cls = TerminalOperationError if self.terminal else TransientOperationError
        raise error_cls(self.operation, self.error or "unknown git failure", retries=self.retries)


class CommandFailed(Exception):
    """Raised by a command thunk when the underlying process exits nonzero."""

    def __init__(self, outcome: CommandOutcome) -> None:
        self.outcome = outcome
        super().__init__(outcome.combined or f"exit code {outcome.returncode}")


def is_terminal_error(message: str) -> bool:
    return any(pattern.search(message) for pattern in TERMINAL_PATTERNS)


def format_git_error(operation: str, message: str) -> str:
    suggestion = SUGGESTIONS.get(operation, DEFAULT_SUGGESTION)
    return f"Git {operation} failed: {message.strip()}\nSuggestion: {suggestion}"


def sanitize_path(path: str) -> str:
    cleaned = SHELL_METACHARACTERS.sub("", str(path)).strip()
    if cleaned != str(path):
        LOGGER.warning("Stripped shell metacharacters from git path %r", path)
    return cleaned


def execute_git_operation(
    operation: str,
    thunk: Callable[[], str],
    max_retries: int = 3,
    base_delay_s: float = 1.0,
    sleep: Callable[[float], None] = time.sleep,
) -> GitOperationResult:
    """Run ``thunk`` with retries; terminal failures are attempted exactly once.

    ``thunk`` returns the command output or raises. The n-th retry waits
    ``base_delay_s * n`` seconds.
    """
    retries = 0
    while True:
        try:
            output = thunk()
            if retries:
                LOGGER.info("Git %s succeeded after %d retries", operation, retries)
            return GitOperationResult(operation, True, output=output, retries=retries)
        except (CommandFailed, OSError, subprocess.SubprocessError) as exc:
            message = str(exc)
            if is_terminal_error(message):
                LOGGER.debug("Git %s hit terminal error: %s", operation, message)
                return GitOperationResult(
                    operation,
                    False,
                    error=format_git_error(operation, message),
                    retries=retries,
                    terminal=True,
                )
            if retries >= max_retries:
                LOGGER.error("Git %s failed after %d retries: %s", operation, retries, message)
                return GitOperationResult(
                    operation, False, error=format_git_error(operation, message), retries=retries
                )
            retries += 1
            delay = base_delay_s * retries
            LOGGER.warning(
                "Git %s failed (attempt %d/%d), retrying in %.1fs: %s",
                operation,
                retries,
                max_retries + 1,
                delay,
                message,
            )
            sleep(delay)


Runner = Callable[[Sequence[str], Path, float], CommandOutcome]


def subprocess_runner(argv: Sequence[str], cwd: Path, timeout_s: float) -> CommandOutcome:
    proc = subprocess.run(
        list(argv),
        cwd=cwd,
        capture_output=True,
        encoding="utf-8",
        errors="surrogateescape",
        timeout=timeout_s,
        env=_git_env(),
    )
    return CommandOutcome(proc.returncode, proc.stdout, proc.stderr)


def _git_env() -> dict[str, str]:
    env = os.environ.copy()
    env["LC_ALL"] = "C"
    env["GIT_TERMINAL_PROMPT"] = "0"
    return env


class GitClient:
    """Thin wrappers over ``git`` built on :func:`execute_git_operation`.

    Mutating calls take a token from ``rate_limiter`` first.
    """

    def __init__(
        self,
        repo: str | Path,
        max_retries: int = 3,
        base_delay_s: float = 1.0,
        timeout_s: float = 60.0,
        rate_limiter: TokenBucket | None = None,
        runner: Runner = subprocess_runner,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.repo = Path(repo)
        self.max_retries = max_retries
        self.base_delay_s = base_delay_s
        self.timeout_s = timeout_s
        self.rate_limiter = rate_limiter
        self.runner = runner
        self.sleep = sleep

    def _thunk(self, args: Sequence[str]) -> Callable[[], str]:
        argv = ["git", *args]

        def run() -> str:
            outcome = self.runner(argv, self.repo, self.timeout_s)
            if outcome.returncode != 0:
                raise CommandFailed(outcome)
            return outcome.stdout

        return run

    def run(self, operation: str, args: Sequence[str], mutating: bool = False) -> GitOperationResult:
        if mutating and self.rate_limiter is not None:
            self.rate_limiter.acquire()
        return execute_git_operation(
            operation,
            self._thunk(args),
            max_retries=self.max_retries,
            base_delay_s=self.base_delay_s,
            sleep=self.sleep,
        )

    def probe(self, args: Sequence[str]) -> CommandOutcome:
        """Single read-only attempt whose nonzero exit is an answer, not an error."""
        try:
            return self.runner(["git", *args], self.repo, self.timeout_s)
        except (OSError, subprocess.SubprocessError) as exc:
            return CommandOutcome(127, "", str(exc))

    def add(self, paths: str | Iterable[str], all_changes: bool = False) -> GitOperationResult:
        cleaned = _clean_paths(paths)
        args = ["add", "-A", "--", *cleaned] if all_changes else ["add", "--", *cleaned]
        return self.run("add", args, mutating=True)

    def commit(self, message: str) -> GitOperationResult:
        return self.run("commit", ["commit", "-m", message], mutating=True)

    def reset(self, commit: str, mode: str = "mixed") -> GitOperationResult:
        return self.run("reset", ["reset", f"--{mode}", commit], mutating=True)

    def checkout(self, target: str, paths: str | Iterable[str] | None = None) -> GitOperationResult:
        args = ["checkout", target]
        if paths is not None:
            args += ["--", *_clean_paths(paths)]
        return self.run("checkout", args, mutating=True)

    def create_branch(self, name: str) -> GitOperationResult:
        return self.run("checkout", ["checkout", "-b", name], mutating=True)

    def status(self) -> GitOperationResult:
        return self.run("status", ["status", "--porcelain"])

    def has_commits(self) -> bool:
        return self.probe(["rev-parse", "--verify", "--quiet", "HEAD"]).returncode == 0

    def head_hash(self, short: bool = False) -> str | None:
        if not self.has_commits():
            return None
        args = ["rev-parse", "--short", "HEAD"] if short else ["rev-parse", "HEAD"]
        result = self.run("rev-parse", args)
        return result.output.strip() if result.success else None

    def is_repository(self) -> bool:
        outcome = self.probe(["rev-parse", "--is-inside-work-tree"])
        return outcome.returncode == 0 and outcome.stdout.strip() == "true"

    def is_clean(self) -> bool:
        return self.status().raise_for_status().output.strip() == ""

    def branch_exists(self, name: str) -> bool:
        return self.probe(["rev-parse", "--verify", "--quiet", f"refs/heads/{name}"]).returncode == 0

    def current_branch(self) -> str | None:
        outcome = self.probe(["rev-parse", "--abbrev-ref", "HEAD"])
        return outcome.stdout.strip() if outcome.returncode == 0 else None

    def changed_paths(self) -> set[str]:
        """Paths reported by porcelain status, untracked directories expanded."""
        outcome = self.probe(["status", "--porcelain", "-z", "--untracked-files=all"])
        if outcome.returncode != 0:
            return set()
        paths: set[str] = set()
        records = iter(outcome.stdout.split("\0"))
        for record in records:
            if len(record) < 4:
                continue
            paths.add(record[3:])
            if record[0] in "RC" or record[1] in "RC":
                # the source path of a rename or copy follows as its own record
                next(records, None)
        return paths

    def is_tracked(self, path: str) -> bool:
        return self.probe(["ls-files", "--error-unmatch", "--", sanitize_path(path)]).returncode == 0

    def untracked_files(self) -> set[str]:
        outcome = self.probe(["ls-files", "-z", "--others", "--exclude-standard"])
        if outcome.returncode != 0:
            return set()
        return {item for item in outcome.stdout.split("\0") if item}


def _clean_paths(paths: str | Iterable[str]) -> list[str]:
    items = [paths] if isinstance(paths, str) else list(paths)
    cleaned = [sanitize_path(item) for item in items]
    return [item for item in cleaned if item]

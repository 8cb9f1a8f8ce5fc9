from __future__ import annotations

import logging
import shlex
from dataclasses import dataclass, field
from pathlib import Path

from ..config import QualityChecksConfig
from ..errors import QualityGateFailure, ScriptSafetyViolation
from ..util.timing import log_timing
from .scripts import ScriptValidator, run_process, tail_lines

LOGGER = logging.getLogger(__name__)


@dataclass
class CheckResult:
    name: str
    passed: bool
    output: str = ""
    enabled: bool = True
    timed_out: bool = False


@dataclass
class QualityCheckResult:
    lint: CheckResult = field(default_factory=lambda: CheckResult("lint", True, enabled=False))
    test: CheckResult = field(default_factory=lambda: CheckResult("test", True, enabled=False))
    duration_s: float = 0.0

    @property
    def overall_passed(self) -> bool:
        return self.lint.passed and self.test.passed

    def failure_output(self) -> str:
        sections = []
        for check in (self.lint, self.test):
            if check.enabled and not check.passed:
                sections.append(f"[{check.name}]\n{check.output}".rstrip())
        return "\n".join(sections)

    def raise_for_status(self) -> None:
        if not self.overall_passed:
            raise QualityGateFailure(self)


class QualityGate:
    """Runs the configured lint and test commands inside the repository."""

    def __init__(
        self,
        checks: QualityChecksConfig,
        repo: str | Path,
        validator: ScriptValidator | None = None,
        timeout_s: float = 300.0,
        max_lines: int = 10,
    ) -> None:
        self.checks = checks
        self.repo = Path(repo)
        self.validator = validator if validator is not None else ScriptValidator(
            allowed_commands=(checks.lint_command, checks.test_command)
        )
        self.timeout_s = timeout_s
        self.max_lines = max_lines

    def run(self) -> QualityCheckResult:
        result = QualityCheckResult()
        with log_timing(LOGGER, "Quality checks") as watch:
            if self.checks.lint:
                result.lint = self._run_check("lint", self.checks.lint_command)
            if self.checks.test:
                result.test = self._run_check("test", self.checks.test_command)
        result.duration_s = watch.elapsed_s
        if result.overall_passed:
            LOGGER.info("Quality checks passed")
        else:
            LOGGER.warning(
                "Quality checks failed (lint=%s, test=%s)",
                "ok" if result.lint.passed else "failed",
                "ok" if result.test.passed else "failed",
            )
        return result

    def _run_check(self, name: str, command: str) -> CheckResult:
        try:
            self.validator.validate_command(command)
        except ScriptSafetyViolation as exc:
            return CheckResult(name, False, output=str(exc))
        LOGGER.info("Running %s: %s", name, command)
        argv = shlex.split(command)
        outcome = run_process(argv, cwd=self.repo, timeout_s=self.timeout_s)
        output = tail_lines(outcome.output, self.max_lines)
        if outcome.timed_out:
            LOGGER.error("%s timed out after %gs", name, self.timeout_s)
        elif not outcome.passed:
            LOGGER.error("%s failed with exit code %d", name, outcome.returncode)
        return CheckResult(name, outcome.passed, output=output, timed_out=outcome.timed_out)

from __future__ import annotations

from pathlib import Path
import logging
import shlex
import sys

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from plan_executor.config import QualityChecksConfig
from plan_executor.errors import QualityGateFailure
from plan_executor.quality import QualityGate
from plan_executor.util.timing import log_timing

PYTHON = shlex.quote(sys.executable)


def _command(code: str) -> str:
    return f"{PYTHON} -c {shlex.quote(code)}"


def test_both_checks_pass(tmp_path: Path) -> None:
    checks = QualityChecksConfig(lint_command=_command("print('lint ok')"), test_command=_command("pass"))
    result = QualityGate(checks, tmp_path).run()
    assert result.overall_passed
    assert result.lint.output == "lint ok"
    result.raise_for_status()


def test_failing_test_output_is_tailed(tmp_path: Path) -> None:
    noisy = "import sys\nfor i in range(30): print(f'line-{i}')\nsys.exit(1)"
    checks = QualityChecksConfig(lint_command=_command("pass"), test_command=_command(noisy))
    result = QualityGate(checks, tmp_path, max_lines=10).run()

    assert result.lint.passed
    assert not result.test.passed
    lines = result.test.output.splitlines()
    assert lines[0] == "line-20"
    assert lines[-1] == "line-29"
    assert "line-19" not in result.failure_output()
    with pytest.raises(QualityGateFailure) as excinfo:
        result.raise_for_status()
    assert "Lint: PASSED, Test: FAILED" in str(excinfo.value)


def test_timeout_marks_check_failed(tmp_path: Path) -> None:
    checks = QualityChecksConfig(lint=False, test_command=_command("import time; time.sleep(10)"))
    result = QualityGate(checks, tmp_path, timeout_s=0.5).run()
    assert result.test.timed_out
    assert not result.overall_passed
    assert "Timed out" in result.test.output
    assert result.duration_s >= 0.5


def test_missing_executable_fails_check(tmp_path: Path) -> None:
    checks = QualityChecksConfig(lint_command="definitely-not-a-real-linter --all", test=False)
    result = QualityGate(checks, tmp_path).run()
    assert not result.lint.passed
    assert "Could not start" in result.lint.output


def test_disabled_checks_pass_without_running(tmp_path: Path) -> None:
    checks = QualityChecksConfig(lint=False, test=False, lint_command="rm -rf /", test_command="rm -rf /")
    result = QualityGate(checks, tmp_path).run()
    assert result.overall_passed
    assert not result.lint.enabled
    assert result.failure_output() == ""


def test_log_timing_reports_elapsed_even_on_error(caplog) -> None:
    logger = logging.getLogger("plan_executor.tests.timing")
    with caplog.at_level("DEBUG", logger=logger.name):
        with pytest.raises(RuntimeError):
            with log_timing(logger, "Broken block", level=logging.DEBUG) as watch:
                raise RuntimeError("boom")
    assert watch.elapsed_s >= 0
    assert "Broken block finished in" in caplog.text

from __future__ import annotations

from pathlib import Path
import shlex
import shutil
import subprocess
import sys

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from plan_executor.audit import AuditLog
from plan_executor.config import CommitConfig, Config, QualityChecksConfig
from plan_executor.errors import ExecutionInterrupted
from plan_executor.executor import StepExecutor
from plan_executor.plan import PlanStore, StepStatus
from plan_executor.prompt import TyperPrompter

pytestmark = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")

PYTHON = shlex.quote(sys.executable)
PASSING = f"{PYTHON} -c pass"
FAILING_TESTS = f"{PYTHON} -c " + shlex.quote(
    "import sys\nfor i in range(30): print(f'line-{i}')\nsys.exit(1)"
)

USER_PLAN = """\
steps:
  - id: create-user
    type: create_file
    path: src/domain/models/user.ts
    template: |
      export class User {}
  - id: create-order
    type: create_file
    path: src/domain/models/order.ts
    template: |
      export class Order {}
"""


def _git(repo: Path, *args: str) -> str:
    proc = subprocess.run(["git", *args], cwd=repo, capture_output=True, text=True, check=True)
    return proc.stdout


def _init_repo(repo: Path) -> Path:
    repo.mkdir(parents=True, exist_ok=True)
    _git(repo, "init", "-q")
    _git(repo, "config", "user.email", "dev@example.com")
    _git(repo, "config", "user.name", "Dev")
    _git(repo, "config", "commit.gpgsign", "false")
    (repo / "README.md").write_text("demo\n", encoding="utf-8")
    _git(repo, "add", "-A")
    _git(repo, "commit", "-q", "-m", "initial")
    return repo


def _executor(plan: Path, repo: Path, test_command: str = PASSING, **kwargs) -> StepExecutor:
    commit_config = CommitConfig(
        quality_checks=QualityChecksConfig(lint_command=PASSING, test_command=test_command)
    )
    kwargs.setdefault("audit", AuditLog())
    return StepExecutor(
        plan,
        repo=repo,
        commit_config=commit_config,
        config=Config(safety_delay_s=0, git_retry_delay_s=0),
        interactive=False,
        sleep=lambda s: None,
        **kwargs,
    )


def test_create_file_is_committed_with_conventional_message(tmp_path: Path) -> None:
    repo = _init_repo(tmp_path / "repo")
    plan_path = tmp_path / "plan.yaml"
    plan_path.write_text(USER_PLAN, encoding="utf-8")

    audit = AuditLog()
    report = _executor(plan_path, repo, audit=audit).run()

    assert report.status == "SUCCESS"
    assert report.exit_code == 0
    assert report.succeeded == 2
    assert len(report.commit_hashes) == 2
    subjects = _git(repo, "log", "--format=%s", "-3").splitlines()
    assert subjects == [
        "feat(domain): create order.ts - Order entity",
        "feat(domain): create user.ts - User entity",
        "initial",
    ]
    assert "Co-Authored-By: Plan Executor <noreply@plan-executor.dev>" in _git(repo, "log", "-1", "--format=%B")
    assert _git(repo, "status", "--porcelain") == ""

    plan = PlanStore(plan_path).load()
    assert [step.status for step in plan.steps] == [StepStatus.SUCCESS, StepStatus.SUCCESS]
    assert plan.steps[0].rlhf_score == 2
    assert "Committed" in plan.steps[0].execution_log
    assert plan.evaluation.final_status == "SUCCESS"
    assert plan.evaluation.final_rlhf_score == 2.0
    assert plan.evaluation.commit_hashes == report.commit_hashes
    assert len(audit.entries("commit_created")) == 2


def test_failing_tests_roll_back_and_stop(tmp_path: Path) -> None:
    repo = _init_repo(tmp_path / "repo")
    head = _git(repo, "rev-parse", "HEAD")
    plan_path = tmp_path / "plan.yaml"
    plan_path.write_text(USER_PLAN, encoding="utf-8")

    report = _executor(plan_path, repo, test_command=FAILING_TESTS).run()

    assert report.status == "FAILED"
    assert report.exit_code == 1
    assert report.failed_step == "create-user"
    assert _git(repo, "rev-parse", "HEAD") == head
    assert _git(repo, "status", "--porcelain") == ""
    assert not (repo / "src").exists()

    plan = PlanStore(plan_path).load()
    failed, later = plan.steps
    assert failed.status == StepStatus.FAILED
    assert failed.rlhf_score == -2
    assert "line-29" in failed.execution_log
    assert "line-20" in failed.execution_log
    assert "line-19" not in failed.execution_log
    assert later.status == StepStatus.PENDING
    assert later.execution_log == ""
    assert plan.evaluation.final_status == "FAILED"


def test_failed_step_is_retried_on_rerun(tmp_path: Path) -> None:
    repo = _init_repo(tmp_path / "repo")
    plan_path = tmp_path / "plan.yaml"
    plan_path.write_text(USER_PLAN, encoding="utf-8")
    assert _executor(plan_path, repo, test_command=FAILING_TESTS).run().exit_code == 1

    report = _executor(plan_path, repo).run()
    assert report.status == "SUCCESS"
    assert report.executed == 2
    plan = PlanStore(plan_path).load()
    assert all(step.status == StepStatus.SUCCESS for step in plan.steps)
    assert plan.evaluation.final_status == "SUCCESS"


def test_branch_step_run_twice(tmp_path: Path) -> None:
    repo = _init_repo(tmp_path / "repo")
    start_branch = _git(repo, "rev-parse", "--abbrev-ref", "HEAD").strip()
    plan_text = "steps:\n  - id: branch\n    type: branch\n    action:\n      branch_name: feature/T1\n"
    plan_path = tmp_path / "plan.yaml"

    plan_path.write_text(plan_text, encoding="utf-8")
    first = _executor(plan_path, repo).run()
    assert first.status == "SUCCESS"
    assert _git(repo, "rev-parse", "--abbrev-ref", "HEAD").strip() == "feature/T1"

    _git(repo, "checkout", "-q", start_branch)
    plan_path.write_text(plan_text, encoding="utf-8")
    second = _executor(plan_path, repo).run()
    assert second.status == "SUCCESS"
    assert _git(repo, "rev-parse", "--abbrev-ref", "HEAD").strip() == "feature/T1"
    step = PlanStore(plan_path).load().steps[0]
    assert "Checked out existing branch feature/T1" in step.execution_log
    assert second.commit_hashes == []


def test_completed_plan_rerun_is_a_no_op(tmp_path: Path) -> None:
    repo = _init_repo(tmp_path / "repo")
    plan_path = tmp_path / "plan.yaml"
    plan_path.write_text(USER_PLAN, encoding="utf-8")
    _executor(plan_path, repo).run()
    head = _git(repo, "rev-parse", "HEAD")
    saved = plan_path.read_text(encoding="utf-8")

    report = _executor(plan_path, repo).run()
    assert report.status == "SUCCESS"
    assert report.executed == 0
    assert report.skipped == 2
    assert _git(repo, "rev-parse", "HEAD") == head
    assert plan_path.read_text(encoding="utf-8") == saved


def test_empty_plan_is_a_no_op(tmp_path: Path) -> None:
    plan_path = tmp_path / "plan.yaml"
    plan_path.write_text("steps: []\n", encoding="utf-8")
    report = _executor(plan_path, tmp_path).run()
    assert report.exit_code == 0
    assert report.total == 0
    assert plan_path.read_text(encoding="utf-8") == "steps: []\n"


def test_skipped_conditional_step(tmp_path: Path) -> None:
    repo = _init_repo(tmp_path / "repo")
    plan_path = tmp_path / "plan.yaml"
    plan_path.write_text(
        "metadata:\n  framework: vue\n"
        "steps:\n"
        "  - id: react-only\n    type: conditional_file\n    path: src/app.tsx\n    template: x\n"
        "    action:\n      when:\n        framework: react\n      operation: create_file\n",
        encoding="utf-8",
    )
    report = _executor(plan_path, repo).run()
    assert report.status == "SUCCESS"
    assert report.skipped == 1
    assert PlanStore(plan_path).load().steps[0].status == StepStatus.SKIPPED
    assert not (repo / "src").exists()


class InterruptingGate:
    def run(self):
        raise ExecutionInterrupted("SIGINT", 130)


def test_interrupt_rolls_back_current_step(tmp_path: Path) -> None:
    repo = _init_repo(tmp_path / "repo")
    plan_path = tmp_path / "plan.yaml"
    plan_path.write_text(USER_PLAN, encoding="utf-8")

    report = _executor(plan_path, repo, quality_gate=InterruptingGate()).run()

    assert report.status == "INTERRUPTED"
    assert report.exit_code == 130
    assert not (repo / "src").exists()
    plan = PlanStore(plan_path).load()
    assert [step.status for step in plan.steps] == [StepStatus.PENDING, StepStatus.PENDING]


def test_outside_repository_aborts(tmp_path: Path) -> None:
    plan_path = tmp_path / "plan.yaml"
    plan_path.write_text(USER_PLAN, encoding="utf-8")
    workdir = tmp_path / "not-a-repo"
    workdir.mkdir()

    report = _executor(plan_path, workdir).run()
    assert report.status == "ABORTED"
    assert report.exit_code == 1
    assert PlanStore(plan_path).load().steps[0].status == StepStatus.PENDING


def test_injected_collaborators_are_kept(tmp_path: Path) -> None:
    audit = AuditLog()
    config = Config()
    executor = StepExecutor(tmp_path / "plan.yaml", repo=tmp_path, config=config, audit=audit, interactive=False)
    assert executor.audit is audit
    assert executor.config is config
    assert executor.prompter is None


def test_interactive_executor_prompts_through_typer(tmp_path: Path) -> None:
    executor = StepExecutor(tmp_path / "plan.yaml", repo=tmp_path, interactive=True, audit=AuditLog())
    assert isinstance(executor.prompter, TyperPrompter)


def test_non_ascii_path_is_committed(tmp_path: Path) -> None:
    repo = _init_repo(tmp_path / "repo")
    plan_path = tmp_path / "plan.yaml"
    plan_path.write_text(
        "steps:\n"
        "  - id: a\n"
        "    type: create_file\n"
        "    path: src/domain/models/café.ts\n"
        "    template: |\n"
        "      export class Cafe {}\n",
        encoding="utf-8",
    )

    report = _executor(plan_path, repo).run()

    assert report.status == "SUCCESS"
    assert len(report.commit_hashes) == 1
    assert _git(repo, "status", "--porcelain") == ""
    committed = _git(repo, "-c", "core.quotepath=off", "show", "--name-only", "--format=", "HEAD")
    assert committed.split() == ["src/domain/models/café.ts"]


def test_default_audit_log_keeps_the_tree_clean(tmp_path: Path, caplog) -> None:
    repo = _init_repo(tmp_path / "repo")
    first = tmp_path / "first.yaml"
    first.write_text(USER_PLAN, encoding="utf-8")
    second = tmp_path / "second.yaml"
    second.write_text(
        "steps:\n"
        "  - id: create-invoice\n"
        "    type: create_file\n"
        "    path: src/domain/models/invoice.ts\n"
        "    template: |\n"
        "      export class Invoice {}\n",
        encoding="utf-8",
    )

    assert _executor(first, repo, audit=None).run().status == "SUCCESS"
    assert (repo / ".plan-executor" / "state" / "audit.jsonl").exists()
    assert _git(repo, "status", "--porcelain") == ""

    caplog.clear()
    with caplog.at_level("WARNING"):
        report = _executor(second, repo, audit=None).run()
    assert report.status == "SUCCESS"
    assert "Uncommitted changes" not in caplog.text
    assert _git(repo, "status", "--porcelain") == ""

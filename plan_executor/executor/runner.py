from __future__ import annotations

import logging
import signal
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from ..audit import AuditLog
from ..commit_message import build_commit_message
from ..config import CommitConfig, Config
from ..errors import ExecutionInterrupted, QualityGateFailure
from ..gitops import (
    GitClient,
    PullRequestOpener,
    TokenBucket,
    check_git_safety,
    default_pull_request_opener,
)
from ..plan.models import Plan, Step, StepStatus, StepType
from ..plan.store import PlanStore
from ..prompt import Prompter, TyperPrompter
from ..quality import QualityCheckResult, QualityGate, ScriptValidator, run_validation_script, tail_lines
from ..rollback import RollbackCoordinator, Snapshot
from ..scoring.engine import Scoreboard, ScoringEngine
from ..util.timing import log_timing
from .handlers import HandlerContext, StepEffect, dispatch, prevalidate_for_layer

LOGGER = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_FAILURE = 1
SIGNAL_EXIT_CODES = {signal.SIGINT: 130, signal.SIGTERM: 143}


@dataclass
class RunReport:
    status: str
    exit_code: int
    total: int = 0
    executed: int = 0
    succeeded: int = 0
    skipped: int = 0
    failed_step: str | None = None
    error: str | None = None
    commit_hashes: list[str] = field(default_factory=list)
    scores: dict[str, object] = field(default_factory=dict)

    @property
    def average_score(self) -> float:
        return float(self.scores.get("average", 0.0))

    def to_dict(self) -> dict[str, object]:
        return {
            "status": self.status,
            "exit_code": self.exit_code,
            "total": self.total,
            "executed": self.executed,
            "succeeded": self.succeeded,
            "skipped": self.skipped,
            "failed_step": self.failed_step,
            "error": self.error,
            "commit_hashes": list(self.commit_hashes),
            "scores": self.scores,
        }


class StepFailed(Exception):
    def __init__(self, step: Step, cause: Exception) -> None:
        self.step = step
        self.cause = cause
        super().__init__(f"Step '{step.id}' failed: {cause}")


class StepExecutor:
    """Applies a plan's steps in order, one commit per file-mutating step.

    The plan file is rewritten after every status change, so an aborted run
    resumes from the first step that is not SUCCESS or SKIPPED.
    """

    def __init__(
        self,
        plan_path: str | Path,
        repo: str | Path = ".",
        commit_config: CommitConfig | None = None,
        config: Config | None = None,
        interactive: bool | None = None,
        prompter: Prompter | None = None,
        git: GitClient | None = None,
        scoring: ScoringEngine | None = None,
        quality_gate: QualityGate | None = None,
        pull_requests: PullRequestOpener | None = None,
        audit: AuditLog | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config if config is not None else Config()
        self.commit_config = commit_config if commit_config is not None else CommitConfig()
        self.repo = Path(repo).resolve()
        self.store = PlanStore(plan_path)
        self.interactive = self.commit_config.interactive_safety if interactive is None else interactive
        if prompter is None and self.interactive:
            prompter = TyperPrompter()
        self.prompter = prompter
        self.sleep = sleep
        self.audit = audit if audit is not None else AuditLog(
            capacity=self.config.audit_capacity,
            path=self.repo / self.config.audit_log_path,
            echo=self.config.audit_echo,
        )
        self.git = git if git is not None else GitClient(
            self.repo,
            max_retries=self.config.git_max_retries,
            base_delay_s=self.config.git_retry_delay_s,
            timeout_s=self.config.git_timeout_s,
            rate_limiter=TokenBucket(self.config.rate_limit_capacity, self.config.rate_limit_per_minute),
            sleep=sleep,
        )
        checks = self.commit_config.quality_checks
        self.validator = ScriptValidator(
            allowed_commands=(checks.lint_command, checks.test_command), audit=self.audit
        )
        self.quality_gate = quality_gate if quality_gate is not None else QualityGate(
            checks,
            self.repo,
            validator=self.validator,
            timeout_s=self.config.quality_timeout_s,
            max_lines=self.config.max_error_lines,
        )
        self.scoring = scoring if scoring is not None else ScoringEngine()
        self.pull_requests = pull_requests if pull_requests is not None else default_pull_request_opener(self.repo)
        self.rollback = RollbackCoordinator(self.git, audit=self.audit)
        self._new_commits: list[str] = []

    def run(self) -> RunReport:
        plan = self.store.load()
        steps = plan.steps
        report = RunReport(status="SUCCESS", exit_code=EXIT_SUCCESS, total=len(steps))
        if not steps:
            LOGGER.info("Plan %s has no steps, nothing to do", self.store.path)
            return report
        pending = [step for step in steps if not step.status.is_done]
        if not pending:
            LOGGER.info("All %d steps already completed", len(steps))
            report.skipped = len(steps)
            stale = plan.evaluation is None or plan.evaluation.final_status != "SUCCESS"
            self._finish(plan, report, persist=stale)
            return report

        safety = check_git_safety(
            self.git,
            interactive=self.interactive,
            prompter=self.prompter,
            delay_s=self.config.safety_delay_s,
            sleep=self.sleep,
        )
        if not safety.safe:
            LOGGER.error("Safety check failed: %s", safety.reason)
            report.status = "ABORTED"
            report.exit_code = EXIT_FAILURE
            report.error = f"Safety check failed: {safety.reason}"
            return report

        previous_handlers = self._install_signal_handlers()
        try:
            with log_timing(LOGGER, f"Plan {self.store.path.name}"):
                self._run_steps(plan, report)
        except ExecutionInterrupted as exc:
            LOGGER.warning("%s; plan state saved, rerun to resume", exc)
            report.status = "INTERRUPTED"
            report.exit_code = exc.exit_code
            report.error = str(exc)
            self._persist(plan)
        except StepFailed as exc:
            report.status = "FAILED"
            report.exit_code = EXIT_FAILURE
            report.failed_step = exc.step.id
            report.error = str(exc.cause)
            self._finish(plan, report, final_status="FAILED")
        else:
            self._finish(plan, report, final_status="SUCCESS")
        finally:
            self._restore_signal_handlers(previous_handlers)
            self.audit.flush()
        return report

    def _run_steps(self, plan: Plan, report: RunReport) -> None:
        layer = plan.layer
        for index, step in enumerate(plan.steps, start=1):
            if step.status.is_done:
                LOGGER.info("[%d/%d] %s already %s, skipping", index, report.total, step.id, step.status.value)
                report.skipped += 1
                continue
            if step.status == StepStatus.FAILED:
                LOGGER.info("Retrying previously failed step '%s'", step.id)
                step.status = StepStatus.PENDING
                step.rlhf_score = None
                step.execution_log = ""
            LOGGER.info("[%d/%d] Executing %s (%s)", index, report.total, step.id, step.type)
            report.executed += 1
            self._execute_step(plan, step, layer)
            if step.status == StepStatus.SKIPPED:
                report.skipped += 1
            else:
                report.succeeded += 1

    def _execute_step(self, plan: Plan, step: Step, layer: str | None) -> None:
        snapshot = self.rollback.snapshot(step.id, self._snapshot_path(step))
        self.audit.record("step_started", step_id=step.id, type=step.type)
        effect = StepEffect()
        quality: QualityCheckResult | None = None
        try:
            prevalidate_for_layer(step, layer)
            dispatch(step, self._context(plan), effect)
            if effect.skipped:
                step.status = StepStatus.SKIPPED
                step.execution_log = effect.text
                self._persist(plan)
                return
            if step.validation_script and step.type not in (StepType.VALIDATION.value, StepType.TEST.value):
                output = run_validation_script(
                    step.validation_script,
                    cwd=self.repo,
                    validator=self.validator,
                    timeout_s=self.config.script_timeout_s,
                    step_id=step.id,
                )
                effect.output.append(output.rstrip())
            commit_type_step = effect.commit_step_type or step.type
            if self.commit_config.should_commit(commit_type_step):
                quality = self.quality_gate.run()
                quality.raise_for_status()
            step_layer = self.scoring.resolve_layer(step, layer)
            result = self.scoring.score(
                step,
                True,
                output=effect.text,
                layer=step_layer,
                quality_passed=quality.overall_passed if quality else None,
            )
            commit = self._commit(step, commit_type_step, effect)
        except ExecutionInterrupted:
            try:
                self.rollback.rollback(snapshot, effect.created)
            finally:
                step.status = StepStatus.PENDING
                step.execution_log = "Interrupted; step rolled back"
            raise
        except Exception as exc:
            self._fail(plan, step, layer, snapshot, effect, exc, quality)
            raise StepFailed(step, exc) from exc

        log = [line for line in effect.output if line]
        if commit:
            log.append(f"Committed {commit}")
        if result.reasons:
            log.append(f"Score {result.score}: {', '.join(result.reasons)}")
        step.status = StepStatus.SUCCESS
        step.rlhf_score = result.score
        step.execution_log = tail_lines("\n".join(log), max(self.config.max_error_lines * 3, 1))
        self._persist(plan)
        LOGGER.info("Step '%s' succeeded (score %+d)", step.id, result.score)

    def _fail(
        self,
        plan: Plan,
        step: Step,
        layer: str | None,
        snapshot: Snapshot,
        effect: StepEffect,
        exc: Exception,
        quality: QualityCheckResult | None,
    ) -> None:
        LOGGER.error("Step '%s' failed: %s", step.id, exc)
        self.rollback.rollback(snapshot, effect.created)
        if isinstance(exc, QualityGateFailure):
            captured = exc.result.failure_output()
        else:
            captured = tail_lines(getattr(exc, "output", "") or "", self.config.max_error_lines)
        message = f"{type(exc).__name__}: {exc}"
        step.execution_log = f"{message}\n{captured}".rstrip()
        result = self.scoring.score(
            step,
            False,
            output=step.execution_log,
            layer=self.scoring.resolve_layer(step, layer),
            quality_passed=quality.overall_passed if quality else None,
        )
        step.status = StepStatus.FAILED
        step.rlhf_score = result.score
        self.audit.record("step_failed", step_id=step.id, error=str(exc), score=result.score)
        self._persist(plan)

    def _commit(self, step: Step, commit_type_step: str, effect: StepEffect) -> str | None:
        message = build_commit_message(commit_type_step, step.description, _commit_path(step), self.commit_config)
        if message is None:
            return None
        changed = self.git.changed_paths()
        stage = sorted(
            path
            for path in effect.paths
            if path in changed or any(item.startswith(path.rstrip("/") + "/") for item in changed)
        )
        if not stage:
            LOGGER.warning("Step '%s' left nothing to commit", step.id)
            return None
        self.git.add(stage, all_changes=True).raise_for_status()
        result = self.git.commit(str(message))
        if not result.success and result.terminal and "nothing to commit" in (result.error or "").lower():
            LOGGER.warning("Step '%s' left nothing to commit", step.id)
            return None
        result.raise_for_status()
        commit_hash = self.git.head_hash(short=True) or ""
        self._new_commits.append(commit_hash)
        self.audit.record("commit_created", step_id=step.id, hash=commit_hash, subject=message.subject)
        LOGGER.info("Committed %s: %s", commit_hash, message.subject)
        return f"{commit_hash} {message.subject}".strip()

    def _finish(
        self,
        plan: Plan,
        report: RunReport,
        final_status: str = "SUCCESS",
        persist: bool = True,
    ) -> None:
        board = Scoreboard.from_steps(plan.steps)
        report.scores = board.to_dict()
        report.commit_hashes = list(self._new_commits)
        if not persist:
            return
        evaluation = plan.ensure_evaluation()
        evaluation.final_status = final_status
        if board.total:
            evaluation.final_rlhf_score = round(board.average, 2)
        evaluation.commit_hashes.extend(hash_ for hash_ in self._new_commits if hash_)
        self._persist(plan)

    def _persist(self, plan: Plan) -> None:
        self.store.save(plan)

    def _context(self, plan: Plan) -> HandlerContext:
        return HandlerContext(
            repo=self.repo,
            plan=plan,
            git=self.git,
            validator=self.validator,
            pull_requests=self.pull_requests,
            script_timeout_s=self.config.script_timeout_s,
        )

    @staticmethod
    def _snapshot_path(step: Step) -> str | None:
        path = step.path
        if not path or "\0" in path:
            return None
        parts = Path(path.replace("\\", "/")).parts
        if Path(path).is_absolute() or ".." in parts:
            return None
        return Path(path.replace("\\", "/")).as_posix()

    def _install_signal_handlers(self) -> dict:
        if threading.current_thread() is not threading.main_thread():
            return {}
        previous = {}
        for signum in SIGNAL_EXIT_CODES:
            previous[signum] = signal.getsignal(signum)
            signal.signal(signum, self._on_signal)
        return previous

    @staticmethod
    def _restore_signal_handlers(previous: dict) -> None:
        for signum, handler in previous.items():
            signal.signal(signum, handler)

    @staticmethod
    def _on_signal(signum, frame) -> None:
        code = SIGNAL_EXIT_CODES.get(signum, 128 + int(signum))
        raise ExecutionInterrupted(signal.Signals(signum).name, code)


def _commit_path(step: Step) -> str | None:
    if step.path:
        return step.path
    folders = step.action_value("create_folders")
    if isinstance(folders, dict) and folders.get("basePath"):
        return str(folders["basePath"])
    return None

from __future__ import annotations


class PlanExecutorError(RuntimeError):
    """Base class for every failure raised by the executor."""


class ValidationError(PlanExecutorError):
    """A step is structurally invalid. Fatal and never retried."""


class PlanLoadError(PlanExecutorError):
    pass


class ConfigError(PlanExecutorError):
    def __init__(self, errors: list[str]) -> None:
        self.errors = list(errors)
        super().__init__("Invalid commit configuration: " + "; ".join(self.errors))


class GitOperationError(PlanExecutorError):
    def __init__(self, operation: str, message: str, retries: int = 0) -> None:
        self.operation = operation
        self.retries = retries
        super().__init__(message)


class TransientOperationError(GitOperationError):
    """All retries were used up on a failure that looked recoverable."""


class TerminalOperationError(GitOperationError):
    """Failure matched a terminal pattern; attempted exactly once."""


class QualityGateFailure(PlanExecutorError):
    def __init__(self, result) -> None:
        self.result = result
        super().__init__(
            "Quality checks failed. "
            f"Lint: {'PASSED' if result.lint.passed else 'FAILED'}, "
            f"Test: {'PASSED' if result.test.passed else 'FAILED'}"
        )


class ScriptSafetyViolation(PlanExecutorError):
    def __init__(self, script: str, reason: str) -> None:
        self.script = script
        self.reason = reason
        super().__init__(f"Unsafe script refused ({reason}): {script!r}")


class ScriptExecutionError(PlanExecutorError):
    def __init__(self, message: str, output: str = "", returncode: int | None = None) -> None:
        self.output = output
        self.returncode = returncode
        super().__init__(message)


class CommitMessageError(PlanExecutorError):
    pass


class ExecutionInterrupted(PlanExecutorError):
    def __init__(self, signal_name: str, exit_code: int) -> None:
        self.signal_name = signal_name
        self.exit_code = exit_code
        super().__init__(f"Execution interrupted by {signal_name}")

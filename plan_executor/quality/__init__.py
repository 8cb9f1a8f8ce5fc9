from .gate import CheckResult, QualityCheckResult, QualityGate
from .scripts import ScriptValidator, run_process, run_validation_script, tail_lines

__all__ = [
    "CheckResult",
    "QualityCheckResult",
    "QualityGate",
    "ScriptValidator",
    "run_process",
    "run_validation_script",
    "tail_lines",
]

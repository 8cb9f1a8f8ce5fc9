from .autofix import RULES, AutoFixReport, AutoFixResult, AutoFixRule, apply_autofix, autofix_plan
from .engine import (
    ScorePolicy,
    Scoreboard,
    ScoringEngine,
    StepScore,
    classify_failure,
    find_layer_violations,
    score_emoji,
    summarize_plan,
)

__all__ = [
    "RULES",
    "AutoFixReport",
    "AutoFixResult",
    "AutoFixRule",
    "apply_autofix",
    "autofix_plan",
    "ScorePolicy",
    "Scoreboard",
    "ScoringEngine",
    "StepScore",
    "classify_failure",
    "find_layer_violations",
    "score_emoji",
    "summarize_plan",
]

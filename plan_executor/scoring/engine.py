from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, field
from typing import Iterable, Mapping

from ..commit_message import extract_scope
from ..plan.models import LAYERS, Plan, Step, StepStatus

LOGGER = logging.getLogger(__name__)

MIN_SCORE = -2
MAX_SCORE = 2

CATASTROPHIC_PATTERNS = (
    re.compile(r"REPLACE.*WITH.*format", re.IGNORECASE | re.DOTALL),
    re.compile(r"architecture violation", re.IGNORECASE),
    re.compile(r"invalid template format", re.IGNORECASE),
    re.compile(r"<<<REPLACE>>>.*not found", re.IGNORECASE | re.DOTALL),
    re.compile(r"refactor markers? (?:are )?missing", re.IGNORECASE),
)
COMMON_FAILURE_PATTERNS = (
    re.compile(r"lint(?:ing)? failed", re.IGNORECASE),
    re.compile(r"tests? failed", re.IGNORECASE),
    re.compile(r"typescript|compilation error|TS\d{4}", re.IGNORECASE),
)
QUALITY_INDICATORS = (
    re.compile(r"@domainConcept"),
    re.compile(r"@pattern\b"),
    re.compile(r"@principle\b"),
)

EXTERNAL_DEPENDENCIES = re.compile(r"\b(axios|fetch|prisma|redis|mysql|postgres|mongodb|express)\b", re.IGNORECASE)

# Layers a module in the key layer must never import from.
FORBIDDEN_IMPORTS: Mapping[str, tuple[str, ...]] = {
    "domain": ("data", "infra", "presentation", "main"),
    "data": ("infra", "presentation", "main"),
    "infra": ("presentation", "main"),
    "presentation": ("infra", "main"),
    "main": (),
}

IMPORT_PATTERNS = (
    re.compile(r"""^\s*import\s+(?:type\s+)?[^'"\n]*?\s+from\s+['"]([^'"]+)['"]""", re.MULTILINE),
    re.compile(r"""^\s*import\s+['"]([^'"]+)['"]""", re.MULTILINE),
    re.compile(r"""require\(\s*['"]([^'"]+)['"]\s*\)"""),
    re.compile(r"^\s*from\s+([\w.]+)\s+import\b", re.MULTILINE),
    re.compile(r"^\s*import\s+([\w.]+)\s*$", re.MULTILINE),
)

ERROR_TYPES = (
    "lint",
    "test",
    "branch_conflict",
    "permission",
    "missing_dependency",
    "git_operation",
    "architecture_violation",
    "unknown",
)

_CLASSIFIERS = (
    ("architecture_violation", re.compile(r"architecture violation|cross-layer import|external dependenc", re.I)),
    ("branch_conflict", re.compile(r"branch.*already exists|merge conflict|CONFLICT", re.I)),
    ("permission", re.compile(r"permission denied|EACCES|unsafe script refused", re.I)),
    ("missing_dependency", re.compile(r"cannot find module|module not found|no module named|command not found", re.I)),
    ("lint", re.compile(r"lint: failed|lint(?:ing)? failed|eslint|ruff|flake8", re.I)),
    ("test", re.compile(r"test: failed|tests? failed|assert|\d+ failed", re.I)),
    ("git_operation", re.compile(r"\bgit\b", re.I)),
)

SCORE_STYLES = {
    2: ("\U0001F3C6", "green"),
    1: ("✅", "green"),
    0: ("⚠️", "yellow"),
    -1: ("❌", "red"),
    -2: ("\U0001F4A5", "red"),
}


def round_half_away(value: float) -> int:
    return int(math.copysign(math.floor(abs(value) + 0.5), value))


def clamp_score(value: float) -> int:
    return max(MIN_SCORE, min(MAX_SCORE, round_half_away(value)))


def score_emoji(score: int | None) -> tuple[str, str]:
    if score is None:
        return ("-", "dim")
    return SCORE_STYLES[clamp_score(score)]


def extract_imports(content: str) -> list[str]:
    modules: list[str] = []
    for pattern in IMPORT_PATTERNS:
        modules.extend(match.group(1) for match in pattern.finditer(content))
    return modules


def _module_layers(module: str) -> set[str]:
    layers = set()
    for part in re.split(r"[/.]", module.lstrip("@")):
        part = part.lower()
        if part == "infrastructure":
            part = "infra"
        if part in LAYERS:
            layers.add(part)
    return layers


def find_layer_violations(content: str, layer: str | None) -> list[str]:
    """Imports in ``content`` that break the dependency rule for ``layer``."""
    if not content or layer not in FORBIDDEN_IMPORTS:
        return []
    forbidden = set(FORBIDDEN_IMPORTS[layer])
    violations = []
    for module in extract_imports(content):
        crossed = _module_layers(module) & forbidden
        if crossed:
            violations.append(f"{module} (imports {', '.join(sorted(crossed))} from {layer})")
        elif layer == "domain" and EXTERNAL_DEPENDENCIES.search(module):
            violations.append(f"{module} (external dependency in domain)")
    return violations


def classify_failure(log: str | None) -> str:
    if not log:
        return "unknown"
    for error_type, pattern in _CLASSIFIERS:
        if pattern.search(log):
            return error_type
    return "unknown"


@dataclass(frozen=True)
class ScorePolicy:
    """Layer weighting applied to the raw score before clamping."""

    layer_multipliers: Mapping[str, float] = field(
        default_factory=lambda: {"domain": 1.5, "main": 1.5}
    )
    default_multiplier: float = 1.0

    def multiplier(self, layer: str | None) -> float:
        if layer is None:
            return self.default_multiplier
        return float(self.layer_multipliers.get(layer, self.default_multiplier))

    @classmethod
    def from_dict(cls, payload: Mapping[str, object] | None) -> ScorePolicy:
        if not payload:
            return cls()
        multipliers = payload.get("layer_multipliers") or {}
        if not isinstance(multipliers, Mapping):
            raise ValueError("layer_multipliers must be a mapping")
        unknown = set(multipliers) - set(LAYERS)
        if unknown:
            raise ValueError(f"Unknown layers in layer_multipliers: {', '.join(sorted(unknown))}")
        return cls(
            layer_multipliers={str(k): float(v) for k, v in multipliers.items()},
            default_multiplier=float(payload.get("default_multiplier", 1.0)),
        )


@dataclass
class StepScore:
    score: int
    raw: float
    reasons: list[str] = field(default_factory=list)
    violations: list[str] = field(default_factory=list)


class ScoringEngine:
    def __init__(self, policy: ScorePolicy | None = None) -> None:
        self.policy = policy if policy is not None else ScorePolicy()

    def resolve_layer(self, step: Step, plan_layer: str | None = None) -> str | None:
        scope = extract_scope(step.path)
        if scope in LAYERS:
            return scope
        return plan_layer

    def score(
        self,
        step: Step,
        success: bool,
        output: str = "",
        layer: str | None = None,
        quality_passed: bool | None = None,
    ) -> StepScore:
        reasons: list[str] = []
        content = "\n".join(part for part in (step.template, output) if part)
        if success:
            raw = 1.0
            reasons.append("step succeeded")
            if any(pattern.search(content) for pattern in QUALITY_INDICATORS):
                raw += 1
                reasons.append("documentation markers present")
        elif any(pattern.search(output) for pattern in CATASTROPHIC_PATTERNS):
            raw = -2.0
            reasons.append("catastrophic failure")
        else:
            raw = -1.0
            reasons.append("step failed")
            if any(pattern.search(output) for pattern in COMMON_FAILURE_PATTERNS):
                reasons.append("lint/test/compile failure")
        if quality_passed is False:
            raw -= 1
            reasons.append("quality gate failed")

        multiplier = self.policy.multiplier(layer)
        if multiplier != 1.0:
            reasons.append(f"{layer} layer weight x{multiplier:g}")
        weighted = raw * multiplier

        violations = find_layer_violations(step.template or "", layer)
        if violations:
            reasons.append("cross-layer import")
            LOGGER.warning("Step '%s' breaks the %s layer rule: %s", step.id, layer, "; ".join(violations))
            return StepScore(MIN_SCORE, weighted, reasons, violations)
        return StepScore(clamp_score(weighted), weighted, reasons)


@dataclass
class Scoreboard:
    """Run-level score aggregates."""

    counts: dict[int, int] = field(default_factory=lambda: {score: 0 for score in range(MIN_SCORE, MAX_SCORE + 1)})
    total: int = 0
    score_sum: int = 0

    def add(self, score: int) -> None:
        score = clamp_score(score)
        self.counts[score] += 1
        self.total += 1
        self.score_sum += score

    @property
    def average(self) -> float:
        return self.score_sum / self.total if self.total else 0.0

    @classmethod
    def from_steps(cls, steps: Iterable[Step]) -> Scoreboard:
        board = cls()
        for step in steps:
            if step.rlhf_score is not None:
                board.add(step.rlhf_score)
        return board

    def to_dict(self) -> dict[str, object]:
        return {
            "counts": {str(score): count for score, count in sorted(self.counts.items())},
            "total": self.total,
            "average": round(self.average, 2),
        }


def summarize_plan(plan: Plan) -> dict[str, object]:
    steps = plan.steps
    statuses = {status.value: 0 for status in StepStatus}
    failures: dict[str, int] = {}
    for step in steps:
        statuses[step.status.value] += 1
        if step.status == StepStatus.FAILED:
            error_type = classify_failure(step.execution_log)
            failures[error_type] = failures.get(error_type, 0) + 1
    return {
        "total": len(steps),
        "statuses": statuses,
        "failures": failures,
        "scores": Scoreboard.from_steps(steps).to_dict(),
    }

from __future__ import annotations

import copy
import logging
import re
from dataclasses import dataclass, field, replace
from typing import Callable

from ..plan.models import Plan, Step, StepStatus

LOGGER = logging.getLogger(__name__)

MANUAL_FLAG = "needs_manual_fix"
REPLACE_OPEN, REPLACE_CLOSE = "<<<REPLACE>>>", "<<</REPLACE>>>"
WITH_OPEN, WITH_CLOSE = "<<<WITH>>>", "<<</WITH>>>"

EXTERNAL_IMPORT_LINE = re.compile(
    r"""^[ \t]*import\b[^\n]*\bfrom\s+['"][^'"]*\b(?:axios|fetch|prisma|express)\b[^'"]*['"][^\n]*\n?""",
    re.MULTILINE,
)
METHOD_SIGNATURE = re.compile(r"^(\s*[A-Za-z_$][\w$]*\??\s*\([^)]*\)\s*:\s*[^;{}=\n]+?)\s*$")

MOCK_INPUT = {"id": "test-id", "name": "Test Name", "createdAt": "2024-01-01T00:00:00.000Z"}


def _manual(step: Step) -> Step:
    return replace(step, extras={**step.extras, MANUAL_FLAG: True})


def _concept_name(step: Step) -> str:
    name = re.sub(r"^create-", "", step.id).replace("-", " ").replace("_", " ")
    return re.sub(r"\b\w", lambda match: match.group(0).upper(), name)


def fix_missing_semicolon(step: Step) -> Step:
    if not step.template:
        return _manual(step)
    lines = []
    for line in step.template.split("\n"):
        match = METHOD_SIGNATURE.match(line)
        lines.append(match.group(1) + ";" if match else line)
    return replace(step, template="\n".join(lines))


def fix_external_dependency(step: Step) -> Step:
    if not step.template:
        return _manual(step)
    template = EXTERNAL_IMPORT_LINE.sub("", step.template)
    if "@domainConcept" not in template:
        template = (
            "/**\n"
            f" * @domainConcept {step.id.replace('-', ' ')}\n"
            " * @pattern Clean Architecture - Domain Layer\n"
            " * @principle No external dependencies\n"
            " */\n"
        ) + template
    return replace(step, template=template)


def fix_refactor_markers(step: Step) -> Step:
    template = step.template or ""
    if step.type != "refactor_file" or REPLACE_OPEN not in template or WITH_OPEN not in template:
        return _manual(step)
    if REPLACE_CLOSE in template and WITH_CLOSE in template:
        # Markers are balanced; the search text itself is wrong.
        return _manual(step)
    if REPLACE_CLOSE not in template:
        head, tail = template.split(WITH_OPEN, 1)
        template = head.rstrip() + "\n" + REPLACE_CLOSE + "\n" + WITH_OPEN + tail
    if WITH_CLOSE not in template:
        template = template.rstrip() + "\n" + WITH_CLOSE
    return replace(step, template=template)


def fix_existing_branch(step: Step) -> Step:
    branch = step.action_value("branch_name")
    if not branch:
        return _manual(step)
    script = (
        "# Check out the branch when it already exists\n"
        f'BRANCH_NAME="{branch}"\n'
        'if git show-ref --quiet "refs/heads/$BRANCH_NAME"; then\n'
        '  echo "Branch exists, checking out..."\n'
        '  git checkout "$BRANCH_NAME"\n'
        "else\n"
        '  echo "Creating new branch..."\n'
        '  git checkout -b "$BRANCH_NAME"\n'
        "fi\n"
    )
    return replace(step, validation_script=script)


def fix_uncommitted_changes(step: Step) -> Step:
    if not step.validation_script:
        return _manual(step)
    label = f"Auto-stash before {step.id}"
    script = (
        'if [ -n "$(git status --porcelain)" ]; then\n'
        f'  git stash push -u -m "{label}"\n'
        "fi\n\n"
        f"{step.validation_script.rstrip()}\n\n"
        f'if git stash list | grep -q "{label}"; then\n'
        "  git stash pop\n"
        "fi\n"
    )
    return replace(step, validation_script=script)


def fix_missing_mock_data(step: Step) -> Step:
    extras = dict(step.extras)
    extras.setdefault("mockInput", dict(MOCK_INPUT))
    extras.setdefault("mockOutput", {"success": True, "data": copy.deepcopy(extras["mockInput"])})
    return replace(step, extras=extras)


def fix_missing_documentation(step: Step) -> Step:
    if not step.template:
        return _manual(step)
    if "@domainConcept" in step.template:
        return step
    pattern = "Domain Entity" if step.type == "create_file" else "Refactoring"
    header = (
        "/**\n"
        f" * @domainConcept {_concept_name(step)}\n"
        f" * @pattern {pattern}\n"
        " * @description Auto-generated domain documentation\n"
        " */\n"
    )
    return replace(step, template=header + step.template)


@dataclass(frozen=True)
class AutoFixRule:
    pattern: re.Pattern
    error_type: str
    description: str
    fixer: Callable[[Step], Step]


RULES: tuple[AutoFixRule, ...] = (
    AutoFixRule(re.compile(r"missing semicolon", re.I), "lint", "Add missing semicolons", fix_missing_semicolon),
    AutoFixRule(
        re.compile(r"import.*from.*(axios|fetch|prisma|express)"),
        "architecture",
        "Remove external dependencies from domain layer",
        fix_external_dependency,
    ),
    AutoFixRule(
        re.compile(r"<<<REPLACE>>>|REPLACE/WITH|refactor markers?|invalid template format", re.I),
        "template",
        "Fix REPLACE/WITH syntax",
        fix_refactor_markers,
    ),
    AutoFixRule(re.compile(r"branch.*already exists", re.I), "git", "Handle existing branch", fix_existing_branch),
    AutoFixRule(
        re.compile(r"uncommitted changes", re.I), "git", "Stash uncommitted changes", fix_uncommitted_changes
    ),
    AutoFixRule(re.compile(r"missing.*mock.*data", re.I), "test", "Add default mock data", fix_missing_mock_data),
    AutoFixRule(
        re.compile(r"missing.*@domainConcept", re.I),
        "documentation",
        "Add domain documentation",
        fix_missing_documentation,
    ),
)


@dataclass
class AutoFixResult:
    step: Step
    applied: list[str] = field(default_factory=list)
    manual: list[str] = field(default_factory=list)

    @property
    def fixed(self) -> bool:
        return bool(self.applied) and not self.manual


def matching_rules(log: str, rules: tuple[AutoFixRule, ...] = RULES) -> list[AutoFixRule]:
    return [rule for rule in rules if rule.pattern.search(log)]


def apply_autofix(step: Step, rules: tuple[AutoFixRule, ...] = RULES) -> AutoFixResult:
    """Run every rule matching a FAILED step's log, in table order."""
    if step.status != StepStatus.FAILED or not step.execution_log:
        return AutoFixResult(step)
    result = AutoFixResult(step)
    current = replace(step, extras={k: v for k, v in step.extras.items() if k != MANUAL_FLAG})
    for rule in matching_rules(step.execution_log, rules):
        candidate = rule.fixer(current)
        if candidate.extras.get(MANUAL_FLAG):
            result.manual.append(rule.description)
            LOGGER.warning("Step '%s' needs a manual fix: %s", step.id, rule.description)
            continue
        current = candidate
        result.applied.append(rule.description)
        LOGGER.info("Applied fix to step '%s': %s", step.id, rule.description)

    if result.manual:
        notes = "\n".join(f"NEEDS MANUAL FIX: {description}" for description in result.manual)
        result.step = replace(
            current,
            status=StepStatus.FAILED,
            execution_log=f"{step.execution_log.rstrip()}\n{notes}",
            extras={**current.extras, MANUAL_FLAG: True},
        )
    elif result.applied:
        result.step = replace(current, status=StepStatus.PENDING, execution_log="", rlhf_score=None)
    return result


@dataclass
class AutoFixReport:
    plan: Plan
    fixed: list[str] = field(default_factory=list)
    manual: list[str] = field(default_factory=list)
    log: list[str] = field(default_factory=list)


def autofix_plan(plan: Plan) -> AutoFixReport:
    """Return a copy of ``plan`` with the fix table applied to its FAILED steps."""
    fixed_plan = copy.deepcopy(plan)
    report = AutoFixReport(plan=fixed_plan)
    steps = fixed_plan.steps
    for index, step in enumerate(steps):
        result = apply_autofix(step)
        steps[index] = result.step
        for description in result.applied:
            report.log.append(f"FIXED: {step.id} - {description}")
        for description in result.manual:
            report.log.append(f"MANUAL: {step.id} - {description}")
        if result.manual:
            report.manual.append(step.id)
        elif result.applied:
            report.fixed.append(step.id)
    return report

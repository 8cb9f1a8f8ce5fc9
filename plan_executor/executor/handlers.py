from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Any, Callable

from ..errors import ValidationError
from ..gitops import GitClient, PullRequestOpener
from ..plan.models import Plan, Step, StepStatus, StepType
from ..quality.scripts import ScriptValidator, run_validation_script

LOGGER = logging.getLogger(__name__)

REPLACE_BLOCK = re.compile(r"<<<REPLACE>>>(.*?)<<</REPLACE>>>", re.DOTALL)
WITH_BLOCK = re.compile(r"<<<WITH>>>(.*?)<<</WITH>>>", re.DOTALL)
BRANCH_NAME = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._/\-]*$")
DOMAIN_EXTERNAL_IMPORT = re.compile(
    r"""^\s*import\b[^\n]*?(?:\bfrom\s+)?['"][^'"]*\b(?:axios|fetch|prisma|redis|mongodb)\b[^'"]*['"]""",
    re.MULTILINE,
)
BUSINESS_LOGIC = re.compile(r"business\s+logic|domain\s+rules|calculations", re.IGNORECASE)
CONDITIONAL_OPERATIONS = (StepType.CREATE_FILE, StepType.REFACTOR_FILE, StepType.DELETE_FILE)


@dataclass
class StepEffect:
    """What a handler did, filled in as it goes so a failure midway is still visible."""

    paths: list[str] = field(default_factory=list)
    created: list[str] = field(default_factory=list)
    output: list[str] = field(default_factory=list)
    skipped: bool = False
    commit_step_type: str | None = None

    def note(self, message: str) -> None:
        LOGGER.info(message)
        self.output.append(message)

    @property
    def text(self) -> str:
        return "\n".join(self.output)


@dataclass
class HandlerContext:
    repo: Path
    plan: Plan
    git: GitClient
    validator: ScriptValidator
    pull_requests: PullRequestOpener
    script_timeout_s: float = 300.0


Handler = Callable[[Step, HandlerContext, StepEffect], None]


def _missing(step: Step, name: str) -> ValidationError:
    return ValidationError(f"Step '{step.id}' ({step.type}) is missing required field '{name}'")


def resolve_path(repo: Path, raw: Any, step: Step, name: str = "path") -> tuple[Path, str]:
    """Validate a plan-supplied path and anchor it inside ``repo``."""
    if raw is None or str(raw).strip() == "":
        raise _missing(step, name)
    text = str(raw).replace("\\", "/")
    if "\0" in text:
        raise ValidationError(f"Step '{step.id}': {name} contains a NUL byte")
    relative = PurePosixPath(text)
    if relative.is_absolute() or re.match(r"^[A-Za-z]:", text):
        raise ValidationError(f"Step '{step.id}': {name} must be relative to the repository, got '{raw}'")
    if ".." in relative.parts:
        raise ValidationError(f"Step '{step.id}': {name} must not leave the repository, got '{raw}'")
    cleaned = relative.as_posix()
    return repo / cleaned, cleaned


def _ensure_parent(repo: Path, target: Path, effect: StepEffect) -> None:
    missing = []
    parent = target.parent
    while parent != repo and not parent.exists():
        missing.append(parent)
        parent = parent.parent
    if missing:
        effect.created.append(missing[-1].relative_to(repo).as_posix())
    target.parent.mkdir(parents=True, exist_ok=True)


def handle_create_file(step: Step, ctx: HandlerContext, effect: StepEffect) -> None:
    target, rel = resolve_path(ctx.repo, step.path, step)
    if step.template is None:
        raise _missing(step, "template")
    existed = target.exists()
    _ensure_parent(ctx.repo, target, effect)
    if not existed:
        effect.created.append(rel)
    target.write_text(step.template, encoding="utf-8")
    effect.paths.append(rel)
    effect.note(f"{'Overwrote' if existed else 'Created'} file {rel}")


def handle_refactor_file(step: Step, ctx: HandlerContext, effect: StepEffect) -> None:
    target, rel = resolve_path(ctx.repo, step.path, step)
    if step.template is None:
        raise _missing(step, "template")
    old_match = REPLACE_BLOCK.search(step.template)
    new_match = WITH_BLOCK.search(step.template)
    if not old_match or not new_match:
        raise ValidationError(
            f"Invalid template format for step '{step.id}': refactor markers missing "
            "(expected <<<REPLACE>>>...<<</REPLACE>>> and <<<WITH>>>...<<</WITH>>>)"
        )
    if not target.is_file():
        raise ValidationError(f"File to refactor does not exist at path: {rel}")
    old_code = old_match.group(1).strip()
    new_code = new_match.group(1).strip()
    content = target.read_text(encoding="utf-8")
    if not old_code or old_code not in content:
        raise ValidationError(f"<<<REPLACE>>> block not found in {rel}; refactoring failed")
    target.write_text(content.replace(old_code, new_code, 1), encoding="utf-8")
    effect.paths.append(rel)
    effect.note(f"Applied refactoring to {rel}")


def handle_delete_file(step: Step, ctx: HandlerContext, effect: StepEffect) -> None:
    target, rel = resolve_path(ctx.repo, step.path, step)
    if not target.exists():
        LOGGER.warning("File to delete at %s does not exist, skipping", rel)
        effect.output.append(f"Warning: {rel} does not exist, nothing deleted")
        return
    if target.is_dir():
        raise ValidationError(f"Step '{step.id}': {rel} is a directory, delete_file only removes files")
    target.unlink()
    effect.paths.append(rel)
    effect.note(f"Deleted file {rel}")


def handle_folder(step: Step, ctx: HandlerContext, effect: StepEffect) -> None:
    layout = step.action_value("create_folders")
    if not isinstance(layout, dict):
        raise _missing(step, "action.create_folders")
    base = layout.get("basePath")
    _, base_rel = resolve_path(ctx.repo, base, step, "action.create_folders.basePath")
    folders = layout.get("folders") or []
    if not isinstance(folders, list):
        raise ValidationError(f"Step '{step.id}': action.create_folders.folders must be a list")
    targets = [f"{base_rel}/{folder}" for folder in folders] or [base_rel]
    for raw in targets:
        target, rel = resolve_path(ctx.repo, raw, step, "action.create_folders.folders")
        if target.is_dir():
            effect.note(f"Directory {rel} already exists")
            continue
        _ensure_parent(ctx.repo, target, effect)
        target.mkdir()
        if not any(rel.startswith(created + "/") for created in effect.created):
            effect.created.append(rel)
        effect.paths.append(rel)
        effect.note(f"Created directory {rel}")


def handle_branch(step: Step, ctx: HandlerContext, effect: StepEffect) -> None:
    name = step.action_value("branch_name")
    if not name:
        raise _missing(step, "action.branch_name")
    name = str(name)
    if not BRANCH_NAME.match(name) or ".." in name or name.endswith((".lock", "/")):
        raise ValidationError(f"Step '{step.id}': invalid branch name '{name}'")
    if ctx.git.current_branch() == name:
        effect.note(f"Already on branch {name}")
        return
    if ctx.git.branch_exists(name):
        ctx.git.checkout(name).raise_for_status()
        effect.note(f"Checked out existing branch {name}")
        return
    ctx.git.create_branch(name).raise_for_status()
    effect.note(f"Created and checked out branch {name}")


def _pull_request_body(step: Step, plan: Plan) -> str:
    lines = [step.description or "Automated changes applied by plan-executor.", ""]
    done = [item for item in plan.steps if item.status == StepStatus.SUCCESS]
    if done:
        lines.append("Completed steps:")
        lines.extend(f"- {item.id} ({item.type})" for item in done)
    return "\n".join(lines)


def handle_pull_request(step: Step, ctx: HandlerContext, effect: StepEffect) -> None:
    source = step.action_value("source_branch")
    target = step.action_value("target_branch")
    if not source:
        raise _missing(step, "action.source_branch")
    if not target:
        raise _missing(step, "action.target_branch")
    title = step.action_value("title") or f"Merge {source} into {target}"
    body = step.action_value("body") or _pull_request_body(step, ctx.plan)
    result = ctx.pull_requests.open(str(source), str(target), str(title), str(body))
    if result.already_exists:
        effect.note(f"Pull request {source} -> {target} already exists")
    else:
        effect.note(f"Opened pull request {source} -> {target}: {result.url or 'created'}")


def handle_validation(step: Step, ctx: HandlerContext, effect: StepEffect) -> None:
    if not step.validation_script or not step.validation_script.strip():
        raise _missing(step, "validation_script")
    output = run_validation_script(
        step.validation_script,
        cwd=ctx.repo,
        validator=ctx.validator,
        timeout_s=ctx.script_timeout_s,
        step_id=step.id,
    )
    effect.output.append(output.rstrip())


def _guard_matches(when: dict[str, Any], metadata: dict[str, Any]) -> bool:
    for key, expected in when.items():
        actual = metadata.get(key)
        if isinstance(expected, list):
            if actual not in expected and str(actual) not in [str(item) for item in expected]:
                return False
        elif actual != expected and str(actual) != str(expected):
            return False
    return True


def handle_conditional_file(step: Step, ctx: HandlerContext, effect: StepEffect) -> None:
    when = step.action_value("when")
    if not isinstance(when, dict) or not when:
        raise _missing(step, "action.when")
    operation = step.action_value("operation")
    if not operation:
        raise _missing(step, "action.operation")
    try:
        inner = StepType(operation)
    except ValueError:
        inner = None
    if inner not in CONDITIONAL_OPERATIONS:
        allowed = ", ".join(item.value for item in CONDITIONAL_OPERATIONS)
        raise ValidationError(f"Step '{step.id}': action.operation must be one of {allowed}, got '{operation}'")
    if not _guard_matches(when, ctx.plan.metadata or {}):
        effect.skipped = True
        effect.note(f"Condition {when} not met by plan metadata, skipping")
        return
    effect.commit_step_type = inner.value
    HANDLERS[inner](step, ctx, effect)


HANDLERS: dict[StepType, Handler] = {
    StepType.CREATE_FILE: handle_create_file,
    StepType.REFACTOR_FILE: handle_refactor_file,
    StepType.DELETE_FILE: handle_delete_file,
    StepType.FOLDER: handle_folder,
    StepType.BRANCH: handle_branch,
    StepType.PULL_REQUEST: handle_pull_request,
    StepType.VALIDATION: handle_validation,
    StepType.TEST: handle_validation,
    StepType.CONDITIONAL_FILE: handle_conditional_file,
}

_unhandled = set(StepType) - set(HANDLERS)
if _unhandled:
    raise RuntimeError(f"No handler for step types: {', '.join(sorted(item.value for item in _unhandled))}")


def dispatch(step: Step, ctx: HandlerContext, effect: StepEffect | None = None) -> StepEffect:
    try:
        step_type = step.step_type
    except ValueError as exc:
        raise ValidationError(f"Unknown step type '{step.type}' in step '{step.id}'") from exc
    effect = effect if effect is not None else StepEffect()
    HANDLERS[step_type](step, ctx, effect)
    return effect


def prevalidate_for_layer(step: Step, layer: str | None) -> None:
    """Reject create_file templates that break the active layer's rules."""
    if step.type != StepType.CREATE_FILE.value or not layer:
        return
    template = step.template or ""
    if layer == "domain" and DOMAIN_EXTERNAL_IMPORT.search(template):
        raise ValidationError(
            f"Architecture violation in domain layer: external dependencies not allowed in step '{step.id}'"
        )
    if layer == "presentation" and BUSINESS_LOGIC.search(template):
        raise ValidationError(
            f"Architecture violation in presentation layer: business logic not allowed in step '{step.id}'"
        )
    if layer == "data" and "implements" not in template and "extends" not in template:
        LOGGER.warning("Step '%s' in the data layer should implement a domain interface", step.id)
    elif layer == "infra" and ("try" not in template or "catch" not in template):
        LOGGER.warning("Step '%s' in the infra layer should include error handling", step.id)
    elif layer == "main" and not re.search(r"factory|Factory|make[A-Z]", template):
        LOGGER.warning("Step '%s' in the main layer should use the factory pattern", step.id)

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import PurePosixPath

from .config import CommitConfig
from .errors import CommitMessageError

MAX_SUBJECT_LENGTH = 72
DEFAULT_SCOPE = "core"
GENERATED_BY = "Generated with plan-executor"

SCOPE_ALIASES = {
    "domain": "domain",
    "data": "data",
    "infra": "infra",
    "infrastructure": "infra",
    "presentation": "presentation",
    "main": "main",
}

# Checked in order; the first folder found anywhere in the path wins.
ROLE_FOLDERS = (
    (("models", "entities"), "entity"),
    (("value-objects",), "value object"),
    (("usecases", "use-cases"), "use case"),
    (("repositories",), "repository"),
    (("controllers",), "controller"),
    (("components",), "component"),
    (("factories",), "factory"),
    (("adapters",), "adapter"),
    (("protocols", "interfaces"), "protocol"),
)

VERBS = {
    "create_file": "create",
    "refactor_file": "refactor",
    "delete_file": "delete",
    "folder": "create folders in",
    "test": "test",
    "conditional_file": "update",
}


@dataclass(frozen=True)
class CommitMessage:
    subject: str
    body: str

    def __str__(self) -> str:
        return f"{self.subject}\n\n{self.body}"


def _segments(path: str) -> list[str]:
    return [part for part in path.replace("\\", "/").split("/") if part and part != "."]


def extract_scope(path: str | None) -> str:
    if not path:
        return DEFAULT_SCOPE
    for segment in _segments(path):
        scope = SCOPE_ALIASES.get(segment.lower())
        if scope:
            return scope
    return DEFAULT_SCOPE


def extract_entity_name(path: str | None) -> str | None:
    """``src/domain/models/user-profile.ts`` -> ``User Profile``."""
    if not path:
        return None
    segments = _segments(path)
    if not segments or ".." in segments or path.startswith("/"):
        return None
    stem = re.sub(r"\.[A-Za-z0-9]+$", "", segments[-1])
    words = [word for word in re.split(r"[-_]", stem) if word]
    if not words:
        return None
    return " ".join(word[:1].upper() + word[1:].lower() for word in words)


def extract_role(path: str | None) -> str | None:
    if not path:
        return None
    folders = {segment.lower() for segment in _segments(path)[:-1]}
    for names, role in ROLE_FOLDERS:
        if folders.intersection(names):
            return role
    return None


def enhance_description(description: str, path: str | None) -> str:
    entity = extract_entity_name(path)
    role = extract_role(path)
    if not entity or not role:
        return description
    has_entity = entity in description
    has_role = role in description.lower()
    if not has_entity and not has_role:
        return f"{description} - {entity} {role}"
    if not has_entity:
        return f"{description} for {entity}"
    if not has_role:
        return f"{description} ({role})"
    return description


def default_description(step_type: str, path: str | None) -> str:
    verb = VERBS.get(step_type, "update")
    if not path:
        return f"{verb} {step_type.replace('_', ' ')}"
    name = PurePosixPath(path.replace("\\", "/")).name
    return f"{verb} {name}"


def build_subject(commit_type: str, scope: str, description: str) -> str:
    prefix = f"{commit_type}({scope}): "
    subject = prefix + description
    if len(subject) <= MAX_SUBJECT_LENGTH:
        return subject
    available = MAX_SUBJECT_LENGTH - len(prefix) - 3
    if available <= 0:
        raise CommitMessageError(
            f"Commit subject line too long ({len(subject)} > {MAX_SUBJECT_LENGTH} chars); "
            f'prefix "{prefix}" leaves no room for a description'
        )
    return prefix + description[:available].rstrip() + "..."


def build_commit_message(
    step_type: str,
    description: str | None,
    path: str | None,
    config: CommitConfig,
) -> CommitMessage | None:
    """Conventional-commit message for a step, or None when it should not commit."""
    if not config.should_commit(step_type):
        return None
    commit_type = config.commit_type_for(step_type)
    text = (description or "").strip() or default_description(step_type, path)
    text = enhance_description(text, path)
    text = text[:1].lower() + text[1:]
    subject = build_subject(commit_type, extract_scope(path), text)
    marker = f"{config.emoji_robot} {GENERATED_BY}" if config.emoji_enabled else GENERATED_BY
    return CommitMessage(subject=subject, body=f"{marker}\n\nCo-Authored-By: {config.co_author}")

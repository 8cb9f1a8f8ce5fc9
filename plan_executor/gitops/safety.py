from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable

from ..prompt import Prompter
from .operations import GitClient

LOGGER = logging.getLogger(__name__)


@dataclass
class SafetyCheckResult:
    safe: bool
    has_uncommitted_changes: bool
    user_confirmed: bool
    reason: str = ""


def check_git_safety(
    git: GitClient,
    interactive: bool,
    prompter: Prompter | None = None,
    delay_s: float = 5.0,
    sleep: Callable[[float], None] = time.sleep,
) -> SafetyCheckResult:
    """Inspect the working tree before a run.

    A dirty tree is confirmed with ``prompter`` when interactive; otherwise a
    warning is logged and the run continues after ``delay_s``.
    """
    if not git.is_repository():
        LOGGER.error("%s is not a git repository", git.repo)
        return SafetyCheckResult(False, False, False, reason="not a git repository")

    status = git.status()
    if not status.success:
        LOGGER.error("Could not read git status: %s", status.error)
        return SafetyCheckResult(False, False, False, reason=status.error or "git status failed")

    dirty = status.output.strip() != ""
    if not dirty:
        LOGGER.debug("Working tree is clean")
        return SafetyCheckResult(True, False, True)

    LOGGER.warning("Uncommitted changes detected in %s", git.repo)
    if interactive and prompter is not None:
        confirmed = prompter.confirm(
            "The working tree has uncommitted changes. Continue anyway?", default=False
        )
        if not confirmed:
            return SafetyCheckResult(False, True, False, reason="aborted by user")
        return SafetyCheckResult(True, True, True)

    if interactive:
        LOGGER.warning("No prompter available to confirm uncommitted changes, falling back to the delay")
    LOGGER.warning("Non-interactive mode: continuing in %gs", delay_s)
    if delay_s > 0:
        sleep(delay_s)
    return SafetyCheckResult(True, True, False)

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable

from .audit import AuditLog
from .errors import ExecutionInterrupted, PlanExecutorError
from .gitops import GitClient
from .util.fs import remove_path

LOGGER = logging.getLogger(__name__)


@dataclass
class Snapshot:
    """Repository state captured immediately before a step runs."""

    step_id: str
    head: str | None
    changed_paths: frozenset[str] = frozenset()
    path: str | None = None
    path_content: bytes | None = None
    path_was_dirty: bool = False
    path_existed: bool = False


@dataclass
class RollbackOutcome:
    success: bool
    restored: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    error: str | None = None


class RollbackCoordinator:
    def __init__(self, git: GitClient, audit: AuditLog | None = None) -> None:
        self.git = git
        self.repo = git.repo
        self.audit = audit

    def snapshot(self, step_id: str, path: str | None = None) -> Snapshot:
        changed = frozenset(self.git.changed_paths())
        content = None
        if path:
            target = self.repo / path
            if target.is_file():
                content = target.read_bytes()
        return Snapshot(
            step_id=step_id,
            head=self.git.head_hash(),
            changed_paths=changed,
            path=path,
            path_content=content,
            path_was_dirty=bool(path) and path in changed,
            path_existed=bool(path) and (self.repo / path).exists(),
        )

    def rollback(self, snapshot: Snapshot, created_paths: Iterable[str] = ()) -> RollbackOutcome:
        """Restore the tree captured in ``snapshot``. Only an interrupt escapes."""
        self._audit("rollback_started", step_id=snapshot.step_id, head=snapshot.head)
        LOGGER.warning("Rolling back step '%s'", snapshot.step_id)
        outcome = RollbackOutcome(success=True)
        try:
            self._rollback(snapshot, list(created_paths), outcome)
        except ExecutionInterrupted:
            self._audit("rollback_failed", step_id=snapshot.step_id, error="interrupted")
            raise
        except (PlanExecutorError, OSError) as exc:
            outcome.success = False
            outcome.error = str(exc)
            LOGGER.error("Rollback of step '%s' failed: %s", snapshot.step_id, exc)
            self._audit("rollback_failed", step_id=snapshot.step_id, error=str(exc))
            return outcome
        LOGGER.info(
            "Rolled back step '%s' (restored %d, removed %d)",
            snapshot.step_id,
            len(outcome.restored),
            len(outcome.removed),
        )
        self._audit(
            "rollback_success",
            step_id=snapshot.step_id,
            restored=outcome.restored,
            removed=outcome.removed,
        )
        return outcome

    def _rollback(self, snapshot: Snapshot, created_paths: list[str], outcome: RollbackOutcome) -> None:
        if snapshot.head:
            if self.git.head_hash() != snapshot.head:
                LOGGER.info("Resetting to %s", snapshot.head[:8])
            self.git.reset(snapshot.head, mode="mixed").raise_for_status()

        untracked = self.git.untracked_files()
        for changed in sorted(self.git.changed_paths() - snapshot.changed_paths):
            if changed == snapshot.path:
                continue
            if changed in untracked or not snapshot.head:
                if remove_path(self.repo / changed):
                    outcome.removed.append(changed)
            else:
                self.git.checkout(snapshot.head, changed).raise_for_status()
                outcome.restored.append(changed)

        if snapshot.path:
            self._restore_step_path(snapshot, outcome)

        for created in sorted(created_paths, key=len, reverse=True):
            if created in snapshot.changed_paths:
                continue
            if remove_path(self.repo / created):
                outcome.removed.append(created)

    def _restore_step_path(self, snapshot: Snapshot, outcome: RollbackOutcome) -> None:
        path = snapshot.path
        target = self.repo / path
        if snapshot.path_content is not None:
            if target.is_file() and target.read_bytes() == snapshot.path_content:
                return
            if not snapshot.path_was_dirty and snapshot.head and self.git.is_tracked(path):
                self.git.checkout(snapshot.head, path).raise_for_status()
            else:
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_bytes(snapshot.path_content)
            outcome.restored.append(path)
        elif not snapshot.path_existed and remove_path(target):
            outcome.removed.append(path)

    def _audit(self, event: str, **details) -> None:
        if self.audit is not None:
            self.audit.record(event, **details)

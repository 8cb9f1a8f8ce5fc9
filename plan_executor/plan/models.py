from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

LAYERS = ("domain", "data", "infra", "presentation", "main")
LAYER_STEP_KEYS = tuple(f"{layer}_steps" for layer in LAYERS)


class StepType(str, Enum):
    CREATE_FILE = "create_file"
    REFACTOR_FILE = "refactor_file"
    DELETE_FILE = "delete_file"
    FOLDER = "folder"
    BRANCH = "branch"
    PULL_REQUEST = "pull_request"
    VALIDATION = "validation"
    TEST = "test"
    CONDITIONAL_FILE = "conditional_file"


class StepStatus(str, Enum):
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"

    @property
    def is_done(self) -> bool:
        return self in (StepStatus.SUCCESS, StepStatus.SKIPPED)


_STEP_FIELDS = (
    "id",
    "type",
    "status",
    "rlhf_score",
    "execution_log",
    "path",
    "template",
    "action",
    "validation_script",
)


@dataclass
class Step:
    id: str
    type: str
    status: StepStatus = StepStatus.PENDING
    rlhf_score: int | None = None
    execution_log: str = ""
    path: str | None = None
    template: str | None = None
    action: dict[str, Any] | None = None
    validation_script: str | None = None
    extras: dict[str, Any] = field(default_factory=dict)

    @property
    def step_type(self) -> StepType:
        """Resolve the raw ``type`` string; raises ValueError when unknown."""
        return StepType(self.type)

    @property
    def description(self) -> str | None:
        value = self.extras.get("description")
        return value if isinstance(value, str) and value.strip() else None

    def action_value(self, key: str, default: Any = None) -> Any:
        if not isinstance(self.action, dict):
            return default
        return self.action.get(key, default)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "type": self.type,
            "status": self.status.value,
            "rlhf_score": self.rlhf_score,
            "execution_log": self.execution_log,
        }
        for name in ("path", "template", "action", "validation_script"):
            value = getattr(self, name)
            if value is not None:
                payload[name] = value
        payload.update(self.extras)
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any], index: int = 0) -> Step:
        if not isinstance(payload, dict):
            raise ValueError(f"Step #{index + 1} must be a mapping, got {type(payload).__name__}")
        step_id = payload.get("id")
        if step_id is None or str(step_id).strip() == "":
            step_id = f"step-{index + 1}"
        raw_status = payload.get("status") or StepStatus.PENDING.value
        try:
            status = StepStatus(str(raw_status).upper())
        except ValueError as exc:
            raise ValueError(f"Step '{step_id}' has unknown status '{raw_status}'") from exc
        score = payload.get("rlhf_score")
        action = payload.get("action")
        if action is not None and not isinstance(action, dict):
            raise ValueError(f"Step '{step_id}' field 'action' must be a mapping")
        return cls(
            id=str(step_id),
            type=str(payload.get("type", "")),
            status=status,
            rlhf_score=int(score) if score is not None else None,
            execution_log=payload.get("execution_log") or "",
            path=payload.get("path"),
            template=payload.get("template"),
            action=action,
            validation_script=payload.get("validation_script"),
            extras={key: value for key, value in payload.items() if key not in _STEP_FIELDS},
        )


@dataclass
class Evaluation:
    final_rlhf_score: float | None = None
    final_status: str | None = None
    commit_hashes: list[str] = field(default_factory=list)
    extras: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {}
        if self.final_rlhf_score is not None:
            payload["final_rlhf_score"] = self.final_rlhf_score
        if self.final_status is not None:
            payload["final_status"] = self.final_status
        if self.commit_hashes:
            payload["commit_hashes"] = list(self.commit_hashes)
        payload.update(self.extras)
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any] | None) -> Evaluation:
        payload = dict(payload or {})
        score = payload.pop("final_rlhf_score", None)
        return cls(
            final_rlhf_score=float(score) if score is not None else None,
            final_status=payload.pop("final_status", None),
            commit_hashes=[str(item) for item in payload.pop("commit_hashes", None) or []],
            extras=payload,
        )


@dataclass
class Plan:
    """An ordered workflow document.

    ``step_lists`` keeps every step array found in the document under the key
    it was read from (``steps`` or ``<layer>_steps``) so that saving writes the
    same shape back. ``extras`` carries unrecognised top-level keys.
    """

    step_lists: dict[str, list[Step]] = field(default_factory=dict)
    metadata: dict[str, Any] | None = None
    evaluation: Evaluation | None = None
    extras: dict[str, Any] = field(default_factory=dict)

    @property
    def layer(self) -> str | None:
        if not self.metadata:
            return None
        layer = self.metadata.get("layer")
        if not layer:
            return None
        layer = str(layer).lower()
        return "infra" if layer == "infrastructure" else layer

    @property
    def active_key(self) -> str:
        layer = self.layer
        if layer and f"{layer}_steps" in self.step_lists:
            return f"{layer}_steps"
        return "steps"

    @property
    def steps(self) -> list[Step]:
        return self.step_lists.get(self.active_key, [])

    def ensure_evaluation(self) -> Evaluation:
        if self.evaluation is None:
            self.evaluation = Evaluation()
        return self.evaluation

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {}
        for key, steps in self.step_lists.items():
            payload[key] = [step.to_dict() for step in steps]
        if self.metadata is not None:
            payload["metadata"] = self.metadata
        if self.evaluation is not None:
            payload["evaluation"] = self.evaluation.to_dict()
        payload.update(self.extras)
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any] | None) -> Plan:
        payload = dict(payload or {})
        step_lists: dict[str, list[Step]] = {}
        for key in ("steps", *LAYER_STEP_KEYS):
            if key not in payload:
                continue
            raw_steps = payload.pop(key)
            if raw_steps is None:
                raw_steps = []
            if not isinstance(raw_steps, list):
                raise ValueError(f"'{key}' must be a list of steps")
            step_lists[key] = [Step.from_dict(item, index) for index, item in enumerate(raw_steps)]
        metadata = payload.pop("metadata", None)
        if metadata is not None and not isinstance(metadata, dict):
            raise ValueError("'metadata' must be a mapping")
        evaluation = payload.pop("evaluation", None)
        if evaluation is not None and not isinstance(evaluation, dict):
            raise ValueError("'evaluation' must be a mapping")
        plan = cls(
            step_lists=step_lists,
            metadata=metadata,
            evaluation=Evaluation.from_dict(evaluation) if evaluation is not None else None,
            extras=payload,
        )
        _check_unique_ids(plan)
        return plan


def _check_unique_ids(plan: Plan) -> None:
    for key, steps in plan.step_lists.items():
        seen: set[str] = set()
        for step in steps:
            if step.id in seen:
                raise ValueError(f"Duplicate step id '{step.id}' in '{key}'")
            seen.add(step.id)

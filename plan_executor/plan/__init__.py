from .models import (
    LAYERS,
    Evaluation,
    Plan,
    Step,
    StepStatus,
    StepType,
)
from .store import PlanStore, dump_plan, parse_plan

__all__ = [
    "LAYERS",
    "Evaluation",
    "Plan",
    "Step",
    "StepStatus",
    "StepType",
    "PlanStore",
    "dump_plan",
    "parse_plan",
]

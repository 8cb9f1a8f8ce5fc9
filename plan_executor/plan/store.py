from __future__ import annotations

import logging
from pathlib import Path

import yaml

from ..errors import PlanLoadError
from ..util import atomic_write_text
from .models import Plan

LOGGER = logging.getLogger(__name__)


class _PlanDumper(yaml.SafeDumper):
    pass


def _represent_str(dumper: yaml.SafeDumper, value: str) -> yaml.ScalarNode:
    # Multi-line templates and scripts read better as literal blocks; the
    # emitter falls back to a quoted style when a block cannot hold the value.
    style = "|" if "\n" in value else None
    return dumper.represent_scalar("tag:yaml.org,2002:str", value, style=style)


_PlanDumper.add_representer(str, _represent_str)


def dump_plan(plan: Plan) -> str:
    return yaml.dump(
        plan.to_dict(),
        Dumper=_PlanDumper,
        default_flow_style=False,
        sort_keys=False,
        allow_unicode=True,
        width=4096,
    )


def parse_plan(text: str, source: str = "<string>") -> Plan:
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise PlanLoadError(f"Could not parse plan {source}: {exc}") from exc
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise PlanLoadError(f"Plan {source} must be a mapping at the top level")
    try:
        return Plan.from_dict(data)
    except ValueError as exc:
        raise PlanLoadError(f"Invalid plan {source}: {exc}") from exc


class PlanStore:
    """Loads and persists a plan document at a fixed path."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def load(self) -> Plan:
        try:
            text = self.path.read_text(encoding="utf-8")
        except OSError as exc:
            raise PlanLoadError(f"Could not read plan {self.path}: {exc}") from exc
        plan = parse_plan(text, source=str(self.path))
        LOGGER.debug("Loaded plan %s (%d steps)", self.path, len(plan.steps))
        return plan

    def save(self, plan: Plan, path: str | Path | None = None) -> Path:
        target = Path(path) if path is not None else self.path
        atomic_write_text(target, dump_plan(plan))
        return target

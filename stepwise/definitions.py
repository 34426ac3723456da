"""Load workflow definitions from YAML or JSON documents.

The graph editor hands over a list of steps and, optionally, a separate list
of edges. Both shapes are accepted::

    id: onboarding
    name: Employee onboarding
    steps:
      - id: paperwork
        name: Collect paperwork
        assignee: hr-alice            # shorthand for a static rule
      - id: laptop
        name: Order laptop
        depends_on: [paperwork]
      - id: accounts
        name: Create accounts
        assignee_rule: {kind: predecessor, step_id: paperwork}
    edges:
      - {from: paperwork, to: accounts}
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict

import yaml
from pydantic import ValidationError

from .contracts import WorkflowDefinition
from .errors import InvalidDefinition
from .graph import validate_definition


def _entries(value: Any, key: str) -> list[Dict[str, Any]]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise InvalidDefinition(f"'{key}' must be a list", details={key: value})
    for position, entry in enumerate(value):
        if not isinstance(entry, dict):
            raise InvalidDefinition(
                f"Entry {position} of '{key}' must be a mapping, got {type(entry).__name__}",
                details={key: entry},
            )
    return value


def _normalize_step(raw: Dict[str, Any]) -> Dict[str, Any]:
    step = dict(raw)
    assignee = step.pop("assignee", None)
    if assignee is not None and "assignee_rule" not in step:
        if assignee == "starter":
            step["assignee_rule"] = {"kind": "starter"}
        else:
            step["assignee_rule"] = {"kind": "static", "user_id": str(assignee)}
    step["depends_on"] = list(step.get("depends_on") or [])
    return step


def definition_from_dict(data: Dict[str, Any]) -> WorkflowDefinition:
    """Build and validate a definition from plain data.

    Raises:
        InvalidDefinition: the document does not describe a valid, acyclic
            workflow.
    """
    if not isinstance(data, dict):
        raise InvalidDefinition("Workflow definition must be a mapping")

    document = dict(data)
    raw_steps = _entries(document.get("steps"), "steps")
    steps = [_normalize_step(s) for s in raw_steps]
    by_id = {s.get("id"): s for s in steps}
    for edge in _entries(document.pop("edges", None), "edges"):
        source, target = edge.get("from"), edge.get("to")
        if target not in by_id:
            raise InvalidDefinition(
                f"Edge points at unknown step {target!r}",
                details={"edge": edge},
            )
        if source not in by_id[target]["depends_on"]:
            by_id[target]["depends_on"].append(source)
    document["steps"] = steps

    try:
        definition = WorkflowDefinition.model_validate(document)
    except ValidationError as exc:
        raise InvalidDefinition(
            f"Malformed workflow definition: {exc.error_count()} error(s)",
            details={"errors": exc.errors(include_url=False, include_context=False)},
        ) from exc

    validate_definition(definition)
    return definition


def load_definition(path: str | Path) -> WorkflowDefinition:
    """Read a definition from a ``.json``, ``.yaml`` or ``.yml`` file."""
    path = Path(path)
    text = path.read_text(encoding="utf-8")
    try:
        if path.suffix.lower() == ".json":
            data = json.loads(text)
        else:
            data = yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as exc:
        raise InvalidDefinition(
            f"Could not parse {path}: {exc}", details={"path": str(path)}
        ) from exc
    return definition_from_dict(data or {})

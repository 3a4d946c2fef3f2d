"""Workflow template loading, validation and lookup.

Templates are YAML documents::

    id: feature-dev
    name: Feature development
    steps:
      - step_id: plan
        agent_id: feature-dev/planner
        input_template: |
          Plan the following task:
          {{task}}
        expects: "STATUS: done"
      - step_id: implement
        agent_id: feature-dev/developer
        type: loop
        loop:
          over: stories
          verify_each: true
          verify_step: verify
        input_template: "{{current_story}}"
      - step_id: verify
        agent_id: feature-dev/verifier
        input_template: "Check {{current_story_id}}: {{story_output}}"
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Protocol

import yaml
from pydantic import ValidationError

from .contracts import StepSpec, WorkflowTemplate
from .errors import NotFoundError, TemplateError
from .states import StepKind

logger = logging.getLogger(__name__)

TEMPLATE_SUFFIXES = (".yaml", ".yml")


class TemplateStore(Protocol):
    """Read-only access to workflow templates."""

    def get_template(self, template_id: str) -> WorkflowTemplate:
        """Return the template or raise ``NotFoundError``."""

    def list_templates(self) -> List[WorkflowTemplate]:
        """Return all known templates."""


def validate_template(template: WorkflowTemplate) -> WorkflowTemplate:
    """Check cross-step rules that a single StepSpec cannot enforce."""
    if not template.steps:
        raise TemplateError(f"Template {template.id!r} has no steps")

    step_ids = [s.step_id for s in template.steps]
    duplicates = {sid for sid in step_ids if step_ids.count(sid) > 1}
    if duplicates:
        raise TemplateError(f"Duplicate step ids: {', '.join(sorted(duplicates))}")

    positions = [s.position for s in template.steps]
    if len(set(positions)) != len(positions):
        raise TemplateError(f"Template {template.id!r} has duplicate step positions")

    for spec in template.steps:
        if not spec.agent_id:
            raise TemplateError(f"Step {spec.step_id!r} is missing agent_id")
        if spec.kind != StepKind.APPROVAL and not spec.input_template:
            raise TemplateError(f"Step {spec.step_id!r} is missing input_template")
        if spec.kind == StepKind.LOOP:
            if spec.loop_config is None:
                raise TemplateError(f"Loop step {spec.step_id!r} needs loop_config")
            verify_id = spec.loop_config.verify_step
            if verify_id is not None:
                verify = template.get_step(verify_id)
                if verify is None or verify.step_id == spec.step_id:
                    raise TemplateError(
                        f"Loop step {spec.step_id!r} references unknown verify step {verify_id!r}"
                    )
                if verify.kind != StepKind.SINGLE:
                    raise TemplateError(
                        f"Verify step {verify_id!r} must be a single step"
                    )
        elif spec.loop_config is not None:
            raise TemplateError(
                f"Step {spec.step_id!r} has loop_config but is not a loop step"
            )
    return template


def build_template(data: Dict[str, Any], default_id: Optional[str] = None) -> WorkflowTemplate:
    """Build and validate a template from a parsed mapping."""
    if not isinstance(data, dict):
        raise TemplateError("Template must be a mapping")
    if not data.get("name"):
        raise TemplateError("name is required in template")

    raw_steps = data.get("steps") or []
    if not isinstance(raw_steps, list):
        raise TemplateError("steps must be a list")

    steps: List[StepSpec] = []
    for index, raw in enumerate(raw_steps):
        if not isinstance(raw, dict):
            raise TemplateError(f"Step at index {index} must be a mapping")
        raw = dict(raw)
        raw.setdefault("position", index)
        try:
            steps.append(StepSpec.model_validate(raw))
        except ValidationError as e:
            raise TemplateError(f"Step at index {index} is invalid: {e}") from e

    template_id = data.get("id") or default_id or data["name"]
    template = WorkflowTemplate(
        id=str(template_id),
        name=data["name"],
        description=data.get("description"),
        steps=steps,
    )
    return validate_template(template)


def parse_workflow_yaml(text: str, default_id: Optional[str] = None) -> WorkflowTemplate:
    """Parse a YAML template document."""
    if not text or not isinstance(text, str):
        raise TemplateError("YAML string is required")
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise TemplateError(f"YAML parsing failed: {e}") from e
    return build_template(data, default_id=default_id)


def load_template_file(path: str | Path) -> WorkflowTemplate:
    path = Path(path)
    return parse_workflow_yaml(path.read_text(), default_id=path.stem)


class InMemoryTemplateStore(TemplateStore):
    """Template store backed by a dictionary."""

    def __init__(self, templates: Iterable[WorkflowTemplate] = ()) -> None:
        self._templates: Dict[str, WorkflowTemplate] = {}
        for template in templates:
            self.register(template)

    def register(self, template: WorkflowTemplate) -> WorkflowTemplate:
        self._templates[template.id] = validate_template(template)
        return template

    def get_template(self, template_id: str) -> WorkflowTemplate:
        try:
            return self._templates[template_id]
        except KeyError:
            raise NotFoundError("template", template_id) from None

    def list_templates(self) -> List[WorkflowTemplate]:
        return sorted(self._templates.values(), key=lambda t: t.id)


class DirectoryTemplateStore(TemplateStore):
    """Loads ``*.yaml``/``*.yml`` templates from a directory on first use."""

    def __init__(self, directory: str | Path) -> None:
        self.directory = Path(directory)
        self._cache: Optional[InMemoryTemplateStore] = None

    def _store(self) -> InMemoryTemplateStore:
        if self._cache is None:
            store = InMemoryTemplateStore()
            if self.directory.is_dir():
                for path in sorted(self.directory.iterdir()):
                    if path.suffix not in TEMPLATE_SUFFIXES:
                        continue
                    store.register(load_template_file(path))
            else:
                logger.warning(f"Template directory {self.directory} does not exist")
            self._cache = store
        return self._cache

    def get_template(self, template_id: str) -> WorkflowTemplate:
        return self._store().get_template(template_id)

    def list_templates(self) -> List[WorkflowTemplate]:
        return self._store().list_templates()

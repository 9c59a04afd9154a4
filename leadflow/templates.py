"""Read-only access to workflow templates."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Dict, Iterable, Protocol

import yaml
from pydantic import ValidationError

from .contracts import WorkflowTemplate
from .errors import TemplateError

logger = logging.getLogger(__name__)


class TemplateStore(Protocol):
    """Source of workflow templates."""

    async def get_template(self, workflow_id: str) -> WorkflowTemplate:
        """Return the template or raise ``TemplateError``."""

    async def list_templates(self) -> list[WorkflowTemplate]:
        """Return all known templates."""


class InMemoryTemplateStore(TemplateStore):
    """Templates held in a dict, keyed by id."""

    def __init__(self, templates: Iterable[WorkflowTemplate] = ()) -> None:
        self._templates: Dict[str, WorkflowTemplate] = {t.id: t for t in templates}

    def add(self, template: WorkflowTemplate) -> None:
        problems = template.validate_graph()
        if problems:
            raise TemplateError(f"Template {template.id} is invalid: {'; '.join(problems)}")
        self._templates[template.id] = template

    async def get_template(self, workflow_id: str) -> WorkflowTemplate:
        template = self._templates.get(workflow_id)
        if template is None:
            raise TemplateError(f"Workflow not found: {workflow_id}")
        return template

    async def list_templates(self) -> list[WorkflowTemplate]:
        return list(self._templates.values())


def parse_template_file(path: Path) -> WorkflowTemplate:
    """Parse a single YAML or JSON template file."""
    text = path.read_text(encoding="utf-8")
    try:
        data = json.loads(text) if path.suffix == ".json" else yaml.safe_load(text) or {}
    except (json.JSONDecodeError, yaml.YAMLError) as exc:
        raise TemplateError(f"Cannot parse {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise TemplateError(f"Template {path} must be a mapping")
    data.setdefault("id", path.stem)
    try:
        return WorkflowTemplate.model_validate(data)
    except ValidationError as exc:
        raise TemplateError(f"Template {path} is invalid: {exc}") from exc


def load_templates(path: str | Path) -> InMemoryTemplateStore:
    """Load every ``*.yaml``/``*.yml``/``*.json`` template below ``path``."""
    root = Path(path)
    if not root.exists():
        raise FileNotFoundError(str(root))
    files = [root] if root.is_file() else sorted(
        p for p in root.rglob("*") if p.suffix in {".yaml", ".yml", ".json"}
    )
    store = InMemoryTemplateStore()
    for file in files:
        template = parse_template_file(file)
        store.add(template)
        logger.info(f"Loaded workflow template {template.id} from {file}")
    return store

import asyncio

import pytest

from leadflow.errors import TemplateError
from leadflow.templates import InMemoryTemplateStore, load_templates, parse_template_file

NEW_LEAD_YAML = """
name: New lead
nodes:
  - id: call
    action: call
    config:
      retry:
        max_attempts: 3
        backoff: smart_morning_evening
  - id: qualify
    action: check_qualification
    config:
      groups: [hot]
edges:
  - from_node: call
    to_node: qualify
    condition: success
"""


def test_load_templates_from_directory(tmp_path):
    (tmp_path / "new_lead.yaml").write_text(NEW_LEAD_YAML)
    (tmp_path / "notes.txt").write_text("ignored")

    store = load_templates(tmp_path)

    templates = [t.id for t in asyncio.run(store.list_templates())]
    assert templates == ["new_lead"]


@pytest.mark.asyncio
async def test_template_store_lookup(tmp_path):
    path = tmp_path / "new_lead.yaml"
    path.write_text(NEW_LEAD_YAML)
    store = InMemoryTemplateStore([parse_template_file(path)])

    template = await store.get_template("new_lead")
    assert template.name == "New lead"
    assert template.node("call").config["retry"]["max_attempts"] == 3

    with pytest.raises(TemplateError):
        await store.get_template("missing")


def test_invalid_template_file_raises_template_error(tmp_path):
    path = tmp_path / "broken.yaml"
    path.write_text("nodes:\n  - id: a\n    action: teleport\n")

    with pytest.raises(TemplateError):
        parse_template_file(path)


def test_store_rejects_dangling_edges(tmp_path):
    path = tmp_path / "dangling.json"
    path.write_text(
        '{"nodes": [{"id": "a", "action": "wait"}], "edges": [{"from_node": "a", "to_node": "z"}]}'
    )

    with pytest.raises(TemplateError):
        load_templates(path)

from datetime import timedelta

import pytest

from fixtures.fakes import NOW, make_runtime, make_template
from leadflow.config import LeadflowConfig
from leadflow.errors import ContactNotFound, TemplateError
from leadflow.runtime import build_runtime


@pytest.mark.asyncio
async def test_start_run_uses_entry_node_and_delay(clock):
    template = make_template(
        "delayed",
        nodes=[
            {"id": "intro", "action": "send_whatsapp", "delay_minutes": 15},
            {"id": "task", "action": "create_task"},
        ],
        edges=[{"from_node": "intro", "to_node": "task"}],
    )
    runtime = make_runtime(template, clock=clock)

    run, created = await runtime.start_run("delayed", "c1", {"trigger": {"source": "idealista"}})

    assert created is True
    assert run.current_node_id == "intro"
    assert run.next_run_at == NOW + timedelta(minutes=15)
    assert run.context == {"trigger": {"source": "idealista"}}
    assert await runtime.sweeper.sweep() == []


@pytest.mark.asyncio
async def test_start_run_validates_workflow_and_contact(clock):
    runtime = make_runtime(make_template("wf", nodes=[{"id": "t", "action": "create_task"}]), clock=clock)

    with pytest.raises(TemplateError):
        await runtime.start_run("missing", "c1")
    with pytest.raises(ContactNotFound):
        await runtime.start_run("wf", "c404")


DIRECTORY_YAML = """
contacts:
  - id: c9
    first_name: Marta
    phone: "+34 600 000 009"
agents:
  - id: a9
    full_name: Carla
    max_active_leads: 3
deals:
  - id: d9
    contact_id: c9
    segment: luxury
groups:
  vip: [c9]
"""

TEMPLATE_YAML = """
id: tasks
name: Task only
nodes:
  - id: task
    action: create_task
"""


@pytest.mark.asyncio
async def test_build_runtime_from_config_files(tmp_path):
    (tmp_path / "directory.yaml").write_text(DIRECTORY_YAML)
    templates = tmp_path / "templates"
    templates.mkdir()
    (templates / "tasks.yaml").write_text(TEMPLATE_YAML)
    config = LeadflowConfig(
        templates_path=str(templates), directory_path=str(tmp_path / "directory.yaml")
    )

    runtime = build_runtime(config)

    contact = await runtime.directory.get_contact("c9")
    assert contact.current_deal_id == "d9"
    assert await runtime.directory.contact_group_ids("c9") == {"vip"}
    assert (await runtime.directory.find_contact_by_phone("+34600000009")).id == "c9"
    run, created = await runtime.start_run("tasks", "c9")
    assert created is True
    assert run.current_node_id == "task"

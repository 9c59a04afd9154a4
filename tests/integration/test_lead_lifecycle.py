"""A new lead end to end: call retries, WhatsApp follow-up, qualification and assignment."""

from pathlib import Path

import pytest

from fixtures.fakes import CONTACT_PHONE, FakeCallPlacer, FakeMessageSender, make_runtime
from leadflow.contracts import ProviderEvent, RunStatus, Transition
from leadflow.persistence import SQLiteRunRepository
from leadflow.templates import parse_template_file
from leadflow.webhooks import parse_twilio_webhook, parse_vapi_webhook

NEW_LEAD = """
name: New portal lead
nodes:
  - id: call
    action: call
    config:
      callback_timeout_minutes: 45
      retry:
        max_attempts: 2
        backoff: smart_morning_evening
        interventions:
          - attempt: 1
            action: send_whatsapp
            template_id: HX-missed-call
  - id: follow_up
    action: send_whatsapp
    config:
      template_id: HX-follow-up
      wait_for_reply: true
      timeout_minutes: 1440
      extract_insights: true
  - id: store
    action: markup_table
    config:
      copy:
        max_budget: follow_up.extracted.max_budget
  - id: qualify
    action: check_qualification
    config:
      required_fields: [max_budget]
  - id: assign
    action: assign_agent
    config:
      strategy: least_leads
  - id: nurture
    action: start_nurture
    config: {day: tuesday, time: "11:00"}
edges:
  - {from_node: call, to_node: qualify, condition: success}
  - {from_node: call, to_node: follow_up, condition: failure}
  - {from_node: follow_up, to_node: store, condition: replied}
  - {from_node: follow_up, to_node: nurture, condition: no_reply}
  - {from_node: store, to_node: qualify}
  - {from_node: qualify, to_node: assign, condition: success}
  - {from_node: qualify, to_node: nurture, condition: failure}
  - {from_node: assign, to_node: nurture}
"""


def vapi_report(run_id, call_id, reason):
    return parse_vapi_webhook(
        {
            "message": {
                "type": "end-of-call-report",
                "endedReason": reason,
                "call": {"id": call_id, "metadata": {"workflow_run_id": run_id, "contact_id": "c1"}},
            }
        }
    )


def runtime_for(tmp_path: Path, clock, **kwargs):
    template_path = tmp_path / "new_lead.yaml"
    template_path.write_text(NEW_LEAD)
    return make_runtime(
        parse_template_file(template_path),
        clock=clock,
        repository=SQLiteRunRepository(tmp_path / "runs.db"),
        **kwargs,
    )


@pytest.mark.asyncio
async def test_unreachable_lead_is_qualified_over_whatsapp_and_assigned(tmp_path, clock):
    placer, sender = FakeCallPlacer(), FakeMessageSender()
    runtime = runtime_for(tmp_path, clock, call_placer=placer, message_sender=sender)
    run, _ = await runtime.start_run("new_lead", "c1")

    # Attempt 1: voicemail, missed-call WhatsApp, retry in the 16:00 slot.
    await runtime.sweeper.sweep()
    await runtime.gateway.on_provider_event(vapi_report(run.id, "call-1", "voicemail"))
    outcomes = await runtime.sweeper.sweep()
    assert outcomes[0].transition == Transition.RETRY_SCHEDULED
    assert [s["config"]["template_id"] for s in sender.sent] == ["HX-missed-call"]

    # Attempt 2 never reports back; the deadline fails it and the run moves to WhatsApp.
    clock.advance(hours=6)
    await runtime.sweeper.sweep()
    clock.advance(minutes=46)
    outcomes = await runtime.sweeper.sweep()
    assert outcomes[0].next_node_id == "follow_up"
    assert len(placer.calls) == 2

    outcomes = await runtime.sweeper.sweep()
    assert outcomes[0].transition == Transition.WAITING

    # A late report for the first call no longer applies.
    late = await runtime.gateway.on_provider_event(vapi_report(run.id, "call-1", "customer-ended-call"))
    assert late.status == "ignored"

    reply = parse_twilio_webhook(
        {"From": f"whatsapp:{CONTACT_PHONE}", "Body": "Hasta 600 mil", "MessageSid": "SMin"}
    )
    assert (await runtime.gateway.on_provider_event(reply)).status == "applied"

    transitions = []
    for _ in range(5):
        outcomes = await runtime.sweeper.sweep()
        transitions.append((outcomes[0].node_id, outcomes[0].transition))

    assert transitions == [
        ("follow_up", Transition.ADVANCED),
        ("store", Transition.ADVANCED),
        ("qualify", Transition.ADVANCED),
        ("assign", Transition.ADVANCED),
        ("nurture", Transition.COMPLETED),
    ]
    stored = await runtime.repository.get_run(run.id)
    assert stored.status == RunStatus.COMPLETED
    assert stored.context["call"]["attempts"] == 2
    assert [h["status"] for h in stored.context["call"]["history"]] == ["voicemail", "no_callback"]
    assert stored.context["assign"]["agent_id"] == "a1"
    assert runtime.directory.contacts["c1"].assigned_agent_id == "a1"
    assert runtime.directory.deals["d1"].nurture_enabled is True


@pytest.mark.asyncio
async def test_answered_call_survives_process_restart(tmp_path, clock):
    first = runtime_for(tmp_path, clock)
    run, _ = await first.start_run("new_lead", "c1")
    await first.sweeper.sweep()

    # A fresh process sharing the same database receives the webhook.
    second = runtime_for(tmp_path, clock, directory=first.directory)
    result = await second.gateway.on_provider_event(
        ProviderEvent(
            event_type="call_ended",
            run_id=run.id,
            correlation_id="call-1",
            outcome="answered",
            success=True,
        )
    )
    assert result.status == "applied"

    outcomes = await second.sweeper.sweep()
    assert outcomes[0].next_node_id == "qualify"

    # Duplicate delivery after the run moved on changes nothing.
    again = await first.gateway.on_provider_event(vapi_report(run.id, "call-1", "customer-ended-call"))
    assert again.status == "ignored"
    stored = await first.repository.get_run(run.id)
    assert stored.current_node_id == "qualify"

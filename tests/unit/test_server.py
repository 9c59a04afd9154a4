from fastapi.testclient import TestClient

from fixtures.fakes import CONTACT_PHONE, FixedClock, make_runtime, make_template
from leadflow.config import LeadflowConfig
from leadflow.errors import StorageError
from leadflow.persistence import InMemoryRunRepository
from leadflow.server import create_app


def call_flow():
    return make_template(
        "new_lead",
        nodes=[
            {"id": "call", "action": "call", "config": {"callback_timeout_minutes": 30}},
            {"id": "task", "action": "create_task"},
        ],
        edges=[{"from_node": "call", "to_node": "task", "condition": "success"}],
    )


def whatsapp_flow():
    return make_template(
        "follow_up",
        nodes=[{"id": "wa", "action": "send_whatsapp", "config": {"message": "Hola", "wait_for_reply": True}}],
    )


def client_for(runtime) -> TestClient:
    return TestClient(create_app(runtime))


def test_health():
    client = client_for(make_runtime())

    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_start_run_is_get_or_create():
    client = client_for(make_runtime(call_flow()))

    first = client.post("/runs", json={"workflow_id": "new_lead", "contact_id": "c1"})
    second = client.post("/runs", json={"workflow_id": "new_lead", "contact_id": "c1"})

    assert first.status_code == 200
    assert first.json()["created"] is True
    assert second.json()["created"] is False
    assert second.json()["run"]["id"] == first.json()["run"]["id"]

    run_id = first.json()["run"]["id"]
    fetched = client.get(f"/runs/{run_id}")
    assert fetched.json()["current_node_id"] == "call"


def test_unknown_workflow_contact_or_run_is_404():
    client = client_for(make_runtime(call_flow()))

    assert client.post("/runs", json={"workflow_id": "nope", "contact_id": "c1"}).status_code == 404
    assert client.post("/runs", json={"workflow_id": "new_lead", "contact_id": "c404"}).status_code == 404
    assert client.get("/runs/unknown").status_code == 404


def test_sweep_then_vapi_webhook_resumes_run():
    runtime = make_runtime(call_flow(), clock=FixedClock())
    client = client_for(runtime)
    run_id = client.post("/runs", json={"workflow_id": "new_lead", "contact_id": "c1"}).json()["run"]["id"]

    swept = client.post("/sweep", json={"batch_size": 5})
    assert swept.status_code == 200
    assert swept.json()["processed"] == 1
    assert swept.json()["results"][0]["transition"] == "waiting"

    webhook = client.post(
        "/webhooks/vapi",
        json={
            "message": {
                "type": "end-of-call-report",
                "endedReason": "customer-ended-call",
                "call": {"id": "call-1", "metadata": {"workflow_run_id": run_id, "contact_id": "c1"}},
            }
        },
    )
    assert webhook.status_code == 200
    assert webhook.json() == {"status": "applied", "run_ids": [run_id], "detail": None}

    swept = client.post("/sweep")
    assert swept.json()["results"][0]["next_node_id"] == "task"


def test_vapi_progress_message_is_ignored():
    client = client_for(make_runtime())

    response = client.post("/webhooks/vapi", json={"message": {"type": "transcript"}})

    assert response.json()["status"] == "ignored"


def test_twilio_webhook_answers_with_twiml():
    runtime = make_runtime(whatsapp_flow(), clock=FixedClock())
    client = client_for(runtime)
    client.post("/runs", json={"workflow_id": "follow_up", "contact_id": "c1"})
    client.post("/sweep")

    response = client.post(
        "/webhooks/twilio",
        data={"From": f"whatsapp:{CONTACT_PHONE}", "Body": "Me interesa", "MessageSid": "SMin"},
    )

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/xml")
    assert response.text == "<Response></Response>"
    assert client.post("/sweep").json()["results"][0]["transition"] == "completed"


def test_twilio_webhook_without_sender_is_rejected():
    client = client_for(make_runtime())

    assert client.post("/webhooks/twilio", data={"Body": "hi"}).status_code == 400


def test_events_endpoint_accepts_provider_events():
    client = client_for(make_runtime())

    response = client.post("/events", json={"event_type": "call_ended", "correlation_id": "x"})

    assert response.json()["status"] == "unmatched"


def test_webhooks_publish_to_bus_when_configured():
    config = LeadflowConfig()
    config.transport.publish_events = True
    runtime = make_runtime(config=config)
    client = client_for(runtime)

    response = client.post("/events", json={"event_type": "call_ended", "correlation_id": "x"})

    assert response.json()["detail"] == "queued"
    assert client.get("/health").json()["queued_events"] == 1


def test_storage_error_maps_to_503():
    class DownRepository(InMemoryRunRepository):
        async def list_due_runs(self, now, limit):
            raise StorageError("connection refused")

    client = client_for(make_runtime(repository=DownRepository()))

    response = client.post("/sweep")

    assert response.status_code == 503


def test_events_endpoint_derives_success_from_call_outcome():
    runtime = make_runtime(call_flow(), clock=FixedClock())
    client = client_for(runtime)
    run_id = client.post("/runs", json={"workflow_id": "new_lead", "contact_id": "c1"}).json()["run"]["id"]
    client.post("/sweep")

    response = client.post(
        "/events",
        json={"event_type": "call_ended", "correlation_id": "call-1", "outcome": "answered"},
    )

    assert response.json()["status"] == "applied"
    assert client.get(f"/runs/{run_id}").json()["context"]["call"]["success"] is True
    assert client.post("/sweep").json()["results"][0]["next_node_id"] == "task"

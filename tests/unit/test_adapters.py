"""Provider adapters against mocked HTTP transports and test models."""

import json
from unittest.mock import AsyncMock, patch
from urllib.parse import parse_qs

import httpx
import pytest
from pydantic_ai.models.test import TestModel

from leadflow.adapters import LlmAgentScorer, LlmExtractor, TwilioWhatsAppSender, VapiCallPlacer
from leadflow.adapters.base import LoggingEmailSender, phone_of
from leadflow.adapters.twilio import resolve_variables
from leadflow.config import TwilioConfig, VapiConfig
from leadflow.directory import AgentCandidate, Contact, ContactProfile, Deal
from leadflow.errors import AdapterError

LUCIA = Contact(id="c1", first_name="Lucia", phone="+34600000001", marketing_source="idealista")


def recording_client(status_code, body, seen):
    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(status_code, json=body)

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def vapi(client=None, **overrides):
    config = VapiConfig(api_key="vapi-key", phone_number_id="pn-1", assistant_id="asst-1")
    return VapiCallPlacer(config.model_copy(update=overrides), client=client)


@pytest.mark.asyncio
async def test_vapi_places_call_with_metadata():
    seen = []
    placer = vapi(recording_client(201, {"id": "call-abc"}, seen))

    result = await placer.place_call(LUCIA, {}, {"workflow_run_id": "run-1", "contact_id": "c1"})

    assert result.call_id == "call-abc"
    request = seen[0]
    assert request.url == "https://api.vapi.ai/call"
    assert request.headers["Authorization"] == "Bearer vapi-key"
    body = json.loads(request.content)
    assert body["phoneNumberId"] == "pn-1"
    assert body["assistantId"] == "asst-1"
    assert body["customer"]["number"] == "+34600000001"
    assert body["metadata"]["workflow_run_id"] == "run-1"
    assert body["assistantOverrides"]["variableValues"]["buyer_id"] == "c1"


def test_vapi_inline_assistant_substitutes_first_message():
    payload = vapi().build_payload(
        LUCIA,
        {"assistant": {"firstMessage": "Hola {{first_name}}, vi tu consulta en {{marketing_source}}"}},
        {},
    )

    assert payload["assistant"]["firstMessage"] == "Hola Lucia, vi tu consulta en idealista"
    assert "assistantId" not in payload


@pytest.mark.asyncio
async def test_vapi_provider_error_raises_adapter_error():
    placer = vapi(recording_client(400, {"message": "invalid number"}, []))

    with pytest.raises(AdapterError) as exc_info:
        await placer.place_call(LUCIA, {}, {})
    assert exc_info.value.provider == "vapi"


@pytest.mark.asyncio
async def test_vapi_requires_api_key_and_phone():
    with pytest.raises(AdapterError):
        await vapi(api_key=None).place_call(LUCIA, {}, {})
    with pytest.raises(AdapterError):
        vapi().build_payload(Contact(id="c2"), {}, {})


def twilio(client=None):
    config = TwilioConfig(account_sid="AC1", auth_token="secret", from_number="+34911000000")
    return TwilioWhatsAppSender(config, client=client)


@pytest.mark.asyncio
async def test_twilio_sends_content_template():
    seen = []
    sender = twilio(recording_client(201, {"sid": "SM123", "status": "queued"}, seen))

    result = await sender.send_message(
        LUCIA,
        {"template_id": "HX1", "variables": {"1": "first_name", "2": "custom_static", "2_static": "Marbella"}},
    )

    assert (result.message_id, result.delivery_status) == ("SM123", "queued")
    request = seen[0]
    assert str(request.url).endswith("/Accounts/AC1/Messages.json")
    assert request.headers["Authorization"].startswith("Basic ")
    form = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
    assert form["From"] == "whatsapp:+34911000000"
    assert form["To"] == "whatsapp:+34600000001"
    assert form["ContentSid"] == "HX1"
    assert json.loads(form["ContentVariables"]) == {"1": "Lucia", "2": "Marbella"}


@pytest.mark.asyncio
async def test_twilio_error_and_missing_body():
    with pytest.raises(AdapterError):
        await twilio(recording_client(400, {"message": "bad"}, [])).send_message(LUCIA, {"message": "hi"})
    with pytest.raises(AdapterError):
        twilio().build_form(LUCIA, {})


def test_resolve_variables_blank_for_missing_fields():
    assert resolve_variables(LUCIA, {"1": "last_name"}) == {"1": ""}


def test_phone_of_reads_crm_extras():
    assert phone_of(Contact(id="x", primary_phone="+1555")) == "+1555"
    assert phone_of(Contact(id="x", phones=["+1666"])) == "+1666"
    assert phone_of(Contact(id="x")) is None


@pytest.mark.asyncio
async def test_logging_email_sender_records_requests():
    sender = LoggingEmailSender()

    result = await sender.send_email(LUCIA, {"subject": "Hi"})

    assert result.message_id == "email-c1-1"
    assert sender.sent == [{"contact_id": "c1", "config": {"subject": "Hi"}}]


@pytest.mark.asyncio
async def test_llm_extractor_returns_flat_details():
    extractor = LlmExtractor(TestModel(custom_output_args={"language": "es", "max_budget": 500000}))

    details = await extractor.extract("Busco villa hasta 500k")

    assert details == {"language": "es", "max_budget": 500000}


@pytest.mark.asyncio
async def test_llm_scorer_returns_selection():
    scorer = LlmAgentScorer(TestModel(custom_output_args={"selected_agent_id": "a2", "reason": "speaks Spanish"}))
    candidates = [AgentCandidate(id="a1", languages=["en"]), AgentCandidate(id="a2", languages=["es"])]

    selection = await scorer.rank(
        candidates, Deal(contact_id="c1", budget_max=750000), ContactProfile(language_primary="es")
    )

    assert selection.selected_agent_id == "a2"


@pytest.mark.asyncio
async def test_llm_failures_become_adapter_errors():
    extractor = LlmExtractor(TestModel())

    with patch.object(extractor.agent, "run", AsyncMock(side_effect=RuntimeError("rate limited"))):
        with pytest.raises(AdapterError) as exc_info:
            await extractor.extract("hola")
    assert exc_info.value.provider == "llm"

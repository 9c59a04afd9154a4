"""Outbound AI phone calls through Vapi."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from ..config import VapiConfig
from ..directory import Contact
from ..errors import AdapterError
from .base import CallPlacer, CallResult, phone_of

logger = logging.getLogger(__name__)


class VapiCallPlacer(CallPlacer):
    """Create calls with ``POST /call``.

    The run id and contact id travel in the call metadata so the call-ended
    webhook can be correlated back to the run.
    """

    provider = "vapi"

    def __init__(self, config: VapiConfig, client: Optional[httpx.AsyncClient] = None) -> None:
        self._config = config
        self._client = client

    def build_payload(
        self, contact: Contact, node_config: Dict[str, Any], metadata: Dict[str, Any]
    ) -> Dict[str, Any]:
        number = phone_of(contact)
        if not number:
            raise AdapterError(f"Contact {contact.id} has no phone number", self.provider)

        phone_number_id = node_config.get("phone_number_id") or self._config.phone_number_id
        if not phone_number_id:
            raise AdapterError("No Vapi phone number configured", self.provider)

        payload: Dict[str, Any] = {
            "phoneNumberId": phone_number_id,
            "customer": {"number": number, "name": contact.full_name},
            "metadata": dict(metadata),
        }

        assistant = node_config.get("assistant")
        if isinstance(assistant, dict):
            first_message = (
                str(assistant.get("firstMessage") or "")
                .replace("{{first_name}}", contact.first_name or "there")
                .replace("{{marketing_source}}", contact.marketing_source or "")
            )
            payload["assistant"] = {**assistant, "firstMessage": first_message}
        else:
            assistant_id = node_config.get("assistant_id") or self._config.assistant_id
            if not assistant_id:
                raise AdapterError("No Vapi assistant configured", self.provider)
            payload["assistantId"] = assistant_id
            payload["assistantOverrides"] = {
                "variableValues": {"first_name": contact.first_name, "buyer_id": contact.id}
            }
        return payload

    async def place_call(
        self, contact: Contact, node_config: Dict[str, Any], metadata: Dict[str, Any]
    ) -> CallResult:
        if not self._config.api_key:
            raise AdapterError("VAPI_API_KEY is not set", self.provider)
        payload = self.build_payload(contact, node_config, metadata)
        headers = {"Authorization": f"Bearer {self._config.api_key}"}
        url = f"{self._config.base_url.rstrip('/')}/call"

        try:
            if self._client is not None:
                response = await self._client.post(url, json=payload, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=self._config.timeout_seconds) as client:
                    response = await client.post(url, json=payload, headers=headers)
        except httpx.HTTPError as exc:
            raise AdapterError(f"Vapi request failed: {exc}", self.provider) from exc

        if response.is_error:
            raise AdapterError(
                f"Vapi call failed ({response.status_code}): {response.text}", self.provider
            )
        call_id = response.json().get("id")
        if not call_id:
            raise AdapterError("Vapi response has no call id", self.provider)

        logger.info(f"Vapi call {call_id} started for contact {contact.id}")
        return CallResult(call_id=str(call_id))

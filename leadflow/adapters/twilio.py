"""WhatsApp messages through the Twilio Messages API."""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

import httpx

from ..config import TwilioConfig
from ..directory import Contact
from ..errors import AdapterError
from .base import MessageResult, MessageSender, phone_of

logger = logging.getLogger(__name__)

WHATSAPP_PREFIX = "whatsapp:"


def as_whatsapp(number: str) -> str:
    return number if number.startswith(WHATSAPP_PREFIX) else f"{WHATSAPP_PREFIX}{number}"


def resolve_variables(contact: Contact, variables: Dict[str, Any]) -> Dict[str, str]:
    """Map template variables to contact fields.

    ``{"1": "first_name"}`` reads ``contact.first_name``; the value
    ``custom_static`` reads the literal stored under ``"<key>_static"``.
    """
    resolved: Dict[str, str] = {}
    for key, field in variables.items():
        if key.endswith("_static"):
            continue
        if field == "custom_static":
            resolved[key] = str(variables.get(f"{key}_static") or "")
        else:
            value = contact.field(str(field))
            resolved[key] = "" if value is None else str(value)
    return resolved


class TwilioWhatsAppSender(MessageSender):
    provider = "twilio"

    def __init__(self, config: TwilioConfig, client: Optional[httpx.AsyncClient] = None) -> None:
        self._config = config
        self._client = client

    def build_form(self, contact: Contact, node_config: Dict[str, Any]) -> Dict[str, str]:
        sender = node_config.get("from_number") or self._config.from_number
        if not sender:
            raise AdapterError("No WhatsApp sender number configured", self.provider)
        number = phone_of(contact)
        if not number:
            raise AdapterError(f"Contact {contact.id} has no phone number", self.provider)

        form = {"From": as_whatsapp(sender), "To": as_whatsapp(number)}
        template_id = node_config.get("template_id")
        if template_id:
            form["ContentSid"] = str(template_id)
            variables = resolve_variables(contact, node_config.get("variables") or {})
            if variables:
                form["ContentVariables"] = json.dumps(variables)
        elif node_config.get("message"):
            form["Body"] = str(node_config["message"])
        else:
            raise AdapterError("No template_id or message body provided", self.provider)
        return form

    async def send_message(
        self, contact: Contact, node_config: Dict[str, Any]
    ) -> MessageResult:
        sid, token = self._config.account_sid, self._config.auth_token
        if not sid or not token:
            raise AdapterError("Missing Twilio credentials", self.provider)
        form = self.build_form(contact, node_config)
        url = f"{self._config.base_url.rstrip('/')}/Accounts/{sid}/Messages.json"

        try:
            if self._client is not None:
                response = await self._client.post(url, data=form, auth=(sid, token))
            else:
                async with httpx.AsyncClient(timeout=self._config.timeout_seconds) as client:
                    response = await client.post(url, data=form, auth=(sid, token))
        except httpx.HTTPError as exc:
            raise AdapterError(f"Twilio request failed: {exc}", self.provider) from exc

        if response.is_error:
            raise AdapterError(
                f"Twilio error {response.status_code}: {response.text}", self.provider
            )
        data = response.json()
        logger.info(f"WhatsApp message {data.get('sid')} sent to {form['To']}")
        return MessageResult(message_id=str(data.get("sid")), delivery_status=data.get("status"))

"""Translate provider webhook payloads into ``ProviderEvent``s."""

from __future__ import annotations

from typing import Any, Dict, Mapping, Optional, Tuple

from .contracts import EventType, ProviderEvent, call_outcome


def map_ended_reason(reason: Optional[str]) -> Tuple[str, bool]:
    """Map a Vapi ``endedReason`` to ``(outcome, success)``."""
    return call_outcome(reason)


def _dig(data: Mapping[str, Any], *path: str) -> Any:
    current: Any = data
    for key in path:
        if not isinstance(current, Mapping):
            return None
        current = current.get(key)
    return current


def parse_vapi_webhook(body: Mapping[str, Any]) -> Optional[ProviderEvent]:
    """Return a ``call_ended`` event, or ``None`` for messages that do not end a call."""
    message = body.get("message")
    if not isinstance(message, Mapping):
        return None

    kind = message.get("type")
    ended = (kind == "status-update" and message.get("status") == "ended") or (
        kind == "end-of-call-report"
    )
    if not ended:
        return None

    reason = message.get("endedReason")
    outcome, success = map_ended_reason(reason)
    metadata = _dig(message, "call", "metadata") or {}
    contact_id = (
        metadata.get("contact_id")
        or _dig(message, "call", "assistantOverrides", "variableValues", "buyer_id")
        or _dig(message, "assistant", "variableValues", "buyer_id")
    )
    payload: Dict[str, Any] = {"provider": "vapi", "message_type": kind}
    if message.get("transcript"):
        payload["transcript"] = message["transcript"]
    if message.get("recordingUrl"):
        payload["recording_url"] = message["recordingUrl"]

    return ProviderEvent(
        event_type=EventType.CALL_ENDED.value,
        run_id=metadata.get("workflow_run_id"),
        correlation_id=_dig(message, "call", "id"),
        contact_id=contact_id,
        outcome=outcome,
        success=success,
        reason=reason,
        payload=payload,
    )


def parse_twilio_webhook(form: Mapping[str, Any]) -> Optional[ProviderEvent]:
    """Inbound WhatsApp message or delivery status callback.

    Inbound messages carry no contact id; the gateway resolves it from the
    ``from`` phone number in the payload.
    """
    sid = form.get("MessageSid") or form.get("SmsSid")
    body = form.get("Body")
    sender = form.get("From")
    if body and sender:
        return ProviderEvent(
            event_type=EventType.MESSAGE_RECEIVED.value,
            correlation_id=sid,
            text=str(body),
            payload={
                "provider": "twilio",
                "from": str(sender),
                "profile_name": form.get("ProfileName"),
            },
        )

    status = form.get("MessageStatus")
    if status and sid:
        return ProviderEvent(
            event_type=EventType.MESSAGE_STATUS.value,
            correlation_id=sid,
            outcome=str(status),
            success=status not in ("failed", "undelivered"),
            reason=form.get("ErrorCode"),
            payload={"provider": "twilio"},
        )
    return None

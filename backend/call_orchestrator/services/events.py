"""Normalize provider callback bodies into one typed event per callback kind.

Callbacks arrive form-encoded from the provider and JSON-encoded from
internal relays, with PascalCase, camelCase or snake_case keys. Everything
past this module sees only the pydantic event models.
"""
import json
import logging
from typing import Any, Dict, Iterable, Optional
from urllib.parse import parse_qsl

from ..schemas.pydantic_schemas import (
    CallStatusEvent,
    DialStatusEvent,
    OperatorResultEvent,
    RecordingStatusEvent,
    TranscriptStatusEvent,
)

logger = logging.getLogger(__name__)


class MalformedBody(ValueError):
    """The callback body could not be parsed as form data or JSON."""


def parse_body(raw: bytes, content_type: Optional[str]) -> Dict[str, Any]:
    content_type = (content_type or "").lower()
    text = raw.decode("utf-8", errors="replace").strip() if raw else ""
    if not text:
        return {}
    if "application/json" in content_type or text[:1] in ("{", "["):
        try:
            body = json.loads(text)
        except ValueError as e:
            raise MalformedBody(f"Invalid JSON body: {e}") from e
        if not isinstance(body, dict):
            raise MalformedBody("JSON body must be an object")
        return body
    try:
        return dict(parse_qsl(text, keep_blank_values=True, strict_parsing=True))
    except ValueError as e:
        raise MalformedBody(f"Invalid form body: {e}") from e


def _pick(body: Dict[str, Any], keys: Iterable[str]) -> Optional[Any]:
    for key in keys:
        value = body.get(key)
        if isinstance(value, str):
            value = value.strip()
        if value is not None and value != "":
            return value
    return None


def _int(value: Any, default: Optional[int] = None) -> Optional[int]:
    try:
        return int(value) if value not in (None, "") else default
    except (TypeError, ValueError):
        return default


def _lower(value: Any) -> Optional[str]:
    return str(value).strip().lower() if value not in (None, "") else None


CALL_ID_KEYS = ("CallSid", "callSid", "call_sid", "call_id")


def call_status_event(body: Dict[str, Any]) -> CallStatusEvent:
    return CallStatusEvent(
        call_id=_pick(body, CALL_ID_KEYS),
        status=_lower(_pick(body, ("CallStatus", "callStatus", "call_status", "status"))),
        from_number=_pick(body, ("From", "from", "from_number")),
        to_number=_pick(body, ("To", "to", "to_number")),
        direction=_pick(body, ("Direction", "direction")),
        duration_seconds=_int(_pick(body, ("CallDuration", "callDuration", "Duration", "duration", "duration_seconds"))),
        recording_url=_pick(body, ("RecordingUrl", "recordingUrl", "recording_url")),
        parent_call_id=_pick(body, ("ParentCallSid", "parentCallSid", "parent_call_sid")),
        dial_call_id=_pick(body, ("DialCallSid", "dialCallSid", "dial_call_sid")),
    )


def dial_status_event(body: Dict[str, Any]) -> DialStatusEvent:
    # Dial action callbacks carry the parent as CallSid and the child as
    # DialCallSid; child-leg status callbacks carry ParentCallSid and CallSid.
    parent = _pick(body, ("ParentCallSid", "parentCallSid", "parent_call_sid"))
    child = _pick(body, ("DialCallSid", "dialCallSid", "dial_call_sid"))
    if parent is None:
        parent = _pick(body, CALL_ID_KEYS)
    elif child is None:
        child = _pick(body, CALL_ID_KEYS)
    return DialStatusEvent(
        parent_call_id=parent,
        child_call_id=child,
        dial_status=_lower(_pick(body, ("DialCallStatus", "dialCallStatus", "CallStatus", "status"))),
        from_number=_pick(body, ("From", "from", "from_number")),
        to_number=_pick(body, ("To", "to", "to_number")),
        direction=_pick(body, ("Direction", "direction")),
    )


def recording_status_event(body: Dict[str, Any]) -> RecordingStatusEvent:
    return RecordingStatusEvent(
        recording_id=_pick(body, ("RecordingSid", "recordingSid", "recording_sid", "recording_id")),
        call_id=_pick(body, CALL_ID_KEYS),
        status=_lower(_pick(body, ("RecordingStatus", "recordingStatus", "recording_status", "status"))),
        channels=_int(_pick(body, ("RecordingChannels", "recordingChannels", "recording_channels", "channels")), 1),
        source=_pick(body, ("RecordingSource", "recordingSource", "recording_source", "source")),
        duration_seconds=_int(_pick(body, ("RecordingDuration", "recordingDuration", "recording_duration", "duration"))),
        url=_pick(body, ("RecordingUrl", "recordingUrl", "recording_url", "url")),
    )


def transcript_status_event(body: Dict[str, Any]) -> TranscriptStatusEvent:
    status = _lower(_pick(body, ("status", "Status", "event_type", "EventType")))
    # e.g. voice_intelligence_transcript_available
    if status and status.endswith("_available"):
        status = "completed"
    return TranscriptStatusEvent(
        transcript_id=_pick(body, ("transcript_sid", "TranscriptSid", "transcriptSid", "transcript_id")),
        service_id=_pick(body, ("service_sid", "ServiceSid", "serviceSid")),
        status=status,
        call_id=_pick(body, CALL_ID_KEYS),
        recording_id=_pick(body, ("source_sid", "SourceSid", "sourceSid", "RecordingSid", "recording_sid")),
        customer_key=_pick(body, ("customer_key", "CustomerKey", "customerKey")),
    )


def operator_result_event(body: Dict[str, Any]) -> OperatorResultEvent:
    nested = body.get("Payload") if isinstance(body.get("Payload"), dict) else {}
    result = nested.get("Result") or body.get("result") or {}
    call_id = _pick(body, CALL_ID_KEYS + ("customerKey", "customer_key"))
    if call_id is None and isinstance(result, dict):
        call_id = _pick(result, CALL_ID_KEYS + ("customerKey",))
    return OperatorResultEvent(call_id=call_id, payload=body)

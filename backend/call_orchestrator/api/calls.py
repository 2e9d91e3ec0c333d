from fastapi import APIRouter, BackgroundTasks, HTTPException
from typing import Any, Dict, Optional
from ..schemas.pydantic_schemas import CallUpsertRequest, CallRead, CallListResponse, TranscriptResult
from ..db import get_db, CALL_FIELDS
from ..errors import UnresolvedIdentity
from ..services.identity import IdentityResolver, is_call_id
from ..services.transcript_processor import TranscriptPipeline
from ..services.twilio_client import TwilioClient
import logging

# Set up logger
logger = logging.getLogger(__name__)

router = APIRouter()

# Relays that still post the older camelCase payloads
FIELD_ALIASES = {
    "callSid": "call_id",
    "recordingSid": "recording_id",
    "transcriptSid": "transcript_id",
    "aiInsights": "insight",
    "recordingUrl": "recording_url",
    "formattedTranscript": "formatted_transcript",
    "from": "from_number",
    "to": "to_number",
    "duration": "duration_seconds",
}


def _normalize_fields(payload: Dict[str, Any]) -> Dict[str, Any]:
    fields: Dict[str, Any] = {}
    for key, value in payload.items():
        name = FIELD_ALIASES.get(key, key)
        if value is not None and name not in fields:
            fields[name] = value
    return fields


@router.post("", response_model=CallRead)
async def upsert_call(payload: CallUpsertRequest):
    fields = _normalize_fields(payload.model_dump(exclude_none=True))
    db = get_db()
    try:
        call_id = await IdentityResolver(db, TwilioClient()).resolve_call_id(
            call_id=fields.get("call_id"),
            recording_id=fields.get("recording_id"),
            transcript_id=fields.get("transcript_id"),
        )
    except UnresolvedIdentity as e:
        logger.warning(f"Refusing call upsert: {e}")
        raise HTTPException(status_code=422, detail="Could not resolve a call id")

    ignored = sorted(k for k in fields if k not in CALL_FIELDS)
    if ignored:
        logger.debug(f"Ignoring unknown call fields for {call_id}: {ignored}")
    fields.pop("call_id", None)
    call = db.upsert_call(call_id, fields)
    logger.info(f"Merged {len(fields) - len(ignored)} field(s) into {call_id}")
    return call


@router.get("", response_model=CallListResponse)
async def list_calls(status: Optional[str] = None, page: int = 1, page_size: int = 20):
    db = get_db()
    page = max(1, page)
    page_size = min(max(1, page_size), 100)
    items, total = db.list_calls(status=status, page=page, page_size=page_size)
    return {"items": items, "total": total, "page": page, "page_size": page_size}


@router.get("/{call_id}", response_model=CallRead)
async def get_call(call_id: str):
    db = get_db()
    call = db.get_call(call_id) if is_call_id(call_id) else None
    if not call:
        raise HTTPException(status_code=404, detail="Call not found")
    return call


@router.post("/{call_id}/process", response_model=TranscriptResult)
async def process_call(call_id: str, background_tasks: BackgroundTasks, recording_id: Optional[str] = None, background: bool = False):
    db = get_db()
    if not is_call_id(call_id) or not db.get_call(call_id):
        raise HTTPException(status_code=404, detail="Call not found")
    pipeline = TranscriptPipeline(db, TwilioClient())
    if background:
        background_tasks.add_task(pipeline.process_call_transcript, call_id, recording_id, True)
        return TranscriptResult(outcome="pending", call_id=call_id, recording_id=recording_id, reason="queued")
    logger.info(f"On-demand transcript processing requested for {call_id}")
    return await pipeline.process_call_transcript(call_id=call_id, recording_id=recording_id, trigger=True)

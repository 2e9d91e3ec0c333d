from fastapi import APIRouter, BackgroundTasks, HTTPException, Request
from typing import Any, Dict, Optional
import base64, hashlib, hmac, os
import logging

from ..config import auto_process_enabled, public_base_url, validate_signatures
from ..db import get_db
from ..errors import OrchestratorError, UnresolvedIdentity
from ..schemas.pydantic_schemas import ANSWERED_STATUSES, TERMINAL_STATUSES
from ..services.channel_roles import split_legs
from ..services.events import (
    MalformedBody,
    call_status_event,
    dial_status_event,
    operator_result_event,
    parse_body,
    recording_status_event,
    transcript_status_event,
)
from ..services.identity import IdentityResolver, is_call_id
from ..services.insights import insight_from_operator_payload
from ..services.recording_coordinator import RecordingCoordinator, normalize_recording_url
from ..services.transcript_processor import TranscriptPipeline
from ..services.twilio_client import TwilioClient

# Set up logger
logger = logging.getLogger(__name__)

router = APIRouter()


def compute_signature(auth_token: str, url: str, params: Dict[str, Any]) -> str:
    """X-Twilio-Signature: base64 HMAC-SHA1 of the URL followed by the sorted form params."""
    payload = url + "".join(f"{k}{params[k]}" for k in sorted(params))
    digest = hmac.new(auth_token.encode(), payload.encode("utf-8"), hashlib.sha1).digest()
    return base64.b64encode(digest).decode()


def verify_signature(request: Request, params: Dict[str, Any], is_json: bool) -> bool:
    token = os.getenv("TWILIO_AUTH_TOKEN")
    if not validate_signatures() or not token:
        return True  # allow in local dev
    url = f"{public_base_url()}{request.url.path}"
    if request.url.query:
        url += f"?{request.url.query}"
    # JSON callbacks are signed over the URL alone (the body hash rides in the query)
    expected = compute_signature(token, url, {} if is_json else params)
    return hmac.compare_digest(expected, request.headers.get("x-twilio-signature", ""))


async def read_callback(request: Request) -> Dict[str, Any]:
    raw = await request.body()
    content_type = request.headers.get("content-type")
    try:
        body = parse_body(raw, content_type)
    except MalformedBody as e:
        logger.error(f"Rejecting malformed callback on {request.url.path}: {e}")
        raise HTTPException(status_code=400, detail="Malformed body")
    if not verify_signature(request, body, "json" in (content_type or "").lower()):
        logger.warning(f"Signature verification failed on {request.url.path}")
        raise HTTPException(status_code=403, detail="Invalid signature")
    return body


def _components():
    db = get_db()
    provider = TwilioClient()
    return db, provider, RecordingCoordinator(db, provider)


async def run_ensure_dual(call_id: str, dial_call_id: Optional[str], status: str) -> None:
    _, _, coordinator = _components()
    try:
        await coordinator.ensure_dual_recording(call_id, dial_call_id=dial_call_id, status=status)
    except Exception as e:
        logger.exception(f"Dual recording coordination failed for {call_id}: {e}")


async def run_backfill(call_id: str) -> None:
    _, _, coordinator = _components()
    try:
        await coordinator.backfill_recording(call_id)
    except Exception as e:
        logger.exception(f"Recording backfill failed for {call_id}: {e}")


async def run_transcript(call_id: Optional[str], recording_id: Optional[str], trigger: bool) -> None:
    db, provider, _ = _components()
    try:
        result = await TranscriptPipeline(db, provider).process_call_transcript(call_id=call_id, recording_id=recording_id, trigger=trigger)
        logger.info(f"Transcript processing for {call_id or recording_id}: {result.outcome.value} {result.reason or ''}".rstrip())
    except Exception as e:
        logger.exception(f"Transcript processing failed for {call_id or recording_id}: {e}")


@router.post("/status")
async def call_status(request: Request, background_tasks: BackgroundTasks):
    body = await read_callback(request)
    event = call_status_event(body)
    logger.info(f"Call status {event.status} for {event.call_id} (parent={event.parent_call_id})")

    if not is_call_id(event.call_id):
        logger.warning(f"Skipping status callback without a valid call id: {event.call_id!r}")
        return {"ok": True, "skipped": "unresolved call id"}

    # Child legs are coordinated through their parent and get no record of their own
    if is_call_id(event.parent_call_id):
        if event.status in ANSWERED_STATUSES:
            background_tasks.add_task(run_ensure_dual, event.parent_call_id, event.call_id, event.status)
        return {"ok": True, "call_id": event.parent_call_id}

    call_id = event.call_id
    try:
        db, _, coordinator = _components()
        fields = {
            "from_number": event.from_number,
            "to_number": event.to_number,
            "direction": event.direction,
            "status": event.status,
            "duration_seconds": event.duration_seconds,
        }
        if event.from_number or event.to_number:
            legs = split_legs(event.from_number, event.to_number)
            fields.update({k: v for k, v in legs.items() if v})
        record = db.upsert_call(call_id, fields) or {}

        if event.status in ANSWERED_STATUSES:
            background_tasks.add_task(run_ensure_dual, call_id, event.dial_call_id, event.status)
        elif event.status in TERMINAL_STATUSES:
            coordinator.close(call_id)
            if event.status == "completed":
                if event.recording_url and not record.get("recording_url"):
                    # Status callbacks can carry the call's recording; a stored recording always wins
                    record = db.upsert_call(call_id, {"recording_url": normalize_recording_url(event.recording_url)}) or record
                if not record.get("recording_url"):
                    background_tasks.add_task(run_backfill, call_id)
                if auto_process_enabled():
                    background_tasks.add_task(run_transcript, call_id, None, False)
    except OrchestratorError as e:
        logger.error(f"Status handling failed for {call_id}: {e}")
        return {"ok": False, "call_id": call_id}
    return {"ok": True, "call_id": call_id}


@router.post("/dial-status")
async def dial_status(request: Request, background_tasks: BackgroundTasks):
    body = await read_callback(request)
    event = dial_status_event(body)
    logger.info(f"Dial status {event.dial_status} for parent {event.parent_call_id} child {event.child_call_id}")

    if not is_call_id(event.parent_call_id):
        logger.warning(f"Skipping dial callback without a valid parent call id: {event.parent_call_id!r}")
        return {"ok": True, "skipped": "unresolved call id"}

    db = get_db()
    record = db.get_call(event.parent_call_id) or {}
    if not record.get("counterparty_phone") and (event.from_number or event.to_number):
        legs = split_legs(event.from_number, event.to_number)
        db.upsert_call(event.parent_call_id, {k: v for k, v in legs.items() if v})

    if event.dial_status in ANSWERED_STATUSES:
        background_tasks.add_task(run_ensure_dual, event.parent_call_id, event.child_call_id, event.dial_status)
    return {"ok": True, "call_id": event.parent_call_id}


@router.post("/recording")
async def recording_status(request: Request, background_tasks: BackgroundTasks):
    body = await read_callback(request)
    event = recording_status_event(body)
    logger.info(f"Recording {event.recording_id} {event.status} ({event.channels} channel(s), source={event.source}) for {event.call_id}")

    _, _, coordinator = _components()
    try:
        call_id = await coordinator.call_id_for_event(event)
    except UnresolvedIdentity as e:
        logger.warning(f"Skipping recording callback: {e}")
        return {"ok": True, "skipped": "unresolved call id"}

    written = coordinator.handle_recording_status(call_id, event)
    if written is None:
        return {"ok": True, "call_id": call_id, "ignored": True}
    if event.status == "completed" and auto_process_enabled():
        background_tasks.add_task(run_transcript, call_id, event.recording_id, False)
    return {"ok": True, "call_id": call_id}


@router.post("/transcript")
async def transcript_status(request: Request, background_tasks: BackgroundTasks):
    body = await read_callback(request)
    event = transcript_status_event(body)
    logger.info(f"Transcript {event.transcript_id} is {event.status} (customer_key={event.customer_key})")

    if not event.transcript_id:
        logger.warning("Skipping transcript callback without a transcript id")
        return {"ok": True, "skipped": "missing transcript id"}

    db = get_db()
    db.save_transcript({
        "transcript_id": event.transcript_id,
        "source_recording_id": event.recording_id,
        "status": event.status,
        "customer_key": event.customer_key,
    })
    if event.status != "completed":
        return {"ok": True}

    try:
        call_id = await IdentityResolver(db, TwilioClient()).resolve_call_id(
            call_id=event.call_id, recording_id=event.recording_id, transcript_id=event.transcript_id
        )
    except UnresolvedIdentity as e:
        logger.warning(f"Skipping transcript callback: {e}")
        return {"ok": True, "skipped": "unresolved call id"}

    # A transcript someone asked for finishes even when auto-processing is off
    record = db.get_call(call_id) or {}
    requested = record.get("transcript_id") == event.transcript_id and record.get("transcript_status") != "completed"
    if requested or auto_process_enabled():
        background_tasks.add_task(run_transcript, call_id, event.recording_id, requested)
    return {"ok": True, "call_id": call_id}


@router.post("/operator-result")
async def operator_result(request: Request):
    body = await read_callback(request)
    event = operator_result_event(body)
    if not event.call_id:
        logger.error("Operator result callback missing call id")
        raise HTTPException(status_code=400, detail="Missing call id")

    db = get_db()
    try:
        call_id = await IdentityResolver(db, TwilioClient()).resolve_call_id(call_id=event.call_id)
    except UnresolvedIdentity as e:
        logger.warning(f"Skipping operator result: {e}")
        return {"ok": True, "skipped": "unresolved call id"}

    insight = insight_from_operator_payload(event.payload)
    db.upsert_call(call_id, {"insight": insight.model_dump(mode="json")})
    logger.info(f"Stored operator insight for {call_id} (sentiment={insight.sentiment}, disposition={insight.disposition})")
    return {"ok": True, "call_id": call_id}

from typing import Any, Dict, List, Optional, Tuple
from datetime import datetime, timezone
import logging
import os
import threading

# Lightweight adapter over Supabase client. Falls back to an in-memory store when SUPABASE_URL is missing.
from supabase import create_client, Client

from .schemas.pydantic_schemas import TERMINAL_STATUSES
from .services.identity import is_call_id

logger = logging.getLogger(__name__)

# Columns of the `calls` table; anything else sent to upsert_call is dropped.
CALL_FIELDS = (
    "call_id",
    "from_number",
    "to_number",
    "direction",
    "status",
    "duration_seconds",
    "business_phone",
    "counterparty_phone",
    "recording_id",
    "recording_url",
    "recording_channels",
    "recording_source",
    "recording_duration_seconds",
    "recording_state",
    "pending_recording_id",
    "transcript_id",
    "transcript_status",
    "transcript_provenance",
    "transcript_recreated_for",
    "transcript",
    "formatted_transcript",
    "utterances",
    "channel_role_map",
    "insight",
    "operator_results",
    "created_at",
    "updated_at",
)

WRITE_ONCE_FIELDS = ("call_id", "created_at")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def merge_call_fields(current: Dict[str, Any], partial: Dict[str, Any]) -> Dict[str, Any]:
    """Merge a partial update into a call document, field by field.

    Later values win per field, except that None never erases a value,
    write-once fields keep their first value, and a terminal status is not
    replaced by a non-terminal one delivered late.
    """
    merged = dict(current or {})
    for key, value in (partial or {}).items():
        if value is None:
            continue
        if key in WRITE_ONCE_FIELDS and merged.get(key) is not None:
            continue
        if key == "status" and merged.get("status") in TERMINAL_STATUSES and value not in TERMINAL_STATUSES:
            continue
        merged[key] = value
    return merged


def _merge_index_row(current: Optional[Dict[str, Any]], row: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(current or {})
    for k, v in row.items():
        if v is not None:
            merged[k] = v
    return merged


class InMemoryDB:
    def __init__(self) -> None:
        self.calls: Dict[str, Dict[str, Any]] = {}
        self.recordings: Dict[str, Dict[str, Any]] = {}
        self.transcripts: Dict[str, Dict[str, Any]] = {}
        # Held only around dict merges, never across provider calls
        self._lock = threading.Lock()

    # Calls
    def upsert_call(self, call_id: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        if not is_call_id(call_id):
            logger.warning(f"Refusing to upsert call record under non-call id {call_id!r}")
            return None
        partial = {k: v for k, v in (fields or {}).items() if k in CALL_FIELDS}
        with self._lock:
            current = self.calls.get(call_id) or {}
            merged = merge_call_fields(current, partial)
            merged["call_id"] = call_id
            merged.setdefault("created_at", _now())
            merged["updated_at"] = _now()
            self.calls[call_id] = merged
            return dict(merged)

    def get_call(self, call_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            call = self.calls.get(str(call_id))
            return dict(call) if call else None

    def list_calls(self, status: Optional[str], page: int, page_size: int) -> Tuple[List[Dict[str, Any]], int]:
        with self._lock:
            items = [dict(c) for c in self.calls.values()]
        if status:
            items = [c for c in items if c.get("status") == status]
        items.sort(key=lambda c: c.get("created_at") or "", reverse=True)
        total = len(items)
        start = (page - 1) * page_size
        end = start + page_size
        return items[start:end], total

    # Recording index
    def save_recording(self, recording: Dict[str, Any]) -> None:
        rid = recording.get("recording_id")
        if not rid:
            return
        with self._lock:
            self.recordings[rid] = _merge_index_row(self.recordings.get(rid), recording)

    def get_recording(self, recording_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self.recordings.get(str(recording_id))
            return dict(row) if row else None

    # Transcript index
    def save_transcript(self, transcript: Dict[str, Any]) -> None:
        tid = transcript.get("transcript_id")
        if not tid:
            return
        with self._lock:
            self.transcripts[tid] = _merge_index_row(self.transcripts.get(tid), transcript)

    def get_transcript(self, transcript_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self.transcripts.get(str(transcript_id))
            return dict(row) if row else None


class SupabaseDB:
    """Per-field merge pushed down to Postgres: an upsert only touches the columns it names."""

    def __init__(self, client: Client) -> None:
        self.client = client

    # Calls
    def upsert_call(self, call_id: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        if not is_call_id(call_id):
            logger.warning(f"Refusing to upsert call record under non-call id {call_id!r}")
            return None
        dropped = [k for k in (fields or {}) if k not in CALL_FIELDS]
        if dropped:
            logger.debug(f"Dropping unknown call fields for {call_id}: {dropped}")
        row = {k: v for k, v in (fields or {}).items() if k in CALL_FIELDS and v is not None and k not in WRITE_ONCE_FIELDS}
        if "status" in row and row["status"] not in TERMINAL_STATUSES:
            current = self.get_call(call_id) or {}
            if current.get("status") in TERMINAL_STATUSES:
                logger.info(f"Keeping terminal status {current['status']} for {call_id}; ignoring late {row['status']}")
                row.pop("status")
        row["call_id"] = call_id
        row["updated_at"] = _now()
        # created_at is filled by the column default on first insert; the
        # keep_terminal_call_status trigger repeats the status check atomically
        res = self.client.table("calls").upsert(row, on_conflict="call_id").execute()
        return (res.data or [row])[0]

    def get_call(self, call_id: str) -> Optional[Dict[str, Any]]:
        res = self.client.table("calls").select("*").eq("call_id", str(call_id)).limit(1).execute()
        return (res.data or [None])[0]

    def list_calls(self, status: Optional[str], page: int, page_size: int) -> Tuple[List[Dict[str, Any]], int]:
        query = self.client.table("calls").select("*", count="exact")
        if status:
            query = query.eq("status", status)
        start = (page - 1) * page_size
        end = start + page_size - 1
        res = query.order("created_at", desc=True).range(start, end).execute()
        items = res.data or []
        total = res.count if getattr(res, "count", None) is not None else len(items)
        return items, total

    # Recording index
    def save_recording(self, recording: Dict[str, Any]) -> None:
        row = {k: v for k, v in recording.items() if v is not None}
        if not row.get("recording_id"):
            return
        self.client.table("call_recordings").upsert(row, on_conflict="recording_id").execute()

    def get_recording(self, recording_id: str) -> Optional[Dict[str, Any]]:
        res = self.client.table("call_recordings").select("*").eq("recording_id", str(recording_id)).limit(1).execute()
        return (res.data or [None])[0]

    # Transcript index
    def save_transcript(self, transcript: Dict[str, Any]) -> None:
        row = {k: v for k, v in transcript.items() if v is not None}
        if not row.get("transcript_id"):
            return
        self.client.table("call_transcripts").upsert(row, on_conflict="transcript_id").execute()

    def get_transcript(self, transcript_id: str) -> Optional[Dict[str, Any]]:
        res = self.client.table("call_transcripts").select("*").eq("transcript_id", str(transcript_id)).limit(1).execute()
        return (res.data or [None])[0]


_client: Optional[Client] = None
_db_instance: Optional[Any] = None


def get_db():
    global _client, _db_instance

    url = os.getenv("SUPABASE_URL")
    key = os.getenv("SUPABASE_SERVICE_ROLE_KEY")
    if url and key:
        if _client is None:
            _client = create_client(url, key)
        if _db_instance is None or not isinstance(_db_instance, SupabaseDB):
            _db_instance = SupabaseDB(_client)
        return _db_instance
    if _db_instance is None or not isinstance(_db_instance, InMemoryDB):
        _db_instance = InMemoryDB()
    return _db_instance


def reset_db() -> None:
    """Drop the cached store so the next get_db() starts fresh."""
    global _client, _db_instance
    _client = None
    _db_instance = None

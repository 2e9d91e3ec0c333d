"""Drive every answered call toward exactly one dual-channel recording.

A call can be recorded by the Dial verb (mono, one mixed track) and by the
REST API (dual, one channel per leg). Several status callbacks for the same
call may race through here, so every start is followed by a reconcile pass
that keeps the earliest active dual recording and stops the rest.
"""
import logging
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Dict, List, Optional

from ..config import recording_callback_url
from ..errors import ProviderUnavailable
from ..schemas.pydantic_schemas import (
    ANSWERED_STATUSES,
    TERMINAL_STATUSES,
    RecordingState,
    RecordingStatusEvent,
)
from .channel_roles import is_client_address
from .identity import IdentityResolver, is_call_id

logger = logging.getLogger(__name__)

ACTIVE_RECORDING_STATUSES = ("in-progress", "paused")
DIAL_VERB_SOURCE = "DialVerb"
_EPOCH_MAX = datetime.max.replace(tzinfo=timezone.utc)


def is_active(recording: Dict[str, Any]) -> bool:
    # A fresh start response may not carry a status yet
    status = recording.get("status")
    return status is None or status in ACTIVE_RECORDING_STATUSES


def is_dual(recording: Dict[str, Any]) -> bool:
    try:
        return int(recording.get("channels") or 1) == 2
    except (TypeError, ValueError):
        return False


def normalize_recording_url(url: Optional[str]) -> Optional[str]:
    """Completed recordings are served as mp3; the callback URL has no extension."""
    if not url:
        return None
    url = url.strip()
    last = url.rsplit("/", 1)[-1]
    if last.endswith(".mp3"):
        return url
    if "." in last:
        url = url[: url.rfind(".")]
    return f"{url}.mp3"


def _created_key(recording: Dict[str, Any]):
    raw = recording.get("date_created")
    created = _EPOCH_MAX
    if raw:
        try:
            created = parsedate_to_datetime(raw)
        except (TypeError, ValueError):
            try:
                created = datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
            except ValueError:
                created = _EPOCH_MAX
        if created.tzinfo is None:
            created = created.replace(tzinfo=timezone.utc)
    return (created, recording.get("recording_id") or "")


class RecordingCoordinator:
    def __init__(self, db, provider) -> None:
        self.db = db
        self.provider = provider

    def _state(self, call_id: str) -> Optional[str]:
        return (self.db.get_call(call_id) or {}).get("recording_state")

    def _index(self, call_id: str, recording: Dict[str, Any]) -> None:
        # Index rows point at the orchestrated call; the leg keeps its own sid
        row = dict(recording)
        row["leg_call_id"] = recording.get("call_id") or call_id
        row["call_id"] = call_id
        self.db.save_recording(row)

    async def _candidates(self, call_id: str, dial_call_id: Optional[str]) -> List[str]:
        try:
            children = await self.provider.list_child_calls(call_id)
        except ProviderUnavailable as e:
            logger.warning(f"Could not list child legs for {call_id}: {e}")
            children = []

        pstn: List[str] = []
        others: List[str] = []
        for child in children:
            sid = child.get("call_id")
            if not sid or sid == call_id:
                continue
            is_pstn = child.get("direction") == "outbound-dial" and not (
                is_client_address(child.get("to_number")) or is_client_address(child.get("from_number"))
            )
            (pstn if is_pstn else others).append(sid)
        if dial_call_id and dial_call_id != call_id and dial_call_id not in pstn + others:
            others.insert(0, dial_call_id)
        return pstn + others + [call_id]

    async def _list(self, call_id: str, leg: str) -> Optional[List[Dict[str, Any]]]:
        try:
            recordings = await self.provider.list_call_recordings(leg)
        except ProviderUnavailable as e:
            logger.warning(f"Could not list recordings on leg {leg} of {call_id}: {e}")
            return None
        for recording in recordings:
            self._index(call_id, recording)
        return recordings

    async def ensure_dual_recording(
        self,
        call_id: str,
        dial_call_id: Optional[str] = None,
        status: Optional[str] = None,
    ) -> Optional[str]:
        """Start a dual recording on the best leg unless one is already running.

        Returns the resulting recording state, or None when nothing was attempted.
        """
        if status not in ANSWERED_STATUSES:
            return None
        record = self.db.get_call(call_id) or {}
        if record.get("status") in TERMINAL_STATUSES or record.get("recording_state") == RecordingState.SUPERSEDED.value:
            logger.info(f"Call {call_id} is closed; not starting a dual recording")
            return None

        candidates = await self._candidates(call_id, dial_call_id)
        listed: Dict[str, List[Dict[str, Any]]] = {}
        for leg in candidates:
            recordings = await self._list(call_id, leg)
            if recordings is None:
                continue
            listed[leg] = recordings
            if any(is_dual(r) and is_active(r) for r in recordings):
                logger.info(f"Dual recording already active on leg {leg} of {call_id}")
                self.db.upsert_call(call_id, {"recording_state": RecordingState.DUAL_ACTIVE.value})
                return RecordingState.DUAL_ACTIVE.value

        for leg in candidates:
            monos = [r for r in listed.get(leg, []) if is_active(r) and not is_dual(r)]
            if monos:
                self.db.upsert_call(call_id, {"recording_state": RecordingState.DUAL_PENDING.value})
                for mono in monos:
                    try:
                        await self.provider.stop_recording(leg, mono.get("recording_id") or "Twilio.CURRENT")
                        logger.info(f"Stopped mono recording {mono.get('recording_id')} on leg {leg} of {call_id}")
                    except ProviderUnavailable as e:
                        logger.warning(f"Could not stop mono recording on leg {leg} of {call_id}: {e}")

            try:
                started = await self.provider.start_dual_recording(leg, recording_callback_url())
            except ProviderUnavailable as e:
                logger.warning(f"Dual recording start failed on leg {leg} of {call_id}: {e}")
                continue

            if not is_dual(started):
                logger.warning(f"Recording on leg {leg} of {call_id} came back mono; stopping it and trying the next leg")
                try:
                    await self.provider.stop_recording(leg, started.get("recording_id") or "Twilio.CURRENT")
                except ProviderUnavailable as e:
                    logger.warning(f"Could not stop mono start on leg {leg} of {call_id}: {e}")
                continue

            if started.get("recording_id"):
                self._index(call_id, started)
            logger.info(f"Dual recording {started.get('recording_id')} started on leg {leg} of {call_id}")
            self.db.upsert_call(call_id, {
                "recording_state": RecordingState.DUAL_PENDING.value,
                "pending_recording_id": started.get("recording_id"),
            })
            await self.reconcile(call_id, candidates)
            return RecordingState.DUAL_PENDING.value

        state = self._state(call_id)
        if state not in (RecordingState.DUAL_ACTIVE.value, RecordingState.SUPERSEDED.value):
            self.db.upsert_call(call_id, {"recording_state": RecordingState.FAILED.value})
        logger.error(f"No leg of {call_id} accepted a dual recording (tried {candidates})")
        return RecordingState.FAILED.value

    async def reconcile(self, call_id: str, candidates: List[str]) -> Optional[Dict[str, Any]]:
        """Keep the earliest active dual recording across all legs, stop the others."""
        duals: List[Dict[str, Any]] = []
        for leg in candidates:
            for recording in await self._list(call_id, leg) or []:
                if is_dual(recording) and is_active(recording) and recording.get("recording_id"):
                    duals.append(dict(recording, leg_call_id=recording.get("call_id") or leg))
        if not duals:
            return None

        duals.sort(key=_created_key)
        canonical = duals[0]
        for extra in duals[1:]:
            try:
                await self.provider.stop_recording(extra["leg_call_id"], extra["recording_id"])
                logger.info(f"Stopped duplicate dual recording {extra['recording_id']} on {call_id}; keeping {canonical['recording_id']}")
            except ProviderUnavailable as e:
                logger.warning(f"Could not stop duplicate dual recording {extra['recording_id']} on {call_id}: {e}")
        self.db.upsert_call(call_id, {"pending_recording_id": canonical["recording_id"]})
        return canonical

    async def call_id_for_event(self, event: RecordingStatusEvent) -> str:
        """The orchestrated call a recording callback belongs to.

        Recordings started on a child leg report the child's CallSid, so the
        recording index is consulted before the callback's own call id, and a
        child leg without a record of its own is mapped to its parent.
        Raises UnresolvedIdentity.
        """
        if event.recording_id:
            row = self.db.get_recording(event.recording_id)
            if row and is_call_id(row.get("call_id")):
                return row["call_id"]

        call_id = await IdentityResolver(self.db, self.provider).resolve_call_id(call_id=event.call_id, recording_id=event.recording_id)
        if self.db.get_call(call_id):
            return call_id
        try:
            leg = await self.provider.fetch_call(call_id) or {}
        except ProviderUnavailable as e:
            logger.warning(f"Could not look up parent of leg {call_id}: {e}")
            leg = {}
        parent = leg.get("parent_call_id")
        return parent if is_call_id(parent) else call_id

    def handle_recording_status(self, call_id: str, event: RecordingStatusEvent) -> Optional[Dict[str, Any]]:
        """Apply a recording status callback; returns the fields written, or None when ignored."""
        record = self.db.get_call(call_id) or {}
        state = record.get("recording_state")
        pending = record.get("pending_recording_id")
        rid = event.recording_id
        dual = event.channels == 2

        if rid:
            self._index(call_id, {
                "recording_id": rid,
                "call_id": event.call_id,
                "channels": event.channels,
                "source": event.source,
                "status": event.status,
                "duration_seconds": event.duration_seconds,
                "url": normalize_recording_url(event.url),
            })

        if event.status in ("in-progress", "paused"):
            if dual and state != RecordingState.SUPERSEDED.value:
                self.db.upsert_call(call_id, {"recording_state": RecordingState.DUAL_ACTIVE.value})
                return {"recording_state": RecordingState.DUAL_ACTIVE.value}
            if not dual and state in (None, RecordingState.NO_RECORDING.value):
                self.db.upsert_call(call_id, {"recording_state": RecordingState.MONO_ACTIVE.value})
                return {"recording_state": RecordingState.MONO_ACTIVE.value}
            return None

        if event.status in ("failed", "absent"):
            logger.warning(f"Recording {rid} on {call_id} ended with status {event.status}")
            if rid and rid == pending:
                fields = {"pending_recording_id": ""}
                if state != RecordingState.SUPERSEDED.value:
                    fields["recording_state"] = RecordingState.FAILED.value
                self.db.upsert_call(call_id, fields)
                return fields
            return None

        if event.status != "completed":
            return None

        if not dual:
            dual_outstanding = state == RecordingState.DUAL_PENDING.value or bool(pending and pending != rid)
            if event.source == DIAL_VERB_SOURCE and dual_outstanding:
                logger.info(f"Ignoring mono DialVerb recording {rid} on {call_id}; dual recording {pending or 'start'} is outstanding")
                return None
            if record.get("recording_channels") == 2:
                logger.info(f"Ignoring mono recording {rid} on {call_id}; a dual recording is already stored")
                return None
        elif pending and rid != pending:
            logger.info(f"Ignoring duplicate dual recording {rid} on {call_id}; canonical is {pending}")
            return None
        elif record.get("recording_channels") == 2 and record.get("recording_id") and record["recording_id"] != rid:
            # The canonical dual already completed and cleared the pending marker
            logger.info(f"Ignoring duplicate dual recording {rid} on {call_id}; {record['recording_id']} is already stored")
            return None

        fields: Dict[str, Any] = {
            "recording_id": rid,
            "recording_url": normalize_recording_url(event.url),
            "recording_channels": event.channels,
            "recording_source": event.source,
            "recording_duration_seconds": event.duration_seconds,
        }
        if dual and state != RecordingState.SUPERSEDED.value:
            fields["recording_state"] = RecordingState.DUAL_ACTIVE.value
        elif not dual and state in (None, RecordingState.NO_RECORDING.value):
            fields["recording_state"] = RecordingState.MONO_ACTIVE.value
        if rid and rid == pending:
            fields["pending_recording_id"] = ""

        self.db.upsert_call(call_id, fields)
        logger.info(f"Stored {'dual' if dual else 'mono'} recording {rid} for {call_id}")
        return fields

    def close(self, call_id: str) -> Optional[str]:
        """The call reached a terminal status; no further recording starts for it."""
        state = self._state(call_id)
        if state == RecordingState.FAILED.value:
            return state
        self.db.upsert_call(call_id, {"recording_state": RecordingState.SUPERSEDED.value})
        return RecordingState.SUPERSEDED.value

    async def backfill_recording(self, call_id: str) -> Optional[Dict[str, Any]]:
        """Find the best completed recording on the call or its legs when no callback stored one."""
        record = self.db.get_call(call_id) or {}
        if record.get("recording_url") and record.get("recording_channels") == 2:
            return None

        legs = [call_id]
        try:
            legs += [c["call_id"] for c in await self.provider.list_child_calls(call_id) if c.get("call_id")]
        except ProviderUnavailable as e:
            logger.warning(f"Could not list child legs for backfill of {call_id}: {e}")

        found: List[Dict[str, Any]] = []
        for leg in legs:
            found += [r for r in await self._list(call_id, leg) or [] if r.get("status") == "completed" and r.get("recording_id")]
        if not found:
            logger.info(f"No completed recording found to backfill for {call_id}")
            return None

        duals = [r for r in found if is_dual(r)]
        best = sorted(duals or found, key=_created_key)[0]
        if not is_dual(best) and record.get("recording_url"):
            return None

        self.db.upsert_call(call_id, {
            "recording_id": best["recording_id"],
            "recording_url": normalize_recording_url(best.get("url")),
            "recording_channels": 2 if is_dual(best) else 1,
            "recording_source": best.get("source"),
            "recording_duration_seconds": best.get("duration_seconds"),
        })
        logger.info(f"Backfilled recording {best['recording_id']} for {call_id}")
        return best

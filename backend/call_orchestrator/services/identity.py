"""Map any id a callback knows about (call, recording, transcript) to the call id.

Callbacks from the provider only carry the id of the resource they describe:
recording callbacks know the recording, intelligence callbacks know the
transcript. Every write into the call store must be keyed by the call id, so
each handler resolves through here first.
"""
import logging
import re
from typing import Any, Dict, Optional

from ..errors import ProviderUnavailable, UnresolvedIdentity

logger = logging.getLogger(__name__)

CALL_ID_RE = re.compile(r"^CA[0-9a-fA-F]{32}$")
RECORDING_ID_RE = re.compile(r"^RE[0-9a-fA-F]{32}$")
TRANSCRIPT_ID_RE = re.compile(r"^GT[0-9a-fA-F]{32}$")


def is_call_id(value: Any) -> bool:
    return isinstance(value, str) and bool(CALL_ID_RE.match(value.strip()))


def is_recording_id(value: Any) -> bool:
    return isinstance(value, str) and bool(RECORDING_ID_RE.match(value.strip()))


def is_transcript_id(value: Any) -> bool:
    return isinstance(value, str) and bool(TRANSCRIPT_ID_RE.match(value.strip()))


class IdentityResolver:
    def __init__(self, db, provider=None) -> None:
        self.db = db
        self.provider = provider

    async def resolve_call_id(
        self,
        call_id: Optional[str] = None,
        recording_id: Optional[str] = None,
        transcript_id: Optional[str] = None,
    ) -> str:
        known = {"call_id": call_id, "recording_id": recording_id, "transcript_id": transcript_id}
        if is_call_id(call_id):
            return call_id.strip()

        if recording_id:
            resolved = await self._call_id_for_recording(recording_id)
            if resolved:
                return resolved

        if transcript_id:
            resolved = await self._call_id_for_transcript(transcript_id)
            if resolved:
                return resolved

        logger.warning(f"Unresolved call identity for {known}")
        raise UnresolvedIdentity(known)

    async def _call_id_for_recording(self, recording_id: str) -> Optional[str]:
        row = self.db.get_recording(recording_id)
        if row and is_call_id(row.get("call_id")):
            return row["call_id"]
        if self.provider is None:
            return None
        try:
            recording = await self.provider.fetch_recording(recording_id)
        except ProviderUnavailable as e:
            logger.warning(f"Recording lookup for {recording_id} failed: {e}")
            return None
        if not recording:
            return None
        self.db.save_recording(recording)
        call_id = recording.get("call_id")
        return call_id if is_call_id(call_id) else None

    async def _call_id_for_transcript(self, transcript_id: str) -> Optional[str]:
        row = self.db.get_transcript(transcript_id)
        if not row and self.provider is not None:
            try:
                row = await self.provider.fetch_transcript(transcript_id)
            except ProviderUnavailable as e:
                logger.warning(f"Transcript lookup for {transcript_id} failed: {e}")
                row = None
            if row:
                self.db.save_transcript(_transcript_index_row(row))
        if not row:
            return None

        source = row.get("source_recording_id")
        if source:
            resolved = await self._call_id_for_recording(source)
            if resolved:
                return resolved

        # The intelligence service echoes the customer key back unchanged
        customer_key = row.get("customer_key")
        if is_call_id(customer_key):
            return customer_key
        return None


def _transcript_index_row(transcript: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "transcript_id": transcript.get("transcript_id"),
        "source_recording_id": transcript.get("source_recording_id"),
        "status": transcript.get("status"),
        "customer_key": transcript.get("customer_key"),
    }

import asyncio
import logging
from typing import Any, Dict, List, Optional, Tuple

from ..config import auto_process_enabled, intelligence_service_sid, poll_interval_seconds, poll_max_attempts
from ..db import get_db
from ..errors import PollTimeout, ProviderUnavailable, UnresolvedIdentity
from ..schemas.pydantic_schemas import (
    PROVENANCE_RANK,
    ChannelRoleMap,
    SpeakerRole,
    TranscriptOutcome,
    TranscriptProvenance,
    TranscriptResult,
    Utterance,
)
from .channel_roles import classify_call
from .identity import IdentityResolver
from .insights import format_transcript, plain_transcript, synthesize
from .recording_coordinator import is_dual
from .twilio_client import TwilioClient

logger = logging.getLogger(__name__)

WORD_GAP_SECONDS = 1.25
FINISHED_STATUSES = ("completed", "failed", "canceled", "error")
CHANNEL_KEYS = ("media_channel", "mediaChannel", "channel", "channel_number", "channelNumber", "speaker_channel")
ROLE_KEYS = ("participant_role", "participantRole", "role", "speaker", "speaker_label")
BASIC_TRANSCRIPTION_ATTEMPTS = 3


def _channel_of(item: Dict[str, Any]) -> Optional[int]:
    for key in CHANNEL_KEYS:
        value = item.get(key)
        if value is None or value == "":
            continue
        if isinstance(value, dict):
            value = value.get("channel") or value.get("number")
        label = str(value).strip().upper()
        if label in ("0", "1", "A"):
            return 1
        if label in ("2", "B"):
            return 2
    return None


def _role_of(item: Dict[str, Any]) -> Optional[SpeakerRole]:
    for key in ROLE_KEYS:
        value = item.get(key)
        if not isinstance(value, str):
            continue
        label = value.strip().lower()
        if label == "agent":
            return SpeakerRole.AGENT
        if label == "customer":
            return SpeakerRole.CUSTOMER
    return None


def _start_of(item: Dict[str, Any]) -> float:
    for key in ("start_time", "startTime", "start"):
        value = item.get(key)
        if value is None:
            continue
        try:
            return float(value)
        except (TypeError, ValueError):
            continue
    return 0.0


def _confidence_of(item: Dict[str, Any]) -> Optional[float]:
    try:
        return float(item["confidence"]) if item.get("confidence") is not None else None
    except (TypeError, ValueError):
        return None


def lacks_diarization(sentences: List[Dict[str, Any]]) -> bool:
    return bool(sentences) and all(_channel_of(s) is None and _role_of(s) is None for s in sentences)


def sentences_to_utterances(sentences: List[Dict[str, Any]], role_map: ChannelRoleMap) -> List[Utterance]:
    utterances = []
    for sentence in sentences:
        text = (sentence.get("transcript") or sentence.get("text") or "").strip()
        if not text:
            continue
        channel = _channel_of(sentence)
        role = _role_of(sentence) or role_map.role_for_channel(channel)
        utterances.append(Utterance(
            start_time_seconds=_start_of(sentence),
            channel=channel,
            speaker_role=role,
            text=text,
            confidence=_confidence_of(sentence),
        ))
    return sort_utterances(utterances)


def group_words(words: List[Dict[str, Any]], role_map: ChannelRoleMap, max_gap: float = WORD_GAP_SECONDS) -> List[Utterance]:
    """Rebuild utterances from word timings.

    Consecutive words stay in one utterance while they share a role and
    channel and each starts within max_gap seconds of the previous word.
    """
    utterances: List[Utterance] = []
    current: Optional[Utterance] = None
    last_start = 0.0
    for word in sorted(words, key=_start_of):
        text = str(word.get("word") or word.get("text") or "").strip()
        if not text:
            continue
        start = _start_of(word)
        channel = _channel_of(word)
        role = _role_of(word) or role_map.role_for_channel(channel)
        if current is not None and current.speaker_role == role and current.channel == channel and start - last_start <= max_gap:
            current.text = f"{current.text} {text}"
        else:
            current = Utterance(start_time_seconds=start, channel=channel, speaker_role=role, text=text, confidence=_confidence_of(word))
            utterances.append(current)
        last_start = start
    return utterances


def sort_utterances(utterances: List[Utterance]) -> List[Utterance]:
    return sorted(utterances, key=lambda u: u.start_time_seconds)


def has_roles(utterances: List[Utterance]) -> bool:
    return any(u.speaker_role != SpeakerRole.UNKNOWN for u in utterances)


class TranscriptPipeline:
    def __init__(self, db, provider, summarizer=None) -> None:
        self.db = db
        self.provider = provider
        self.summarizer = summarizer

    async def process_call_transcript(self, call_id: Optional[str] = None, recording_id: Optional[str] = None, trigger: bool = False) -> TranscriptResult:
        """Acquire the best transcript for a call, derive its insight, and store both.

        Runs only when triggered on demand or when auto-processing is enabled.
        A transcript that is still running after the polling budget yields a
        pending result with no insight; the transcript callback finishes it.
        """
        if not trigger and not auto_process_enabled():
            logger.info(f"Transcript processing for {call_id or recording_id} skipped; auto-processing is disabled")
            return TranscriptResult(outcome=TranscriptOutcome.SKIPPED, call_id=call_id, recording_id=recording_id, reason="auto-processing disabled")

        try:
            call_id = await IdentityResolver(self.db, self.provider).resolve_call_id(call_id=call_id, recording_id=recording_id)
        except UnresolvedIdentity as e:
            logger.error(f"Transcript processing aborted: {e}")
            return TranscriptResult(outcome=TranscriptOutcome.FAILED, recording_id=recording_id, reason=str(e))

        recording_id = recording_id or await self._recording_for(call_id)
        if not recording_id:
            logger.info(f"No completed recording yet for {call_id}; transcript stays pending")
            return TranscriptResult(outcome=TranscriptOutcome.PENDING, call_id=call_id, reason="no completed recording")

        role_map = await classify_call(call_id, self.provider, self.db)
        transcript_id = None
        leftovers: Dict[str, List[Utterance]] = {}
        utterances: List[Utterance] = []
        provenance = TranscriptProvenance.FLAT

        service_id = intelligence_service_sid()
        if service_id:
            try:
                diarized = await self._diarized(service_id, call_id, recording_id, role_map)
            except PollTimeout as e:
                logger.warning(f"Transcript for {call_id} still running: {e}")
                return TranscriptResult(
                    outcome=TranscriptOutcome.PENDING,
                    call_id=call_id,
                    recording_id=recording_id,
                    transcript_id=e.resource_id,
                    reason=str(e),
                )
            transcript_id = diarized.get("transcript_id")
            utterances = diarized.get("utterances") or []
            provenance = diarized.get("provenance") or TranscriptProvenance.FLAT
            leftovers = diarized.get("leftovers") or {}
        else:
            logger.info(f"No intelligence service configured; using basic transcription for {call_id}")

        if not utterances:
            utterances = await self._flat(call_id, recording_id, leftovers)
            provenance = TranscriptProvenance.FLAT
        if not utterances:
            logger.error(f"No transcription text could be produced for {call_id} (recording {recording_id})")
            return TranscriptResult(outcome=TranscriptOutcome.FAILED, call_id=call_id, recording_id=recording_id, transcript_id=transcript_id, reason="no transcription text")

        utterances = sort_utterances(utterances)
        stored = (self.db.get_call(call_id) or {}).get("transcript_provenance")
        if PROVENANCE_RANK.get(stored, 0) > PROVENANCE_RANK[provenance.value]:
            logger.info(f"Keeping stored {stored} transcript for {call_id}; not overwriting with {provenance.value}")
            return TranscriptResult(
                outcome=TranscriptOutcome.COMPLETED,
                call_id=call_id,
                recording_id=recording_id,
                transcript_id=transcript_id,
                provenance=provenance,
                utterances=utterances,
                reason=f"{stored} transcript already stored",
            )

        operator_results = await self._operator_results(transcript_id)
        insight = await synthesize(utterances, operator_results, client=self.summarizer)

        self.db.upsert_call(call_id, {
            "transcript": plain_transcript(utterances),
            "formatted_transcript": format_transcript(utterances),
            "utterances": [u.model_dump(mode="json") for u in utterances],
            "transcript_provenance": provenance.value,
            "transcript_id": transcript_id,
            "transcript_status": "completed",
            "insight": insight.model_dump(mode="json"),
            "operator_results": operator_results or None,
        })
        logger.info(f"Stored {provenance.value} transcript ({len(utterances)} utterances) and {insight.source} insight for {call_id}")
        return TranscriptResult(
            outcome=TranscriptOutcome.COMPLETED,
            call_id=call_id,
            recording_id=recording_id,
            transcript_id=transcript_id,
            provenance=provenance,
            utterances=utterances,
            insight=insight,
        )

    async def _recording_for(self, call_id: str) -> Optional[str]:
        record = self.db.get_call(call_id) or {}
        if record.get("recording_id"):
            return record["recording_id"]
        try:
            recordings = await self.provider.list_call_recordings(call_id)
        except ProviderUnavailable as e:
            logger.warning(f"Could not list recordings for {call_id}: {e}")
            return None
        completed = [r for r in recordings if r.get("status") == "completed" and r.get("recording_id")]
        completed.sort(key=lambda r: 0 if is_dual(r) else 1)
        return completed[0]["recording_id"] if completed else None

    async def _open_transcript(self, service_id: str, call_id: str, recording_id: str, role_map: ChannelRoleMap, reuse: bool = True) -> Optional[Dict[str, Any]]:
        transcript = None
        try:
            if reuse:
                transcript = await self.provider.find_transcript_for_recording(service_id, recording_id)
            if transcript:
                logger.info(f"Reusing transcript {transcript.get('transcript_id')} for recording {recording_id}")
            else:
                transcript = await self.provider.create_transcript(service_id, recording_id, role_map, customer_key=call_id)
                logger.info(f"Created transcript {transcript.get('transcript_id')} for recording {recording_id} (agent on channel {role_map.agent_channel})")
        except ProviderUnavailable as e:
            logger.warning(f"Intelligence transcript unavailable for {call_id}: {e}")
            return None
        if not transcript or not transcript.get("transcript_id"):
            return None

        self.db.save_transcript({
            "transcript_id": transcript["transcript_id"],
            "source_recording_id": transcript.get("source_recording_id") or recording_id,
            "status": transcript.get("status"),
            "customer_key": transcript.get("customer_key") or call_id,
        })
        if (self.db.get_call(call_id) or {}).get("transcript_status") != "completed":
            self.db.upsert_call(call_id, {"transcript_id": transcript["transcript_id"], "transcript_status": transcript.get("status") or "queued"})
        return transcript

    async def _wait_for_completion(self, transcript_id: str) -> str:
        attempts = poll_max_attempts()
        interval = poll_interval_seconds()
        for attempt in range(1, attempts + 1):
            try:
                transcript = await self.provider.fetch_transcript(transcript_id) or {}
            except ProviderUnavailable as e:
                logger.warning(f"Poll {attempt}/{attempts} for {transcript_id} failed: {e}")
                transcript = {}
            status = transcript.get("status")
            logger.debug(f"Poll {attempt}/{attempts} for {transcript_id}: {status}")
            if status in FINISHED_STATUSES:
                return status
            if attempt < attempts:
                await asyncio.sleep(interval)
        raise PollTimeout(transcript_id, attempts)

    async def _sentences(self, transcript_id: str) -> List[Dict[str, Any]]:
        try:
            return await self.provider.list_sentences(transcript_id)
        except ProviderUnavailable as e:
            logger.warning(f"Could not list sentences for {transcript_id}: {e}")
            return []

    async def _diarized(self, service_id: str, call_id: str, recording_id: str, role_map: ChannelRoleMap) -> Dict[str, Any]:
        transcript = await self._open_transcript(service_id, call_id, recording_id, role_map)
        if not transcript:
            return {}
        transcript_id = transcript["transcript_id"]

        status = await self._wait_for_completion(transcript_id)
        if status != "completed":
            logger.warning(f"Transcript {transcript_id} for {call_id} ended as {status}")
            return {"transcript_id": transcript_id}
        sentences = await self._sentences(transcript_id)

        if lacks_diarization(sentences) and (self.db.get_call(call_id) or {}).get("transcript_recreated_for") == recording_id:
            logger.info(f"Transcript {transcript_id} has no labels and was already recreated for {recording_id}; using fallbacks for {call_id}")
        elif lacks_diarization(sentences):
            logger.info(f"Transcript {transcript_id} has no channel or speaker labels; recreating it once for {call_id}")
            # Marked before the delete so a concurrent run sees it
            self.db.upsert_call(call_id, {"transcript_recreated_for": recording_id})
            try:
                await self.provider.delete_transcript(transcript_id)
            except ProviderUnavailable as e:
                logger.warning(f"Could not delete transcript {transcript_id}: {e}")
            recreated = await self._open_transcript(service_id, call_id, recording_id, role_map, reuse=False)
            if recreated:
                transcript_id = recreated["transcript_id"]
                if await self._wait_for_completion(transcript_id) == "completed":
                    sentences = await self._sentences(transcript_id)

        sentence_utterances = sentences_to_utterances(sentences, role_map)
        if has_roles(sentence_utterances):
            return {"transcript_id": transcript_id, "utterances": sentence_utterances, "provenance": TranscriptProvenance.DIARIZED_SENTENCES}

        try:
            words = await self.provider.list_words(transcript_id)
        except ProviderUnavailable as e:
            logger.warning(f"Could not list words for {transcript_id}: {e}")
            words = []
        word_utterances = group_words(words, role_map)
        if has_roles(word_utterances):
            logger.info(f"Rebuilt {len(word_utterances)} utterances from word timings for {call_id}")
            return {"transcript_id": transcript_id, "utterances": word_utterances, "provenance": TranscriptProvenance.DIARIZED_WORDS}

        return {"transcript_id": transcript_id, "leftovers": {"words": word_utterances, "sentences": sentence_utterances}}

    async def _basic_transcription_text(self, recording_id: str) -> str:
        try:
            found = await self.provider.list_basic_transcriptions(recording_id)
            for item in found:
                if item.get("text"):
                    return item["text"]
            if found or getattr(self.provider, "simulated", False):
                return ""
            created = await self.provider.create_basic_transcription(recording_id)
        except ProviderUnavailable as e:
            logger.warning(f"Basic transcription unavailable for {recording_id}: {e}")
            return ""
        if not created or not created.get("transcription_id"):
            return ""

        for attempt in range(1, BASIC_TRANSCRIPTION_ATTEMPTS + 1):
            await asyncio.sleep(poll_interval_seconds())
            try:
                fetched = await self.provider.fetch_basic_transcription(created["transcription_id"]) or {}
            except ProviderUnavailable as e:
                logger.warning(f"Basic transcription poll {attempt} for {recording_id} failed: {e}")
                continue
            if fetched.get("text"):
                return fetched["text"]
            if fetched.get("status") == "failed":
                break
        return ""

    async def _flat(self, call_id: str, recording_id: str, leftovers: Dict[str, List[Utterance]]) -> List[Utterance]:
        text = (await self._basic_transcription_text(recording_id)).strip()
        if text:
            logger.info(f"Using basic transcription for {call_id}")
            return [Utterance(start_time_seconds=0.0, text=text)]
        for source in ("words", "sentences"):
            unlabeled = [u.model_copy(update={"speaker_role": SpeakerRole.UNKNOWN}) for u in leftovers.get(source) or []]
            if unlabeled:
                logger.info(f"Using unlabeled {source} as flat transcript for {call_id}")
                return unlabeled
        return []

    async def _operator_results(self, transcript_id: Optional[str]) -> List[Dict[str, Any]]:
        if not transcript_id:
            return []
        try:
            return await self.provider.list_operator_results(transcript_id)
        except ProviderUnavailable as e:
            logger.warning(f"Could not list operator results for {transcript_id}: {e}")
            return []


async def process_call_transcript(call_id: Optional[str] = None, recording_id: Optional[str] = None, trigger: bool = False) -> TranscriptResult:
    pipeline = TranscriptPipeline(get_db(), TwilioClient())
    return await pipeline.process_call_transcript(call_id=call_id, recording_id=recording_id, trigger=trigger)

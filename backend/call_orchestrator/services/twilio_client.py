import json
import logging
import os
from typing import Any, Dict, List, Optional

import httpx

from ..errors import ProviderUnavailable
from ..schemas.pydantic_schemas import ChannelRoleMap

# Set up logger
logger = logging.getLogger(__name__)

API_BASE = "https://api.twilio.com/2010-04-01"
INTELLIGENCE_BASE = "https://intelligence.twilio.com/v2"


def _int_or_none(value) -> Optional[int]:
    try:
        return int(value) if value not in (None, "") else None
    except (TypeError, ValueError):
        return None


def _recording_from_api(r: Dict[str, Any], account_sid: str) -> Dict[str, Any]:
    sid = r.get("sid")
    return {
        "recording_id": sid,
        "call_id": r.get("call_sid"),
        "channels": _int_or_none(r.get("channels")) or 1,
        "source": r.get("source"),
        "status": r.get("status"),
        "duration_seconds": _int_or_none(r.get("duration")),
        "url": f"{API_BASE}/Accounts/{account_sid}/Recordings/{sid}.mp3" if sid else None,
        "date_created": r.get("date_created") or r.get("start_time"),
    }


def _call_from_api(c: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "call_id": c.get("sid"),
        "parent_call_id": c.get("parent_call_sid"),
        "from_number": c.get("from"),
        "to_number": c.get("to"),
        "direction": c.get("direction"),
        "status": c.get("status"),
        "duration_seconds": _int_or_none(c.get("duration")),
    }


def _transcript_from_api(t: Dict[str, Any]) -> Dict[str, Any]:
    channel = t.get("channel") or {}
    media = (channel.get("media_properties") or {}) if isinstance(channel, dict) else {}
    return {
        "transcript_id": t.get("sid"),
        "status": (t.get("status") or "").lower() or None,
        "source_recording_id": t.get("source_sid") or media.get("source_sid"),
        "customer_key": t.get("customer_key"),
        "service_id": t.get("service_sid"),
    }


def _basic_transcription_from_api(t: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "transcription_id": t.get("sid"),
        "status": (t.get("status") or "").lower(),
        "text": t.get("transcription_text") or "",
    }


class TwilioClient:
    """Thin REST client for the voice and intelligence APIs.

    Returns plain dicts with this project's field names. Every transport or
    HTTP failure surfaces as ProviderUnavailable so callers can log it and
    wait for the next webhook.
    """

    def __init__(self, account_sid: Optional[str] = None, auth_token: Optional[str] = None, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self.account_sid = account_sid if account_sid is not None else os.getenv("TWILIO_ACCOUNT_SID", "")
        self.auth_token = auth_token if auth_token is not None else os.getenv("TWILIO_AUTH_TOKEN", "")
        self._transport = transport
        self.simulated = not (self.account_sid or "").strip() or not (self.auth_token or "").strip()

        if self.simulated:
            logger.info("TwilioClient initialized in simulation mode (no credentials provided)")
        else:
            logger.info("TwilioClient initialized with account credentials")

    @property
    def _account_url(self) -> str:
        return f"{API_BASE}/Accounts/{self.account_sid}"

    async def _request(self, operation: str, method: str, url: str, params: Optional[Dict[str, Any]] = None, data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        try:
            async with httpx.AsyncClient(auth=(self.account_sid, self.auth_token), transport=self._transport) as client:
                response = await client.request(method, url, params=params, data=data, timeout=15.0)
                logger.debug(f"Twilio {operation} response: {response.status_code}")
                response.raise_for_status()
                if response.status_code == 204 or not response.content:
                    return {}
                return response.json()
        except httpx.HTTPStatusError as e:
            logger.error(f"Twilio API HTTP error on {operation}: {e.response.status_code} - {e.response.text[:300]}")
            raise ProviderUnavailable(operation, e.response.text[:200], status_code=e.response.status_code) from e
        except httpx.RequestError as e:
            logger.error(f"Twilio API request error on {operation}: {str(e)}")
            raise ProviderUnavailable(operation, str(e)) from e
        except ValueError as e:
            logger.error(f"Twilio API returned non-JSON body on {operation}: {str(e)}")
            raise ProviderUnavailable(operation, "invalid JSON") from e

    # Calls
    async def fetch_call(self, call_id: str) -> Optional[Dict[str, Any]]:
        if self.simulated:
            return None
        data = await self._request("fetch_call", "GET", f"{self._account_url}/Calls/{call_id}.json")
        return _call_from_api(data)

    async def list_child_calls(self, parent_call_id: str, limit: int = 10) -> List[Dict[str, Any]]:
        if self.simulated:
            return []
        data = await self._request("list_child_calls", "GET", f"{self._account_url}/Calls.json", params={"ParentCallSid": parent_call_id, "PageSize": limit})
        return [_call_from_api(c) for c in data.get("calls") or []]

    # Recordings
    async def list_call_recordings(self, call_id: str, limit: int = 5) -> List[Dict[str, Any]]:
        if self.simulated:
            return []
        data = await self._request("list_call_recordings", "GET", f"{self._account_url}/Calls/{call_id}/Recordings.json", params={"PageSize": limit})
        return [_recording_from_api(r, self.account_sid) for r in data.get("recordings") or []]

    async def start_dual_recording(self, call_id: str, status_callback_url: str) -> Dict[str, Any]:
        """Start a two-channel recording of both tracks on the given call leg."""
        logger.info(f"Requesting dual-channel recording on {call_id}")
        if self.simulated:
            logger.info(f"[SIMULATED] Dual recording started on {call_id}")
            return {"recording_id": None, "call_id": call_id, "channels": 2, "source": "StartCallRecordingAPI", "status": "in-progress"}
        payload = {
            "RecordingChannels": "dual",
            "RecordingTrack": "both",
            "RecordingStatusCallback": status_callback_url,
            "RecordingStatusCallbackMethod": "POST",
        }
        data = await self._request("start_dual_recording", "POST", f"{self._account_url}/Calls/{call_id}/Recordings.json", data=payload)
        return _recording_from_api(data, self.account_sid)

    async def stop_recording(self, call_id: str, recording_id: str = "Twilio.CURRENT") -> None:
        logger.info(f"Stopping recording {recording_id} on {call_id}")
        if self.simulated:
            return
        await self._request("stop_recording", "POST", f"{self._account_url}/Calls/{call_id}/Recordings/{recording_id}.json", data={"Status": "stopped"})

    async def fetch_recording(self, recording_id: str) -> Optional[Dict[str, Any]]:
        if self.simulated:
            return None
        data = await self._request("fetch_recording", "GET", f"{self._account_url}/Recordings/{recording_id}.json")
        return _recording_from_api(data, self.account_sid)

    # Basic (flat) transcriptions
    async def list_basic_transcriptions(self, recording_id: str) -> List[Dict[str, Any]]:
        if self.simulated:
            return []
        data = await self._request("list_basic_transcriptions", "GET", f"{self._account_url}/Recordings/{recording_id}/Transcriptions.json")
        return [_basic_transcription_from_api(t) for t in data.get("transcriptions") or []]

    async def create_basic_transcription(self, recording_id: str) -> Optional[Dict[str, Any]]:
        if self.simulated:
            return None
        data = await self._request("create_basic_transcription", "POST", f"{self._account_url}/Recordings/{recording_id}/Transcriptions.json", data={"LanguageCode": "en-US"})
        return _basic_transcription_from_api(data)

    async def fetch_basic_transcription(self, transcription_id: str) -> Optional[Dict[str, Any]]:
        if self.simulated:
            return None
        data = await self._request("fetch_basic_transcription", "GET", f"{self._account_url}/Transcriptions/{transcription_id}.json")
        return _basic_transcription_from_api(data)

    # Intelligence transcripts
    async def find_transcript_for_recording(self, service_id: str, recording_id: str) -> Optional[Dict[str, Any]]:
        if self.simulated:
            return None
        data = await self._request("list_transcripts", "GET", f"{INTELLIGENCE_BASE}/Transcripts", params={"ServiceSid": service_id, "SourceSid": recording_id, "PageSize": 1})
        items = data.get("transcripts") or []
        return _transcript_from_api(items[0]) if items else None

    async def create_transcript(self, service_id: str, recording_id: str, role_map: ChannelRoleMap, customer_key: str) -> Dict[str, Any]:
        if self.simulated:
            raise ProviderUnavailable("create_transcript", "simulation mode")
        channel = {
            "media_properties": {"source_sid": recording_id},
            "participants": [
                {"role": "Agent", "channel_participant": role_map.agent_channel},
                {"role": "Customer", "channel_participant": role_map.customer_channel},
            ],
        }
        payload = {"ServiceSid": service_id, "Channel": json.dumps(channel), "CustomerKey": customer_key}
        data = await self._request("create_transcript", "POST", f"{INTELLIGENCE_BASE}/Transcripts", data=payload)
        return _transcript_from_api(data)

    async def fetch_transcript(self, transcript_id: str) -> Optional[Dict[str, Any]]:
        if self.simulated:
            return None
        data = await self._request("fetch_transcript", "GET", f"{INTELLIGENCE_BASE}/Transcripts/{transcript_id}")
        return _transcript_from_api(data)

    async def delete_transcript(self, transcript_id: str) -> None:
        if self.simulated:
            return
        await self._request("delete_transcript", "DELETE", f"{INTELLIGENCE_BASE}/Transcripts/{transcript_id}")

    async def list_sentences(self, transcript_id: str, word_timestamps: bool = False) -> List[Dict[str, Any]]:
        if self.simulated:
            return []
        params: Dict[str, Any] = {"PageSize": 1000}
        if word_timestamps:
            params["WordTimestamps"] = "true"
        data = await self._request("list_sentences", "GET", f"{INTELLIGENCE_BASE}/Transcripts/{transcript_id}/Sentences", params=params)
        return data.get("sentences") or []

    async def list_words(self, transcript_id: str) -> List[Dict[str, Any]]:
        """Word-level timings, each word tagged with its sentence's channel when it has none."""
        sentences = await self.list_sentences(transcript_id, word_timestamps=True)
        words: List[Dict[str, Any]] = []
        for sentence in sentences:
            for word in sentence.get("words") or []:
                if not isinstance(word, dict):
                    continue
                item = dict(word)
                if item.get("channel") is None and sentence.get("media_channel") is not None:
                    item["channel"] = sentence.get("media_channel")
                words.append(item)
        return words

    async def list_operator_results(self, transcript_id: str) -> List[Dict[str, Any]]:
        if self.simulated:
            return []
        data = await self._request("list_operator_results", "GET", f"{INTELLIGENCE_BASE}/Transcripts/{transcript_id}/OperatorResults")
        return data.get("operator_results") or []

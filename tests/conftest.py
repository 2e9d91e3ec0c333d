import asyncio
import itertools
from datetime import datetime, timedelta, timezone
from email.utils import format_datetime

import pytest

from call_orchestrator.db import get_db, reset_db
from call_orchestrator.errors import ProviderUnavailable

ENV_KEYS = (
    "TWILIO_ACCOUNT_SID",
    "TWILIO_AUTH_TOKEN",
    "TWILIO_INTELLIGENCE_SERVICE_SID",
    "TWILIO_BUSINESS_NUMBERS",
    "CI_AUTO_PROCESS",
    "PUBLIC_BASE_URL",
    "GROQ_API_KEY",
    "OPENAI_API_KEY",
    "TWILIO_VALIDATE_SIGNATURES",
    "SUPABASE_URL",
    "SUPABASE_SERVICE_ROLE_KEY",
)

BUSINESS_NUMBER = "+18175550100"
CUSTOMER_NUMBER = "+12145550199"
SERVICE_SID = "GA" + "a" * 32


def sid(prefix: str, n: int) -> str:
    return f"{prefix}{n:032x}"


def call_sid(n: int) -> str:
    return sid("CA", n)


def recording_sid(n: int) -> str:
    return sid("RE", n)


def transcript_sid(n: int) -> str:
    return sid("GT", n)


class FakeTwilio:
    """In-memory stand-in for TwilioClient with the same method surface."""

    simulated = False
    account_sid = "AC" + "0" * 32

    def __init__(self):
        self.calls = {}
        self.children = {}
        self.recordings = {}
        self.transcripts = {}
        self.sentences = {}
        self.words = {}
        self.operator_results = {}
        self.basic = {}
        self.status_script = {}
        self.sentence_script = []
        self.start_behavior = {}
        self.fail_ops = set()
        self.requests = []
        self.started = []
        self.stopped = []
        self.deleted = []
        self.created_transcripts = []
        self._ids = itertools.count(1000)
        self._clock = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def _log(self, op, *args):
        self.requests.append((op,) + args)
        if op in self.fail_ops:
            raise ProviderUnavailable(op, "simulated outage", status_code=503)

    def _next_date(self):
        self._clock += timedelta(seconds=1)
        return format_datetime(self._clock)

    def add_recording(self, leg, channels=1, status="in-progress", source="DialVerb", rid=None):
        rid = rid or recording_sid(next(self._ids))
        rec = {
            "recording_id": rid,
            "call_id": leg,
            "channels": channels,
            "source": source,
            "status": status,
            "duration_seconds": 42 if status == "completed" else None,
            "url": f"https://api.twilio.com/2010-04-01/Accounts/{self.account_sid}/Recordings/{rid}.mp3",
            "date_created": self._next_date(),
        }
        self.recordings.setdefault(leg, []).append(rec)
        return rec

    def find(self, rid):
        for recs in self.recordings.values():
            for rec in recs:
                if rec["recording_id"] == rid:
                    return rec
        return None

    def active_duals(self):
        return [r for recs in self.recordings.values() for r in recs if r["channels"] == 2 and r["status"] == "in-progress"]

    # Calls
    async def fetch_call(self, call_id):
        self._log("fetch_call", call_id)
        return self.calls.get(call_id)

    async def list_child_calls(self, parent_call_id, limit=10):
        self._log("list_child_calls", parent_call_id)
        return [dict(c) for c in self.children.get(parent_call_id, [])]

    # Recordings
    async def list_call_recordings(self, call_id, limit=5):
        self._log("list_call_recordings", call_id)
        await asyncio.sleep(0)
        return [dict(r) for r in self.recordings.get(call_id, [])]

    async def start_dual_recording(self, call_id, status_callback_url):
        self._log("start_dual_recording", call_id)
        await asyncio.sleep(0)
        behavior = self.start_behavior.get(call_id)
        if behavior == "fail":
            raise ProviderUnavailable("start_dual_recording", "leg not recordable", status_code=400)
        rec = self.add_recording(call_id, channels=1 if behavior == "mono" else 2, source="StartCallRecordingAPI")
        self.started.append((call_id, rec["recording_id"]))
        return dict(rec)

    async def stop_recording(self, call_id, recording_id="Twilio.CURRENT"):
        self._log("stop_recording", call_id, recording_id)
        for rec in self.recordings.get(call_id, []):
            if recording_id in ("Twilio.CURRENT", rec["recording_id"]) and rec["status"] == "in-progress":
                rec["status"] = "stopped"
                self.stopped.append((call_id, rec["recording_id"]))

    async def fetch_recording(self, recording_id):
        self._log("fetch_recording", recording_id)
        rec = self.find(recording_id)
        return dict(rec) if rec else None

    # Basic transcriptions
    async def list_basic_transcriptions(self, recording_id):
        self._log("list_basic_transcriptions", recording_id)
        return [{"transcription_id": sid("TR", 1), "status": "completed", "text": self.basic[recording_id]}] if recording_id in self.basic else []

    async def create_basic_transcription(self, recording_id):
        self._log("create_basic_transcription", recording_id)
        return None

    async def fetch_basic_transcription(self, transcription_id):
        self._log("fetch_basic_transcription", transcription_id)
        return None

    # Intelligence transcripts
    async def find_transcript_for_recording(self, service_id, recording_id):
        self._log("find_transcript_for_recording", recording_id)
        for t in self.transcripts.values():
            if t["source_recording_id"] == recording_id:
                return dict(t)
        return None

    async def create_transcript(self, service_id, recording_id, role_map, customer_key):
        self._log("create_transcript", recording_id)
        tid = transcript_sid(next(self._ids))
        self.transcripts[tid] = {
            "transcript_id": tid,
            "status": "queued",
            "source_recording_id": recording_id,
            "customer_key": customer_key,
            "service_id": service_id,
        }
        self.created_transcripts.append((tid, role_map))
        if self.sentence_script:
            self.sentences[tid] = self.sentence_script.pop(0)
        return dict(self.transcripts[tid])

    async def fetch_transcript(self, transcript_id):
        self._log("fetch_transcript", transcript_id)
        t = self.transcripts.get(transcript_id)
        if t is None:
            return None
        script = self.status_script.get(transcript_id)
        status = script.pop(0) if script else self.status_script.get("*", "completed")
        return dict(t, status=status)

    async def delete_transcript(self, transcript_id):
        self._log("delete_transcript", transcript_id)
        self.deleted.append(transcript_id)
        self.transcripts.pop(transcript_id, None)

    async def list_sentences(self, transcript_id, word_timestamps=False):
        self._log("list_sentences", transcript_id)
        return [dict(s) for s in self.sentences.get(transcript_id, [])]

    async def list_words(self, transcript_id):
        self._log("list_words", transcript_id)
        return [dict(w) for w in self.words.get(transcript_id, [])]

    async def list_operator_results(self, transcript_id):
        self._log("list_operator_results", transcript_id)
        return list(self.operator_results.get(transcript_id, []))

    def count(self, op):
        return sum(1 for r in self.requests if r[0] == op)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("BUSINESS_NUMBERS", "+1 (817) 555-0100")
    monkeypatch.setenv("TRANSCRIPT_POLL_INTERVAL_SECONDS", "0")
    monkeypatch.setenv("TRANSCRIPT_POLL_MAX_ATTEMPTS", "3")
    reset_db()
    yield
    reset_db()


@pytest.fixture
def db():
    return get_db()


@pytest.fixture
def fake():
    return FakeTwilio()


@pytest.fixture
def intelligence(monkeypatch):
    monkeypatch.setenv("TWILIO_INTELLIGENCE_SERVICE_SID", SERVICE_SID)
    return SERVICE_SID

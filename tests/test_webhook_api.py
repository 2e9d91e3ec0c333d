"""End-to-end tests for the callback endpoints and the calls API."""

import pytest
from fastapi.testclient import TestClient

from call_orchestrator.api import calls as calls_api
from call_orchestrator.api import webhook
from call_orchestrator.api.webhook import compute_signature
from call_orchestrator.main import app
from conftest import BUSINESS_NUMBER, CUSTOMER_NUMBER, call_sid, recording_sid, transcript_sid


PARENT = call_sid(1)
CHILD = call_sid(2)

DIARIZED = [
    {"media_channel": 1, "transcript": "Hi, this is Sam from the energy desk.", "start_time": 0.4},
    {"media_channel": 2, "transcript": "Hello, send me a quote.", "start_time": 3.2},
]


@pytest.fixture
def client(monkeypatch, fake):
    monkeypatch.setattr(webhook, "TwilioClient", lambda: fake)
    monkeypatch.setattr(calls_api, "TwilioClient", lambda: fake)
    return TestClient(app)


def _status(client, status, call_id=PARENT, **extra):
    form = {"CallSid": call_id, "CallStatus": status, "From": BUSINESS_NUMBER, "To": CUSTOMER_NUMBER, "Direction": "outbound-api"}
    form.update(extra)
    return client.post("/api/twilio/status", data=form)


def _recording(client, rid, channels=1, source="DialVerb", status="completed", call_id=PARENT):
    return client.post("/api/twilio/recording", data={
        "CallSid": call_id,
        "RecordingSid": rid,
        "RecordingStatus": status,
        "RecordingChannels": str(channels),
        "RecordingSource": source,
        "RecordingDuration": "61",
        "RecordingUrl": f"https://api.twilio.com/2010-04-01/Accounts/AC1/Recordings/{rid}",
    })


# ── Call status callbacks ──

class TestCallStatus:
    def test_lifecycle_ringing_answered_completed(self, client, db, fake):
        assert _status(client, "ringing").json() == {"ok": True, "call_id": PARENT}
        record = db.get_call(PARENT)
        assert record["status"] == "ringing"
        assert record["business_phone"] == BUSINESS_NUMBER
        assert record["counterparty_phone"] == "2145550199"

        _status(client, "in-progress")
        assert fake.started[0][0] == PARENT
        assert db.get_call(PARENT)["recording_state"] == "dual-pending"

        _status(client, "completed", CallDuration="65")
        record = db.get_call(PARENT)
        assert record["status"] == "completed"
        assert record["duration_seconds"] == 65
        assert record["recording_state"] == "superseded"

    def test_late_ringing_never_regresses_terminal_status(self, client, db):
        _status(client, "completed")
        _status(client, "ringing")
        assert db.get_call(PARENT)["status"] == "completed"

    def test_no_dual_start_after_close(self, client, db, fake):
        _status(client, "completed")
        _status(client, "in-progress")
        assert fake.started == []

    def test_child_leg_coordinates_through_parent(self, client, db, fake):
        response = _status(client, "in-progress", call_id=CHILD, ParentCallSid=PARENT)
        assert response.json() == {"ok": True, "call_id": PARENT}
        assert db.get_call(CHILD) is None
        assert fake.started[0][0] == CHILD
        assert db.get_call(PARENT)["pending_recording_id"] == fake.started[0][1]

    def test_invalid_call_id_is_skipped(self, client, db):
        response = _status(client, "ringing", call_id="not-a-call")
        assert response.status_code == 200
        assert response.json()["skipped"] == "unresolved call id"
        assert db.calls == {}

    def test_completed_call_backfills_recording(self, client, db, fake):
        dual = fake.add_recording(PARENT, channels=2, status="completed", source="StartCallRecordingAPI")
        _status(client, "completed")
        assert db.get_call(PARENT)["recording_id"] == dual["recording_id"]

    def test_completed_status_recording_url_is_stored(self, client, db, fake):
        rid = recording_sid(40)
        _status(client, "completed", RecordingUrl=f"https://api.twilio.com/2010-04-01/Accounts/AC1/Recordings/{rid}")
        assert db.get_call(PARENT)["recording_url"].endswith(f"{rid}.mp3")
        assert fake.count("list_call_recordings") == 0

    def test_completed_status_recording_url_never_replaces_dual(self, client, db):
        dual_url = f"https://api.twilio.com/2010-04-01/Accounts/AC1/Recordings/{recording_sid(41)}.mp3"
        db.upsert_call(PARENT, {"recording_id": recording_sid(41), "recording_channels": 2, "recording_url": dual_url})
        _status(client, "completed", RecordingUrl=f"https://api.twilio.com/2010-04-01/Accounts/AC1/Recordings/{recording_sid(42)}")
        assert db.get_call(PARENT)["recording_url"] == dual_url

    def test_dial_status_fills_legs_and_starts_recording(self, client, db, fake):
        response = client.post("/api/twilio/dial-status", data={
            "CallSid": PARENT,
            "DialCallSid": CHILD,
            "DialCallStatus": "answered",
            "From": CUSTOMER_NUMBER,
            "To": BUSINESS_NUMBER,
        })
        assert response.json() == {"ok": True, "call_id": PARENT}
        assert db.get_call(PARENT)["counterparty_phone"] == "2145550199"
        assert fake.started[0][0] == CHILD


# ── Recording callbacks ──

class TestRecordingCallback:
    def test_dial_verb_mono_ignored_while_dual_pending(self, client, db):
        db.upsert_call(PARENT, {"status": "in-progress", "recording_state": "dual-pending", "pending_recording_id": recording_sid(5)})
        response = _recording(client, recording_sid(6))
        assert response.json()["ignored"] is True
        assert "recording_url" not in db.get_call(PARENT)

    def test_dual_completion_stored_and_auto_processed(self, client, db, fake, monkeypatch):
        monkeypatch.setenv("CI_AUTO_PROCESS", "true")
        rid = recording_sid(7)
        db.upsert_call(PARENT, {"status": "completed", "from_number": BUSINESS_NUMBER, "to_number": CUSTOMER_NUMBER, "pending_recording_id": rid})
        fake.basic[rid] = "We are on a fixed plan at 0.09 per kWh."
        response = _recording(client, rid, channels=2, source="StartCallRecordingAPI")
        assert response.json() == {"ok": True, "call_id": PARENT}
        record = db.get_call(PARENT)
        assert record["recording_url"].endswith(f"{rid}.mp3")
        assert record["recording_channels"] == 2
        assert record["transcript"] == "We are on a fixed plan at 0.09 per kWh."
        assert record["insight"]["contract"]["current_rate"] == "$0.090/kWh"

    def test_child_leg_recording_lands_on_parent(self, client, db, fake):
        db.upsert_call(PARENT, {"status": "in-progress"})
        fake.calls[CHILD] = {"call_id": CHILD, "parent_call_id": PARENT}
        _recording(client, recording_sid(8), channels=2, source="StartCallRecordingAPI", call_id=CHILD)
        assert db.get_call(PARENT)["recording_id"] == recording_sid(8)
        assert db.get_call(CHILD) is None

    def test_unresolvable_recording_is_skipped(self, client, db):
        response = client.post("/api/twilio/recording", data={"RecordingSid": recording_sid(9), "RecordingStatus": "completed"})
        assert response.json()["skipped"] == "unresolved call id"
        assert db.calls == {}


# ── Intelligence callbacks ──

class TestTranscriptCallback:
    def test_requested_transcript_finishes_with_auto_process_off(self, client, db, fake, intelligence):
        tid = transcript_sid(1)
        rid = recording_sid(1)
        db.upsert_call(PARENT, {
            "status": "completed",
            "from_number": BUSINESS_NUMBER,
            "to_number": CUSTOMER_NUMBER,
            "recording_id": rid,
            "transcript_id": tid,
            "transcript_status": "queued",
        })
        fake.transcripts[tid] = {"transcript_id": tid, "status": "completed", "source_recording_id": rid, "customer_key": PARENT, "service_id": intelligence}
        fake.sentences[tid] = DIARIZED

        response = client.post("/api/twilio/transcript", json={
            "transcript_sid": tid,
            "event_type": "voice_intelligence_transcript_available",
            "customer_key": PARENT,
        })
        assert response.json() == {"ok": True, "call_id": PARENT}
        record = db.get_call(PARENT)
        assert record["transcript_provenance"] == "diarized-sentences"
        assert record["formatted_transcript"].startswith("Agent: Hi, this is Sam")

    def test_repeated_callbacks_recreate_undiarized_transcript_once(self, client, db, fake, intelligence, monkeypatch):
        monkeypatch.setenv("CI_AUTO_PROCESS", "true")
        tid = transcript_sid(4)
        rid = recording_sid(4)
        unlabeled = [{"transcript": "Hi, this is Sam.", "start_time": 0.4}, {"transcript": "Hello.", "start_time": 2.0}]
        db.upsert_call(PARENT, {"status": "completed", "from_number": BUSINESS_NUMBER, "to_number": CUSTOMER_NUMBER, "recording_id": rid})
        fake.transcripts[tid] = {"transcript_id": tid, "status": "completed", "source_recording_id": rid, "customer_key": PARENT, "service_id": intelligence}
        fake.sentences[tid] = unlabeled
        fake.sentence_script.extend([unlabeled, unlabeled, unlabeled])

        for _ in range(3):
            client.post("/api/twilio/transcript", json={"transcript_sid": tid, "status": "completed", "customer_key": PARENT})

        assert len(fake.created_transcripts) == 1
        assert fake.deleted == [tid]
        assert db.get_call(PARENT)["transcript_provenance"] == "flat"

    def test_unrequested_transcript_waits_for_trigger(self, client, db, fake):
        tid = transcript_sid(2)
        db.upsert_call(PARENT, {"status": "completed"})
        client.post("/api/twilio/transcript", json={"transcript_sid": tid, "status": "completed", "customer_key": PARENT})
        assert "transcript" not in db.get_call(PARENT)
        assert db.get_transcript(tid)["customer_key"] == PARENT

    def test_in_progress_only_indexed(self, client, db):
        tid = transcript_sid(3)
        response = client.post("/api/twilio/transcript", json={"transcript_sid": tid, "status": "in-progress"})
        assert response.json() == {"ok": True}
        assert db.get_transcript(tid)["status"] == "in-progress"


class TestOperatorResult:
    def test_stores_operator_insight(self, client, db):
        response = client.post("/api/twilio/operator-result", json={
            "callSid": PARENT,
            "result": {"summary": "Wants a renewal quote.", "sentiment": "Positive", "disposition": "callback"},
        })
        assert response.json() == {"ok": True, "call_id": PARENT}
        insight = db.get_call(PARENT)["insight"]
        assert insight["summary"] == "Wants a renewal quote."
        assert insight["source"] == "operator"
        assert insight["disposition"] == "callback"

    def test_missing_call_id_is_rejected(self, client, db):
        response = client.post("/api/twilio/operator-result", json={"result": {"summary": "x"}})
        assert response.status_code == 400
        assert db.calls == {}


# ── Request validation ──

class TestRequestValidation:
    def test_malformed_json_is_rejected(self, client):
        response = client.post("/api/twilio/status", content=b"{not json", headers={"content-type": "application/json"})
        assert response.status_code == 400

    def test_signature_enforced_when_enabled(self, client, db, monkeypatch):
        monkeypatch.setenv("TWILIO_VALIDATE_SIGNATURES", "true")
        monkeypatch.setenv("TWILIO_AUTH_TOKEN", "tok")
        monkeypatch.setenv("PUBLIC_BASE_URL", "https://hooks.example.com")
        form = {"CallSid": PARENT, "CallStatus": "ringing"}

        assert client.post("/api/twilio/status", data=form).status_code == 403
        bad = client.post("/api/twilio/status", data=form, headers={"X-Twilio-Signature": "bogus"})
        assert bad.status_code == 403

        signature = compute_signature("tok", "https://hooks.example.com/api/twilio/status", form)
        good = client.post("/api/twilio/status", data=form, headers={"X-Twilio-Signature": signature})
        assert good.status_code == 200
        assert db.get_call(PARENT)["status"] == "ringing"


# ── Calls API ──

class TestCallsApi:
    def test_upsert_with_legacy_field_names(self, client):
        response = client.post("/api/calls", json={"callSid": PARENT, "status": "completed", "aiInsights": {"summary": "hi"}})
        assert response.status_code == 200
        body = response.json()
        assert body["call_id"] == PARENT
        assert body["insight"] == {"summary": "hi"}

    def test_upsert_resolves_recording_id(self, client, db):
        rid = recording_sid(3)
        db.save_recording({"recording_id": rid, "call_id": PARENT})
        response = client.post("/api/calls", json={"recording_id": rid, "transcript": "hello"})
        assert response.json()["call_id"] == PARENT
        assert db.get_call(PARENT)["transcript"] == "hello"

    def test_upsert_without_resolvable_id(self, client, db):
        response = client.post("/api/calls", json={"status": "completed"})
        assert response.status_code == 422
        assert db.calls == {}

    def test_list_and_get(self, client, db):
        db.upsert_call(PARENT, {"status": "completed"})
        db.upsert_call(CHILD, {"status": "busy"})
        listing = client.get("/api/calls", params={"status": "completed", "page_size": 500}).json()
        assert listing["total"] == 1
        assert listing["page_size"] == 100
        assert listing["items"][0]["call_id"] == PARENT
        assert client.get(f"/api/calls/{PARENT}").json()["status"] == "completed"
        assert client.get(f"/api/calls/{call_sid(99)}").status_code == 404
        assert client.get("/api/calls/not-a-call").status_code == 404

    def test_process_on_demand(self, client, db, fake):
        rid = recording_sid(4)
        db.upsert_call(PARENT, {"status": "completed", "recording_id": rid})
        fake.basic[rid] = "Thanks for your time today."
        response = client.post(f"/api/calls/{PARENT}/process")
        assert response.status_code == 200
        body = response.json()
        assert body["outcome"] == "completed"
        assert body["provenance"] == "flat"
        assert db.get_call(PARENT)["transcript"] == "Thanks for your time today."

    def test_process_in_background(self, client, db, fake):
        rid = recording_sid(5)
        db.upsert_call(PARENT, {"status": "completed", "recording_id": rid})
        fake.basic[rid] = "Queued text."
        body = client.post(f"/api/calls/{PARENT}/process", params={"background": "true"}).json()
        assert body["outcome"] == "pending"
        assert db.get_call(PARENT)["transcript"] == "Queued text."

    def test_process_unknown_call(self, client):
        assert client.post(f"/api/calls/{call_sid(42)}/process").status_code == 404

    def test_health(self, client):
        assert client.get("/").json() == {"status": "ok"}

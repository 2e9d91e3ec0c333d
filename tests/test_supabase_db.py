"""Tests for the Supabase-backed store against a mocked client."""

from types import SimpleNamespace
from unittest.mock import MagicMock, patch

from call_orchestrator.db import InMemoryDB, SupabaseDB, get_db
from conftest import call_sid, recording_sid


CALL = call_sid(1)


def _client(existing=None, count=None):
    """Client whose select chains return `existing` and whose upserts echo the row."""
    client = MagicMock()
    table = client.table.return_value
    table.select.return_value.eq.return_value.limit.return_value.execute.return_value = SimpleNamespace(data=[existing] if existing else [])
    table.upsert.return_value.execute.side_effect = lambda: SimpleNamespace(data=[table.upsert.call_args.args[0]])
    listing = table.select.return_value
    listing.eq.return_value.order.return_value.range.return_value.execute.return_value = SimpleNamespace(data=[{"call_id": CALL}], count=count)
    listing.order.return_value.range.return_value.execute.return_value = SimpleNamespace(data=[{"call_id": CALL}], count=count)
    return client


def _upserted(client):
    return client.table.return_value.upsert.call_args


# ── Call upserts ──

class TestUpsertCall:
    def test_row_keeps_only_known_non_null_columns(self):
        client = _client()
        SupabaseDB(client).upsert_call(CALL, {
            "status": "ringing",
            "from_number": "+18175550100",
            "duration_seconds": None,
            "created_at": "2024-01-01T00:00:00+00:00",
            "call_id": call_sid(9),
            "driver": "x",
        })
        row = _upserted(client).args[0]
        assert _upserted(client).kwargs == {"on_conflict": "call_id"}
        assert row["call_id"] == CALL
        assert row["status"] == "ringing"
        assert row["from_number"] == "+18175550100"
        assert "updated_at" in row
        for dropped in ("duration_seconds", "created_at", "driver"):
            assert dropped not in row

    def test_late_non_terminal_status_dropped(self):
        client = _client(existing={"call_id": CALL, "status": "completed"})
        SupabaseDB(client).upsert_call(CALL, {"status": "ringing", "duration_seconds": 65})
        row = _upserted(client).args[0]
        assert "status" not in row
        assert row["duration_seconds"] == 65

    def test_terminal_status_written_without_lookup(self):
        client = _client(existing={"call_id": CALL, "status": "in-progress"})
        SupabaseDB(client).upsert_call(CALL, {"status": "completed"})
        assert _upserted(client).args[0]["status"] == "completed"
        client.table.return_value.select.assert_not_called()

    def test_non_call_id_refused(self):
        client = _client()
        assert SupabaseDB(client).upsert_call(recording_sid(1), {"status": "ringing"}) is None
        client.table.assert_not_called()


# ── Reads ──

class TestReads:
    def test_get_call_missing(self):
        assert SupabaseDB(_client()).get_call(CALL) is None

    def test_list_calls_pages_newest_first(self):
        client = _client(count=5)
        items, total = SupabaseDB(client).list_calls(status="completed", page=2, page_size=2)
        listing = client.table.return_value.select.return_value
        client.table.return_value.select.assert_called_with("*", count="exact")
        listing.eq.assert_called_with("status", "completed")
        listing.eq.return_value.order.assert_called_with("created_at", desc=True)
        listing.eq.return_value.order.return_value.range.assert_called_with(2, 3)
        assert items == [{"call_id": CALL}]
        assert total == 5

    def test_list_calls_without_count_uses_page_length(self):
        items, total = SupabaseDB(_client(count=None)).list_calls(status=None, page=1, page_size=20)
        assert total == len(items) == 1


# ── Index rows ──

class TestIndexRows:
    def test_save_recording_drops_nulls(self):
        client = _client()
        SupabaseDB(client).save_recording({"recording_id": recording_sid(2), "call_id": CALL, "url": None})
        assert _upserted(client).args[0] == {"recording_id": recording_sid(2), "call_id": CALL}
        assert _upserted(client).kwargs == {"on_conflict": "recording_id"}

    def test_rows_without_ids_are_skipped(self):
        client = _client()
        store = SupabaseDB(client)
        store.save_recording({"call_id": CALL})
        store.save_transcript({"status": "completed"})
        client.table.assert_not_called()


# ── Store selection ──

class TestGetDb:
    def test_supabase_selected_with_credentials(self, monkeypatch):
        monkeypatch.setenv("SUPABASE_URL", "https://example.supabase.co")
        monkeypatch.setenv("SUPABASE_SERVICE_ROLE_KEY", "service-key")
        with patch("call_orchestrator.db.create_client", return_value=MagicMock()) as create:
            store = get_db()
            assert get_db() is store
        assert isinstance(store, SupabaseDB)
        create.assert_called_once_with("https://example.supabase.co", "service-key")

    def test_memory_store_without_credentials(self):
        assert isinstance(get_db(), InMemoryDB)

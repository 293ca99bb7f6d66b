"""
Local Backend Tests
===================

Tests for the in-memory database, storage, functions and realtime channel.

Version: 0.1.0
"""

import asyncio
import json

import pytest

from shared.backend import (
    ChangeType,
    DatabaseError,
    FunctionError,
    QueryFilter,
    QueryOptions,
    RealtimeService,
    StorageError,
)
from shared.backend.local import LocalDatabaseService, LocalFunctionService, LocalStorageService


@pytest.fixture
def db() -> LocalDatabaseService:
    return LocalDatabaseService()


class TestLocalDatabase:
    """Tests for LocalDatabaseService."""

    async def test_insert_sets_id_and_timestamps(self, db):
        rows = await db.insert("profiles", {"user_id": "u1"})
        assert len(rows) == 1
        assert rows[0]["id"]
        assert rows[0]["created_at"] is not None
        assert rows[0]["updated_at"] is not None

    async def test_insert_many_and_select(self, db):
        await db.insert("profiles", [{"user_id": "u1"}, {"user_id": "u2"}])
        result = await db.select("profiles")
        assert result.count == 2

    async def test_duplicate_id_rejected(self, db):
        await db.insert("profiles", {"id": "p1", "user_id": "u1"})
        with pytest.raises(DatabaseError):
            await db.insert("profiles", {"id": "p1", "user_id": "u2"})

    async def test_invalid_table_name(self, db):
        with pytest.raises(DatabaseError):
            await db.select("profiles; drop")

    async def test_invalid_column_name(self, db):
        with pytest.raises(DatabaseError):
            await db.insert("profiles", {"bad column": 1})

    async def test_update_returns_changed_rows(self, db):
        await db.insert("profiles", [{"user_id": "u1", "n": 1}, {"user_id": "u2", "n": 1}])
        updated = await db.update("profiles", {"n": 2}, QueryOptions.where(user_id="u1"))
        assert [r["user_id"] for r in updated] == ["u1"]
        assert (await db.select_one("profiles", user_id="u2"))["n"] == 1

    async def test_update_and_delete_require_filters(self, db):
        with pytest.raises(DatabaseError):
            await db.update("profiles", {"n": 2}, QueryOptions())
        with pytest.raises(DatabaseError):
            await db.delete("profiles", QueryOptions())

    async def test_delete_returns_count(self, db):
        await db.insert("profiles", [{"user_id": "u1"}, {"user_id": "u1"}, {"user_id": "u2"}])
        assert await db.delete("profiles", QueryOptions.where(user_id="u1")) == 2
        assert (await db.select("profiles")).count == 1

    async def test_upsert_inserts_then_updates(self, db):
        first = await db.upsert("user_pseudonyms", {"user_hash": "h1", "is_active": True}, on_conflict="user_hash")
        second = await db.upsert("user_pseudonyms", {"user_hash": "h1", "is_active": False}, on_conflict="user_hash")
        assert first[0]["id"] == second[0]["id"]
        rows = (await db.select("user_pseudonyms")).data
        assert len(rows) == 1
        assert rows[0]["is_active"] is False

    async def test_returned_rows_are_copies(self, db):
        rows = await db.insert("profiles", {"user_id": "u1", "tags": ["a"]})
        rows[0]["tags"].append("b")
        stored = await db.select_one("profiles", user_id="u1")
        assert stored["tags"] == ["a"]

    async def test_select_with_filter_operators(self, db):
        await db.insert("scores", [{"v": 1}, {"v": 5}, {"v": 9}])
        result = await db.select("scores", QueryOptions.where(v=QueryFilter(operator="gte", value=5)))
        assert sorted(r["v"] for r in result.data) == [5, 9]

    async def test_truncate_and_table_names(self, db):
        await db.insert("a_table", {"x": 1})
        await db.insert("b_table", {"x": 1})
        assert db.table_names() == ["a_table", "b_table"]
        await db.truncate("a_table")
        assert (await db.select("a_table")).count == 0
        assert (await db.select("b_table")).count == 1
        await db.truncate()
        assert (await db.select("b_table")).count == 0

    async def test_persists_to_data_dir(self, tmp_path):
        db = LocalDatabaseService(data_dir=tmp_path)
        await db.insert("profiles", {"id": "p1", "user_id": "u1"})

        assert json.loads((tmp_path / "table_profiles.json").read_text())[0]["id"] == "p1"

        reloaded = LocalDatabaseService(data_dir=tmp_path)
        assert (await reloaded.select_one("profiles", id="p1"))["user_id"] == "u1"

    async def test_table_files_written_off_the_event_loop(self, tmp_path, monkeypatch):
        writes: list[str] = []
        to_thread = asyncio.to_thread

        async def recording_to_thread(func, /, *args, **kwargs):
            writes.append(func.__name__)
            return await to_thread(func, *args, **kwargs)

        monkeypatch.setattr(asyncio, "to_thread", recording_to_thread)
        db = LocalDatabaseService(data_dir=tmp_path)

        await db.insert("profiles", {"id": "p1", "user_id": "u1"})
        await db.update("profiles", {"user_id": "u2"}, QueryOptions.where(id="p1"))
        await db.delete("profiles", QueryOptions.where(id="p1"))

        assert writes == ["_write_atomically"] * 3
        assert json.loads((tmp_path / "table_profiles.json").read_text()) == []
        assert not (tmp_path / "table_profiles.tmp").exists()

    async def test_corrupt_data_file(self, tmp_path):
        (tmp_path / "table_profiles.json").write_text("{not json")
        with pytest.raises(DatabaseError):
            LocalDatabaseService(data_dir=tmp_path)

    async def test_health_check(self, db):
        await db.insert("profiles", {"user_id": "u1"})
        health = await db.health_check()
        assert health["status"] == "healthy"
        assert health["rows"] == 1
        assert health["persistent"] is False


class TestRealtime:
    """Tests for change notifications."""

    async def test_insert_update_delete_published(self):
        realtime = RealtimeService()
        db = LocalDatabaseService(realtime=realtime)
        events = []
        realtime.subscribe("profiles", events.append)

        await db.insert("profiles", {"id": "p1", "n": 1})
        await db.update("profiles", {"n": 2}, QueryOptions.where(id="p1"))
        await db.delete("profiles", QueryOptions.where(id="p1"))

        assert [e.event_type for e in events] == [ChangeType.INSERT, ChangeType.UPDATE, ChangeType.DELETE]
        assert events[1].old["n"] == 1
        assert events[1].new["n"] == 2
        assert events[2].new is None
        assert events[2].old["id"] == "p1"

    async def test_event_and_table_filtering(self):
        realtime = RealtimeService()
        db = LocalDatabaseService(realtime=realtime)
        inserts, everything = [], []
        realtime.subscribe("profiles", inserts.append, event="INSERT")
        realtime.subscribe("*", everything.append)

        await db.insert("profiles", {"id": "p1"})
        await db.insert("other", {"id": "o1"})
        await db.delete("profiles", QueryOptions.where(id="p1"))

        assert len(inserts) == 1
        assert len(everything) == 3

    async def test_async_callback_and_unsubscribe(self):
        realtime = RealtimeService()
        received = []

        async def on_change(event):
            received.append(event.table)

        subscription = realtime.subscribe("profiles", on_change)
        await realtime.publish("profiles", ChangeType.INSERT, new={"id": "p1"})
        subscription.unsubscribe()
        await realtime.publish("profiles", ChangeType.INSERT, new={"id": "p2"})

        assert received == ["profiles"]
        assert realtime.subscription_count == 0

    async def test_failing_listener_does_not_break_publish(self):
        realtime = RealtimeService()
        received = []

        def broken(event):
            raise RuntimeError("listener bug")

        realtime.subscribe("profiles", broken)
        realtime.subscribe("profiles", received.append)
        await realtime.publish("profiles", ChangeType.INSERT, new={"id": "p1"})

        assert len(received) == 1


class TestLocalStorage:
    """Tests for LocalStorageService."""

    async def test_upload_download(self):
        storage = LocalStorageService()
        stored = await storage.upload("bucket", "a/b.json", b"{}", content_type="application/json")
        assert stored.size == 2
        assert await storage.download("bucket", "a/b.json") == b"{}"

    async def test_missing_object(self):
        storage = LocalStorageService()
        with pytest.raises(StorageError):
            await storage.download("bucket", "missing")
        with pytest.raises(StorageError):
            await storage.get_signed_url("bucket", "missing")

    async def test_signed_url_and_listing(self):
        storage = LocalStorageService()
        await storage.upload("bucket", "exports/u1/x.json", b"1")
        await storage.upload("bucket", "exports/u2/y.json", b"2")
        await storage.upload("bucket", "other/z.json", b"3")

        url = await storage.get_signed_url("bucket", "exports/u1/x.json", expires_in=60)
        assert url.startswith("local://file/bucket/exports/u1/x.json")

        keys = [o.key for o in await storage.list_objects("bucket", prefix="exports/")]
        assert keys == ["exports/u1/x.json", "exports/u2/y.json"]

        await storage.delete("bucket", "other/z.json")
        assert await storage.list_objects("bucket", prefix="other/") == []


class TestLocalFunctions:
    """Tests for LocalFunctionService."""

    async def test_analyze_baseline(self, baseline_transcript):
        functions = LocalFunctionService()
        result = await functions.invoke("analyze-baseline", {"transcript": baseline_transcript})
        assert result["phq2_total"] == 1
        assert result["gad2_total"] == 5
        assert result["mood_scale"] == 7

    async def test_analyze_baseline_requires_transcript(self):
        with pytest.raises(FunctionError):
            await LocalFunctionService().invoke("analyze-baseline", {})

    async def test_unknown_function(self):
        with pytest.raises(FunctionError):
            await LocalFunctionService().invoke("nope")

    async def test_registered_async_handler(self):
        functions = LocalFunctionService()

        async def echo(payload):
            return {"echo": payload["value"]}

        functions.register("echo", echo)
        assert await functions.invoke("echo", {"value": 3}) == {"echo": 3}

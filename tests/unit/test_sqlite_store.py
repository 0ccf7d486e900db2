"""Tests for the SQLite message store."""

from __future__ import annotations

import json

import pytest

from src.models import MediaMetadata, MessageKind, StatusUpdate
from src.store.base import PersistenceError, message_to_row, row_to_message
from src.store.sqlite import SQLiteMessageStore
from tests.conftest import make_message, make_reference


class TestSave:
    def test_save_and_get(self, sqlite_store: SQLiteMessageStore) -> None:
        msg = make_message(sender_name="Ana")
        assert sqlite_store.save(msg) is True

        loaded = sqlite_store.get("wamid.1")
        assert loaded == msg

    def test_duplicate_insert_is_ignored(self, sqlite_store: SQLiteMessageStore) -> None:
        assert sqlite_store.save(make_message()) is True
        assert sqlite_store.save(make_message(body="changed")) is False
        assert sqlite_store.count() == 1
        assert sqlite_store.get("wamid.1").body == "[image]"

    def test_get_missing_returns_none(self, sqlite_store: SQLiteMessageStore) -> None:
        assert sqlite_store.get("nope") is None

    def test_row_columns(self, sqlite_store: SQLiteMessageStore) -> None:
        sqlite_store.save(make_message())
        row = sqlite_store.conn.execute(
            "SELECT * FROM messaging_messages WHERE external_message_id = 'wamid.1'",
        ).fetchone()
        assert row["channel_type"] == "whatsapp"
        assert row["direction"] == "inbound"
        assert row["message_type"] == "image"
        assert row["media_url"] is None
        assert json.loads(row["metadata"]) == {
            "original_media_id": "M1",
            "content_type": "image/jpeg",
        }


class TestMediaUpdates:
    def test_attach_media_keeps_original_media_id(
        self, sqlite_store: SQLiteMessageStore,
    ) -> None:
        sqlite_store.save(make_message())
        ref = make_reference(path="org1/images/wamid.1.jpg")
        sqlite_store.attach_media("wamid.1", ref)

        loaded = sqlite_store.get("wamid.1")
        assert loaded.metadata.storage_path == "org1/images/wamid.1.jpg"
        assert loaded.metadata.original_media_id == "M1"
        assert loaded.metadata.public_url == ref.public_url
        assert not loaded.needs_media

    def test_attach_media_missing_row(self, sqlite_store: SQLiteMessageStore) -> None:
        with pytest.raises(PersistenceError):
            sqlite_store.attach_media("nope", make_reference())

    def test_mark_failed_records_error(self, sqlite_store: SQLiteMessageStore) -> None:
        sqlite_store.save(make_message())
        sqlite_store.mark_failed("wamid.1", "fetch: expired or not found")

        loaded = sqlite_store.get("wamid.1")
        assert loaded.metadata.media_error == "fetch: expired or not found"
        assert loaded.metadata.original_media_id == "M1"

    def test_pending_media(self, sqlite_store: SQLiteMessageStore) -> None:
        sqlite_store.save(make_message(provider_message_id="a", sent_at="2026-01-02T00:00:00+00:00"))
        sqlite_store.save(make_message(provider_message_id="b", sent_at="2026-01-01T00:00:00+00:00"))
        sqlite_store.save(make_message(
            provider_message_id="c",
            metadata=MediaMetadata(original_media_id="M3", storage_path="org1/images/c.jpg"),
        ))
        sqlite_store.save(make_message(
            provider_message_id="t", kind=MessageKind.TEXT, metadata=MediaMetadata(),
        ))

        pending = sqlite_store.pending_media()
        assert [m.provider_message_id for m in pending] == ["b", "a"]
        assert len(sqlite_store.pending_media(limit=1)) == 1


class TestStatusAndChannels:
    def test_mark_status_sets_timestamp(self, sqlite_store: SQLiteMessageStore) -> None:
        sqlite_store.save(make_message())
        ts = "2026-01-01T00:05:00+00:00"
        assert sqlite_store.mark_status(StatusUpdate(
            provider_message_id="wamid.1", status="read", timestamp=ts,
        ))
        row = sqlite_store.conn.execute("SELECT read_at FROM messaging_messages").fetchone()
        assert row["read_at"] == ts

    def test_mark_status_ignores_untracked_status(
        self, sqlite_store: SQLiteMessageStore,
    ) -> None:
        sqlite_store.save(make_message())
        assert not sqlite_store.mark_status(StatusUpdate(
            provider_message_id="wamid.1", status="sent", timestamp="t",
        ))

    def test_mark_status_unknown_message(self, sqlite_store: SQLiteMessageStore) -> None:
        assert not sqlite_store.mark_status(StatusUpdate(
            provider_message_id="nope", status="delivered", timestamp="t",
        ))

    def test_channel_lookup(self, sqlite_store: SQLiteMessageStore) -> None:
        assert sqlite_store.find_channel_organization("PID") is None
        sqlite_store.add_channel("PID", "org1")
        assert sqlite_store.find_channel_organization("PID") == "org1"
        sqlite_store.add_channel("PID", "org2")
        assert sqlite_store.find_channel_organization("PID") == "org2"


class TestErrors:
    def test_closed_connection_raises_persistence_error(self, tmp_path) -> None:
        store = SQLiteMessageStore(str(tmp_path / "x.db"))
        store.close()
        with pytest.raises(PersistenceError):
            store.get("wamid.1")


class TestRowMapping:
    def test_row_round_trip(self) -> None:
        msg = make_message(sender_name="Ana")
        assert row_to_message(message_to_row(msg)) == msg

    def test_unknown_metadata_keys_dropped(self) -> None:
        row = message_to_row(make_message())
        row["metadata"] = json.dumps({"original_media_id": "M1", "ai_reply": True})
        assert row_to_message(row).metadata == MediaMetadata(original_media_id="M1")

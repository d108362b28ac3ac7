"""Tests for the encrypted conversation store."""

import sqlite3

import pytest

from whatisaid.config import MIN_PBKDF2_ITERATIONS
from whatisaid.crypto import CryptoService
from whatisaid.errors import (
    ClosedError,
    DecryptionError,
    EncryptionNotReadyError,
    NotInitializedError,
    PersistenceError,
)
from whatisaid.storage import ConversationStore, StoreState, open_store


def trace(store):
    statements = []
    store.conn.set_trace_callback(statements.append)
    return statements


class TestLifecycle:
    def test_initialize_is_idempotent(self, store):
        store.initialize_database()
        store.initialize_database()
        assert store.state is StoreState.READY
        tables = {
            row[0]
            for row in store.conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")
        }
        assert {"conversations", "messages", "app_metadata"} <= tables

    def test_indexes_exist(self, store):
        indexes = {
            row[0]
            for row in store.conn.execute("SELECT name FROM sqlite_master WHERE type = 'index'")
        }
        assert {
            "idx_messages_conversation_id",
            "idx_messages_timestamp",
            "idx_conversations_end_time",
        } <= indexes

    def test_requires_initialization(self, tmp_path, crypto):
        store = ConversationStore(tmp_path / "x.db", crypto)
        with pytest.raises(NotInitializedError):
            store.get_conversation_count()

    def test_closed_store_rejects_calls(self, store, make_conversation):
        store.close()
        assert store.state is StoreState.CLOSED
        with pytest.raises(ClosedError):
            store.get_conversation_count()
        with pytest.raises(ClosedError):
            store.save_conversation(make_conversation())
        with pytest.raises(ClosedError):
            store.initialize_database()

    def test_encryption_checked_before_any_io(self, tmp_path, make_conversation, make_message):
        store = ConversationStore(tmp_path / "x.db", CryptoService(iterations=MIN_PBKDF2_ITERATIONS))
        store.initialize_database()
        statements = trace(store)

        with pytest.raises(EncryptionNotReadyError):
            store.save_conversation(make_conversation())
        with pytest.raises(EncryptionNotReadyError):
            store.save_messages([make_message("m1")])
        with pytest.raises(EncryptionNotReadyError):
            store.save_conversation_with_messages(make_conversation(), [make_message("m1")])
        with pytest.raises(EncryptionNotReadyError):
            store.get_conversations()
        with pytest.raises(EncryptionNotReadyError):
            store.get_messages_for_conversation("conv-1")
        assert statements == []
        store.close()

    def test_count_needs_no_key(self, store, make_conversation, crypto):
        store.save_conversation(make_conversation())
        crypto.clear_key()
        assert store.get_conversation_count() == 1


class TestConversations:
    def test_round_trip(self, store, make_conversation):
        conv = make_conversation(display_name="Taxes 2023", tags=["finance", "todo"])
        store.save_conversation(conv)
        assert store.get_conversations() == [conv]
        assert store.get_conversation("conv-1") == conv

    def test_missing_conversation(self, store):
        assert store.get_conversation("nope") is None

    def test_confidential_fields_encrypted_at_rest(self, store, make_conversation, crypto):
        store.save_conversation(make_conversation(display_name="Secret plans", tags=["private"]))
        row = store.conn.execute("SELECT * FROM conversations").fetchone()

        assert "Secret" not in row["display_name"]
        assert "private" not in row["tags"]
        assert crypto.decrypt(row["display_name"]) == "Secret plans"
        assert row["source_app"] == "ChatGPT"

    def test_upsert_replaces_whole_row(self, store, make_conversation):
        store.save_conversation(make_conversation(display_name="Old", tags=["a", "b"]))
        store.save_conversation(make_conversation(display_name="New", tags=[], end_time=1_700_000_500))

        assert store.get_conversation_count() == 1
        conv = store.get_conversation("conv-1")
        assert conv.display_name == "New"
        assert conv.tags == []
        assert conv.end_time == 1_700_000_500

    def test_pagination(self, store, make_conversation):
        for i in range(100):
            ts = 1_700_000_000 + i
            store.save_conversation(make_conversation(f"conv-{i:03d}", start_time=ts, end_time=ts))

        page = store.get_conversations("end_time", 25, 50)

        assert len(page) == 25
        assert [c.end_time - 1_700_000_000 for c in page] == list(range(49, 24, -1))

    def test_pagination_past_end(self, store, make_conversation):
        store.save_conversation(make_conversation())
        assert store.get_conversations(limit=10, offset=5) == []

    def test_ascending_with_id_tiebreak(self, store, make_conversation):
        for conv_id in ("b", "a", "c"):
            store.save_conversation(make_conversation(conv_id))
        page = store.get_conversations(order_by="end_time", descending=False)
        assert [c.id for c in page] == ["a", "b", "c"]

    def test_rejects_unknown_order_column(self, store):
        with pytest.raises(ValueError):
            store.get_conversations(order_by="display_name")
        with pytest.raises(ValueError):
            store.get_conversations(order_by="end_time; DROP TABLE conversations")

    def test_rejects_negative_paging(self, store):
        with pytest.raises(ValueError):
            store.get_conversations(limit=-1)

    def test_time_beyond_sqlite_integer(self, store, make_conversation):
        with pytest.raises(PersistenceError) as excinfo:
            store.save_conversation(make_conversation(end_time=10**22))
        assert isinstance(excinfo.value.__cause__, OverflowError)
        assert store.get_conversation_count() == 0


class TestMessages:
    @pytest.fixture(autouse=True)
    def conversation(self, store, make_conversation):
        store.save_conversation(make_conversation())

    def test_round_trip(self, store, make_message):
        messages = [
            make_message("m1", author="User", content="How do I sort?"),
            make_message("m2", author="ChatGPT", content="```py\nsorted(x)\n```",
                         content_type="code", timestamp_utc=1_700_000_005),
        ]
        store.save_messages(messages)
        assert store.get_messages_for_conversation("conv-1") == messages

    def test_encrypted_at_rest(self, store, make_message):
        store.save_messages([make_message("m1", author="Alice", content="my password is hunter2")])
        row = store.conn.execute("SELECT * FROM messages").fetchone()
        assert "hunter2" not in row["content"]
        assert "Alice" not in row["author"]

    def test_ordered_by_timestamp_then_insertion(self, store, make_message):
        store.save_messages([
            make_message("late", timestamp_utc=1_700_000_050),
            make_message("tie-1", timestamp_utc=1_700_000_010),
            make_message("early", timestamp_utc=1_700_000_001),
            make_message("tie-2", timestamp_utc=1_700_000_010),
        ])
        ids = [m.message_id for m in store.get_messages_for_conversation("conv-1")]
        assert ids == ["early", "tie-1", "tie-2", "late"]

    def test_empty_batch_opens_no_transaction(self, store):
        statements = trace(store)
        store.save_messages([])
        assert statements == []

    def test_failed_batch_leaves_nothing(self, store, make_message):
        batch = [
            make_message("m1"),
            make_message("m2"),
            make_message("orphan", conversation_id="does-not-exist"),
            make_message("m4"),
        ]
        statements = trace(store)

        with pytest.raises(PersistenceError) as excinfo:
            store.save_messages(batch)

        assert isinstance(excinfo.value.__cause__, sqlite3.IntegrityError)
        assert store.get_message_count() == 0
        assert statements[0] == "BEGIN"
        assert statements[-1] == "ROLLBACK"
        assert "COMMIT" not in statements

    def test_successful_batch_commits_once(self, store, make_message):
        statements = trace(store)
        store.save_messages([make_message(f"m{i}") for i in range(3)])
        assert statements[0] == "BEGIN"
        assert statements[-1] == "COMMIT"
        assert store.get_message_count() == 3

    def test_resave_does_not_duplicate(self, store, make_message):
        batch = [make_message("m1"), make_message("m2")]
        store.save_messages(batch)
        store.save_messages(batch)
        assert store.get_message_count() == 2

    def test_unknown_content_type_fails_whole_batch(self, store, make_message):
        good = make_message("m1")
        bad = make_message("m2").model_copy(update={"content_type": "image"})
        with pytest.raises(PersistenceError):
            store.save_messages([good, bad])
        assert store.get_message_count() == 0


class TestConversationWithMessages:
    def test_one_transaction_for_both(self, store, make_conversation, make_message):
        conv = make_conversation()
        messages = [make_message("m1"), make_message("m2", timestamp_utc=1_700_000_001)]
        statements = trace(store)

        store.save_conversation_with_messages(conv, messages)

        assert statements.count("BEGIN") == 1
        assert statements[-1] == "COMMIT"
        assert store.get_conversation("conv-1") == conv
        assert store.get_messages_for_conversation("conv-1") == messages

    def test_failed_message_removes_the_conversation_too(
        self, store, make_conversation, make_message
    ):
        batch = [make_message("m1"), make_message("orphan", conversation_id="elsewhere")]

        with pytest.raises(PersistenceError) as excinfo:
            store.save_conversation_with_messages(make_conversation(), batch)

        assert isinstance(excinfo.value.__cause__, sqlite3.IntegrityError)
        assert store.get_conversation_count() == 0
        assert store.get_message_count() == 0

    def test_timestamp_beyond_sqlite_integer(self, store, make_conversation, make_message):
        batch = [make_message("m1", timestamp_utc=10**22)]

        with pytest.raises(PersistenceError) as excinfo:
            store.save_conversation_with_messages(make_conversation(), batch)

        assert isinstance(excinfo.value.__cause__, OverflowError)
        assert store.get_conversation_count() == 0

    def test_replaces_existing_conversation(self, store, make_conversation, make_message):
        store.save_conversation_with_messages(make_conversation(display_name="Old"), [])
        store.save_conversation_with_messages(
            make_conversation(display_name="New"), [make_message("m1")]
        )
        assert store.get_conversation("conv-1").display_name == "New"
        assert store.get_message_count() == 1


class TestKeyManagement:
    def test_unlock_round_trip(self, tmp_path, make_conversation, password):
        db_path = tmp_path / "vault.db"
        with open_store(password, db_path, CryptoService(iterations=MIN_PBKDF2_ITERATIONS)) as store:
            store.save_conversation(make_conversation(display_name="Remember me"))

        with open_store(password, db_path, CryptoService(iterations=MIN_PBKDF2_ITERATIONS)) as store:
            assert store.get_conversation("conv-1").display_name == "Remember me"

    def test_wrong_password(self, tmp_path, password):
        db_path = tmp_path / "vault.db"
        open_store(password, db_path, CryptoService(iterations=MIN_PBKDF2_ITERATIONS)).close()

        crypto = CryptoService(iterations=MIN_PBKDF2_ITERATIONS)
        with pytest.raises(DecryptionError):
            open_store("not the password", db_path, crypto)
        assert not crypto.is_initialized()

    def test_salt_and_iterations_persisted(self, tmp_path, password):
        db_path = tmp_path / "vault.db"
        store = open_store(password, db_path, CryptoService(iterations=MIN_PBKDF2_ITERATIONS + 1))
        assert store.has_encryption_key()
        meta = dict(store.conn.execute("SELECT key, value FROM app_metadata").fetchall())
        store.close()

        assert meta["kdf_iterations"] == str(MIN_PBKDF2_ITERATIONS + 1)
        assert meta["kdf_salt"]
        assert password not in meta.values()

        # A later open uses the stored iteration count, not its own default
        crypto = CryptoService(iterations=MIN_PBKDF2_ITERATIONS)
        open_store(password, db_path, crypto).close()
        assert crypto.iterations == MIN_PBKDF2_ITERATIONS + 1


class TestStats:
    def test_stats(self, store, make_conversation, make_message):
        store.save_conversation(make_conversation("a", source_app="Claude"))
        store.save_conversation(make_conversation("b"))
        store.save_messages([make_message("m1", "a"), make_message("m2", "b"), make_message("m3", "b")])
        store.record_import("chatgpt", 2, 3)

        stats = store.get_stats()

        assert stats["total_conversations"] == 2
        assert stats["total_messages"] == 3
        assert stats["avg_messages_per_conversation"] == 1.5
        assert stats["date_range_start"] == "2023-11-14"
        assert stats["imports"] == 1
        assert {s["source_app"] for s in stats["sources"]} == {"ChatGPT", "Claude"}

    def test_stats_on_empty_store(self, store):
        stats = store.get_stats()
        assert stats["total_conversations"] == 0
        assert stats["date_range_start"] is None

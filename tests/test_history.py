"""Tests for durable history, transcripts and crash recovery."""

import json
import os

from termhub.history import HistoryStore, safe_name
from termhub.models import (
    ChatMessage,
    EndedReason,
    HistoryEntry,
    LiveSessionRecord,
    SessionMode,
    Transcript,
)


def _entry(session_id: str, **fields) -> HistoryEntry:
    base = dict(session_id=session_id, program="gemini", created_at=100.0)
    base.update(fields)
    return HistoryEntry(**base)


def _transcript(session_id: str, *messages: tuple[str, str]) -> Transcript:
    return Transcript(
        session_id=session_id,
        program="gemini",
        variant="default",
        mode=SessionMode.CHAT,
        created_at=100.0,
        messages=[ChatMessage(role=r, content=c, timestamp=101.0) for r, c in messages],
    )


class TestUpsert:
    """Merging and capping of per-owner indexes."""

    def test_insert_then_merge(self, history) -> None:
        history.upsert("alice", _entry("s1", title="first"))
        history.upsert("alice", _entry("s1", ended_at=200.0, ended_reason=EndedReason.STOPPED))
        [entry] = history.list("alice")
        assert entry.title == "first"
        assert entry.ended_at == 200.0
        assert entry.ended_reason == EndedReason.STOPPED

    def test_null_fields_do_not_erase(self, history) -> None:
        history.upsert("alice", _entry("s1", ended_at=200.0))
        history.upsert("alice", _entry("s1", title="later"))
        assert history.get("alice", "s1").ended_at == 200.0

    def test_capped_to_limit(self, history_dir) -> None:
        store = HistoryStore(history_dir, limit=3)
        for i in range(5):
            store.upsert("alice", _entry(f"s{i}"))
        assert [e.session_id for e in store.list("alice")] == ["s2", "s3", "s4"]

    def test_persisted_across_instances(self, history, history_dir) -> None:
        history.upsert("alice", _entry("s1", title="kept"))
        reopened = HistoryStore(history_dir)
        assert reopened.get("alice", "s1").title == "kept"

    def test_owners_are_isolated(self, history) -> None:
        history.upsert("alice", _entry("s1"))
        assert history.list("bob") == []

    def test_owner_name_is_made_safe(self, history, history_dir) -> None:
        history.upsert("../evil/owner", _entry("s1"))
        assert os.path.dirname(history.index_path("../evil/owner")) == history_dir
        assert os.path.dirname(history.transcript_path("../evil", "s1")) == os.path.join(
            history_dir, "sessions", "%2E.%2Fevil"
        )
        assert safe_name("../evil/owner") == "%2E.%2Fevil%2Fowner"
        assert safe_name("bob@example.com") == "bob@example.com"
        assert safe_name("") == "%"

    def test_similar_owner_names_stay_isolated(self, history, history_dir) -> None:
        history.upsert("alice bob", _entry("s1", title="private"))
        history.save_transcript("alice bob", _transcript("s1", ("user", "secret")))
        history.upsert("alice_bob", _entry("s2"))

        reopened = HistoryStore(history_dir)
        assert [e.session_id for e in reopened.list("alice_bob")] == ["s2"]
        assert reopened.load_transcript("alice_bob", "s1") is None
        assert [e.session_id for e in reopened.list("alice bob")] == ["s1"]
        assert reopened.load_transcript("alice bob", "s1").messages[0].content == "secret"

    def test_owner_cannot_shadow_snapshot(self, history) -> None:
        assert history.index_path("live_sessions") != history.snapshot_path
        assert history.index_path(".live_sessions") != history.snapshot_path


class TestDiskFailures:
    """Unreadable files degrade to an empty view."""

    def test_corrupt_index_reads_empty(self, history, history_dir) -> None:
        os.makedirs(history_dir, exist_ok=True)
        with open(os.path.join(history_dir, "alice.json"), "w") as handle:
            handle.write("{not json")
        assert history.list("alice") == []

    def test_corrupt_index_is_replaced_on_write(self, history, history_dir) -> None:
        os.makedirs(history_dir, exist_ok=True)
        with open(os.path.join(history_dir, "alice.json"), "w") as handle:
            handle.write("[{\"bogus\": true}]")
        history.upsert("alice", _entry("s1"))
        with open(os.path.join(history_dir, "alice.json")) as handle:
            assert [e["session_id"] for e in json.load(handle)] == ["s1"]

    def test_unwritable_directory_is_swallowed(self, tmp_path) -> None:
        blocker = tmp_path / "blocked"
        blocker.write_text("a file, not a directory")
        store = HistoryStore(str(blocker / "history"))
        store.upsert("alice", _entry("s1"))
        # The in-memory view still reflects the write.
        assert store.get("alice", "s1") is not None
        store.save_transcript("alice", _transcript("s1"))
        store.write_snapshot([])


class TestRenameDelete:
    """Retitling and removal."""

    def test_rename(self, history) -> None:
        history.upsert("alice", _entry("s1", title="old"))
        assert history.rename("alice", "s1", "new") is True
        assert history.get("alice", "s1").title == "new"
        assert history.rename("alice", "missing", "x") is False

    def test_delete_removes_transcript(self, history) -> None:
        history.upsert("alice", _entry("s1"))
        history.save_transcript("alice", _transcript("s1", ("user", "hi")))
        assert os.path.exists(history.transcript_path("alice", "s1"))
        assert history.delete("alice", "s1") is True
        assert history.list("alice") == []
        assert not os.path.exists(history.transcript_path("alice", "s1"))
        assert history.delete("alice", "s1") is False


class TestTranscripts:
    """Transcript storage and title fallback."""

    def test_save_and_load(self, history) -> None:
        history.save_transcript("alice", _transcript("s1", ("user", "hi"), ("assistant", "hello")))
        loaded = history.load_transcript("alice", "s1")
        assert [(m.role, m.content) for m in loaded.messages] == [("user", "hi"), ("assistant", "hello")]

    def test_terminal_transcripts_are_not_stored(self, history) -> None:
        transcript = _transcript("s1").model_copy(update={"mode": SessionMode.TERMINAL})
        history.save_transcript("alice", transcript)
        assert history.load_transcript("alice", "s1") is None

    def test_missing_transcript(self, history) -> None:
        assert history.load_transcript("alice", "nope") is None

    def test_title_falls_back_to_first_user_message(self, history) -> None:
        history.upsert("alice", _entry("s1", variant="pro"))
        history.save_transcript(
            "alice", _transcript("s1", ("assistant", "banner"), ("user", "Explain   decorators please"))
        )
        assert history.list("alice")[0].title == "Explain decorators please · pro"


class TestRecovery:
    """Live snapshot and restart recovery."""

    def _record(self, session_id: str, owner: str = "alice", **fields) -> LiveSessionRecord:
        base = dict(
            session_id=session_id,
            owner=owner,
            program="codex",
            variant="default",
            mode=SessionMode.CHAT,
            created_at=50.0,
            title="codex / default",
        )
        base.update(fields)
        return LiveSessionRecord(**base)

    def test_empty_snapshot_removes_file(self, history) -> None:
        history.write_snapshot([self._record("s1")])
        assert os.path.exists(history.snapshot_path)
        history.write_snapshot([])
        assert not os.path.exists(history.snapshot_path)

    def test_recover_closes_out_live_sessions(self, history, history_dir) -> None:
        history.upsert("alice", _entry("s1", program="codex", title="Fix tests · default"))
        history.write_snapshot(
            [
                self._record("s1", title=None, files_count=2),
                self._record("s2", owner="bob", mode=SessionMode.TERMINAL),
            ]
        )
        recovered = HistoryStore(history_dir).recover()
        assert {e.session_id for e in recovered} == {"s1", "s2"}

        reopened = HistoryStore(history_dir)
        alice = reopened.get("alice", "s1")
        assert alice.ended_reason == EndedReason.RESTART
        assert alice.title == "Fix tests · default"
        assert alice.files_count == 2
        bob = reopened.get("bob", "s2")
        assert bob.has_transcript is False
        assert not os.path.exists(history.snapshot_path)

    def test_recover_without_snapshot(self, history) -> None:
        assert history.recover() == []

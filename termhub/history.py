"""Durable per-owner session history, transcripts and crash recovery.

Layout under the history directory::

    <owner>.json                     list of HistoryEntry records
    sessions/<owner>/<id>.json       transcripts of chat-mode sessions
    .live_sessions.json              snapshot of sessions alive right now

Every disk failure is logged and swallowed: history is best-effort and the
caller keeps working with an empty or stale view.
"""

from __future__ import annotations

import json
import os
import tempfile
import time
from threading import Lock
from urllib.parse import quote

import structlog
from pydantic import TypeAdapter, ValidationError

from termhub.models import (
    ChatMessage,
    EndedReason,
    HistoryEntry,
    LiveSessionRecord,
    SessionMode,
    Transcript,
)
from termhub.transcript import derive_title

logger = structlog.get_logger(__name__)

SNAPSHOT_FILE = ".live_sessions.json"
DEFAULT_LIMIT = 50

_ENTRIES = TypeAdapter(list[HistoryEntry])
_RECORDS = TypeAdapter(list[LiveSessionRecord])


def safe_name(value: str) -> str:
    """Encode an owner or session id as a single path component.

    Characters outside ``[A-Za-z0-9._~@-]`` and a leading dot are
    percent-encoded, so distinct ids always map to distinct files and no
    id can produce a dotfile such as the live snapshot.
    """
    encoded = quote(value, safe="@")
    if encoded.startswith("."):
        encoded = "%2E" + encoded[1:]
    return encoded or "%"


def _write_json_atomic(path: str, payload: str) -> None:
    directory = os.path.dirname(path)
    os.makedirs(directory, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".tmp-", suffix=".json")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(payload)
        os.replace(tmp_path, path)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


class HistoryStore:
    """Owner-partitioned JSON history with a read-through cache.

    Each owner's index is rewritten as a whole (read, merge, write), so
    writes for one owner are serialized with a per-owner lock.
    """

    def __init__(self, root: str, limit: int = DEFAULT_LIMIT) -> None:
        self.root = root
        self.limit = limit
        self._cache: dict[str, list[HistoryEntry]] = {}
        self._locks: dict[str, Lock] = {}
        self._locks_guard = Lock()
        self._snapshot_lock = Lock()

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def index_path(self, owner: str) -> str:
        return os.path.join(self.root, f"{safe_name(owner)}.json")

    def transcript_path(self, owner: str, session_id: str) -> str:
        return os.path.join(
            self.root, "sessions", safe_name(owner), f"{safe_name(session_id)}.json"
        )

    @property
    def snapshot_path(self) -> str:
        return os.path.join(self.root, SNAPSHOT_FILE)

    def _owner_lock(self, owner: str) -> Lock:
        with self._locks_guard:
            lock = self._locks.get(owner)
            if lock is None:
                lock = Lock()
                self._locks[owner] = lock
            return lock

    # ------------------------------------------------------------------
    # Index
    # ------------------------------------------------------------------

    def _read(self, owner: str) -> list[HistoryEntry]:
        cached = self._cache.get(owner)
        if cached is not None:
            return list(cached)
        path = self.index_path(owner)
        entries: list[HistoryEntry] = []
        if os.path.exists(path):
            try:
                with open(path, encoding="utf-8") as handle:
                    entries = _ENTRIES.validate_python(json.load(handle))
            except (OSError, json.JSONDecodeError, ValidationError) as exc:
                logger.warning("Unreadable history index", owner=owner, path=path, error=str(exc))
                entries = []
        self._cache[owner] = entries
        return list(entries)

    def _write(self, owner: str, entries: list[HistoryEntry]) -> None:
        entries = entries[-self.limit :] if self.limit > 0 else entries
        self._cache[owner] = entries
        payload = json.dumps(_ENTRIES.dump_python(entries, mode="json"), indent=2)
        try:
            _write_json_atomic(self.index_path(owner), payload)
        except OSError as exc:
            logger.warning("Failed to write history index", owner=owner, error=str(exc))

    def list(self, owner: str) -> list[HistoryEntry]:
        """Entries for ``owner``, oldest first, with missing titles filled in."""
        with self._owner_lock(owner):
            entries = self._read(owner)
        result = []
        for entry in entries:
            if not entry.title and entry.has_transcript:
                title = self._title_from_transcript(owner, entry)
                if title:
                    entry = entry.model_copy(update={"title": title})
            result.append(entry)
        return result

    def get(self, owner: str, session_id: str) -> HistoryEntry | None:
        with self._owner_lock(owner):
            for entry in self._read(owner):
                if entry.session_id == session_id:
                    return entry
        return None

    def upsert(self, owner: str, entry: HistoryEntry) -> HistoryEntry:
        """Insert ``entry`` or merge it into the existing one with its id."""
        with self._owner_lock(owner):
            entries = self._read(owner)
            for i, existing in enumerate(entries):
                if existing.session_id == entry.session_id:
                    merged = existing.merged_with(entry)
                    entries[i] = merged
                    break
            else:
                merged = entry
                entries.append(entry)
            self._write(owner, entries)
        return merged

    def rename(self, owner: str, session_id: str, title: str) -> bool:
        with self._owner_lock(owner):
            entries = self._read(owner)
            for i, existing in enumerate(entries):
                if existing.session_id == session_id:
                    entries[i] = existing.model_copy(update={"title": title})
                    self._write(owner, entries)
                    return True
        return False

    def delete(self, owner: str, session_id: str) -> bool:
        """Remove the entry and its transcript. Returns True if anything went."""
        removed = False
        with self._owner_lock(owner):
            entries = self._read(owner)
            remaining = [e for e in entries if e.session_id != session_id]
            if len(remaining) != len(entries):
                self._write(owner, remaining)
                removed = True
        path = self.transcript_path(owner, session_id)
        if os.path.exists(path):
            try:
                os.unlink(path)
                removed = True
            except OSError as exc:
                logger.warning("Failed to delete transcript", owner=owner, session_id=session_id, error=str(exc))
        return removed

    # ------------------------------------------------------------------
    # Transcripts
    # ------------------------------------------------------------------

    def save_transcript(self, owner: str, transcript: Transcript) -> None:
        if transcript.mode == SessionMode.TERMINAL:
            return
        path = self.transcript_path(owner, transcript.session_id)
        try:
            _write_json_atomic(path, transcript.model_dump_json(indent=2))
        except OSError as exc:
            logger.warning(
                "Failed to write transcript",
                owner=owner,
                session_id=transcript.session_id,
                error=str(exc),
            )

    def load_transcript(self, owner: str, session_id: str) -> Transcript | None:
        path = self.transcript_path(owner, session_id)
        if not os.path.exists(path):
            return None
        try:
            with open(path, encoding="utf-8") as handle:
                transcript = Transcript.model_validate_json(handle.read())
        except (OSError, ValidationError) as exc:
            logger.warning("Unreadable transcript", owner=owner, session_id=session_id, error=str(exc))
            return None
        if transcript.mode == SessionMode.TERMINAL:
            return None
        return transcript

    def _title_from_transcript(self, owner: str, entry: HistoryEntry) -> str | None:
        transcript = self.load_transcript(owner, entry.session_id)
        if transcript is None:
            return None
        first: ChatMessage | None = next(
            (m for m in transcript.messages if m.role == "user" and m.content), None
        )
        if first is None:
            return None
        return derive_title(first.content, entry.variant)

    # ------------------------------------------------------------------
    # Live snapshot and crash recovery
    # ------------------------------------------------------------------

    def write_snapshot(self, records: list[LiveSessionRecord]) -> None:
        """Rewrite the snapshot of live sessions (removed when empty)."""
        with self._snapshot_lock:
            try:
                if not records:
                    if os.path.exists(self.snapshot_path):
                        os.unlink(self.snapshot_path)
                    return
                payload = json.dumps(_RECORDS.dump_python(records, mode="json"), indent=2)
                _write_json_atomic(self.snapshot_path, payload)
            except OSError as exc:
                logger.warning("Failed to write live session snapshot", error=str(exc))

    def read_snapshot(self) -> list[LiveSessionRecord]:
        path = self.snapshot_path
        if not os.path.exists(path):
            return []
        try:
            with open(path, encoding="utf-8") as handle:
                return _RECORDS.validate_python(json.load(handle))
        except (OSError, json.JSONDecodeError, ValidationError) as exc:
            logger.warning("Unreadable live session snapshot", path=path, error=str(exc))
            return []

    def recover(self) -> list[HistoryEntry]:
        """Close out sessions that were live when the process last died.

        Each snapshot record becomes a history entry ended by restart, merged
        into its owner's index; the snapshot file is deleted afterwards.
        """
        records = self.read_snapshot()
        recovered: list[HistoryEntry] = []
        now = time.time()
        for record in records:
            entry = HistoryEntry(
                session_id=record.session_id,
                program=record.program,
                variant=record.variant,
                mode=record.mode,
                created_at=record.created_at,
                ended_at=now,
                title=record.title,
                files_count=record.files_count,
                has_transcript=record.mode != SessionMode.TERMINAL,
                ended_reason=EndedReason.RESTART,
            )
            recovered.append(self.upsert(record.owner, entry))
        with self._snapshot_lock:
            try:
                if os.path.exists(self.snapshot_path):
                    os.unlink(self.snapshot_path)
            except OSError as exc:
                logger.warning("Failed to remove live session snapshot", error=str(exc))
        if recovered:
            logger.warning("Recovered sessions interrupted by restart", count=len(recovered))
        return recovered

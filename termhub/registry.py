"""Session registry: creation, fan-out, input routing and teardown."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable

import structlog

from termhub.delivery import CHAT_TERMINATOR, InputDelivery
from termhub.environment import EnvironmentResolver, default_resolver
from termhub.errors import ProcessSpawnError, SessionNotFoundError
from termhub.history import HistoryStore
from termhub.maintenance import IdleReaper
from termhub.models import (
    EndedReason,
    HistoryEntry,
    ProgramDescriptor,
    SessionFile,
    SessionMode,
    SessionSummary,
    Transcript,
)
from termhub.programs import ProgramCatalog, build_start_command
from termhub.readiness import ReadinessDetector, probe_for
from termhub.session import CloseCallback, Session, Subscriber, Subscription
from termhub.settings import settings
from termhub.terminal import SpawnRequest, Spawner, spawn_pty
from termhub.transcript import TranscriptBuilder, derive_title

logger = structlog.get_logger(__name__)


class SessionRegistry:
    """Owns every live session and the history store behind them.

    All methods must be called from the event loop thread. Process output
    and exits arrive through loop callbacks, so no locking is needed for
    the in-memory indices.
    """

    def __init__(
        self,
        catalog: ProgramCatalog | None = None,
        history: HistoryStore | None = None,
        *,
        spawner: Spawner = spawn_pty,
        env_resolver: EnvironmentResolver | None = None,
        idle_timeout_seconds: float | None = None,
        reap_interval_seconds: float | None = None,
        start_delay_seconds: float | None = None,
        home: str | None = None,
        shell: str | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.catalog = catalog or ProgramCatalog.default()
        self.history = history or HistoryStore(settings.history_dir(), settings.history_limit())
        self.home = home or settings.home_dir()
        self.shell = shell or settings.shell()
        self.start_delay_seconds = (
            settings.start_delay_seconds() if start_delay_seconds is None else start_delay_seconds
        )
        self._spawner = spawner
        self._env_resolver = env_resolver or default_resolver(self.home)
        self.clock = clock
        self._sessions: dict[str, Session] = {}
        self._by_owner: dict[str, list[str]] = {}
        # Last millisecond stamp issued per owner-program prefix.
        self._last_stamps: dict[str, int] = {}
        self.reaper = IdleReaper(
            self,
            settings.idle_timeout_seconds() if idle_timeout_seconds is None else idle_timeout_seconds,
            settings.reap_interval_seconds() if reap_interval_seconds is None else reap_interval_seconds,
        )

    # ------------------------------------------------------------------
    # Service lifecycle
    # ------------------------------------------------------------------

    def start(self) -> list[HistoryEntry]:
        """Recover sessions interrupted by a crash and start the reaper."""
        recovered = self.history.recover()
        self.reaper.start()
        return recovered

    def close(self) -> None:
        self.destroy_all()

    # ------------------------------------------------------------------
    # Catalog
    # ------------------------------------------------------------------

    def list_programs(self) -> list[ProgramDescriptor]:
        return self.catalog.descriptors()

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def _new_session_id(self, owner: str, program: str, now: float) -> str:
        prefix = f"{owner}-{program}"
        stamp = int(now * 1000)
        last = self._last_stamps.get(prefix)
        if last is not None and stamp <= last:
            stamp = last + 1
        self._last_stamps[prefix] = stamp
        return f"{prefix}-{stamp}"

    def create_session(
        self,
        owner: str,
        program: str,
        variant: str | None = None,
        mode: SessionMode | str | None = None,
        on_output: Subscriber | None = None,
        on_exit: Callable[[int | None], None] | None = None,
    ) -> str:
        """Spawn a shell for ``owner`` and schedule the program's start command.

        Returns the new session id before the program is ready; input sent
        in the meantime is queued.

        Raises:
            ConfigurationError: Unknown program or variant (nothing spawned).
            ProcessSpawnError: The pseudo-terminal process could not start.
        """
        spec = self.catalog.get(program)
        variant_id = self.catalog.resolve_variant(spec, variant)
        session_mode = SessionMode.parse(mode)
        loop = asyncio.get_running_loop()
        now = self.clock()
        session = Session(
            id=self._new_session_id(owner, program, now),
            owner=owner,
            program=program,
            variant=variant_id,
            mode=session_mode,
            created_at=now,
            title=f"{program} / {variant_id}",
            transcript=TranscriptBuilder(),
            on_output=on_output,
            on_exit=on_exit,
        )
        session.readiness = ReadinessDetector(
            probe_for(spec),
            lambda trigger: self._on_ready(session),
            session_id=session.id,
        )
        session.delivery = InputDelivery(
            lambda data: self._write(session, data),
            lambda: self._is_alive(session),
            chunk_size=spec.paste_chunk_size,
            chunk_delay=spec.paste_chunk_delay_seconds,
            session_id=session.id,
        )

        request = SpawnRequest(
            argv=[self.shell],
            cwd=spec.working_directory or self.home,
            env=self._env_resolver(),
        )
        try:
            session.process = self._spawner(
                request,
                lambda text: self._handle_output(session, text),
                lambda code: self._handle_exit(session, code),
            )
        except ProcessSpawnError:
            logger.exception("Failed to spawn session", owner=owner, program=program)
            raise

        self._sessions[session.id] = session
        self._by_owner.setdefault(owner, []).append(session.id)

        command = build_start_command(spec, variant_id)
        session.start_timer = loop.call_later(
            self.start_delay_seconds,
            self._send_start_command,
            session,
            command,
            spec.ready_timeout_seconds,
        )

        self.history.upsert(owner, session.history_entry())
        self._write_snapshot()
        logger.info(
            "Created session",
            session_id=session.id,
            owner=owner,
            program=program,
            variant=variant_id,
            mode=session_mode.value,
            pid=getattr(session.process, "pid", None),
        )
        return session.id

    def _send_start_command(self, session: Session, command: str, ready_timeout: float) -> None:
        session.start_timer = None
        if not self._is_alive(session):
            return
        assert session.readiness is not None
        session.readiness.begin(ready_timeout)
        logger.debug("Sending start command", session_id=session.id, command=command)
        self._write(session, command + CHAT_TERMINATOR)

    def _on_ready(self, session: Session) -> None:
        session.touch(self.clock())
        if session.delivery is not None:
            session.delivery.open()

    # ------------------------------------------------------------------
    # Process plumbing
    # ------------------------------------------------------------------

    def _is_alive(self, session: Session) -> bool:
        return (
            session.id in self._sessions
            and session.process is not None
            and session.process.alive
        )

    def _write(self, session: Session, data: str | bytes) -> None:
        if session.process is not None:
            session.process.write(data)

    def _handle_output(self, session: Session, text: str) -> None:
        if session.id not in self._sessions:
            return
        session.touch(self.clock())
        if session.readiness is not None:
            session.readiness.feed(text)
        session.raw_tail.append(text)
        if session.mode == SessionMode.TERMINAL:
            session.replay_sanitizer.feed(text, sink=session.replay_tail)
        else:
            session.transcript.add_output(text, self.clock())
        for subscription in list(session.subscribers):
            try:
                subscription.callback(text)
            except Exception:
                logger.exception("Subscriber failed", session_id=session.id)
        if session.on_output is not None:
            try:
                session.on_output(text)
            except Exception:
                logger.exception("Session output callback failed", session_id=session.id)

    def _handle_exit(self, session: Session, code: int | None) -> None:
        session.exit_code = code
        if session.id not in self._sessions:
            return
        logger.info("Session process exited", session_id=session.id, exit_code=code)
        self._teardown(session, EndedReason.EXITED)
        if session.on_exit is not None:
            try:
                session.on_exit(code)
            except Exception:
                logger.exception("Session exit callback failed", session_id=session.id)

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def _teardown(self, session: Session, reason: EndedReason, *, kill: bool = False) -> None:
        if session.start_timer is not None:
            session.start_timer.cancel()
            session.start_timer = None
        if session.delivery is not None:
            session.delivery.cancel()
        if session.readiness is not None:
            session.readiness.exit()
        if kill and session.process is not None:
            try:
                session.process.kill()
            except Exception:
                logger.exception("Failed to kill session process", session_id=session.id)
        self._persist(session, reason)
        self._unregister(session)
        self._write_snapshot()

        subscriptions = list(session.subscribers)
        session.subscribers.clear()
        for subscription in subscriptions:
            if subscription.on_close is None:
                continue
            try:
                subscription.on_close(reason.value)
            except Exception:
                logger.exception("Subscriber close callback failed", session_id=session.id)

    def _persist(self, session: Session, reason: EndedReason) -> None:
        if session.history_saved:
            return
        session.history_saved = True
        ended_at = self.clock()
        self.history.upsert(
            session.owner, session.history_entry(ended_at=ended_at, ended_reason=reason)
        )
        if session.has_transcript:
            self.history.save_transcript(session.owner, session.transcript_record(ended_at))

    def _unregister(self, session: Session) -> None:
        self._sessions.pop(session.id, None)
        owned = self._by_owner.get(session.owner)
        if owned is None:
            return
        if session.id in owned:
            owned.remove(session.id)
        if not owned:
            del self._by_owner[session.owner]

    def _write_snapshot(self) -> None:
        self.history.write_snapshot([s.live_record() for s in self._sessions.values()])

    def destroy_session(self, session_id: str, reason: EndedReason = EndedReason.STOPPED) -> bool:
        """Stop a session. Unknown or already destroyed ids are a no-op.

        Returns True if a live session was destroyed.
        """
        session = self._sessions.get(session_id)
        if session is None:
            return False
        logger.info("Destroying session", session_id=session_id, reason=reason.value)
        self._teardown(session, reason, kill=True)
        return True

    def destroy_owner_sessions(self, owner: str) -> list[str]:
        ids = list(self._by_owner.get(owner, []))
        for session_id in ids:
            self.destroy_session(session_id, EndedReason.LOGOUT)
        return ids

    def destroy_all(self) -> list[str]:
        self.reaper.stop()
        ids = list(self._sessions)
        for session_id in ids:
            self.destroy_session(session_id, EndedReason.SHUTDOWN)
        if ids:
            logger.info("Destroyed all sessions", count=len(ids))
        return ids

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def get_session(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def require_session(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def sessions(self) -> list[Session]:
        return list(self._sessions.values())

    def get_active_session(self, owner: str) -> str | None:
        """Id of the owner's most recently created live session."""
        owned = self._by_owner.get(owner)
        return owned[-1] if owned else None

    def list_active_sessions(self, owner: str) -> list[SessionSummary]:
        return [self._sessions[sid].summary() for sid in self._by_owner.get(owner, [])]

    # ------------------------------------------------------------------
    # Input
    # ------------------------------------------------------------------

    def send_input(self, session_id: str, data: str | bytes) -> None:
        session = self.require_session(session_id)
        session.touch(self.clock())
        assert session.delivery is not None
        session.delivery.submit(data)

    def send_chat_input(self, session_id: str, text: str) -> None:
        """Submit a chat line, typed in chunks for programs that need pacing."""
        session = self.require_session(session_id)
        session.touch(self.clock())
        assert session.delivery is not None
        session.delivery.submit(text + CHAT_TERMINATOR, paced=True)

    def record_user_message(self, session_id: str, text: str) -> None:
        session = self.require_session(session_id)
        session.touch(self.clock())
        first = session.transcript.add_user_message(text, self.clock())
        if first:
            session.title = derive_title(text, session.variant)
            self.history.upsert(session.owner, session.history_entry())
            self._write_snapshot()

    def resize(self, session_id: str, cols: int, rows: int) -> None:
        session = self.require_session(session_id)
        session.touch(self.clock())
        if session.process is not None:
            session.process.resize(cols, rows)

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    def add_file(self, session_id: str, path: str, name: str) -> SessionFile:
        session = self.require_session(session_id)
        now = self.clock()
        session.touch(now)
        attached = SessionFile(path=path, name=name, added_at=now)
        session.files.append(attached)
        self.history.upsert(session.owner, session.history_entry())
        self._write_snapshot()
        return attached

    def list_session_files(self, session_id: str) -> list[SessionFile]:
        return list(self.require_session(session_id).files)

    # ------------------------------------------------------------------
    # Viewers
    # ------------------------------------------------------------------

    def subscribe(
        self,
        session_id: str,
        callback: Subscriber,
        on_close: CloseCallback | None = None,
    ) -> None:
        """Attach a viewer; ``on_close`` receives the ended reason."""
        session = self.require_session(session_id)
        session.touch(self.clock())
        session.subscribers.append(Subscription(callback, on_close))

    def unsubscribe(self, session_id: str, callback: Subscriber) -> None:
        session = self._sessions.get(session_id)
        if session is None:
            return
        session.subscribers[:] = [s for s in session.subscribers if s.callback != callback]

    def replay(self, session_id: str) -> str:
        """Sanitized scrollback for a reconnecting terminal viewer."""
        session = self.require_session(session_id)
        if session.mode != SessionMode.TERMINAL:
            return ""
        return session.replay_tail.text()

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def _owned_live(self, owner: str, session_id: str) -> Session | None:
        session = self._sessions.get(session_id)
        if session is None or session.owner != owner:
            return None
        return session

    def list_history(self, owner: str) -> list[HistoryEntry]:
        """Durable entries in creation order, live state taking precedence."""
        live = {sid: self._sessions[sid] for sid in self._by_owner.get(owner, [])}
        entries: list[HistoryEntry] = []
        for entry in self.history.list(owner):
            session = live.pop(entry.session_id, None)
            entries.append(entry.merged_with(session.history_entry()) if session else entry)
        entries.extend(session.history_entry() for session in live.values())
        return entries

    def get_transcript(self, owner: str, session_id: str) -> Transcript | None:
        session = self._owned_live(owner, session_id)
        if session is not None:
            return session.transcript_record() if session.has_transcript else None
        return self.history.load_transcript(owner, session_id)

    def rename_history(self, owner: str, session_id: str, title: str) -> bool:
        """Retitle a session.

        Raises:
            ValueError: If ``title`` is blank.
        """
        title = title.strip()
        if not title:
            raise ValueError("title must not be blank")
        session = self._owned_live(owner, session_id)
        if session is not None:
            session.title = title
            session.touch(self.clock())
            self._write_snapshot()
        renamed = self.history.rename(owner, session_id, title)
        return renamed or session is not None

    def delete_history(self, owner: str, session_id: str) -> bool:
        return self.history.delete(owner, session_id)

"""Durable JSON session storage.

Each session is written to ``<id>.json`` with a small ``<id>.meta.json``
sidecar for listings. Writes go to a temp file in the same directory, are
fsynced and then renamed over the target, so an interrupted save leaves the
previous file intact.
"""

import asyncio
import json
import os
import tempfile
import threading
from functools import partial
from pathlib import Path

from pydantic import ValidationError as PydanticValidationError

from deckhand.config import get_config
from deckhand.exceptions import PersistenceError, SessionNotFoundError
from deckhand.logging import get_logger
from deckhand.session import Session, SessionSummary

log = get_logger(__name__)

_META_SUFFIX = ".meta.json"


def _fsync_dir(dir_path: Path) -> None:
    """Best-effort directory fsync to persist rename metadata."""
    try:
        flags = os.O_RDONLY
        if hasattr(os, "O_DIRECTORY"):
            flags |= os.O_DIRECTORY
        fd = os.open(str(dir_path), flags)
        try:
            os.fsync(fd)
        finally:
            os.close(fd)
    except OSError:
        # Not every filesystem supports directory fsync
        pass


def atomic_write_text(path: Path, content: str, *, encoding: str = "utf-8") -> None:
    """Write *content* to a temp file beside *path*, fsync it and rename it into place."""
    path.parent.mkdir(parents=True, exist_ok=True)

    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding=encoding) as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())

        os.replace(tmp_path, path)
        _fsync_dir(path.parent)
    finally:
        if tmp_path.exists():
            try:
                tmp_path.unlink()
            except OSError:
                pass


class SessionStore:
    """Loads, saves and lists sessions under one directory."""

    def __init__(self, path: Path | str | None = None):
        """Initialize session store.

        Args:
            path: Optional directory override
        """
        if path is None:
            config = get_config()
            self.path = Path(config.session.path).expanduser()
        else:
            self.path = Path(path).expanduser()

    def _session_path(self, session_id: str) -> Path:
        cleaned = str(session_id or "").strip()
        if not cleaned or "/" in cleaned or "\\" in cleaned or cleaned.startswith("."):
            raise SessionNotFoundError(session_id)
        return self.path / f"{cleaned}.json"

    def _meta_path(self, session_id: str) -> Path:
        return self.path / f"{session_id}{_META_SUFFIX}"

    async def _run(self, func, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, partial(func, *args))

    async def _run_detached(self, func, *args):
        """Run *func* on a daemon thread that interpreter or loop shutdown never joins.

        A caller that stops waiting (``asyncio.wait_for`` at shutdown) leaves the
        write to finish or die with the process; the atomic rename keeps the
        previous file intact either way.
        """
        loop = asyncio.get_running_loop()
        future = loop.create_future()

        def _settle(result, error) -> None:
            if future.done():
                return
            if error is not None:
                future.set_exception(error)
            else:
                future.set_result(result)

        def _target() -> None:
            try:
                outcome = (func(*args), None)
            except Exception as e:
                outcome = (None, e)
            try:
                loop.call_soon_threadsafe(_settle, *outcome)
            except RuntimeError:
                # The loop closed while the write was still running
                log.debug("Detached store call finished after loop shutdown", func=func.__name__)

        threading.Thread(target=_target, name="deckhand-session-save", daemon=True).start()
        return await future

    def _save_sync(self, session: Session) -> None:
        payload = session.model_dump_json(indent=2)
        meta = SessionSummary.of(session).model_dump_json(indent=2)
        atomic_write_text(self._session_path(session.id), payload)
        atomic_write_text(self._meta_path(session.id), meta)

    async def save(self, session: Session) -> None:
        """Persist *session*. The caller passes a snapshot it will not mutate.

        Raises:
            PersistenceError: When the session cannot be written
        """
        try:
            await self._run_detached(self._save_sync, session)
        except OSError as e:
            log.error("Session save failed", session_id=session.id, error=str(e))
            raise PersistenceError(session.id, str(e)) from e
        log.debug("Session saved", session_id=session.id, turns=len(session.turns))

    def _load_sync(self, session_id: str) -> Session:
        path = self._session_path(session_id)
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError as e:
            raise SessionNotFoundError(session_id) from e
        except OSError as e:
            raise PersistenceError(session_id, str(e)) from e
        try:
            return Session.model_validate_json(raw)
        except PydanticValidationError as e:
            raise PersistenceError(session_id, f"corrupt session file: {e}") from e

    async def load(self, session_id: str) -> Session:
        """Load a session by id.

        Raises:
            SessionNotFoundError: No session with that id exists
            PersistenceError: The file exists but cannot be read or parsed
        """
        session = await self._run(self._load_sync, session_id)
        log.debug("Session loaded", session_id=session.id, turns=len(session.turns))
        return session

    def _list_sync(self) -> list[SessionSummary]:
        if not self.path.is_dir():
            return []

        summaries: dict[str, SessionSummary] = {}
        for meta_path in self.path.glob(f"*{_META_SUFFIX}"):
            try:
                summary = SessionSummary.model_validate_json(meta_path.read_text(encoding="utf-8"))
            except (OSError, PydanticValidationError) as e:
                log.warning("Skipping unreadable session metadata", path=str(meta_path), error=str(e))
                continue
            summaries[summary.id] = summary

        for session_path in self.path.glob("*.json"):
            if session_path.name.endswith(_META_SUFFIX):
                continue
            session_id = session_path.name[: -len(".json")]
            if session_id in summaries:
                continue
            try:
                session = self._load_sync(session_id)
            except (SessionNotFoundError, PersistenceError) as e:
                log.warning("Skipping unreadable session", path=str(session_path), error=str(e))
                continue
            summaries[session.id] = SessionSummary.of(session)

        return sorted(summaries.values(), key=lambda item: item.updated_at, reverse=True)

    async def list_sessions(self, limit: int | None = None) -> list[SessionSummary]:
        """List stored sessions, most recently updated first."""
        summaries = await self._run(self._list_sync)
        if limit is not None:
            return summaries[:limit]
        return summaries

    async def latest(self) -> Session | None:
        """Load the most recently updated session, if any."""
        summaries = await self.list_sessions(limit=1)
        if not summaries:
            return None
        return await self.load(summaries[0].id)

    def _delete_sync(self, session_id: str) -> bool:
        removed = False
        for path in (self._session_path(session_id), self._meta_path(session_id)):
            try:
                path.unlink()
                removed = True
            except FileNotFoundError:
                continue
        if removed:
            _fsync_dir(self.path)
        return removed

    async def delete(self, session_id: str) -> bool:
        """Delete a session. Returns False when nothing was stored."""
        try:
            return await self._run(self._delete_sync, session_id)
        except OSError as e:
            raise PersistenceError(session_id, str(e)) from e

"""
Session Store — one mutable conversation record per (tenant, user).

In-memory only: a process restart clears every session, and entries are
never expired. The keyspace is split into shards by a stable hash of the
key, each guarded by its own lock, so lookups for unrelated conversations
rarely contend. Every lock is held only for the dict operation itself,
never across I/O.

`get` hands out a copy and `set` replaces the whole record, so callers
read-modify-write. Two near-simultaneous events for the *same* user can
still interleave their read-modify-write and the later `set` wins; nothing
here orders events within one conversation.
"""
from __future__ import annotations

import hashlib
import threading
import structlog
from typing import NamedTuple, Optional

from models.schemas import Session

logger = structlog.get_logger()


class SessionKey(NamedTuple):
    tenant: str
    user: str

    def __str__(self) -> str:
        return f"{self.tenant}:{self.user}"


def _shard_index(key: SessionKey, shards: int) -> int:
    # hash() is salted per process; md5 keeps the placement stable
    digest = hashlib.md5(str(key).encode("utf-8")).digest()
    return int.from_bytes(digest[:4], "big") % shards


class _Shard:
    __slots__ = ("lock", "sessions")

    def __init__(self):
        self.lock = threading.Lock()
        self.sessions: dict[SessionKey, Session] = {}


class SessionStore:

    def __init__(self, shards: int = 16):
        if shards < 1:
            raise ValueError("shards must be >= 1")
        self._shards = [_Shard() for _ in range(shards)]

    def _shard(self, key: SessionKey) -> _Shard:
        return self._shards[_shard_index(key, len(self._shards))]

    def get(self, key: SessionKey) -> tuple[Optional[Session], bool]:
        """Return (copy of the session, found)."""
        shard = self._shard(key)
        with shard.lock:
            session = shard.sessions.get(key)
        if session is None:
            return None, False
        return session.model_copy(deep=True), True

    def set(self, key: SessionKey, session: Session) -> None:
        """Replace the whole record for `key`."""
        stored = session.model_copy(deep=True)
        shard = self._shard(key)
        with shard.lock:
            shard.sessions[key] = stored

    def get_or_create(self, key: SessionKey, initial_state: str) -> tuple[Session, bool]:
        """
        Return (session, created). A new session starts at `initial_state`
        with empty data and is stored immediately.
        """
        session, found = self.get(key)
        if found and session.state:
            return session, False
        session = Session(state=initial_state)
        self.set(key, session)
        logger.info("session_created", key=str(key), state=initial_state)
        return session, True

    @property
    def count(self) -> int:
        total = 0
        for shard in self._shards:
            with shard.lock:
                total += len(shard.sessions)
        return total

# avatar_studio/sessions.py
"""
Session stores: token -> UploadSession.

The ingest gate and the auth routes only see the SessionStore interface, so
tests run against InMemorySessionStore while a deployment can point at
Postgres. Sessions are independent; the only atomicity needed is per token,
for the read-modify-write that rebinds the avatar.
"""

import threading
import time
from typing import Dict, Optional, Protocol

import psycopg2
from psycopg2.extras import RealDictCursor

from avatar_studio.logger import console
from avatar_studio.metrics import SESSIONS_ACTIVE
from avatar_studio.models import UploadSession


def now_millis() -> int:
    return int(time.time() * 1000)


class SessionStore(Protocol):
    def get(self, token: str) -> Optional[UploadSession]:
        ...

    def set(self, token: str, session: UploadSession) -> None:
        ...

    def delete(self, token: str) -> bool:
        ...

    def update_avatar(self, token: str, avatar_path: str) -> Optional[UploadSession]:
        """Atomically rebind the avatar; None if the token vanished meanwhile."""
        ...


class InMemorySessionStore:
    """Process-local store guarded by one lock (sessions are small)."""

    def __init__(self):
        self._sessions: Dict[str, UploadSession] = {}
        self._lock = threading.Lock()

    def get(self, token: str) -> Optional[UploadSession]:
        with self._lock:
            session = self._sessions.get(token)
            return session.model_copy() if session is not None else None

    def set(self, token: str, session: UploadSession) -> None:
        with self._lock:
            self._sessions[token] = session.model_copy()
            SESSIONS_ACTIVE.set(len(self._sessions))

    def delete(self, token: str) -> bool:
        with self._lock:
            removed = self._sessions.pop(token, None) is not None
            SESSIONS_ACTIVE.set(len(self._sessions))
            return removed

    def update_avatar(self, token: str, avatar_path: str) -> Optional[UploadSession]:
        with self._lock:
            session = self._sessions.get(token)
            if session is None:
                return None
            updated = session.model_copy(update={"avatar_path": avatar_path})
            self._sessions[token] = updated
            return updated.model_copy()

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)


class PostgresSessionStore:
    """
    Postgres backed session store.

    Responsibilities:
    - Manage a single Postgres connection (reconnect when closed)
    - Create the avatar_sessions table if needed
    - Do the avatar rebind as one UPDATE ... RETURNING statement
    """

    def __init__(self, host: str, port: int, dbname: str, user: str, password: str):
        self._params = dict(host=host, port=port, dbname=dbname, user=user, password=password)
        self._conn = None
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings) -> "PostgresSessionStore":
        return cls(
            host=settings.db_host,
            port=settings.db_port,
            dbname=settings.db_name,
            user=settings.db_user,
            password=settings.db_password,
        )

    def _get_connection(self):
        if self._conn is not None and not self._conn.closed:
            return self._conn

        self._conn = psycopg2.connect(**self._params)
        self._conn.autocommit = True
        self._init_table(self._conn)
        console.log("[green]Postgres session store connected[/green]")
        return self._conn

    def _init_table(self, conn) -> None:
        with conn.cursor() as cur:
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS avatar_sessions (
                    token TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    username TEXT NOT NULL,
                    avatar_path TEXT NOT NULL,
                    created_at BIGINT NOT NULL
                );
                """
            )

    @staticmethod
    def _row_to_session(row) -> Optional[UploadSession]:
        if not row:
            return None
        return UploadSession(
            user_id=row["user_id"],
            username=row["username"],
            avatar_path=row["avatar_path"],
            created_at=row["created_at"],
        )

    def get(self, token: str) -> Optional[UploadSession]:
        with self._lock:
            conn = self._get_connection()
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(
                    "SELECT user_id, username, avatar_path, created_at "
                    "FROM avatar_sessions WHERE token = %s",
                    (token,),
                )
                return self._row_to_session(cur.fetchone())

    def set(self, token: str, session: UploadSession) -> None:
        with self._lock:
            conn = self._get_connection()
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(
                    """
                    INSERT INTO avatar_sessions (token, user_id, username, avatar_path, created_at)
                    VALUES (%s, %s, %s, %s, %s)
                    ON CONFLICT (token) DO UPDATE
                    SET user_id = EXCLUDED.user_id,
                        username = EXCLUDED.username,
                        avatar_path = EXCLUDED.avatar_path,
                        created_at = EXCLUDED.created_at
                    RETURNING (xmax = 0) AS inserted
                    """,
                    (token, session.user_id, session.username, session.avatar_path, session.created_at),
                )
                row = cur.fetchone()
            # xmax is 0 only for a freshly inserted row, not an upsert update
            if row and row["inserted"]:
                SESSIONS_ACTIVE.inc()

    def delete(self, token: str) -> bool:
        with self._lock:
            conn = self._get_connection()
            with conn.cursor() as cur:
                cur.execute("DELETE FROM avatar_sessions WHERE token = %s", (token,))
                removed = cur.rowcount > 0
            if removed:
                SESSIONS_ACTIVE.dec()
            return removed

    def update_avatar(self, token: str, avatar_path: str) -> Optional[UploadSession]:
        with self._lock:
            conn = self._get_connection()
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(
                    """
                    UPDATE avatar_sessions SET avatar_path = %s
                    WHERE token = %s
                    RETURNING user_id, username, avatar_path, created_at
                    """,
                    (avatar_path, token),
                )
                return self._row_to_session(cur.fetchone())

    def close(self) -> None:
        with self._lock:
            if self._conn is not None and not self._conn.closed:
                self._conn.close()
            self._conn = None


def build_session_store(settings) -> SessionStore:
    if settings.session_backend == "postgres":
        return PostgresSessionStore.from_settings(settings)
    if settings.session_backend != "memory":
        raise ValueError(f"unknown session_backend {settings.session_backend!r}")
    return InMemorySessionStore()

import json
import logging
import secrets
import sqlite3
import time
from typing import Any, Dict, Optional

from flask.sessions import SessionInterface, SessionMixin
from itsdangerous import BadSignature, Signer
from werkzeug.datastructures import CallbackDict

from .errors import StorageError
from .storage import Database

logger = logging.getLogger("hermes.sessions")

SESSION_TOKEN_BYTES = 32


class SessionStore:
    """Server-side session data keyed by an opaque token."""

    def __init__(self, db: Database) -> None:
        self.db = db

    @staticmethod
    def new_token() -> str:
        return secrets.token_urlsafe(SESSION_TOKEN_BYTES)

    def load(self, token: str) -> Optional[Dict[str, Any]]:
        """Return the data stored under *token*, or ``None`` if absent or expired."""

        try:
            with self.db.transaction() as conn:
                row = conn.execute(
                    "SELECT data, expires_at FROM sessions WHERE token = ?", (token,)
                ).fetchone()
                if row is None:
                    return None
                if row["expires_at"] < time.time():
                    conn.execute("DELETE FROM sessions WHERE token = ?", (token,))
                    return None
        except sqlite3.Error as error:
            raise StorageError("load session", error) from error

        try:
            data = json.loads(row["data"])
        except (json.JSONDecodeError, TypeError):
            logger.warning("session_data_unreadable")
            return None
        return data if isinstance(data, dict) else None

    def save(self, token: str, data: Dict[str, Any], expires_at: float) -> None:
        try:
            with self.db.transaction() as conn:
                conn.execute(
                    """
                    INSERT INTO sessions (token, data, expires_at) VALUES (?, ?, ?)
                    ON CONFLICT(token) DO UPDATE SET data = excluded.data,
                        expires_at = excluded.expires_at
                    """,
                    (token, json.dumps(data), expires_at),
                )
        except sqlite3.Error as error:
            raise StorageError("save session", error) from error

    def delete(self, token: str) -> None:
        try:
            with self.db.transaction() as conn:
                conn.execute("DELETE FROM sessions WHERE token = ?", (token,))
        except sqlite3.Error as error:
            raise StorageError("destroy session", error) from error

    def purge_expired(self) -> int:
        try:
            with self.db.transaction() as conn:
                cursor = conn.execute(
                    "DELETE FROM sessions WHERE expires_at < ?", (time.time(),)
                )
                removed = cursor.rowcount
        except sqlite3.Error as error:
            logger.error("session_purge_failed error=%s", error)
            raise StorageError("purge expired sessions", error) from error
        if removed:
            logger.info("sessions_purged count=%d", removed)
        return removed


class ServerSideSession(CallbackDict, SessionMixin):
    permanent = True

    def __init__(
        self,
        initial: Optional[Dict[str, Any]] = None,
        token: Optional[str] = None,
        new: bool = False,
    ) -> None:
        def on_update(session: "ServerSideSession") -> None:
            session.modified = True

        super().__init__(initial, on_update)
        self.token = token
        self.new = new
        self.modified = False
        self.destroyed = False
        self.rotate = False

    def destroy(self) -> None:
        """Drop all data and the server-side record at the end of the request."""

        self.clear()
        self.destroyed = True

    def regenerate(self) -> None:
        """Issue a new token on save; used on login against session fixation."""

        self.rotate = True
        self.modified = True


class SqliteSessionInterface(SessionInterface):
    """Flask session interface keeping session data in SQLite.

    The cookie only carries the token, signed with the app secret.
    """

    salt = "hermes-session"

    def __init__(self, store: SessionStore) -> None:
        self.store = store

    def _signer(self, app) -> Optional[Signer]:
        if not app.secret_key:
            return None
        return Signer(app.secret_key, salt=self.salt)

    def open_session(self, app, request) -> ServerSideSession:
        signer = self._signer(app)
        raw_value = request.cookies.get(self.get_cookie_name(app))
        if not raw_value or signer is None:
            return ServerSideSession(new=True)

        try:
            token = signer.unsign(raw_value).decode("utf-8")
        except BadSignature:
            logger.warning("session_cookie_bad_signature")
            return ServerSideSession(new=True)

        data = self.store.load(token)
        if data is None:
            return ServerSideSession(new=True)
        return ServerSideSession(data, token=token)

    def save_session(self, app, session: ServerSideSession, response) -> None:
        name = self.get_cookie_name(app)
        domain = self.get_cookie_domain(app)
        path = self.get_cookie_path(app)

        if session.destroyed or (not session and session.modified):
            if session.token:
                self.store.delete(session.token)
                response.delete_cookie(name, domain=domain, path=path)
            return

        if not self.should_set_cookie(app, session):
            return

        if session.rotate and session.token:
            self.store.delete(session.token)
            session.token = None
        if session.token is None:
            session.token = self.store.new_token()

        signer = self._signer(app)
        if signer is None:
            return
        expires = self.get_expiration_time(app, session)
        self.store.save(session.token, dict(session), expires.timestamp())
        response.vary.add("Cookie")
        response.set_cookie(
            name,
            signer.sign(session.token).decode("utf-8"),
            expires=expires,
            httponly=self.get_cookie_httponly(app),
            domain=domain,
            path=path,
            secure=self.get_cookie_secure(app),
            samesite=self.get_cookie_samesite(app),
        )

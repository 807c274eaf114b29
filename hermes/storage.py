import logging
import mimetypes
import sqlite3
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Generator, List, Optional, Tuple

from .errors import NotFound, StorageError

logger = logging.getLogger("hermes.storage")

LATEST_UPLOADS_LIMIT = 10


class Database:
    """One long-lived SQLite connection shared by every request thread.

    Transactions are serialized with a re-entrant lock so concurrent
    requests never interleave statements on the shared connection.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._lock = threading.RLock()
        self._conn: Optional[sqlite3.Connection] = None

    def _connect(self) -> sqlite3.Connection:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(self.path, timeout=30.0, check_same_thread=False)
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=5000")
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def transaction(self) -> Generator[sqlite3.Connection, None, None]:
        with self._lock:
            if self._conn is None:
                self._conn = self._connect()
            conn = self._conn
            try:
                yield conn
                if conn.in_transaction:
                    conn.commit()
            except Exception:
                if conn.in_transaction:
                    conn.rollback()
                raise

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None


def init_db(db: Database) -> None:
    with db.transaction() as conn:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS uploaded_files (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                title TEXT NOT NULL,
                uploader TEXT NOT NULL DEFAULT '',
                file_path TEXT NOT NULL,
                created_at REAL NOT NULL
            )
            """
        )
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_uploaded_files_created_at "
            "ON uploaded_files(created_at)"
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS users (
                username TEXT PRIMARY KEY,
                salt TEXT NOT NULL,
                hash TEXT NOT NULL
            )
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS sessions (
                token TEXT PRIMARY KEY,
                data TEXT NOT NULL,
                expires_at REAL NOT NULL
            )
            """
        )
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_sessions_expires_at ON sessions(expires_at)"
        )


@dataclass(frozen=True)
class UploadedFile:
    id: int
    title: str
    uploader: str
    file_path: str
    created: datetime

    @property
    def mime_type(self) -> str:
        guessed, _ = mimetypes.guess_type(self.file_path)
        return guessed or ""

    @property
    def type(self) -> str:
        return self.mime_type.split("/", 1)[0]

    @property
    def href(self) -> str:
        if self.type == "text":
            return f"/t/{self.id}"
        return f"/u/{self.id}"

    @property
    def raw_href(self) -> str:
        return f"/dl/{self.id}"

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "UploadedFile":
        return cls(
            id=int(row["id"]),
            title=row["title"],
            uploader=row["uploader"] or "",
            file_path=row["file_path"],
            created=datetime.fromtimestamp(row["created_at"], tz=timezone.utc),
        )


class UploadStore:
    """Maps integer upload ids to upload metadata and a file on disk."""

    def insert(self, title: str, uploader: str, file_path: str) -> int:
        raise NotImplementedError

    def get(self, file_id: int) -> UploadedFile:
        raise NotImplementedError

    def latest(self, limit: int = LATEST_UPLOADS_LIMIT) -> List[UploadedFile]:
        raise NotImplementedError

    def count(self) -> int:
        raise NotImplementedError


class SqliteUploadStore(UploadStore):
    _COLUMNS = "id, title, uploader, file_path, created_at"

    def __init__(self, db: Database) -> None:
        self.db = db

    def insert(self, title: str, uploader: str, file_path: str) -> int:
        """Insert a record and return its id.

        Only call this once the file bytes are on disk.
        """

        created_at = time.time()
        try:
            with self.db.transaction() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO uploaded_files (title, uploader, file_path, created_at)
                    VALUES (?, ?, ?, ?)
                    """,
                    (title, uploader or "", file_path, created_at),
                )
                file_id = int(cursor.lastrowid)
        except sqlite3.Error as error:
            logger.error(
                "upload_insert_failed file_path=%s uploader=%s error=%s",
                file_path,
                uploader,
                error,
            )
            raise StorageError("insert uploaded file", error) from error

        logger.info(
            "upload_registered file_id=%d file_path=%s uploader=%s",
            file_id,
            file_path,
            uploader,
        )
        return file_id

    def get(self, file_id: int) -> UploadedFile:
        try:
            with self.db.transaction() as conn:
                row = conn.execute(
                    f"SELECT {self._COLUMNS} FROM uploaded_files WHERE id = ?",
                    (file_id,),
                ).fetchone()
        except sqlite3.Error as error:
            logger.error("upload_lookup_failed file_id=%s error=%s", file_id, error)
            raise StorageError("get uploaded file", error) from error
        if row is None:
            raise NotFound(f"no uploaded file with id {file_id}")
        return UploadedFile.from_row(row)

    def latest(self, limit: int = LATEST_UPLOADS_LIMIT) -> List[UploadedFile]:
        """Return up to *limit* records, newest first."""

        limit_value = max(int(limit), 0)
        try:
            with self.db.transaction() as conn:
                rows = conn.execute(
                    f"SELECT {self._COLUMNS} FROM uploaded_files "
                    "ORDER BY created_at DESC, id DESC LIMIT ?",
                    (limit_value,),
                ).fetchall()
        except sqlite3.Error as error:
            logger.error("upload_listing_failed limit=%d error=%s", limit_value, error)
            raise StorageError("list latest uploaded files", error) from error
        return [UploadedFile.from_row(row) for row in rows]

    def count(self) -> int:
        try:
            with self.db.transaction() as conn:
                row = conn.execute("SELECT COUNT(*) AS count FROM uploaded_files").fetchone()
        except sqlite3.Error as error:
            raise StorageError("count uploaded files", error) from error
        return int(row["count"] if row and row["count"] is not None else 0)


class UserStore:
    """Read access to provisioned credentials, plus the provisioning insert."""

    def __init__(self, db: Database) -> None:
        self.db = db

    def get_credentials(self, username: str) -> Optional[Tuple[str, str]]:
        """Return the hex ``(salt, hash)`` pair for *username*, if any."""

        try:
            with self.db.transaction() as conn:
                row = conn.execute(
                    "SELECT salt, hash FROM users WHERE username = ?", (username,)
                ).fetchone()
        except sqlite3.Error as error:
            raise StorageError("look up user credentials", error) from error
        if row is None:
            return None
        return row["salt"], row["hash"]

    def add_user(self, username: str, salt_hex: str, hash_hex: str) -> None:
        try:
            with self.db.transaction() as conn:
                conn.execute(
                    """
                    INSERT INTO users (username, salt, hash) VALUES (?, ?, ?)
                    ON CONFLICT(username) DO UPDATE SET salt = excluded.salt, hash = excluded.hash
                    """,
                    (username, salt_hex, hash_hex),
                )
        except sqlite3.Error as error:
            raise StorageError("provision user", error) from error
        logger.info("user_provisioned username=%s", username)

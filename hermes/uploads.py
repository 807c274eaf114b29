import itertools
import logging
from pathlib import Path
from typing import Optional, Tuple

from .errors import InvalidInput, NotFound, StorageError
from .filenames import (
    create_exclusive,
    generate_text_filename,
    resolve_upload_path,
    sanitize_filename,
    suffixed_candidates,
)
from .storage import UploadedFile, UploadStore

logger = logging.getLogger("hermes.uploads")

MAX_NAME_ATTEMPTS = 5
MAX_UPLOAD_ID = 2**63 - 1  # SQLite INTEGER range


def parse_upload_id(raw: str) -> int:
    """Parse a public identifier from a URL segment."""

    value = (raw or "").strip()
    if not value.isascii() or not value.isdigit():
        raise InvalidInput(f"malformed upload identifier: {raw!r}")
    file_id = int(value)
    if file_id > MAX_UPLOAD_ID:
        raise NotFound(f"no uploaded file with id {raw}")
    return file_id


def _title_or_default(title: Optional[str], filename: str) -> str:
    title = (title or "").strip()
    return title or filename


class UploadService:
    """Write and read paths for uploads.

    A write goes file first, record second. If the insert fails the file
    stays behind as an orphan; it is never referenced, so readers cannot
    see a record without its file.
    """

    def __init__(self, store: UploadStore, uploads_dir: Path) -> None:
        self.store = store
        self.uploads_dir = Path(uploads_dir)

    def ensure_directory(self) -> None:
        self.uploads_dir.mkdir(parents=True, exist_ok=True)

    def _write_new_file(self, candidates, data: bytes, operation: str) -> str:
        self.ensure_directory()
        for name in itertools.islice(candidates, MAX_NAME_ATTEMPTS):
            path = resolve_upload_path(self.uploads_dir, name)
            try:
                create_exclusive(path, data)
            except FileExistsError:
                logger.info("upload_name_collision name=%s", name)
                continue
            except OSError as error:
                logger.error(
                    "upload_write_failed operation=%s name=%s error=%s",
                    operation,
                    name,
                    error,
                )
                raise StorageError(f"{operation}: writing file", error) from error
            return path.name
        raise StorageError(f"{operation}: no free file name after {MAX_NAME_ATTEMPTS} attempts")

    def _register(self, title: str, uploader: str, filename: str, operation: str) -> UploadedFile:
        try:
            file_id = self.store.insert(title, uploader, filename)
        except StorageError:
            logger.warning(
                "upload_orphaned_file operation=%s file_path=%s", operation, filename
            )
            raise
        return self.store.get(file_id)

    def save_text(self, text: Optional[str], uploader: str, title: Optional[str] = None) -> UploadedFile:
        """Store a text paste under a generated ``.txt`` name."""

        if not text:
            raise InvalidInput("missing text input")
        candidates = (generate_text_filename() for _ in itertools.count())
        filename = self._write_new_file(candidates, text.encode("utf-8"), "save text")
        return self._register(_title_or_default(title, filename), uploader, filename, "save text")

    def save_file(
        self,
        client_filename: Optional[str],
        data: bytes,
        uploader: str,
        title: Optional[str] = None,
    ) -> UploadedFile:
        """Store an uploaded file under its sanitized client name.

        An existing file with the same name is never overwritten; a numeric
        suffix is added instead.
        """

        if not client_filename:
            raise InvalidInput("missing uploaded file")
        safe_name = sanitize_filename(client_filename)
        filename = self._write_new_file(suffixed_candidates(safe_name), data, "save file")
        return self._register(_title_or_default(title, filename), uploader, filename, "save file")

    def resolve(self, file_id: int) -> Tuple[UploadedFile, Path]:
        """Return the record for *file_id* and the path of its backing file.

        Raises :class:`NotFound` when either the record or the file is
        missing.
        """

        record = self.store.get(file_id)
        path = resolve_upload_path(self.uploads_dir, record.file_path)
        try:
            path.stat()
        except FileNotFoundError as error:
            logger.warning(
                "upload_file_missing file_id=%d file_path=%s", file_id, record.file_path
            )
            raise NotFound(f"file for upload {file_id} is missing") from error
        except OSError as error:
            raise StorageError(f"stat upload {file_id}", error) from error
        return record, path

    def read_text(self, file_id: int) -> Tuple[UploadedFile, str]:
        record, path = self.resolve(file_id)
        try:
            raw = path.read_bytes()
        except FileNotFoundError as error:
            raise NotFound(f"file for upload {file_id} is missing") from error
        except OSError as error:
            raise StorageError(f"read upload {file_id}", error) from error
        return record, raw.decode("utf-8", errors="replace")

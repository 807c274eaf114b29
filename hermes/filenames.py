import os
import secrets
import string
from pathlib import Path, PurePosixPath
from typing import Iterator

from werkzeug.security import safe_join

from .errors import InvalidFilename

TEXT_FILENAME_LETTERS = string.ascii_uppercase + string.ascii_lowercase
TEXT_FILENAME_LENGTH = 8
TEXT_FILENAME_SUFFIX = ".txt"
MAX_FILENAME_LENGTH = 255
UPLOAD_FILE_MODE = 0o600


def generate_text_filename() -> str:
    """Return a random name for a text paste, e.g. ``QwErTyUi.txt``.

    Each letter is drawn independently from the 52 ASCII letters using the
    ``secrets`` CSPRNG.
    """

    identifier = "".join(
        secrets.choice(TEXT_FILENAME_LETTERS) for _ in range(TEXT_FILENAME_LENGTH)
    )
    return f"{identifier}{TEXT_FILENAME_SUFFIX}"


def sanitize_filename(untrusted: str) -> str:
    """Reduce *untrusted* to a basename that is safe to join to a directory.

    Directory prefixes are discarded (``/`` and ``\\`` both count as
    separators). Raises :class:`InvalidFilename` for ``.``, ``..``, empty
    names, names containing NUL and names over 255 characters.
    """

    if untrusted is None:
        raise InvalidFilename("", "missing filename")
    if "\x00" in untrusted:
        raise InvalidFilename(untrusted, "filename contains invalid characters")

    # Trailing separators are dropped first, so "a/b/" yields "b".
    candidate = untrusted.replace("\\", "/").rstrip("/")
    base = candidate.rsplit("/", 1)[-1]
    if not base:
        raise InvalidFilename(untrusted, "filename cannot be empty")
    if base in {".", ".."}:
        raise InvalidFilename(untrusted)
    if len(base) > MAX_FILENAME_LENGTH:
        raise InvalidFilename(
            untrusted,
            f"filename exceeds maximum length of {MAX_FILENAME_LENGTH} characters",
        )
    return base


def resolve_upload_path(uploads_dir: Path, untrusted: str) -> Path:
    """Return the path of *untrusted* inside *uploads_dir*.

    The name is sanitized first; ``safe_join`` then guarantees the result
    cannot point outside the directory.
    """

    safe_name = sanitize_filename(untrusted)
    joined = safe_join(str(uploads_dir), safe_name)
    if joined is None:
        raise InvalidFilename(untrusted)
    return Path(joined)


def suffixed_candidates(name: str) -> Iterator[str]:
    """Yield ``name``, ``name-1``, ``name-2``... keeping the extension."""

    path = PurePosixPath(name)
    stem, suffix = path.stem, path.suffix
    yield name
    counter = 1
    while True:
        yield f"{stem}-{counter}{suffix}"
        counter += 1


def create_exclusive(path: Path, data: bytes) -> None:
    """Write *data* to a new file at *path* with owner-only permissions.

    Raises :class:`FileExistsError` rather than overwriting an existing file.
    """

    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, UPLOAD_FILE_MODE)
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
    except Exception:
        # Drop the partial file; nothing references it yet.
        path.unlink(missing_ok=True)
        raise

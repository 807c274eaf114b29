import logging
import os
import tomllib
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

logger = logging.getLogger("hermes.config")

DEFAULT_CONFIG_PATH = Path("/etc/hermes/config.toml")
DEFAULT_ADDR = "127.0.0.1:8080"
DEFAULT_DB_PATH = Path("/var/hermes/hermes.db")
DEFAULT_UPLOADS_DIR = Path("/var/hermes/uploaded_files")
DEFAULT_MAX_UPLOAD_BYTES = 1 << 20  # 1 MiB
DEFAULT_SESSION_LIFETIME_DAYS = 365
DEFAULT_SESSION_CLEANUP_INTERVAL_MINUTES = 60

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


class ConfigError(RuntimeError):
    """Raised when the configuration file cannot be read or parsed."""


@dataclass(frozen=True)
class HermesConfig:
    addr: str = DEFAULT_ADDR
    scheme: str = "http"
    domain_name: str = "localhost:8080"
    db_path: Path = DEFAULT_DB_PATH
    uploaded_files_dir: Path = DEFAULT_UPLOADS_DIR
    logs_dir: Optional[Path] = None
    log_level: str = "INFO"
    max_upload_bytes: int = DEFAULT_MAX_UPLOAD_BYTES
    allow_anonymous_uploads: bool = False
    session_lifetime_days: int = DEFAULT_SESSION_LIFETIME_DAYS
    session_cleanup_interval_minutes: int = DEFAULT_SESSION_CLEANUP_INTERVAL_MINUTES
    secret_key: Optional[str] = field(default=None, repr=False)

    @property
    def host(self) -> str:
        host, _, _ = self.addr.rpartition(":")
        return host or "127.0.0.1"

    @property
    def port(self) -> int:
        _, _, port = self.addr.rpartition(":")
        try:
            return int(port)
        except ValueError:
            return 8080

    def public_url(self, path: str) -> str:
        """Return an absolute shareable URL for *path* (e.g. ``/t/12``)."""

        return f"{self.scheme}://{self.domain_name}{path}"


def _resolve_path(value: Any) -> Path:
    return Path(str(value)).expanduser().resolve()


def _safe_int(key: str, raw: Any, default: int, min_value: int = 1) -> int:
    """Parse an integer setting, falling back to *default* on bad input."""

    try:
        value = int(raw)
    except (TypeError, ValueError):
        logger.warning("Invalid value for %s: %s. Using default: %d", key, raw, default)
        return default
    if value < min_value:
        logger.warning("Invalid value for %s: %s. Using default: %d", key, raw, default)
        return default
    return value


def _parse_bool(key: str, raw: Any, default: bool) -> bool:
    if isinstance(raw, bool):
        return raw
    normalized = str(raw).strip().lower()
    if normalized in _TRUE_VALUES:
        return True
    if normalized in _FALSE_VALUES:
        return False
    logger.warning("Invalid value for %s: %s. Using default: %s", key, raw, default)
    return default


def read_config_file(path: Path) -> Dict[str, Any]:
    """Read the TOML config file and flatten it into ``HermesConfig`` keys."""

    try:
        with path.open("rb") as config_file:
            document = tomllib.load(config_file)
    except OSError as error:
        raise ConfigError(f"reading config file {path}: {error}") from error
    except tomllib.TOMLDecodeError as error:
        raise ConfigError(f"parsing config file {path}: {error}") from error

    http = document.get("http", {}) or {}
    storage = document.get("storage", {}) or {}
    values: Dict[str, Any] = {}
    if http.get("addr"):
        values["addr"] = str(http["addr"])
    if http.get("schema"):
        values["scheme"] = str(http["schema"])
    if http.get("domain_name"):
        values["domain_name"] = str(http["domain_name"])
    if storage.get("db_path"):
        values["db_path"] = storage["db_path"]
    if storage.get("uploaded_files_dir"):
        values["uploaded_files_dir"] = storage["uploaded_files_dir"]
    if storage.get("logs_dir"):
        values["logs_dir"] = storage["logs_dir"]
    return values


def _env_values(environ: Mapping[str, str]) -> Dict[str, Any]:
    mapping = {
        "HERMES_ADDR": "addr",
        "HERMES_SCHEME": "scheme",
        "HERMES_DOMAIN": "domain_name",
        "HERMES_DB_PATH": "db_path",
        "HERMES_UPLOADS_DIR": "uploaded_files_dir",
        "HERMES_LOGS_DIR": "logs_dir",
        "HERMES_MAX_UPLOAD_BYTES": "max_upload_bytes",
        "HERMES_ALLOW_ANONYMOUS_UPLOADS": "allow_anonymous_uploads",
        "HERMES_SESSION_LIFETIME_DAYS": "session_lifetime_days",
        "HERMES_SESSION_CLEANUP_INTERVAL_MINUTES": "session_cleanup_interval_minutes",
        "LOG_LEVEL": "log_level",
        "SECRET_KEY": "secret_key",
    }
    return {
        attribute: environ[env_key]
        for env_key, attribute in mapping.items()
        if environ.get(env_key)
    }


def _build(values: Dict[str, Any]) -> HermesConfig:
    config = HermesConfig()
    updates: Dict[str, Any] = {}
    for key in ("addr", "scheme", "domain_name", "secret_key"):
        if key in values:
            updates[key] = str(values[key]).strip()
    if "log_level" in values:
        updates["log_level"] = str(values["log_level"]).strip().upper()
    for key in ("db_path", "uploaded_files_dir", "logs_dir"):
        if key in values:
            updates[key] = _resolve_path(values[key])
    if "max_upload_bytes" in values:
        updates["max_upload_bytes"] = _safe_int(
            "max_upload_bytes", values["max_upload_bytes"], DEFAULT_MAX_UPLOAD_BYTES
        )
    if "session_lifetime_days" in values:
        updates["session_lifetime_days"] = _safe_int(
            "session_lifetime_days",
            values["session_lifetime_days"],
            DEFAULT_SESSION_LIFETIME_DAYS,
        )
    if "session_cleanup_interval_minutes" in values:
        updates["session_cleanup_interval_minutes"] = _safe_int(
            "session_cleanup_interval_minutes",
            values["session_cleanup_interval_minutes"],
            DEFAULT_SESSION_CLEANUP_INTERVAL_MINUTES,
            min_value=0,
        )
    if "allow_anonymous_uploads" in values:
        updates["allow_anonymous_uploads"] = _parse_bool(
            "allow_anonymous_uploads", values["allow_anonymous_uploads"], False
        )
    if updates.get("scheme") not in (None, "http", "https"):
        logger.warning("Unsupported scheme %s. Using http", updates["scheme"])
        updates["scheme"] = "http"
    return replace(config, **updates)


def load_config(
    path: Optional[Path] = None, environ: Optional[Mapping[str, str]] = None
) -> HermesConfig:
    """Load configuration from the TOML file and the environment.

    Resolution order is defaults, then the file at *path* (or
    ``$HERMES_CONFIG``, or ``/etc/hermes/config.toml``), then environment
    variables. The default file location may be absent; an explicitly named
    file must exist.
    """

    environ = os.environ if environ is None else environ
    explicit = path is not None or bool(environ.get("HERMES_CONFIG"))
    if path is None:
        path = Path(environ.get("HERMES_CONFIG") or DEFAULT_CONFIG_PATH)

    values: Dict[str, Any] = {}
    if explicit or path.exists():
        values.update(read_config_file(path))
    values.update(_env_values(environ))
    return _build(values)

import argparse
import atexit
import logging
import os
import re
import secrets
import sys
import time
import uuid
from dataclasses import dataclass
from datetime import timedelta
from functools import wraps
from logging.handlers import RotatingFileHandler, SysLogHandler
from pathlib import Path
from typing import Any, Optional

import click
from apscheduler.schedulers.background import BackgroundScheduler
from flask import (
    Blueprint,
    Flask,
    Response,
    current_app,
    g,
    has_request_context,
    jsonify,
    redirect,
    render_template,
    request,
    send_file,
    session,
    url_for,
)
from flask_wtf.csrf import CSRFError, CSRFProtect
from werkzeug.serving import run_simple

from .auth import CredentialVerifier, current_user, is_authenticated, new_credential
from .config import ConfigError, HermesConfig, load_config
from .errors import (
    CredentialFailure,
    HermesError,
    InvalidInput,
    NotFound,
    StorageError,
    Unauthenticated,
)
from .sessions import SessionStore, SqliteSessionInterface
from .storage import Database, SqliteUploadStore, UploadStore, UserStore, init_db
from .uploads import UploadService, parse_upload_id
from .views import (
    ErrorPage,
    FilePage,
    IndexPage,
    LoginPage,
    TextPage,
    UploadFormPage,
    UploadSuccessPage,
)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
LOG_FILE_MAX_BYTES = 5 * 1024 * 1024  # 5 MB max log file size
LOG_FILE_BACKUP_COUNT = 3
SESSION_COOKIE_NAME = "id"
_CONTROL_CHAR_PATTERN = re.compile(r"[\x00-\x1f\x7f-\x9f\n\r]")

csrf = CSRFProtect()
bp = Blueprint("hermes", __name__, cli_group=None)


def sanitize_log_value(value: Any) -> Any:
    """Remove control characters from log values to prevent log injection."""

    if isinstance(value, str):
        escaped = value.replace("\n", "\\n").replace("\r", "\\r")
        return _CONTROL_CHAR_PATTERN.sub(
            lambda match: f"\\x{ord(match.group()):02x}", escaped
        )
    return value


class RequestAwareLogger:
    """Logger wrapper that injects request IDs into log messages."""

    def __init__(self, logger: logging.Logger) -> None:
        self._logger = logger

    def _with_request(self, message: str) -> str:
        if has_request_context():
            request_id = getattr(g, "request_id", None)
            if request_id:
                return f"request_id={request_id} {message}"
        return message

    def debug(self, msg: str, *args, **kwargs) -> None:
        self._logger.debug(self._with_request(msg), *args, **kwargs)

    def info(self, msg: str, *args, **kwargs) -> None:
        self._logger.info(self._with_request(msg), *args, **kwargs)

    def warning(self, msg: str, *args, **kwargs) -> None:
        self._logger.warning(self._with_request(msg), *args, **kwargs)

    def error(self, msg: str, *args, **kwargs) -> None:
        self._logger.error(self._with_request(msg), *args, **kwargs)

    def exception(self, msg: str, *args, **kwargs) -> None:
        self._logger.exception(self._with_request(msg), *args, **kwargs)


lifecycle_logger = RequestAwareLogger(logging.getLogger("hermes.lifecycle"))


def configure_logging(
    config: HermesConfig, *, debug: bool = False, use_syslog: bool = False
) -> Optional[Path]:
    """Configure root logging for the server process.

    Logs go to stderr, or to syslog (facility LOCAL0) when *use_syslog* is
    set. A rotating ``hermes.log`` is added when ``logs_dir`` is configured;
    its path is returned.
    """

    level = logging.DEBUG if debug else getattr(logging, config.log_level, logging.INFO)
    root_logger = logging.getLogger()
    if use_syslog:
        address = "/dev/log" if Path("/dev/log").exists() else ("localhost", 514)
        handler = SysLogHandler(address=address, facility=SysLogHandler.LOG_LOCAL0)
        handler.setFormatter(logging.Formatter("hermes: %(levelname)s %(name)s %(message)s"))
        root_logger.addHandler(handler)
        root_logger.setLevel(level)
    else:
        logging.basicConfig(level=level, format=LOG_FORMAT)
        root_logger.setLevel(level)

    if config.logs_dir is None:
        return None

    config.logs_dir.mkdir(parents=True, exist_ok=True)
    log_path = config.logs_dir / "hermes.log"
    formatter = logging.Formatter(LOG_FORMAT)
    for handler in root_logger.handlers:
        if isinstance(handler, RotatingFileHandler) and getattr(handler, "baseFilename", "") == str(log_path):
            handler.setLevel(level)
            handler.setFormatter(formatter)
            return log_path

    file_handler = RotatingFileHandler(
        log_path,
        maxBytes=LOG_FILE_MAX_BYTES,
        backupCount=LOG_FILE_BACKUP_COUNT,
        encoding="utf-8",
    )
    file_handler.setLevel(level)
    file_handler.setFormatter(formatter)
    root_logger.addHandler(file_handler)
    return log_path


def _load_secret_key(config: HermesConfig) -> str:
    if config.secret_key:
        return config.secret_key

    secret_path = config.db_path.parent / ".secret_key"
    config_logger = logging.getLogger("hermes.config")
    try:
        secret_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(secret_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        except FileExistsError:
            existing = secret_path.read_text(encoding="utf-8").strip()
            if existing:
                return existing
            config_logger.warning("Secret key file exists but is empty, regenerating")
            fd = os.open(secret_path, os.O_WRONLY | os.O_TRUNC, 0o600)
        generated = secrets.token_hex(32)
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(generated)
            handle.flush()
            os.fsync(handle.fileno())
        config_logger.warning("Generated new secret key - stored in %s", secret_path)
        return generated
    except OSError as error:
        config_logger.critical(
            "SECURITY WARNING: Using in-memory secret key. Sessions will not persist "
            "across restarts. Set SECRET_KEY for production use. Error: %s",
            error,
        )
        return secrets.token_hex(32)


@dataclass
class HermesServices:
    config: HermesConfig
    db: Database
    uploads: UploadService
    verifier: CredentialVerifier
    sessions: SessionStore
    users: UserStore
    scheduler: Optional[BackgroundScheduler] = None


def services() -> HermesServices:
    return current_app.extensions["hermes"]


def _page_state() -> dict:
    return {"authenticated": is_authenticated(session), "user": current_user(session)}


def uploads_open() -> bool:
    return services().config.allow_anonymous_uploads or is_authenticated(session)


def login_required(view):
    """Gate write pages: redirect GETs to the login page, reject other methods."""

    @wraps(view)
    def wrapped(*args, **kwargs):
        if uploads_open():
            return view(*args, **kwargs)
        if request.method in ("GET", "HEAD"):
            return redirect(url_for("hermes.login"), code=303)
        raise Unauthenticated("You must be logged in to perform this action.")

    return wrapped


@bp.before_app_request
def add_request_id() -> None:
    """Assign a request identifier for downstream logging."""

    g.request_id = request.headers.get("X-Request-ID", uuid.uuid4().hex)


@bp.after_app_request
def log_request_completion(response: Response):
    lifecycle_logger.info(
        "request_completed method=%s path=%s status=%d",
        request.method,
        sanitize_log_value(request.path),
        response.status_code,
    )
    return response


@bp.after_app_request
def add_security_headers(response: Response):
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    response.headers["Content-Security-Policy"] = (
        "default-src 'self'; img-src 'self' data:; media-src 'self'; style-src 'self'"
    )
    if hasattr(g, "request_id"):
        response.headers["X-Request-ID"] = g.request_id
    return response


@bp.route("/")
def index():
    store = services().uploads.store
    page = IndexPage(
        **_page_state(),
        uploads=store.latest(),
        total_uploads=store.count(),
    )
    return render_template("index.html", view=page)


@bp.route("/login", methods=["GET", "POST"])
def login():
    if is_authenticated(session):
        return redirect(url_for("hermes.index"), code=303)
    if request.method == "GET":
        return render_template("login.html", view=LoginPage(**_page_state()))

    username = request.form.get("username")
    password = request.form.get("password")
    if username is None or password is None:
        raise InvalidInput("missing username or password")

    try:
        services().verifier.login(session, username, password)
    except CredentialFailure as error:
        lifecycle_logger.warning(
            "login_failed username=%s reason=%s",
            sanitize_log_value(username),
            sanitize_log_value(str(error)),
        )
        return render_template("login.html", view=LoginPage(**_page_state(), bad_login=True))
    return redirect(url_for("hermes.index"), code=303)


@bp.route("/logout", methods=["POST"])
def logout():
    user = current_user(session)
    session.destroy()
    lifecycle_logger.info("user_logged_out username=%s", sanitize_log_value(user))
    return redirect(url_for("hermes.index"), code=303)


def _upload_success(record) -> str:
    config = services().config
    page = UploadSuccessPage(
        **_page_state(),
        title=record.title,
        link=config.public_url(record.href),
    )
    return render_template("upload_success.html", view=page)


@bp.route("/text", methods=["GET", "POST"])
@login_required
def upload_text():
    if request.method == "GET":
        return render_template("text.html", view=UploadFormPage(**_page_state()))

    record = services().uploads.save_text(
        request.form.get("input"),
        uploader=current_user(session),
        title=request.form.get("title"),
    )
    lifecycle_logger.info(
        "text_uploaded file_id=%d file_path=%s", record.id, record.file_path
    )
    return _upload_success(record)


@bp.route("/files", methods=["GET", "POST"])
@login_required
def upload_file():
    if request.method == "GET":
        return render_template("files.html", view=UploadFormPage(**_page_state()))

    uploaded = request.files.get("uploadedFile")
    if uploaded is None or not uploaded.filename:
        raise InvalidInput("missing uploaded file")
    try:
        data = uploaded.stream.read()
    finally:
        uploaded.close()

    record = services().uploads.save_file(
        uploaded.filename,
        data,
        uploader=current_user(session),
        title=request.form.get("title"),
    )
    lifecycle_logger.info(
        "file_uploaded file_id=%d file_path=%s size=%d",
        record.id,
        sanitize_log_value(record.file_path),
        len(data),
    )
    return _upload_success(record)


@bp.route("/t/<file_id>")
def text_page(file_id: str):
    record, text = services().uploads.read_text(parse_upload_id(file_id))
    page = TextPage(
        **_page_state(),
        title=record.title,
        text=text,
        raw_link=services().config.public_url(record.raw_href),
    )
    return render_template("t.html", view=page)


@bp.route("/u/<file_id>")
def file_page(file_id: str):
    record, _ = services().uploads.resolve(parse_upload_id(file_id))
    page = FilePage(
        **_page_state(),
        title=record.title,
        mime_type=record.mime_type,
        file_type=record.type,
        raw_link=services().config.public_url(record.raw_href),
    )
    return render_template("u.html", view=page)


@bp.route("/dl/<file_id>")
def raw_file(file_id: str):
    upload_id = parse_upload_id(file_id)
    record, path = services().uploads.resolve(upload_id)
    try:
        return send_file(
            path,
            mimetype=record.mime_type or None,
            as_attachment=False,
            download_name=record.file_path,
            conditional=True,
            last_modified=record.created,
        )
    except FileNotFoundError as error:
        raise NotFound(f"file for upload {upload_id} is missing") from error
    except OSError as error:
        raise StorageError(f"serve upload {upload_id}", error) from error


@bp.route("/health")
def health_check():
    svc = services()
    checks: dict = {}
    healthy = True

    try:
        checks["uploads"] = svc.uploads.store.count()
        checks["database"] = "ok"
    except StorageError as error:
        checks["database"] = f"error: {str(error)[:100]}"
        healthy = False

    try:
        svc.uploads.ensure_directory()
        probe_file = svc.uploads.uploads_dir / f".health_check_{uuid.uuid4().hex}"
        probe_file.write_text("health_check", encoding="utf-8")
        probe_file.unlink(missing_ok=True)
        checks["uploads_writable"] = "ok"
    except OSError as error:
        checks["uploads_writable"] = f"error: {str(error)[:100]}"
        healthy = False

    if svc.scheduler is not None:
        job = svc.scheduler.get_job("purge_expired_sessions")
        checks["session_purge"] = "scheduled" if job and job.next_run_time else "not_scheduled"
        checks["scheduler_running"] = bool(svc.scheduler.running)
    else:
        checks["session_purge"] = "not_scheduled"
        checks["scheduler_running"] = False

    status = "healthy" if healthy else "unhealthy"
    return jsonify({"status": status, "timestamp": time.time(), "checks": checks}), (
        200 if healthy else 503
    )


@bp.cli.command("add-user")
@click.argument("username")
@click.password_option()
def add_user_command(username: str, password: str) -> None:
    """Provision USERNAME with an Argon2id credential."""

    salt_hex, hash_hex = new_credential(password)
    services().users.add_user(username, salt_hex, hash_hex)
    click.echo(f"User {username} saved.")


def _error_page(status_code: int, message: str):
    page = ErrorPage(**_page_state(), status_code=status_code, message=message)
    return render_template("error.html", view=page), status_code


def handle_not_found(error):
    lifecycle_logger.info("not_found path=%s detail=%s", sanitize_log_value(request.path), error)
    status_code = getattr(error, "status_code", None) or getattr(error, "code", 404)
    page = ErrorPage(**_page_state(), status_code=status_code)
    return render_template("404.html", view=page), status_code


def handle_invalid_input(error: InvalidInput):
    lifecycle_logger.warning(
        "bad_request path=%s detail=%s",
        sanitize_log_value(request.path),
        sanitize_log_value(str(error)),
    )
    return _error_page(error.status_code, "Bad Request")


def handle_unauthenticated(error: Unauthenticated):
    lifecycle_logger.warning(
        "unauthenticated_write method=%s path=%s",
        request.method,
        sanitize_log_value(request.path),
    )
    return Response(
        "You must be logged in to perform this action.\n",
        error.status_code,
        mimetype="text/plain",
    )


def handle_storage_error(error: HermesError):
    lifecycle_logger.error(
        "internal_error path=%s error=%s",
        sanitize_log_value(request.path),
        sanitize_log_value(str(error)),
        exc_info=error,
    )
    return _error_page(error.status_code, "Internal Server Error")


def handle_file_too_large(error):
    limit = current_app.config.get("MAX_CONTENT_LENGTH")
    lifecycle_logger.warning("upload_too_large path=%s limit=%s", request.path, limit)
    return _error_page(413, "The uploaded content exceeds the allowed size limit.")


def handle_csrf_error(error: CSRFError):
    description = getattr(error, "description", "Invalid CSRF token")
    lifecycle_logger.warning("csrf_rejected path=%s reason=%s", request.path, description)
    return _error_page(400, "Your session has expired or the form was invalid. Please try again.")


def create_app(
    config: Optional[HermesConfig] = None,
    upload_store: Optional[UploadStore] = None,
) -> Flask:
    """Build the Hermes Flask application.

    *upload_store* selects the record store strategy; by default the SQLite
    store on ``config.db_path`` is used.
    """

    config = config or load_config()
    app = Flask(__name__)

    db = Database(config.db_path)
    init_db(db)
    users = UserStore(db)
    session_store = SessionStore(db)
    upload_service = UploadService(upload_store or SqliteUploadStore(db), config.uploaded_files_dir)
    upload_service.ensure_directory()

    app.extensions["hermes"] = HermesServices(
        config=config,
        db=db,
        uploads=upload_service,
        verifier=CredentialVerifier(users),
        sessions=session_store,
        users=users,
    )

    app.config["SECRET_KEY"] = _load_secret_key(config)
    app.config["MAX_CONTENT_LENGTH"] = config.max_upload_bytes
    app.config["MAX_FORM_MEMORY_SIZE"] = config.max_upload_bytes
    app.config["SESSION_COOKIE_NAME"] = SESSION_COOKIE_NAME
    app.config["SESSION_COOKIE_HTTPONLY"] = True
    app.config["SESSION_COOKIE_SAMESITE"] = "Lax"
    app.config["SESSION_COOKIE_SECURE"] = config.scheme == "https"
    app.config["SESSION_REFRESH_EACH_REQUEST"] = False
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(days=config.session_lifetime_days)
    app.session_interface = SqliteSessionInterface(session_store)

    csrf.init_app(app)
    app.register_blueprint(bp)

    app.register_error_handler(404, handle_not_found)
    app.register_error_handler(NotFound, handle_not_found)
    app.register_error_handler(InvalidInput, handle_invalid_input)
    app.register_error_handler(Unauthenticated, handle_unauthenticated)
    app.register_error_handler(StorageError, handle_storage_error)
    app.register_error_handler(413, handle_file_too_large)
    app.register_error_handler(CSRFError, handle_csrf_error)
    return app


def start_session_cleanup(app: Flask) -> Optional[BackgroundScheduler]:
    """Schedule the periodic purge of expired sessions."""

    svc: HermesServices = app.extensions["hermes"]
    minutes = svc.config.session_cleanup_interval_minutes
    if minutes < 1:
        return None
    scheduler = BackgroundScheduler(daemon=True)
    scheduler.add_job(
        func=svc.sessions.purge_expired,
        trigger="interval",
        minutes=minutes,
        id="purge_expired_sessions",
        name="Purge expired sessions",
        replace_existing=True,
        coalesce=True,
        max_instances=1,
    )
    scheduler.start()
    atexit.register(lambda: scheduler.shutdown(wait=False))
    svc.scheduler = scheduler
    return scheduler


def main(argv: Optional[list] = None) -> int:
    parser = argparse.ArgumentParser(prog="hermes", description="Share text and files by link.")
    parser.add_argument(
        "-d", action="store_true", dest="debug", help="debug mode: log to stderr instead of syslog"
    )
    parser.add_argument("-c", "--config", type=Path, default=None, help="path to config.toml")
    args = parser.parse_args(argv)

    try:
        config = load_config(args.config)
    except ConfigError as error:
        print(f"hermes: {error}", file=sys.stderr)
        return 1

    configure_logging(config, debug=args.debug, use_syslog=not args.debug)
    app = create_app(config)
    app.extensions["hermes"].sessions.purge_expired()
    start_session_cleanup(app)

    lifecycle_logger.info("Serving application on http://%s...", config.addr)
    run_simple(config.host, config.port, app, threaded=True)
    return 0


if __name__ == "__main__":
    sys.exit(main())

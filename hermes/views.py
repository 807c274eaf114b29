"""Per-page view models handed to the Jinja templates."""

from dataclasses import dataclass, field
from typing import List, Optional

from .storage import UploadedFile


@dataclass(frozen=True)
class Page:
    authenticated: bool = False
    user: str = ""


@dataclass(frozen=True)
class IndexPage(Page):
    uploads: List[UploadedFile] = field(default_factory=list)
    total_uploads: int = 0


@dataclass(frozen=True)
class LoginPage(Page):
    bad_login: bool = False


@dataclass(frozen=True)
class UploadFormPage(Page):
    error: Optional[str] = None


@dataclass(frozen=True)
class UploadSuccessPage(Page):
    title: str = ""
    link: str = ""


@dataclass(frozen=True)
class TextPage(Page):
    title: str = ""
    text: str = ""
    raw_link: str = ""


@dataclass(frozen=True)
class FilePage(Page):
    title: str = ""
    mime_type: str = ""
    file_type: str = ""
    raw_link: str = ""


@dataclass(frozen=True)
class ErrorPage(Page):
    status_code: int = 500
    message: str = "Internal Server Error"

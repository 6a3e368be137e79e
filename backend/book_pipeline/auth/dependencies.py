"""
Composed FastAPI Dependencies

Combines auth + session factory + pipeline services into injectable objects.
Route handlers import from here — never from auth/token, db/session, or
services/factory directly.

This is the single wiring point for the entire request context. Tests swap
get_session_factory / get_publisher / get_dispatcher via
app.dependency_overrides.
"""

from __future__ import annotations

import hmac
import logging
from dataclasses import dataclass
from typing import Annotated

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials

from book_pipeline.auth.rbac import forbidden, has_role
from book_pipeline.auth.token import TokenPayload, bearer_scheme, get_current_user, verify_token
from book_pipeline.core.config import settings
from book_pipeline.core.errors import Unauthorized
from book_pipeline.db.session import SessionFactory, get_session_factory
from book_pipeline.services.coordinator import JobCoordinator
from book_pipeline.services.dispatch import BackgroundDispatcher, TaskPublisher
from book_pipeline.services.factory import build_coordinator, build_reader
from book_pipeline.services.reader import ContentReader

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# 1. Content writers: the external PDF processor or an admin
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ContentWriterPrincipal:
    kind:    str   # "processor" | "user"
    subject: str


def _is_processor_key(credential: str) -> bool:
    expected = settings.processor_api_key
    if not expected:
        return False
    return hmac.compare_digest(credential.encode(), expected.encode())


async def require_content_writer(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(bearer_scheme)],
) -> ContentWriterPrincipal:
    """
    Accepts either the static processor API key (constant-time compare) or an
    admin JWT. Anything else is 401; a valid JWT below admin is 403.
    """
    if credentials is None:
        raise Unauthorized("Missing or invalid Authorization header")

    if _is_processor_key(credentials.credentials):
        return ContentWriterPrincipal(kind="processor", subject="processor")

    user = await verify_token(credentials.credentials)
    if not has_role(user.role, "admin"):
        raise forbidden("admin")
    return ContentWriterPrincipal(kind="user", subject=user.sub)


# ---------------------------------------------------------------------------
# 2. Pipeline services
# ---------------------------------------------------------------------------

_dispatcher: BackgroundDispatcher | None = None


def get_publisher() -> TaskPublisher:
    return TaskPublisher()


def get_dispatcher() -> BackgroundDispatcher:
    """Process-wide dispatcher so in-flight refresh publishes can be drained on shutdown."""
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = BackgroundDispatcher(get_publisher())
    return _dispatcher


def get_coordinator(
    session_factory: Annotated[SessionFactory, Depends(get_session_factory)],
) -> JobCoordinator:
    return build_coordinator(session_factory)


def get_reader(
    session_factory: Annotated[SessionFactory, Depends(get_session_factory)],
    dispatcher:      Annotated[BackgroundDispatcher, Depends(get_dispatcher)],
) -> ContentReader:
    return build_reader(session_factory, dispatcher)


# ---------------------------------------------------------------------------
# Type aliases for cleaner route signatures
# ---------------------------------------------------------------------------

CurrentUser    = Annotated[TokenPayload,           Depends(get_current_user)]
ContentWriter  = Annotated[ContentWriterPrincipal, Depends(require_content_writer)]
Sessions       = Annotated[SessionFactory,         Depends(get_session_factory)]
Coordinator    = Annotated[JobCoordinator,         Depends(get_coordinator)]
Publisher      = Annotated[TaskPublisher,          Depends(get_publisher)]
Reader         = Annotated[ContentReader,          Depends(get_reader)]

from book_pipeline.auth.token import TokenPayload, get_current_user, verify_token
from book_pipeline.auth.rbac import RequireAdmin, require_role
from book_pipeline.auth.dependencies import (
    ContentWriter,
    Coordinator,
    CurrentUser,
    Publisher,
    Reader,
    Sessions,
    require_content_writer,
)

__all__ = [
    "TokenPayload", "get_current_user", "verify_token",
    "require_role", "RequireAdmin",
    "ContentWriter", "Coordinator", "CurrentUser", "Publisher", "Reader", "Sessions",
    "require_content_writer",
]

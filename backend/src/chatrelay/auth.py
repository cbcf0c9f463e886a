"""Shared-secret check for the /api routes."""

import secrets

from fastapi import Header, Request

from chatrelay.errors import UnauthorizedError


async def require_shared_secret(
    request: Request,
    x_auth: str | None = Header(None),
) -> None:
    """Reject requests without the configured ``x-auth`` secret.

    Does nothing when no password is configured.
    """
    password = request.app.state.settings.chat_password
    if not password:
        return
    if not x_auth or not secrets.compare_digest(x_auth.encode(), password.encode()):
        raise UnauthorizedError("Unauthorized")

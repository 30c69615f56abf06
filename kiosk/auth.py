"""Admin gate for the kiosk console.

A single shared token, sent as ``X-Admin-Token``.  When ``ADMIN_TOKEN`` is
unset the gate is open, which is the expected setup on a trusted LAN.
"""

from __future__ import annotations

import secrets

from fastapi import Depends, Request
from fastapi.security import APIKeyHeader

from kiosk.errors import Unauthorized

_admin_header = APIKeyHeader(name="X-Admin-Token", auto_error=False)


def get_console(request: Request):
    return request.app.state.console


async def require_admin(
    request: Request,
    token: str | None = Depends(_admin_header),
) -> None:
    """Dependency that rejects the request unless the admin token matches."""
    expected = get_console(request).settings.admin_token
    if not expected:
        return
    if not token or not secrets.compare_digest(token.encode(), expected.encode()):
        raise Unauthorized("Unauthorized")

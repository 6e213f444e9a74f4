"""
Composed FastAPI Dependencies

Route handlers import from here. This is the single wiring point for the
request context:

  - Services     built once in the lifespan, stored on app.state
  - Requester    identity forwarded by the authenticating gateway in
                 X-User-ID / X-User-Role (trusted headers; no token parsing here)
  - BypassCache  True when X-Bypass-Cache matches the configured diagnostic token
"""

from __future__ import annotations

import hmac
import uuid
from typing import Annotated

from fastapi import Depends, Header, Request

from courseindex.core.config import settings
from courseindex.core.errors import AccessDenied, NotAuthenticated
from courseindex.schemas.documents import UploadErrors
from courseindex.services.container import Services
from courseindex.services.ingestion import Requester

ADMIN_ROLES = frozenset({"admin", "owner"})


def get_services(request: Request) -> Services:
    return request.app.state.services


def _parse_requester(user_id: str | None, role: str | None) -> Requester | None:
    if not user_id:
        return None
    try:
        parsed = uuid.UUID(user_id)
    except ValueError:
        raise NotAuthenticated(UploadErrors.unauthenticated()) from None
    return Requester(user_id=parsed, is_admin=(role or "").lower() in ADMIN_ROLES)


async def get_requester(
    x_user_id:   Annotated[str | None, Header()] = None,
    x_user_role: Annotated[str | None, Header()] = None,
) -> Requester:
    requester = _parse_requester(x_user_id, x_user_role)
    if requester is None:
        raise NotAuthenticated(UploadErrors.unauthenticated())
    return requester


async def require_admin(requester: Annotated[Requester, Depends(get_requester)]) -> Requester:
    if not requester.is_admin:
        raise AccessDenied(UploadErrors.admin_required())
    return requester


async def get_bypass_cache(
    x_bypass_cache: Annotated[str | None, Header()] = None,
) -> bool:
    token = settings.cache_bypass_token
    if not token or not x_bypass_cache:
        return False
    return hmac.compare_digest(x_bypass_cache, token)


# ---------------------------------------------------------------------------
# Type aliases for cleaner route signatures
# ---------------------------------------------------------------------------

AppServices   = Annotated[Services,           Depends(get_services)]
CurrentUser   = Annotated[Requester,          Depends(get_requester)]
AdminUser     = Annotated[Requester,          Depends(require_admin)]
BypassCache   = Annotated[bool,               Depends(get_bypass_cache)]

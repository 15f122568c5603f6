from __future__ import annotations

import logging
from typing import Any

from ngo_access.auth.context import Principal
from ngo_access.auth.jwt import decode_access_token
from ngo_access.observability import incr_metric, log_event


def _extract_bearer_token(authorization: str | None) -> str | None:
    """Extract token from 'Bearer <token>' header."""
    if not authorization:
        return None
    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    return parts[1]


class IdentityResolver:
    """Resolves the current principal and the organization scope.

    Neither lookup retries or raises; ``None`` means unresolvable and the
    caller picks the fallback.
    """

    def __init__(self, client: Any):
        self.client = client

    def current_principal(self, token: str | None) -> Principal | None:
        if not token:
            return None
        payload = decode_access_token(token)
        if not payload:
            incr_metric("auth.principal.unresolved")
            return None
        return Principal(user_id=payload["sub"], email=payload.get("email"))

    def scope_id(self) -> str | None:
        # Single-tenant deployment: the first organization row is the scope.
        try:
            result = self.client.table("organizations").select("id").limit(1).execute()
        except Exception as exc:
            incr_metric("auth.scope.unresolved", reason="store_error")
            log_event("scope_lookup_failed", level=logging.WARNING, error=str(exc))
            return None
        if not result.data:
            incr_metric("auth.scope.unresolved", reason="not_found")
            log_event("scope_not_found", level=logging.WARNING)
            return None
        return result.data[0]["id"]

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from ngo_access.observability import incr_metric, log_event
from ngo_access.permissions.catalog import default_grant_rows

GRANT_CONFLICT_KEY = "organization_id,role,permission_id"


@dataclass(frozen=True)
class Grant:
    organization_id: str
    role: str
    permission_id: str
    granted: bool
    created_at: str | None = None
    updated_at: str | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Grant":
        return cls(
            organization_id=row.get("organization_id") or "",
            role=row["role"],
            permission_id=row["permission_id"],
            granted=bool(row.get("granted")),
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )


def _failed(operation: str, exc: Exception, **fields: Any) -> None:
    incr_metric("permissions.store.failed", operation=operation)
    log_event(
        "permission_store_failed",
        level=logging.ERROR,
        operation=operation,
        error=str(exc),
        **fields,
    )


class PermissionStore:
    """Reads and writes the role and grant tables.

    Every method returns a value; store errors are logged and turned into
    ``None``, an empty list or ``False``.
    """

    def __init__(self, client: Any):
        self.client = client

    def fetch_role(self, user_id: str, scope: str) -> str | None:
        try:
            result = self.client.table("user_roles").select(
                "id, role, created_at"
            ).eq("user_id", user_id).eq("organization_id", scope).order(
                "created_at", desc=True
            ).execute()
        except Exception as exc:
            _failed("fetch_role", exc, user_id=user_id, scope=scope)
            return None

        rows = result.data or []
        if not rows:
            log_event("role_not_found", level=logging.WARNING, user_id=user_id, scope=scope)
            return None

        if len(rows) > 1:
            self._delete_duplicate_roles([row["id"] for row in rows[1:]], user_id=user_id)

        return rows[0].get("role") or None

    def _delete_duplicate_roles(self, duplicate_ids: list[str], *, user_id: str) -> None:
        try:
            self.client.table("user_roles").delete().in_("id", duplicate_ids).execute()
        except Exception as exc:
            _failed("delete_duplicate_roles", exc, user_id=user_id)
            return
        log_event("duplicate_roles_removed", user_id=user_id, removed=len(duplicate_ids))

    def upsert_role(self, user_id: str, scope: str, role: str) -> bool:
        """Replace every role row of the user in the scope with a single row."""
        try:
            self.client.table("user_roles").delete().eq(
                "user_id", user_id
            ).eq("organization_id", scope).execute()
            self.client.table("user_roles").insert({
                "user_id": user_id,
                "organization_id": scope,
                "role": role,
            }).execute()
        except Exception as exc:
            _failed("upsert_role", exc, user_id=user_id, scope=scope, role=role)
            return False
        log_event("role_stored", user_id=user_id, scope=scope, role=role)
        return True

    def fetch_grants(self, scope: str) -> list[Grant]:
        try:
            result = self.client.table("role_permissions").select(
                "organization_id, role, permission_id, granted, created_at, updated_at"
            ).eq("organization_id", scope).execute()
        except Exception as exc:
            _failed("fetch_grants", exc, scope=scope)
            return []
        return [Grant.from_row(row) for row in result.data or []]

    def fetch_catalog(self) -> list[str]:
        try:
            result = self.client.table("permissions").select("permission_id").execute()
        except Exception as exc:
            _failed("fetch_catalog", exc)
            return []
        return [row["permission_id"] for row in result.data or [] if row.get("permission_id")]

    def upsert_grant(self, scope: str, role: str, permission_id: str, granted: bool) -> bool:
        try:
            self.client.table("role_permissions").upsert(
                {
                    "organization_id": scope,
                    "role": role,
                    "permission_id": permission_id,
                    "granted": granted,
                    "updated_at": datetime.now(timezone.utc).isoformat(),
                },
                on_conflict=GRANT_CONFLICT_KEY,
            ).execute()
        except Exception as exc:
            _failed("upsert_grant", exc, scope=scope, role=role, permission_id=permission_id)
            return False
        log_event(
            "grant_stored",
            scope=scope,
            role=role,
            permission_id=permission_id,
            granted=granted,
        )
        return True

    def has_grants(self, scope: str) -> bool:
        result = self.client.table("role_permissions").select("id").eq(
            "organization_id", scope
        ).limit(1).execute()
        return bool(result.data)

    def bulk_seed_defaults(self, scope: str, force: bool = False) -> bool:
        """Write the default matrix unless the scope already has grant rows."""
        try:
            if not force and self.has_grants(scope):
                log_event("grant_seed_skipped", scope=scope, reason="already_initialized")
                return True
        except Exception as exc:
            _failed("bulk_seed_defaults", exc, scope=scope)
            return False

        catalog = self.fetch_catalog()
        if not catalog:
            log_event("grant_seed_failed", level=logging.ERROR, scope=scope, reason="empty_catalog")
            return False

        rows = default_grant_rows(scope, catalog)
        try:
            self.client.table("role_permissions").upsert(
                rows, on_conflict=GRANT_CONFLICT_KEY
            ).execute()
        except Exception as exc:
            _failed("bulk_seed_defaults", exc, scope=scope)
            return False

        incr_metric("permissions.grants.seeded", forced=force)
        log_event("grant_seed_completed", scope=scope, rows=len(rows), forced=force)
        return True

    def delete_grants(self, scope: str) -> bool:
        try:
            self.client.table("role_permissions").delete().eq(
                "organization_id", scope
            ).execute()
        except Exception as exc:
            _failed("delete_grants", exc, scope=scope)
            return False
        log_event("grants_deleted", scope=scope)
        return True

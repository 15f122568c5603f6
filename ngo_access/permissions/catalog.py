from __future__ import annotations

from typing import Final

ADMIN: Final[str] = "admin"
ACCOUNTANT: Final[str] = "accountant"
PROJECT_MANAGER: Final[str] = "project_manager"
DONOR: Final[str] = "donor"

KNOWN_ROLES: Final[tuple[str, ...]] = (ADMIN, ACCOUNTANT, PROJECT_MANAGER, DONOR)

ROLE_LABELS: Final[dict[str, str]] = {
    ADMIN: "Administrator",
    ACCOUNTANT: "Accountant (Read-Only)",
    PROJECT_MANAGER: "Project Manager",
    DONOR: "Donor",
}

PERMISSION_CATEGORIES: Final[dict[str, tuple[str, tuple[str, ...]]]] = {
    "finances": (
        "Financial Management",
        ("view_finances", "manage_expenses", "edit_expenses", "delete_expenses"),
    ),
    "budgets": ("Budget Management", ("manage_budgets", "edit_budgets", "delete_budgets")),
    "ledger": (
        "General Ledger",
        ("view_ledger", "manage_ledger", "edit_ledger", "delete_ledger"),
    ),
    "projects": (
        "Project Management",
        ("view_projects", "manage_projects", "edit_projects", "delete_projects"),
    ),
    "donors": (
        "Donor Management",
        ("view_donors", "manage_donors", "edit_donors", "delete_donors"),
    ),
    "reports": (
        "Report Management",
        ("view_reports", "generate_reports", "edit_reports", "delete_reports"),
    ),
    "users": ("User Management", ("view_users", "manage_users", "edit_users", "delete_users")),
    "settings": ("System Settings", ("view_settings", "manage_settings", "edit_settings")),
    "currencies": ("Currencies", ("manage_currencies", "edit_currencies", "delete_currencies")),
    "categories": ("Categories", ("manage_categories", "edit_categories", "delete_categories")),
    "accounts": ("Chart of Accounts", ("manage_accounts", "edit_accounts", "delete_accounts")),
    "access": ("Access Control", ("manage_permissions", "assign_roles")),
}

BUILTIN_PERMISSIONS: Final[tuple[str, ...]] = tuple(
    permission_id
    for _label, permission_ids in PERMISSION_CATEGORIES.values()
    for permission_id in permission_ids
)

# Roles absent from this table, and ids absent from a role's bundle, are
# seeded with granted=False. Admin is granted every catalog id.
DEFAULT_ROLE_BUNDLES: Final[dict[str, frozenset[str]]] = {
    ACCOUNTANT: frozenset(
        {
            "view_finances",
            "view_ledger",
            "view_projects",
            "view_donors",
            "view_reports",
            "view_users",
            "generate_reports",
        }
    ),
    PROJECT_MANAGER: frozenset(
        {
            "view_finances",
            "view_projects",
            "manage_projects",
            "edit_projects",
            "delete_projects",
            "view_donors",
            "view_reports",
            "generate_reports",
            "edit_reports",
        }
    ),
    DONOR: frozenset({"view_reports", "view_projects"}),
}


def normalize_role(role: str | None) -> str | None:
    raw = (role or "").strip()
    if not raw or raw in {"null", "undefined"}:
        return None
    return raw


def is_admin_role(role: str | None) -> bool:
    return normalize_role(role) == ADMIN


def is_super_admin_email(email: str | None, super_admin_emails: list[str]) -> bool:
    if not email:
        return False
    return email.strip().lower() in {e.strip().lower() for e in super_admin_emails}


def default_granted(role: str, permission_id: str) -> bool:
    if role == ADMIN:
        return True
    return permission_id in DEFAULT_ROLE_BUNDLES.get(role, frozenset())


def default_grant_rows(scope: str, catalog: list[str]) -> list[dict]:
    """Default matrix for every known role x every catalog permission."""
    return [
        {
            "organization_id": scope,
            "role": role,
            "permission_id": permission_id,
            "granted": default_granted(role, permission_id),
        }
        for role in KNOWN_ROLES
        for permission_id in catalog
    ]

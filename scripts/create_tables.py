#!/usr/bin/env python3
"""Create the access-control tables and seed the permission catalog."""

import os
import sys

import psycopg2
from dotenv import load_dotenv

project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, project_root)
load_dotenv(os.path.join(project_root, ".env"))

from ngo_access.permissions.catalog import PERMISSION_CATEGORIES

DATABASE_URL = os.getenv("DATABASE_URL")

SQL = """
-- 1. organizations
CREATE TABLE IF NOT EXISTS organizations (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    name VARCHAR(255) NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

-- 2. permissions (catalog)
CREATE TABLE IF NOT EXISTS permissions (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    permission_id VARCHAR(100) UNIQUE NOT NULL,
    name VARCHAR(255) NOT NULL,
    description TEXT,
    category VARCHAR(100) NOT NULL,
    created_at TIMESTAMPTZ DEFAULT NOW()
);

-- 3. user_roles
CREATE TABLE IF NOT EXISTS user_roles (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    user_id UUID,
    organization_id UUID REFERENCES organizations(id) ON DELETE CASCADE,
    role VARCHAR(50) NOT NULL,
    created_at TIMESTAMPTZ DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_user_roles_user_org ON user_roles(user_id, organization_id);

-- 4. role_permissions (grants)
CREATE TABLE IF NOT EXISTS role_permissions (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    organization_id UUID REFERENCES organizations(id) ON DELETE CASCADE,
    role VARCHAR(50) NOT NULL,
    permission_id VARCHAR(100) REFERENCES permissions(permission_id),
    granted BOOLEAN DEFAULT FALSE,
    created_at TIMESTAMPTZ DEFAULT NOW(),
    updated_at TIMESTAMPTZ DEFAULT NOW(),
    UNIQUE(organization_id, role, permission_id)
);
CREATE INDEX IF NOT EXISTS idx_role_permissions_org ON role_permissions(organization_id);
"""

SEED_PERMISSION = """
INSERT INTO permissions (permission_id, name, category)
VALUES (%s, %s, %s)
ON CONFLICT (permission_id) DO NOTHING;
"""


def catalog_rows() -> list[tuple[str, str, str]]:
    return [
        (permission_id, permission_id.replace("_", " ").title(), category)
        for category, (_label, permission_ids) in PERMISSION_CATEGORIES.items()
        for permission_id in permission_ids
    ]


def main():
    if not DATABASE_URL:
        print("Error: DATABASE_URL must be set in .env")
        sys.exit(1)

    print("Connecting to database...")
    conn = psycopg2.connect(DATABASE_URL)
    conn.autocommit = True
    cur = conn.cursor()

    print("Creating tables...")
    cur.execute(SQL)

    print("Seeding permission catalog...")
    cur.executemany(SEED_PERMISSION, catalog_rows())

    cur.execute("SELECT table_name FROM information_schema.tables WHERE table_schema = 'public' ORDER BY table_name;")
    tables = cur.fetchall()
    print(f"\nTables: {[t[0] for t in tables]}")

    cur.execute("SELECT category, count(*) FROM permissions GROUP BY category ORDER BY category;")
    print(f"Permissions per category: {cur.fetchall()}")

    cur.close()
    conn.close()
    print("\nDone!")


if __name__ == "__main__":
    main()

#!/usr/bin/env python3
"""
Seed the default role/permission matrix for the organization.

Skips when grants already exist; pass --force to overwrite them with defaults.
Run from project root: python scripts/seed_permissions.py [--force]
"""

import os
import sys

# Add project root to path
project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, project_root)

# Load .env file
from dotenv import load_dotenv
load_dotenv(os.path.join(project_root, ".env"))

from ngo_access.auth.identity import IdentityResolver
from ngo_access.db import supabase
from ngo_access.permissions.store import PermissionStore


def main():
    force = "--force" in sys.argv[1:]

    scope = IdentityResolver(supabase).scope_id()
    if not scope:
        print("Error: no organization found")
        sys.exit(1)

    store = PermissionStore(supabase)
    if not store.bulk_seed_defaults(scope, force=force):
        print("Error: failed to seed default permissions (see logs)")
        sys.exit(1)

    grants = store.fetch_grants(scope)
    granted = sum(1 for g in grants if g.granted)
    print(f"Organization {scope}:")
    print(f"  Grant rows: {len(grants)}")
    print(f"  Granted: {granted}")
    print(f"  Denied: {len(grants) - granted}")


if __name__ == "__main__":
    main()

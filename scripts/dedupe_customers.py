#!/usr/bin/env python
"""
Phone Duplicate Resolution Script

Finds tenant customers that share a normalized phone number and merges each
set into one canonical record (dependents repointed, losers deleted).
Sets linked to more than one account are never merged; they are reported.

Usage:
    # List duplicate sets (dry run)
    python scripts/dedupe_customers.py --business-id=1 --list

    # Merge the set for one phone number
    python scripts/dedupe_customers.py --business-id=1 --phone="+1 602 686 6672"

    # Merge every set (requires confirmation)
    python scripts/dedupe_customers.py --business-id=1 --resolve-all --confirm

    # Recompute phone keys after changing PHONE_COUNTRY_CODES / PHONE_MIN_DIGITS
    python scripts/dedupe_customers.py --business-id=1 --reindex-phones

Environment:
    DATABASE_URL: database connection string
"""
from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from dotenv import load_dotenv

from app.identity.config import load_config
from app.identity.modules.customer_linking.errors import DifferentUserConflict
from app.identity.modules.customer_linking.service import LinkingOrchestrator
from scripts._db_utils import script_session


def list_groups(orch: LinkingOrchestrator, business_id: int) -> None:
    groups = orch.repository.duplicate_phone_groups(business_id)
    if not groups:
        print("No phone duplicate sets found.")
        return

    print(f"Found {len(groups)} phone duplicate sets:\n")
    for i, (phone_key, dupes) in enumerate(groups.items(), 1):
        owners = {c.user_id for c in dupes if c.user_id is not None}
        flag = "  [SKIPPED: linked to several accounts]" if len(owners) > 1 else ""
        print(f"{i}. phone key {phone_key} ({len(dupes)} records){flag}")
        for c in dupes:
            linked = f"user {c.user_id}" if c.user_id is not None else "guest"
            name = " ".join(p for p in (c.first_name, c.last_name) if p) or "-"
            print(f"   ID {c.id}: {c.email} | {c.phone} | {name} | {linked} | created {c.created_at:%Y-%m-%d}")


def resolve_phone(orch: LinkingOrchestrator, business_id: int, phone: str) -> None:
    try:
        c = orch.resolve_phone_duplicates(business_id, phone)
    except DifferentUserConflict as e:
        print(f"ERROR: {e} (existing user {e.existing_user_id}, other user {e.attempted_user_id})")
        sys.exit(1)
    if c is None:
        print(f"No customers found for phone {phone!r}.")
        return
    print(f"SUCCESS: canonical customer ID {c.id} ({c.email})")


def resolve_all(orch: LinkingOrchestrator, business_id: int, confirm: bool = False) -> None:
    groups = orch.repository.duplicate_phone_groups(business_id)
    if not groups:
        print("No phone duplicate sets found.")
        return

    print(f"Found {len(groups)} phone duplicate sets to resolve.")
    if not confirm:
        print("\nRun with --confirm to actually merge these sets.")
        print("Review the list first with --list")
        return

    report = orch.resolve_all_phone_duplicates(business_id)
    print(
        f"\nResolved {report.groups_found - report.groups_skipped} sets, "
        f"removed {report.customers_removed} duplicate customers, "
        f"skipped {report.groups_skipped}."
    )


def main():
    load_dotenv()
    parser = argparse.ArgumentParser(description="Tenant customer phone deduplication tool")
    parser.add_argument("--business-id", type=int, required=True, help="Business (tenant) id")
    parser.add_argument("--list", action="store_true", help="List phone duplicate sets")
    parser.add_argument("--phone", help="Merge the duplicate set for this phone number")
    parser.add_argument("--resolve-all", action="store_true", help="Merge every phone duplicate set")
    parser.add_argument("--reindex-phones", action="store_true", help="Recompute normalized phone keys")
    parser.add_argument("--confirm", action="store_true", help="Confirm merge operations")

    args = parser.parse_args()
    config = load_config()
    logging.basicConfig(level=config["LOG_LEVEL"], format="%(levelname)s %(name)s: %(message)s")

    with script_session(config["DATABASE_URL"]) as s:
        orch = LinkingOrchestrator.from_config(s, config)
        if args.reindex_phones:
            changed = orch.refresh_phone_keys(args.business_id)
            print(f"Updated {changed} phone keys.")
        elif args.list:
            list_groups(orch, args.business_id)
        elif args.phone:
            resolve_phone(orch, args.business_id, args.phone)
        elif args.resolve_all:
            resolve_all(orch, args.business_id, confirm=args.confirm)
        else:
            parser.print_help()


if __name__ == "__main__":
    main()

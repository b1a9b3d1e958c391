"""
CUSTOMER IDENTITY RESOLUTION
============================

Every booking, order and invoice hangs off a tenant customer. This module
decides which customer row a checkout or a signed-in account maps to.

Caller                         | Entry point                      | May create? | May merge?
-------------------------------|----------------------------------|-------------|-----------
Signed-in checkout / auth hook | link_user_to_customer            | YES         | YES
Guest checkout                 | find_or_create_guest_customer    | YES         | NO
Reporting / SMS inbound lookup | find_customers_by_phone          | NO          | NO
Maintenance script             | resolve_all_phone_duplicates     | NO          | YES

INVARIANTS:
- An account has at most one linked customer per business
- A linked customer is never handed to a different account
- Guests can never check out as an email/phone owned by an account
- Each call is one transaction; a raised error means nothing changed
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from flask import current_app, has_app_context
from sqlalchemy.orm import Session

from app.identity.audit import record_event
from app.identity.db import atomic
from app.identity.modules.customer_linking.accounts import AccountDescriptor
from app.identity.modules.customer_linking.conflicts import CandidateIdentity, ConflictDetector
from app.identity.modules.customer_linking.errors import InvalidAccountRole
from app.identity.modules.customer_linking.merger import DuplicateMerger
from app.identity.modules.customer_linking.models import TenantCustomer
from app.identity.modules.customer_linking.repository import CustomerRepository
from app.identity.modules.customer_linking.utils import (
    PhoneNormalizer,
    clean_text,
    normalize_email,
    parse_opt_in,
)

logger = logging.getLogger(__name__)

DEFAULT_LINKABLE_ROLES = ("client",)
GUEST_FIELDS = ("first_name", "last_name", "phone", "phone_opt_in")


@dataclass(frozen=True)
class ResolutionReport:
    groups_found: int = 0
    customers_removed: int = 0
    groups_skipped: int = 0


class LinkingOrchestrator:
    """
    Public entry points. Composes repository → detector → merger; each call
    runs in its own transaction via atomic().
    """

    def __init__(
        self,
        s: Session,
        *,
        repository: CustomerRepository | None = None,
        detector: ConflictDetector | None = None,
        merger: DuplicateMerger | None = None,
        linkable_roles: Iterable[str] = DEFAULT_LINKABLE_ROLES,
    ) -> None:
        self.s = s
        self.repository = repository or CustomerRepository(s)
        self.detector = detector or ConflictDetector(self.repository)
        self.merger = merger or DuplicateMerger(self.repository)
        self.linkable_roles = tuple(r.lower() for r in linkable_roles)

    @classmethod
    def from_config(cls, s: Session, config: Mapping[str, Any]) -> "LinkingOrchestrator":
        repository = CustomerRepository(s, PhoneNormalizer.from_config(config))
        return cls(
            s,
            repository=repository,
            linkable_roles=config.get("LINKABLE_ROLES") or DEFAULT_LINKABLE_ROLES,
        )

    @property
    def normalizer(self) -> PhoneNormalizer:
        return self.repository.normalizer

    # ------------------------------------------------------------------
    # Signed-in accounts
    # ------------------------------------------------------------------

    def link_user_to_customer(self, business_id: int, account: AccountDescriptor) -> TenantCustomer:
        if (account.role or "").lower() not in self.linkable_roles:
            raise InvalidAccountRole(account_id=account.id, role=account.role)
        email = account.normalized_email
        if not email:
            raise ValueError("Account email is required to link a customer.")
        phone_key = self.normalizer.normalize(account.phone)

        with atomic(self.s):
            result = self.detector.classify(business_id, CandidateIdentity(email, account.phone, account.id))
            if result.is_conflict:
                if len(self.repository.find_all_by_phone(business_id, phone_key)) > 1:
                    # Duplicates stay as they are: with a foreign account in the set
                    # there is no safe choice of authoritative record.
                    logger.info(
                        "Phone duplicate resolution skipped business_id=%s user_id=%s existing_user_id=%s",
                        business_id,
                        account.id,
                        result.existing_user_id,
                    )
                result.raise_for_conflict()

            matches = self.repository.find_matches(
                business_id,
                email=email,
                phone_key=phone_key,
                user_id=account.id,
            )
            if not matches:
                return self._create_for_account(business_id, account)

            if len(matches) == 1 and matches[0].user_id == account.id:
                logger.debug("Account %s already linked to customer %s", account.id, matches[0].id)
                return matches[0]

            if len(matches) > 1:
                logger.info(
                    "Found %s duplicate customers for user_id=%s business_id=%s",
                    len(matches),
                    account.id,
                    business_id,
                )
            return self.merger.merge(business_id, matches, account, reason="account link")

    def _create_for_account(self, business_id: int, account: AccountDescriptor) -> TenantCustomer:
        phone = account.phone
        if phone and not self.normalizer.is_valid(phone):
            logger.warning("Invalid phone on account %s; creating customer without phone", account.id)
            phone = None
        opt_in = bool(account.phone_opt_in) and phone is not None
        c = self.repository.create(
            business_id,
            user_id=account.id,
            email=account.normalized_email,
            phone=phone,
            first_name=account.first_name,
            last_name=account.last_name,
            phone_opt_in=opt_in,
            phone_opt_in_at=(account.phone_opt_in_at or datetime.utcnow()) if opt_in else None,
        )
        record_event(
            self.s,
            business_id=business_id,
            actor_account_id=account.id,
            action="customer.create",
            entity_type="TenantCustomer",
            entity_id=str(c.id),
            metadata={"user_id": account.id, "source": "account"},
        )
        return c

    # ------------------------------------------------------------------
    # Guest checkout
    # ------------------------------------------------------------------

    def find_or_create_guest_customer(
        self,
        business_id: int,
        email: str,
        attrs: Mapping[str, Any] | None = None,
    ) -> TenantCustomer:
        """
        Guest checkout. Raises GuestIdentityConflict when the email or phone
        belongs to a registered account; callers should offer sign-in.
        attrs: first_name, last_name, phone, phone_opt_in (other keys ignored).
        """
        email = normalize_email(email)
        if not email:
            raise ValueError("Email is required for guest checkout.")
        attrs = {k: v for k, v in (attrs or {}).items() if k in GUEST_FIELDS}

        phone = clean_text(attrs.get("phone"))
        if phone and not self.normalizer.is_valid(phone):
            logger.warning("Invalid phone number provided for guest customer, ignoring it: %r", phone)
            phone = None

        with atomic(self.s):
            self.detector.ensure_no_conflict(business_id, CandidateIdentity(email, phone, None))

            existing = self.repository.find_by_email(business_id, email)
            if existing is not None:
                values = self._guest_updates(existing, attrs, phone)
                if values:
                    self.repository.update(existing, values)
                    record_event(
                        self.s,
                        business_id=business_id,
                        actor_account_id=None,
                        action="customer.update",
                        entity_type="TenantCustomer",
                        entity_id=str(existing.id),
                        metadata={"fields_changed": sorted(values), "source": "guest_checkout"},
                    )
                return existing

            opt_in = parse_opt_in(attrs.get("phone_opt_in"))
            c = self.repository.create(
                business_id,
                user_id=None,
                email=email,
                phone=phone,
                first_name=clean_text(attrs.get("first_name")),
                last_name=clean_text(attrs.get("last_name")),
                phone_opt_in=opt_in,
                phone_opt_in_at=datetime.utcnow() if opt_in else None,
            )
            record_event(
                self.s,
                business_id=business_id,
                actor_account_id=None,
                action="customer.create",
                entity_type="TenantCustomer",
                entity_id=str(c.id),
                metadata={"source": "guest_checkout"},
            )
            return c

    def _guest_updates(self, c: TenantCustomer, attrs: Mapping[str, Any], phone: str | None) -> dict[str, Any]:
        """Supplied non-blank values replace current ones; blanks never clear anything."""
        values: dict[str, Any] = {}
        for field in ("first_name", "last_name"):
            v = clean_text(attrs.get(field))
            if v is not None and getattr(c, field) != v:
                values[field] = v
        if phone is not None and c.phone != phone:
            values["phone"] = phone
        if "phone_opt_in" in attrs:
            wants = parse_opt_in(attrs["phone_opt_in"])
            if wants and not c.phone_opt_in:
                values["phone_opt_in"] = True
                if c.phone_opt_in_at is None:
                    values["phone_opt_in_at"] = datetime.utcnow()
            elif not wants and c.phone_opt_in:
                values["phone_opt_in"] = False
                values["phone_opt_in_at"] = None
        return values

    # ------------------------------------------------------------------
    # Lookups and maintenance
    # ------------------------------------------------------------------

    def find_customers_by_phone(self, business_id: int, phone: str | None) -> list[TenantCustomer]:
        return self.repository.find_customers_by_phone(business_id, phone)

    def resolve_phone_duplicates(self, business_id: int, phone: str | None) -> TenantCustomer | None:
        """Merge one phone duplicate set without linking. None when nothing matches."""
        phone_key = self.normalizer.normalize(phone)
        if not phone_key:
            return None
        with atomic(self.s):
            dupes = self.repository.find_all_by_phone(business_id, phone_key)
            if not dupes:
                return None
            if len(dupes) == 1:
                return dupes[0]
            logger.info("Found %s duplicate customers for phone key %s", len(dupes), phone_key)
            return self.merger.merge(business_id, dupes, reason="phone duplicate resolution")

    def resolve_all_phone_duplicates(self, business_id: int) -> ResolutionReport:
        """
        Sweep a business for phone duplicate sets and merge each one.
        Sets linked to more than one account are left alone and counted as skipped.
        """
        found = removed = skipped = 0
        with atomic(self.s):
            groups = self.repository.duplicate_phone_groups(business_id)
            for phone_key, dupes in groups.items():
                found += 1
                owners = {c.user_id for c in dupes if c.is_linked}
                if len(owners) > 1:
                    skipped += 1
                    logger.warning(
                        "Skipping phone key %s in business_id=%s: linked to %s accounts",
                        phone_key,
                        business_id,
                        len(owners),
                    )
                    continue
                self.merger.merge(business_id, dupes, reason="phone duplicate sweep")
                removed += len(dupes) - 1
        logger.info(
            "Resolved phone duplicates business_id=%s groups=%s removed=%s skipped=%s",
            business_id,
            found,
            removed,
            skipped,
        )
        return ResolutionReport(groups_found=found, customers_removed=removed, groups_skipped=skipped)

    def refresh_phone_keys(self, business_id: int) -> int:
        with atomic(self.s):
            return self.repository.refresh_phone_keys(business_id)


# ============================================================================
# Module-level helpers (request handlers, scripts)
# ============================================================================


def get_orchestrator(s: Session, config: Mapping[str, Any] | None = None) -> LinkingOrchestrator:
    if config is None:
        config = current_app.config if has_app_context() else {}
    return LinkingOrchestrator.from_config(s, config)


def link_user_to_customer(
    s: Session,
    business_id: int,
    account: AccountDescriptor,
    *,
    config: Mapping[str, Any] | None = None,
) -> TenantCustomer:
    return get_orchestrator(s, config).link_user_to_customer(business_id, account)


def find_or_create_guest_customer(
    s: Session,
    business_id: int,
    email: str,
    attrs: Mapping[str, Any] | None = None,
    *,
    config: Mapping[str, Any] | None = None,
) -> TenantCustomer:
    return get_orchestrator(s, config).find_or_create_guest_customer(business_id, email, attrs)


def find_customers_by_phone(
    s: Session,
    business_id: int,
    phone: str | None,
    *,
    config: Mapping[str, Any] | None = None,
) -> list[TenantCustomer]:
    return get_orchestrator(s, config).find_customers_by_phone(business_id, phone)

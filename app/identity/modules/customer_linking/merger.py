"""
Duplicate customer merge.

Given a duplicate set (records one tenant holds for the same person), keep one
canonical row and fold the rest into it:

  1. repoint every dependent record of every loser to the canonical id
  2. delete the losers (flushed, so FK checks run now)
  3. one UPDATE on the canonical: user_id + reconciled attributes

The caller owns the transaction. Any exception leaves all three phases undone.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import datetime
from typing import Any

from app.identity.audit import record_event
from app.identity.models import Base
from app.identity.modules.customer_linking.accounts import AccountDescriptor
from app.identity.modules.customer_linking.errors import DifferentUserConflict
from app.identity.modules.customer_linking.models import DEPENDENT_MODELS, TenantCustomer
from app.identity.modules.customer_linking.repository import CustomerRepository
from app.identity.modules.customer_linking.utils import is_blank, normalize_email

logger = logging.getLogger(__name__)

MERGEABLE_FIELDS = ("first_name", "last_name", "email", "phone")


def _age_key(c: TenantCustomer) -> tuple[datetime, int]:
    return (c.created_at or datetime.max, c.id or 0)


class DuplicateMerger:
    def __init__(
        self,
        repository: CustomerRepository,
        dependent_models: Sequence[type[Base]] = DEPENDENT_MODELS,
    ) -> None:
        self.repository = repository
        self.dependent_models = tuple(dependent_models)

    @property
    def s(self):
        return self.repository.s

    def select_canonical(self, customers: Sequence[TenantCustomer]) -> TenantCustomer:
        """
        Priority:
        1. the one record linked to an account
        2. otherwise the oldest (created_at, then id)
        Several records linked to the same account: the oldest of those.
        """
        if not customers:
            raise ValueError("Cannot select a canonical customer from an empty set.")
        ordered = sorted(customers, key=_age_key)
        linked = [c for c in ordered if c.is_linked]
        if linked:
            return linked[0]
        return ordered[0]

    def reconcile(
        self,
        canonical: TenantCustomer,
        losers: Sequence[TenantCustomer],
        account: AccountDescriptor | None = None,
    ) -> dict[str, Any]:
        """
        Column → new value for the canonical row. Only blank canonical fields are
        filled: account data first, then losers in age order.
        """
        values: dict[str, Any] = {}
        if account is not None and not canonical.is_linked:
            values["user_id"] = account.id

        normalizer = self.repository.normalizer
        account_values: dict[str, Any] = {}
        if account is not None:
            account_values = {
                "first_name": account.first_name,
                "last_name": account.last_name,
                "email": account.normalized_email,
                "phone": account.phone if normalizer.is_valid(account.phone) else None,
            }

        for field in MERGEABLE_FIELDS:
            current = getattr(canonical, field)
            if not is_blank(current):
                continue
            fill = account_values.get(field)
            if is_blank(fill):
                fill = next((getattr(c, field) for c in losers if not is_blank(getattr(c, field))), None)
            if not is_blank(fill):
                values[field] = fill

        if account is not None and "email" not in values:
            mine = account.normalized_email
            # Case is not data: "TEST@x.com" and "test@x.com" are the same address.
            if mine and canonical.email != mine and normalize_email(canonical.email) == mine:
                values["email"] = mine

        values.update(self._reconcile_opt_in(canonical, losers, account))
        return values

    def _reconcile_opt_in(
        self,
        canonical: TenantCustomer,
        losers: Sequence[TenantCustomer],
        account: AccountDescriptor | None,
    ) -> dict[str, Any]:
        opted_in = [c for c in losers if c.phone_opt_in]
        timestamps = sorted(c.phone_opt_in_at for c in opted_in if c.phone_opt_in_at is not None)
        if canonical.phone_opt_in:
            if canonical.phone_opt_in_at is None and timestamps:
                return {"phone_opt_in_at": timestamps[0]}
            return {}
        if opted_in:
            return {"phone_opt_in": True, "phone_opt_in_at": timestamps[0] if timestamps else datetime.utcnow()}
        if account is not None and account.phone_opt_in:
            return {"phone_opt_in": True, "phone_opt_in_at": account.phone_opt_in_at or datetime.utcnow()}
        return {}

    def transfer_dependents(self, canonical: TenantCustomer, losers: Sequence[TenantCustomer]) -> dict[str, int]:
        loser_ids = [c.id for c in losers]
        moved: dict[str, int] = {}
        if not loser_ids:
            return moved
        for model in self.dependent_models:
            count = (
                self.s.query(model)
                .filter(model.tenant_customer_id.in_(loser_ids))  # type: ignore[attr-defined]
                .update({"tenant_customer_id": canonical.id}, synchronize_session=False)
            )
            moved[model.__tablename__] = count
        return moved

    def merge(
        self,
        business_id: int,
        customers: Sequence[TenantCustomer],
        account: AccountDescriptor | None = None,
        *,
        reason: str | None = None,
    ) -> TenantCustomer:
        """
        Merge a duplicate set (of one or more records) and, when account is
        given, link the survivor to it in the same UPDATE.
        """
        ordered = sorted(customers, key=_age_key)
        if not ordered:
            raise ValueError("Cannot merge an empty set of customers.")
        for c in ordered:
            if c.business_id != business_id:
                raise ValueError(f"Customer {c.id} does not belong to business {business_id}.")

        self._guard_single_account(business_id, ordered, account)

        canonical = self.select_canonical(ordered)
        losers = [c for c in ordered if c.id != canonical.id]
        self._flag_same_account_links(business_id, ordered, canonical)

        values = self.reconcile(canonical, losers, account)
        loser_summary = [{"id": c.id, "email": c.email, "phone": c.phone, "user_id": c.user_id} for c in losers]

        moved = self.transfer_dependents(canonical, losers)
        for loser in losers:
            self.repository.delete(loser)
        self.s.flush()

        self.repository.update(canonical, values)

        actor = account.id if account is not None else None
        if losers:
            logger.info(
                "Merged customers business_id=%s canonical_id=%s removed=%s linked_user_id=%s",
                business_id,
                canonical.id,
                [c["id"] for c in loser_summary],
                canonical.user_id,
            )
            record_event(
                self.s,
                business_id=business_id,
                actor_account_id=actor,
                action="customer.merge",
                entity_type="TenantCustomer",
                entity_id=str(canonical.id),
                reason=reason,
                metadata={
                    "merged_customers": loser_summary,
                    "dependents_updated": moved,
                    "fields_merged": sorted(k for k in values if k != "user_id"),
                    "linked_user_id": values.get("user_id"),
                },
            )
        if "user_id" in values:
            record_event(
                self.s,
                business_id=business_id,
                actor_account_id=actor,
                action="customer.link",
                entity_type="TenantCustomer",
                entity_id=str(canonical.id),
                reason=reason,
                metadata={"user_id": values["user_id"], "fields_synced": sorted(k for k in values if k != "user_id")},
            )
        return canonical

    def _guard_single_account(
        self,
        business_id: int,
        customers: Sequence[TenantCustomer],
        account: AccountDescriptor | None,
    ) -> None:
        # Callers classify first; this only stops a merge that would move one
        # account's history under another.
        owners = [c for c in customers if c.is_linked]
        if not owners:
            return
        expected = account.id if account is not None else owners[0].user_id
        for c in owners:
            if c.user_id != expected:
                raise DifferentUserConflict(
                    identifier=c.phone or c.email,
                    identifier_type="phone" if c.phone else "email",
                    business_id=business_id,
                    existing_user_id=c.user_id,  # type: ignore[arg-type]
                    attempted_user_id=expected,
                )

    def _flag_same_account_links(
        self,
        business_id: int,
        customers: Sequence[TenantCustomer],
        canonical: TenantCustomer,
    ) -> None:
        linked = [c for c in customers if c.is_linked]
        if len(linked) < 2:
            return
        ids = [c.id for c in linked]
        logger.warning(
            "Data integrity: business_id=%s user_id=%s has %s linked customers %s; coalescing into %s",
            business_id,
            canonical.user_id,
            len(linked),
            ids,
            canonical.id,
        )
        record_event(
            self.s,
            business_id=business_id,
            actor_account_id=None,
            action="customer.integrity_flag",
            entity_type="TenantCustomer",
            entity_id=str(canonical.id),
            reason="multiple customers linked to one account",
            metadata={"user_id": canonical.user_id, "linked_customer_ids": ids},
        )

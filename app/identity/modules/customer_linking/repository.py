from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import datetime
from typing import Any

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from app.identity.modules.customer_linking.models import TenantCustomer
from app.identity.modules.customer_linking.utils import PhoneNormalizer, normalize_email

logger = logging.getLogger(__name__)

# Columns callers may write; id/business_id/phone_key/created_at are managed here.
WRITABLE_FIELDS = frozenset(
    {
        "user_id",
        "email",
        "phone",
        "first_name",
        "last_name",
        "phone_opt_in",
        "phone_opt_in_at",
    }
)


class CustomerRepository:
    """
    Tenant-scoped access to tenant_customers. Every method takes business_id
    explicitly; nothing here reads an ambient "current business".
    """

    def __init__(self, s: Session, normalizer: PhoneNormalizer | None = None) -> None:
        self.s = s
        self.normalizer = normalizer or PhoneNormalizer()

    def _scoped(self, business_id: int):
        return self.s.query(TenantCustomer).filter(TenantCustomer.business_id == business_id)

    def _ordered(self, q):
        return q.order_by(TenantCustomer.created_at.asc(), TenantCustomer.id.asc())

    def find_by_email(self, business_id: int, email: str | None) -> TenantCustomer | None:
        e = normalize_email(email)
        if not e:
            return None
        # lower() also reaches rows stored before emails were normalized on write.
        return self._ordered(self._scoped(business_id).filter(func.lower(TenantCustomer.email) == e)).first()

    def find_by_user_id(self, business_id: int, user_id: int | None) -> TenantCustomer | None:
        if user_id is None:
            return None
        return self._ordered(self._scoped(business_id).filter(TenantCustomer.user_id == user_id)).first()

    def find_all_by_phone(self, business_id: int, phone_key: str | None) -> list[TenantCustomer]:
        """
        Duplicate set for one normalized phone, oldest first.
        Canonical selection depends on this order.
        """
        if not phone_key:
            return []
        return self._ordered(self._scoped(business_id).filter(TenantCustomer.phone_key == phone_key)).all()

    def find_linked_by_phone(
        self,
        business_id: int,
        phone_key: str | None,
        *,
        exclude_user_id: int | None = None,
    ) -> TenantCustomer | None:
        if not phone_key:
            return None
        q = self._scoped(business_id).filter(
            TenantCustomer.phone_key == phone_key,
            TenantCustomer.user_id.is_not(None),
        )
        if exclude_user_id is not None:
            q = q.filter(TenantCustomer.user_id != exclude_user_id)
        return self._ordered(q).first()

    def find_matches(
        self,
        business_id: int,
        *,
        email: str | None,
        phone_key: str | None,
        user_id: int | None = None,
    ) -> list[TenantCustomer]:
        """Every record sharing the email, the phone key, or the account link, oldest first."""
        clauses = []
        e = normalize_email(email)
        if e:
            clauses.append(func.lower(TenantCustomer.email) == e)
        if phone_key:
            clauses.append(TenantCustomer.phone_key == phone_key)
        if user_id is not None:
            clauses.append(TenantCustomer.user_id == user_id)
        if not clauses:
            return []
        return self._ordered(self._scoped(business_id).filter(or_(*clauses))).all()

    def find_customers_by_phone(self, business_id: int, phone: str | None) -> list[TenantCustomer]:
        """Read-only lookup by raw or already-normalized phone. Always a list."""
        return self.find_all_by_phone(business_id, self.normalizer.normalize(phone))

    def create(self, business_id: int, **attrs: Any) -> TenantCustomer:
        """
        Insert and flush. A second row for the same (business_id, email) raises
        sqlalchemy.exc.IntegrityError; callers treat that as retryable.
        """
        unknown = set(attrs) - WRITABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown customer fields: {', '.join(sorted(unknown))}")
        now = datetime.utcnow()
        c = TenantCustomer(
            business_id=business_id,
            user_id=attrs.get("user_id"),
            email=normalize_email(attrs.get("email")),
            phone=attrs.get("phone"),
            phone_key=self.normalizer.normalize(attrs.get("phone")),
            first_name=attrs.get("first_name"),
            last_name=attrs.get("last_name"),
            phone_opt_in=bool(attrs.get("phone_opt_in")),
            phone_opt_in_at=attrs.get("phone_opt_in_at"),
            created_at=now,
            updated_at=now,
        )
        self.s.add(c)
        self.s.flush()
        return c

    def update(self, c: TenantCustomer, values: Mapping[str, Any]) -> TenantCustomer:
        """
        Apply all changes as a single UPDATE statement, then reload the row.
        Either every value lands or none does.
        """
        if not values:
            return c
        unknown = set(values) - WRITABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown customer fields: {', '.join(sorted(unknown))}")
        row = dict(values)
        if "email" in row:
            row["email"] = normalize_email(row["email"])
        if "phone" in row:
            row["phone_key"] = self.normalizer.normalize(row["phone"])
        row["updated_at"] = datetime.utcnow()
        (
            self.s.query(TenantCustomer)
            .filter(TenantCustomer.id == c.id, TenantCustomer.business_id == c.business_id)
            .update(row, synchronize_session=False)
        )
        self.s.refresh(c)
        return c

    def delete(self, c: TenantCustomer) -> None:
        self.s.delete(c)

    def duplicate_phone_groups(self, business_id: int) -> dict[str, list[TenantCustomer]]:
        """Normalized phone → duplicate set, for keys shared by more than one record."""
        keys = [
            k
            for (k,) in (
                self.s.query(TenantCustomer.phone_key)
                .filter(TenantCustomer.business_id == business_id, TenantCustomer.phone_key != "")
                .group_by(TenantCustomer.phone_key)
                .having(func.count(TenantCustomer.id) > 1)
                .order_by(TenantCustomer.phone_key.asc())
                .all()
            )
        ]
        return {k: self.find_all_by_phone(business_id, k) for k in keys}

    def refresh_phone_keys(self, business_id: int) -> int:
        """Recompute phone_key for every row (after a normalizer config change). Returns rows changed."""
        changed = 0
        for c in self._scoped(business_id).order_by(TenantCustomer.id.asc()).all():
            key = self.normalizer.normalize(c.phone)
            if c.phone_key != key:
                c.phone_key = key
                changed += 1
        self.s.flush()
        logger.info("Refreshed phone keys business_id=%s changed=%s", business_id, changed)
        return changed

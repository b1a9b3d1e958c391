from __future__ import annotations

import enum
import logging
from dataclasses import dataclass

from app.identity.modules.customer_linking.errors import DifferentUserConflict, GuestIdentityConflict
from app.identity.modules.customer_linking.repository import CustomerRepository
from app.identity.modules.customer_linking.utils import normalize_email

logger = logging.getLogger(__name__)


class ConflictKind(str, enum.Enum):
    NO_CONFLICT = "no_conflict"
    SAME_IDENTITY = "same_identity"
    GUEST_CONFLICT = "guest_conflict"
    DIFFERENT_USER_CONFLICT = "different_user_conflict"


@dataclass(frozen=True)
class CandidateIdentity:
    email: str | None
    phone: str | None
    account_id: int | None = None  # None → guest checkout


@dataclass(frozen=True)
class Classification:
    """
    Outcome of checking a candidate against existing records.
    Holds scalars only; the matched record is identified by id.
    """

    kind: ConflictKind
    business_id: int
    identifier: str | None = None
    identifier_type: str | None = None  # "email" | "phone"
    existing_customer_id: int | None = None
    existing_user_id: int | None = None
    attempted_user_id: int | None = None

    @property
    def is_conflict(self) -> bool:
        return self.kind in (ConflictKind.GUEST_CONFLICT, ConflictKind.DIFFERENT_USER_CONFLICT)

    def raise_for_conflict(self) -> None:
        if self.kind is ConflictKind.DIFFERENT_USER_CONFLICT:
            raise DifferentUserConflict(
                identifier=self.identifier or "",
                identifier_type=self.identifier_type or "email",
                business_id=self.business_id,
                existing_user_id=self.existing_user_id,  # type: ignore[arg-type]
                attempted_user_id=self.attempted_user_id,
            )
        if self.kind is ConflictKind.GUEST_CONFLICT:
            raise GuestIdentityConflict(
                identifier=self.identifier or "",
                identifier_type=self.identifier_type or "email",
                business_id=self.business_id,
                existing_user_id=self.existing_user_id,  # type: ignore[arg-type]
            )


class ConflictDetector:
    """
    Decides whether a link/guest attempt would hand one account's identity to
    someone else. Read-only: never writes.

    Email is checked before phone. For phone, records linked to the candidate's
    own account are skipped when looking for a foreign link, so a duplicate set
    holding both "mine" and "someone else's" record is still a conflict.
    """

    def __init__(self, repository: CustomerRepository) -> None:
        self.repository = repository

    def classify(self, business_id: int, candidate: CandidateIdentity) -> Classification:
        email = normalize_email(candidate.email)
        phone_key = self.repository.normalizer.normalize(candidate.phone)
        account_id = candidate.account_id

        by_email = self.repository.find_by_email(business_id, email)
        if by_email is not None and by_email.is_linked and by_email.user_id != account_id:
            return self._conflict(business_id, "email", email, by_email.id, by_email.user_id, account_id)

        foreign_phone = self.repository.find_linked_by_phone(business_id, phone_key, exclude_user_id=account_id)
        if foreign_phone is not None:
            return self._conflict(
                business_id,
                "phone",
                candidate.phone or phone_key,
                foreign_phone.id,
                foreign_phone.user_id,  # type: ignore[arg-type]
                account_id,
            )

        if account_id is not None:
            if by_email is not None and by_email.user_id == account_id:
                return Classification(
                    ConflictKind.SAME_IDENTITY,
                    business_id,
                    identifier=email,
                    identifier_type="email",
                    existing_customer_id=by_email.id,
                    existing_user_id=account_id,
                    attempted_user_id=account_id,
                )
            own_phone = self.repository.find_linked_by_phone(business_id, phone_key)
            if own_phone is not None:
                return Classification(
                    ConflictKind.SAME_IDENTITY,
                    business_id,
                    identifier=candidate.phone or phone_key,
                    identifier_type="phone",
                    existing_customer_id=own_phone.id,
                    existing_user_id=account_id,
                    attempted_user_id=account_id,
                )

        return Classification(ConflictKind.NO_CONFLICT, business_id, attempted_user_id=account_id)

    def ensure_no_conflict(self, business_id: int, candidate: CandidateIdentity) -> Classification:
        result = self.classify(business_id, candidate)
        result.raise_for_conflict()
        return result

    def _conflict(
        self,
        business_id: int,
        identifier_type: str,
        identifier: str,
        customer_id: int,
        existing_user_id: int,
        account_id: int | None,
    ) -> Classification:
        kind = ConflictKind.GUEST_CONFLICT if account_id is None else ConflictKind.DIFFERENT_USER_CONFLICT
        logger.info(
            "Identity conflict kind=%s business_id=%s via=%s customer_id=%s existing_user_id=%s attempted_user_id=%s",
            kind.value,
            business_id,
            identifier_type,
            customer_id,
            existing_user_id,
            account_id,
        )
        return Classification(
            kind,
            business_id,
            identifier=identifier,
            identifier_type=identifier_type,
            existing_customer_id=customer_id,
            existing_user_id=existing_user_id,
            attempted_user_id=account_id,
        )

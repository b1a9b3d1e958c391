from __future__ import annotations

from typing import Any


class CustomerIdentityError(Exception):
    """
    Base for identity-resolution failures.
    Subclasses carry plain scalars (ids, strings) so the UI layer can build
    guidance without re-querying; never ORM instances.
    """

    code = "customer_identity_error"

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.code, "message": str(self)}


class DifferentUserConflict(CustomerIdentityError):
    """Email or phone already linked to another account in this business."""

    code = "different_user_conflict"

    def __init__(
        self,
        *,
        identifier: str,
        identifier_type: str,
        business_id: int,
        existing_user_id: int,
        attempted_user_id: int | None,
    ) -> None:
        self.identifier = identifier
        self.identifier_type = identifier_type  # "email" | "phone"
        self.business_id = business_id
        self.existing_user_id = existing_user_id
        self.attempted_user_id = attempted_user_id
        super().__init__(
            f"This {_label(identifier_type)} is already associated with another account. "
            "Please sign in with that account or contact the business for help."
        )

    def to_dict(self) -> dict[str, Any]:
        d = super().to_dict()
        d.update(
            {
                "identifier": self.identifier,
                "identifier_type": self.identifier_type,
                "business_id": self.business_id,
                "existing_user_id": self.existing_user_id,
                "attempted_user_id": self.attempted_user_id,
            }
        )
        return d


class GuestIdentityConflict(CustomerIdentityError):
    """Guest checkout with an email/phone that belongs to a registered account."""

    code = "guest_identity_conflict"
    sign_in_suggested = True

    def __init__(
        self,
        *,
        identifier: str,
        identifier_type: str,
        business_id: int,
        existing_user_id: int,
    ) -> None:
        self.identifier = identifier
        self.identifier_type = identifier_type
        self.business_id = business_id
        self.existing_user_id = existing_user_id
        super().__init__(
            f"This {_label(identifier_type)} is already associated with an existing account. "
            f"Please sign in to continue, or use a different {_label(identifier_type)}."
        )

    def to_dict(self) -> dict[str, Any]:
        d = super().to_dict()
        d.update(
            {
                "identifier": self.identifier,
                "identifier_type": self.identifier_type,
                "business_id": self.business_id,
                "existing_user_id": self.existing_user_id,
                "sign_in_suggested": self.sign_in_suggested,
            }
        )
        return d


class InvalidAccountRole(CustomerIdentityError, ValueError):
    """Account type is not allowed to own a customer record."""

    code = "invalid_account_role"

    def __init__(self, *, account_id: int | None, role: str | None) -> None:
        self.account_id = account_id
        self.role = role
        super().__init__(f"Account role {role!r} cannot be linked to a customer record.")

    def to_dict(self) -> dict[str, Any]:
        d = super().to_dict()
        d.update({"account_id": self.account_id, "role": self.role})
        return d


def _label(identifier_type: str) -> str:
    return "phone number" if identifier_type == "phone" else "email address"

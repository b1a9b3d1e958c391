from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from app.identity.modules.customer_linking.utils import clean_text, normalize_email, parse_opt_in


@dataclass(frozen=True)
class AccountDescriptor:
    """
    What the authentication subsystem tells us about a signed-in account.
    phone_opt_in is None when the account never expressed a preference.
    """

    id: int
    email: str
    role: str
    phone: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    phone_opt_in: bool | None = None
    phone_opt_in_at: datetime | None = None

    @property
    def normalized_email(self) -> str:
        return normalize_email(self.email)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "AccountDescriptor":
        if data.get("id") is None:
            raise ValueError("Account id is required.")
        opt_in = data.get("phone_opt_in")
        return cls(
            id=int(data["id"]),
            email=str(data.get("email") or ""),
            role=str(data.get("role") or "").strip().lower(),
            phone=_text(data.get("phone")),
            first_name=_text(data.get("first_name")),
            last_name=_text(data.get("last_name")),
            phone_opt_in=None if opt_in is None else parse_opt_in(opt_in),
        )


def _text(value: Any) -> str | None:
    # A phone may arrive as a JSON number.
    return clean_text(None if value is None else str(value))

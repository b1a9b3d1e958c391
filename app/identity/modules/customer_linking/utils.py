from __future__ import annotations

import re
from collections.abc import Mapping

DEFAULT_COUNTRY_CODES: dict[str, int] = {"1": 10}
DEFAULT_MIN_DIGITS = 7

_NON_DIGITS = re.compile(r"\D+")


class PhoneNormalizer:
    """
    Canonicalize phone strings into one comparable key.

    Algorithm:
    1. Strip every non-digit character
    2. If the digits are <country code> + <national number> for a configured
       country (default: "1" followed by 10 digits), drop the country code
    3. Digit strings shorter than min_digits are not phone numbers → ""

    Examples:
        >>> PhoneNormalizer().normalize("+1 (602) 686-6672")
        '6026866672'
        >>> PhoneNormalizer().normalize("16026866672")
        '6026866672'
        >>> PhoneNormalizer().normalize("12345")
        ''

    Edge Cases (Documented Behavior):
    - Numbers from countries missing from the table are compared by digits alone,
      so "+44 20 7946 0958" and "020 7946 0958" stay different keys unless "44"
      is configured.
    - The empty key means "no phone"; lookups never match on it.
    - normalize(normalize(x)) == normalize(x) for the default table.
    """

    def __init__(
        self,
        country_codes: Mapping[str, int] | None = None,
        min_digits: int = DEFAULT_MIN_DIGITS,
    ) -> None:
        table = dict(DEFAULT_COUNTRY_CODES if country_codes is None else country_codes)
        # Longest codes first so "44" is not shadowed by a hypothetical "4".
        self.country_codes = sorted(table.items(), key=lambda kv: len(kv[0]), reverse=True)
        self.min_digits = min_digits

    @classmethod
    def from_config(cls, config: Mapping) -> "PhoneNormalizer":
        return cls(
            country_codes=config.get("PHONE_COUNTRY_CODES") or DEFAULT_COUNTRY_CODES,
            min_digits=int(config.get("PHONE_MIN_DIGITS") or DEFAULT_MIN_DIGITS),
        )

    def normalize(self, raw: str | None) -> str:
        digits = _NON_DIGITS.sub("", raw or "")
        for code, national_length in self.country_codes:
            if len(digits) == len(code) + national_length and digits.startswith(code):
                digits = digits[len(code):]
                break
        if len(digits) < self.min_digits:
            return ""
        return digits

    def is_valid(self, raw: str | None) -> bool:
        return bool(self.normalize(raw))

    def same_number(self, a: str | None, b: str | None) -> bool:
        key = self.normalize(a)
        return bool(key) and key == self.normalize(b)


def normalize_email(email: str | None) -> str:
    """Trim and lower-case; the only form emails are compared or stored in."""
    return (email or "").strip().lower()


def is_blank(value: object) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def clean_text(value: str | None) -> str | None:
    v = (value or "").strip()
    return v or None


def parse_opt_in(value: object) -> bool:
    """Checkbox/JSON tolerant boolean: True, "true", "1", "on", "yes"."""
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    return str(value).strip().lower() in ("true", "1", "on", "yes")

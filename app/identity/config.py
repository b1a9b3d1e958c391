import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    secret_key: str
    env: str
    database_url: str
    log_level: str

    phone_country_codes: str
    phone_min_digits: int
    linkable_roles: tuple[str, ...]


def _getenv(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def parse_country_codes(raw: str) -> dict[str, int]:
    """
    Parse "1:10,44:10" into {"1": 10, "44": 10} (country code -> national digit count).
    """
    table: dict[str, int] = {}
    for part in (raw or "").split(","):
        part = part.strip()
        if not part:
            continue
        code, _, length = part.partition(":")
        code = code.strip().lstrip("+")
        if not code.isdigit() or not length.strip().isdigit():
            raise ValueError(f"Invalid PHONE_COUNTRY_CODES entry: {part!r}")
        table[code] = int(length)
    return table


def load_settings() -> Settings:
    roles = tuple(r.strip().lower() for r in _getenv("LINKABLE_ROLES", "client").split(",") if r.strip())
    return Settings(
        secret_key=_getenv("SECRET_KEY", "change-me"),
        env=_getenv("ENV", "development"),
        database_url=_getenv("DATABASE_URL", "sqlite:///identity.db"),
        log_level=_getenv("LOG_LEVEL", "INFO").upper(),
        phone_country_codes=_getenv("PHONE_COUNTRY_CODES", "1:10"),
        phone_min_digits=int(_getenv("PHONE_MIN_DIGITS", "7")),
        linkable_roles=roles,
    )


def load_config() -> dict:
    s = load_settings()
    return {
        "SECRET_KEY": s.secret_key,
        "ENV": s.env,
        "DATABASE_URL": s.database_url,
        "LOG_LEVEL": s.log_level,
        "PHONE_COUNTRY_CODES": parse_country_codes(s.phone_country_codes),
        "PHONE_MIN_DIGITS": s.phone_min_digits,
        "LINKABLE_ROLES": s.linkable_roles,
    }

from datetime import datetime, timedelta

import pytest

from app.identity import create_app
from app.identity.db import session_scope
from app.identity.models import Base, Business
from app.identity.modules.customer_linking.models import TenantCustomer
from app.identity.modules.customer_linking.utils import PhoneNormalizer


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    for k in ("PHONE_COUNTRY_CODES", "PHONE_MIN_DIGITS", "LINKABLE_ROLES"):
        monkeypatch.delenv(k, raising=False)

    app = create_app()
    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)
    yield app
    engine.dispose()


@pytest.fixture()
def business_id(app):
    with session_scope(app) as s:
        b = Business(name="Desert Bloom Spa")
        s.add(b)
        s.flush()
        return b.id


@pytest.fixture()
def other_business_id(app):
    with session_scope(app) as s:
        b = Business(name="Saguaro Rentals")
        s.add(b)
        s.flush()
        return b.id


@pytest.fixture()
def s(app):
    sm = app.extensions["sqlalchemy_sessionmaker"]
    session = sm()
    yield session
    session.close()


@pytest.fixture()
def make_customer(s):
    """
    Insert a customer row directly (no service rules) and commit.
    Rows get increasing created_at values in call order unless one is given.
    """
    base = datetime(2024, 1, 1, 9, 0, 0)
    counter = {"n": 0}
    normalizer = PhoneNormalizer()

    def _make(business_id, email, *, phone=None, user_id=None, created_at=None, **attrs):
        counter["n"] += 1
        c = TenantCustomer(
            business_id=business_id,
            email=email.strip().lower(),
            phone=phone,
            phone_key=normalizer.normalize(phone),
            user_id=user_id,
            created_at=created_at or base + timedelta(days=counter["n"]),
            updated_at=created_at or base + timedelta(days=counter["n"]),
            **attrs,
        )
        s.add(c)
        s.commit()
        return c

    return _make

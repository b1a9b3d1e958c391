"""Tests for DuplicateMerger: canonical choice, reconciliation, dependent transfer."""
import json
from datetime import datetime

import pytest

from app.identity.db import atomic
from app.identity.models import AuditEvent
from app.identity.modules.customer_linking.accounts import AccountDescriptor
from app.identity.modules.customer_linking.errors import DifferentUserConflict
from app.identity.modules.customer_linking.merger import DuplicateMerger
from app.identity.modules.customer_linking.models import (
    Booking,
    Invoice,
    LoyaltyTransaction,
    Order,
    TenantCustomer,
)
from app.identity.modules.customer_linking.repository import CustomerRepository


@pytest.fixture()
def merger(s):
    return DuplicateMerger(CustomerRepository(s))


def _account(**kw):
    data = {"id": 42, "email": "john@example.com", "role": "client", "phone": "+16026866672"}
    data.update(kw)
    return AccountDescriptor(**data)


class TestSelectCanonical:
    def test_oldest_when_none_linked(self, merger, business_id, make_customer):
        a = make_customer(business_id, "a@example.com", created_at=datetime(2024, 2, 1))
        b = make_customer(business_id, "b@example.com", created_at=datetime(2024, 1, 1))
        assert merger.select_canonical([a, b]).id == b.id

    def test_linked_record_wins_over_older(self, merger, business_id, make_customer):
        older = make_customer(business_id, "a@example.com", created_at=datetime(2024, 1, 1))
        linked = make_customer(business_id, "b@example.com", user_id=5, created_at=datetime(2024, 6, 1))
        assert merger.select_canonical([older, linked]).id == linked.id

    def test_ties_broken_by_id(self, merger, business_id, make_customer):
        ts = datetime(2024, 1, 1)
        a = make_customer(business_id, "a@example.com", created_at=ts)
        b = make_customer(business_id, "b@example.com", created_at=ts)
        assert merger.select_canonical([b, a]).id == min(a.id, b.id)

    def test_empty_set_rejected(self, merger):
        with pytest.raises(ValueError):
            merger.select_canonical([])


class TestReconcile:
    def test_canonical_values_never_replaced(self, merger, business_id, make_customer):
        canonical = make_customer(business_id, "a@example.com", first_name="John")
        loser = make_customer(business_id, "b@example.com", first_name="Jane", last_name="Doe")
        values = merger.reconcile(canonical, [loser])
        assert "first_name" not in values
        assert values["last_name"] == "Doe"

    def test_account_data_preferred_over_losers(self, merger, business_id, make_customer):
        canonical = make_customer(business_id, "a@example.com")
        loser = make_customer(business_id, "b@example.com", first_name="Loser")
        values = merger.reconcile(canonical, [loser], _account(first_name="Account"))
        assert values["first_name"] == "Account"
        assert values["user_id"] == 42

    def test_falls_back_to_losers_in_age_order(self, merger, business_id, make_customer):
        canonical = make_customer(business_id, "a@example.com")
        first = make_customer(business_id, "b@example.com", phone="6026866672")
        second = make_customer(business_id, "c@example.com", phone="4805551212")
        values = merger.reconcile(canonical, [first, second], _account(phone="123"))
        assert values["phone"] == "6026866672"

    def test_email_case_only_difference_rewritten(self, merger, business_id, make_customer):
        canonical = make_customer(business_id, "john@example.com")
        canonical.email = "John@Example.com"  # legacy row stored before emails were normalized
        values = merger.reconcile(canonical, [], _account())
        assert values["email"] == "john@example.com"

    def test_different_email_kept(self, merger, business_id, make_customer):
        canonical = make_customer(business_id, "other@example.com")
        values = merger.reconcile(canonical, [], _account())
        assert "email" not in values

    def test_opt_in_preserved_from_loser(self, merger, business_id, make_customer):
        opted = datetime(2023, 5, 1, 12, 0)
        canonical = make_customer(business_id, "a@example.com")
        loser = make_customer(business_id, "b@example.com", phone_opt_in=True, phone_opt_in_at=opted)
        values = merger.reconcile(canonical, [loser])
        assert values["phone_opt_in"] is True
        assert values["phone_opt_in_at"] == opted

    def test_canonical_opt_in_timestamp_kept(self, merger, business_id, make_customer):
        mine = datetime(2024, 1, 1)
        canonical = make_customer(business_id, "a@example.com", phone_opt_in=True, phone_opt_in_at=mine)
        loser = make_customer(business_id, "b@example.com", phone_opt_in=True, phone_opt_in_at=datetime(2020, 1, 1))
        values = merger.reconcile(canonical, [loser])
        assert "phone_opt_in_at" not in values
        assert "phone_opt_in" not in values

    def test_nothing_to_change(self, merger, business_id, make_customer):
        canonical = make_customer(business_id, "a@example.com", first_name="A", last_name="B", phone="6026866672")
        assert merger.reconcile(canonical, []) == {}


class TestMerge:
    def test_dependents_repointed_and_losers_deleted(self, merger, s, business_id, make_customer):
        canonical = make_customer(business_id, "a@example.com", phone="+16026866672", first_name="John")
        loser = make_customer(business_id, "b@example.com", phone="6026866672", last_name="Smith")
        s.add_all(
            [
                Booking(business_id=business_id, tenant_customer_id=loser.id, starts_at=datetime(2024, 7, 1)),
                Order(business_id=business_id, tenant_customer_id=loser.id, order_number="SO-1"),
                Invoice(business_id=business_id, tenant_customer_id=loser.id, invoice_number="INV-1"),
                LoyaltyTransaction(business_id=business_id, tenant_customer_id=canonical.id, points=10),
            ]
        )
        s.commit()
        loser_id = loser.id

        with atomic(s):
            result = merger.merge(business_id, [loser, canonical], reason="test")

        s.expire_all()
        assert result.id == canonical.id
        assert s.get(TenantCustomer, loser_id) is None
        row = s.get(TenantCustomer, canonical.id)
        assert row.first_name == "John"
        assert row.last_name == "Smith"
        assert row.user_id is None
        for model in (Booking, Order, Invoice, LoyaltyTransaction):
            assert {r.tenant_customer_id for r in s.query(model).all()} == {canonical.id}

        ev = s.query(AuditEvent).filter(AuditEvent.action == "customer.merge").one()
        meta = json.loads(ev.metadata_json)
        assert ev.entity_id == str(canonical.id)
        assert [m["id"] for m in meta["merged_customers"]] == [loser_id]
        assert meta["dependents_updated"]["bookings"] == 1
        assert meta["dependents_updated"]["loyalty_transactions"] == 0

    def test_merge_with_account_links_canonical(self, merger, s, business_id, make_customer):
        c = make_customer(business_id, "john@example.com")
        with atomic(s):
            merger.merge(business_id, [c], _account())
        s.expire_all()
        row = s.get(TenantCustomer, c.id)
        assert row.user_id == 42
        assert row.phone == "+16026866672"
        assert row.phone_key == "6026866672"
        assert s.query(AuditEvent).filter(AuditEvent.action == "customer.link").count() == 1
        assert s.query(AuditEvent).filter(AuditEvent.action == "customer.merge").count() == 0

    def test_rejects_records_from_other_business(self, merger, s, business_id, other_business_id, make_customer):
        a = make_customer(business_id, "a@example.com")
        b = make_customer(other_business_id, "b@example.com")
        with pytest.raises(ValueError):
            with atomic(s):
                merger.merge(business_id, [a, b])

    def test_refuses_to_merge_two_accounts(self, merger, s, business_id, make_customer):
        a = make_customer(business_id, "a@example.com", phone="6026866672", user_id=1)
        b = make_customer(business_id, "b@example.com", phone="6026866672", user_id=2)
        with pytest.raises(DifferentUserConflict):
            with atomic(s):
                merger.merge(business_id, [a, b])
        s.expire_all()
        assert s.query(TenantCustomer).count() == 2

    def test_same_account_twice_is_flagged_and_coalesced(self, merger, s, business_id, make_customer, caplog):
        older = make_customer(business_id, "a@example.com", phone="6026866672", user_id=7)
        newer = make_customer(business_id, "b@example.com", phone="6026866672", user_id=7)
        with caplog.at_level("WARNING"):
            with atomic(s):
                result = merger.merge(business_id, [newer, older])
        assert result.id == older.id
        assert "Data integrity" in caplog.text
        s.expire_all()
        assert s.query(TenantCustomer).count() == 1
        flag = s.query(AuditEvent).filter(AuditEvent.action == "customer.integrity_flag").one()
        assert json.loads(flag.metadata_json)["linked_customer_ids"] == [older.id, newer.id]

    def test_failure_during_transfer_rolls_back_everything(self, merger, s, business_id, make_customer, monkeypatch):
        canonical = make_customer(business_id, "a@example.com", phone="6026866672")
        loser = make_customer(business_id, "b@example.com", phone="6026866672", first_name="Ann")
        s.add(Booking(business_id=business_id, tenant_customer_id=loser.id))
        s.commit()

        def boom(self, canonical, losers):
            raise RuntimeError("dependent transfer failed")

        monkeypatch.setattr(DuplicateMerger, "transfer_dependents", boom)
        with pytest.raises(RuntimeError):
            with atomic(s):
                merger.merge(business_id, [canonical, loser], _account(email="a@example.com"))

        s.expire_all()
        assert s.query(TenantCustomer).count() == 2
        assert s.get(TenantCustomer, canonical.id).user_id is None
        assert s.query(Booking).one().tenant_customer_id == loser.id
        assert s.query(AuditEvent).count() == 0

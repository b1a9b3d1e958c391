from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.identity.models import Base


class TenantCustomer(Base):
    """
    Canonical identity record within one business.

    user_id is a weak reference to an external account (no FK): NULL means guest,
    non-NULL means linked. phone keeps the caller's formatting for display;
    phone_key holds its normalized form and is what lookups compare.
    """

    __tablename__ = "tenant_customers"
    __table_args__ = (
        UniqueConstraint("business_id", "email", name="uq_tenant_customers_business_email"),
        Index("idx_tenant_customers_business_phone_key", "business_id", "phone_key", "created_at"),
        Index("idx_tenant_customers_business_user_id", "business_id", "user_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    business_id: Mapped[int] = mapped_column(ForeignKey("businesses.id", ondelete="CASCADE"), nullable=False)
    user_id: Mapped[int | None] = mapped_column(Integer, nullable=True)

    email: Mapped[str] = mapped_column(String(320), nullable=False)
    phone: Mapped[str | None] = mapped_column(String(64), nullable=True)
    phone_key: Mapped[str] = mapped_column(String(32), nullable=False, default="")

    first_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_name: Mapped[str | None] = mapped_column(Text, nullable=True)

    phone_opt_in: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    phone_opt_in_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    @property
    def is_linked(self) -> bool:
        return self.user_id is not None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "business_id": self.business_id,
            "user_id": self.user_id,
            "email": self.email,
            "phone": self.phone,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "phone_opt_in": self.phone_opt_in,
            "phone_opt_in_at": self.phone_opt_in_at.isoformat() if self.phone_opt_in_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


# ============================================================================
# Records owned by other subsystems that point at a customer.
# Only tenant_customer_id matters here: a merge repoints it, nothing else.
# No ORM relationship/cascade from TenantCustomer, so a customer row can never
# take its dependents down with it.
# ============================================================================


class Booking(Base):
    __tablename__ = "bookings"
    __table_args__ = (Index("idx_bookings_tenant_customer_id", "tenant_customer_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    business_id: Mapped[int] = mapped_column(ForeignKey("businesses.id", ondelete="CASCADE"), nullable=False)
    tenant_customer_id: Mapped[int] = mapped_column(ForeignKey("tenant_customers.id"), nullable=False)
    starts_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)


class Order(Base):
    __tablename__ = "orders"
    __table_args__ = (Index("idx_orders_tenant_customer_id", "tenant_customer_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    business_id: Mapped[int] = mapped_column(ForeignKey("businesses.id", ondelete="CASCADE"), nullable=False)
    tenant_customer_id: Mapped[int] = mapped_column(ForeignKey("tenant_customers.id"), nullable=False)
    order_number: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)


class Invoice(Base):
    __tablename__ = "invoices"
    __table_args__ = (Index("idx_invoices_tenant_customer_id", "tenant_customer_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    business_id: Mapped[int] = mapped_column(ForeignKey("businesses.id", ondelete="CASCADE"), nullable=False)
    tenant_customer_id: Mapped[int] = mapped_column(ForeignKey("tenant_customers.id"), nullable=False)
    invoice_number: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)


class LoyaltyTransaction(Base):
    __tablename__ = "loyalty_transactions"
    __table_args__ = (Index("idx_loyalty_transactions_tenant_customer_id", "tenant_customer_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    business_id: Mapped[int] = mapped_column(ForeignKey("businesses.id", ondelete="CASCADE"), nullable=False)
    tenant_customer_id: Mapped[int] = mapped_column(ForeignKey("tenant_customers.id"), nullable=False)
    points: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)


class CustomerSubscription(Base):
    __tablename__ = "customer_subscriptions"
    __table_args__ = (Index("idx_customer_subscriptions_tenant_customer_id", "tenant_customer_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    business_id: Mapped[int] = mapped_column(ForeignKey("businesses.id", ondelete="CASCADE"), nullable=False)
    tenant_customer_id: Mapped[int] = mapped_column(ForeignKey("tenant_customers.id"), nullable=False)
    status: Mapped[str | None] = mapped_column(String(32), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)


class RentalBooking(Base):
    __tablename__ = "rental_bookings"
    __table_args__ = (Index("idx_rental_bookings_tenant_customer_id", "tenant_customer_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    business_id: Mapped[int] = mapped_column(ForeignKey("businesses.id", ondelete="CASCADE"), nullable=False)
    tenant_customer_id: Mapped[int] = mapped_column(ForeignKey("tenant_customers.id"), nullable=False)
    starts_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)


# Every table the merger repoints, in the order it repoints them.
DEPENDENT_MODELS: tuple[type[Base], ...] = (
    Booking,
    Order,
    Invoice,
    LoyaltyTransaction,
    CustomerSubscription,
    RentalBooking,
)

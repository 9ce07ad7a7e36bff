from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship
from .db import Base


class UnitModel(Base):
    __tablename__ = "units"

    id = Column(String(64), primary_key=True)
    name = Column(String(128))
    enabled = Column(Boolean, default=True)
    max_booking_hours = Column(Integer, nullable=False)
    lookahead_days = Column(Integer, nullable=False, default=14)
    price_per_hour = Column(Integer, nullable=False)


class IdentityModel(Base):
    """Individuals and groups share one table; `kind` is the variant tag."""
    __tablename__ = "identities"

    id = Column(String(64), primary_key=True)
    kind = Column(String(16), nullable=False)  # individual | group
    name = Column(String(128), nullable=False)
    owner_id = Column(String(64), ForeignKey("identities.id"), nullable=True)
    is_open = Column(Boolean, default=False)
    created_at = Column(DateTime(timezone=True))
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    memberships = relationship(
        "GroupMemberModel",
        foreign_keys="GroupMemberModel.group_id",
        back_populates="group",
        cascade="all, delete-orphan",
    )


class GroupMemberModel(Base):
    __tablename__ = "group_members"

    group_id = Column(String(64), ForeignKey("identities.id", ondelete="CASCADE"), primary_key=True)
    user_id = Column(String(64), ForeignKey("identities.id", ondelete="CASCADE"), primary_key=True)
    joined_at = Column(DateTime(timezone=True))

    group = relationship("IdentityModel", foreign_keys=[group_id], back_populates="memberships")


class BookingModel(Base):
    __tablename__ = "bookings"

    id = Column(String(64), primary_key=True)
    unit_id = Column(String(64), ForeignKey("units.id"), index=True, nullable=False)
    holder_id = Column(String(64), ForeignKey("identities.id"), index=True, nullable=False)
    customer_id = Column(String(64), ForeignKey("identities.id"), index=True, nullable=False)
    time_from = Column(DateTime(timezone=True), index=True, nullable=False)
    time_to = Column(DateTime(timezone=True), index=True, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)
    confirmed_at = Column(DateTime(timezone=True), nullable=True)
    canceled_at = Column(DateTime(timezone=True), nullable=True)

    holder = relationship("IdentityModel", foreign_keys=[holder_id])
    customer = relationship("IdentityModel", foreign_keys=[customer_id])
    cash_payment = relationship(
        "CashPaymentModel", back_populates="booking", uselist=False, cascade="all, delete-orphan"
    )
    online_payments = relationship(
        "OnlinePaymentModel", back_populates="booking", cascade="all, delete-orphan"
    )


class BookingAmendmentModel(Base):
    __tablename__ = "booking_amendments"

    id = Column(String(64), primary_key=True)
    booking_id = Column(String(64), ForeignKey("bookings.id", ondelete="CASCADE"), index=True)
    original_time_from = Column(DateTime(timezone=True), nullable=False)
    original_time_to = Column(DateTime(timezone=True), nullable=False)
    desired_time_from = Column(DateTime(timezone=True), nullable=False)
    desired_time_to = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)
    confirmed_at = Column(DateTime(timezone=True), nullable=True)
    canceled_at = Column(DateTime(timezone=True), nullable=True)


class TemporaryHoldModel(Base):
    __tablename__ = "temporary_holds"

    id = Column(String(64), primary_key=True)
    unit_id = Column(String(64), ForeignKey("units.id"), index=True, nullable=False)
    holder_id = Column(String(64), ForeignKey("identities.id"), nullable=False)
    customer_id = Column(String(64), ForeignKey("identities.id"), nullable=False)
    booking_id = Column(String(64), ForeignKey("bookings.id"), nullable=True)
    time_from = Column(DateTime(timezone=True), index=True, nullable=False)
    time_to = Column(DateTime(timezone=True), index=True, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), index=True, nullable=False)

    customer = relationship("IdentityModel", foreign_keys=[customer_id])


class CashPaymentModel(Base):
    __tablename__ = "cash_payments"

    booking_id = Column(String(64), ForeignKey("bookings.id", ondelete="CASCADE"), primary_key=True)
    depositor_name = Column(String(128), nullable=False)
    price = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)
    confirmed_at = Column(DateTime(timezone=True), nullable=True)
    refund_requested = Column(Boolean, default=False)
    refund_price = Column(Integer, nullable=True)
    refund_account = Column(String(128), nullable=True)
    refunded_at = Column(DateTime(timezone=True), nullable=True)

    booking = relationship("BookingModel", back_populates="cash_payment")


class PaymentOrderModel(Base):
    """Saga record for one hold -> gateway -> settle round trip."""
    __tablename__ = "payment_orders"

    id = Column(String(64), primary_key=True)
    state = Column(String(32), nullable=False, default="HOLDING", index=True)
    product = Column(String(16), nullable=False, default="booking")
    unit_id = Column(String(64), ForeignKey("units.id"), index=True, nullable=False)
    holder_id = Column(String(64), ForeignKey("identities.id"), nullable=False)
    customer_id = Column(String(64), ForeignKey("identities.id"), nullable=False)
    hold_id = Column(String(64), index=True, nullable=True)
    time_from = Column(DateTime(timezone=True), nullable=False)
    time_to = Column(DateTime(timezone=True), nullable=False)
    price = Column(Integer, nullable=False)
    payment_key = Column(String(255), nullable=True)
    attempts = Column(Integer, default=0)
    booking_id = Column(String(64), ForeignKey("bookings.id"), nullable=True)
    amendment_id = Column(String(64), ForeignKey("booking_amendments.id"), nullable=True)
    failure_code = Column(String(64), nullable=True)
    failure_message = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)


class OnlinePaymentModel(Base):
    __tablename__ = "online_payments"

    order_id = Column(String(64), ForeignKey("payment_orders.id"), primary_key=True)
    booking_id = Column(String(64), ForeignKey("bookings.id", ondelete="CASCADE"), index=True)
    amendment_id = Column(String(64), ForeignKey("booking_amendments.id"), nullable=True)
    price = Column(Integer, nullable=False)
    payment_key = Column(String(255), nullable=True)
    confirmed_at = Column(DateTime(timezone=True), nullable=True)
    refund_requested = Column(Boolean, default=False)
    refund_price = Column(Integer, nullable=True)
    refunded_at = Column(DateTime(timezone=True), nullable=True)

    booking = relationship("BookingModel", back_populates="online_payments")

from datetime import datetime
from typing import List, Optional

from sqlalchemy import or_, select

from booking_schemas import (
    Booking,
    BookingAmendment,
    CashPaymentStatus,
    CashRefund,
    Group,
    Individual,
    OnlinePaymentTransaction,
    OnlineRefund,
    PaymentOrder,
    Unit,
)
from clock import as_utc, hours_between
from .models import (
    BookingAmendmentModel,
    BookingModel,
    CashPaymentModel,
    GroupMemberModel,
    IdentityModel,
    OnlinePaymentModel,
    PaymentOrderModel,
    TemporaryHoldModel,
    UnitModel,
)


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    return as_utc(value) if value is not None else None


# units


def get_unit(db, unit_id: str) -> Optional[UnitModel]:
    return db.get(UnitModel, unit_id)


def unit_to_pydantic(model: UnitModel) -> Unit:
    return Unit(
        id=model.id,
        name=model.name or model.id,
        enabled=bool(model.enabled),
        max_booking_hours=model.max_booking_hours,
        lookahead_days=model.lookahead_days,
        price_per_hour=model.price_per_hour,
    )


# identities


def get_identity(db, identity_id: str) -> Optional[IdentityModel]:
    model = db.get(IdentityModel, identity_id)
    if model is None or model.deleted_at is not None:
        return None
    return model


def is_member_of(db, group_id: str, user_id: str) -> bool:
    return db.get(GroupMemberModel, (group_id, user_id)) is not None


def identity_to_pydantic(model: IdentityModel):
    if model.kind == "group":
        return Group(
            id=model.id,
            name=model.name,
            owner_id=model.owner_id,
            is_open=bool(model.is_open),
            member_ids=[m.user_id for m in model.memberships],
        )
    return Individual(id=model.id, name=model.name)


# bookings


def get_booking(db, booking_id: str) -> Optional[BookingModel]:
    return db.get(BookingModel, booking_id)


def uncanceled_bookings_on_unit(db, unit_id: str, range_from: datetime, range_to: datetime) -> List[BookingModel]:
    """Bookings intersecting [range_from, range_to) that were never canceled; liveness is decided by the caller."""
    stmt = (
        select(BookingModel)
        .where(BookingModel.unit_id == unit_id)
        .where(BookingModel.canceled_at.is_(None))
        .where(BookingModel.time_from < as_utc(range_to))
        .where(BookingModel.time_to > as_utc(range_from))
        .order_by(BookingModel.time_from)
    )
    return list(db.scalars(stmt))


def booking_to_pydantic(model: BookingModel, status: str = "PENDING") -> Booking:
    time_from = as_utc(model.time_from)
    return Booking(
        id=model.id,
        unit_id=model.unit_id,
        holder=identity_to_pydantic(model.holder),
        customer=identity_to_pydantic(model.customer),
        start=time_from,
        hours=hours_between(time_from, as_utc(model.time_to)),
        created_at=as_utc(model.created_at),
        confirmed_at=_utc(model.confirmed_at),
        canceled_at=_utc(model.canceled_at),
        status=status,
    )


def get_amendment(db, amendment_id: str) -> Optional[BookingAmendmentModel]:
    return db.get(BookingAmendmentModel, amendment_id)


def amendments_for_booking(db, booking_id: str) -> List[BookingAmendmentModel]:
    stmt = (
        select(BookingAmendmentModel)
        .where(BookingAmendmentModel.booking_id == booking_id)
        .order_by(BookingAmendmentModel.created_at)
    )
    return list(db.scalars(stmt))


def amendment_to_pydantic(model: BookingAmendmentModel) -> BookingAmendment:
    original_from = as_utc(model.original_time_from)
    desired_from = as_utc(model.desired_time_from)
    return BookingAmendment(
        id=model.id,
        booking_id=model.booking_id,
        original_start=original_from,
        original_hours=hours_between(original_from, as_utc(model.original_time_to)),
        desired_start=desired_from,
        desired_hours=hours_between(desired_from, as_utc(model.desired_time_to)),
        created_at=as_utc(model.created_at),
        confirmed_at=_utc(model.confirmed_at),
        canceled_at=_utc(model.canceled_at),
    )


# temporary holds


def get_hold(db, hold_id: str) -> Optional[TemporaryHoldModel]:
    return db.get(TemporaryHoldModel, hold_id)


def active_holds_on_unit(db, unit_id: str, range_from: datetime, range_to: datetime,
                         now: datetime) -> List[TemporaryHoldModel]:
    """Unexpired holds, plus holds whose capture is in flight regardless of their expiry."""
    settling = select(PaymentOrderModel.hold_id).where(PaymentOrderModel.state == "SETTLING")
    stmt = (
        select(TemporaryHoldModel)
        .where(TemporaryHoldModel.unit_id == unit_id)
        .where(or_(TemporaryHoldModel.expires_at > as_utc(now), TemporaryHoldModel.id.in_(settling)))
        .where(TemporaryHoldModel.time_from < as_utc(range_to))
        .where(TemporaryHoldModel.time_to > as_utc(range_from))
        .order_by(TemporaryHoldModel.time_from)
    )
    return list(db.scalars(stmt))


def due_holds(db, now: datetime) -> List[TemporaryHoldModel]:
    stmt = select(TemporaryHoldModel).where(TemporaryHoldModel.expires_at <= as_utc(now))
    return list(db.scalars(stmt))


# payments


def get_cash_payment(db, booking_id: str) -> Optional[CashPaymentModel]:
    return db.get(CashPaymentModel, booking_id)


def cash_to_pydantic(model: CashPaymentModel) -> CashPaymentStatus:
    return CashPaymentStatus(
        booking_id=model.booking_id,
        price=model.price,
        depositor_name=model.depositor_name,
        created_at=as_utc(model.created_at),
        confirmed_at=_utc(model.confirmed_at),
        refund=CashRefund(
            requested=bool(model.refund_requested),
            refund_price=model.refund_price,
            refund_account=model.refund_account,
            refunded=model.refunded_at is not None,
            refunded_at=_utc(model.refunded_at),
        ),
    )


def online_payments_for_booking(db, booking_id: str) -> List[OnlinePaymentModel]:
    stmt = select(OnlinePaymentModel).where(OnlinePaymentModel.booking_id == booking_id)
    return list(db.scalars(stmt))


def online_to_pydantic(model: OnlinePaymentModel) -> OnlinePaymentTransaction:
    return OnlinePaymentTransaction(
        order_id=model.order_id,
        booking_id=model.booking_id,
        amendment_id=model.amendment_id,
        price=model.price,
        payment_key=model.payment_key,
        confirmed_at=_utc(model.confirmed_at),
        refund=OnlineRefund(
            requested=bool(model.refund_requested),
            refund_price=model.refund_price,
            refunded=model.refunded_at is not None,
            refunded_at=_utc(model.refunded_at),
        ),
    )


def get_order(db, order_id: str) -> Optional[PaymentOrderModel]:
    return db.get(PaymentOrderModel, order_id)


def order_for_hold(db, hold_id: str) -> Optional[PaymentOrderModel]:
    stmt = (
        select(PaymentOrderModel)
        .where(PaymentOrderModel.hold_id == hold_id)
        .order_by(PaymentOrderModel.state == "ROLLED_BACK", PaymentOrderModel.created_at.desc())
    )
    return db.scalars(stmt).first()


def open_amendment_orders(db, booking_id: str) -> List[PaymentOrderModel]:
    stmt = (
        select(PaymentOrderModel)
        .where(PaymentOrderModel.booking_id == booking_id)
        .where(PaymentOrderModel.product == "amendment")
        .where(PaymentOrderModel.state.in_(("HOLDING", "AWAITING_GATEWAY")))
    )
    return list(db.scalars(stmt))


def order_to_pydantic(model: PaymentOrderModel) -> PaymentOrder:
    time_from = as_utc(model.time_from)
    return PaymentOrder(
        order_id=model.id,
        state=model.state,
        product=model.product,
        unit_id=model.unit_id,
        start=time_from,
        hours=hours_between(time_from, as_utc(model.time_to)),
        price=model.price,
        holder_id=model.holder_id,
        customer_id=model.customer_id,
        hold_id=model.hold_id,
        payment_key=model.payment_key,
        attempts=model.attempts or 0,
        booking_id=model.booking_id,
        amendment_id=model.amendment_id,
        failure_code=model.failure_code,
        failure_message=model.failure_message,
    )


# seeding (demo script and tests)


def create_unit(db, unit_id: str, max_booking_hours: int, price_per_hour: int, lookahead_days: int = 14,
                name: Optional[str] = None, enabled: bool = True) -> UnitModel:
    model = UnitModel(
        id=unit_id,
        name=name or unit_id,
        enabled=enabled,
        max_booking_hours=max_booking_hours,
        lookahead_days=lookahead_days,
        price_per_hour=price_per_hour,
    )
    db.add(model)
    db.commit()
    return model


def create_individual(db, user_id: str, name: str, created_at: Optional[datetime] = None) -> IdentityModel:
    model = IdentityModel(id=user_id, kind="individual", name=name, created_at=created_at)
    db.add(model)
    db.commit()
    return model


def create_group(db, group_id: str, name: str, owner_id: str, member_ids: List[str],
                 is_open: bool = False, created_at: Optional[datetime] = None) -> IdentityModel:
    model = IdentityModel(
        id=group_id, kind="group", name=name, owner_id=owner_id, is_open=is_open, created_at=created_at
    )
    db.add(model)
    for user_id in member_ids:
        model.memberships.append(GroupMemberModel(user_id=user_id, joined_at=created_at))
    db.commit()
    return model

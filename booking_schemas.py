from datetime import datetime, timedelta
from typing import Annotated, List, Literal, Optional, Union

from pydantic import AwareDatetime, BaseModel, ConfigDict, Field, StrictInt, computed_field
from pydantic.alias_generators import to_camel


class Schema(BaseModel):
    # camelCase on the wire, snake_case in Python
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


BookingStatus = Literal[
    "PENDING", "CONFIRMED", "BUFFERED", "IN_PROGRESS", "COMPLETE", "CANCELED", "OVERDUE"
]
LIVE_STATUSES = ("PENDING", "CONFIRMED", "BUFFERED", "IN_PROGRESS")

SagaState = Literal["HOLDING", "AWAITING_GATEWAY", "SETTLING", "COMMITTED", "ROLLED_BACK"]
PaymentMethod = Literal["cash", "online"]
ProductType = Literal["booking", "amendment"]


class Caller(Schema):
    """Per-request caller resolved by the session service; trusted as-is."""
    user_id: str
    is_staff: bool = False


class Unit(Schema):
    id: str
    name: str
    enabled: bool = True
    max_booking_hours: int
    lookahead_days: int
    price_per_hour: int


class Individual(Schema):
    kind: Literal["individual"] = "individual"
    id: str
    name: str


class Group(Schema):
    kind: Literal["group"] = "group"
    id: str
    name: str
    owner_id: str
    is_open: bool = False
    member_ids: List[str] = Field(default_factory=list)


Identity = Annotated[Union[Individual, Group], Field(discriminator="kind")]


class Booking(Schema):
    id: str
    unit_id: str
    holder: Individual
    customer: Identity
    start: AwareDatetime
    hours: int
    created_at: AwareDatetime
    confirmed_at: Optional[AwareDatetime] = None
    canceled_at: Optional[AwareDatetime] = None
    status: BookingStatus = "PENDING"

    @computed_field
    @property
    def end(self) -> datetime:
        return self.start + timedelta(hours=self.hours)


class CashRefund(Schema):
    requested: bool = False
    refund_price: Optional[int] = None
    refund_account: Optional[str] = None
    refunded: bool = False
    refunded_at: Optional[AwareDatetime] = None


class CashPaymentStatus(Schema):
    booking_id: str
    price: int
    depositor_name: str
    created_at: AwareDatetime
    confirmed_at: Optional[AwareDatetime] = None
    refund: CashRefund = Field(default_factory=CashRefund)


class OnlineRefund(Schema):
    requested: bool = False
    refund_price: Optional[int] = None
    refunded: bool = False
    refunded_at: Optional[AwareDatetime] = None


class OnlinePaymentTransaction(Schema):
    order_id: str
    booking_id: str
    amendment_id: Optional[str] = None
    price: int
    payment_key: Optional[str] = None
    confirmed_at: Optional[AwareDatetime] = None
    refund: OnlineRefund = Field(default_factory=OnlineRefund)


class OccupiedSlot(Schema):
    masked_name: str
    date: AwareDatetime
    duration: int
    confirmed: bool


class BookingAmendment(Schema):
    id: str
    booking_id: str
    original_start: AwareDatetime
    original_hours: int
    desired_start: AwareDatetime
    desired_hours: int
    created_at: AwareDatetime
    confirmed_at: Optional[AwareDatetime] = None
    canceled_at: Optional[AwareDatetime] = None


class PaymentOrder(Schema):
    order_id: str
    state: SagaState = "HOLDING"
    product: ProductType = "booking"
    unit_id: str
    start: AwareDatetime
    hours: int
    price: int
    holder_id: str
    customer_id: str
    hold_id: Optional[str] = None
    payment_key: Optional[str] = None
    attempts: int = 0
    booking_id: Optional[str] = None
    amendment_id: Optional[str] = None
    failure_code: Optional[str] = None
    failure_message: Optional[str] = None


class HoldTicket(Schema):
    order_id: str
    hold_id: str
    price: int
    expires_at: AwareDatetime
    redirect_url: Optional[str] = None


class PendingConfirmation(Schema):
    order_id: str
    unit_id: str
    start: AwareDatetime
    hours: int
    price: int
    expires_at: AwareDatetime


class AmendResult(Schema):
    booking: Booking
    incremental_price: int
    amendment_id: Optional[str] = None
    order_id: Optional[str] = None
    hold_id: Optional[str] = None
    redirect_url: Optional[str] = None

    @property
    def requires_payment(self) -> bool:
        return self.incremental_price > 0


class BookingDetail(Schema):
    booking: Booking
    cash_payment_status: Optional[CashPaymentStatus] = None
    online_payments: List[OnlinePaymentTransaction] = Field(default_factory=list)
    amendments: List[BookingAmendment] = Field(default_factory=list)
    amendable: bool
    extendable_hours: int
    # order ids whose gateway refund failed in the request that produced this view
    failed_refunds: List[str] = Field(default_factory=list)


class Calendar(Schema):
    start: AwareDatetime
    end: AwareDatetime
    max_booking_hours: int
    slots: List[OccupiedSlot]


# HTTP request/response bodies


class CheckRequest(Schema):
    unit_id: str
    time_from: AwareDatetime
    desired_hours: StrictInt
    additional_hours: Optional[StrictInt] = None
    exclude_booking_id: Optional[str] = None


class CheckResponse(Schema):
    total_price: int


class SubmitBookingRequest(Schema):
    unit_id: str
    time_from: AwareDatetime
    desired_hours: StrictInt
    identity_id: str
    depositor_name: str


class SubmitBookingResponse(Schema):
    booking: Booking
    cash_payment_status: Optional[CashPaymentStatus] = None


class AmendBookingRequest(Schema):
    additional_hours: Optional[StrictInt] = None
    new_time_from: Optional[AwareDatetime] = None
    new_identity_id: Optional[str] = None


class AmendBookingResponse(Schema):
    booking: Optional[Booking] = None
    foreign_payment_id: Optional[str] = None
    incremental_price: int = 0


class CancelBookingResponse(Schema):
    cash_payment_status: Optional[CashPaymentStatus] = None


class InitiatePaymentRequest(Schema):
    unit_id: str
    time_from: AwareDatetime
    desired_hours: StrictInt
    identity_id: str
    temporary_reservation_id: Optional[str] = None


class ConfirmPaymentRequest(Schema):
    order_id: str
    payment_key: str
    amount: StrictInt


class ConfirmPaymentResponse(Schema):
    booking: Booking

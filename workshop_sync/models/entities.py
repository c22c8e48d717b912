"""Pydantic models for workshop entities.

Every entity is a flat record keyed by a stable string id. Unknown columns
returned by the backing store are kept (``extra="allow"``) so that cache
merges never drop data the layer does not model explicitly.
"""

from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

UNKNOWN_NAME = "unknown"
"""Display value for references that could not be resolved."""


class RequestStatus(str, Enum):
    """Lifecycle status of an inspection request."""

    WAITING_PAYMENT = "waiting_payment"
    NEW = "new"
    IN_PROGRESS = "in_progress"
    COMPLETE = "complete"


class PaymentType(str, Enum):
    """Payment classification of a request."""

    CASH = "cash"
    CARD = "card"
    TRANSFER = "transfer"
    SPLIT = "split"
    UNPAID = "unpaid"


class ReservationStatus(str, Enum):
    """Status of a phone/online reservation."""

    NEW = "new"
    CONFIRMED = "confirmed"
    CONVERTED = "converted"
    CANCELLED = "cancelled"


class Entity(BaseModel):
    """Base record shared by all cached entity types."""

    model_config = ConfigDict(extra="allow")

    id: str = Field(..., min_length=1, description="Stable identifier")
    created_at: datetime | None = Field(None, description="Server creation time")
    updated_at: datetime | None = Field(None, description="Server modification time")

    @field_validator("created_at", "updated_at", mode="after")
    @classmethod
    def ensure_aware(cls, v: datetime | None) -> datetime | None:
        """Treat naive timestamps as UTC so they stay comparable."""
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    @property
    def logical_timestamp(self) -> datetime | None:
        """Version used to order competing writes (updated_at, else created_at)."""
        return self.updated_at or self.created_at


# --- Value records -----------------------------------------------------------


class CarSnapshot(BaseModel):
    """Car description frozen into a request at creation time."""

    make_ar: str = ""
    make_en: str = ""
    model_ar: str = ""
    model_en: str = ""
    year: int | None = None


class SplitPaymentDetails(BaseModel):
    """Cash/card breakdown of a split payment."""

    cash: Decimal = Field(..., ge=0)
    card: Decimal = Field(..., ge=0)

    @property
    def total(self) -> Decimal:
        return self.cash + self.card


class BrokerCommission(BaseModel):
    """Broker attached to a request with the commission owed."""

    id: str
    commission: Decimal = Decimal("0")


class ActivityLogEntry(BaseModel):
    """Append-only entry in a request's activity log."""

    id: str
    timestamp: datetime
    employee_id: str | None = None
    employee_name: str | None = None
    action: str
    details: str = ""


# --- Entities ----------------------------------------------------------------


class InspectionRequest(Entity):
    """A vehicle inspection request, the primary feed entity."""

    request_number: int | None = Field(
        None, description="Sequential display number assigned by the server"
    )
    client_id: str
    car_id: str
    car_snapshot: CarSnapshot | None = None
    inspection_type_id: str | None = None
    payment_type: PaymentType = PaymentType.UNPAID
    split_payment_details: SplitPaymentDetails | None = None
    payment_note: str | None = None
    price: Decimal = Decimal("0")
    status: RequestStatus = RequestStatus.NEW
    employee_id: str | None = None
    broker: BrokerCommission | None = None
    activity_log: list[ActivityLogEntry] = Field(default_factory=list)
    report_stamps: list[str] = Field(default_factory=list)


class Client(Entity):
    """A workshop client."""

    name: str
    phone: str = ""
    is_vip: bool = False

    @classmethod
    def placeholder(cls, client_id: str) -> "Client":
        """Stand-in rendered when the client could not be resolved."""
        return cls(id=client_id, name=UNKNOWN_NAME)


class Car(Entity):
    """A registered car, identified by plate or by VIN (never both)."""

    make_id: str
    model_id: str
    year: int | None = None
    plate_number: str | None = None
    plate_number_en: str | None = Field(
        None, description="Latin rendering of the plate"
    )
    vin: str | None = None

    @model_validator(mode="after")
    def check_plate_or_vin(self) -> "Car":
        """Plate components and VIN are mutually exclusive."""
        if self.plate_number and self.vin:
            raise ValueError("a car has either a plate number or a VIN, not both")
        return self

    @classmethod
    def placeholder(cls, car_id: str) -> "Car":
        """Stand-in rendered when the car could not be resolved."""
        return cls(id=car_id, make_id="", model_id="")


class CarMake(Entity):
    name_ar: str
    name_en: str
    logo_url: str | None = None


class CarModel(Entity):
    make_id: str
    name_ar: str
    name_en: str


class Broker(Entity):
    name: str
    phone: str | None = None
    default_commission: Decimal = Decimal("0")
    is_active: bool = True


class Employee(Entity):
    name: str
    email: str | None = None
    role: str = "employee"
    permissions: list[str] = Field(default_factory=list)
    is_active: bool = True


class Technician(Entity):
    name: str
    title: str = ""
    is_active: bool = True


class InspectionType(Entity):
    name: str
    price: Decimal = Decimal("0")
    finding_category_ids: list[str] = Field(default_factory=list)


class Expense(Entity):
    date: date
    category: str
    description: str = ""
    amount: Decimal
    employee_id: str | None = None
    employee_name: str | None = None


class Revenue(Entity):
    date: date
    category: str
    description: str = ""
    amount: Decimal
    payment_method: PaymentType = PaymentType.CASH
    employee_id: str | None = None
    employee_name: str | None = None


class Reservation(Entity):
    client_name: str
    client_phone: str = ""
    car_details: str = ""
    plate_text: str = ""
    service_type: str = ""
    notes: str | None = None
    status: ReservationStatus = ReservationStatus.NEW
    car_make_id: str | None = None
    car_model_id: str | None = None

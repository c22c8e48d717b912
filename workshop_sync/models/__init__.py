"""Entity records, the entity registry, and the request status machine."""

from workshop_sync.models.entities import (
    UNKNOWN_NAME,
    ActivityLogEntry,
    Broker,
    BrokerCommission,
    Car,
    CarMake,
    CarModel,
    CarSnapshot,
    Client,
    Employee,
    Entity,
    Expense,
    InspectionRequest,
    InspectionType,
    PaymentType,
    RequestStatus,
    Reservation,
    ReservationStatus,
    Revenue,
    SplitPaymentDetails,
    Technician,
)
from workshop_sync.models.registry import (
    ENTITY_SPECS,
    EntitySpec,
    EntityType,
    entity_type_for_table,
    spec_for,
)
from workshop_sync.models.status import RequestStatusMachine

__all__ = [
    # Entities
    "Entity",
    "InspectionRequest",
    "Client",
    "Car",
    "CarMake",
    "CarModel",
    "Broker",
    "Employee",
    "Technician",
    "InspectionType",
    "Expense",
    "Revenue",
    "Reservation",
    # Value records and enums
    "ActivityLogEntry",
    "BrokerCommission",
    "CarSnapshot",
    "SplitPaymentDetails",
    "PaymentType",
    "RequestStatus",
    "ReservationStatus",
    "UNKNOWN_NAME",
    # Registry
    "ENTITY_SPECS",
    "EntitySpec",
    "EntityType",
    "entity_type_for_table",
    "spec_for",
    # Status
    "RequestStatusMachine",
]

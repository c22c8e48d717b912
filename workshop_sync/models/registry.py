"""Entity type registry mapping each cached type to its backing table."""

from dataclasses import dataclass
from enum import Enum

from workshop_sync.models.entities import (
    Broker,
    Car,
    CarMake,
    CarModel,
    Client,
    Employee,
    Entity,
    Expense,
    InspectionRequest,
    InspectionType,
    Reservation,
    Revenue,
    Technician,
)


class EntityType(str, Enum):
    """Kinds of entities held by the cache."""

    REQUEST = "request"
    CLIENT = "client"
    CAR = "car"
    CAR_MAKE = "car_make"
    CAR_MODEL = "car_model"
    BROKER = "broker"
    EMPLOYEE = "employee"
    TECHNICIAN = "technician"
    INSPECTION_TYPE = "inspection_type"
    EXPENSE = "expense"
    REVENUE = "revenue"
    RESERVATION = "reservation"


@dataclass(frozen=True)
class EntitySpec:
    """How an entity type is stored remotely.

    Attributes:
        table: Backing store table name.
        model: Pydantic model used for rows of the table.
        order_by: Default ordering column for listings.
        descending: Whether the default ordering is descending.
        partition_field: Column used for lazily paged one-to-many partitions.
    """

    table: str
    model: type[Entity]
    order_by: str | None = None
    descending: bool = False
    partition_field: str | None = None


ENTITY_SPECS: dict[EntityType, EntitySpec] = {
    EntityType.REQUEST: EntitySpec(
        "inspection_requests", InspectionRequest, "created_at", descending=True
    ),
    EntityType.CLIENT: EntitySpec("clients", Client),
    EntityType.CAR: EntitySpec("cars", Car),
    EntityType.CAR_MAKE: EntitySpec("car_makes", CarMake, "name_ar"),
    EntityType.CAR_MODEL: EntitySpec(
        "car_models", CarModel, "name_ar", partition_field="make_id"
    ),
    EntityType.BROKER: EntitySpec("brokers", Broker, "name"),
    EntityType.EMPLOYEE: EntitySpec("employees", Employee, "name"),
    EntityType.TECHNICIAN: EntitySpec("technicians", Technician, "name"),
    EntityType.INSPECTION_TYPE: EntitySpec("inspection_types", InspectionType, "name"),
    EntityType.EXPENSE: EntitySpec("expenses", Expense, "date", descending=True),
    EntityType.REVENUE: EntitySpec("other_revenues", Revenue, "date", descending=True),
    EntityType.RESERVATION: EntitySpec(
        "reservations", Reservation, "created_at", descending=True
    ),
}

_TABLE_TO_TYPE = {spec.table: entity_type for entity_type, spec in ENTITY_SPECS.items()}


def spec_for(entity_type: EntityType) -> EntitySpec:
    """Return the storage spec for an entity type."""
    return ENTITY_SPECS[entity_type]


def entity_type_for_table(table: str) -> EntityType | None:
    """Map a backing store table name back to its entity type.

    Returns:
        The entity type, or None for tables the cache does not hold.
    """
    return _TABLE_TO_TYPE.get(table)

"""Data models for the syncable records of the local store."""

import uuid
from dataclasses import dataclass, field, fields
from datetime import datetime
from typing import ClassVar, Optional

from protech.sync.operations import SyncStatus


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class SyncableEntity:
    """Columns shared by every record that participates in cloud sync.

    ``cloud_sync_status`` of ``None`` means the record predates sync
    tracking and is treated as pending.
    """

    ENTITY_TYPE: ClassVar[str] = ""
    TABLE: ClassVar[str] = ""

    id: str = field(default_factory=new_id)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None
    cloud_sync_status: Optional[SyncStatus] = None

    @classmethod
    def data_fields(cls) -> list[str]:
        """Business columns, i.e. everything the sync core does not own."""
        own = {f.name for f in fields(SyncableEntity)}
        return [f.name for f in fields(cls) if f.name not in own]

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    @property
    def needs_sync(self) -> bool:
        return self.cloud_sync_status in (None, SyncStatus.PENDING)

    def to_payload(self) -> dict:
        """Snapshot sent to the remote backend."""
        payload = {"id": self.id}
        for name in self.data_fields():
            payload[name] = getattr(self, name)
        for name in ("created_at", "updated_at", "deleted_at"):
            value = getattr(self, name)
            payload[name] = value.isoformat() if value else None
        return payload


@dataclass
class Customer(SyncableEntity):
    ENTITY_TYPE: ClassVar[str] = "customer"
    TABLE: ClassVar[str] = "customers"

    first_name: str = ""
    last_name: str = ""
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    notes: Optional[str] = None

    @property
    def display_name(self) -> str:
        name = f"{self.first_name} {self.last_name}".strip()
        return name or self.email or self.phone or "(Unnamed)"


@dataclass
class Ticket(SyncableEntity):
    ENTITY_TYPE: ClassVar[str] = "ticket"
    TABLE: ClassVar[str] = "tickets"

    ticket_number: Optional[int] = None
    customer_id: Optional[str] = None
    device_type: Optional[str] = None
    device_model: Optional[str] = None
    issue_description: Optional[str] = None
    status: str = "waiting"  # waiting, in_progress, completed, picked_up
    priority: str = "normal"
    notes: Optional[str] = None


@dataclass
class InventoryItem(SyncableEntity):
    ENTITY_TYPE: ClassVar[str] = "inventory_item"
    TABLE: ClassVar[str] = "inventory_items"

    sku: Optional[str] = None
    name: str = ""
    category: Optional[str] = None
    quantity: int = 0
    min_quantity: int = 0
    cost: float = 0.0
    price: float = 0.0

    @property
    def is_low_stock(self) -> bool:
        return self.min_quantity > 0 and self.quantity < self.min_quantity


@dataclass
class Employee(SyncableEntity):
    ENTITY_TYPE: ClassVar[str] = "employee"
    TABLE: ClassVar[str] = "employees"

    first_name: str = ""
    last_name: str = ""
    email: Optional[str] = None
    role: str = "technician"
    hourly_rate: float = 0.0
    is_active: int = 1


@dataclass
class Appointment(SyncableEntity):
    ENTITY_TYPE: ClassVar[str] = "appointment"
    TABLE: ClassVar[str] = "appointments"

    customer_id: Optional[str] = None
    ticket_id: Optional[str] = None
    appointment_type: str = "dropoff"
    scheduled_at: Optional[str] = None  # ISO timestamp
    duration_minutes: int = 30
    status: str = "scheduled"
    notes: Optional[str] = None


# entity type name -> model class
SYNCABLE_MODELS: dict[str, type[SyncableEntity]] = {
    model.ENTITY_TYPE: model
    for model in (Customer, Ticket, InventoryItem, Employee, Appointment)
}


def model_for(entity_type: str) -> type[SyncableEntity]:
    try:
        return SYNCABLE_MODELS[entity_type]
    except KeyError:
        raise ValueError(f"Unknown entity type: {entity_type!r}") from None

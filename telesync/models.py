"""
Sync Document Models - typed views over replicated documents

Contains:
- SyncDocument (mandatory replication attributes, unknown fields kept)
- Known collection schemas (Consultation, Appointment, Prescription, Doctor,
  InventoryItem, Notification)
- COLLECTION_MODELS registry and parse_document()

Stores and the hub keep raw dicts; these models are for consumers that want
typed access. Collections without a schema parse as plain SyncDocument.
"""

from typing import Any, Dict, Optional, Type

from pydantic import BaseModel, ConfigDict, Field

# Document fields that point a record at a participant
REFERENCE_FIELDS = ("patientId", "doctorId", "chemistId")


class SyncDocument(BaseModel):
    """Base replicated document"""
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: str
    lastModified: int = 0  # epoch millis
    deviceId: Optional[str] = None
    userId: Optional[str] = None

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


class Consultation(SyncDocument):
    patientId: Optional[str] = None
    doctorId: Optional[str] = None
    status: Optional[str] = None
    symptoms: Optional[str] = None
    scheduledAt: Optional[str] = None


class Appointment(SyncDocument):
    patientId: Optional[str] = None
    doctorId: Optional[str] = None
    date: Optional[str] = None
    time: Optional[str] = None
    status: Optional[str] = None


class PrescribedMedication(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: str
    dosage: Optional[str] = None
    frequency: Optional[str] = None
    duration: Optional[str] = None


class Prescription(SyncDocument):
    patientId: Optional[str] = None
    doctorId: Optional[str] = None
    chemistId: Optional[str] = None
    status: Optional[str] = None  # prescribed, dispensed, ...
    medications: list[PrescribedMedication] = Field(default_factory=list)


class Doctor(SyncDocument):
    fullName: Optional[str] = None
    name: Optional[str] = None
    specialization: Optional[str] = None
    isAvailable: Optional[bool] = None

    @property
    def display_name(self) -> str:
        return self.fullName or self.name or self.id


class InventoryItem(SyncDocument):
    chemistId: Optional[str] = None
    name: Optional[str] = None
    quantity: int = 0
    price: Optional[float] = None


class Notification(SyncDocument):
    title: Optional[str] = None
    message: Optional[str] = None
    read: bool = False


COLLECTION_MODELS: Dict[str, Type[SyncDocument]] = {
    "consultations": Consultation,
    "appointments": Appointment,
    "prescriptions": Prescription,
    "doctors": Doctor,
    "inventory": InventoryItem,
    "notifications": Notification,
}


def parse_document(collection: str, raw: Dict[str, Any]) -> SyncDocument:
    """
    Parse a raw document into its collection's model.

    Raises:
        pydantic.ValidationError: If a known schema rejects the document
    """
    model = COLLECTION_MODELS.get(collection, SyncDocument)
    return model.model_validate(raw)


def document_references(document: Dict[str, Any], user_id: str) -> bool:
    """True when any participant reference on the document is user_id"""
    if not isinstance(document, dict):
        return False
    return any(document.get(field) == user_id for field in REFERENCE_FIELDS)

from typing import Literal

from pydantic import BaseModel

from prealert.models.hospital import Hospital
from prealert.models.patient import Patient

AlertStatus = Literal["pending", "acknowledged", "accepted", "declined", "completed"]
HospitalResponse = Literal["acknowledged", "accepted", "declined"]


class AuditEntry(BaseModel):
    timestamp: str
    action: str
    actor: str
    details: str = ""
    hospital_id: str | None = None


class Alert(BaseModel):
    id: str
    patient: Patient
    ambulance_id: str
    hospital_id: str
    distance: float | None = None   # km at send time
    eta: int | None = None          # minutes at send time
    status: AlertStatus = "pending"
    created_at: str
    completed_at: str | None = None
    required_equipment: list[str] = []
    decline_reason: str | None = None
    previous_hospital_ids: list[str] = []
    audit_log: list[AuditEntry] = []
    updated_at: str | None = None


class AlertCreate(BaseModel):
    patient: Patient
    hospital_id: str
    ambulance_id: str | None = None  # defaults to the caller's ambulance
    distance: float | None = None
    eta: int | None = None
    required_equipment: list[str] = []


class AlertCreated(BaseModel):
    alert: Alert
    hospital: Hospital


class StatusUpdate(BaseModel):
    status: HospitalResponse
    reason: str | None = None
    expected_status: AlertStatus | None = None


class HospitalChange(BaseModel):
    hospital_id: str
    reason: str


class HospitalUnavailable(BaseModel):
    hospital_id: str
    reason: str

from typing import Literal

from pydantic import BaseModel, Field

TriageLevel = Literal["critical", "urgent", "stable"]


class Vitals(BaseModel):
    """Vital signs snapshot taken when the pre-alert is sent."""

    spo2: int = Field(ge=0, le=100)                      # %
    heart_rate: int = Field(ge=0, le=300)                # bpm
    blood_pressure_sys: int = Field(ge=0, le=300)        # mmHg
    blood_pressure_dia: int = Field(ge=0, le=250)        # mmHg
    temperature: float
    gcs: int = Field(ge=3, le=15)                        # Glasgow Coma Scale
    respiratory_rate: int | None = Field(None, ge=0, le=80)


class Patient(BaseModel):
    id: str
    name: str
    age: int | None = Field(None, ge=0, le=130)
    gender: Literal["male", "female", "other"] | None = None
    contact: str | None = None
    vitals: Vitals
    complaint: str = ""
    triage_level: TriageLevel
    medical_history: list[str] = []

from pydantic import BaseModel, Field

DEFAULT_SPO2 = 98
DEFAULT_HEART_RATE = 72


class LiveVitals(BaseModel):
    """Latest MAX30102 sensor reading for one ambulance."""

    ambulance_id: str
    spo2: int = DEFAULT_SPO2
    heart_rate: int = DEFAULT_HEART_RATE
    updated_at: str | None = None


class LiveVitalsUpdate(BaseModel):
    spo2: int = Field(ge=0, le=100)
    heart_rate: int = Field(ge=0, le=300)

from pydantic import AliasChoices, BaseModel, Field

from prealert.models.geo import Coordinates
from prealert.models.hospital import RankedHospital
from prealert.models.patient import TriageLevel, Vitals


class RecommendationRequest(BaseModel):
    origin: Coordinates
    vitals: Vitals
    triage_level: TriageLevel
    complaint: str = ""
    required_equipment: list[str] = []
    alert_id: str | None = None
    max_radius_km: float = Field(5.0, gt=0)


class Recommendation(BaseModel):
    hospital: RankedHospital
    confidence: float = Field(0.0, ge=0.0, le=100.0)
    reasoning: str = ""
    missing_equipment: list[str] = []


class RecommendationResponse(BaseModel):
    recommendations: list[Recommendation] = []
    ai_mode: bool = False


class OracleChoice(BaseModel):
    """One ranked pick as returned by the LLM."""

    hospital_name: str = Field(validation_alias=AliasChoices("hospital_name", "hospitalName"))
    confidence: float = 0.0
    reasoning: str = ""


class OracleReply(BaseModel):
    recommendations: list[OracleChoice] = []

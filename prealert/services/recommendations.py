"""Top-3 hospital recommendations for a patient.

The LLM ranks the nearest candidates; when it is not configured or its
answer cannot be used, a deterministic equipment/distance score is
returned instead and ``ai_mode`` is False.
"""

import logging
from typing import Sequence

from prealert.errors import UpstreamUnavailable
from prealert.models.hospital import RankedHospital
from prealert.models.recommendation import (
    OracleReply,
    Recommendation,
    RecommendationRequest,
    RecommendationResponse,
)
from prealert.services.alerts import AlertLifecycle
from prealert.services.geo import DEFAULT_SPEED_KMH
from prealert.services.llm import LLMClient
from prealert.services.ranking import equipment_match, fallback_recommendations, rank_hospitals

logger = logging.getLogger(__name__)

MAX_PROMPT_CANDIDATES = 10
TOP_N = 3

SYSTEM_PROMPT = "You are a medical AI assistant. Always respond with valid JSON only."


def build_prompt(request: RecommendationRequest, candidates: Sequence[RankedHospital]) -> str:
    vitals = request.vitals
    lines = [
        "You are helping to recommend the best hospital for an emergency patient.",
        "",
        "Patient Information:",
        f"- Triage Level: {request.triage_level}",
        f"- Chief Complaint: {request.complaint or 'Not specified'}",
        "- Vitals:",
        f"  * SpO2: {vitals.spo2}%",
        f"  * Heart Rate: {vitals.heart_rate} bpm",
        f"  * Blood Pressure: {vitals.blood_pressure_sys}/{vitals.blood_pressure_dia} mmHg",
        f"  * Temperature: {vitals.temperature} C",
        f"  * GCS: {vitals.gcs}",
        f"- Required Equipment: {', '.join(request.required_equipment) or 'None specified'}",
        "",
        "Available Hospitals:",
    ]
    for idx, hospital in enumerate(candidates, start=1):
        lines.extend([
            f"{idx}. {hospital.name}",
            f"   - Distance: {hospital.distance_km} km",
            f"   - Address: {hospital.address}",
            f"   - Equipment: {', '.join(hospital.equipment) or 'Not specified'}",
            f"   - Specialties: {', '.join(hospital.specialties) or 'Not specified'}",
        ])
    lines.extend([
        "",
        f"Recommend the TOP {TOP_N} hospitals in ranked order. For each give the hospital name "
        "exactly as listed above, a confidence score (0-100) and brief reasoning (max 50 words).",
        "Weigh urgency from the triage level, required equipment, relevant specialties and distance.",
        "",
        "Respond ONLY with JSON in this format:",
        '{"recommendations": [{"hospital_name": "Hospital Name", "confidence": 95, "reasoning": "..."}]}',
    ])
    return "\n".join(lines)


def _resolve(
    reply: OracleReply,
    candidates: Sequence[RankedHospital],
    required_equipment: Sequence[str],
) -> list[Recommendation]:
    """Map LLM picks back to candidates by name; unknown names are dropped."""
    by_name = {h.name.strip().lower(): h for h in candidates}
    seen: set[str] = set()
    out = []
    for choice in reply.recommendations:
        hospital = by_name.get(choice.hospital_name.strip().lower())
        if hospital is None or hospital.id in seen:
            continue
        seen.add(hospital.id)
        _, missing = equipment_match(hospital, required_equipment)
        out.append(Recommendation(
            hospital=hospital,
            confidence=max(0.0, min(100.0, choice.confidence)),
            reasoning=choice.reasoning,
            missing_equipment=missing,
        ))
    return out[:TOP_N]


class HospitalRecommender:
    def __init__(self, alerts: AlertLifecycle, llm: LLMClient, speed_kmh: float = DEFAULT_SPEED_KMH) -> None:
        self.alerts = alerts
        self.llm = llm
        self.speed_kmh = speed_kmh

    async def recommend(self, request: RecommendationRequest) -> RecommendationResponse:
        hospitals = await self.alerts.candidate_hospitals(request.alert_id)
        candidates = rank_hospitals(
            request.origin,
            hospitals,
            alert_id=request.alert_id,
            speed_kmh=self.speed_kmh,
        )
        if not candidates:
            return RecommendationResponse(recommendations=[], ai_mode=False)

        try:
            reply = await self.llm.generate_json(
                system=SYSTEM_PROMPT,
                user=build_prompt(request, candidates[:MAX_PROMPT_CANDIDATES]),
                response_model=OracleReply,
            )
            picks = _resolve(reply, candidates, request.required_equipment)
            if not picks:
                raise UpstreamUnavailable("LLM named no known hospital")
        except UpstreamUnavailable as exc:
            logger.warning("Using fallback hospital scoring: %s", exc)
            return RecommendationResponse(
                recommendations=fallback_recommendations(
                    candidates,
                    request.required_equipment,
                    max_radius_km=request.max_radius_km,
                    limit=TOP_N,
                ),
                ai_mode=False,
            )

        logger.info("LLM recommended %s", ", ".join(p.hospital.id for p in picks))
        return RecommendationResponse(recommendations=picks, ai_mode=True)

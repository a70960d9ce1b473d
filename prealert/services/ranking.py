"""Hospital candidate ranking.

Ranking never mutates its input: every result is a new ``RankedHospital``
carrying the distance/ETA for one origin. Sorting relies on ``sorted``
being stable, so equal-distance hospitals keep their input order.
"""

import asyncio
import math
from typing import Iterable, Sequence

from prealert.models.geo import Coordinates
from prealert.models.hospital import Hospital, RankedHospital
from prealert.models.recommendation import Recommendation
from prealert.services.geo import DEFAULT_SPEED_KMH, estimate_eta, estimate_straight_line, is_usable
from prealert.services.routing import RoutingClient


def equipment_match(hospital: Hospital, required: Iterable[str] | None) -> tuple[bool, list[str]]:
    """Return (has_all, missing) for the required equipment list."""
    required = list(required or [])
    if not required:
        return True, []
    available = set(hospital.equipment or [])
    missing = [item for item in required if item not in available]
    return not missing, missing


def _matches_search(hospital: Hospital, term: str) -> bool:
    term = term.lower()
    fields = [hospital.name, hospital.address, hospital.contact or "", *hospital.equipment]
    return any(term in (value or "").lower() for value in fields)


def _has_specialty(hospital: Hospital, specialty: str) -> bool:
    wanted = specialty.lower()
    return any(wanted == s.lower() for s in hospital.specialties)


def _eligible(
    hospitals: Sequence[Hospital],
    *,
    alert_id: str | None,
    search: str | None,
    required_equipment: Sequence[str] | None,
    specialty: str | None,
) -> list[Hospital]:
    """Apply the distance-independent filters, preserving input order."""
    term = (search or "").strip()
    out = []
    for hospital in hospitals:
        if alert_id and hospital.unavailable_for_alert == alert_id:
            continue
        if not is_usable(hospital.coordinates):
            continue
        if term and not _matches_search(hospital, term):
            continue
        if required_equipment and not equipment_match(hospital, required_equipment)[0]:
            continue
        if specialty and not _has_specialty(hospital, specialty):
            continue
        out.append(hospital)
    return out


def rank_hospitals(
    origin: Coordinates,
    hospitals: Sequence[Hospital],
    *,
    alert_id: str | None = None,
    search: str | None = None,
    max_radius_km: float | None = None,
    required_equipment: Sequence[str] | None = None,
    specialty: str | None = None,
    speed_kmh: float = DEFAULT_SPEED_KMH,
) -> list[RankedHospital]:
    """Order hospitals nearest-first from ``origin``.

    An empty list is a valid "no candidates" answer, not an error.
    """
    ranked = []
    for hospital in _eligible(
        hospitals,
        alert_id=alert_id,
        search=search,
        required_equipment=required_equipment,
        specialty=specialty,
    ):
        distance = estimate_straight_line(origin, hospital.coordinates)
        if not math.isfinite(distance):
            continue
        if max_radius_km is not None and distance > max_radius_km:
            continue
        ranked.append(RankedHospital(
            **hospital.model_dump(),
            distance_km=distance,
            eta_minutes=estimate_eta(distance, speed_kmh),
        ))
    return sorted(ranked, key=lambda h: h.distance_km)


async def rank_hospitals_routed(
    origin: Coordinates,
    hospitals: Sequence[Hospital],
    routing: RoutingClient,
    *,
    alert_id: str | None = None,
    search: str | None = None,
    max_radius_km: float | None = None,
    required_equipment: Sequence[str] | None = None,
    specialty: str | None = None,
) -> list[RankedHospital]:
    """Like ``rank_hospitals`` but distance/ETA come from the routing service, sorted by ETA."""
    candidates = _eligible(
        hospitals,
        alert_id=alert_id,
        search=search,
        required_equipment=required_equipment,
        specialty=specialty,
    )
    routes = await asyncio.gather(
        *(routing.estimate_routed(origin, h.coordinates) for h in candidates)
    )

    ranked = []
    for hospital, route in zip(candidates, routes):
        distance = round(route.distance_meters / 1000, 1)
        if max_radius_km is not None and distance > max_radius_km:
            continue
        ranked.append(RankedHospital(
            **hospital.model_dump(),
            distance_km=distance,
            eta_minutes=math.ceil(route.duration_seconds / 60),
            route=route,
        ))
    return sorted(ranked, key=lambda h: h.eta_minutes)


def fallback_recommendations(
    candidates: Sequence[RankedHospital],
    required_equipment: Sequence[str] | None = None,
    max_radius_km: float = 5.0,
    limit: int = 3,
) -> list[Recommendation]:
    """Deterministic top-N when the recommendation oracle is absent.

    Score = 0.7 * equipment score + 0.3 * distance score, halved for
    hospitals beyond ``max_radius_km`` that also lack required equipment.
    """
    scored = []
    for hospital in candidates:
        has_all, missing = equipment_match(hospital, required_equipment)
        equipment_score = 100 if has_all else max(0, 100 - len(missing) * 20)
        distance_score = max(0.0, 50 - hospital.distance_km * 2)
        radius_penalty = 0.5 if hospital.distance_km > max_radius_km and not has_all else 1.0
        score = round((equipment_score * 0.7 + distance_score * 0.3) * radius_penalty)

        if has_all:
            reasoning = f"All required equipment available, {hospital.distance_km} km away"
        else:
            reasoning = f"Missing {', '.join(missing)}, {hospital.distance_km} km away"
        scored.append(Recommendation(
            hospital=hospital,
            confidence=min(100, score),
            reasoning=reasoning,
            missing_equipment=missing,
        ))
    scored = sorted(scored, key=lambda r: -r.confidence)
    return scored[:limit]

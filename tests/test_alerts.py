"""Tests for the alert lifecycle (prealert/services/alerts.py)."""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from conftest import AMBULANCE_ID, CITYCARE, ECU, GENERAL, make_patient, sign_in
from prealert.errors import Conflict, Forbidden, InvalidArgument, NotFound, Unavailable
from prealert.models.alert import AlertCreate
from prealert.models.patient import Patient


def _create(hospital_id=CITYCARE, **kwargs) -> AlertCreate:
    return AlertCreate(patient=Patient(**make_patient()), hospital_id=hospital_id, **kwargs)


@pytest.mark.asyncio
async def test_create_alert_starts_pending_with_one_entry(services, ambulance):
    created = await services.alerts.create_alert(ambulance, _create(distance=5.2))

    alert = created.alert
    assert alert.status == "pending"
    assert alert.ambulance_id == AMBULANCE_ID
    assert alert.hospital_id == CITYCARE
    assert alert.eta == 8
    assert len(alert.audit_log) == 1
    assert alert.audit_log[0].action == "Pre-alert sent"
    assert alert.audit_log[0].actor == "amb001"
    assert created.hospital.id == CITYCARE

    stored = await services.store.get_alert(alert.id)
    assert stored == alert


@pytest.mark.asyncio
async def test_create_alert_derives_distance_from_ambulance_location(services, ambulance):
    alert = (await services.alerts.create_alert(ambulance, _create())).alert
    assert alert.distance == pytest.approx(1.8, abs=0.1)
    assert alert.eta == 3


@pytest.mark.asyncio
async def test_create_alert_unknown_hospital(services, ambulance):
    with pytest.raises(NotFound):
        await services.alerts.create_alert(ambulance, _create(hospital_id="hosp-missing"))
    assert await services.store.list_alerts() == []


@pytest.mark.asyncio
async def test_create_alert_requires_ambulance(services, citycare):
    with pytest.raises(Forbidden):
        await services.alerts.create_alert(citycare, _create())


@pytest.mark.asyncio
async def test_create_alert_for_other_ambulance_forbidden(services, ambulance):
    with pytest.raises(Forbidden):
        await services.alerts.create_alert(ambulance, _create(ambulance_id="amb-999"))


@pytest.mark.asyncio
async def test_acknowledge_then_accept(services, ambulance, citycare):
    alert = (await services.alerts.create_alert(ambulance, _create())).alert

    acked = await services.alerts.update_status(citycare, alert.id, "acknowledged")
    assert acked.status == "acknowledged"
    accepted = await services.alerts.update_status(citycare, alert.id, "accepted")
    assert accepted.status == "accepted"

    assert [e.action for e in accepted.audit_log] == [
        "Pre-alert sent",
        "Alert acknowledged",
        "Alert accepted",
    ]


@pytest.mark.asyncio
async def test_decline_requires_reason_and_has_no_side_effects(services, ambulance, citycare):
    alert = (await services.alerts.create_alert(ambulance, _create())).alert

    for reason in (None, "", "   "):
        with pytest.raises(InvalidArgument):
            await services.alerts.update_status(citycare, alert.id, "declined", reason=reason)

    stored = await services.store.get_alert(alert.id)
    assert stored.status == "pending"
    assert len(stored.audit_log) == 1


@pytest.mark.asyncio
async def test_decline_records_reason(services, ambulance, citycare):
    alert = (await services.alerts.create_alert(ambulance, _create())).alert
    declined = await services.alerts.update_status(citycare, alert.id, "declined", reason="No ICU beds")

    assert declined.status == "declined"
    assert declined.decline_reason == "No ICU beds"
    assert declined.audit_log[-1].details == "No ICU beds"


@pytest.mark.asyncio
async def test_terminal_alerts_reject_updates(services, ambulance, citycare):
    alert = (await services.alerts.create_alert(ambulance, _create())).alert
    await services.alerts.update_status(citycare, alert.id, "declined", reason="Full")

    with pytest.raises(InvalidArgument):
        await services.alerts.update_status(citycare, alert.id, "accepted")
    assert len((await services.store.get_alert(alert.id)).audit_log) == 2


@pytest.mark.asyncio
async def test_backwards_transition_rejected(services, ambulance, citycare):
    alert = (await services.alerts.create_alert(ambulance, _create())).alert
    await services.alerts.update_status(citycare, alert.id, "accepted")
    with pytest.raises(InvalidArgument):
        await services.alerts.update_status(citycare, alert.id, "acknowledged")


@pytest.mark.asyncio
async def test_unknown_alert(services, citycare):
    with pytest.raises(NotFound):
        await services.alerts.update_status(citycare, "alert-missing", "accepted")


@pytest.mark.asyncio
async def test_only_assigned_hospital_can_respond(services, ambulance, general, admin):
    alert = (await services.alerts.create_alert(ambulance, _create())).alert

    with pytest.raises(Forbidden):
        await services.alerts.update_status(general, alert.id, "accepted")
    with pytest.raises(Forbidden):
        await services.alerts.update_status(ambulance, alert.id, "accepted")

    updated = await services.alerts.update_status(admin, alert.id, "acknowledged")
    assert updated.audit_log[-1].actor == "admin"


@pytest.mark.asyncio
async def test_expected_status_mismatch_is_conflict(services, ambulance, citycare):
    alert = (await services.alerts.create_alert(ambulance, _create())).alert
    await services.alerts.update_status(citycare, alert.id, "acknowledged")

    with pytest.raises(Conflict):
        await services.alerts.update_status(citycare, alert.id, "accepted", expected_status="pending")

    ok = await services.alerts.update_status(citycare, alert.id, "accepted", expected_status="acknowledged")
    assert ok.status == "accepted"


@pytest.mark.asyncio
async def test_concurrent_write_detected(services, ambulance, citycare):
    alert = (await services.alerts.create_alert(ambulance, _create())).alert

    # Another process wins the race between our read and our write
    real_get = services.store.get_alert

    async def stale_get(alert_id):
        current = await real_get(alert_id)
        await services.db.execute("UPDATE alerts SET status = 'acknowledged' WHERE id = ?", (alert_id,))
        await services.db.commit()
        return current

    with patch.object(services.store, "get_alert", side_effect=stale_get):
        with pytest.raises(Conflict):
            await services.alerts.update_status(citycare, alert.id, "accepted")

    stored = await real_get(alert.id)
    assert stored.status == "acknowledged"
    assert len(stored.audit_log) == 1


@pytest.mark.asyncio
async def test_concurrent_updates_append_in_order(services, ambulance, citycare):
    alert = (await services.alerts.create_alert(ambulance, _create())).alert
    results = await asyncio.gather(
        services.alerts.update_status(citycare, alert.id, "acknowledged"),
        services.alerts.update_status(citycare, alert.id, "accepted"),
        return_exceptions=True,
    )
    assert not any(isinstance(r, Exception) for r in results)
    stored = await services.store.get_alert(alert.id)
    assert [e.action for e in stored.audit_log][1:] == ["Alert acknowledged", "Alert accepted"]


@pytest.mark.asyncio
async def test_complete_case(services, ambulance, citycare):
    alert = (await services.alerts.create_alert(ambulance, _create())).alert
    await services.alerts.update_status(citycare, alert.id, "accepted")

    done = await services.alerts.complete_case(ambulance, alert.id)
    assert done.status == "completed"
    assert done.completed_at is not None
    assert done.audit_log[-1].action == "Patient dropped"

    with pytest.raises(InvalidArgument):
        await services.alerts.complete_case(ambulance, alert.id)


@pytest.mark.asyncio
async def test_complete_case_by_assigned_hospital(services, ambulance, citycare, general):
    alert = (await services.alerts.create_alert(ambulance, _create())).alert
    with pytest.raises(Forbidden):
        await services.alerts.complete_case(general, alert.id)
    assert (await services.alerts.complete_case(citycare, alert.id)).status == "completed"


@pytest.mark.asyncio
async def test_complete_unknown_alert(services, ambulance):
    with pytest.raises(NotFound):
        await services.alerts.complete_case(ambulance, "alert-missing")


@pytest.mark.asyncio
async def test_change_hospital_after_decline(services, ambulance, citycare):
    alert = (await services.alerts.create_alert(ambulance, _create(distance=5.2))).alert
    assert alert.eta == 8
    await services.alerts.update_status(citycare, alert.id, "declined", reason="No ICU beds")

    changed = await services.alerts.change_hospital(ambulance, alert.id, GENERAL, "no ICU beds")

    moved = changed.alert
    assert moved.hospital_id == GENERAL
    assert moved.previous_hospital_ids == [CITYCARE]
    assert moved.status == "pending"
    assert moved.decline_reason is None
    assert changed.hospital.id == GENERAL
    entry = moved.audit_log[-1]
    assert entry.action == "Hospital changed"
    assert "CityCare Hospital" in entry.details
    assert "General Medical Center" in entry.details
    assert "no ICU beds" in entry.details


@pytest.mark.asyncio
async def test_change_hospital_scenario_has_two_entries(services, ambulance):
    alert = (await services.alerts.create_alert(ambulance, _create(distance=5.2))).alert
    moved = (await services.alerts.change_hospital(ambulance, alert.id, GENERAL, "no ICU beds")).alert

    assert moved.previous_hospital_ids == [CITYCARE]
    assert moved.hospital_id == GENERAL
    assert moved.status == "pending"
    assert len(moved.audit_log) == 2


@pytest.mark.asyncio
async def test_change_hospital_twice_grows_history(services, ambulance):
    alert = (await services.alerts.create_alert(ambulance, _create())).alert
    await services.alerts.change_hospital(ambulance, alert.id, GENERAL, "full")
    moved = (await services.alerts.change_hospital(ambulance, alert.id, ECU, "closer")).alert
    assert moved.previous_hospital_ids == [CITYCARE, GENERAL]
    assert len(moved.audit_log) == 3


@pytest.mark.asyncio
async def test_change_hospital_validation(services, ambulance, citycare):
    alert = (await services.alerts.create_alert(ambulance, _create())).alert

    with pytest.raises(InvalidArgument):
        await services.alerts.change_hospital(ambulance, alert.id, GENERAL, " ")
    with pytest.raises(InvalidArgument):
        await services.alerts.change_hospital(ambulance, alert.id, CITYCARE, "same")
    with pytest.raises(NotFound):
        await services.alerts.change_hospital(ambulance, alert.id, "hosp-missing", "gone")
    with pytest.raises(Forbidden):
        await services.alerts.change_hospital(citycare, alert.id, GENERAL, "not mine")

    assert len((await services.store.get_alert(alert.id)).audit_log) == 1


@pytest.mark.asyncio
async def test_other_ambulance_cannot_change_hospital(services, ambulance):
    alert = (await services.alerts.create_alert(ambulance, _create())).alert
    other = await sign_in(services, "amb002", "ambulance", "amb-002")
    with pytest.raises(Forbidden):
        await services.alerts.change_hospital(other, alert.id, GENERAL, "mine now")


@pytest.mark.asyncio
async def test_mark_unavailable_twice_appends_two_entries(services, ambulance):
    alert = (await services.alerts.create_alert(ambulance, _create())).alert

    await services.alerts.mark_hospital_unavailable(ambulance, alert.id, GENERAL, "Diversion")
    updated = await services.alerts.mark_hospital_unavailable(ambulance, alert.id, GENERAL, "Diversion")

    unavailable = [e for e in updated.audit_log if e.action == "Hospital marked unavailable"]
    assert len(unavailable) == 2
    assert all(e.hospital_id == GENERAL for e in unavailable)
    assert updated.status == "pending"
    assert await services.alerts.unavailable_hospital_ids(alert.id) == {GENERAL}


@pytest.mark.asyncio
async def test_candidate_hospitals_flag_unavailable(services, ambulance):
    alert = (await services.alerts.create_alert(ambulance, _create())).alert
    await services.alerts.mark_hospital_unavailable(ambulance, alert.id, ECU, "Closed")

    flagged = {h.id: h.unavailable_for_alert for h in await services.alerts.candidate_hospitals(alert.id)}
    assert flagged[ECU] == alert.id
    assert flagged[GENERAL] is None
    assert all(h.unavailable_for_alert is None for h in await services.alerts.candidate_hospitals())


@pytest.mark.asyncio
async def test_mark_unavailable_requires_reason(services, ambulance):
    alert = (await services.alerts.create_alert(ambulance, _create())).alert
    with pytest.raises(InvalidArgument):
        await services.alerts.mark_hospital_unavailable(ambulance, alert.id, GENERAL, "")


@pytest.mark.asyncio
async def test_list_alerts_scoped_to_caller(services, ambulance, citycare, general, admin):
    first = (await services.alerts.create_alert(ambulance, _create(CITYCARE))).alert
    second = (await services.alerts.create_alert(ambulance, _create(GENERAL))).alert

    assert [a.id for a in await services.alerts.list_alerts(citycare)] == [first.id]
    assert [a.id for a in await services.alerts.list_alerts(general)] == [second.id]
    assert {a.id for a in await services.alerts.list_alerts(ambulance)} == {first.id, second.id}
    assert {a.id for a in await services.alerts.list_alerts(admin)} == {first.id, second.id}
    # A hospital cannot widen its view with a filter
    assert [a.id for a in await services.alerts.list_alerts(citycare, hospital_id=GENERAL)] == [first.id]


@pytest.mark.asyncio
async def test_get_alert_visibility(services, ambulance, citycare, general):
    alert = (await services.alerts.create_alert(ambulance, _create())).alert
    assert (await services.alerts.get_alert(citycare, alert.id)).id == alert.id
    with pytest.raises(Forbidden):
        await services.alerts.get_alert(general, alert.id)


@pytest.mark.asyncio
async def test_store_failure_is_unavailable(services, ambulance, citycare):
    alert = (await services.alerts.create_alert(ambulance, _create())).alert

    with patch.object(services.db, "execute", AsyncMock(side_effect=RuntimeError("disk full"))):
        with pytest.raises(Unavailable) as excinfo:
            await services.alerts.update_status(citycare, alert.id, "accepted")
    assert excinfo.value.retryable is True

    stored = await services.store.get_alert(alert.id)
    assert stored.status == "pending"


@pytest.mark.asyncio
async def test_refresh_route_skips_terminal(services, ambulance, citycare):
    alert = (await services.alerts.create_alert(ambulance, _create())).alert
    refreshed = await services.alerts.refresh_route(alert.id, 2.5, 6)
    assert (refreshed.distance, refreshed.eta) == (2.5, 6)
    assert len(refreshed.audit_log) == 1

    await services.alerts.update_status(citycare, alert.id, "declined", reason="Full")
    assert await services.alerts.refresh_route(alert.id, 1.0, 3) is None


@pytest.mark.asyncio
async def test_failed_audit_insert_rolls_back_status(services, ambulance, citycare):
    alert = (await services.alerts.create_alert(ambulance, _create())).alert

    with patch.object(services.store, "_insert_audit", AsyncMock(side_effect=RuntimeError("disk full"))):
        with pytest.raises(Unavailable):
            await services.alerts.update_status(citycare, alert.id, "accepted")

    stored = await services.store.get_alert(alert.id)
    assert stored.status == "pending"
    assert [e.action for e in stored.audit_log] == ["Pre-alert sent"]

    # The alert is still usable afterwards
    accepted = await services.alerts.update_status(citycare, alert.id, "accepted")
    assert [e.action for e in accepted.audit_log] == ["Pre-alert sent", "Alert accepted"]

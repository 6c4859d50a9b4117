"""
Tests de la máquina de estados de reservas
"""
from datetime import datetime

import pytest

from ondemand.errors import Forbidden, InvalidTransition, NotFound
from ondemand.lifecycle import TRANSITIONS, allowed_successors
from ondemand.schemas.booking import BookingStatus, TERMINAL_STATUSES

from conftest import ADMIN, CUSTOMER, OTHER_CUSTOMER, OTHER_PROVIDER, PROVIDER, booking_payload

S = BookingStatus


def test_table_only_targets_known_states_and_terminals_have_no_edges():
    reachable = {S.pending}
    frontier = [S.pending]
    while frontier:
        current = frontier.pop()
        for target in TRANSITIONS.get(current, {}):
            if target not in reachable:
                reachable.add(target)
                frontier.append(target)
    assert reachable == set(BookingStatus)
    for terminal in TERMINAL_STATUSES:
        assert terminal not in TRANSITIONS
        assert allowed_successors(terminal) == []


async def test_create_booking_starts_pending(manager):
    booking = await manager.create_booking(booking_payload(), CUSTOMER)
    assert booking.status == S.pending
    assert booking.booking_id == "OD-BK-000001"
    assert booking.customer.user_id == CUSTOMER.id
    assert booking.pricing.total == 590
    assert booking.completion_otp is None
    assert [h.status for h in booking.status_history] == [S.pending]

    second = await manager.create_booking(booking_payload())
    assert second.booking_id == "OD-BK-000002"
    assert second.customer.user_id is None


async def test_provider_cannot_create_booking(manager):
    with pytest.raises(Forbidden):
        await manager.create_booking(booking_payload(), PROVIDER)


async def test_happy_path_records_history(manager, make_booking, clock):
    booking = await make_booking(S.in_progress)
    assert booking.service_provider == PROVIDER.id
    assert booking.work_duration.started_at == clock.now

    clock.advance(minutes=95)
    booking = await manager.transition(booking.id, S.work_completed, PROVIDER)
    await manager.drain_notifications()

    assert booking.status == S.work_completed
    assert booking.work_duration.actual_minutes == 95
    assert [h.status for h in booking.status_history] == [
        S.pending, S.confirmed, S.provider_on_way, S.in_progress, S.work_completed,
    ]
    assert booking.status_history[-1].actor == PROVIDER
    assert booking.status_history[-1].status == booking.status


async def test_admin_confirms_pending(manager, make_booking):
    booking = await make_booking()
    confirmed = await manager.transition(booking.id, S.confirmed, ADMIN, notes="confirmada por teléfono")
    assert confirmed.status == S.confirmed
    assert confirmed.status_history[-1].notes == "confirmada por teléfono"


async def test_customer_cancels_pending_then_everything_is_rejected(manager, make_booking):
    booking = await make_booking()
    cancelled = await manager.transition(booking.id, S.cancelled_by_customer, CUSTOMER, reason="ya no lo necesito")
    assert cancelled.status == S.cancelled_by_customer
    assert cancelled.cancellation.cancelled_by.value == "customer"
    assert cancelled.cancellation.reason == "ya no lo necesito"
    assert cancelled.cancellation.refund_eligible is True

    for target, actor in [
        (S.confirmed, ADMIN),
        (S.cancelled_by_admin, ADMIN),
        (S.cancelled_by_customer, CUSTOMER),
        (S.pending, CUSTOMER),
    ]:
        with pytest.raises(InvalidTransition) as exc:
            await manager.transition(booking.id, target, actor)
        assert exc.value.current == "cancelled_by_customer"
        assert exc.value.allowed == []


@pytest.mark.parametrize("terminal", [S.cancelled_by_admin, S.cancelled_by_provider])
async def test_terminal_states_reject_any_actor(manager, make_booking, terminal):
    if terminal == S.cancelled_by_admin:
        booking = await make_booking()
        booking = await manager.transition(booking.id, terminal, ADMIN)
    else:
        booking = await make_booking(S.provider_on_way)
        booking = await manager.transition(booking.id, terminal, PROVIDER)
        assert booking.cancellation.refund_eligible is False

    for actor in (CUSTOMER, PROVIDER, ADMIN):
        for target in BookingStatus:
            with pytest.raises(InvalidTransition):
                await manager.transition(booking.id, target, actor)


async def test_unassigned_provider_is_forbidden_and_state_unchanged(manager, make_booking, store):
    booking = await make_booking(S.confirmed)
    for target in (S.provider_on_way, S.cancelled_by_provider, S.in_progress):
        with pytest.raises(Forbidden):
            await manager.transition(booking.id, target, OTHER_PROVIDER)

    reloaded = await store.load(booking.id)
    assert reloaded.status == S.confirmed
    assert reloaded.version == booking.version
    assert len(reloaded.status_history) == len(booking.status_history)


async def test_other_customer_is_forbidden(manager, make_booking):
    booking = await make_booking()
    with pytest.raises(Forbidden):
        await manager.transition(booking.id, S.cancelled_by_customer, OTHER_CUSTOMER)


async def test_customer_cannot_take_provider_edge(manager, make_booking):
    booking = await make_booking(S.confirmed)
    with pytest.raises(Forbidden) as exc:
        await manager.transition(booking.id, S.provider_on_way, CUSTOMER)
    assert exc.value.details["actor"] == {"role": "customer", "id": CUSTOMER.id}


async def test_customer_cannot_cancel_once_provider_is_on_the_way(manager, make_booking):
    booking = await make_booking(S.provider_on_way)
    with pytest.raises(InvalidTransition) as exc:
        await manager.transition(booking.id, S.cancelled_by_customer, CUSTOMER)
    assert set(exc.value.allowed) == {"in_progress", "cancelled_by_provider"}


async def test_skipping_states_is_invalid(manager, make_booking):
    booking = await make_booking(S.confirmed)
    with pytest.raises(InvalidTransition) as exc:
        await manager.transition(booking.id, S.in_progress, PROVIDER)
    assert exc.value.code == "InvalidTransition"
    assert exc.value.details["requested_status"] == "in_progress"


async def test_completed_cannot_be_set_directly(manager, make_booking):
    booking = await make_booking(S.work_completed)
    with pytest.raises(InvalidTransition):
        await manager.transition(booking.id, S.completed, PROVIDER)


async def test_unknown_booking_is_not_found(manager):
    with pytest.raises(NotFound):
        await manager.transition("507f1f77bcf86cd799439011", S.confirmed, ADMIN)


async def test_assign_provider_confirms_and_allows_reassignment(manager, make_booking):
    booking = await make_booking()
    with pytest.raises(Forbidden):
        await manager.assign_provider(booking.id, PROVIDER.id, CUSTOMER)

    confirmed = await manager.assign_provider(booking.id, PROVIDER.id, ADMIN)
    assert confirmed.status == S.confirmed
    history_len = len(confirmed.status_history)

    reassigned = await manager.assign_provider(booking.id, OTHER_PROVIDER.id, ADMIN)
    assert reassigned.service_provider == OTHER_PROVIDER.id
    assert len(reassigned.status_history) == history_len

    await manager.transition(booking.id, S.provider_on_way, OTHER_PROVIDER)
    with pytest.raises(InvalidTransition):
        await manager.assign_provider(booking.id, PROVIDER.id, ADMIN)


async def test_get_booking_visibility(manager, make_booking):
    booking = await make_booking(S.confirmed)
    for actor in (CUSTOMER, PROVIDER, ADMIN):
        assert (await manager.get_booking(booking.id, actor)).id == booking.id
    for actor in (OTHER_CUSTOMER, OTHER_PROVIDER):
        with pytest.raises(Forbidden):
            await manager.get_booking(booking.id, actor)


async def test_stats_and_listings(manager, make_booking):
    await make_booking()
    await make_booking(S.in_progress)
    cancelled = await make_booking()
    await manager.transition(cancelled.id, S.cancelled_by_customer, CUSTOMER)

    stats = await manager.booking_stats(ADMIN)
    assert stats.total == 3
    assert stats.by_status["pending"] == 1
    assert stats.by_status["in_progress"] == 1
    assert stats.cancelled == 1
    assert stats.active == 2

    with pytest.raises(Forbidden):
        await manager.booking_stats(CUSTOMER)

    assert len(await manager.list_my_bookings(CUSTOMER)) == 3
    assert len(await manager.list_my_bookings(PROVIDER)) == 1
    assert len(await manager.list_my_bookings(CUSTOMER, S.pending)) == 1

    items, total = await manager.list_bookings(ADMIN, page=1, limit=2)
    assert total == 3 and len(items) == 2


async def test_track_booking_by_reference_and_phone(manager, make_booking):
    booking = await make_booking()
    found = await manager.track_booking(booking.booking_id, "+919999999999")
    assert found.id == booking.id
    with pytest.raises(NotFound):
        await manager.track_booking(booking.booking_id, "+910000000000")


async def test_admin_listing_filters_by_provider_and_schedule(manager, make_booking):
    pending = await make_booking()
    later = await manager.create_booking(booking_payload(scheduled_date="2026-10-25T10:00:00"), CUSTOMER)
    await manager.assign_provider(later.id, OTHER_PROVIDER.id, ADMIN)
    mine = await make_booking(S.confirmed)

    items, total = await manager.list_bookings(ADMIN, provider_id=PROVIDER.id)
    assert total == 1 and items[0].id == mine.id

    items, total = await manager.list_bookings(ADMIN, from_date=datetime(2026, 10, 21))
    assert [b.id for b in items] == [later.id]

    # Los extremos del rango son inclusivos
    items, total = await manager.list_bookings(ADMIN, to_date=datetime(2026, 10, 20, 10, 0))
    assert {b.id for b in items} == {pending.id, mine.id}

    items, total = await manager.list_bookings(ADMIN, S.confirmed, provider_id=OTHER_PROVIDER.id)
    assert total == 1 and items[0].id == later.id

    with pytest.raises(Forbidden):
        await manager.list_bookings(PROVIDER, provider_id=PROVIDER.id)


async def _complete(manager, sender, payload):
    booking = await manager.create_booking(payload, CUSTOMER)
    await manager.assign_provider(booking.id, PROVIDER.id, ADMIN)
    for step in (S.provider_on_way, S.in_progress, S.work_completed):
        await manager.transition(booking.id, step, PROVIDER)
    await manager.drain_notifications()
    return await manager.verify_completion_otp(booking.id, sender.last_code, PROVIDER)


async def test_stats_report_today_revenue_and_created_range(manager, sender, clock):
    # Día 20: una completada de 590 programada ese mismo día
    await _complete(manager, sender, booking_payload())

    clock.advance(days=2)
    # Día 22: una pendiente para hoy y otra completada de 236 programada el 20
    await manager.create_booking(booking_payload(scheduled_date="2026-10-22T15:00:00"), CUSTOMER)
    await _complete(manager, sender, booking_payload(pricing={"service_charge": 200, "tax": 36}))

    stats = await manager.booking_stats(ADMIN)
    assert stats.total == 3
    assert stats.by_status["completed"] == 2
    assert stats.revenue == 826.0
    assert stats.today == 1

    recent = await manager.booking_stats(ADMIN, from_date=datetime(2026, 10, 21))
    assert recent.total == 2
    assert recent.revenue == 236.0
    assert recent.today == 1

    first_day = await manager.booking_stats(ADMIN, to_date=datetime(2026, 10, 20, 23, 59))
    assert first_day.total == 1
    assert first_day.revenue == 590.0

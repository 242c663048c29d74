from datetime import time, timedelta

import pytest

from app.core.exceptions import NotFoundError, ValidationError
from app.core.time_window import now_local
from app.models.appointment import Appointment, AppointmentStatus
from app.models.closed_day import ProviderClosedDay
from app.models.service import Service
from app.services.availability import (
    SlotLockRegistry,
    available_slots,
    check_availability,
    provider_availability,
    resolve_business_hours,
)

from tests.conftest import future_at


def book(session, service, customer, start, status=AppointmentStatus.PENDING):
    appt = Appointment(
        client_id=customer.id,
        provider_id=service.provider_id,
        service_id=service.id,
        scheduled_start=start,
        service_name_snapshot=service.name,
        duration_minutes=service.duration_minutes,
        status=status,
        total_price=service.price,
    )
    session.add(appt)
    session.commit()
    return appt


def test_free_slot_is_admitted(session, provider, service):
    decision = check_availability(session, provider.id, service.id, future_at(14))

    assert decision.admitted
    assert decision.reason is None


def test_past_start_is_rejected(session, provider, service):
    with pytest.raises(ValidationError):
        check_availability(session, provider.id, service.id, future_at(14, days=-1))


def test_service_of_another_provider_is_not_found(session, provider, service, customer):
    with pytest.raises(NotFoundError):
        check_availability(session, provider.id + 100, service.id, future_at(14))


def test_inactive_service_is_not_found(session, provider, service):
    service.active = False
    session.add(service)
    session.commit()

    with pytest.raises(NotFoundError):
        check_availability(session, provider.id, service.id, future_at(14))


def test_closed_day_rejects(session, provider, service):
    start = future_at(14)
    session.add(ProviderClosedDay(provider_id=provider.id, closed_date=start.date(), reason="Feriado"))
    session.commit()

    decision = check_availability(session, provider.id, service.id, start)

    assert not decision.admitted
    assert start.date().isoformat() in decision.reason


def test_closed_service_rejects(session, provider, service):
    service.is_closed = True
    session.add(service)
    session.commit()

    decision = check_availability(session, provider.id, service.id, future_at(14))

    assert not decision.admitted
    assert decision.reason == "Serviço temporariamente fechado"


def test_start_at_closing_time_is_rejected(session, provider, service):
    decision = check_availability(session, provider.id, service.id, future_at(18))

    assert not decision.admitted
    assert "08:00" in decision.reason and "18:00" in decision.reason


def test_start_before_closing_is_admitted_even_if_it_ends_later(session, provider, service):
    assert check_availability(session, provider.id, service.id, future_at(17, 45)).admitted


def test_start_before_opening_is_rejected(session, provider, service):
    assert not check_availability(session, provider.id, service.id, future_at(7, 30)).admitted


def test_full_slot_rejects(session, provider, service, customer):
    start = future_at(14)
    book(session, service, customer, start)

    decision = check_availability(session, provider.id, service.id, start)

    assert not decision.admitted
    assert "lotado" in decision.reason


def test_partially_overlapping_booking_counts(session, provider, service, customer):
    book(session, service, customer, future_at(13, 45))

    assert not check_availability(session, provider.id, service.id, future_at(14)).admitted


def test_touching_bookings_do_not_conflict(session, provider, service, customer):
    book(session, service, customer, future_at(13, 30))
    book(session, service, customer, future_at(14, 30))

    assert check_availability(session, provider.id, service.id, future_at(14)).admitted


@pytest.mark.parametrize(
    "status",
    [AppointmentStatus.CANCELLED, AppointmentStatus.COMPLETED, AppointmentStatus.NO_SHOW, AppointmentStatus.REBOOKED],
)
def test_non_holding_statuses_free_the_slot(session, provider, service, customer, status):
    start = future_at(14)
    book(session, service, customer, start, status=status)

    assert check_availability(session, provider.id, service.id, start).admitted


def test_scheduled_booking_holds_the_slot(session, provider, service, customer):
    start = future_at(14)
    book(session, service, customer, start, status=AppointmentStatus.SCHEDULED)

    assert not check_availability(session, provider.id, service.id, start).admitted


def test_capacity_allows_parallel_bookings(session, provider, service, customer, other_customer):
    service.capacity = 2
    session.add(service)
    session.commit()
    start = future_at(14)

    book(session, service, customer, start)
    assert check_availability(session, provider.id, service.id, start).admitted

    book(session, service, other_customer, start)
    assert not check_availability(session, provider.id, service.id, start).admitted


def test_excluded_appointment_does_not_block_its_own_reschedule(session, provider, service, customer):
    appt = book(session, service, customer, future_at(14))

    decision = check_availability(
        session, provider.id, service.id, future_at(14, 15), exclude_appointment_id=appt.id
    )

    assert decision.admitted


def test_service_hours_override_provider_hours(session, provider):
    evening = Service(
        name="Noturno",
        duration_minutes=60,
        price=2000.0,
        provider_id=provider.id,
        opening_time=time(18, 0),
        closing_time=time(22, 0),
        slot_interval=60,
    )
    session.add(evening)
    session.commit()

    assert resolve_business_hours(provider, evening) == (time(18, 0), time(22, 0))
    assert check_availability(session, provider.id, evening.id, future_at(20)).admitted
    assert not check_availability(session, provider.id, evening.id, future_at(10)).admitted


def test_service_with_only_one_bound_falls_back_to_provider_hours(provider):
    half = Service(name="X", duration_minutes=30, price=1.0, provider_id=provider.id, opening_time=time(6, 0))

    assert resolve_business_hours(provider, half) == (time(8, 0), time(18, 0))


def test_provider_availability_lists_holding_bookings(session, provider, service, customer):
    start = future_at(14)
    book(session, service, customer, start)
    book(session, service, customer, future_at(15), status=AppointmentStatus.CANCELLED)

    result = provider_availability(session, provider.id, start.date())

    assert result["is_closed"] is False
    assert result["opening_time"] == "08:00"
    assert result["closing_time"] == "18:00"
    assert result["booked_slots"] == [{"start": "14:00", "end": "14:30"}]


def test_provider_availability_of_unknown_provider(session, customer):
    with pytest.raises(NotFoundError):
        provider_availability(session, customer.id, future_at(14).date())


def test_available_slots_skip_full_starts(session, provider, service, customer):
    start = future_at(14)
    book(session, service, customer, start)

    result = available_slots(session, service.id, start.date())
    starts = [slot["start"] for slot in result["slots"]]

    assert result["is_closed"] is False
    assert start.isoformat() not in starts
    assert future_at(13, 30).isoformat() in starts
    assert future_at(14, 30).isoformat() in starts
    # 08:00 até 17:30, de 30 em 30 minutos, menos o ocupado
    assert len(starts) == 19


def test_available_slots_on_closed_day(session, provider, service):
    day = future_at(14).date()
    session.add(ProviderClosedDay(provider_id=provider.id, closed_date=day, reason="Feriado"))
    session.commit()

    result = available_slots(session, service.id, day)

    assert result["is_closed"] is True
    assert result["reason"] == "Feriado"
    assert result["slots"] == []


def test_available_slots_hide_past_starts(session, provider, service):
    day = future_at(14).date()
    now = future_at(12)

    result = available_slots(session, service.id, day, now=now)

    assert result["slots"][0]["start"] == (now + timedelta(minutes=30)).isoformat()


def test_lock_registry_reuses_lock_per_provider_day():
    registry = SlotLockRegistry()
    day = future_at(14).date()

    assert registry.lock_for(1, day) is registry.lock_for(1, day)
    assert registry.lock_for(1, day) is not registry.lock_for(2, day)
    assert registry.lock_for(1, day) is not registry.lock_for(1, day + timedelta(days=1))


def test_lock_registry_drops_locks_of_past_days():
    registry = SlotLockRegistry()
    today = now_local().date()
    registry.lock_for(1, today - timedelta(days=3))
    held = registry.lock_for(2, today - timedelta(days=1))
    held.acquire()

    registry.lock_for(1, today + timedelta(days=2))

    # o lock segurado sobrevive até ser liberado
    assert len(registry) == 2
    held.release()
    registry.lock_for(3, today + timedelta(days=2))
    assert len(registry) == 2

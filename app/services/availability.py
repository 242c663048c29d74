"""Controle de admissão: decide se um horário pode ser reservado.

Regras, na ordem: dia fechado, serviço fechado, expediente e capacidade
(agendamentos que ocupam vaga e se sobrepõem ao intervalo pedido).
"""
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Dict, List, Optional, Tuple

from sqlalchemy import func, text
from sqlmodel import Session, select

from app.core.config import DEFAULT_CLOSING_TIME, DEFAULT_OPENING_TIME
from app.core.exceptions import NotFoundError, ValidationError
from app.core.time_window import day_bounds, now_local, overlaps, parse_hhmm, slot_end, within_business_hours
from app.models.appointment import SLOT_HOLDING_STATUSES, Appointment
from app.models.closed_day import ProviderClosedDay
from app.models.service import Service
from app.models.user import User, UserRole

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AvailabilityDecision:
    admitted: bool
    reason: Optional[str] = None

    @classmethod
    def admit(cls) -> "AvailabilityDecision":
        return cls(admitted=True)

    @classmethod
    def reject(cls, reason: str) -> "AvailabilityDecision":
        return cls(admitted=False, reason=reason)


# =========================
# LOCK POR (PRESTADOR, DIA)
# =========================

class SlotLockRegistry:
    """Locks em memória por (prestador, dia), segurados até o commit.

    Serializa verificação + insert dentro do processo. Em PostgreSQL o
    ``slot_guard`` também pega um advisory lock da transação, que cobre
    vários workers.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[Tuple[int, date], threading.Lock] = {}

    def lock_for(self, provider_id: int, day: date) -> threading.Lock:
        key = (provider_id, day)
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                self._evict_past(now_local().date())
                lock = self._locks[key] = threading.Lock()
            return lock

    def _evict_past(self, today: date):
        # dias passados não recebem mais reservas; locks em uso ficam
        stale = [k for k, lock in self._locks.items() if k[1] < today and not lock.locked()]
        for key in stale:
            del self._locks[key]

    def __len__(self):
        with self._guard:
            return len(self._locks)

    def clear(self):
        with self._guard:
            self._locks.clear()


def _advisory_key(provider_id: int, day: date) -> int:
    return provider_id * 1_000_000 + day.toordinal()


@contextmanager
def slot_guard(session: Session, registry: SlotLockRegistry, provider_id: int, day: date):
    lock = registry.lock_for(provider_id, day)
    with lock:
        if session.get_bind().dialect.name == "postgresql":
            session.execute(
                text("SELECT pg_advisory_xact_lock(:key)"),
                {"key": _advisory_key(provider_id, day)},
            )
        yield


# =========================
# CONSULTAS
# =========================

def resolve_business_hours(provider: User, service: Optional[Service] = None) -> Tuple[time, time]:
    """Horário do serviço tem prioridade sobre o do prestador."""
    if service and service.opening_time and service.closing_time:
        return service.opening_time, service.closing_time

    opening = provider.opening_time or parse_hhmm(DEFAULT_OPENING_TIME)
    closing = provider.closing_time or parse_hhmm(DEFAULT_CLOSING_TIME)
    return opening, closing


def get_closed_day(session: Session, provider_id: int, day: date) -> Optional[ProviderClosedDay]:
    return session.exec(
        select(ProviderClosedDay).where(
            ProviderClosedDay.provider_id == provider_id,
            ProviderClosedDay.closed_date == day,
        )
    ).first()


def get_provider(session: Session, provider_id: int) -> User:
    provider = session.get(User, provider_id)
    if not provider or provider.role != UserRole.PROVIDER:
        raise NotFoundError("Prestador não encontrado")
    return provider


def slot_holding_overlaps(
    session: Session,
    provider_id: int,
    start: datetime,
    end: datetime,
    exclude_appointment_id: Optional[int] = None,
) -> List[Appointment]:
    """Agendamentos que ocupam vaga e cujo [início, fim) cruza [start, end)."""
    longest = session.exec(
        select(func.max(Appointment.duration_minutes)).where(Appointment.provider_id == provider_id)
    ).one()
    if not longest:
        return []

    query = select(Appointment).where(
        Appointment.provider_id == provider_id,
        Appointment.status.in_(SLOT_HOLDING_STATUSES),
        Appointment.scheduled_start < end,
        Appointment.scheduled_start > start - timedelta(minutes=longest),
    )
    if exclude_appointment_id is not None:
        query = query.where(Appointment.id != exclude_appointment_id)

    return [
        appt
        for appt in session.exec(query).all()
        if overlaps(appt.scheduled_start, appt.scheduled_end, start, end)
    ]


# =========================
# ADMISSÃO
# =========================

def check_availability(
    session: Session,
    provider_id: int,
    service_id: int,
    requested_start: datetime,
    now: Optional[datetime] = None,
    exclude_appointment_id: Optional[int] = None,
) -> AvailabilityDecision:
    now = now or now_local()
    if requested_start <= now:
        raise ValidationError("A data do agendamento deve estar no futuro")

    service = session.get(Service, service_id)
    if not service or not service.active or service.provider_id != provider_id:
        raise NotFoundError("Serviço não encontrado ou inativo")
    provider = get_provider(session, provider_id)

    day = requested_start.date()

    closed_day = get_closed_day(session, provider_id, day)
    if closed_day:
        logger.info("Reserva recusada: prestador %s fechado em %s", provider_id, day)
        return AvailabilityDecision.reject(f"O prestador está fechado em {day.isoformat()}")

    if service.is_closed:
        return AvailabilityDecision.reject("Serviço temporariamente fechado")

    opening, closing = resolve_business_hours(provider, service)
    if not within_business_hours(requested_start, opening, closing):
        return AvailabilityDecision.reject(
            f"Reservas só são permitidas entre {opening.strftime('%H:%M')} e {closing.strftime('%H:%M')}"
        )

    end = slot_end(requested_start, service.duration_minutes)
    booked = slot_holding_overlaps(session, provider_id, requested_start, end, exclude_appointment_id)

    capacity = service.capacity or 1
    if len(booked) >= capacity:
        logger.info(
            "Reserva recusada: horário %s lotado (prestador=%s, %s/%s)",
            requested_start.isoformat(), provider_id, len(booked), capacity,
        )
        return AvailabilityDecision.reject("Este horário está lotado. Escolha outro horário.")

    return AvailabilityDecision.admit()


def provider_availability(session: Session, provider_id: int, day: date) -> Dict:
    provider = get_provider(session, provider_id)
    opening, closing = resolve_business_hours(provider)
    closed_day = get_closed_day(session, provider_id, day)

    day_start, day_end = day_bounds(day)
    booked = session.exec(
        select(Appointment).where(
            Appointment.provider_id == provider_id,
            Appointment.status.in_(SLOT_HOLDING_STATUSES),
            Appointment.scheduled_start >= day_start,
            Appointment.scheduled_start < day_end,
        ).order_by(Appointment.scheduled_start)
    ).all()

    return {
        "provider_id": provider_id,
        "date": day.isoformat(),
        "is_closed": closed_day is not None,
        "closed_reason": closed_day.reason if closed_day else None,
        "opening_time": opening.strftime("%H:%M"),
        "closing_time": closing.strftime("%H:%M"),
        "booked_slots": [
            {"start": a.scheduled_start.strftime("%H:%M"), "end": a.scheduled_end.strftime("%H:%M")}
            for a in booked
        ],
    }


def available_slots(session: Session, service_id: int, day: date, now: Optional[datetime] = None) -> Dict:
    now = now or now_local()

    service = session.get(Service, service_id)
    if not service or not service.active:
        raise NotFoundError("Serviço não encontrado ou inativo")
    provider = get_provider(session, service.provider_id)

    closed_day = get_closed_day(session, provider.id, day)
    if closed_day or service.is_closed:
        return {
            "service_id": service_id,
            "day": day.isoformat(),
            "is_closed": True,
            "reason": closed_day.reason if closed_day else "Serviço fechado",
            "slots": [],
        }

    opening, closing = resolve_business_hours(provider, service)
    step = timedelta(minutes=service.slot_interval or service.duration_minutes)
    capacity = service.capacity or 1

    slots: List[Dict] = []
    current = datetime.combine(day, opening)
    close_dt = datetime.combine(day, closing)

    while current < close_dt:
        end = slot_end(current, service.duration_minutes)
        if current > now:
            taken = len(slot_holding_overlaps(session, provider.id, current, end))
            if taken < capacity:
                slots.append({
                    "start": current.isoformat(),
                    "end": end.isoformat(),
                    "remaining": capacity - taken,
                })
        current += step

    return {
        "service_id": service_id,
        "day": day.isoformat(),
        "is_closed": False,
        "provider_id": provider.id,
        "duration_minutes": service.duration_minutes,
        "slot_interval_minutes": int(step.total_seconds() // 60),
        "capacity": capacity,
        "business_hours": {
            "open": opening.strftime("%H:%M"),
            "close": closing.strftime("%H:%M"),
        },
        "slots": slots,
    }

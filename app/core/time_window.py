"""Funções puras de horário: início/fim de slot, sobreposição e expediente.

Toda a agenda usa um único relógio local do prestador (``BUSINESS_TIMEZONE``).
Datetimes são guardados *naive* nesse fuso; entradas com fuso são convertidas.
"""
from datetime import date, datetime, time, timedelta
from zoneinfo import ZoneInfo

from app.core.config import BUSINESS_TIMEZONE


def business_tz() -> ZoneInfo:
    return ZoneInfo(BUSINESS_TIMEZONE)


def now_local() -> datetime:
    return datetime.now(business_tz()).replace(tzinfo=None)


def to_local(value: datetime) -> datetime:
    """Converte para o relógio do prestador; naive é assumido já local."""
    if value.tzinfo is None:
        return value
    return value.astimezone(business_tz()).replace(tzinfo=None)


def parse_hhmm(value: str) -> time:
    hours, minutes = value.split(":")
    return time(int(hours), int(minutes))


def slot_end(start: datetime, duration_minutes: int) -> datetime:
    return start + timedelta(minutes=duration_minutes)


def overlaps(a_start: datetime, a_end: datetime, b_start: datetime, b_end: datetime) -> bool:
    """True se [a_start, a_end) sobrepõe [b_start, b_end). Encostar não conta."""
    return a_start < b_end and b_start < a_end


def within_business_hours(start: datetime, opening: time, closing: time) -> bool:
    # só o início é comparado; o fim do atendimento pode passar do fechamento
    return opening <= start.time() < closing


def day_bounds(day: date):
    start = datetime.combine(day, time(0, 0))
    return start, start + timedelta(days=1)

from datetime import datetime, time
from typing import Optional

from sqlmodel import SQLModel, Field

from app.core.config import DEFAULT_SLOT_INTERVAL
from app.core.time_window import now_local


class ServiceBase(SQLModel):
    name: str
    description: Optional[str] = None
    category: str = "Geral"

    duration_minutes: int
    price: float

    # atendimentos simultâneos permitidos no mesmo horário
    capacity: int = 1

    # se preenchidos, sobrepõem o expediente do prestador
    opening_time: Optional[time] = None
    closing_time: Optional[time] = None
    slot_interval: int = DEFAULT_SLOT_INTERVAL


class Service(ServiceBase, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)

    active: bool = True
    is_closed: bool = False
    # fechado junto com o negócio inteiro (reabre junto)
    closed_by_business: bool = False

    provider_id: int = Field(foreign_key="user.id", index=True)

    created_at: datetime = Field(default_factory=now_local)


class ServiceCreate(ServiceBase):
    pass


class ServiceUpdate(SQLModel):
    name: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    duration_minutes: Optional[int] = None
    price: Optional[float] = None
    capacity: Optional[int] = None
    opening_time: Optional[time] = None
    closing_time: Optional[time] = None
    slot_interval: Optional[int] = None

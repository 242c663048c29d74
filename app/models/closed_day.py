from datetime import date
from typing import Optional

from sqlalchemy import UniqueConstraint
from sqlmodel import SQLModel, Field


class ProviderClosedDay(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("provider_id", "closed_date"),)

    id: Optional[int] = Field(default=None, primary_key=True)

    provider_id: int = Field(foreign_key="user.id", index=True)
    closed_date: date = Field(index=True)

    reason: str = "Fechado"


class ClosedDayCreate(SQLModel):
    closed_date: date
    reason: str = "Fechado"

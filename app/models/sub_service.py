from datetime import datetime
from typing import Optional

from sqlmodel import SQLModel, Field

from app.core.time_window import now_local


class SubServiceBase(SQLModel):
    name: str
    description: str = ""
    # somado ao preço do serviço quando escolhido na reserva
    price: float = 0


class SubService(SubServiceBase, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)

    service_id: int = Field(foreign_key="service.id", index=True)

    created_at: datetime = Field(default_factory=now_local)


class SubServiceCreate(SubServiceBase):
    pass

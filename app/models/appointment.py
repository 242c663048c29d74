from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy import JSON, Column
from sqlmodel import SQLModel, Field

from app.core.time_window import now_local, slot_end


class AppointmentStatus(str, Enum):
    PENDING = "pending"
    SCHEDULED = "scheduled"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no-show"
    REBOOKED = "rebooked"


class PaymentStatus(str, Enum):
    UNPAID = "unpaid"
    DEPOSIT_PAID = "deposit-paid"
    PAID = "paid"
    REFUND_PENDING = "refund-pending"
    REFUNDED = "refunded"


class RefundStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


# estados que ocupam vaga na agenda
SLOT_HOLDING_STATUSES = (AppointmentStatus.PENDING, AppointmentStatus.SCHEDULED)

TERMINAL_STATUSES = (
    AppointmentStatus.COMPLETED,
    AppointmentStatus.CANCELLED,
    AppointmentStatus.NO_SHOW,
    AppointmentStatus.REBOOKED,
)

# transições permitidas por papel: status atual -> próximos status
PROVIDER_TRANSITIONS = {
    AppointmentStatus.PENDING: {AppointmentStatus.SCHEDULED, AppointmentStatus.CANCELLED},
    AppointmentStatus.SCHEDULED: {
        AppointmentStatus.COMPLETED,
        AppointmentStatus.CANCELLED,
        AppointmentStatus.NO_SHOW,
    },
}

CLIENT_TRANSITIONS = {
    AppointmentStatus.PENDING: {AppointmentStatus.CANCELLED},
    AppointmentStatus.SCHEDULED: {AppointmentStatus.CANCELLED},
}


class Appointment(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)

    client_id: int = Field(foreign_key="user.id", index=True)
    provider_id: int = Field(foreign_key="user.id", index=True)
    service_id: int = Field(foreign_key="service.id", index=True)

    scheduled_start: datetime = Field(index=True)

    # SNAPSHOT DO SERVIÇO (não recalcula depois)
    service_name_snapshot: str
    duration_minutes: int

    status: AppointmentStatus = Field(default=AppointmentStatus.PENDING, index=True)
    notes: str = ""

    # snapshot dos adicionais: [{"sub_service_id": ..., "name": ..., "price": ...}]
    addons: List[Dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))

    # VALORES
    total_price: float = 0
    deposit_amount: float = 0
    addons_total: float = 0
    amount_paid: float = 0
    refund_amount: float = 0

    payment_status: PaymentStatus = Field(default=PaymentStatus.UNPAID, index=True)
    payment_reference: Optional[str] = None

    # REEMBOLSO
    refund_status: Optional[RefundStatus] = Field(default=None, index=True)
    refund_reference: Optional[str] = None
    refund_initiated_at: Optional[datetime] = None
    refund_completed_at: Optional[datetime] = None

    cancelled_at: Optional[datetime] = None
    cancelled_by: Optional[str] = None
    cancel_reason: Optional[str] = None

    # exclusão lógica por parte; só some de vez quando os dois excluírem
    client_deleted: bool = False
    provider_deleted: bool = False

    created_at: datetime = Field(default_factory=now_local, index=True)

    @property
    def scheduled_end(self) -> datetime:
        return slot_end(self.scheduled_start, self.duration_minutes)


class AppointmentCreate(SQLModel):
    service_id: int
    scheduled_start: datetime
    notes: Optional[str] = None
    # ids do catálogo de sub-serviços do próprio serviço
    sub_service_ids: List[int] = []
    rebook_from: Optional[int] = None

    payment_reference: Optional[str] = None
    payment_amount: Optional[float] = None


class AppointmentUpdate(SQLModel):
    # string livre aqui; o valor é validado contra AppointmentStatus no serviço
    status: Optional[str] = None
    scheduled_start: Optional[datetime] = None
    notes: Optional[str] = None
    cancel_reason: Optional[str] = None

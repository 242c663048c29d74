from datetime import datetime
from enum import Enum
from typing import Optional

from sqlmodel import SQLModel, Field

from app.core.time_window import now_local


class NotificationKind(str, Enum):
    BOOKING_RECEIVED = "booking-received"
    BOOKING_REQUEST = "booking-request"
    BOOKING_ACCEPTED = "booking-accepted"
    CANCELLATION = "cancellation"
    REFUND_PROCESSING = "refund-processing"
    REFUND_COMPLETED = "refund-completed"
    REFUND_FAILED = "refund-failed"
    REFUND_REQUEST = "refund-request"
    BALANCE_REQUEST = "balance-request"


class Notification(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)

    user_id: int = Field(foreign_key="user.id", index=True)

    kind: NotificationKind = Field(index=True)
    title: str
    message: str

    is_read: bool = False
    # id do agendamento relacionado
    reference_id: Optional[int] = None

    created_at: datetime = Field(default_factory=now_local, index=True)

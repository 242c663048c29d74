from datetime import datetime
from enum import Enum
from typing import Optional

from sqlmodel import SQLModel, Field

from app.core.time_window import now_local


class PaymentKind(str, Enum):
    PAYMENT = "payment"
    REFUND = "refund"


class Payment(SQLModel, table=True):
    """Livro de transações: cada pagamento e cada reembolso de um agendamento."""

    id: Optional[int] = Field(default=None, primary_key=True)

    appointment_id: int = Field(foreign_key="appointment.id", index=True)

    kind: PaymentKind = Field(default=PaymentKind.PAYMENT, index=True)

    # pagamento: referência da transação; reembolso: referência devolvida pelo gateway
    reference: str
    amount: float

    # reembolso aponta para o pagamento que ele estorna
    refunded_payment_id: Optional[int] = Field(default=None, foreign_key="payment.id")

    created_at: datetime = Field(default_factory=now_local)


class BalancePayment(SQLModel):
    payment_reference: str
    amount: float


class PaymentRequest(SQLModel, table=True):
    """Pedido do prestador para o cliente pagar o saldo restante."""

    id: Optional[int] = Field(default=None, primary_key=True)

    appointment_id: int = Field(foreign_key="appointment.id", index=True)
    provider_id: int = Field(foreign_key="user.id")
    client_id: int = Field(foreign_key="user.id", index=True)

    amount_requested: float
    note: Optional[str] = None

    created_at: datetime = Field(default_factory=now_local)


class BalanceRequest(SQLModel):
    amount_requested: float
    note: Optional[str] = None

from fastapi import APIRouter, Depends, status
from sqlmodel import Session, select

from app.core.deps import get_lifecycle_manager
from app.core.security import get_current_provider, get_current_user
from app.database import get_session
from app.models.payment import BalancePayment, BalanceRequest, Payment
from app.models.user import User
from app.services.lifecycle import AppointmentLifecycleManager


router = APIRouter(prefix="/payments", tags=["payments"])


# =========================
# PAGAR SALDO RESTANTE
# =========================
@router.post("/{appointment_id}/balance")
def pay_balance(
    appointment_id: int,
    payload: BalancePayment,
    current_user: User = Depends(get_current_user),
    manager: AppointmentLifecycleManager = Depends(get_lifecycle_manager),
):
    appt = manager.record_payment(appointment_id, current_user, payload)
    return {
        "message": "Pagamento registrado",
        "amount_paid": appt.amount_paid,
        "payment_status": appt.payment_status,
    }


# =========================
# PEDIR SALDO AO CLIENTE (PRESTADOR)
# =========================
@router.post("/{appointment_id}/request-balance", status_code=status.HTTP_201_CREATED)
def request_balance(
    appointment_id: int,
    payload: BalanceRequest,
    current_provider: User = Depends(get_current_provider),
    manager: AppointmentLifecycleManager = Depends(get_lifecycle_manager),
):
    payment_request = manager.request_balance(appointment_id, current_provider, payload)
    return {"message": "Pedido de pagamento criado", "request_id": payment_request.id}


# =========================
# HISTÓRICO DE TRANSAÇÕES
# =========================
@router.get("/{appointment_id}")
def list_transactions(
    appointment_id: int,
    session: Session = Depends(get_session),
    current_user: User = Depends(get_current_user),
    manager: AppointmentLifecycleManager = Depends(get_lifecycle_manager),
):
    # valida acesso (cliente ou prestador do agendamento)
    manager.get_for_actor(appointment_id, current_user)

    return session.exec(
        select(Payment).where(Payment.appointment_id == appointment_id).order_by(Payment.id)
    ).all()

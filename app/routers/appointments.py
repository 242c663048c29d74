from datetime import date

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse
from sqlmodel import Session

from app.core.deps import get_lifecycle_manager, get_refund_orchestrator
from app.core.exceptions import ExternalServiceError
from app.core.security import get_current_client, get_current_provider, get_current_user
from app.database import get_session
from app.models.appointment import AppointmentCreate, AppointmentUpdate, RefundStatus
from app.models.user import User
from app.services.availability import available_slots, provider_availability
from app.services.lifecycle import AppointmentLifecycleManager
from app.services.refunds import RefundOrchestrator


router = APIRouter(prefix="/appointments", tags=["appointments"])


# =========================
# CRIAR AGENDAMENTO (CLIENTE)
# =========================
@router.post("/", status_code=status.HTTP_201_CREATED)
def create_appointment(
    payload: AppointmentCreate,
    current_client: User = Depends(get_current_client),
    manager: AppointmentLifecycleManager = Depends(get_lifecycle_manager),
):
    appt = manager.create_appointment(current_client, payload)
    return {"message": "Agendamento criado com sucesso", "appointment": appt}


# =========================
# LISTAR AGENDAMENTOS
# - cliente: só os próprios
# - prestador: só os da agenda dele
# =========================
@router.get("/")
def list_appointments(
    current_user: User = Depends(get_current_user),
    manager: AppointmentLifecycleManager = Depends(get_lifecycle_manager),
):
    return {"appointments": manager.list_for_actor(current_user)}


# =========================
# DISPONIBILIDADE DO PRESTADOR NO DIA
# GET /appointments/providers/1/availability?day=2026-02-14
# =========================
@router.get("/providers/{provider_id}/availability")
def get_provider_availability(
    provider_id: int,
    day: date,
    session: Session = Depends(get_session),
):
    return provider_availability(session, provider_id, day)


# =========================
# HORÁRIOS DISPONÍVEIS (dia + serviço)
# GET /appointments/available?service_id=1&day=2026-02-14
# =========================
@router.get("/available")
def get_available_slots(
    service_id: int,
    day: date,
    session: Session = Depends(get_session),
):
    return available_slots(session, service_id, day)


@router.get("/{appointment_id}")
def get_appointment(
    appointment_id: int,
    current_user: User = Depends(get_current_user),
    manager: AppointmentLifecycleManager = Depends(get_lifecycle_manager),
):
    return manager.get_for_actor(appointment_id, current_user)


# =========================
# ATUALIZAR (status, data, observações)
# =========================
@router.put("/{appointment_id}")
def update_appointment(
    appointment_id: int,
    payload: AppointmentUpdate,
    current_user: User = Depends(get_current_user),
    manager: AppointmentLifecycleManager = Depends(get_lifecycle_manager),
):
    appt = manager.update_status(appointment_id, current_user, payload)
    return {"message": "Agendamento atualizado com sucesso", "appointment": appt}


# =========================
# REMOVER DO PAINEL (exclusão lógica)
# =========================
@router.delete("/{appointment_id}")
def delete_appointment(
    appointment_id: int,
    current_user: User = Depends(get_current_user),
    manager: AppointmentLifecycleManager = Depends(get_lifecycle_manager),
):
    purged = manager.soft_delete(appointment_id, current_user)
    return {"message": "Agendamento removido do painel", "purged": purged}


# =========================
# REEMBOLSO MANUAL (PRESTADOR)
# =========================
@router.post("/{appointment_id}/refund/process")
def process_refund(
    appointment_id: int,
    current_provider: User = Depends(get_current_provider),
    refunds: RefundOrchestrator = Depends(get_refund_orchestrator),
):
    appt = refunds.process_manual(appointment_id, current_provider.id)

    # resposta montada aqui para os avisos de falha (BackgroundTasks) seguirem junto
    if appt.refund_status == RefundStatus.FAILED:
        return JSONResponse(
            status_code=status.HTTP_502_BAD_GATEWAY,
            content={"detail": ExternalServiceError.public_message, "refund_status": appt.refund_status.value},
        )

    return {
        "message": "Reembolso processado",
        "refund_status": appt.refund_status,
        "refund_reference": appt.refund_reference,
    }


@router.post("/{appointment_id}/refund/reopen")
def reopen_refund(
    appointment_id: int,
    current_provider: User = Depends(get_current_provider),
    refunds: RefundOrchestrator = Depends(get_refund_orchestrator),
):
    appt = refunds.reopen_failed(appointment_id, current_provider.id)
    return {"message": "Reembolso reaberto", "refund_status": appt.refund_status}


@router.post("/{appointment_id}/refund/reconcile")
def reconcile_refund(
    appointment_id: int,
    current_provider: User = Depends(get_current_provider),
    refunds: RefundOrchestrator = Depends(get_refund_orchestrator),
):
    appt = refunds.reconcile(appointment_id, current_provider.id)
    return {
        "refund_status": appt.refund_status,
        "payment_status": appt.payment_status,
        "refund_reference": appt.refund_reference,
    }

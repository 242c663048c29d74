import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlmodel import Session, select

from app.core.exceptions import ConflictError, ValidationError
from app.core.security import get_current_provider
from app.database import get_session
from app.models.appointment import SLOT_HOLDING_STATUSES, Appointment
from app.models.service import Service, ServiceCreate, ServiceUpdate
from app.models.sub_service import SubService, SubServiceCreate
from app.models.user import User

logger = logging.getLogger(__name__)


router = APIRouter(
    prefix="/services",
    tags=["services"]
)


# campos que o PUT pode omitir mas nunca anular
REQUIRED_FIELDS = ("name", "category", "duration_minutes", "price", "capacity", "slot_interval")


def _validate(service: Service):
    if service.duration_minutes <= 0:
        raise ValidationError("duration_minutes deve ser maior que zero")
    if service.price < 0:
        raise ValidationError("price não pode ser negativo")
    if service.capacity < 1:
        raise ValidationError("capacity deve ser pelo menos 1")
    if service.slot_interval <= 0:
        raise ValidationError("slot_interval deve ser maior que zero")
    if service.opening_time and service.closing_time and service.closing_time <= service.opening_time:
        raise ValidationError("closing_time deve ser maior que opening_time")


def _get_own_service(session: Session, service_id: int, provider: User) -> Service:
    service = session.get(Service, service_id)
    if not service or not service.active:
        raise HTTPException(status_code=404, detail="Serviço não encontrado")

    if service.provider_id != provider.id:
        raise HTTPException(status_code=403, detail="Sem permissão")

    return service


@router.post("/", status_code=status.HTTP_201_CREATED)
def create_service(
    payload: ServiceCreate,
    session: Session = Depends(get_session),
    current_provider: User = Depends(get_current_provider),
):
    service = Service.model_validate(payload, update={"provider_id": current_provider.id})
    _validate(service)

    session.add(service)
    session.commit()
    session.refresh(service)

    return service


@router.get("/")
def list_my_services(
    session: Session = Depends(get_session),
    current_provider: User = Depends(get_current_provider),
):
    services = session.exec(
        select(Service).where(Service.provider_id == current_provider.id, Service.active == True)  # noqa: E712
    ).all()

    return services


@router.get("/provider/{provider_id}")
def list_provider_services(
    provider_id: int,
    session: Session = Depends(get_session),
):
    return session.exec(
        select(Service).where(Service.provider_id == provider_id, Service.active == True)  # noqa: E712
    ).all()


@router.put("/{service_id}")
def update_service(
    service_id: int,
    payload: ServiceUpdate,
    session: Session = Depends(get_session),
    current_provider: User = Depends(get_current_provider),
):
    service = _get_own_service(session, service_id, current_provider)

    changes = payload.model_dump(exclude_unset=True)
    if not changes:
        raise ValidationError("Nenhum campo para atualizar")

    nulls = [field for field in REQUIRED_FIELDS if field in changes and changes[field] is None]
    if nulls:
        raise ValidationError(f"Campos não podem ser nulos: {', '.join(nulls)}")

    # slot acompanha a duração quando só a duração muda
    if "duration_minutes" in changes and "slot_interval" not in changes:
        changes["slot_interval"] = changes["duration_minutes"]

    service.sqlmodel_update(changes)
    _validate(service)

    session.add(service)
    session.commit()
    session.refresh(service)
    return service


@router.delete("/{service_id}")
def delete_service(
    service_id: int,
    session: Session = Depends(get_session),
    current_provider: User = Depends(get_current_provider),
):
    service = _get_own_service(session, service_id, current_provider)

    open_appointment = session.exec(
        select(Appointment).where(
            Appointment.service_id == service.id,
            Appointment.status.in_(SLOT_HOLDING_STATUSES),
        )
    ).first()
    if open_appointment:
        raise ConflictError("Serviço possui agendamentos em aberto")

    # desativa em vez de apagar: agendamentos antigos continuam apontando para ele
    service.active = False
    session.add(service)
    session.commit()
    logger.info("Serviço %s desativado pelo prestador %s", service.id, current_provider.id)
    return {"message": "Serviço removido"}


@router.patch("/{service_id}/closed")
def toggle_service_closed(
    service_id: int,
    is_closed: bool,
    session: Session = Depends(get_session),
    current_provider: User = Depends(get_current_provider),
):
    service = _get_own_service(session, service_id, current_provider)

    service.is_closed = is_closed
    service.closed_by_business = False

    session.add(service)
    session.commit()
    session.refresh(service)
    return service


# =========================
# SUB-SERVIÇOS (catálogo de adicionais)
# =========================

def _validate_sub_service(payload: SubServiceCreate):
    if not payload.name.strip():
        raise ValidationError("name é obrigatório")
    if payload.price < 0:
        raise ValidationError("price não pode ser negativo")


def _get_sub_service(session: Session, service: Service, sub_service_id: int) -> SubService:
    sub = session.get(SubService, sub_service_id)
    if not sub or sub.service_id != service.id:
        raise HTTPException(status_code=404, detail="Sub-serviço não encontrado")
    return sub


@router.post("/{service_id}/sub-services", status_code=status.HTTP_201_CREATED)
def create_sub_service(
    service_id: int,
    payload: SubServiceCreate,
    session: Session = Depends(get_session),
    current_provider: User = Depends(get_current_provider),
):
    service = _get_own_service(session, service_id, current_provider)
    _validate_sub_service(payload)

    sub = SubService.model_validate(payload, update={"service_id": service.id})
    session.add(sub)
    session.commit()
    session.refresh(sub)

    logger.info("Sub-serviço %s adicionado ao serviço %s", sub.id, service.id)
    return sub


@router.get("/{service_id}/sub-services")
def list_sub_services(
    service_id: int,
    session: Session = Depends(get_session),
):
    service = session.get(Service, service_id)
    if not service or not service.active:
        raise HTTPException(status_code=404, detail="Serviço não encontrado")

    return session.exec(
        select(SubService).where(SubService.service_id == service.id).order_by(SubService.id)
    ).all()


@router.put("/{service_id}/sub-services/{sub_service_id}")
def update_sub_service(
    service_id: int,
    sub_service_id: int,
    payload: SubServiceCreate,
    session: Session = Depends(get_session),
    current_provider: User = Depends(get_current_provider),
):
    service = _get_own_service(session, service_id, current_provider)
    sub = _get_sub_service(session, service, sub_service_id)
    _validate_sub_service(payload)

    # agendamentos já feitos guardam o preço antigo no snapshot
    sub.sqlmodel_update(payload.model_dump())
    session.add(sub)
    session.commit()
    session.refresh(sub)
    return sub


@router.delete("/{service_id}/sub-services/{sub_service_id}")
def delete_sub_service(
    service_id: int,
    sub_service_id: int,
    session: Session = Depends(get_session),
    current_provider: User = Depends(get_current_provider),
):
    service = _get_own_service(session, service_id, current_provider)
    sub = _get_sub_service(session, service, sub_service_id)

    session.delete(sub)
    session.commit()
    logger.info("Sub-serviço %s removido do serviço %s", sub_service_id, service.id)
    return {"message": "Sub-serviço removido"}

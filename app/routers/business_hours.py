from datetime import time

from fastapi import APIRouter, Depends
from sqlmodel import Session, SQLModel, select

from app.core.exceptions import ValidationError
from app.core.security import get_current_provider
from app.database import get_session
from app.models.service import Service
from app.models.user import User
from app.services.availability import resolve_business_hours

router = APIRouter(prefix="/business-hours", tags=["business-hours"])


class BusinessHoursUpdate(SQLModel):
    opening_time: time
    closing_time: time


@router.get("/")
def get_business_hours(
    current_provider: User = Depends(get_current_provider),
):
    opening, closing = resolve_business_hours(current_provider)
    return {"opening_time": opening.strftime("%H:%M"), "closing_time": closing.strftime("%H:%M")}


@router.put("/")
def update_business_hours(
    payload: BusinessHoursUpdate,
    session: Session = Depends(get_session),
    current_provider: User = Depends(get_current_provider),
):
    if payload.closing_time <= payload.opening_time:
        raise ValidationError("closing_time deve ser maior que opening_time")

    current_provider.opening_time = payload.opening_time
    current_provider.closing_time = payload.closing_time

    session.add(current_provider)
    session.commit()
    session.refresh(current_provider)

    return {
        "message": "Horário de funcionamento atualizado",
        "opening_time": payload.opening_time.strftime("%H:%M"),
        "closing_time": payload.closing_time.strftime("%H:%M"),
    }


# =========================
# FECHAR / REABRIR O NEGÓCIO
# - fecha todos os serviços abertos
# - reabrir só reabre os que foram fechados junto com o negócio
# =========================
@router.put("/closed")
def toggle_business_closed(
    is_closed: bool,
    session: Session = Depends(get_session),
    current_provider: User = Depends(get_current_provider),
):
    if is_closed:
        services = session.exec(
            select(Service).where(Service.provider_id == current_provider.id, Service.is_closed == False)  # noqa: E712
        ).all()
        for s in services:
            s.is_closed = True
            s.closed_by_business = True
            session.add(s)
    else:
        services = session.exec(
            select(Service).where(Service.provider_id == current_provider.id, Service.closed_by_business == True)  # noqa: E712
        ).all()
        for s in services:
            s.is_closed = False
            s.closed_by_business = False
            session.add(s)

    session.commit()

    return {
        "message": "Negócio fechado" if is_closed else "Negócio reaberto",
        "is_closed": is_closed,
        "services_affected": len(services),
    }

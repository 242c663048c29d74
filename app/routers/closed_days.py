from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from app.core.exceptions import ConflictError
from app.core.security import get_current_provider
from app.database import get_session
from app.models.closed_day import ClosedDayCreate, ProviderClosedDay
from app.models.user import User
from app.services.availability import get_closed_day

router = APIRouter(prefix="/closed-days", tags=["closed-days"])


@router.get("/")
def list_closed_days(
    session: Session = Depends(get_session),
    current_provider: User = Depends(get_current_provider),
):
    return session.exec(
        select(ProviderClosedDay)
        .where(ProviderClosedDay.provider_id == current_provider.id)
        .order_by(ProviderClosedDay.closed_date)
    ).all()


@router.post("/", status_code=status.HTTP_201_CREATED)
def create_closed_day(
    payload: ClosedDayCreate,
    session: Session = Depends(get_session),
    current_provider: User = Depends(get_current_provider),
):
    if get_closed_day(session, current_provider.id, payload.closed_date):
        raise ConflictError("Dia já marcado como fechado")

    closed_day = ProviderClosedDay(
        provider_id=current_provider.id,
        closed_date=payload.closed_date,
        reason=payload.reason,
    )

    session.add(closed_day)
    try:
        session.commit()
    except IntegrityError:
        # outra requisição gravou o mesmo dia entre a checagem e o commit
        session.rollback()
        raise ConflictError("Dia já marcado como fechado")

    session.refresh(closed_day)
    return closed_day


@router.delete("/{closed_day_id}")
def delete_closed_day(
    closed_day_id: int,
    session: Session = Depends(get_session),
    current_provider: User = Depends(get_current_provider),
):
    closed_day = session.get(ProviderClosedDay, closed_day_id)
    if not closed_day:
        raise HTTPException(status_code=404, detail="Dia fechado não encontrado")

    if closed_day.provider_id != current_provider.id:
        raise HTTPException(status_code=403, detail="Sem permissão")

    session.delete(closed_day)
    session.commit()
    return {"message": "Dia reaberto"}

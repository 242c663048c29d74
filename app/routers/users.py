from fastapi import APIRouter, Depends, HTTPException
from sqlmodel import Session, select

from app.core.exceptions import ValidationError
from app.core.security import get_current_user, get_password_hash
from app.database import get_session
from app.models.user import NotificationPreferences, User, UserCreate, UserRead, UserRole

router = APIRouter(prefix="/users", tags=["users"])


@router.post("/", response_model=UserRead)
def create_user(user: UserCreate, session: Session = Depends(get_session)):

    existing_user = session.exec(
        select(User).where(User.email == user.email)
    ).first()

    if existing_user:
        raise HTTPException(status_code=400, detail="Email já cadastrado")

    if user.role == UserRole.PROVIDER and user.opening_time and user.closing_time:
        if user.closing_time <= user.opening_time:
            raise ValidationError("closing_time deve ser maior que opening_time")

    db_user = User.model_validate(
        user,
        update={"password_hash": get_password_hash(user.password)},
    )

    session.add(db_user)
    session.commit()
    session.refresh(db_user)

    return db_user


@router.get("/me", response_model=UserRead)
def read_me(current_user: User = Depends(get_current_user)):
    return current_user


# =========================
# PREFERÊNCIAS DE AVISO
# =========================
@router.get("/me/notification-preferences")
def get_notification_preferences(
    current_user: User = Depends(get_current_user),
) -> NotificationPreferences:
    return current_user.preferences()


@router.put("/me/notification-preferences")
def update_notification_preferences(
    payload: NotificationPreferences,
    session: Session = Depends(get_session),
    current_user: User = Depends(get_current_user),
) -> NotificationPreferences:
    current_user.notification_preferences = payload.model_dump()

    session.add(current_user)
    session.commit()
    session.refresh(current_user)

    return current_user.preferences()

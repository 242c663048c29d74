from datetime import datetime, time
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy import JSON, Column
from sqlmodel import SQLModel, Field

from app.core.time_window import now_local


class UserRole(str, Enum):
    CLIENT = "client"
    PROVIDER = "provider"


class NotificationPreferences(SQLModel):
    """Preferências de aviso, versionadas. Tudo ligado por padrão."""

    version: int = 1
    booking_alerts: bool = True
    payment_alerts: bool = True

    @classmethod
    def from_stored(cls, raw: Optional[Dict[str, Any]]) -> "NotificationPreferences":
        if not raw:
            return cls()

        # formato antigo: {"in_app": {"booking_alerts": false, ...}}
        if "version" not in raw and isinstance(raw.get("in_app"), dict):
            legacy = raw["in_app"]
            return cls(
                booking_alerts=legacy.get("booking_alerts") is not False,
                payment_alerts=legacy.get("payment_alerts") is not False,
            )

        return cls.model_validate(raw)


class UserBase(SQLModel):
    name: str
    email: str = Field(index=True, unique=True)
    phone: Optional[str] = None
    role: UserRole

    # somente prestador
    business_name: Optional[str] = None
    opening_time: Optional[time] = None
    closing_time: Optional[time] = None


class User(UserBase, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    password_hash: str

    notification_preferences: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))

    created_at: datetime = Field(default_factory=now_local)

    def preferences(self) -> NotificationPreferences:
        return NotificationPreferences.from_stored(self.notification_preferences)


class UserCreate(UserBase):
    password: str


class UserRead(UserBase):
    id: int

import os

os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ["BUSINESS_TIMEZONE"] = "Africa/Nairobi"
os.environ["DATABASE_URL"] = "sqlite://"

from datetime import datetime, time, timedelta  # noqa: E402

import pytest  # noqa: E402
from fastapi import BackgroundTasks  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402
from sqlmodel import Session, SQLModel, create_engine  # noqa: E402

from app.core.deps import get_dispatcher, get_gateway, get_slot_locks  # noqa: E402
from app.core.security import create_access_token  # noqa: E402
from app.core.time_window import now_local  # noqa: E402
from app.database import get_session  # noqa: E402
from app.main import app  # noqa: E402
from app.models.service import Service  # noqa: E402
from app.models.user import User, UserRole  # noqa: E402
from app.services.availability import SlotLockRegistry  # noqa: E402
from app.services.lifecycle import AppointmentLifecycleManager  # noqa: E402
from app.services.notifications import NotificationDispatcher  # noqa: E402
from app.services.payment_gateway import RefundResult  # noqa: E402
from app.services.refunds import RefundOrchestrator  # noqa: E402


class FakeGateway:
    """Gateway de teste: registra chamadas e devolve respostas enfileiradas."""

    def __init__(self):
        self.calls = []
        self.responses = []
        self.refunds_by_transaction = {}
        self.on_refund = None

    def refund(self, transaction_reference, amount_minor):
        self.calls.append((transaction_reference, amount_minor))
        if self.on_refund:
            self.on_refund()
        if self.responses:
            return self.responses.pop(0)
        return RefundResult(success=True, refund_reference=f"RF-{len(self.calls)}")

    def list_refunds(self, transaction_reference):
        return self.refunds_by_transaction.get(transaction_reference, [])


class RecordingDispatcher(NotificationDispatcher):
    def __init__(self):
        super().__init__(session_factory=None)
        self.sent = []

    def send(self, kind, recipient_id, appointment_id=None, **context):
        self.sent.append((kind, recipient_id, appointment_id, context))

    def of_kind(self, kind):
        return [s for s in self.sent if s[0] == kind]


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture
def session(engine):
    with Session(engine) as session:
        yield session


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def notifier():
    return RecordingDispatcher()


@pytest.fixture
def slot_locks():
    return SlotLockRegistry()


@pytest.fixture
def refunds(session, gateway, notifier):
    return RefundOrchestrator(session, gateway, notifier)


@pytest.fixture
def manager(session, notifier, refunds, slot_locks):
    return AppointmentLifecycleManager(session, notifier, refunds, slot_locks)


@pytest.fixture
def client(engine, gateway, notifier, slot_locks):
    def session_override():
        with Session(engine) as session:
            yield session

    app.dependency_overrides[get_session] = session_override
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_dispatcher] = lambda: notifier
    app.dependency_overrides[get_slot_locks] = lambda: slot_locks

    yield TestClient(app)

    app.dependency_overrides.clear()


@pytest.fixture
def live_client(client, engine):
    """Cliente da API com o dispatcher real, entregando via BackgroundTasks."""

    def dispatcher_override(background_tasks: BackgroundTasks):
        return NotificationDispatcher(session_factory=lambda: Session(engine), schedule=background_tasks.add_task)

    app.dependency_overrides[get_dispatcher] = dispatcher_override
    return client


# =========================
# DADOS
# =========================

def make_user(session, email, role, **fields) -> User:
    user = User(name=email.split("@")[0], email=email, role=role, password_hash="x", **fields)
    session.add(user)
    session.commit()
    session.refresh(user)
    return user


def auth_headers(user: User) -> dict:
    return {"Authorization": f"Bearer {create_access_token(user)}"}


@pytest.fixture
def provider(session):
    return make_user(
        session, "salao@exemplo.com", UserRole.PROVIDER,
        business_name="Salão", opening_time=time(8, 0), closing_time=time(18, 0),
    )


@pytest.fixture
def customer(session):
    return make_user(session, "cliente@exemplo.com", UserRole.CLIENT, phone="+254700000002")


@pytest.fixture
def other_customer(session):
    return make_user(session, "outro@exemplo.com", UserRole.CLIENT)


@pytest.fixture
def service(session, provider):
    service = Service(name="Corte", duration_minutes=30, price=1500.0, capacity=1, provider_id=provider.id)
    session.add(service)
    session.commit()
    session.refresh(service)
    return service


def future_at(hour: int, minute: int = 0, days: int = 2) -> datetime:
    day = (now_local() + timedelta(days=days)).date()
    return datetime.combine(day, time(hour, minute))


def booking_payload(service, start, amount=None, reference="PAY-1", **extra) -> dict:
    payload = {
        "service_id": service.id,
        "scheduled_start": start.isoformat(),
        "payment_reference": reference,
        "payment_amount": service.price if amount is None else amount,
    }
    payload.update(extra)
    return payload

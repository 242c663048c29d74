import threading

import pytest
from sqlmodel import Session, SQLModel, create_engine, select

from app.core.exceptions import ConflictError, ForbiddenError, NotFoundError, ValidationError
from app.models.appointment import (
    AppointmentCreate,
    AppointmentStatus,
    AppointmentUpdate,
    PaymentStatus,
)
from app.models.notification import NotificationKind
from app.models.payment import BalancePayment, BalanceRequest, Payment, PaymentKind, PaymentRequest
from app.models.service import Service
from app.models.sub_service import SubService
from app.models.user import UserRole
from app.services.availability import SlotLockRegistry
from app.services.lifecycle import AppointmentLifecycleManager, compute_deposit, payment_status_for
from app.services.refunds import RefundOrchestrator

from tests.conftest import FakeGateway, RecordingDispatcher, future_at, make_user


def add_sub_service(session, service, name, price) -> SubService:
    sub = SubService(service_id=service.id, name=name, price=price)
    session.add(sub)
    session.commit()
    session.refresh(sub)
    return sub


def booking(service, start, amount=None, reference="PAY-1", **extra) -> AppointmentCreate:
    return AppointmentCreate(
        service_id=service.id,
        scheduled_start=start,
        payment_reference=reference,
        payment_amount=service.price if amount is None else amount,
        **extra,
    )


# =========================
# VALORES
# =========================

def test_deposit_rounds_half_up():
    assert compute_deposit(1500) == 450
    assert compute_deposit(1005) == 302
    assert compute_deposit(5) == 2


def test_payment_status_follows_amount_paid():
    assert payment_status_for(0, 1500) == PaymentStatus.UNPAID
    assert payment_status_for(500, 1500) == PaymentStatus.DEPOSIT_PAID
    assert payment_status_for(1500, 1500) == PaymentStatus.PAID


# =========================
# CRIAR
# =========================

def test_create_appointment_snapshots_service_and_records_payment(session, manager, notifier, service, customer, provider):
    wash = add_sub_service(session, service, "Lavagem", 100)
    appt = manager.create_appointment(
        customer,
        booking(service, future_at(14), amount=600, sub_service_ids=[wash.id]),
    )

    assert appt.status == AppointmentStatus.PENDING
    assert appt.service_name_snapshot == "Corte"
    assert appt.duration_minutes == 30
    assert appt.total_price == 1600
    assert appt.addons_total == 100
    assert appt.addons == [{"sub_service_id": wash.id, "name": "Lavagem", "price": 100.0}]
    assert appt.deposit_amount == 480
    assert appt.amount_paid == 600
    assert appt.payment_status == PaymentStatus.DEPOSIT_PAID

    ledger = session.exec(select(Payment).where(Payment.appointment_id == appt.id)).all()
    assert [(p.kind, p.reference, p.amount) for p in ledger] == [(PaymentKind.PAYMENT, "PAY-1", 600)]

    assert [(kind, recipient) for kind, recipient, _, _ in notifier.sent] == [
        (NotificationKind.BOOKING_RECEIVED, customer.id),
        (NotificationKind.BOOKING_REQUEST, provider.id),
    ]


def test_later_change_to_service_does_not_touch_snapshot(session, manager, service, customer):
    appt = manager.create_appointment(customer, booking(service, future_at(14)))

    service.name = "Corte Premium"
    service.duration_minutes = 60
    session.add(service)
    session.commit()
    session.refresh(appt)

    assert appt.service_name_snapshot == "Corte"
    assert appt.duration_minutes == 30


@pytest.mark.parametrize("reference,amount", [(None, 1500), ("", 1500), ("PAY-1", 0), ("PAY-1", None)])
def test_booking_without_payment_is_rejected(manager, service, customer, reference, amount):
    data = AppointmentCreate(
        service_id=service.id,
        scheduled_start=future_at(14),
        payment_reference=reference,
        payment_amount=amount,
    )

    with pytest.raises(ValidationError, match="Pagamento obrigatório"):
        manager.create_appointment(customer, data)


def test_provider_cannot_book(manager, service, provider):
    with pytest.raises(ForbiddenError):
        manager.create_appointment(provider, booking(service, future_at(14)))


def test_overpayment_is_rejected(manager, service, customer):
    with pytest.raises(ValidationError):
        manager.create_appointment(customer, booking(service, future_at(14), amount=1600))


def test_addon_from_another_service_is_rejected(session, manager, provider, service, customer):
    other = Service(name="Escova", duration_minutes=45, price=800.0, provider_id=provider.id)
    session.add(other)
    session.commit()
    foreign = add_sub_service(session, other, "Hidratação", 300)

    with pytest.raises(ValidationError, match="Adicionais inválidos"):
        manager.create_appointment(customer, booking(service, future_at(14), sub_service_ids=[foreign.id]))

    with pytest.raises(ValidationError):
        manager.create_appointment(customer, booking(service, future_at(14), sub_service_ids=[9999]))


def test_addon_price_comes_from_catalog_and_is_frozen(session, manager, service, customer):
    wash = add_sub_service(session, service, "Lavagem", 100)

    # id repetido conta uma vez só
    appt = manager.create_appointment(
        customer, booking(service, future_at(14), amount=1600, sub_service_ids=[wash.id, wash.id])
    )
    assert appt.total_price == 1600
    assert appt.payment_status == PaymentStatus.PAID

    wash.price = 500
    session.add(wash)
    session.commit()
    session.refresh(appt)

    assert appt.addons_total == 100
    assert appt.total_price == 1600


def test_second_booking_for_full_slot_conflicts(manager, notifier, service, customer, other_customer):
    start = future_at(14)
    manager.create_appointment(customer, booking(service, start))

    with pytest.raises(ConflictError, match="lotado"):
        manager.create_appointment(other_customer, booking(service, start, reference="PAY-2"))

    assert len(notifier.of_kind(NotificationKind.BOOKING_REQUEST)) == 1


def test_concurrent_bookings_for_last_slot_admit_exactly_one(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'agenda.db'}", connect_args={"check_same_thread": False})
    SQLModel.metadata.create_all(engine)

    with Session(engine, expire_on_commit=False) as setup:
        provider = make_user(setup, "p@exemplo.com", UserRole.PROVIDER)
        clients = [make_user(setup, f"c{i}@exemplo.com", UserRole.CLIENT) for i in range(2)]
        service = Service(name="Corte", duration_minutes=30, price=1500.0, capacity=1, provider_id=provider.id)
        setup.add(service)
        setup.commit()
        service_id = service.id

    locks = SlotLockRegistry()
    notifier = RecordingDispatcher()
    barrier = threading.Barrier(2)
    start = future_at(14)
    results = []

    def attempt(client, reference):
        with Session(engine) as session:
            refunds = RefundOrchestrator(session, FakeGateway(), notifier)
            manager = AppointmentLifecycleManager(session, notifier, refunds, locks)
            data = AppointmentCreate(
                service_id=service_id, scheduled_start=start, payment_reference=reference, payment_amount=1500,
            )
            barrier.wait()
            try:
                manager.create_appointment(client, data)
                results.append("ok")
            except ConflictError:
                results.append("conflict")

    threads = [threading.Thread(target=attempt, args=(c, f"PAY-{i}")) for i, c in enumerate(clients)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(results) == ["conflict", "ok"]
    engine.dispose()


# =========================
# TRANSIÇÕES
# =========================

def test_provider_accepts_pending(manager, notifier, service, customer, provider):
    appt = manager.create_appointment(customer, booking(service, future_at(14)))

    updated = manager.update_status(appt.id, provider, AppointmentUpdate(status="scheduled"))

    assert updated.status == AppointmentStatus.SCHEDULED
    accepted = notifier.of_kind(NotificationKind.BOOKING_ACCEPTED)
    assert [(recipient, appt_id) for _, recipient, appt_id, _ in accepted] == [(customer.id, appt.id)]


def test_unknown_status_is_a_validation_error(manager, service, customer, provider):
    appt = manager.create_appointment(customer, booking(service, future_at(14)))

    with pytest.raises(ValidationError, match="Status inválido"):
        manager.update_status(appt.id, provider, AppointmentUpdate(status="paid"))


def test_update_without_fields_is_rejected(manager, service, customer):
    appt = manager.create_appointment(customer, booking(service, future_at(14)))

    with pytest.raises(ValidationError):
        manager.update_status(appt.id, customer, AppointmentUpdate())


def test_client_cannot_accept_own_booking(manager, service, customer):
    appt = manager.create_appointment(customer, booking(service, future_at(14)))

    with pytest.raises(ConflictError, match="Transição"):
        manager.update_status(appt.id, customer, AppointmentUpdate(status="scheduled"))


def test_pending_cannot_be_completed(manager, service, customer, provider):
    appt = manager.create_appointment(customer, booking(service, future_at(14)))

    with pytest.raises(ConflictError):
        manager.update_status(appt.id, provider, AppointmentUpdate(status="completed"))


@pytest.mark.parametrize("final", ["completed", "no-show"])
def test_terminal_states_are_locked_for_both_roles(manager, service, customer, provider, final):
    appt = manager.create_appointment(customer, booking(service, future_at(14)))
    manager.update_status(appt.id, provider, AppointmentUpdate(status="scheduled"))
    manager.update_status(appt.id, provider, AppointmentUpdate(status=final))

    for actor in (provider, customer):
        with pytest.raises(ConflictError, match="bloqueado"):
            manager.update_status(appt.id, actor, AppointmentUpdate(notes="mudar"))


def test_other_client_cannot_see_appointment(manager, service, customer, other_customer):
    appt = manager.create_appointment(customer, booking(service, future_at(14)))

    with pytest.raises(NotFoundError):
        manager.update_status(appt.id, other_customer, AppointmentUpdate(status="cancelled"))


# =========================
# REAGENDAR
# =========================

def test_client_reschedule_returns_to_pending(manager, service, customer, provider):
    appt = manager.create_appointment(customer, booking(service, future_at(14)))
    manager.update_status(appt.id, provider, AppointmentUpdate(status="scheduled"))

    updated = manager.update_status(appt.id, customer, AppointmentUpdate(scheduled_start=future_at(15)))

    assert updated.status == AppointmentStatus.PENDING
    assert updated.scheduled_start == future_at(15)


def test_reschedule_into_own_slot_window_is_allowed(manager, service, customer):
    appt = manager.create_appointment(customer, booking(service, future_at(14)))

    updated = manager.update_status(appt.id, customer, AppointmentUpdate(scheduled_start=future_at(14, 15)))

    assert updated.scheduled_start == future_at(14, 15)


def test_reschedule_into_full_slot_conflicts(manager, service, customer, other_customer):
    manager.create_appointment(other_customer, booking(service, future_at(15), reference="PAY-2"))
    appt = manager.create_appointment(customer, booking(service, future_at(14)))

    with pytest.raises(ConflictError):
        manager.update_status(appt.id, customer, AppointmentUpdate(scheduled_start=future_at(15)))


def test_reschedule_and_cancel_together_is_rejected(manager, service, customer):
    appt = manager.create_appointment(customer, booking(service, future_at(14)))

    with pytest.raises(ValidationError):
        manager.update_status(
            appt.id, customer, AppointmentUpdate(status="cancelled", scheduled_start=future_at(15))
        )


# =========================
# REBOOK
# =========================

def test_rebook_marks_previous_appointment(session, manager, service, customer):
    old = manager.create_appointment(customer, booking(service, future_at(10)))

    new = manager.create_appointment(customer, booking(service, future_at(14), reference="PAY-2", rebook_from=old.id))

    session.refresh(old)
    assert old.status == AppointmentStatus.REBOOKED
    assert new.status == AppointmentStatus.PENDING


def test_rebook_does_not_reopen_terminal_appointment(session, manager, service, customer, provider):
    old = manager.create_appointment(customer, booking(service, future_at(10)))
    manager.update_status(old.id, provider, AppointmentUpdate(status="scheduled"))
    manager.update_status(old.id, provider, AppointmentUpdate(status="completed"))

    manager.create_appointment(customer, booking(service, future_at(14), reference="PAY-2", rebook_from=old.id))

    session.refresh(old)
    assert old.status == AppointmentStatus.COMPLETED


# =========================
# PAGAMENTO DO SALDO
# =========================

def test_balance_payment_completes_amount(session, manager, service, customer):
    appt = manager.create_appointment(customer, booking(service, future_at(14), amount=450))

    updated = manager.record_payment(appt.id, customer, BalancePayment(payment_reference="PAY-2", amount=1050))

    assert updated.amount_paid == 1500
    assert updated.payment_status == PaymentStatus.PAID
    assert updated.payment_reference == "PAY-2"
    ledger = session.exec(select(Payment).where(Payment.appointment_id == appt.id)).all()
    assert [p.amount for p in ledger] == [450, 1050]


def test_balance_payment_cannot_exceed_outstanding(manager, service, customer):
    appt = manager.create_appointment(customer, booking(service, future_at(14), amount=450))

    with pytest.raises(ValidationError, match="saldo"):
        manager.record_payment(appt.id, customer, BalancePayment(payment_reference="PAY-2", amount=1100))


def test_balance_payment_refused_after_cancellation(manager, service, customer):
    appt = manager.create_appointment(customer, booking(service, future_at(14), amount=450))
    manager.update_status(appt.id, customer, AppointmentUpdate(status="cancelled"))

    with pytest.raises(ConflictError):
        manager.record_payment(appt.id, customer, BalancePayment(payment_reference="PAY-2", amount=100))


def test_provider_requests_remaining_balance(session, manager, notifier, service, customer, provider):
    appt = manager.create_appointment(customer, booking(service, future_at(14), amount=450))

    request = manager.request_balance(appt.id, provider, BalanceRequest(amount_requested=1050, note="Até sexta"))

    assert (request.client_id, request.provider_id, request.amount_requested) == (customer.id, provider.id, 1050)
    sent = notifier.of_kind(NotificationKind.BALANCE_REQUEST)
    assert [(recipient, appt_id) for _, recipient, appt_id, _ in sent] == [(customer.id, appt.id)]
    assert sent[0][3]["provider_name"] == "Salão"
    assert sent[0][3]["note"] == "Até sexta"


def test_balance_request_is_validated(manager, service, customer, provider):
    appt = manager.create_appointment(customer, booking(service, future_at(14), amount=450))

    with pytest.raises(ValidationError):
        manager.request_balance(appt.id, provider, BalanceRequest(amount_requested=0))
    with pytest.raises(ValidationError, match="saldo"):
        manager.request_balance(appt.id, provider, BalanceRequest(amount_requested=2000))
    with pytest.raises(ForbiddenError):
        manager.request_balance(appt.id, customer, BalanceRequest(amount_requested=100))


def test_balance_request_refused_after_cancellation(manager, notifier, service, customer, provider):
    appt = manager.create_appointment(customer, booking(service, future_at(14), amount=450))
    manager.update_status(appt.id, customer, AppointmentUpdate(status="cancelled"))

    with pytest.raises(ConflictError):
        manager.request_balance(appt.id, provider, BalanceRequest(amount_requested=100))
    assert notifier.of_kind(NotificationKind.BALANCE_REQUEST) == []


# =========================
# LISTAGEM E EXCLUSÃO
# =========================

def test_list_groups_by_status(manager, service, customer, provider):
    pending = manager.create_appointment(customer, booking(service, future_at(10)))
    scheduled = manager.create_appointment(customer, booking(service, future_at(14), reference="PAY-2"))
    manager.update_status(scheduled.id, provider, AppointmentUpdate(status="scheduled"))
    done = manager.create_appointment(customer, booking(service, future_at(16), reference="PAY-3"))
    manager.update_status(done.id, provider, AppointmentUpdate(status="scheduled"))
    manager.update_status(done.id, provider, AppointmentUpdate(status="completed"))

    mine = manager.list_for_actor(customer)
    agenda = manager.list_for_actor(provider)

    assert [a.id for a in mine["pending"]] == [pending.id]
    assert [a.id for a in mine["scheduled"]] == [scheduled.id]
    assert [a.id for a in mine["past"]] == [done.id]
    assert [a.id for a in agenda["upcoming"]] == [scheduled.id]


def test_soft_delete_requires_terminal_status(manager, service, customer):
    appt = manager.create_appointment(customer, booking(service, future_at(14)))

    with pytest.raises(ConflictError):
        manager.soft_delete(appt.id, customer)


def test_soft_delete_hides_then_purges(session, manager, service, customer, provider):
    appt = manager.create_appointment(customer, booking(service, future_at(14), amount=450))
    manager.request_balance(appt.id, provider, BalanceRequest(amount_requested=1050))
    manager.update_status(appt.id, provider, AppointmentUpdate(status="cancelled"))
    appt_id = appt.id

    assert manager.soft_delete(appt_id, customer) is False
    assert manager.list_for_actor(customer)["past"] == []
    assert [a.id for a in manager.list_for_actor(provider)["past"]] == [appt_id]

    assert manager.soft_delete(appt_id, provider) is True
    assert session.exec(select(Payment).where(Payment.appointment_id == appt_id)).all() == []
    assert session.exec(select(PaymentRequest).where(PaymentRequest.appointment_id == appt_id)).all() == []

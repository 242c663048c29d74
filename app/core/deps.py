from fastapi import BackgroundTasks, Depends, Request
from sqlmodel import Session

from app.database import engine, get_session
from app.services.availability import SlotLockRegistry
from app.services.lifecycle import AppointmentLifecycleManager
from app.services.notifications import NotificationDispatcher
from app.services.payment_gateway import PaystackGateway
from app.services.refunds import RefundOrchestrator


def get_dispatcher(background_tasks: BackgroundTasks) -> NotificationDispatcher:
    # entrega depois da resposta, com sessão própria
    return NotificationDispatcher(session_factory=lambda: Session(engine), schedule=background_tasks.add_task)


def get_gateway() -> PaystackGateway:
    return PaystackGateway()


def get_slot_locks(request: Request) -> SlotLockRegistry:
    return request.app.state.slot_locks


def get_refund_orchestrator(
    session: Session = Depends(get_session),
    gateway: PaystackGateway = Depends(get_gateway),
    notifier: NotificationDispatcher = Depends(get_dispatcher),
) -> RefundOrchestrator:
    return RefundOrchestrator(session, gateway, notifier)


def get_lifecycle_manager(
    session: Session = Depends(get_session),
    notifier: NotificationDispatcher = Depends(get_dispatcher),
    refunds: RefundOrchestrator = Depends(get_refund_orchestrator),
    slot_locks: SlotLockRegistry = Depends(get_slot_locks),
) -> AppointmentLifecycleManager:
    return AppointmentLifecycleManager(session, notifier, refunds, slot_locks)

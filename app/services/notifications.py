"""Avisos in-app disparados pelas transições de agendamento e reembolso.

O envio é sempre "dispara e esquece": ``send`` agenda a entrega (via
``BackgroundTasks`` na API) e nenhuma falha volta para quem chamou.
"""
import logging
from typing import Any, Callable, Dict, Optional

from sqlmodel import Session

from app.core.config import PAYSTACK_CURRENCY
from app.models.notification import Notification, NotificationKind
from app.models.user import User

logger = logging.getLogger(__name__)


# categoria de preferência de cada tipo de aviso
KIND_CATEGORY = {
    NotificationKind.BOOKING_RECEIVED: "booking_alerts",
    NotificationKind.BOOKING_REQUEST: "booking_alerts",
    NotificationKind.BOOKING_ACCEPTED: "booking_alerts",
    NotificationKind.CANCELLATION: "booking_alerts",
    NotificationKind.REFUND_PROCESSING: "payment_alerts",
    NotificationKind.REFUND_COMPLETED: "payment_alerts",
    NotificationKind.REFUND_FAILED: "payment_alerts",
    NotificationKind.REFUND_REQUEST: "payment_alerts",
    NotificationKind.BALANCE_REQUEST: "payment_alerts",
}

TEMPLATES = {
    NotificationKind.BOOKING_RECEIVED: (
        "Reserva enviada",
        "Sua reserva de {service_name} está aguardando confirmação.",
    ),
    NotificationKind.BOOKING_REQUEST: (
        "Nova solicitação de reserva",
        "{client_name} reservou {service_name} para {scheduled_start}. Pago: {currency} {amount_paid}.",
    ),
    NotificationKind.BOOKING_ACCEPTED: (
        "Reserva confirmada",
        "Sua reserva de {service_name} para {scheduled_start} foi confirmada.",
    ),
    NotificationKind.CANCELLATION: (
        "Reserva cancelada",
        "O agendamento #{appointment_id} ({service_name}) foi cancelado pelo {cancelled_by}.{reason_text}",
    ),
    NotificationKind.REFUND_PROCESSING: (
        "Reembolso em andamento",
        "Seu reembolso de {currency} {amount} do agendamento #{appointment_id} está em processamento.",
    ),
    NotificationKind.REFUND_COMPLETED: (
        "Reembolso concluído",
        "Seu reembolso de {currency} {amount} do agendamento #{appointment_id} foi concluído.",
    ),
    NotificationKind.REFUND_FAILED: (
        "Falha no reembolso",
        "O reembolso de {currency} {amount} do agendamento #{appointment_id} falhou. "
        "Ele precisa ser reprocessado pelo painel.",
    ),
    NotificationKind.REFUND_REQUEST: (
        "Solicitação de reembolso",
        "{client_name} cancelou o agendamento #{appointment_id}. Processe o reembolso de {currency} {amount}.",
    ),
    NotificationKind.BALANCE_REQUEST: (
        "Pagamento do saldo solicitado",
        "{provider_name} pediu o pagamento de {currency} {amount} do agendamento #{appointment_id}.{note_text}",
    ),
}

ACTOR_LABELS = {"client": "cliente", "provider": "prestador"}


def render(kind: NotificationKind, context: Dict[str, Any]):
    title, template = TEMPLATES[kind]
    values = {
        "currency": PAYSTACK_CURRENCY,
        "service_name": "",
        "client_name": "Cliente",
        "scheduled_start": "",
        "amount": 0,
        "amount_paid": 0,
        "appointment_id": "",
        "provider_name": "O prestador",
        **context,
    }
    reason = values.get("reason")
    values["reason_text"] = f" Motivo: {reason}" if reason else ""
    note = values.get("note")
    values["note_text"] = f" Obs.: {note}" if note else ""
    values["cancelled_by"] = ACTOR_LABELS.get(values.get("cancelled_by"), values.get("cancelled_by") or "")
    return title, template.format(**values)


class NotificationDispatcher:
    """Entrega avisos sem nunca derrubar a operação principal.

    ``schedule`` recebe ``(func, *args)``; na API é ``BackgroundTasks.add_task``.
    Sem ``schedule`` a entrega roda na hora (scripts).
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        schedule: Optional[Callable[..., Any]] = None,
    ):
        self.session_factory = session_factory
        self.schedule = schedule

    def send(self, kind: NotificationKind, recipient_id: int, appointment_id: Optional[int] = None, **context):
        context.setdefault("appointment_id", appointment_id)
        try:
            if self.schedule is not None:
                self.schedule(self.deliver, kind, recipient_id, appointment_id, context)
            else:
                self.deliver(kind, recipient_id, appointment_id, context)
        except Exception:
            logger.exception("Falha ao agendar aviso %s para usuário %s", kind.value, recipient_id)

    def deliver(self, kind: NotificationKind, recipient_id: int, appointment_id: Optional[int], context: Dict[str, Any]):
        try:
            with self.session_factory() as session:
                user = session.get(User, recipient_id)
                if not user:
                    logger.warning("Aviso %s descartado: usuário %s não existe", kind.value, recipient_id)
                    return

                if not getattr(user.preferences(), KIND_CATEGORY[kind]):
                    logger.debug("Aviso %s desativado nas preferências do usuário %s", kind.value, recipient_id)
                    return

                title, message = render(kind, context)
                session.add(
                    Notification(
                        user_id=recipient_id,
                        kind=kind,
                        title=title,
                        message=message,
                        reference_id=appointment_id,
                    )
                )
                session.commit()
                logger.info("🔔 Aviso %s enviado para usuário %s", kind.value, recipient_id)
        except Exception:
            logger.exception("Falha ao entregar aviso %s para usuário %s", kind.value, recipient_id)

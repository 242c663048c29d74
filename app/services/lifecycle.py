"""Ciclo de vida do agendamento: criação, transições de status, pagamentos
adicionais e exclusão lógica.

Toda mudança de agendamento passa por aqui. Admissão + insert (e
reagendamento) rodam sob ``slot_guard`` para não vender vaga duas vezes.
"""
import logging
import math
from contextlib import nullcontext
from typing import Dict, List, Optional

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from app.core.config import DEPOSIT_RATE, PAYMENT_TOLERANCE
from app.core.exceptions import ConflictError, ForbiddenError, NotFoundError, PersistenceError, ValidationError
from app.core.time_window import now_local, to_local
from app.models.appointment import (
    CLIENT_TRANSITIONS,
    PROVIDER_TRANSITIONS,
    SLOT_HOLDING_STATUSES,
    TERMINAL_STATUSES,
    Appointment,
    AppointmentCreate,
    AppointmentStatus,
    AppointmentUpdate,
    PaymentStatus,
    RefundStatus,
)
from app.models.notification import NotificationKind
from app.models.payment import BalancePayment, BalanceRequest, Payment, PaymentKind, PaymentRequest
from app.models.service import Service
from app.models.sub_service import SubService
from app.models.user import User, UserRole
from app.services.availability import SlotLockRegistry, check_availability, slot_guard
from app.services.notifications import NotificationDispatcher
from app.services.refunds import RefundOrchestrator

logger = logging.getLogger(__name__)


def compute_deposit(total_price: float) -> float:
    # arredonda meio para cima
    return float(math.floor(total_price * DEPOSIT_RATE + 0.5))


def payment_status_for(amount_paid: float, total_price: float) -> PaymentStatus:
    if amount_paid >= total_price:
        return PaymentStatus.PAID
    if amount_paid > 0:
        return PaymentStatus.DEPOSIT_PAID
    return PaymentStatus.UNPAID


class AppointmentLifecycleManager:
    def __init__(
        self,
        session: Session,
        notifier: NotificationDispatcher,
        refunds: RefundOrchestrator,
        slot_locks: SlotLockRegistry,
    ):
        self.session = session
        self.notifier = notifier
        self.refunds = refunds
        self.slot_locks = slot_locks

    def _commit(self):
        try:
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error("Erro ao gravar agendamento: %s", e)
            raise PersistenceError(str(e)) from e

    # =========================
    # CRIAR
    # =========================

    def create_appointment(self, client: User, data: AppointmentCreate) -> Appointment:
        if client.role != UserRole.CLIENT:
            raise ForbiddenError("Apenas clientes podem criar agendamentos")

        reference = (data.payment_reference or "").strip()
        amount = float(data.payment_amount or 0)
        if not reference or amount <= 0:
            raise ValidationError("Pagamento obrigatório antes da reserva")

        service = self.session.get(Service, data.service_id)
        if not service or not service.active:
            raise NotFoundError("Serviço não encontrado ou inativo")

        addons = self._resolve_addons(service, data.sub_service_ids)
        addons_total = float(sum(addon["price"] for addon in addons))
        total_price = float(service.price or 0) + addons_total
        if amount > total_price + PAYMENT_TOLERANCE:
            raise ValidationError("Valor pago maior que o total do agendamento")

        start = to_local(data.scheduled_start)

        with slot_guard(self.session, self.slot_locks, service.provider_id, start.date()):
            decision = check_availability(self.session, service.provider_id, service.id, start)
            if not decision.admitted:
                raise ConflictError(decision.reason or "Horário indisponível")

            appt = Appointment(
                client_id=client.id,
                provider_id=service.provider_id,
                service_id=service.id,
                scheduled_start=start,
                service_name_snapshot=service.name,
                duration_minutes=service.duration_minutes,
                status=AppointmentStatus.PENDING,
                notes=data.notes or "",
                addons=addons,
                total_price=total_price,
                deposit_amount=compute_deposit(total_price),
                addons_total=addons_total,
                amount_paid=amount,
                payment_status=payment_status_for(amount, total_price),
                payment_reference=reference,
            )
            self.session.add(appt)
            self.session.flush()
            self.session.add(Payment(appointment_id=appt.id, reference=reference, amount=amount))
            self._commit()

        self.session.refresh(appt)
        logger.info("Agendamento #%s criado (prestador=%s, início=%s)", appt.id, appt.provider_id, appt.scheduled_start)

        if data.rebook_from:
            self._mark_rebooked(data.rebook_from, client.id)

        context = self._context(appt, client_name=client.name)
        self.notifier.send(NotificationKind.BOOKING_RECEIVED, appt.client_id, appt.id, **context)
        self.notifier.send(NotificationKind.BOOKING_REQUEST, appt.provider_id, appt.id, **context)
        return appt

    def _resolve_addons(self, service: Service, sub_service_ids: List[int]) -> List[Dict]:
        """Adicionais vêm do catálogo do serviço; o preço é congelado na reserva."""
        ids = list(dict.fromkeys(sub_service_ids))
        if not ids:
            return []

        found = {
            sub.id: sub
            for sub in self.session.exec(
                select(SubService).where(SubService.service_id == service.id, SubService.id.in_(ids))
            ).all()
        }
        missing = [i for i in ids if i not in found]
        if missing:
            raise ValidationError(f"Adicionais inválidos para este serviço: {missing}")

        return [
            {"sub_service_id": i, "name": found[i].name, "price": float(found[i].price)}
            for i in ids
        ]

    def _mark_rebooked(self, old_id: int, client_id: int):
        try:
            result = self.session.execute(
                update(Appointment)
                .where(
                    Appointment.id == old_id,
                    Appointment.client_id == client_id,
                    Appointment.status.in_(SLOT_HOLDING_STATUSES),
                )
                .values(status=AppointmentStatus.REBOOKED)
            )
            self.session.commit()
            if result.rowcount == 1:
                logger.info("Agendamento #%s marcado como rebooked", old_id)
            else:
                logger.info("Agendamento #%s não marcado como rebooked (não encontrado ou já finalizado)", old_id)
        except SQLAlchemyError:
            self.session.rollback()
            logger.exception("Falha ao marcar #%s como rebooked", old_id)

    # =========================
    # CONSULTAR
    # =========================

    def get_for_actor(self, appointment_id: int, actor: User) -> Appointment:
        owner = Appointment.client_id if actor.role == UserRole.CLIENT else Appointment.provider_id
        appt = self.session.exec(
            select(Appointment).where(Appointment.id == appointment_id, owner == actor.id)
        ).first()
        if not appt:
            raise NotFoundError("Agendamento não encontrado")
        return appt

    def list_for_actor(self, actor: User) -> Dict[str, List[Appointment]]:
        if actor.role == UserRole.CLIENT:
            owner, hidden = Appointment.client_id, Appointment.client_deleted
        else:
            owner, hidden = Appointment.provider_id, Appointment.provider_deleted
        query = select(Appointment).where(owner == actor.id, hidden == False)  # noqa: E712

        appointments = self.session.exec(query.order_by(Appointment.scheduled_start.desc())).all()
        now = now_local()

        pending, upcoming, past = [], [], []
        for a in appointments:
            refund_open = a.refund_status in (RefundStatus.PENDING, RefundStatus.PROCESSING)
            if a.status == AppointmentStatus.PENDING or (a.status == AppointmentStatus.CANCELLED and refund_open):
                pending.append(a)
            elif a.status == AppointmentStatus.SCHEDULED and a.scheduled_start > now:
                upcoming.append(a)
            else:
                past.append(a)

        upcoming_key = "scheduled" if actor.role == UserRole.CLIENT else "upcoming"
        return {"pending": pending, upcoming_key: upcoming, "past": past}

    # =========================
    # ATUALIZAR STATUS / CAMPOS
    # =========================

    def update_status(self, appointment_id: int, actor: User, changes: AppointmentUpdate) -> Appointment:
        appt = self.get_for_actor(appointment_id, actor)

        # bloqueio vale para prestador e cliente
        if appt.status in TERMINAL_STATUSES:
            raise ConflictError("Agendamento bloqueado: status final")

        new_status: Optional[AppointmentStatus] = None
        if changes.status is not None:
            try:
                new_status = AppointmentStatus(changes.status)
            except ValueError:
                raise ValidationError(f"Status inválido: {changes.status}")

        new_start = to_local(changes.scheduled_start) if changes.scheduled_start else None
        is_reschedule = new_start is not None and new_start != appt.scheduled_start

        if new_status is None and not is_reschedule and changes.notes is None:
            raise ValidationError("Nenhum campo para atualizar")

        if is_reschedule and new_status == AppointmentStatus.CANCELLED:
            raise ValidationError("Não é possível reagendar e cancelar ao mesmo tempo")

        previous_status = appt.status
        if new_status is not None and new_status != previous_status:
            allowed = PROVIDER_TRANSITIONS if actor.role == UserRole.PROVIDER else CLIENT_TRANSITIONS
            if new_status not in allowed.get(previous_status, set()):
                raise ConflictError(
                    f"Transição de status inválida: {previous_status.value} -> {new_status.value}"
                )

        guard = (
            slot_guard(self.session, self.slot_locks, appt.provider_id, new_start.date())
            if is_reschedule
            else nullcontext()
        )
        with guard:
            if is_reschedule:
                decision = check_availability(
                    self.session, appt.provider_id, appt.service_id, new_start, exclude_appointment_id=appt.id
                )
                if not decision.admitted:
                    raise ConflictError(decision.reason or "Horário indisponível")
                appt.scheduled_start = new_start
                # reagendamento do cliente volta para aprovação
                if actor.role == UserRole.CLIENT:
                    new_status = AppointmentStatus.PENDING

            if new_status is not None:
                appt.status = new_status
            if changes.notes is not None:
                appt.notes = changes.notes

            if new_status == AppointmentStatus.CANCELLED and previous_status != AppointmentStatus.CANCELLED:
                appt.cancelled_at = now_local()
                appt.cancelled_by = actor.role.value
                appt.cancel_reason = changes.cancel_reason or changes.notes

            self.session.add(appt)
            self._commit()

        self.session.refresh(appt)
        logger.info(
            "Agendamento #%s atualizado por %s %s: %s -> %s",
            appt.id, actor.role.value, actor.id, previous_status.value, appt.status.value,
        )

        cancelled = appt.status == AppointmentStatus.CANCELLED and previous_status != AppointmentStatus.CANCELLED
        if cancelled:
            # cancelamento já está gravado; falha no reembolso não desfaz
            try:
                self.refunds.on_cancellation(appt, actor.role)
            except Exception:
                logger.exception("Erro ao processar reembolso do agendamento #%s", appt.id)
            self.session.refresh(appt)

        self._notify_transition(appt, actor, previous_status, cancelled)
        return appt

    def _notify_transition(self, appt: Appointment, actor: User, previous_status: AppointmentStatus, cancelled: bool):
        context = self._context(appt)

        if previous_status == AppointmentStatus.PENDING and appt.status == AppointmentStatus.SCHEDULED:
            self.notifier.send(NotificationKind.BOOKING_ACCEPTED, appt.client_id, appt.id, **context)

        if cancelled:
            context.update(cancelled_by=actor.role.value, reason=appt.cancel_reason)
            self.notifier.send(NotificationKind.CANCELLATION, appt.client_id, appt.id, **context)
            if actor.role == UserRole.CLIENT:
                self.notifier.send(NotificationKind.CANCELLATION, appt.provider_id, appt.id, **context)

    def _context(self, appt: Appointment, **extra) -> Dict:
        return {
            "service_name": appt.service_name_snapshot,
            "scheduled_start": appt.scheduled_start.strftime("%d/%m/%Y %H:%M"),
            "amount_paid": appt.amount_paid,
            "total_price": appt.total_price,
            **extra,
        }

    # =========================
    # PAGAMENTO ADICIONAL (SALDO)
    # =========================

    def record_payment(self, appointment_id: int, actor: User, payment: BalancePayment) -> Appointment:
        appt = self.get_for_actor(appointment_id, actor)

        reference = (payment.payment_reference or "").strip()
        if not reference or payment.amount <= 0:
            raise ValidationError("payment_reference e valor positivo são obrigatórios")

        if appt.status not in (*SLOT_HOLDING_STATUSES, AppointmentStatus.COMPLETED) or appt.refund_status is not None:
            raise ConflictError("Não é possível registrar pagamento neste agendamento")

        outstanding = round(appt.total_price - appt.amount_paid, 2)
        if payment.amount > outstanding + PAYMENT_TOLERANCE:
            raise ValidationError(f"Valor maior que o saldo devedor ({outstanding})")

        appt.amount_paid = round(appt.amount_paid + payment.amount, 2)
        appt.payment_status = payment_status_for(appt.amount_paid, appt.total_price)
        appt.payment_reference = reference

        self.session.add(appt)
        self.session.add(Payment(appointment_id=appt.id, reference=reference, amount=payment.amount))
        self._commit()
        self.session.refresh(appt)

        logger.info("Pagamento de %s registrado no agendamento #%s", payment.amount, appt.id)
        return appt

    def request_balance(self, appointment_id: int, provider: User, request: BalanceRequest) -> PaymentRequest:
        """Prestador pede ao cliente o pagamento do saldo; o cliente recebe um aviso."""
        if provider.role != UserRole.PROVIDER:
            raise ForbiddenError("Apenas prestadores podem pedir pagamento")
        appt = self.get_for_actor(appointment_id, provider)

        if request.amount_requested <= 0:
            raise ValidationError("amount_requested deve ser um valor positivo")

        if appt.status not in (*SLOT_HOLDING_STATUSES, AppointmentStatus.COMPLETED) or appt.refund_status is not None:
            raise ConflictError("Não é possível pedir pagamento neste agendamento")

        outstanding = round(appt.total_price - appt.amount_paid, 2)
        if request.amount_requested > outstanding + PAYMENT_TOLERANCE:
            raise ValidationError(f"Valor maior que o saldo devedor ({outstanding})")

        payment_request = PaymentRequest(
            appointment_id=appt.id,
            provider_id=provider.id,
            client_id=appt.client_id,
            amount_requested=request.amount_requested,
            note=request.note,
        )
        self.session.add(payment_request)
        self._commit()
        self.session.refresh(payment_request)

        logger.info("Saldo de %s solicitado no agendamento #%s", request.amount_requested, appt.id)
        self.notifier.send(
            NotificationKind.BALANCE_REQUEST,
            appt.client_id,
            appt.id,
            amount=request.amount_requested,
            note=request.note,
            provider_name=provider.business_name or provider.name,
        )
        return payment_request

    # =========================
    # EXCLUSÃO LÓGICA
    # =========================

    def soft_delete(self, appointment_id: int, actor: User) -> bool:
        """Esconde o agendamento para quem pediu; apaga de vez quando os dois esconderem."""
        appt = self.get_for_actor(appointment_id, actor)

        if appt.status not in TERMINAL_STATUSES:
            raise ConflictError("Só é possível remover agendamentos finalizados")

        if actor.role == UserRole.CLIENT:
            appt.client_deleted = True
        else:
            appt.provider_deleted = True

        purged = appt.client_deleted and appt.provider_deleted
        if purged:
            for pending_request in self.session.exec(
                select(PaymentRequest).where(PaymentRequest.appointment_id == appt.id)
            ).all():
                self.session.delete(pending_request)
            # estornos apontam para os pagamentos: apaga primeiro
            for kind in (PaymentKind.REFUND, PaymentKind.PAYMENT):
                rows = self.session.exec(
                    select(Payment).where(Payment.appointment_id == appt.id, Payment.kind == kind)
                ).all()
                for row in rows:
                    self.session.delete(row)
                self.session.flush()
            self.session.delete(appt)
            logger.info("Agendamento #%s removido pelas duas partes; apagado", appointment_id)
        else:
            self.session.add(appt)

        self._commit()
        return purged

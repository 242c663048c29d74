"""Orquestração de reembolso de um agendamento cancelado.

Sub-máquina de ``refund_status``::

    None -> processing            (prestador cancelou: reembolso automático)
    None -> pending               (cliente cancelou: aguarda o prestador)
    pending -> processing         (processamento manual pelo prestador)
    processing -> completed | failed
    failed -> pending             (reabertura para nova tentativa)

Toda transição é um compare-and-set no banco (``UPDATE ... WHERE
refund_status = esperado``), então duas chamadas concorrentes nunca chamam
o gateway duas vezes. O gateway é chamado fora de transação.
"""
import logging
from collections import defaultdict
from typing import Dict, List, Optional, Tuple

from sqlalchemy import update
from sqlmodel import Session, select

from app.core.exceptions import ConflictError, NotFoundError, ValidationError
from app.core.time_window import now_local
from app.models.appointment import Appointment, PaymentStatus, RefundStatus
from app.models.notification import NotificationKind
from app.models.payment import Payment, PaymentKind
from app.models.user import User, UserRole
from app.services.notifications import NotificationDispatcher
from app.services.payment_gateway import RefundOutcome, classify_refund_result, to_minor_units

logger = logging.getLogger(__name__)


class RefundOrchestrator:
    def __init__(self, session: Session, gateway, notifier: NotificationDispatcher):
        self.session = session
        self.gateway = gateway
        self.notifier = notifier

    # =========================
    # COMPARE-AND-SET
    # =========================

    def _transition(self, appointment_id: int, expected: Optional[RefundStatus], new: RefundStatus, **values) -> bool:
        if expected is None:
            condition = Appointment.refund_status.is_(None)
        else:
            condition = Appointment.refund_status == expected

        result = self.session.execute(
            update(Appointment)
            .where(Appointment.id == appointment_id, condition)
            .values(refund_status=new, **values)
        )
        self.session.commit()
        return result.rowcount == 1

    def _load_for_provider(self, appointment_id: int, provider_id: int) -> Appointment:
        appt = self.session.exec(
            select(Appointment).where(Appointment.id == appointment_id, Appointment.provider_id == provider_id)
        ).first()
        if not appt:
            raise NotFoundError("Agendamento não encontrado")
        return appt

    # =========================
    # CANCELAMENTO
    # =========================

    def on_cancellation(self, appointment: Appointment, cancelled_by: UserRole) -> Optional[RefundOutcome]:
        amount_paid = float(appointment.amount_paid or 0)
        if amount_paid <= 0:
            return None

        stamps = dict(
            refund_amount=amount_paid,
            refund_initiated_at=now_local(),
            payment_status=PaymentStatus.REFUND_PENDING,
        )

        if cancelled_by == UserRole.PROVIDER:
            if not self._transition(appointment.id, None, RefundStatus.PROCESSING, **stamps):
                logger.warning("Reembolso automático ignorado: #%s já tem reembolso em curso", appointment.id)
                return None
            logger.info("Processando reembolso automático do agendamento #%s", appointment.id)
            self.session.refresh(appointment)
            return self._execute(appointment, amount_paid)

        if not self._transition(appointment.id, None, RefundStatus.PENDING, **stamps):
            logger.warning("Pedido de reembolso ignorado: #%s já tem reembolso registrado", appointment.id)
            return None

        logger.info("Cliente cancelou #%s; reembolso aguardando o prestador", appointment.id)
        self.session.refresh(appointment)
        self.notifier.send(
            NotificationKind.REFUND_REQUEST,
            appointment.provider_id,
            appointment.id,
            amount=amount_paid,
            client_name=self._client_name(appointment),
        )
        return None

    def _client_name(self, appointment: Appointment) -> str:
        client = self.session.get(User, appointment.client_id)
        return client.name if client else "Cliente"

    # =========================
    # PROCESSAMENTO MANUAL (PRESTADOR)
    # =========================

    def process_manual(self, appointment_id: int, provider_id: int) -> Appointment:
        appt = self._load_for_provider(appointment_id, provider_id)

        if appt.refund_status != RefundStatus.PENDING:
            raise ConflictError("Nenhum reembolso pendente para este agendamento")

        amount = float(appt.refund_amount or appt.amount_paid or 0)
        if amount <= 0:
            raise ValidationError("Não há valor a reembolsar")

        # revalida logo antes de passar para processing
        if not self._transition(appt.id, RefundStatus.PENDING, RefundStatus.PROCESSING):
            raise ConflictError("Nenhum reembolso pendente para este agendamento")

        self.session.refresh(appt)
        outcome = self._execute(appt, amount)
        self.session.refresh(appt)

        # falha volta como refund_status = failed; quem chamou decide a resposta
        if outcome == RefundOutcome.FAILED:
            logger.warning("Reembolso manual do agendamento #%s falhou", appt.id)
        return appt

    def reopen_failed(self, appointment_id: int, provider_id: int) -> Appointment:
        appt = self._load_for_provider(appointment_id, provider_id)
        if not self._transition(appt.id, RefundStatus.FAILED, RefundStatus.PENDING):
            raise ConflictError("Somente reembolsos com falha podem ser reabertos")
        self.session.refresh(appt)
        logger.info("Reembolso do agendamento #%s reaberto para nova tentativa", appt.id)
        return appt

    # =========================
    # EXECUÇÃO NO GATEWAY
    # =========================

    def _refund_plan(self, appointment_id: int, amount: float) -> Tuple[List[Tuple[Payment, float]], float]:
        """Divide o valor entre os pagamentos, do mais recente para o mais antigo.

        Desconta o que já foi estornado de cada pagamento; devolve o plano e o
        total já estornado.
        """
        rows = self.session.exec(
            select(Payment).where(Payment.appointment_id == appointment_id).order_by(Payment.id)
        ).all()

        refunded: Dict[int, float] = defaultdict(float)
        for row in rows:
            if row.kind == PaymentKind.REFUND and row.refunded_payment_id is not None:
                refunded[row.refunded_payment_id] += row.amount
        already = sum(refunded.values())

        remaining = round(amount - already, 2)
        plan: List[Tuple[Payment, float]] = []
        for payment in reversed([r for r in rows if r.kind == PaymentKind.PAYMENT]):
            if remaining <= 0:
                break
            available = round(payment.amount - refunded[payment.id], 2)
            if available <= 0:
                continue
            portion = min(remaining, available)
            plan.append((payment, portion))
            remaining = round(remaining - portion, 2)

        return plan, already

    def _execute(self, appt: Appointment, amount: float) -> RefundOutcome:
        plan, already = self._refund_plan(appt.id, amount)

        if not plan and already <= 0:
            logger.error("Agendamento #%s sem transações de pagamento para estornar", appt.id)
            return self._fail(appt, amount)

        references: List[str] = []
        for payment, portion in plan:
            try:
                result = self.gateway.refund(payment.reference, to_minor_units(portion))
            except Exception:
                logger.exception("Erro inesperado do gateway ao estornar %s", payment.reference)
                return self._fail(appt, amount)

            outcome = classify_refund_result(result)

            if outcome == RefundOutcome.SUCCESS:
                refund_ref = result.refund_reference or payment.reference
                self.session.add(
                    Payment(
                        appointment_id=appt.id,
                        kind=PaymentKind.REFUND,
                        reference=refund_ref,
                        amount=portion,
                        refunded_payment_id=payment.id,
                    )
                )
                self.session.commit()
                references.append(refund_ref)
                continue

            if outcome == RefundOutcome.ALREADY_REFUNDED:
                logger.info(
                    "Transação %s já estornada no gateway (#%s); reembolso fica em conciliação",
                    payment.reference, appt.id,
                )
                return outcome

            if outcome == RefundOutcome.AMOUNT_MISMATCH:
                logger.warning(
                    "Valor de reembolso maior que a transação %s (#%s); precisa de revisão manual: %s",
                    payment.reference, appt.id, result.error,
                )
                return outcome

            if outcome == RefundOutcome.UNKNOWN:
                logger.warning("Resultado do reembolso de #%s desconhecido (timeout); fica em processing", appt.id)
                self.notifier.send(NotificationKind.REFUND_PROCESSING, appt.client_id, appt.id, amount=amount)
                return outcome

            logger.error("❌ Reembolso de #%s falhou: %s", appt.id, result.error)
            return self._fail(appt, amount)

        self._complete(appt, amount, references)
        return RefundOutcome.SUCCESS

    def _complete(self, appt: Appointment, amount: float, references: List[str]):
        completed = self._transition(
            appt.id,
            RefundStatus.PROCESSING,
            RefundStatus.COMPLETED,
            refund_reference=",".join(references) or appt.refund_reference,
            refund_completed_at=now_local(),
            payment_status=PaymentStatus.REFUNDED,
        )
        if not completed:
            logger.warning("Reembolso de #%s concluído no gateway mas o status mudou no meio", appt.id)
            return

        logger.info("✅ Reembolso de #%s concluído (%s)", appt.id, amount)
        self.notifier.send(NotificationKind.REFUND_COMPLETED, appt.client_id, appt.id, amount=amount)

    def _fail(self, appt: Appointment, amount: float) -> RefundOutcome:
        self._transition(appt.id, RefundStatus.PROCESSING, RefundStatus.FAILED)
        self.notifier.send(NotificationKind.REFUND_FAILED, appt.provider_id, appt.id, amount=amount)
        self.notifier.send(NotificationKind.REFUND_FAILED, appt.client_id, appt.id, amount=amount)
        return RefundOutcome.FAILED

    # =========================
    # CONCILIAÇÃO
    # =========================

    def reconcile(self, appointment_id: int, provider_id: int) -> Appointment:
        """Consulta o gateway para reembolsos que ficaram em ``processing``."""
        appt = self._load_for_provider(appointment_id, provider_id)
        if appt.refund_status != RefundStatus.PROCESSING:
            raise ConflictError("Só reembolsos em processamento podem ser conciliados")

        amount = float(appt.refund_amount or appt.amount_paid or 0)
        plan, _ = self._refund_plan(appt.id, amount)

        references: List[str] = []
        for payment, portion in plan:
            found = self.gateway.list_refunds(payment.reference)
            statuses = {r.status for r in found}

            if "processed" in statuses:
                match = next(r for r in found if r.status == "processed")
                refund_ref = match.refund_reference or payment.reference
                self.session.add(
                    Payment(
                        appointment_id=appt.id,
                        kind=PaymentKind.REFUND,
                        reference=refund_ref,
                        amount=portion,
                        refunded_payment_id=payment.id,
                    )
                )
                self.session.commit()
                references.append(refund_ref)
                continue

            if found and statuses <= {"failed"}:
                logger.error("Gateway informa falha no reembolso de %s (#%s)", payment.reference, appt.id)
                self._fail(appt, amount)
                self.session.refresh(appt)
                return appt

            logger.info("Reembolso de %s ainda sem resposta definitiva (#%s)", payment.reference, appt.id)
            self.session.refresh(appt)
            return appt

        self._complete(appt, amount, references)
        self.session.refresh(appt)
        return appt

"""Cliente do gateway de pagamento (Paystack) para reembolsos.

O gateway nunca levanta exceção para o chamador no fluxo de reembolso:
toda falha vira um ``RefundResult`` com ``success=False``. Timeout é
marcado à parte porque o resultado real é desconhecido.
"""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

import httpx

from app.core.config import GATEWAY_TIMEOUT_SECONDS, PAYSTACK_BASE_URL, PAYSTACK_CURRENCY, PAYSTACK_SECRET_KEY
from app.core.exceptions import ExternalServiceError

logger = logging.getLogger(__name__)

if not PAYSTACK_SECRET_KEY:
    logger.warning("⚠️ PAYSTACK_SECRET_KEY não configurada. Reembolsos vão falhar.")


@dataclass
class RefundResult:
    success: bool
    refund_reference: Optional[str] = None
    error: Optional[str] = None
    timed_out: bool = False


@dataclass
class GatewayRefund:
    refund_reference: Optional[str]
    status: str
    amount_minor: int


class RefundOutcome(str, Enum):
    SUCCESS = "success"
    # já estornado no gateway: não é erro
    ALREADY_REFUNDED = "already-refunded"
    # valor maior que a transação (dados antigos): revisão manual
    AMOUNT_MISMATCH = "amount-mismatch"
    # timeout: não sabemos se o gateway processou
    UNKNOWN = "unknown"
    FAILED = "failed"


_ALREADY_REFUNDED_MARKERS = ("already refunded", "fully refunded", "reversed", "already been refunded")
_AMOUNT_MISMATCH_MARKERS = ("exceed", "greater than", "more than the transaction", "amount is invalid")


def classify_refund_result(result: RefundResult) -> RefundOutcome:
    if result.success:
        return RefundOutcome.SUCCESS
    if result.timed_out:
        return RefundOutcome.UNKNOWN

    error = (result.error or "").lower()
    if any(marker in error for marker in _ALREADY_REFUNDED_MARKERS):
        return RefundOutcome.ALREADY_REFUNDED
    if "amount" in error and any(marker in error for marker in _AMOUNT_MISMATCH_MARKERS):
        return RefundOutcome.AMOUNT_MISMATCH
    return RefundOutcome.FAILED


def to_minor_units(amount: float) -> int:
    return int(round(amount * 100))


class PaystackGateway:
    def __init__(
        self,
        secret_key: Optional[str] = PAYSTACK_SECRET_KEY,
        base_url: str = PAYSTACK_BASE_URL,
        currency: str = PAYSTACK_CURRENCY,
        timeout: float = GATEWAY_TIMEOUT_SECONDS,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.secret_key = secret_key
        self.base_url = base_url.rstrip("/")
        self.currency = currency
        self.timeout = timeout
        self.transport = transport

    def _client(self) -> httpx.Client:
        return httpx.Client(
            base_url=self.base_url,
            timeout=self.timeout,
            transport=self.transport,
            headers={
                "Authorization": f"Bearer {self.secret_key}",
                "Content-Type": "application/json",
            },
        )

    def refund(self, transaction_reference: str, amount_minor: int) -> RefundResult:
        payload = {
            "transaction": transaction_reference,
            "amount": amount_minor,
            "currency": self.currency,
        }

        try:
            with self._client() as client:
                response = client.post("/refund", json=payload)
        except httpx.TimeoutException:
            logger.warning("⏳ Timeout no reembolso da transação %s", transaction_reference)
            return RefundResult(success=False, error="Gateway timeout", timed_out=True)
        except httpx.HTTPError as e:
            logger.error("❌ Erro de rede no reembolso %s: %s", transaction_reference, e)
            return RefundResult(success=False, error=str(e) or "Refund processing error")

        body = _json_or_empty(response)
        if response.is_success and body.get("status") is True:
            data = body.get("data") or {}
            reference = data.get("id") or (data.get("transaction") or {}).get("reference")
            logger.info("✅ Reembolso iniciado para %s (ref=%s)", transaction_reference, reference)
            return RefundResult(success=True, refund_reference=str(reference) if reference else None)

        error = body.get("message") or response.text or "Refund initiation failed"
        logger.error("❌ Reembolso recusado para %s: %s", transaction_reference, error)
        return RefundResult(success=False, error=error)

    def list_refunds(self, transaction_reference: str) -> List[GatewayRefund]:
        """Reembolsos conhecidos pelo gateway para uma transação (conciliação)."""
        try:
            with self._client() as client:
                response = client.get("/refund", params={"transaction": transaction_reference})
                response.raise_for_status()
        except httpx.HTTPError as e:
            raise ExternalServiceError(f"Consulta de reembolso falhou para {transaction_reference}: {e}") from e

        body = _json_or_empty(response)
        if body.get("status") is not True:
            raise ExternalServiceError(body.get("message") or "Falha ao consultar reembolso")

        return [
            GatewayRefund(
                refund_reference=str(item.get("id")) if item.get("id") else None,
                status=str(item.get("status") or "pending").lower(),
                amount_minor=int(item.get("amount") or 0),
            )
            for item in body.get("data") or []
        ]


def _json_or_empty(response: httpx.Response) -> dict:
    try:
        body = response.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}

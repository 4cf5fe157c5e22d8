from __future__ import annotations

import hashlib
import hmac

from cobros.schemas.gateways import MercadoPagoCredentials
from cobros.services.gateways.base import (
    CardData,
    ChargeOutcome,
    GatewayConnectionError,
    Payer,
    TokenResult,
    WebhookNotice,
    _http_json_get,
    connection_error_outcome,
)

API_URL = "https://api.mercadopago.com"
NOT_IMPLEMENTED = "MercadoPago no implementado aun"

_STATE_MAP = {
    "approved": "approved",
    "authorized": "pending",
    "in_process": "pending",
    "pending": "pending",
    "rejected": "declined",
    "cancelled": "declined",
    "refunded": "declined",
    "charged_back": "declined",
}


def _parse_signature_header(value: str | None) -> tuple[str | None, str | None]:
    ts = None
    v1 = None
    for part in (value or "").split(","):
        if "=" not in part:
            continue
        k, v = part.split("=", 1)
        key = k.strip().lower()
        if key == "ts":
            ts = v.strip()
        elif key == "v1":
            v1 = v.strip()
    return (ts, v1)


class MercadoPagoGateway:
    """Status queries and webhooks only; recurring card charges are not wired."""

    gateway_code = "mercadopago"

    def tokenize(self, card: CardData, credentials: MercadoPagoCredentials, *, payer: Payer, timeout: int) -> TokenResult:
        return TokenResult(success=False, error=NOT_IMPLEMENTED)

    def charge(
        self,
        token: str,
        amount: int,
        currency: str,
        *,
        reference: str,
        description: str,
        payer: Payer,
        credentials: MercadoPagoCredentials,
        timeout: int,
    ) -> ChargeOutcome:
        return ChargeOutcome(success=False, gateway_state="error", error_message=NOT_IMPLEMENTED)

    def transaction_status(self, transaction_id: str, credentials: MercadoPagoCredentials, *, timeout: int) -> ChargeOutcome:
        try:
            data = _http_json_get(
                f"{API_URL}/v1/payments/{transaction_id}",
                headers={"Authorization": f"Bearer {credentials.access_token}"},
                timeout=timeout,
            )
        except GatewayConnectionError as exc:
            return connection_error_outcome("MercadoPago", exc)

        raw_state = str(data.get("status") or "").lower()
        if not raw_state:
            return ChargeOutcome(
                success=False,
                gateway_state="error",
                transaction_id=transaction_id,
                error_message=str(data.get("message") or "Pago no encontrado"),
                raw_response=data,
            )
        state = _STATE_MAP.get(raw_state, "error")
        return ChargeOutcome(
            success=(state == "approved"),
            gateway_state=state,
            transaction_id=str(data.get("id") or transaction_id),
            error_message=(str(data.get("status_detail") or raw_state) if state in {"declined", "error"} else None),
            raw_response=data,
        )

    def verify_webhook(self, payload: dict, headers, raw_body: bytes, credentials: MercadoPagoCredentials) -> bool:
        if not credentials.webhook_secret:
            return False
        ts, v1 = _parse_signature_header(headers.get("x-signature"))
        data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
        if not ts or not v1 or not data.get("id"):
            return False
        manifest = f"id:{str(data['id']).lower()};request-id:{headers.get('x-request-id') or ''};ts:{ts};"
        expected = hmac.new(credentials.webhook_secret.encode("utf-8"), manifest.encode("utf-8"), hashlib.sha256).hexdigest()
        return hmac.compare_digest(expected, v1)

    def parse_webhook(self, payload: dict) -> WebhookNotice:
        event_type = str(payload.get("type") or payload.get("topic") or "").strip()
        data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
        payment_id = str(data.get("id") or "").strip()
        if not event_type or not payment_id:
            raise ValueError("Evento de webhook invalido")
        action = str(payload.get("action") or "")
        return WebhookNotice(
            event_id=str(payload.get("id") or f"{payment_id}:{action}"),
            event_type=event_type,
            transaction_id=(payment_id if event_type == "payment" else None),
            state=None,
        )

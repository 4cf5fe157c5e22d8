from __future__ import annotations

import logging

from cobros.core.security import constant_time_equals, sha256_hex
from cobros.schemas.gateways import WompiCredentials
from cobros.services.gateways.base import (
    CardData,
    ChargeOutcome,
    GatewayConnectionError,
    Payer,
    TokenResult,
    WebhookNotice,
    _http_json_get,
    _http_json_post,
    connection_error_outcome,
    nested_value,
)

logger = logging.getLogger(__name__)

SANDBOX_URL = "https://sandbox.wompi.co/v1"
PRODUCTION_URL = "https://production.wompi.co/v1"

_STATE_MAP = {
    "APPROVED": "approved",
    "PENDING": "pending",
    "DECLINED": "declined",
    "VOIDED": "declined",
    "ERROR": "error",
}


def _base_url(credentials: WompiCredentials) -> str:
    return PRODUCTION_URL if credentials.is_production else SANDBOX_URL


def _error_message(data: dict, default: str) -> str:
    err = data.get("error")
    if isinstance(err, dict):
        messages = err.get("messages")
        if isinstance(messages, dict) and messages:
            field, detail = next(iter(messages.items()))
            return f"{field}: {detail[0] if isinstance(detail, list) and detail else detail}"
        if err.get("reason") or err.get("message"):
            return str(err.get("reason") or err.get("message"))
    return default


def _outcome_from_transaction(data: dict) -> ChargeOutcome:
    tx = data.get("data") if isinstance(data.get("data"), dict) else {}
    raw_state = str(tx.get("status") or "ERROR").upper()
    state = _STATE_MAP.get(raw_state, "error")
    error_message = None
    if state not in {"approved", "pending"}:
        error_message = str(tx.get("status_message") or f"Transaccion {raw_state}")
    return ChargeOutcome(
        success=(state == "approved"),
        gateway_state=state,
        transaction_id=(str(tx["id"]) if tx.get("id") else None),
        error_message=error_message,
        raw_response=data,
    )


def event_checksum(payload: dict, events_secret: str) -> str:
    signature = payload.get("signature") if isinstance(payload.get("signature"), dict) else {}
    properties = signature.get("properties") or []
    data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
    concatenated = ""
    for prop in properties:
        value = nested_value(data, prop)
        concatenated += "" if value is None else str(value)
    concatenated += str(payload.get("timestamp") or "")
    concatenated += events_secret
    return sha256_hex(concatenated)


class WompiGateway:
    gateway_code = "wompi"

    def acceptance_token(self, credentials: WompiCredentials, *, timeout: int) -> str | None:
        data = _http_json_get(f"{_base_url(credentials)}/merchants/{credentials.public_key}", timeout=timeout)
        return nested_value(data, "data.presigned_acceptance.acceptance_token")

    def create_payment_source(
        self,
        card_token: str,
        credentials: WompiCredentials,
        *,
        customer_email: str,
        timeout: int,
    ) -> TokenResult:
        try:
            acceptance = self.acceptance_token(credentials, timeout=timeout)
            if not acceptance:
                return TokenResult(success=False, error="No se pudo obtener token de aceptacion")
            data = _http_json_post(
                f"{_base_url(credentials)}/payment_sources",
                {
                    "type": "CARD",
                    "token": card_token,
                    "customer_email": customer_email,
                    "acceptance_token": acceptance,
                },
                headers={"Authorization": f"Bearer {credentials.private_key}"},
                timeout=timeout,
            )
        except GatewayConnectionError as exc:
            return TokenResult(success=False, error=f"Error de conexion con Wompi: {exc}")

        source_id = nested_value(data, "data.id")
        if source_id:
            return TokenResult(success=True, token=str(source_id))
        return TokenResult(success=False, error=_error_message(data, "Error al crear payment source"))

    def tokenize(self, card: CardData, credentials: WompiCredentials, *, payer: Payer, timeout: int) -> TokenResult:
        try:
            data = _http_json_post(
                f"{_base_url(credentials)}/tokens/cards",
                {
                    "number": card.digits,
                    "exp_month": f"{int(card.exp_month):02d}",
                    "exp_year": f"{int(card.exp_year) % 100:02d}",
                    "cvc": card.cvc or "",
                    "card_holder": card.holder_name,
                },
                headers={"Authorization": f"Bearer {credentials.public_key}"},
                timeout=timeout,
            )
        except GatewayConnectionError as exc:
            return TokenResult(success=False, error=f"Error de conexion con Wompi: {exc}")

        card_info = data.get("data") if isinstance(data.get("data"), dict) else {}
        if data.get("status") != "CREATED" or not card_info.get("id"):
            return TokenResult(success=False, error=_error_message(data, "Error al tokenizar tarjeta"))

        source = self.create_payment_source(
            str(card_info["id"]),
            credentials,
            customer_email=payer.email,
            timeout=timeout,
        )
        if not source.success:
            return source
        return TokenResult(
            success=True,
            token=source.token,
            display_brand=card_info.get("brand"),
            last_four=card_info.get("last_four") or card.last_four,
            exp_month=int(card.exp_month),
            exp_year=int(card.exp_year),
        )

    def charge(
        self,
        token: str,
        amount: int,
        currency: str,
        *,
        reference: str,
        description: str,
        payer: Payer,
        credentials: WompiCredentials,
        timeout: int,
    ) -> ChargeOutcome:
        try:
            source_id = int(token)
        except (TypeError, ValueError):
            return ChargeOutcome(success=False, gateway_state="error", error_message="payment_source_id invalido")

        payload = {
            "amount_in_cents": int(amount) * 100,
            "currency": currency,
            "reference": reference,
            "customer_email": payer.email,
            "payment_source_id": source_id,
            "payment_method": {"installments": 1},
            "customer_data": {
                "full_name": payer.name,
                "phone_number": payer.phone or "",
                "legal_id": payer.document_number or "",
            },
        }
        try:
            data = _http_json_post(
                f"{_base_url(credentials)}/transactions",
                payload,
                headers={"Authorization": f"Bearer {credentials.private_key}"},
                timeout=timeout,
            )
        except GatewayConnectionError as exc:
            return connection_error_outcome("Wompi", exc)

        if nested_value(data, "data.id"):
            return _outcome_from_transaction(data)
        return ChargeOutcome(
            success=False,
            gateway_state="error",
            error_message=_error_message(data, "Error al procesar el cobro"),
            raw_response=data,
        )

    def transaction_status(self, transaction_id: str, credentials: WompiCredentials, *, timeout: int) -> ChargeOutcome:
        try:
            data = _http_json_get(
                f"{_base_url(credentials)}/transactions/{transaction_id}",
                headers={"Authorization": f"Bearer {credentials.private_key}"},
                timeout=timeout,
            )
        except GatewayConnectionError as exc:
            return connection_error_outcome("Wompi", exc)
        if nested_value(data, "data.status"):
            return _outcome_from_transaction(data)
        return ChargeOutcome(
            success=False,
            gateway_state="error",
            transaction_id=transaction_id,
            error_message="Transaccion no encontrada",
            raw_response=data,
        )

    def verify_webhook(self, payload: dict, headers, raw_body: bytes, credentials: WompiCredentials) -> bool:
        if not credentials.events_secret:
            return False
        signature = payload.get("signature") if isinstance(payload.get("signature"), dict) else {}
        received = str(headers.get("x-event-checksum") or signature.get("checksum") or "").lower()
        return constant_time_equals(received, event_checksum(payload, credentials.events_secret))

    def parse_webhook(self, payload: dict) -> WebhookNotice:
        event_type = str(payload.get("event") or "").strip()
        tx = nested_value(payload, "data.transaction") or {}
        if not event_type or not isinstance(tx, dict) or not tx.get("id"):
            raise ValueError("Evento de webhook invalido")
        raw_state = str(tx.get("status") or "").upper()
        state = _STATE_MAP.get(raw_state, "error")
        checksum = nested_value(payload, "signature.checksum")
        return WebhookNotice(
            event_id=str(checksum or f"{tx['id']}:{raw_state}:{payload.get('timestamp') or ''}"),
            event_type=event_type,
            reference=(str(tx["reference"]) if tx.get("reference") else None),
            transaction_id=str(tx["id"]),
            state=(state if event_type == "transaction.updated" else None),
            error_message=(str(tx.get("status_message") or f"Transaccion {raw_state}") if state in {"declined", "error"} else None),
        )

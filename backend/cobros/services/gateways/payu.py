from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
import re

from cobros.core.security import constant_time_equals, md5_hex
from cobros.schemas.gateways import PayUCredentials
from cobros.services.gateways.base import (
    CardData,
    ChargeOutcome,
    GatewayConnectionError,
    Payer,
    TokenResult,
    WebhookNotice,
    _http_json_post,
    connection_error_outcome,
)

SANDBOX_URL = "https://sandbox.api.payulatam.com/payments-api/4.0/service.cgi"
PRODUCTION_URL = "https://api.payulatam.com/payments-api/4.0/service.cgi"
REPORTS_SANDBOX_URL = "https://sandbox.api.payulatam.com/reports-api/4.0/service.cgi"
REPORTS_PRODUCTION_URL = "https://api.payulatam.com/reports-api/4.0/service.cgi"

_STATE_MAP = {
    "APPROVED": "approved",
    "PENDING": "pending",
    "DECLINED": "declined",
    "EXPIRED": "declined",
    "ERROR": "error",
}

# state_pol values sent to the confirmation URL
_WEBHOOK_STATE_MAP = {
    "4": "approved",
    "5": "declined",
    "6": "declined",
    "7": "pending",
}

_BRAND_PATTERNS = (
    ("VISA", re.compile(r"^4")),
    ("MASTERCARD", re.compile(r"^(5[1-5]|2[2-7])")),
    ("AMEX", re.compile(r"^3[47]")),
    ("DISCOVER", re.compile(r"^6(?:011|5)")),
    ("JCB", re.compile(r"^(?:2131|1800|35\d{3})")),
    ("DINERS", re.compile(r"^3(?:0[0-5]|[68])")),
)


def detect_card_brand(number: str) -> str:
    digits = re.sub(r"\D", "", number or "")
    for brand, pattern in _BRAND_PATTERNS:
        if pattern.match(digits):
            return brand
    return "VISA"


def _base_url(credentials: PayUCredentials) -> str:
    return PRODUCTION_URL if credentials.is_production else SANDBOX_URL


def _reports_url(credentials: PayUCredentials) -> str:
    return REPORTS_PRODUCTION_URL if credentials.is_production else REPORTS_SANDBOX_URL


def _merchant_block(credentials: PayUCredentials) -> dict:
    return {"apiLogin": credentials.api_login, "apiKey": credentials.api_key}


def _format_amount(amount) -> str:
    value = Decimal(str(amount))
    if value == value.to_integral_value():
        return str(int(value))
    return str(value.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def transaction_signature(credentials: PayUCredentials, reference: str, amount, currency: str) -> str:
    raw = f"{credentials.api_key}~{credentials.merchant_id}~{reference}~{_format_amount(amount)}~{currency}"
    return md5_hex(raw)


def _confirmation_value(value) -> str:
    # One decimal when the second decimal is zero (150000.00 -> 150000.0)
    try:
        amount = Decimal(str(value).strip()).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    except InvalidOperation as exc:
        raise ValueError("Valor invalido en la confirmacion de PayU") from exc
    if not amount.is_finite():
        raise ValueError("Valor invalido en la confirmacion de PayU")
    if amount == amount.quantize(Decimal("0.1")):
        return str(amount.quantize(Decimal("0.1")))
    return str(amount)


def confirmation_signature(credentials: PayUCredentials, payload: dict) -> str:
    raw = "~".join(
        [
            credentials.api_key,
            str(payload.get("merchant_id") or ""),
            str(payload.get("reference_sale") or ""),
            _confirmation_value(payload.get("value") or 0),
            str(payload.get("currency") or ""),
            str(payload.get("state_pol") or ""),
        ]
    )
    return md5_hex(raw)


def _outcome_from_transaction_response(tx: dict, data: dict) -> ChargeOutcome:
    raw_state = str(tx.get("state") or "ERROR").upper()
    state = _STATE_MAP.get(raw_state, "error")
    error_message = None
    if state not in {"approved", "pending"}:
        error_message = tx.get("responseMessage") or tx.get("responseCode") or "Transaccion rechazada"
    return ChargeOutcome(
        success=(state == "approved"),
        gateway_state=state,
        transaction_id=(str(tx["transactionId"]) if tx.get("transactionId") else None),
        error_message=error_message,
        raw_response=data,
    )


class PayUGateway:
    gateway_code = "payu"

    def tokenize(self, card: CardData, credentials: PayUCredentials, *, payer: Payer, timeout: int) -> TokenResult:
        payload = {
            "language": "es",
            "command": "CREATE_TOKEN",
            "merchant": _merchant_block(credentials),
            "creditCardToken": {
                "payerId": payer.customer_id,
                "name": card.holder_name,
                "identificationNumber": card.document_number or payer.document_number or "",
                "paymentMethod": detect_card_brand(card.number),
                "number": card.digits,
                "expirationDate": f"{int(card.exp_year):04d}/{int(card.exp_month):02d}",
            },
        }
        try:
            data = _http_json_post(_base_url(credentials), payload, timeout=timeout)
        except GatewayConnectionError as exc:
            return TokenResult(success=False, error=f"Error de conexion con PayU: {exc}")

        token = data.get("creditCardToken") or {}
        if data.get("code") == "SUCCESS" and token.get("creditCardTokenId"):
            return TokenResult(
                success=True,
                token=str(token["creditCardTokenId"]),
                display_brand=detect_card_brand(card.number),
                last_four=card.last_four,
                exp_month=int(card.exp_month),
                exp_year=int(card.exp_year),
            )
        return TokenResult(success=False, error=str(data.get("error") or "Error al tokenizar la tarjeta"))

    def charge(
        self,
        token: str,
        amount: int,
        currency: str,
        *,
        reference: str,
        description: str,
        payer: Payer,
        credentials: PayUCredentials,
        timeout: int,
    ) -> ChargeOutcome:
        buyer = {
            "merchantBuyerId": payer.customer_id,
            "fullName": payer.name,
            "emailAddress": payer.email,
            "contactPhone": payer.phone or "",
            "shippingAddress": {"country": "CO"},
        }
        payload = {
            "language": "es",
            "command": "SUBMIT_TRANSACTION",
            "merchant": _merchant_block(credentials),
            "transaction": {
                "order": {
                    "accountId": credentials.account_id,
                    "referenceCode": reference,
                    "description": description,
                    "language": "es",
                    "signature": transaction_signature(credentials, reference, amount, currency),
                    "additionalValues": {"TX_VALUE": {"value": amount, "currency": currency}},
                    "buyer": buyer,
                },
                "payer": {
                    "merchantPayerId": payer.customer_id,
                    "fullName": payer.name,
                    "emailAddress": payer.email,
                    "contactPhone": payer.phone or "",
                },
                "creditCardTokenId": token,
                "creditCard": {"processWithoutCvv2": True},
                "type": "AUTHORIZATION_AND_CAPTURE",
                "paymentCountry": "CO",
            },
            "test": not credentials.is_production,
        }
        try:
            data = _http_json_post(_base_url(credentials), payload, timeout=timeout)
        except GatewayConnectionError as exc:
            return connection_error_outcome("PayU", exc)

        tx = data.get("transactionResponse")
        if data.get("code") == "SUCCESS" and isinstance(tx, dict):
            return _outcome_from_transaction_response(tx, data)
        return ChargeOutcome(
            success=False,
            gateway_state="error",
            error_message=str(data.get("error") or "Error al procesar el cobro"),
            raw_response=data,
        )

    def transaction_status(self, transaction_id: str, credentials: PayUCredentials, *, timeout: int) -> ChargeOutcome:
        payload = {
            "language": "es",
            "command": "TRANSACTION_RESPONSE_DETAIL",
            "merchant": _merchant_block(credentials),
            "details": {"transactionId": transaction_id},
            "test": not credentials.is_production,
        }
        try:
            data = _http_json_post(_reports_url(credentials), payload, timeout=timeout)
        except GatewayConnectionError as exc:
            return connection_error_outcome("PayU", exc)

        result = (data.get("result") or {}).get("payload") if isinstance(data.get("result"), dict) else None
        if data.get("code") == "SUCCESS" and isinstance(result, dict):
            return _outcome_from_transaction_response({"transactionId": transaction_id, **result}, data)
        return ChargeOutcome(
            success=False,
            gateway_state="error",
            transaction_id=transaction_id,
            error_message=str(data.get("error") or "Error al consultar transaccion"),
            raw_response=data,
        )

    def verify_webhook(self, payload: dict, headers, raw_body: bytes, credentials: PayUCredentials) -> bool:
        sign = str(payload.get("sign") or "").lower()
        return constant_time_equals(sign, confirmation_signature(credentials, payload))

    def parse_webhook(self, payload: dict) -> WebhookNotice:
        state_pol = str(payload.get("state_pol") or "").strip()
        transaction_id = str(payload.get("transaction_id") or "").strip() or None
        reference = str(payload.get("reference_sale") or "").strip() or None
        if not transaction_id and not reference:
            raise ValueError("Evento de webhook invalido")
        state = _WEBHOOK_STATE_MAP.get(state_pol, "error")
        error_message = None
        if state in {"declined", "error"}:
            error_message = str(payload.get("response_message_pol") or f"PayU state_pol={state_pol}")
        return WebhookNotice(
            event_id=f"{transaction_id or reference}:{state_pol}",
            event_type=f"confirmation.{state_pol or 'unknown'}",
            reference=reference,
            transaction_id=transaction_id,
            state=state,
            error_message=error_message,
        )

from __future__ import annotations

import hashlib
import hmac
import http.client
import io
from urllib import error as urlerror

import pytest

from cobros.schemas.gateways import parse_gateway_credentials
from cobros.services.gateways import base, mercadopago, payu, wompi
from cobros.services.gateways.base import CardData, GatewayConnectionError, Payer
from cobros.services.gateways.registry import SUPPORTED_GATEWAYS, get_gateway_adapter
from tests.testkit import MERCADOPAGO_CONFIG, PAYU_CONFIG, WOMPI_CONFIG

PAYER = Payer(customer_id="cus-1", email="ana@correo.co", name="Ana Gomez", phone="3001234567", document_number="1020304050")
CARD = CardData(number="4242 4242 4242 4242", exp_month=8, exp_year=2028, cvc="123", holder_name="ANA GOMEZ")


def _md5(raw: str) -> str:
    return hashlib.md5(raw.encode("utf-8")).hexdigest()


class FakeHttp:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def post(self, url, payload, *, headers=None, timeout=30):
        self.calls.append(("POST", url, payload, headers or {}))
        return self._next()

    def get(self, url, *, headers=None, timeout=30):
        self.calls.append(("GET", url, None, headers or {}))
        return self._next()

    def _next(self):
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


def test_registry_knows_three_gateways():
    assert SUPPORTED_GATEWAYS == ("payu", "wompi", "mercadopago")
    assert get_gateway_adapter(" Wompi ").gateway_code == "wompi"
    assert get_gateway_adapter("payu").gateway_code == "payu"
    assert get_gateway_adapter("mercadopago").gateway_code == "mercadopago"
    assert get_gateway_adapter("stripe") is None


def test_http_error_with_json_body_is_returned(monkeypatch):
    def fake_urlopen(req, timeout):
        raise urlerror.HTTPError(req.full_url, 422, "Unprocessable", {}, io.BytesIO(b'{"error": {"type": "INPUT_VALIDATION_ERROR"}}'))

    monkeypatch.setattr(base.urlrequest, "urlopen", fake_urlopen)
    assert base._http_json_post("https://example.test/x", {"a": 1}) == {"error": {"type": "INPUT_VALIDATION_ERROR"}}


def test_unreachable_gateway_raises_connection_error(monkeypatch):
    def fake_urlopen(req, timeout):
        raise urlerror.URLError("connection refused")

    monkeypatch.setattr(base.urlrequest, "urlopen", fake_urlopen)
    with pytest.raises(GatewayConnectionError):
        base._http_json_get("https://example.test/x")


class _Body:
    def __init__(self, read):
        self.read = read

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


def _truncated_read():
    raise http.client.IncompleteRead(b'{"data": {"id"')


@pytest.mark.parametrize("read", [lambda: b"\xff\xfe garbage", _truncated_read])
def test_unreadable_response_becomes_failed_outcome(monkeypatch, read):
    monkeypatch.setattr(base.urlrequest, "urlopen", lambda req, timeout: _Body(read))
    creds = parse_gateway_credentials("wompi", WOMPI_CONFIG)

    out = wompi.WompiGateway().charge(
        "3891", 50000, "COP", reference="INV-1", description="Plan", payer=PAYER, credentials=creds, timeout=5
    )

    assert out.success is False
    assert out.gateway_state == "error"
    assert out.error_message == "Error de conexion con Wompi: Respuesta ilegible del gateway"


# PayU


def test_payu_card_brand_detection():
    assert payu.detect_card_brand("4111111111111111") == "VISA"
    assert payu.detect_card_brand("5500 0000 0000 0004") == "MASTERCARD"
    assert payu.detect_card_brand("2223000048400011") == "MASTERCARD"
    assert payu.detect_card_brand("378282246310005") == "AMEX"
    assert payu.detect_card_brand("36700102000000") == "DINERS"
    assert payu.detect_card_brand("6011111111111117") == "DISCOVER"
    assert payu.detect_card_brand("3530111333300000") == "JCB"
    assert payu.detect_card_brand("9999") == "VISA"


def test_payu_transaction_signature():
    creds = parse_gateway_credentials("payu", PAYU_CONFIG)
    expected = _md5("4Vj8eK4rloUd272L48hsrarnUA~508029~INV-1~50000~COP")
    assert payu.transaction_signature(creds, "INV-1", 50000, "COP") == expected


def test_payu_confirmation_signature_value_formatting():
    creds = parse_gateway_credentials("payu", PAYU_CONFIG)
    base_payload = {"merchant_id": "508029", "reference_sale": "INV-1", "currency": "COP", "state_pol": "4"}

    round_value = dict(base_payload, value="150000.00")
    assert payu.confirmation_signature(creds, round_value) == _md5("4Vj8eK4rloUd272L48hsrarnUA~508029~INV-1~150000.0~COP~4")

    cents = dict(base_payload, value="150000.55")
    assert payu.confirmation_signature(creds, cents) == _md5("4Vj8eK4rloUd272L48hsrarnUA~508029~INV-1~150000.55~COP~4")


def test_payu_charge_approved(monkeypatch):
    http = FakeHttp({"code": "SUCCESS", "transactionResponse": {"state": "APPROVED", "transactionId": "payu-tx-1"}})
    monkeypatch.setattr(payu, "_http_json_post", http.post)
    creds = parse_gateway_credentials("payu", PAYU_CONFIG)

    out = payu.PayUGateway().charge(
        "tok-1", 50000, "COP", reference="INV-1", description="Plan", payer=PAYER, credentials=creds, timeout=5
    )

    assert out.success is True
    assert out.gateway_state == "approved"
    assert out.transaction_id == "payu-tx-1"
    _, url, payload, _ = http.calls[0]
    assert url == payu.SANDBOX_URL
    assert payload["command"] == "SUBMIT_TRANSACTION"
    assert payload["transaction"]["creditCardTokenId"] == "tok-1"
    assert payload["transaction"]["order"]["signature"] == payu.transaction_signature(creds, "INV-1", 50000, "COP")
    assert payload["test"] is True


def test_payu_charge_declined_keeps_gateway_message(monkeypatch):
    http = FakeHttp(
        {
            "code": "SUCCESS",
            "transactionResponse": {"state": "DECLINED", "transactionId": "payu-tx-2", "responseMessage": "Fondos insuficientes"},
        }
    )
    monkeypatch.setattr(payu, "_http_json_post", http.post)
    creds = parse_gateway_credentials("payu", PAYU_CONFIG)

    out = payu.PayUGateway().charge(
        "tok-1", 50000, "COP", reference="INV-2", description="Plan", payer=PAYER, credentials=creds, timeout=5
    )
    assert out.success is False
    assert out.gateway_state == "declined"
    assert out.error_message == "Fondos insuficientes"


def test_payu_request_error_and_connection_error(monkeypatch):
    http = FakeHttp({"code": "ERROR", "error": "Invalid signature"}, GatewayConnectionError("timed out"))
    monkeypatch.setattr(payu, "_http_json_post", http.post)
    creds = parse_gateway_credentials("payu", PAYU_CONFIG)
    gw = payu.PayUGateway()

    first = gw.charge("t", 100, "COP", reference="R1", description="d", payer=PAYER, credentials=creds, timeout=5)
    assert first.gateway_state == "error"
    assert first.error_message == "Invalid signature"

    second = gw.charge("t", 100, "COP", reference="R2", description="d", payer=PAYER, credentials=creds, timeout=5)
    assert second.success is False
    assert second.error_message.startswith("Error de conexion con PayU")


def test_payu_tokenize(monkeypatch):
    http = FakeHttp({"code": "SUCCESS", "creditCardToken": {"creditCardTokenId": "payu-token-9"}})
    monkeypatch.setattr(payu, "_http_json_post", http.post)
    creds = parse_gateway_credentials("payu", PAYU_CONFIG)

    out = payu.PayUGateway().tokenize(CARD, creds, payer=PAYER, timeout=5)

    assert out.success is True
    assert out.token == "payu-token-9"
    assert out.last_four == "4242"
    assert out.display_brand == "VISA"
    payload = http.calls[0][2]
    assert payload["command"] == "CREATE_TOKEN"
    assert payload["creditCardToken"]["number"] == "4242424242424242"
    assert payload["creditCardToken"]["expirationDate"] == "2028/08"


def test_payu_transaction_status_uses_reports_api(monkeypatch):
    http = FakeHttp({"code": "SUCCESS", "result": {"payload": {"state": "APPROVED"}}})
    monkeypatch.setattr(payu, "_http_json_post", http.post)
    creds = parse_gateway_credentials("payu", PAYU_CONFIG)

    out = payu.PayUGateway().transaction_status("payu-tx-1", creds, timeout=5)
    assert out.success is True
    assert out.transaction_id == "payu-tx-1"
    assert http.calls[0][1] == payu.REPORTS_SANDBOX_URL


def test_payu_parse_confirmation():
    notice = payu.PayUGateway().parse_webhook(
        {"state_pol": "6", "transaction_id": "payu-tx-3", "reference_sale": "INV-3", "response_message_pol": "INSUFFICIENT_FUNDS"}
    )
    assert notice.event_id == "payu-tx-3:6"
    assert notice.state == "declined"
    assert notice.reference == "INV-3"
    assert notice.error_message == "INSUFFICIENT_FUNDS"

    with pytest.raises(ValueError):
        payu.PayUGateway().parse_webhook({"state_pol": "4"})


# Wompi


def _wompi_event(status: str, secret: str | None = None) -> dict:
    payload = {
        "event": "transaction.updated",
        "data": {"transaction": {"id": "1234-1610641025-49201", "reference": "INV-1", "status": status, "amount_in_cents": 5000000}},
        "signature": {"properties": ["transaction.id", "transaction.status", "transaction.amount_in_cents"], "checksum": ""},
        "timestamp": 1530291411,
    }
    payload["signature"]["checksum"] = wompi.event_checksum(payload, secret or WOMPI_CONFIG["events_secret"])
    return payload


def test_wompi_event_checksum_matches_documented_concatenation():
    payload = _wompi_event("APPROVED")
    raw = "1234-1610641025-49201APPROVED50000001530291411" + WOMPI_CONFIG["events_secret"]
    assert payload["signature"]["checksum"] == hashlib.sha256(raw.encode("utf-8")).hexdigest()


def test_wompi_verify_webhook():
    creds = parse_gateway_credentials("wompi", WOMPI_CONFIG)
    gw = wompi.WompiGateway()
    payload = _wompi_event("APPROVED")
    assert gw.verify_webhook(payload, {}, b"", creds) is True

    tampered = _wompi_event("APPROVED")
    tampered["data"]["transaction"]["status"] = "DECLINED"
    assert gw.verify_webhook(tampered, {}, b"", creds) is False

    header_only = _wompi_event("APPROVED")
    checksum = header_only["signature"].pop("checksum")
    assert gw.verify_webhook(header_only, {"x-event-checksum": checksum.upper()}, b"", creds) is True

    no_secret = parse_gateway_credentials("wompi", {k: v for k, v in WOMPI_CONFIG.items() if k != "events_secret"})
    assert gw.verify_webhook(payload, {}, b"", no_secret) is False


def test_wompi_charge_sends_cents_and_numeric_source(monkeypatch):
    http = FakeHttp({"data": {"id": "1234-1610641025-49201", "status": "APPROVED"}})
    monkeypatch.setattr(wompi, "_http_json_post", http.post)
    creds = parse_gateway_credentials("wompi", WOMPI_CONFIG)

    out = wompi.WompiGateway().charge(
        "3891", 50000, "COP", reference="INV-1", description="Plan", payer=PAYER, credentials=creds, timeout=5
    )

    assert out.success is True
    assert out.transaction_id == "1234-1610641025-49201"
    _, url, payload, headers = http.calls[0]
    assert url == f"{wompi.SANDBOX_URL}/transactions"
    assert payload["amount_in_cents"] == 5000000
    assert payload["payment_source_id"] == 3891
    assert headers["Authorization"] == f"Bearer {WOMPI_CONFIG['private_key']}"


def test_wompi_charge_rejects_non_numeric_source_without_calling(monkeypatch):
    http = FakeHttp()
    monkeypatch.setattr(wompi, "_http_json_post", http.post)
    creds = parse_gateway_credentials("wompi", WOMPI_CONFIG)

    out = wompi.WompiGateway().charge(
        "tok_abc", 50000, "COP", reference="INV-1", description="Plan", payer=PAYER, credentials=creds, timeout=5
    )
    assert out.success is False
    assert out.error_message == "payment_source_id invalido"
    assert http.calls == []


def test_wompi_declined_and_pending_states(monkeypatch):
    http = FakeHttp(
        {"data": {"id": "tx-d", "status": "DECLINED", "status_message": "Tarjeta bloqueada"}},
        {"data": {"id": "tx-p", "status": "PENDING"}},
        {"error": {"type": "INPUT_VALIDATION_ERROR", "messages": {"reference": ["ya existe"]}}},
    )
    monkeypatch.setattr(wompi, "_http_json_post", http.post)
    creds = parse_gateway_credentials("wompi", WOMPI_CONFIG)
    gw = wompi.WompiGateway()

    declined = gw.charge("1", 100, "COP", reference="R1", description="d", payer=PAYER, credentials=creds, timeout=5)
    assert (declined.gateway_state, declined.error_message) == ("declined", "Tarjeta bloqueada")

    pending = gw.charge("1", 100, "COP", reference="R2", description="d", payer=PAYER, credentials=creds, timeout=5)
    assert pending.success is False
    assert pending.gateway_state == "pending"
    assert pending.error_message is None

    invalid = gw.charge("1", 100, "COP", reference="R3", description="d", payer=PAYER, credentials=creds, timeout=5)
    assert invalid.gateway_state == "error"
    assert invalid.error_message == "reference: ya existe"


def test_wompi_tokenize_creates_payment_source(monkeypatch):
    http = FakeHttp(
        {"status": "CREATED", "data": {"id": "tok_test_1", "brand": "VISA", "last_four": "4242"}},
        {"data": {"presigned_acceptance": {"acceptance_token": "acc-1"}}},
        {"data": {"id": 3891, "status": "AVAILABLE"}},
    )
    monkeypatch.setattr(wompi, "_http_json_post", http.post)
    monkeypatch.setattr(wompi, "_http_json_get", http.get)
    creds = parse_gateway_credentials("wompi", WOMPI_CONFIG)

    out = wompi.WompiGateway().tokenize(CARD, creds, payer=PAYER, timeout=5)

    assert out.success is True
    assert out.token == "3891"
    assert out.display_brand == "VISA"
    card_call, acceptance_call, source_call = http.calls
    assert card_call[2]["exp_year"] == "28"
    assert card_call[2]["exp_month"] == "08"
    assert acceptance_call[1].endswith(f"/merchants/{WOMPI_CONFIG['public_key']}")
    assert source_call[2]["acceptance_token"] == "acc-1"
    assert source_call[2]["customer_email"] == "ana@correo.co"


def test_wompi_parse_webhook():
    notice = wompi.WompiGateway().parse_webhook(_wompi_event("DECLINED"))
    assert notice.event_type == "transaction.updated"
    assert notice.state == "declined"
    assert notice.reference == "INV-1"
    assert notice.event_id == _wompi_event("DECLINED")["signature"]["checksum"]

    with pytest.raises(ValueError):
        wompi.WompiGateway().parse_webhook({"event": "transaction.updated", "data": {}})


# MercadoPago


def test_mercadopago_charges_are_not_wired():
    creds = parse_gateway_credentials("mercadopago", MERCADOPAGO_CONFIG)
    gw = mercadopago.MercadoPagoGateway()
    out = gw.charge("tok", 100, "COP", reference="R", description="d", payer=PAYER, credentials=creds, timeout=5)
    assert out.success is False
    assert out.error_message == mercadopago.NOT_IMPLEMENTED
    assert gw.tokenize(CARD, creds, payer=PAYER, timeout=5).error == mercadopago.NOT_IMPLEMENTED


def test_mercadopago_transaction_status(monkeypatch):
    http = FakeHttp({"id": 123456, "status": "rejected", "status_detail": "cc_rejected_insufficient_amount"})
    monkeypatch.setattr(mercadopago, "_http_json_get", http.get)
    creds = parse_gateway_credentials("mercadopago", MERCADOPAGO_CONFIG)

    out = mercadopago.MercadoPagoGateway().transaction_status("123456", creds, timeout=5)
    assert out.gateway_state == "declined"
    assert out.transaction_id == "123456"
    assert out.error_message == "cc_rejected_insufficient_amount"
    assert http.calls[0][1] == f"{mercadopago.API_URL}/v1/payments/123456"


def test_mercadopago_signature():
    creds = parse_gateway_credentials("mercadopago", MERCADOPAGO_CONFIG)
    payload = {"type": "payment", "action": "payment.updated", "data": {"id": "123456"}}
    manifest = "id:123456;request-id:req-77;ts:1704908010;"
    v1 = hmac.new(b"mp_webhook_secret", manifest.encode("utf-8"), hashlib.sha256).hexdigest()
    gw = mercadopago.MercadoPagoGateway()

    assert gw.verify_webhook(payload, {"x-signature": f"ts=1704908010,v1={v1}", "x-request-id": "req-77"}, b"", creds) is True
    assert gw.verify_webhook(payload, {"x-signature": f"ts=1704908011,v1={v1}", "x-request-id": "req-77"}, b"", creds) is False
    assert gw.verify_webhook(payload, {}, b"", creds) is False


def test_mercadopago_parse_webhook_needs_status_query():
    notice = mercadopago.MercadoPagoGateway().parse_webhook(
        {"id": 998877, "type": "payment", "action": "payment.updated", "data": {"id": "123456"}}
    )
    assert notice.event_id == "998877"
    assert notice.transaction_id == "123456"
    assert notice.state is None

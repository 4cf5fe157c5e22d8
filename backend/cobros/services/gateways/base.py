from __future__ import annotations

from dataclasses import dataclass, field
import http.client
import json
import logging
import socket
from typing import Protocol
from urllib import error as urlerror
from urllib import request as urlrequest

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CardData:
    number: str
    exp_month: int
    exp_year: int
    cvc: str | None
    holder_name: str
    document_number: str | None = None

    @property
    def digits(self) -> str:
        return "".join(ch for ch in self.number if ch.isdigit())

    @property
    def last_four(self) -> str:
        return self.digits[-4:]


@dataclass(frozen=True)
class Payer:
    customer_id: str
    email: str
    name: str
    phone: str | None = None
    document_number: str | None = None


@dataclass(frozen=True)
class TokenResult:
    success: bool
    token: str | None = None
    display_brand: str | None = None
    last_four: str | None = None
    exp_month: int | None = None
    exp_year: int | None = None
    error: str | None = None


@dataclass(frozen=True)
class ChargeOutcome:
    success: bool
    gateway_state: str
    transaction_id: str | None = None
    error_message: str | None = None
    raw_response: dict = field(default_factory=dict)


@dataclass(frozen=True)
class WebhookNotice:
    """Gateway notification reduced to what the billing engine needs."""

    event_id: str
    event_type: str
    reference: str | None = None
    transaction_id: str | None = None
    # None when the gateway only sends an id and the state has to be queried
    state: str | None = None
    error_message: str | None = None


class GatewayAdapter(Protocol):
    gateway_code: str

    def tokenize(self, card: CardData, credentials, *, payer: Payer, timeout: int) -> TokenResult:
        ...

    def charge(
        self,
        token: str,
        amount: int,
        currency: str,
        *,
        reference: str,
        description: str,
        payer: Payer,
        credentials,
        timeout: int,
    ) -> ChargeOutcome:
        ...

    def transaction_status(self, transaction_id: str, credentials, *, timeout: int) -> ChargeOutcome:
        ...

    def verify_webhook(self, payload: dict, headers, raw_body: bytes, credentials) -> bool:
        ...

    def parse_webhook(self, payload: dict) -> WebhookNotice:
        ...


class GatewayConnectionError(RuntimeError):
    pass


def _read_json(raw: str) -> dict:
    if not raw:
        return {}
    data = json.loads(raw)
    if not isinstance(data, dict):
        return {"data": data}
    return data


def _http_json(method: str, url: str, payload: dict | None, *, headers: dict[str, str] | None, timeout: int) -> dict:
    req_headers = {"Accept": "application/json"}
    body = None
    if payload is not None:
        req_headers["Content-Type"] = "application/json"
        body = json.dumps(payload).encode("utf-8")
    if headers:
        req_headers.update(headers)
    req = urlrequest.Request(url=url, method=method, data=body, headers=req_headers)
    try:
        with urlrequest.urlopen(req, timeout=timeout) as resp:
            raw = resp.read().decode("utf-8")
    except urlerror.HTTPError as exc:
        # Gateways report declines and validation problems as 4xx with a JSON body
        raw = exc.read().decode("utf-8", errors="replace")
        try:
            return _read_json(raw)
        except ValueError:
            raise GatewayConnectionError(f"HTTP {exc.code} del gateway") from exc
    except (urlerror.URLError, socket.timeout, TimeoutError, OSError) as exc:
        raise GatewayConnectionError(str(getattr(exc, "reason", exc)) or "timeout") from exc
    except (UnicodeDecodeError, http.client.HTTPException) as exc:
        raise GatewayConnectionError("Respuesta ilegible del gateway") from exc
    try:
        return _read_json(raw)
    except ValueError as exc:
        raise GatewayConnectionError("Respuesta invalida del gateway") from exc


def _http_json_post(url: str, payload: dict, *, headers: dict[str, str] | None = None, timeout: int = 30) -> dict:
    return _http_json("POST", url, payload, headers=headers, timeout=timeout)


def _http_json_get(url: str, *, headers: dict[str, str] | None = None, timeout: int = 30) -> dict:
    return _http_json("GET", url, None, headers=headers, timeout=timeout)


def connection_error_outcome(gateway_name: str, exc: Exception) -> ChargeOutcome:
    logger.warning("gateway %s unreachable: %s", gateway_name, exc)
    return ChargeOutcome(
        success=False,
        gateway_state="error",
        error_message=f"Error de conexion con {gateway_name}: {exc}",
    )


def nested_value(obj, path: str):
    current = obj
    for part in path.split("."):
        if isinstance(current, dict):
            current = current.get(part)
        elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return None
    return current

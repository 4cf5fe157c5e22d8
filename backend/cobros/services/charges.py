from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
import logging

from pydantic import ValidationError

from cobros.core.config import settings
from cobros.core.security import now_utc
from cobros.services.gateways.base import ChargeOutcome, Payer
from cobros.services.gateways.registry import get_gateway_adapter
from cobros.schemas.gateways import parse_gateway_credentials

logger = logging.getLogger(__name__)

PENDING_MESSAGE = "Transaccion pendiente de confirmacion"


@dataclass
class ChargeResult:
    success: bool
    gateway: str
    amount: int
    currency: str
    timestamp: datetime
    gateway_state: str
    transaction_id: str | None = None
    error: str | None = None
    raw_response: dict = field(default_factory=dict)

    def as_dict(self) -> dict:
        out = asdict(self)
        out["timestamp"] = self.timestamp.isoformat()
        out.pop("raw_response", None)
        return out


def _failure(gateway: str, amount: int, currency: str, error: str) -> ChargeResult:
    return ChargeResult(
        success=False,
        gateway=gateway,
        amount=amount,
        currency=currency,
        timestamp=now_utc(),
        gateway_state="error",
        error=error,
    )


def result_from_outcome(gateway: str, amount: int, currency: str, outcome: ChargeOutcome) -> ChargeResult:
    error = outcome.error_message
    if not outcome.success and not error:
        error = PENDING_MESSAGE if outcome.gateway_state == "pending" else "Cobro rechazado"
    return ChargeResult(
        success=outcome.success,
        gateway=gateway,
        amount=amount,
        currency=currency,
        timestamp=now_utc(),
        gateway_state=outcome.gateway_state,
        transaction_id=outcome.transaction_id,
        error=(None if outcome.success else error),
        raw_response=outcome.raw_response or {},
    )


def process_charge(
    gateway: str,
    token: str,
    amount: int,
    currency: str,
    config: dict | None,
    *,
    reference: str,
    description: str,
    payer: Payer,
    timeout: int | None = None,
) -> ChargeResult:
    """Route a charge to the merchant's gateway and normalize the answer.

    Never raises for gateway problems: unsupported gateways, broken stored
    credentials and transport errors all come back as a failed result.
    No persistence happens here.
    """
    code = (gateway or "").strip().lower()
    adapter = get_gateway_adapter(code)
    if adapter is None:
        return _failure(code or str(gateway), amount, currency, f"Gateway no soportado: {gateway}")

    try:
        credentials = parse_gateway_credentials(code, config)
    except ValidationError:
        logger.warning("invalid stored credentials for gateway=%s", code)
        return _failure(code, amount, currency, f"Configuracion de {code} incompleta")

    outcome = adapter.charge(
        token,
        amount,
        currency,
        reference=reference,
        description=description,
        payer=payer,
        credentials=credentials,
        timeout=int(timeout or settings.GATEWAY_TIMEOUT_SECONDS),
    )
    return result_from_outcome(code, amount, currency, outcome)

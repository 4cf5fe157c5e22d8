from __future__ import annotations

from cobros.services.gateways.base import GatewayAdapter
from cobros.services.gateways.mercadopago import MercadoPagoGateway
from cobros.services.gateways.payu import PayUGateway
from cobros.services.gateways.wompi import WompiGateway

SUPPORTED_GATEWAYS = ("payu", "wompi", "mercadopago")


def get_gateway_adapter(gateway: str) -> GatewayAdapter | None:
    code = (gateway or "").strip().lower()
    if code == "payu":
        return PayUGateway()
    if code == "wompi":
        return WompiGateway()
    if code == "mercadopago":
        return MercadoPagoGateway()
    return None

from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


GatewayCode = Literal["payu", "wompi", "mercadopago"]


class _Credentials(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    is_production: bool = Field(default=False, alias="isProduction")


class PayUCredentials(_Credentials):
    gateway: Literal["payu"] = "payu"
    api_key: str = Field(..., min_length=1, alias="apiKey")
    api_login: str = Field(..., min_length=1, alias="apiLogin")
    merchant_id: str = Field(..., min_length=1, alias="merchantId")
    account_id: str = Field(..., min_length=1, alias="accountId")


class WompiCredentials(_Credentials):
    gateway: Literal["wompi"] = "wompi"
    public_key: str = Field(..., min_length=1, alias="publicKey")
    private_key: str = Field(..., min_length=1, alias="privateKey")
    events_secret: str | None = Field(default=None, alias="eventsSecret")


class MercadoPagoCredentials(_Credentials):
    gateway: Literal["mercadopago"] = "mercadopago"
    access_token: str = Field(..., min_length=1, alias="accessToken")
    public_key: str | None = Field(default=None, alias="publicKey")
    webhook_secret: str | None = Field(default=None, alias="webhookSecret")


GatewayCredentials = Annotated[
    Union[PayUCredentials, WompiCredentials, MercadoPagoCredentials],
    Field(discriminator="gateway"),
]

_credentials_adapter = TypeAdapter(GatewayCredentials)

SECRET_FIELDS = {"api_key", "private_key", "events_secret", "access_token", "webhook_secret"}


def parse_gateway_credentials(gateway: str, config: dict | None):
    """Parse a stored gateway config blob for ``gateway``.

    Raises pydantic.ValidationError when required fields are missing.
    """
    data = dict(config or {})
    data["gateway"] = gateway
    return _credentials_adapter.validate_python(data)


def mask_credentials(credentials) -> dict:
    out = credentials.model_dump(by_alias=False)
    for key in SECRET_FIELDS:
        value = out.get(key)
        if value:
            out[key] = f"****{str(value)[-4:]}" if len(str(value)) > 8 else "****"
    return out


class GatewayConfigIn(BaseModel):
    credentials: GatewayCredentials
    platform_fee_percent: float | None = Field(default=None, ge=0, le=100)


class GatewayConfigOut(BaseModel):
    gateway: GatewayCode
    credentials: dict
    platform_fee_percent: float

import hashlib
import hmac
import secrets
from datetime import date, datetime, timedelta, timezone

from jose import jwt

from cobros.core.config import settings

ALGO = "HS256"

def now_utc() -> datetime:
    return datetime.now(timezone.utc)

def today_utc() -> date:
    return now_utc().date()

def create_merchant_token(merchant_id: str) -> str:
    exp = now_utc() + timedelta(days=settings.API_TOKEN_DAYS)
    payload = {"sub": merchant_id, "type": "merchant_api", "exp": exp}
    return jwt.encode(payload, settings.API_JWT_SECRET, algorithm=ALGO)

def decode_token(token: str) -> dict:
    return jwt.decode(token, settings.API_JWT_SECRET, algorithms=[ALGO])

def constant_time_equals(a: str | None, b: str | None) -> bool:
    if not a or not b:
        return False
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))

def md5_hex(raw: str) -> str:
    return hashlib.md5(raw.encode("utf-8")).hexdigest()

def sha256_hex(raw: str) -> str:
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()

def random_suffix(length: int = 6) -> str:
    alphabet = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
    return "".join(secrets.choice(alphabet) for _ in range(length))

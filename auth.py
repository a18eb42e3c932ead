import time
from typing import Optional

from itsdangerous import BadSignature, URLSafeSerializer

from config import get_settings
from services import Unauthorized

__all__ = ["Unauthorized", "generate_owner_token", "resolve_owner"]


def _serializer() -> URLSafeSerializer:
    settings = get_settings()
    return URLSafeSerializer(settings.auth_secret, salt="owner-token")


def generate_owner_token(user_id: int, max_age_hours: int = 24 * 30) -> str:
    timestamp = int(time.time())
    expiry = timestamp + (max_age_hours * 3600)
    token_data = {"u": user_id, "ts": timestamp, "exp": expiry}
    return _serializer().dumps(token_data)


def resolve_owner(token: Optional[str]) -> int:
    """Return the owner id carried by a signed token or raise ``Unauthorized``."""
    if not token:
        raise Unauthorized("Missing owner token")
    try:
        data = _serializer().loads(token)
    except BadSignature as exc:
        raise Unauthorized("Invalid owner token") from exc

    user_id = data.get("u") if isinstance(data, dict) else None
    if not isinstance(user_id, int) or user_id <= 0:
        raise Unauthorized("Invalid owner token")
    if int(time.time()) > data.get("exp", 0):
        raise Unauthorized("Owner token expired")
    return user_id

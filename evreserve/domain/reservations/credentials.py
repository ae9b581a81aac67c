"""Check-in credentials: the opaque code and the signed payload rendered as a QR code"""

import logging
import secrets
import string
from typing import Optional

from itsdangerous import BadSignature, URLSafeSerializer

from ... import config

logger = logging.getLogger(__name__)

CODE_ALPHABET = string.ascii_uppercase + string.digits
CODE_LENGTH = 12
PAYLOAD_SALT = "reservation-check-in"


def generate_verification_code(length: int = CODE_LENGTH) -> str:
    """Random code formatted as XXXX-XXXX-XXXX"""
    raw = "".join(secrets.choice(CODE_ALPHABET) for _ in range(length))
    return "-".join(raw[i : i + 4] for i in range(0, length, 4))


def _serializer(secret_key: Optional[str] = None) -> URLSafeSerializer:
    return URLSafeSerializer(secret_key or config.SECRET_KEY, salt=PAYLOAD_SALT)


def issue_payload(reservation_id: int, code: str, secret_key: Optional[str] = None) -> str:
    """Signed, URL-safe payload for the station scanner"""
    return _serializer(secret_key).dumps({"rid": reservation_id, "code": code})


def resolve_code(credential: str, secret_key: Optional[str] = None) -> str:
    """
    Accept either the bare verification code (typed at the station) or a scanned payload.
    Payloads with a bad signature are treated as bare codes and will not match anything.
    """
    credential = credential.strip()
    if "." not in credential:
        return credential.upper()
    try:
        data = _serializer(secret_key).loads(credential)
    except BadSignature:
        logger.warning("🚫 Check-in payload with invalid signature presented")
        return credential
    return str(data.get("code", "")).upper()

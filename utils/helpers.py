"""Helper utilities: identifiers, PIN hashing and time formatting"""

import hashlib
import hmac
import re
import secrets
import string
from datetime import datetime, timezone
from typing import Optional

ID_ALPHABET = string.ascii_uppercase + string.digits

REFERRAL_CODE_PREFIX = "FY'S-"
DEPOSIT_ID_PREFIX = "DEP-"
WITHDRAWAL_ID_PREFIX = "WD-"

PIN_HASH_ALGORITHM = "pbkdf2_sha256"
PIN_HASH_ITERATIONS = 100_000


def utc_now() -> datetime:
    """Naive UTC timestamp, matching the DateTime(timezone=False) columns"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def random_token(length: int) -> str:
    return "".join(secrets.choice(ID_ALPHABET) for _ in range(length))


def generate_referral_code() -> str:
    return f"{REFERRAL_CODE_PREFIX}{random_token(5)}"


def generate_deposit_id() -> str:
    return f"{DEPOSIT_ID_PREFIX}{random_token(8)}"


def generate_withdrawal_id() -> str:
    return f"{WITHDRAWAL_ID_PREFIX}{random_token(4)}"


def referral_start_payload(code: str) -> str:
    """Deep-link payload for a referral code (t.me start parameters allow [A-Za-z0-9_-] only)"""
    return "REF" + re.sub(r"[^A-Za-z0-9_-]", "", code)


def referral_code_from_payload(payload: str) -> Optional[str]:
    payload = (payload or "").strip()
    if not payload.upper().startswith("REF") or len(payload) <= 3:
        return None
    token = payload[3:].upper()
    compact_prefix = re.sub(r"[^A-Za-z0-9_-]", "", REFERRAL_CODE_PREFIX)
    if token.startswith(compact_prefix):
        return REFERRAL_CODE_PREFIX + token[len(compact_prefix):]
    return token


def hash_pin(pin: str, salt: str = None, iterations: int = PIN_HASH_ITERATIONS) -> str:
    """Hash a PIN as 'pbkdf2_sha256$<iterations>$<salt>$<hex digest>'"""
    salt = salt or secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac("sha256", pin.encode("utf-8"), salt.encode("utf-8"), iterations)
    return f"{PIN_HASH_ALGORITHM}${iterations}${salt}${digest.hex()}"


def verify_pin(pin: str, stored_hash: str) -> bool:
    """Constant-time comparison of a PIN against its stored hash"""
    if not pin or not stored_hash:
        return False
    try:
        algorithm, iterations, salt, _ = stored_hash.split("$", 3)
    except ValueError:
        return False
    if algorithm != PIN_HASH_ALGORITHM:
        return False
    candidate = hash_pin(pin, salt=salt, iterations=int(iterations))
    return hmac.compare_digest(candidate, stored_hash)


def format_timestamp(value: datetime) -> str:
    if value is None:
        return "-"
    return value.strftime("%Y-%m-%d %H:%M")

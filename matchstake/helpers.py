import hashlib
import json
import re
import time
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Optional

from matchstake.config import platform_username_field, settings
from matchstake.exceptions import InvalidArgument
from matchstake.logging_config import get_logger
from matchstake.models import models

logger = get_logger(__name__)

_PHONE_NOISE = re.compile(r"[\s\-()]")
TWO_PLACES = Decimal("0.01")


def hash_request(body: dict) -> str:
    return hashlib.sha256(json.dumps(body, sort_keys=True, default=str).encode()).hexdigest()


def utcnow() -> datetime:
    """Naive UTC timestamp, comparable with values read back from the store."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def normalize_phone(phone: Optional[str], country_code: Optional[str] = None) -> Optional[str]:
    """
    Normalize a mobile number to +<country><subscriber>.

    "0712 345 678", "254712345678" and "712345678" all become "+254712345678".
    Numbers that match none of the known shapes are returned cleaned but otherwise untouched.
    """
    if not phone:
        return None
    code = country_code or settings.phone_country_code
    cleaned = _PHONE_NOISE.sub("", str(phone))
    if cleaned.startswith(f"+{code}"):
        return cleaned
    if cleaned.startswith(code):
        return f"+{cleaned}"
    if cleaned.startswith("0"):
        return f"+{code}{cleaned[1:]}"
    if len(cleaned) == 9 and cleaned.isdigit():
        return f"+{code}{cleaned}"
    logger.warning("Could not normalize phone number phone=%s", phone)
    return cleaned


def parse_amount(value: Any, field: str = "amount") -> Decimal:
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise InvalidArgument(field, value) from exc
    if not amount.is_finite():
        raise InvalidArgument(field, value)
    if amount <= 0:
        raise InvalidArgument(field, value, f"{field} must be positive: {value!r}")
    return amount.quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def parse_id(value: Any, field: str) -> int:
    if isinstance(value, bool):
        raise InvalidArgument(field, value)
    try:
        parsed = int(str(value))
    except (TypeError, ValueError) as exc:
        raise InvalidArgument(field, value) from exc
    if parsed <= 0:
        raise InvalidArgument(field, value)
    return parsed


def whole_units(amount: Decimal) -> int:
    """Gateway amounts are integer currency units."""
    return int(amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def generate_request_id(prefix: str, challenge_id: int, user_id: int) -> str:
    # PREFIX_<challenge>_<user>_<micros>; the callback correlation patterns depend on this shape.
    return f"{prefix}_{challenge_id}_{user_id}_{time.time_ns() // 1000}"


def friendly_failure_message(status: Optional[str], message: Optional[str]) -> str:
    lower = (message or "").lower()
    if status == "5008" or "cancelled by user" in lower:
        return "Payment was cancelled. No worries, you can try again when you're ready!"
    if "insufficient" in lower:
        return "Insufficient funds in your account. Please check your balance and try again."
    if "timeout" in lower or "expired" in lower:
        return "Payment request timed out. Please try again."
    if "network" in lower or "connection" in lower:
        return "Network connection issue. Please check your internet and try again."
    if "invalid" in lower or "error" in lower:
        return "There was an issue processing your payment. Please try again or contact support."
    return "Payment could not be completed at this time. Please try again in a few minutes."


def serialize_payment(record: models.Payment) -> dict:
    return {
        "id": record.id,
        "userId": record.user_id,
        "challengeId": record.challenge_id,
        "phoneNumber": record.phone_number,
        "amount": str(record.amount) if record.amount is not None else None,
        "transactionType": record.transaction_type,
        "status": record.status,
        "requestId": record.request_id,
        "transactionId": record.transaction_id,
        "transactionReference": record.transaction_reference,
        "opponentId": record.opponent_id,
        "notes": record.notes,
        "createdAt": record.created_at.isoformat() if record.created_at else None,
    }


def platform_username(user: Optional[models.User], platform: Optional[str]) -> Optional[str]:
    """The account name a player uses on the given platform, falling back to their app username."""
    if user is None:
        return None
    field = platform_username_field.get(platform or "")
    if field and getattr(user, field):
        return getattr(user, field)
    return user.username

"""
Gateway callback reconciliation.

The gateway posts one callback per transaction, sometimes more than once and sometimes with
the request id buried in an error message. Every callback is answered with HTTP 200 unless
processing itself breaks, so the provider never retries a callback that can only fail again.
"""
import re
from typing import Any, Optional, Tuple

from sqlalchemy.orm import Session

from matchstake.config import ChallengePaymentStatus, ChallengeStatus, PaymentStatus, TransactionType
from matchstake.db import both_players_paid, transition_challenge
from matchstake.helpers import friendly_failure_message, platform_username, utcnow
from matchstake.logging_config import get_logger
from matchstake.models import models
from matchstake.notifications import NotificationHub, PlayerEvent

logger = get_logger(__name__)

PROCESSING = "processing"
FAILURE_CODES = {"5000", "5001", "5008"}
FAILURE_MESSAGE_WORDS = ("cancelled", "failed", "error", "insufficient")

_PREFIXED_ID = re.compile(r"^\d+\|(.+)$")
_ID_PATTERNS = (
    re.compile(r"\|([A-Z]+_\d+_\d+_\d+)\s*:", re.IGNORECASE),
    re.compile(r"([A-Z]+_\d+_\d+_\d+)", re.IGNORECASE),
)


def _text(payload: dict, *keys: str) -> str:
    for key in keys:
        value = payload.get(key)
        if value:
            return str(value)
    return ""


def extract_request_id(payload: dict) -> Optional[str]:
    """
    Find the request id a callback refers to.

    "1003|DEP_69_8_1760555690220" becomes "DEP_69_8_1760555690220"; when the id fields are
    missing the id is recovered from the message text.
    """
    request_id = _text(payload, "originatorRequestId", "requestId").strip()
    if request_id:
        prefixed = _PREFIXED_ID.match(request_id)
        return prefixed.group(1) if prefixed else request_id

    text = _text(payload, "message", "description", "responseMessage")
    for pattern in _ID_PATTERNS:
        found = pattern.search(text)
        if found:
            return found.group(1)
    return None


def map_status(payload: dict) -> str:
    """Map a gateway callback onto completed, failed, processing or pending."""
    if payload.get("transactionReference"):
        return PaymentStatus.COMPLETED.value

    status = _text(payload, "status")
    status_code = _text(payload, "statusCode")
    message = _text(payload, "message", "description").lower()
    lower = status.lower()

    if status in FAILURE_CODES or status_code in FAILURE_CODES:
        return PaymentStatus.FAILED.value
    if status_code == "0":
        return PaymentStatus.COMPLETED.value
    if "success" in lower or "complete" in lower:
        return PaymentStatus.COMPLETED.value
    if "fail" in lower or "error" in lower or any(word in message for word in FAILURE_MESSAGE_WORDS):
        return PaymentStatus.FAILED.value
    if "pend" in lower or "processing" in lower:
        return PROCESSING
    return PaymentStatus.PENDING.value


class CallbackReconciler:
    def __init__(self, notifier: NotificationHub):
        self.notifier = notifier

    async def handle(self, db: Session, payload: Any) -> Tuple[int, dict]:
        """Apply one callback; returns the HTTP status and body to answer the gateway with."""
        if not isinstance(payload, dict):
            logger.warning("Callback body is not a JSON object type=%s", type(payload).__name__)
            return 200, {"success": False, "message": "Callback body must be a JSON object"}

        request_id = extract_request_id(payload)
        if not request_id:
            logger.error("Callback without a recoverable request id payload=%s", payload)
            return 200, {"success": False, "message": "Missing originatorRequestId in callback"}

        mapped = map_status(payload)
        logger.info(
            "Callback received requestId=%s status=%s statusCode=%s mapped=%s transactionReference=%s",
            request_id,
            payload.get("status"),
            payload.get("statusCode"),
            mapped,
            payload.get("transactionReference"),
        )
        try:
            return await self._apply(db, request_id, mapped, payload)
        except Exception as exc:  # noqa: BLE001
            db.rollback()
            logger.exception("Callback processing failed requestId=%s", request_id)
            return 500, {"success": False, "message": "Failed to process callback", "error": str(exc)}

    async def _apply(self, db: Session, request_id: str, mapped: str, payload: dict) -> Tuple[int, dict]:
        values: dict = {models.Payment.callback_data: payload, models.Payment.updated_at: utcnow()}
        if mapped in (PaymentStatus.COMPLETED.value, PaymentStatus.FAILED.value):
            values[models.Payment.status] = mapped
            reference = payload.get("transactionReference")
            transaction_id = reference or payload.get("transactionId")
            if reference:
                values[models.Payment.transaction_reference] = str(reference)
            if transaction_id:
                values[models.Payment.transaction_id] = str(transaction_id)

        updated = (
            db.query(models.Payment)
            .filter(models.Payment.request_id == request_id)
            .filter(models.Payment.status == PaymentStatus.PENDING.value)
            .update(values, synchronize_session=False)
        )
        db.commit()
        if updated == 0:
            logger.warning("No pending payment for requestId=%s, callback ignored", request_id)
            return 200, {
                "success": True,
                "message": "Callback received but transaction not found (likely already processed)",
            }

        payment = db.query(models.Payment).filter(models.Payment.request_id == request_id).one()
        logger.info(
            "Payment updated requestId=%s type=%s status=%s userId=%s",
            request_id,
            payment.transaction_type,
            payment.status,
            payment.user_id,
        )
        if payment.transaction_type == TransactionType.DEPOSIT.value:
            if mapped == PaymentStatus.FAILED.value:
                await self._deposit_failed(payment, payload)
            elif mapped == PaymentStatus.COMPLETED.value:
                await self._deposit_completed(db, payment)
        return 200, {"success": True, "message": "Callback processed successfully"}

    async def _deposit_failed(self, payment: models.Payment, payload: dict) -> None:
        raw_message = _text(payload, "message", "description")
        await self.notifier.emit(
            payment.user_id,
            PlayerEvent.PAYMENT_FAILED,
            {
                "userId": payment.user_id,
                "challengeId": payment.challenge_id,
                "amount": str(payment.amount),
                "message": friendly_failure_message(_text(payload, "status", "statusCode"), raw_message),
                "rawMessage": raw_message,
            },
        )

    async def _deposit_completed(self, db: Session, payment: models.Payment) -> None:
        await self.notifier.emit(
            payment.user_id,
            PlayerEvent.PAYMENT_SUCCESS,
            {
                "userId": payment.user_id,
                "challengeId": payment.challenge_id,
                "amount": str(payment.amount),
                "message": "Payment successful!",
            },
        )
        if payment.challenge_id is None:
            return
        challenge = db.get(models.Challenge, payment.challenge_id)
        if challenge is None or not both_players_paid(db, challenge):
            return

        advanced = transition_challenge(
            db,
            payment.challenge_id,
            [ChallengeStatus.PENDING, ChallengeStatus.ACCEPTED],
            {
                models.Challenge.status: ChallengeStatus.DEPOSITS_COMPLETE.value,
                models.Challenge.payment_status: ChallengePaymentStatus.COMPLETED.value,
            },
        )
        db.commit()
        if not advanced:
            return

        db.refresh(challenge)
        logger.info("Both deposits complete for challengeId=%s", challenge.id)
        data = {
            "challengeId": challenge.id,
            "challengerId": challenge.challenger_id,
            "opponentId": challenge.opponent_id,
            "platform": challenge.platform,
            "betAmount": str(challenge.bet_amount) if challenge.bet_amount is not None else None,
            "timeControl": challenge.time_control,
            "challengerUsername": platform_username(db.get(models.User, challenge.challenger_id), challenge.platform),
            "opponentUsername": platform_username(db.get(models.User, challenge.opponent_id), challenge.platform),
            "message": "Both players have paid! Ready to start the match.",
        }
        for user_id in (challenge.challenger_id, challenge.opponent_id):
            await self.notifier.emit(user_id, PlayerEvent.BOTH_PAYMENTS_COMPLETED, data)

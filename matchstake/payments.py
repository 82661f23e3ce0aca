import json
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy.orm import Session

from matchstake.clients.payment_gateway import PaymentGatewayClient, transaction_id_from
from matchstake.config import PaymentStatus, TransactionType, settings
from matchstake.contracts.contracts import GatewayDepositRequest, GatewayWithdrawRequest
from matchstake.db import credit_balance, opponent_of
from matchstake.exceptions import InvalidArgument, ProviderError
from matchstake.helpers import generate_request_id, normalize_phone, parse_amount, parse_id, utcnow
from matchstake.logging_config import get_logger
from matchstake.models import models

logger = get_logger(__name__)


@dataclass
class PaymentResult:
    success: bool
    payment: Optional[models.Payment] = None
    provider_response: Optional[dict] = None
    error: Optional[str] = None
    credited_to_balance: bool = False


def _error_notes(exc: ProviderError) -> str:
    payload: Any = exc.payload if exc.payload is not None else str(exc)
    return json.dumps({"error": str(exc), "statusCode": exc.status_code, "payload": payload}, default=str)


class PaymentService:
    """
    Records money-movement intent and drives the gateway.

    A Payment row is always written before the provider is called so that a crash or a
    failed call still leaves a traceable record keyed by its request_id.
    """

    def __init__(self, gateway: PaymentGatewayClient, minimum_payout: Decimal | None = None):
        self.gateway = gateway
        self.minimum_payout = minimum_payout if minimum_payout is not None else settings.minimum_payout

    def uses_balance_credit(self, amount: Decimal) -> bool:
        return amount < self.minimum_payout

    async def initiate_deposit(
        self, db: Session, phone: Any, amount: Any, user_id: Any, challenge_id: Any
    ) -> PaymentResult:
        normalized_phone = normalize_phone(phone)
        if not normalized_phone:
            raise InvalidArgument("phoneNumber", phone)
        numeric_user_id = parse_id(user_id, "userId")
        numeric_challenge_id = parse_id(challenge_id, "challengeId")
        numeric_amount = parse_amount(amount)

        challenge = db.get(models.Challenge, numeric_challenge_id)
        if challenge is None:
            raise InvalidArgument("challengeId", challenge_id, f"Unknown challenge: {challenge_id}")
        if numeric_user_id not in (challenge.challenger_id, challenge.opponent_id):
            raise InvalidArgument(
                "userId", user_id, f"User {numeric_user_id} is not a player in challenge {numeric_challenge_id}"
            )
        stake = Decimal(str(challenge.bet_amount)) if challenge.bet_amount is not None else None
        if stake is None or numeric_amount != stake:
            raise InvalidArgument("amount", amount, f"Deposit must equal the stake of {stake} {settings.currency}")
        if challenge.challenger_id == numeric_user_id and not challenge.challenger_phone:
            challenge.challenger_phone = normalized_phone
        elif challenge.opponent_id == numeric_user_id and not challenge.opponent_phone:
            challenge.opponent_phone = normalized_phone

        request_id = generate_request_id("DEP", numeric_challenge_id, numeric_user_id)
        payment = models.Payment(
            user_id=numeric_user_id,
            challenge_id=numeric_challenge_id,
            phone_number=normalized_phone,
            amount=numeric_amount,
            transaction_type=TransactionType.DEPOSIT.value,
            status=PaymentStatus.PENDING.value,
            request_id=request_id,
            opponent_id=opponent_of(challenge, numeric_user_id),
        )
        db.add(payment)
        db.commit()
        db.refresh(payment)
        logger.info(
            "Deposit recorded requestId=%s userId=%s challengeId=%s amount=%s",
            request_id,
            numeric_user_id,
            numeric_challenge_id,
            numeric_amount,
        )

        gateway_request = GatewayDepositRequest.for_stake(request_id, normalized_phone, numeric_amount, numeric_challenge_id)
        try:
            response = await self.gateway.deposit(gateway_request)
        except ProviderError as exc:
            logger.error("Deposit provider call failed requestId=%s error=%s", request_id, exc)
            payment.status = PaymentStatus.FAILED.value
            payment.notes = _error_notes(exc)
            payment.updated_at = utcnow()
            db.commit()
            return PaymentResult(success=False, payment=payment, error=str(exc))

        transaction_id = transaction_id_from(response)
        if transaction_id:
            payment.transaction_id = transaction_id
            db.commit()
        logger.info("Deposit submitted requestId=%s transactionId=%s", request_id, transaction_id)
        return PaymentResult(success=True, payment=payment, provider_response=response)

    async def initiate_withdrawal(
        self,
        db: Session,
        phone: Any,
        amount: Any,
        user_id: Any,
        challenge_id: Any,
        is_refund: bool = False,
    ) -> PaymentResult:
        normalized_phone = normalize_phone(phone)
        if not normalized_phone:
            raise InvalidArgument("phoneNumber", phone)
        numeric_user_id = parse_id(user_id, "userId")
        numeric_challenge_id = parse_id(challenge_id, "challengeId")
        numeric_amount = parse_amount(amount)
        challenge = db.get(models.Challenge, numeric_challenge_id)
        if challenge is None:
            raise InvalidArgument("challengeId", challenge_id, f"Unknown challenge: {challenge_id}")
        opponent_id = opponent_of(challenge, numeric_user_id)
        purpose = "Refund" if is_refund else "Winnings"

        if self.uses_balance_credit(numeric_amount):
            return self._credit_balance(
                db, normalized_phone, numeric_amount, numeric_user_id, numeric_challenge_id, opponent_id, is_refund
            )

        request_id = generate_request_id("REF" if is_refund else "PAY", numeric_challenge_id, numeric_user_id)
        payment = models.Payment(
            user_id=numeric_user_id,
            challenge_id=numeric_challenge_id,
            phone_number=normalized_phone,
            amount=numeric_amount,
            transaction_type=(TransactionType.REFUND if is_refund else TransactionType.PAYOUT).value,
            status=PaymentStatus.PENDING.value,
            request_id=request_id,
            opponent_id=opponent_id,
            notes=f"{purpose} - withdrawn to mobile money ({numeric_amount} {settings.currency})",
        )
        db.add(payment)
        db.commit()
        db.refresh(payment)
        logger.info(
            "Withdrawal recorded requestId=%s type=%s userId=%s amount=%s",
            request_id,
            payment.transaction_type,
            numeric_user_id,
            numeric_amount,
        )

        gateway_request = GatewayWithdrawRequest.for_payout(
            request_id, normalized_phone, numeric_amount, numeric_challenge_id, is_refund
        )
        try:
            response = await self.gateway.withdraw(gateway_request)
        except ProviderError as exc:
            # The pending row stays as the durable record of intent for reconciliation.
            logger.error("Withdrawal provider call failed requestId=%s error=%s", request_id, exc)
            payment.notes = f"{payment.notes}; provider error: {_error_notes(exc)}"
            payment.updated_at = utcnow()
            db.commit()
            return PaymentResult(success=False, payment=payment, error=str(exc))

        transaction_id = transaction_id_from(response)
        if transaction_id:
            payment.transaction_id = transaction_id
            db.commit()
        return PaymentResult(success=True, payment=payment, provider_response=response)

    def _credit_balance(
        self,
        db: Session,
        phone: str,
        amount: Decimal,
        user_id: int,
        challenge_id: int,
        opponent_id: Optional[int],
        is_refund: bool,
    ) -> PaymentResult:
        purpose = "Refund" if is_refund else "Winnings"
        payment = models.Payment(
            user_id=user_id,
            challenge_id=challenge_id,
            phone_number=phone,
            amount=amount,
            transaction_type=(TransactionType.REFUND if is_refund else TransactionType.BALANCE_CREDIT).value,
            status=PaymentStatus.COMPLETED.value,
            request_id=generate_request_id("REF" if is_refund else "BAL", challenge_id, user_id),
            opponent_id=opponent_id,
            notes=f"{purpose} credited to balance (below {self.minimum_payout} {settings.currency} minimum)",
        )
        try:
            if credit_balance(db, user_id, amount) == 0:
                raise InvalidArgument("userId", user_id, f"Unknown user: {user_id}")
            db.add(payment)
            db.commit()
        except Exception:
            db.rollback()
            raise
        db.refresh(payment)
        logger.info(
            "Credited balance userId=%s amount=%s type=%s requestId=%s",
            user_id,
            amount,
            payment.transaction_type,
            payment.request_id,
        )
        return PaymentResult(success=True, payment=payment, credited_to_balance=True)

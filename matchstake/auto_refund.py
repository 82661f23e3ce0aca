from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy.orm import Session

from matchstake.config import ChallengeStatus, settings
from matchstake.db import claim_match, player_phones, transition_challenge
from matchstake.exceptions import InvariantViolation
from matchstake.logging_config import get_logger
from matchstake.models import models
from matchstake.notifications import NotificationHub, PlayerEvent
from matchstake.payments import PaymentResult, PaymentService
from matchstake.settlement import execute_transfers, refund_both, stake_of

logger = get_logger(__name__)

NO_RESULT_REFUNDED = "no_result_refunded"
NO_RESULT_NO_BET = "no_result_no_bet"


@dataclass
class RefundOutcome:
    refunded: bool
    result: Optional[str] = None
    payments: list[PaymentResult] = field(default_factory=list)
    error: Optional[str] = None


class AutoRefunder:
    """Returns each player's stake when no result could be found for a match."""

    def __init__(self, payment_service: PaymentService, notifier: NotificationHub):
        self.payment_service = payment_service
        self.notifier = notifier

    async def refund(self, db: Session, match: models.OngoingMatch, attempts: int) -> RefundOutcome:
        challenge = db.get(models.Challenge, match.challenge_id)
        stake = stake_of(challenge)
        reason = f"No game result found after {attempts} checks"

        if stake <= 0:
            claimed = claim_match(
                db,
                match.id,
                {
                    models.OngoingMatch.result: NO_RESULT_NO_BET,
                    models.OngoingMatch.notes: reason,
                    models.OngoingMatch.match_result: {"status": "no_result", "reason": reason},
                },
            )
            if claimed:
                logger.info("Match %s closed without result, no stake to refund", match.id)
            return RefundOutcome(refunded=False, result=NO_RESULT_NO_BET if claimed else None)

        try:
            transfers = refund_both(challenge, player_phones(db, challenge), stake)
        except InvariantViolation as exc:
            logger.error("Auto-refund blocked for match %s: %s", match.id, exc)
            return RefundOutcome(refunded=False, error=str(exc))

        refund_type = "balance" if self.payment_service.uses_balance_credit(stake) else "mobile_money"
        destination = "balance" if refund_type == "balance" else "mobile money"
        claimed = claim_match(
            db,
            match.id,
            {
                models.OngoingMatch.result: NO_RESULT_REFUNDED,
                models.OngoingMatch.notes: reason,
                models.OngoingMatch.match_result: {
                    "status": "no_result",
                    "refund_type": refund_type,
                    "amount_refunded": str(stake),
                    "reason": reason,
                    "note": f"{stake} {settings.currency} returned to each player's {destination}",
                },
            },
        )
        if not claimed:
            logger.info("Match %s already resolved, skipping auto-refund", match.id)
            return RefundOutcome(refunded=False, error="already resolved")

        logger.info(
            "Auto-refunding match %s challengeId=%s stake=%s refundType=%s",
            match.id,
            challenge.id,
            stake,
            refund_type,
        )
        payments = await execute_transfers(db, self.payment_service, challenge.id, transfers)
        transition_challenge(
            db,
            challenge.id,
            [ChallengeStatus.DEPOSITS_COMPLETE, ChallengeStatus.ACCEPTED, ChallengeStatus.PENDING],
            {models.Challenge.status: ChallengeStatus.COMPLETED.value},
        )
        db.commit()

        for user_id in (challenge.challenger_id, challenge.opponent_id):
            await self.notifier.emit(
                user_id,
                PlayerEvent.MATCH_REFUNDED,
                {
                    "matchId": match.id,
                    "challengeId": challenge.id,
                    "amount": str(stake),
                    "refundType": refund_type,
                    "reason": reason,
                },
            )
        return RefundOutcome(refunded=True, result=NO_RESULT_REFUNDED, payments=payments)

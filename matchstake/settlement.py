from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy.orm import Session

from matchstake.config import ChallengeStatus
from matchstake.db import claim_match, player_phones, transition_challenge
from matchstake.exceptions import InvalidArgument, InvariantViolation
from matchstake.logging_config import get_logger
from matchstake.models import models
from matchstake.notifications import NotificationHub, PlayerEvent
from matchstake.payments import PaymentResult, PaymentService
from matchstake.results import MatchOutcome, MatchResult

logger = get_logger(__name__)


class SettlementKind(str, Enum):
    PAY_WINNER = "pay_winner"
    REFUND_BOTH = "refund_both"
    NO_STAKE = "no_stake"


@dataclass
class Transfer:
    user_id: int
    phone: str
    amount: Decimal
    is_refund: bool


@dataclass
class SettlementDecision:
    kind: SettlementKind
    reason: str
    transfers: list[Transfer] = field(default_factory=list)
    winner_id: Optional[int] = None
    loser_id: Optional[int] = None
    needs_review: bool = False

    def total(self) -> Decimal:
        return sum((t.amount for t in self.transfers), Decimal("0"))


@dataclass
class SettlementOutcome:
    settled: bool
    decision: Optional[SettlementDecision] = None
    payments: list[PaymentResult] = field(default_factory=list)
    error: Optional[str] = None


def stake_of(challenge: Optional[models.Challenge]) -> Decimal:
    if challenge is None or challenge.bet_amount is None:
        return Decimal("0")
    return Decimal(str(challenge.bet_amount))


def refund_both(challenge: models.Challenge, phones: dict[int, Optional[str]], stake: Decimal) -> list[Transfer]:
    transfers = []
    for user_id in (challenge.challenger_id, challenge.opponent_id):
        phone = phones.get(user_id)
        if not phone:
            raise InvariantViolation(f"challenge {challenge.id} has no phone number for user {user_id}")
        transfers.append(Transfer(user_id=user_id, phone=phone, amount=stake, is_refund=True))
    return transfers


def decide_settlement(
    result: MatchResult,
    match: models.OngoingMatch,
    challenge: Optional[models.Challenge],
    phones: dict[int, Optional[str]],
) -> SettlementDecision:
    """
    Decide who gets paid what. No I/O happens here.

    The stake always comes from the Challenge. The winner is the user whose platform
    username matches the winning side; provider-supplied ids are never trusted.
    """
    if challenge is None:
        raise InvariantViolation(f"match {match.id} has no challenge")
    stake = stake_of(challenge)
    if stake <= 0:
        return SettlementDecision(SettlementKind.NO_STAKE, reason=result.reason)
    if challenge.status != ChallengeStatus.DEPOSITS_COMPLETE.value:
        raise InvariantViolation(
            f"challenge {challenge.id} is {challenge.status}, payouts need {ChallengeStatus.DEPOSITS_COMPLETE.value}"
        )

    if result.outcome == MatchOutcome.DRAW or result.needs_review:
        return SettlementDecision(
            SettlementKind.REFUND_BOTH,
            reason=result.reason,
            transfers=refund_both(challenge, phones, stake),
            needs_review=result.needs_review,
        )

    winner = (result.winner_username or "").lower()
    if winner == match.challenger_username.lower():
        winner_id, loser_id = challenge.challenger_id, challenge.opponent_id
    elif winner == match.opponent_username.lower():
        winner_id, loser_id = challenge.opponent_id, challenge.challenger_id
    else:
        logger.warning(
            "Winner %s matches neither player of match %s, refunding both", result.winner_username, match.id
        )
        return SettlementDecision(
            SettlementKind.REFUND_BOTH,
            reason=result.reason,
            transfers=refund_both(challenge, phones, stake),
            needs_review=True,
        )

    phone = phones.get(winner_id)
    if not phone:
        raise InvariantViolation(f"challenge {challenge.id} has no phone number for winner {winner_id}")
    return SettlementDecision(
        SettlementKind.PAY_WINNER,
        reason=result.reason,
        transfers=[Transfer(user_id=winner_id, phone=phone, amount=stake * 2, is_refund=False)],
        winner_id=winner_id,
        loser_id=loser_id,
    )


async def execute_transfers(
    db: Session, payment_service: PaymentService, challenge_id: int, transfers: list[Transfer]
) -> list[PaymentResult]:
    """Run each transfer; one failing transfer never stops the others."""
    results = []
    for transfer in transfers:
        try:
            result = await payment_service.initiate_withdrawal(
                db, transfer.phone, transfer.amount, transfer.user_id, challenge_id, is_refund=transfer.is_refund
            )
        except InvalidArgument as exc:
            logger.error(
                "Transfer rejected challengeId=%s userId=%s amount=%s error=%s",
                challenge_id,
                transfer.user_id,
                transfer.amount,
                exc,
            )
            result = PaymentResult(success=False, error=str(exc))
        results.append(result)
    return results


class SettlementService:
    def __init__(self, payment_service: PaymentService, notifier: NotificationHub):
        self.payment_service = payment_service
        self.notifier = notifier

    async def settle(self, db: Session, match: models.OngoingMatch, result: MatchResult) -> SettlementOutcome:
        challenge = db.get(models.Challenge, match.challenge_id)
        try:
            phones = player_phones(db, challenge) if challenge is not None else {}
            decision = decide_settlement(result, match, challenge, phones)
        except InvariantViolation as exc:
            logger.error("Settlement blocked for match %s: %s", match.id, exc)
            return SettlementOutcome(settled=False, error=str(exc))

        claimed = claim_match(
            db,
            match.id,
            {
                models.OngoingMatch.winner_id: decision.winner_id,
                models.OngoingMatch.result: result.reason,
                models.OngoingMatch.match_result: {
                    **result.to_dict(),
                    "settlement": decision.kind.value,
                    "amount": str(decision.total()),
                },
            },
        )
        if not claimed:
            logger.info("Match %s already settled, skipping", match.id)
            return SettlementOutcome(settled=False, decision=decision, error="already settled")

        logger.info(
            "Settling match %s kind=%s winner=%s total=%s",
            match.id,
            decision.kind.value,
            decision.winner_id,
            decision.total(),
        )
        payments = await execute_transfers(db, self.payment_service, challenge.id, decision.transfers)
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
                PlayerEvent.MATCH_SETTLED,
                {
                    "matchId": match.id,
                    "challengeId": challenge.id,
                    "settlement": decision.kind.value,
                    "winnerId": decision.winner_id,
                    "result": result.reason,
                    "gameUrl": result.game_url,
                },
            )
        return SettlementOutcome(settled=True, decision=decision, payments=payments)

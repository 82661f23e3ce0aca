import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy.orm import Session

from matchstake.config import ChallengePaymentStatus, ChallengeStatus, PaymentStatus, TransactionType, settings
from matchstake.db import cancel_pending_deposits, opponent_of, player_phones, transition_challenge
from matchstake.exceptions import InvariantViolation
from matchstake.helpers import utcnow
from matchstake.logging_config import get_logger
from matchstake.models import models
from matchstake.notifications import NotificationHub, PlayerEvent
from matchstake.payments import PaymentService
from matchstake.settlement import stake_of

logger = get_logger(__name__)


@dataclass
class SweepReport:
    checked: int = 0
    partial_refunds: list[int] = field(default_factory=list)
    expired: list[int] = field(default_factory=list)
    repaired: list[int] = field(default_factory=list)
    errors: list[int] = field(default_factory=list)


class PaymentTimeoutSweeper:
    """
    Periodically closes accepted challenges whose stakes never fully arrived.

    One paid deposit past the deadline is refunded and the challenge cancelled; no paid
    deposits cancels the challenge outright; two paid deposits only repair the flags.
    """

    def __init__(
        self,
        payment_service: PaymentService,
        notifier: NotificationHub,
        session_factory: Callable[[], Session],
        interval_seconds: Optional[float] = None,
        partial_timeout_seconds: Optional[float] = None,
        full_expiry_seconds: Optional[float] = None,
    ):
        self.payment_service = payment_service
        self.notifier = notifier
        self.session_factory = session_factory
        self.interval_seconds = interval_seconds if interval_seconds is not None else settings.payment_sweep_interval_seconds
        self.partial_timeout = timedelta(
            seconds=partial_timeout_seconds if partial_timeout_seconds is not None else settings.partial_payment_timeout_seconds
        )
        self.full_expiry = timedelta(
            seconds=full_expiry_seconds if full_expiry_seconds is not None else settings.full_expiry_timeout_seconds
        )
        self._task: Optional[asyncio.Task] = None

    async def sweep(self, db: Session, now: Optional[datetime] = None) -> SweepReport:
        now = now or utcnow()
        report = SweepReport()
        challenges = (
            db.query(models.Challenge)
            .filter(models.Challenge.status == ChallengeStatus.ACCEPTED.value)
            .filter(models.Challenge.bet_amount > 0)
            .filter(models.Challenge.payment_status != ChallengePaymentStatus.COMPLETED.value)
            .all()
        )
        for challenge in challenges:
            report.checked += 1
            try:
                await self._sweep_challenge(db, challenge, now, report)
            except Exception:  # noqa: BLE001
                db.rollback()
                report.errors.append(challenge.id)
                logger.exception("Payment timeout check failed for challengeId=%s", challenge.id)
        logger.info(
            "Payment sweep done checked=%s refunded=%s expired=%s repaired=%s errors=%s",
            report.checked,
            len(report.partial_refunds),
            len(report.expired),
            len(report.repaired),
            len(report.errors),
        )
        return report

    async def _sweep_challenge(
        self, db: Session, challenge: models.Challenge, now: datetime, report: SweepReport
    ) -> None:
        completed = (
            db.query(models.Payment)
            .filter(models.Payment.challenge_id == challenge.id)
            .filter(models.Payment.transaction_type == TransactionType.DEPOSIT.value)
            .filter(models.Payment.status == PaymentStatus.COMPLETED.value)
            .order_by(models.Payment.created_at.desc())
            .all()
        )
        payers = {p.user_id for p in completed} & {challenge.challenger_id, challenge.opponent_id}
        accepted_at = challenge.accepted_at or challenge.updated_at or challenge.created_at
        elapsed = now - accepted_at if accepted_at else timedelta(0)
        logger.debug(
            "Challenge %s has %s/2 paid players, %.0f minutes since acceptance",
            challenge.id,
            len(payers),
            elapsed.total_seconds() / 60,
        )

        if len(payers) == 1 and elapsed > self.partial_timeout:
            (paid_user_id,) = payers
            deposits = [p for p in completed if p.user_id == paid_user_id]
            if await self._refund_partial(db, challenge, deposits):
                report.partial_refunds.append(challenge.id)
        elif not payers and elapsed > self.full_expiry:
            if await self._expire(db, challenge):
                report.expired.append(challenge.id)
        elif len(payers) == 2:
            transition_challenge(
                db,
                challenge.id,
                [ChallengeStatus.ACCEPTED],
                {
                    models.Challenge.status: ChallengeStatus.DEPOSITS_COMPLETE.value,
                    models.Challenge.payment_status: ChallengePaymentStatus.COMPLETED.value,
                },
            )
            db.commit()
            report.repaired.append(challenge.id)
            logger.info("Challenge %s had both deposits, marked deposits_complete", challenge.id)

    def _cancel(self, db: Session, challenge: models.Challenge) -> bool:
        """Move the challenge to cancelled and drop its pending deposits; the caller commits."""
        cancelled = transition_challenge(
            db,
            challenge.id,
            [ChallengeStatus.ACCEPTED],
            {
                models.Challenge.status: ChallengeStatus.CANCELLED.value,
                models.Challenge.payment_status: ChallengePaymentStatus.FAILED.value,
            },
        )
        if cancelled:
            cancel_pending_deposits(db, challenge.id)
        return cancelled

    async def _refund_partial(self, db: Session, challenge: models.Challenge, deposits: list[models.Payment]) -> bool:
        paid_user_id = deposits[0].user_id
        phone = deposits[0].phone_number or player_phones(db, challenge).get(paid_user_id)
        if not phone:
            raise InvariantViolation(f"no phone number to refund user {paid_user_id} on challenge {challenge.id}")
        if not self._cancel(db, challenge):
            db.rollback()
            return False
        stake = stake_of(challenge)
        unpaid_user_id = opponent_of(challenge, paid_user_id)
        logger.warning(
            "Partial payment timeout challengeId=%s refunding userId=%s stake=%s deposits=%s",
            challenge.id,
            paid_user_id,
            stake,
            len(deposits),
        )
        # The first refund commits the cancellation with it; if it raises, the sweep rolls both back.
        for _ in deposits:
            result = await self.payment_service.initiate_withdrawal(
                db, phone, stake, paid_user_id, challenge.id, is_refund=True
            )
            if not result.success:
                logger.error("Timeout refund not confirmed challengeId=%s error=%s", challenge.id, result.error)
        db.commit()

        await self.notifier.emit(
            paid_user_id,
            PlayerEvent.CHALLENGE_EXPIRED,
            {
                "challengeId": challenge.id,
                "reason": "opponent_no_payment",
                "refunded": True,
                "message": "Opponent didn't complete payment. Your deposit has been refunded.",
            },
        )
        if unpaid_user_id is not None:
            await self.notifier.emit(
                unpaid_user_id,
                PlayerEvent.CHALLENGE_EXPIRED,
                {
                    "challengeId": challenge.id,
                    "reason": "payment_timeout",
                    "refunded": False,
                    "message": "Challenge expired - payment deadline passed.",
                },
            )
        return True

    async def _expire(self, db: Session, challenge: models.Challenge) -> bool:
        cancelled = self._cancel(db, challenge)
        db.commit()
        if not cancelled:
            return False
        logger.warning("Challenge %s expired with no deposits", challenge.id)
        for user_id in (challenge.challenger_id, challenge.opponent_id):
            await self.notifier.emit(
                user_id,
                PlayerEvent.CHALLENGE_EXPIRED,
                {
                    "challengeId": challenge.id,
                    "reason": "full_expiry",
                    "refunded": False,
                    "message": "Challenge expired - neither player completed payment.",
                },
            )
        return True

    async def run_forever(self) -> None:
        logger.info("Payment timeout sweeper running every %.0fs", self.interval_seconds)
        while True:
            db = self.session_factory()
            try:
                await self.sweep(db)
            except Exception:  # noqa: BLE001
                logger.exception("Payment sweep failed")
            finally:
                db.close()
            await asyncio.sleep(self.interval_seconds)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self.run_forever())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

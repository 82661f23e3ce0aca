from decimal import Decimal
from typing import Optional

from fastapi import HTTPException
from sqlalchemy.orm import Session

from matchstake.config import ChallengeStatus, PaymentStatus, TransactionType
from matchstake.helpers import utcnow
from matchstake.models import models


def get_or_create_idempotency(db: Session, key: str, body_hash: str):
    existing = db.query(models.IdempotencyKey).filter_by(key=key).first()
    if existing:
        if existing.request_hash != body_hash:
            raise HTTPException(status_code=409, detail="idempotency conflict")
        return existing.response_body
    return None


def store_idempotency(db: Session, key: str, body_hash: str, response_body: dict):
    record = models.IdempotencyKey(key=key, request_hash=body_hash, response_body=response_body)
    db.add(record)
    db.commit()
    return response_body


def credit_balance(db: Session, user_id: int, amount: Decimal) -> int:
    """Increment a user's balance in SQL so concurrent credits cannot overwrite each other."""
    return (
        db.query(models.User)
        .filter(models.User.id == user_id)
        .update({models.User.balance: models.User.balance + amount}, synchronize_session=False)
    )


def opponent_of(challenge: Optional[models.Challenge], user_id: int) -> Optional[int]:
    if challenge is None:
        return None
    if challenge.challenger_id == user_id:
        return challenge.opponent_id
    if challenge.opponent_id == user_id:
        return challenge.challenger_id
    return None


def player_phones(db: Session, challenge: models.Challenge) -> dict[int, Optional[str]]:
    """Phone per player, preferring the number used for the stake deposit over the profile number."""
    phones: dict[int, Optional[str]] = {}
    for user_id, phone in (
        (challenge.challenger_id, challenge.challenger_phone),
        (challenge.opponent_id, challenge.opponent_phone),
    ):
        if not phone:
            user = db.get(models.User, user_id)
            phone = user.phone if user else None
        phones[user_id] = phone
    return phones


def paid_players(db: Session, challenge_id: int) -> set[int]:
    rows = (
        db.query(models.Payment.user_id)
        .filter(models.Payment.challenge_id == challenge_id)
        .filter(models.Payment.transaction_type == TransactionType.DEPOSIT.value)
        .filter(models.Payment.status == PaymentStatus.COMPLETED.value)
        .distinct()
        .all()
    )
    return {user_id for (user_id,) in rows}


def both_players_paid(db: Session, challenge: models.Challenge) -> bool:
    """True only when the challenger and the opponent each have a completed deposit."""
    paid = paid_players(db, challenge.id)
    return challenge.challenger_id in paid and challenge.opponent_id in paid


def cancel_pending_deposits(db: Session, challenge_id: int) -> int:
    return (
        db.query(models.Payment)
        .filter(models.Payment.challenge_id == challenge_id)
        .filter(models.Payment.transaction_type == TransactionType.DEPOSIT.value)
        .filter(models.Payment.status == PaymentStatus.PENDING.value)
        .update(
            {models.Payment.status: PaymentStatus.CANCELLED.value, models.Payment.updated_at: utcnow()},
            synchronize_session=False,
        )
    )


def transition_challenge(
    db: Session,
    challenge_id: int,
    from_statuses: list[ChallengeStatus],
    values: dict,
) -> bool:
    """Conditionally move a challenge; False when another path already moved it."""
    values = {**values, models.Challenge.updated_at: utcnow()}
    updated = (
        db.query(models.Challenge)
        .filter(models.Challenge.id == challenge_id)
        .filter(models.Challenge.status.in_([s.value for s in from_statuses]))
        .update(values, synchronize_session=False)
    )
    return updated > 0


def claim_match(db: Session, match_id: int, values: dict) -> bool:
    """
    Flip result_checked false -> true together with the result fields.

    Exactly one caller wins the claim; every later poll, refund or manual path gets False.
    """
    values = {**values, models.OngoingMatch.result_checked: True, models.OngoingMatch.completed_at: utcnow()}
    updated = (
        db.query(models.OngoingMatch)
        .filter(models.OngoingMatch.id == match_id)
        .filter(models.OngoingMatch.result_checked.is_(False))
        .update(values, synchronize_session=False)
    )
    db.commit()
    return updated > 0

import asyncio
from decimal import Decimal

import pytest

from conftest import balance_of, events, make_challenge, make_match
from matchstake.auto_refund import AutoRefunder
from matchstake.exceptions import InvariantViolation
from matchstake.models import models
from matchstake.results import MatchOutcome, MatchResult
from matchstake.settlement import SettlementKind, SettlementService, decide_settlement

PHONES = {1: "+254711111111", 2: "+254722222222"}


def challenger_wins(winner="AliceChess", needs_review=False):
    return MatchResult(MatchOutcome.CHALLENGER_WINS, "resigned", winner_username=winner, needs_review=needs_review)


def draw(needs_review=False):
    return MatchResult(MatchOutcome.DRAW, "agreed", needs_review=needs_review)


def plain_challenge(stake="50", status="deposits_complete"):
    return models.Challenge(
        id=7, challenger_id=1, opponent_id=2, bet_amount=Decimal(stake) if stake else None, status=status
    )


def plain_match():
    return models.OngoingMatch(id=3, challenge_id=7, challenger_username="AliceChess", opponent_username="BobChess")


def test_decisive_result_pays_double_stake_to_winner():
    decision = decide_settlement(challenger_wins("alicechess"), plain_match(), plain_challenge(), PHONES)
    assert decision.kind == SettlementKind.PAY_WINNER
    assert decision.winner_id == 1 and decision.loser_id == 2
    (transfer,) = decision.transfers
    assert transfer.user_id == 1
    assert transfer.amount == Decimal("100")
    assert not transfer.is_refund


def test_draw_refunds_each_player_their_stake():
    decision = decide_settlement(draw(), plain_match(), plain_challenge(), PHONES)
    assert decision.kind == SettlementKind.REFUND_BOTH
    assert [(t.user_id, t.amount, t.is_refund) for t in decision.transfers] == [
        (1, Decimal("50"), True),
        (2, Decimal("50"), True),
    ]
    assert decision.total() == Decimal("100")


def test_review_flag_and_unknown_winner_refund_both():
    flagged = decide_settlement(challenger_wins(needs_review=True), plain_match(), plain_challenge(), PHONES)
    stranger = decide_settlement(challenger_wins("Mallory"), plain_match(), plain_challenge(), PHONES)
    assert flagged.kind == stranger.kind == SettlementKind.REFUND_BOTH
    assert stranger.needs_review


def test_no_stake_moves_no_money():
    decision = decide_settlement(challenger_wins(), plain_match(), plain_challenge(stake=None), PHONES)
    assert decision.kind == SettlementKind.NO_STAKE
    assert decision.transfers == []


@pytest.mark.parametrize("status", ["accepted", "pending", "completed", "cancelled"])
def test_payout_requires_both_deposits(status):
    with pytest.raises(InvariantViolation):
        decide_settlement(challenger_wins(), plain_match(), plain_challenge(status=status), PHONES)


def test_missing_winner_phone_is_rejected():
    with pytest.raises(InvariantViolation):
        decide_settlement(challenger_wins(), plain_match(), plain_challenge(), {1: None, 2: "+254722222222"})


def test_settlement_pays_winner_once(db, payment_service, fake_gateway, notifier):
    challenge = make_challenge(db, stake="50")
    match = make_match(db, challenge)
    service = SettlementService(payment_service, notifier)

    outcome = asyncio.run(service.settle(db, match, challenger_wins()))

    assert outcome.settled
    (payload,) = fake_gateway.transfers()
    assert payload["amount"] == 100
    assert payload["destinationAccount"] == "+254711111111"
    db.expire_all()
    stored = db.get(models.OngoingMatch, match.id)
    assert stored.result_checked
    assert stored.winner_id == challenge.challenger_id
    assert stored.result == "resigned"
    assert stored.match_result["settlement"] == "pay_winner"
    assert db.get(models.Challenge, challenge.id).status == "completed"
    payout = db.query(models.Payment).filter_by(transaction_type="payout").one()
    assert payout.amount == Decimal("100.00")
    assert payout.user_id == challenge.challenger_id
    assert len(events(notifier, "match-settled")) == 2

    again = asyncio.run(service.settle(db, stored, challenger_wins()))
    assert not again.settled
    assert len(fake_gateway.transfers()) == 1
    assert db.query(models.Payment).filter_by(transaction_type="payout").count() == 1


def test_small_stake_draw_credits_both_balances(db, payment_service, fake_gateway, notifier):
    challenge = make_challenge(db, stake="5")
    match = make_match(db, challenge)

    outcome = asyncio.run(SettlementService(payment_service, notifier).settle(db, match, draw()))

    assert outcome.settled
    assert all(p.credited_to_balance for p in outcome.payments)
    assert fake_gateway.calls == []
    assert balance_of(db, challenge.challenger_id) == Decimal("5.00")
    assert balance_of(db, challenge.opponent_id) == Decimal("5.00")


def test_blocked_settlement_leaves_match_open(db, payment_service, fake_gateway, notifier):
    challenge = make_challenge(db, stake="50", status="accepted")
    match = make_match(db, challenge)

    outcome = asyncio.run(SettlementService(payment_service, notifier).settle(db, match, challenger_wins()))

    assert not outcome.settled
    assert fake_gateway.calls == []
    db.expire_all()
    assert not db.get(models.OngoingMatch, match.id).result_checked


def test_auto_refund_returns_small_stakes_to_balance(db, payment_service, fake_gateway, notifier):
    challenge = make_challenge(db, stake="5")
    match = make_match(db, challenge)

    outcome = asyncio.run(AutoRefunder(payment_service, notifier).refund(db, match, attempts=4))

    assert outcome.refunded
    assert fake_gateway.calls == []
    assert balance_of(db, challenge.challenger_id) == Decimal("5.00")
    assert balance_of(db, challenge.opponent_id) == Decimal("5.00")
    stored = db.get(models.OngoingMatch, match.id)
    assert stored.result == "no_result_refunded"
    assert stored.match_result["refund_type"] == "balance"
    assert stored.match_result["amount_refunded"] == "5.00"
    assert db.get(models.Challenge, challenge.id).status == "completed"
    assert len(events(notifier, "matchRefunded")) == 2


def test_auto_refund_sends_larger_stakes_to_mobile_money(db, payment_service, fake_gateway, notifier):
    challenge = make_challenge(db, stake="10")
    match = make_match(db, challenge)

    asyncio.run(AutoRefunder(payment_service, notifier).refund(db, match, attempts=4))

    assert [p["amount"] for p in fake_gateway.transfers()] == [10, 10]
    assert db.query(models.Payment).filter_by(transaction_type="refund", status="pending").count() == 2


def test_auto_refund_without_stake_only_closes_match(db, payment_service, fake_gateway, notifier):
    challenge = make_challenge(db, stake="0")
    match = make_match(db, challenge)

    outcome = asyncio.run(AutoRefunder(payment_service, notifier).refund(db, match, attempts=4))

    assert not outcome.refunded
    assert outcome.result == "no_result_no_bet"
    assert db.query(models.Payment).count() == 0
    db.expire_all()
    assert db.get(models.OngoingMatch, match.id).result_checked


def test_auto_refund_after_settlement_is_a_no_op(db, payment_service, fake_gateway, notifier):
    challenge = make_challenge(db, stake="50")
    match = make_match(db, challenge)
    asyncio.run(SettlementService(payment_service, notifier).settle(db, match, challenger_wins()))

    outcome = asyncio.run(AutoRefunder(payment_service, notifier).refund(db, match, attempts=4))

    assert not outcome.refunded
    assert len(fake_gateway.transfers()) == 1

import csv
from datetime import timedelta
from io import StringIO

from conftest import make_challenge, make_payment
from matchstake.commands.reconcile import reconcile
from matchstake.helpers import utcnow
from matchstake.reconciliation import CSV_COLUMNS, generate_stale_payments_csv


def seed(db):
    challenge = make_challenge(db)
    old = utcnow() - timedelta(minutes=90)
    make_payment(
        db,
        challenge,
        challenge.challenger_id,
        transaction_type="payout",
        request_id="PAY_1_1_1",
        amount="100",
        created_at=old,
        notes="Winnings - withdrawn to mobile money",
    )
    make_payment(db, challenge, challenge.opponent_id, status="completed", request_id="DEP_1_2_1", created_at=old)
    make_payment(db, challenge, challenge.opponent_id, request_id="DEP_1_2_2")
    return challenge


def test_stale_pending_payments_are_reported(db):
    challenge = seed(db)

    csv_text, count = generate_stale_payments_csv(db, older_than_minutes=30)

    rows = list(csv.reader(StringIO(csv_text)))
    assert rows[0] == CSV_COLUMNS
    assert count == 1
    request_id, transaction_type, user_id, challenge_id, amount, status, age, notes = rows[1]
    assert (request_id, transaction_type, status) == ("PAY_1_1_1", "payout", "pending")
    assert int(user_id) == challenge.challenger_id
    assert int(challenge_id) == challenge.id
    assert amount == "100.00"
    assert 89 <= int(age) <= 91
    assert notes == "Winnings - withdrawn to mobile money"


def test_nothing_stale_gives_header_only(db):
    make_challenge(db)
    csv_text, count = generate_stale_payments_csv(db, older_than_minutes=30)
    assert count == 0
    assert csv_text.strip() == ",".join(CSV_COLUMNS)


def test_reconcile_command_writes_file_and_signals_findings(db, tmp_path):
    seed(db)
    output = tmp_path / "stale.csv"

    assert reconcile(str(output), older_than_minutes=30) == 1
    assert "PAY_1_1_1" in output.read_text()
    assert reconcile(str(output), older_than_minutes=600) == 0

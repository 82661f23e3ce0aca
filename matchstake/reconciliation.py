import csv
from datetime import datetime, timedelta
from io import StringIO
from typing import List, Optional, Tuple

from sqlalchemy.orm import Session

from matchstake.config import PaymentStatus, settings
from matchstake.helpers import as_naive_utc, utcnow
from matchstake.logging_config import get_logger
from matchstake.models import models

logger = get_logger(__name__)

CSV_COLUMNS = ["requestId", "transactionType", "userId", "challengeId", "amount", "status", "ageMinutes", "notes"]


def generate_stale_payments_csv(
    db: Session, older_than_minutes: Optional[int] = None, now: Optional[datetime] = None
) -> Tuple[str, int]:
    """
    List payments still pending after the threshold and return CSV text plus the row count.

    A pending payout or refund here means money left (or should have left) without a callback
    confirming it; these rows are the ones an operator reconciles against the gateway.
    """
    minutes = older_than_minutes if older_than_minutes is not None else settings.stale_payment_minutes
    now = now or utcnow()
    cutoff = now - timedelta(minutes=minutes)
    stale = (
        db.query(models.Payment)
        .filter(models.Payment.status == PaymentStatus.PENDING.value)
        .filter(models.Payment.created_at < cutoff)
        .order_by(models.Payment.created_at.asc())
        .all()
    )

    rows: List[tuple] = []
    for payment in stale:
        age = now - as_naive_utc(payment.created_at)
        rows.append((
            payment.request_id,
            payment.transaction_type,
            payment.user_id,
            payment.challenge_id,
            str(payment.amount),
            payment.status,
            int(age.total_seconds() // 60),
            payment.notes or "",
        ))

    logger.info("Reconciliation found %s payments pending for more than %s minutes", len(rows), minutes)
    output = StringIO()
    writer = csv.writer(output)
    writer.writerow(CSV_COLUMNS)
    for row in rows:
        writer.writerow(row)
    return output.getvalue(), len(rows)

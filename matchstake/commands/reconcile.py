import argparse
from pathlib import Path

from matchstake.database import SessionLocal
from matchstake.reconciliation import generate_stale_payments_csv


def reconcile(output_path: str = "reconciliation.csv", older_than_minutes: int | None = None) -> int:
    db = SessionLocal()
    try:
        csv_text, count = generate_stale_payments_csv(db, older_than_minutes)
    finally:
        db.close()
    Path(output_path).write_text(csv_text, newline="")
    print(f"{count} stale pending payments written to {output_path}")
    return 1 if count else 0


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Export payments stuck in pending to CSV.")
    parser.add_argument("--output", default="reconciliation.csv")
    parser.add_argument("--older-than-minutes", type=int, default=None)
    args = parser.parse_args()
    raise SystemExit(reconcile(args.output, args.older_than_minutes))

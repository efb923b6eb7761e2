"""Put failed, unhandled or stuck outbox events back to `pending`.

The saga resumes from the persisted intent. A requeued event for a confirmed
story re-applies the stored receipt to the story and ledger. One for a failed
intent fails again; re-admitting through `POST /mints` is the way to retry a
reverted mint.
"""

import argparse

from sqlalchemy import func, select

from storymint.common.db import SessionLocal
from storymint.common.outbox import requeue_events
from storymint.services.minting.models import OutboxEvent


def main() -> None:
    """CLI entrypoint for operator replays."""

    parser = argparse.ArgumentParser(description="Requeue outbox events by status.")
    parser.add_argument(
        "--status",
        action="append",
        choices=["failed", "unhandled", "processing"],
        help="Status to requeue (repeatable, default: failed)",
    )
    parser.add_argument("--keep-attempts", action="store_true", help="Do not reset attempt counters")
    parser.add_argument("--dry-run", action="store_true")
    args = parser.parse_args()
    statuses = tuple(args.status or ["failed"])

    with SessionLocal() as db:
        count = db.execute(
            select(func.count()).select_from(OutboxEvent).where(OutboxEvent.status.in_(statuses))
        ).scalar_one()
        print(f"Matched {count} event(s) with status in {list(statuses)}")
        if args.dry_run:
            print("Dry run only; nothing requeued.")
            return
        requeued = requeue_events(db, OutboxEvent, statuses, reset_attempts=not args.keep_attempts)
        db.commit()
        print(f"Requeued {requeued} event(s)")


if __name__ == "__main__":
    main()

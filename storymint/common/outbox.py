"""Reusable helpers for the polled transactional outbox.

These utilities are model-agnostic: they work against any table with the
`outbox_events` column layout. Every write after the claim is guarded by
`status == 'processing'` and, when the caller passes it, the claim's
`processed_at`. A worker whose claim was reclaimed after the lease expired
gets `False` / `CLAIM_LOST` back and must not act on the outcome.
"""

from datetime import timedelta

from sqlalchemy import func, or_, select, update

from storymint.common.db import as_utc, utcnow
from storymint.common.metrics import outbox_oldest_pending_age_seconds, outbox_pending_total


ERROR_MAX_LENGTH = 500
OPEN_STATUSES = ("pending", "processing")
CLAIM_LOST = "lost"


def truncate_error(message: str) -> str:
    return message[:ERROR_MAX_LENGTH]


def enqueue_event(db, outbox_model, event_type: str, aggregate_id: str, payload: dict):
    """Stage one `pending` outbox row in the caller's transaction."""

    event = outbox_model(
        event_type=event_type,
        aggregate_id=aggregate_id,
        payload=payload,
        status="pending",
        attempts=0,
        pending_attempts=0,
        created_at=utcnow(),
    )
    db.add(event)
    return event


def claim_next(db, outbox_model, processing_timeout_seconds: int = 600) -> dict | None:
    """Atomically move the oldest claimable row to `processing`.

    Claimable rows are `pending` ones and `processing` ones whose claim is
    older than `processing_timeout_seconds` (left behind by a crashed worker).
    The outer WHERE repeats the claimable predicate, so two racing claimers
    cannot both win the same row even on stores without row locks.
    """

    table = outbox_model.__table__
    now = utcnow()
    stale_before = now - timedelta(seconds=processing_timeout_seconds)
    claimable = or_(
        table.c.status == "pending",
        (table.c.status == "processing") & (table.c.processed_at.is_not(None)) & (table.c.processed_at < stale_before),
    )
    candidate = (
        select(table.c.id)
        .where(claimable)
        .order_by(table.c.created_at, table.c.id)
        .limit(1)
        .with_for_update(skip_locked=True)
        .scalar_subquery()
    )
    row = db.execute(
        update(table)
        .where(table.c.id == candidate, claimable)
        .values(
            status="processing",
            processed_at=now,
            first_processed_at=func.coalesce(table.c.first_processed_at, now),
        )
        .returning(
            table.c.id,
            table.c.event_type,
            table.c.aggregate_id,
            table.c.payload,
            table.c.attempts,
            table.c.pending_attempts,
            table.c.created_at,
            table.c.processed_at,
            table.c.first_processed_at,
        )
    ).first()
    if row is None:
        return None
    return {
        "id": row.id,
        "event_type": row.event_type,
        "aggregate_id": row.aggregate_id,
        "payload": row.payload,
        "attempts": row.attempts or 0,
        "pending_attempts": row.pending_attempts or 0,
        "created_at": row.created_at,
        "processed_at": row.processed_at,
        "first_processed_at": row.first_processed_at,
    }


def _claim_held(table, event_id: str, claimed_at=None) -> list:
    conditions = [table.c.id == event_id, table.c.status == "processing"]
    if claimed_at is not None:
        conditions.append(table.c.processed_at == claimed_at)
    return conditions


def _finish(db, outbox_model, event_id: str, status: str, last_error: str | None = None, claimed_at=None) -> bool:
    table = outbox_model.__table__
    values = {"status": status, "completed_at": utcnow()}
    if last_error is not None:
        values["last_error"] = truncate_error(last_error)
    result = db.execute(
        update(table).where(*_claim_held(table, event_id, claimed_at)).values(**values)
    )
    return result.rowcount == 1


def mark_completed(db, outbox_model, event_id: str, claimed_at=None) -> bool:
    """Mark one claimed row as successfully handled."""

    return _finish(db, outbox_model, event_id, "completed", claimed_at=claimed_at)


def mark_failed(db, outbox_model, event_id: str, error: str, claimed_at=None) -> bool:
    """Mark one claimed row as permanently failed."""

    return _finish(db, outbox_model, event_id, "failed", error, claimed_at)


def mark_unhandled(db, outbox_model, event_id: str, reason: str, claimed_at=None) -> bool:
    """Park a row nobody knows how to handle, keeping it visible for audit."""

    return _finish(db, outbox_model, event_id, "unhandled", reason, claimed_at)


def mark_retry(
    db,
    outbox_model,
    event: dict,
    error: str,
    is_soft_error: bool,
    *,
    max_attempts: int,
    max_pending_attempts: int,
    max_pending_age_seconds: int,
) -> str:
    """Record one failed processing attempt and return the row's new status.

    Hard errors spend `attempts` and fail the row once `max_attempts` is
    reached. Soft errors spend `pending_attempts` and fail the row once either
    the count ceiling or the age ceiling (measured from the first claim) is
    reached. Otherwise the row goes back to `pending`. Returns `CLAIM_LOST`
    without writing when another worker holds the row now.
    """

    table = outbox_model.__table__
    attempts = event["attempts"]
    pending_attempts = event["pending_attempts"]
    last_error = truncate_error(error)

    if is_soft_error:
        pending_attempts += 1
        started = event.get("first_processed_at") or event["created_at"]
        age_seconds = (utcnow() - as_utc(started)).total_seconds()
        expired = age_seconds > max_pending_age_seconds or pending_attempts >= max_pending_attempts
        status = "failed" if expired else "pending"
        if expired:
            last_error = f"Transaction pending timeout after {round(age_seconds)}s"
    else:
        attempts += 1
        status = "failed" if attempts >= max_attempts else "pending"

    values = {
        "status": status,
        "attempts": attempts,
        "pending_attempts": pending_attempts,
        "last_error": last_error,
    }
    if status == "failed":
        values["completed_at"] = utcnow()
    result = db.execute(
        update(table).where(*_claim_held(table, event["id"], event.get("processed_at"))).values(**values)
    )
    if result.rowcount != 1:
        return CLAIM_LOST
    return status


def requeue_events(db, outbox_model, statuses: tuple[str, ...], reset_attempts: bool = True) -> int:
    """Put terminal (or stuck) rows back to `pending` for an operator replay."""

    table = outbox_model.__table__
    values = {"status": "pending", "completed_at": None, "processed_at": None}
    if reset_attempts:
        values.update(attempts=0, pending_attempts=0, first_processed_at=None)
    result = db.execute(update(table).where(table.c.status.in_(statuses)).values(**values))
    return result.rowcount


def update_outbox_backlog_metrics(db, outbox_model, service_name: str) -> None:
    """Update service-level gauges for open outbox depth and oldest age."""

    table = outbox_model.__table__
    now = utcnow()
    pending_count = (
        db.execute(select(func.count()).select_from(table).where(table.c.status.in_(OPEN_STATUSES))).scalar_one()
    )
    oldest_pending = db.execute(
        select(func.min(table.c.created_at)).where(table.c.status.in_(OPEN_STATUSES))
    ).scalar_one()
    age_seconds = 0.0
    if oldest_pending is not None:
        age_seconds = max(0.0, (now - as_utc(oldest_pending)).total_seconds())
    outbox_pending_total.labels(service=service_name).set(float(pending_count))
    outbox_oldest_pending_age_seconds.labels(service=service_name).set(age_seconds)

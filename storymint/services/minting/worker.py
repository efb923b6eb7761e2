"""Outbox polling loop that drives mint sagas.

One event is claimed and processed end-to-end per iteration. This is the
single place where exceptions become retry or terminal decisions.
"""

import asyncio

from storymint.common.config import settings
from storymint.common.db import as_utc, utcnow
from storymint.common.errors import is_soft_error, is_terminal_error
from storymint.common.logging import bind_log_context, logger
from storymint.common.metrics import mint_e2e_seconds, outbox_terminal_total, retries_total
from storymint.common.outbox import (
    CLAIM_LOST,
    claim_next,
    mark_completed,
    mark_failed,
    mark_retry,
    mark_unhandled,
    update_outbox_backlog_metrics,
)
from storymint.common.scheduler import make_scheduler
from storymint.services.minting.ledger import MINT_REQUESTED, mark_record_failed
from storymint.services.minting.models import OutboxEvent
from storymint.services.minting.saga import MintSaga
from storymint.services.minting.stories import update_story_record


class MintWorker:
    """Single-consumer outbox worker for `MintRequested` events."""

    def __init__(self, session_factory, saga: MintSaga, scheduler=None, service_name: str = "storymint") -> None:
        self.session_factory = session_factory
        self.saga = saga
        self.scheduler = scheduler or make_scheduler()
        self.service_name = service_name
        self.handlers = {MINT_REQUESTED: self.handle_mint_requested}

    async def handle_mint_requested(self, event: dict) -> None:
        await self.saga.execute(event["payload"])

    async def process_next(self) -> bool:
        """Claim and process one event. Returns False when the queue is empty."""

        with self.session_factory() as db:
            event = claim_next(db, OutboxEvent, settings.outbox_processing_timeout_seconds)
            update_outbox_backlog_metrics(db, OutboxEvent, self.service_name)
            db.commit()
        if event is None:
            return False

        payload = event["payload"] if isinstance(event["payload"], dict) else {}
        with bind_log_context(event_id=event["id"], story_id=event["aggregate_id"], trace_id=payload.get("traceId")):
            handler = self.handlers.get(event["event_type"])
            if handler is None:
                logger.warning("unhandled_event_type event_type=%s", event["event_type"])
                with self.session_factory() as db:
                    mark_unhandled(
                        db,
                        OutboxEvent,
                        event["id"],
                        f"No handler for event type {event['event_type']}",
                        claimed_at=event["processed_at"],
                    )
                    db.commit()
                outbox_terminal_total.labels(service=self.service_name, status="unhandled").inc()
                return True

            try:
                await handler(event)
            except Exception as exc:
                self._record_failure(event, exc)
                return True

            with self.session_factory() as db:
                completed = mark_completed(db, OutboxEvent, event["id"], claimed_at=event["processed_at"])
                db.commit()
            if not completed:
                logger.warning("outbox_claim_lost outcome=completed")
                return True
            outbox_terminal_total.labels(service=self.service_name, status="completed").inc()
            self._observe_e2e(event, "completed")
            return True

    def _record_failure(self, event: dict, exc: Exception) -> None:
        error = str(exc) or exc.__class__.__name__
        soft = is_soft_error(exc)
        with self.session_factory() as db:
            if is_terminal_error(exc):
                failed = mark_failed(db, OutboxEvent, event["id"], error, claimed_at=event["processed_at"])
                status = "failed" if failed else CLAIM_LOST
            else:
                status = mark_retry(
                    db,
                    OutboxEvent,
                    event,
                    error,
                    soft,
                    max_attempts=settings.outbox_max_attempts,
                    max_pending_attempts=settings.outbox_max_pending_attempts,
                    max_pending_age_seconds=settings.outbox_max_pending_age_seconds,
                )
            if status == "failed" and event["event_type"] == MINT_REQUESTED:
                self._fail_mint(db, event, error)
            db.commit()

        if status == CLAIM_LOST:
            # Reclaimed by another worker after the lease expired.
            logger.warning("outbox_claim_lost error=%s", error)
            return
        if soft:
            logger.info("waiting_for_tx pending_attempts=%s status=%s", event["pending_attempts"] + 1, status)
        else:
            logger.error("event_processing_error attempts=%s status=%s error=%s", event["attempts"] + 1, status, error)
        if status == "failed":
            outbox_terminal_total.labels(service=self.service_name, status="failed").inc()
            self._observe_e2e(event, "failed")
        else:
            retries_total.labels(service=self.service_name, error_class="soft" if soft else "hard").inc()

    def _fail_mint(self, db, event: dict, error: str) -> None:
        """Leave the story and ledger in a visible failed state."""

        payload = event["payload"] if isinstance(event["payload"], dict) else {}
        story_id = payload.get("storyId")
        if story_id:
            update_story_record(db, story_id, "failed")
        content_hash = payload.get("contentHash")
        author_address = payload.get("authorAddress")
        if content_hash and author_address:
            mark_record_failed(db, content_hash, author_address, error)

    def _observe_e2e(self, event: dict, terminal_state: str) -> None:
        if event.get("created_at") is None:
            return
        elapsed = max(0.0, (utcnow() - as_utc(event["created_at"])).total_seconds())
        mint_e2e_seconds.labels(service=self.service_name, terminal_state=terminal_state).observe(elapsed)

    async def run_forever(self) -> None:
        """Poll the outbox until cancelled; no single event can stop the loop."""

        logger.info("mint_worker_started strategy=%s", self.scheduler.name)
        while True:
            productive = False
            try:
                productive = await self.process_next()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.exception("worker_loop_error error=%s", exc)
            await asyncio.sleep(self.scheduler.next_delay(productive))

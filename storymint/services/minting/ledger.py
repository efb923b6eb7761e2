"""Idempotency ledger: the gate in front of every mint.

At most one `mint_records` row exists per (content hash, author). Every state
change goes through a conditional UPDATE or a unique-constrained INSERT, so
concurrent requests for the same story resolve to a single admitted attempt.
Admission and the `MintRequested` outbox row commit together.
"""

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from storymint.common.db import utcnow
from storymint.common.errors import MintValidationError
from storymint.common.hashing import normalize_address, require_content_hash
from storymint.common.logging import logger, trace_id_ctx
from storymint.common.metrics import mint_requests_total
from storymint.common.outbox import enqueue_event, truncate_error
from storymint.common.state_machine import LEDGER_TRANSITIONS, validate_transition
from storymint.services.minting.models import IdempotencyRecord, MintIntent, OutboxEvent, intent_id_for
from storymint.services.minting.schemas import MintDecision, MintRecordView, MintStatusView
from storymint.services.minting.stories import update_story_record


MINT_REQUESTED = "MintRequested"
TITLE_MAX_LENGTH = 100

STATUS_MESSAGES = {
    "MINTED": "Story already minted",
    "PENDING": "Mint already in progress",
    "FAILED": "Previous mint attempt failed",
}


def _find(db, content_hash: str, author_address: str) -> IdempotencyRecord | None:
    # populate_existing: always observe the committed row, never a stale identity-map copy.
    return db.execute(
        select(IdempotencyRecord)
        .where(
            IdempotencyRecord.content_hash == content_hash,
            IdempotencyRecord.author_address == author_address,
        )
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()


def _view(record: IdempotencyRecord | None) -> MintRecordView | None:
    return MintRecordView.model_validate(record) if record is not None else None


def mark_record_minted(db, content_hash: str, author_address: str, tx_hash: str, token_id: str | None) -> bool:
    """PENDING -> MINTED. No-op (False) when the record is not PENDING."""

    result = db.execute(
        update(IdempotencyRecord)
        .where(
            IdempotencyRecord.content_hash == content_hash,
            IdempotencyRecord.author_address == author_address,
            IdempotencyRecord.status == "PENDING",
        )
        .values(status="MINTED", tx_hash=tx_hash, token_id=token_id, minted_at=utcnow(), error=None)
    )
    return result.rowcount == 1


def mark_record_failed(db, content_hash: str, author_address: str, error: str) -> bool:
    """PENDING -> FAILED with a truncated error message."""

    result = db.execute(
        update(IdempotencyRecord)
        .where(
            IdempotencyRecord.content_hash == content_hash,
            IdempotencyRecord.author_address == author_address,
            IdempotencyRecord.status == "PENDING",
        )
        .values(status="FAILED", error=truncate_error(error))
    )
    return result.rowcount == 1


class MintLedger:
    """Admits, rejects or re-admits mint requests."""

    def __init__(self, session_factory, service_name: str = "storymint") -> None:
        self.session_factory = session_factory
        self.service_name = service_name

    def _validate(self, content_hash, author_address, title, story_id, metadata_uri) -> tuple[str, str, str]:
        for name, value in (("storyHash", content_hash), ("authorAddress", author_address), ("title", title)):
            if not isinstance(value, str) or not value.strip():
                raise MintValidationError(f"Missing required parameter: {name}")
        title = title.strip()
        if len(title) > TITLE_MAX_LENGTH:
            raise MintValidationError(f"title must be at most {TITLE_MAX_LENGTH} characters")
        # Every admission queues a MintRequested event for this story.
        for name, value in (("storyId", story_id), ("metadataUri", metadata_uri)):
            if not isinstance(value, str) or not value.strip():
                raise MintValidationError(f"Missing required parameter: {name}")
        return require_content_hash(content_hash.strip().lower()), normalize_address(author_address), title

    def _count(self, decision: MintDecision) -> MintDecision:
        outcome = "accepted" if decision.accepted else decision.status.lower()
        mint_requests_total.labels(service=self.service_name, decision=outcome).inc()
        return decision

    def _admit(self, db, record: IdempotencyRecord, story_id: str, metadata_uri: str) -> None:
        """Stage the outbox event and story/intent side effects of an admission."""

        enqueue_event(
            db,
            OutboxEvent,
            MINT_REQUESTED,
            story_id,
            {
                "storyId": story_id,
                "authorWallet": record.author_address,
                "metadataUri": metadata_uri,
                "contentHash": record.content_hash,
                "authorAddress": record.author_address,
                "traceId": trace_id_ctx.get(),
            },
        )
        update_story_record(db, story_id, "minting")
        # A retried story gets a fresh submission; the reverted tx is left behind.
        db.execute(
            update(MintIntent)
            .where(MintIntent.intent_id == intent_id_for(story_id), MintIntent.status == "failed")
            .values(
                status="pending",
                tx_hash=None,
                token_id=None,
                block_number=None,
                state_version=MintIntent.state_version + 1,
            )
        )

    def request_mint(
        self,
        content_hash,
        author_address,
        title,
        *,
        story_id: str | None = None,
        metadata_uri: str | None = None,
    ) -> MintDecision:
        """Gate one mint request. Raises `MintValidationError` on bad input."""

        content_hash, author_address, title = self._validate(
            content_hash, author_address, title, story_id, metadata_uri
        )
        with self.session_factory() as db:
            existing = _find(db, content_hash, author_address)
            if existing is not None and existing.status == "MINTED":
                return self._count(
                    MintDecision(accepted=False, status="MINTED", message="Story already minted", record=_view(existing))
                )
            if existing is not None and existing.status == "PENDING":
                return self._count(
                    MintDecision(
                        accepted=False, status="PENDING", message="Mint already in progress", record=_view(existing)
                    )
                )
            if existing is not None and existing.status == "FAILED":
                return self._count(self._retry_failed(db, existing, title, story_id, metadata_uri))
            if existing is not None:
                raise RuntimeError(f"Unknown ledger status {existing.status!r} for record {existing.record_id}")
            return self._count(self._create(db, content_hash, author_address, title, story_id, metadata_uri))

    def _retry_failed(self, db, existing: IdempotencyRecord, title, story_id, metadata_uri) -> MintDecision:
        validate_transition(existing.status, "PENDING", LEDGER_TRANSITIONS)
        result = db.execute(
            update(IdempotencyRecord)
            .where(IdempotencyRecord.record_id == existing.record_id, IdempotencyRecord.status == "FAILED")
            .values(
                status="PENDING",
                title=title,
                story_id=story_id,
                error=None,
                tx_hash=None,
                token_id=None,
                minted_at=None,
                retry_count=IdempotencyRecord.retry_count + 1,
            )
        )
        if result.rowcount != 1:
            # Another retry won the FAILED -> PENDING race; report what it left behind.
            db.rollback()
            current = _find(db, existing.content_hash, existing.author_address)
            logger.info(
                "mint_retry_lost_race content_hash=%s author=%s current_status=%s",
                existing.content_hash,
                existing.author_address,
                current.status if current else None,
            )
            return MintDecision(
                accepted=False,
                status=current.status if current else "FAILED",
                message="Mint state changed by another request",
                record=_view(current),
            )

        record = _find(db, existing.content_hash, existing.author_address)
        self._admit(db, record, story_id, metadata_uri)
        db.commit()
        logger.info(
            "mint_retry_accepted content_hash=%s author=%s retry_count=%s",
            record.content_hash,
            record.author_address,
            record.retry_count,
        )
        return MintDecision(accepted=True, status="PENDING", message="Mint retry initiated", record=_view(record))

    def _create(self, db, content_hash, author_address, title, story_id, metadata_uri) -> MintDecision:
        record = IdempotencyRecord(
            content_hash=content_hash,
            author_address=author_address,
            title=title,
            story_id=story_id,
            status="PENDING",
            retry_count=0,
        )
        db.add(record)
        try:
            db.flush()
        except IntegrityError:
            # A concurrent request inserted the same key first.
            db.rollback()
            winner = _find(db, content_hash, author_address)
            if winner is None:
                raise
            logger.info(
                "mint_create_lost_race content_hash=%s author=%s winner_status=%s",
                content_hash,
                author_address,
                winner.status,
            )
            return MintDecision(
                accepted=False,
                status=winner.status,
                message=STATUS_MESSAGES.get(winner.status, "Mint already in progress"),
                record=_view(winner),
            )

        self._admit(db, record, story_id, metadata_uri)
        db.commit()
        logger.info("mint_accepted content_hash=%s author=%s story_id=%s", content_hash, author_address, story_id)
        return MintDecision(accepted=True, status="PENDING", message="Mint initiated", record=_view(record))

    def check_status(self, content_hash, author_address) -> MintStatusView:
        """Author-scoped status lookup; never reveals other authors' records."""

        if not isinstance(author_address, str) or not author_address.strip():
            raise MintValidationError("Wallet address required for mint status check")
        if not isinstance(content_hash, str):
            raise MintValidationError("Missing or invalid parameter: storyHash")
        content_hash = require_content_hash(content_hash.strip().lower())
        with self.session_factory() as db:
            record = _find(db, content_hash, normalize_address(author_address))
        if record is None:
            return MintStatusView(status="NOT_MINTED", message="Story has not been minted yet")
        messages = {
            "MINTED": "Story has already been minted",
            "PENDING": "Mint is in progress",
            "FAILED": "Previous mint attempt failed",
        }
        return MintStatusView(status=record.status, message=messages[record.status], record=_view(record))

"""Mint saga: resumable per-story workflow driving the chain interaction.

Each intent status has one handler. The driver re-reads the persisted intent
before every step, so re-running the saga after a crash resumes at the step
that was in flight. The submit step is guarded by `status == 'pending' AND
tx_hash IS NULL`, so a transaction is never submitted twice for one attempt.
"""

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from storymint.common.errors import (
    ChainError,
    MintValidationError,
    TransactionPendingError,
    TransactionRevertedError,
)
from storymint.common.logging import logger
from storymint.common.metrics import chain_calls_total, saga_transitions_total
from storymint.common.state_machine import validate_transition
from storymint.common.tracing import tracer
from storymint.services.minting.chain import ChainClient
from storymint.services.minting.ledger import mark_record_minted
from storymint.services.minting.models import MintIntent, intent_id_for
from storymint.services.minting.schemas import MintIntentView
from storymint.services.minting.stories import update_story_record


def parse_mint_payload(payload: dict) -> tuple[str, str, str]:
    """Return (story_id, author_wallet, metadata_uri) or raise on a bad payload."""

    values = []
    for key in ("storyId", "authorWallet", "metadataUri"):
        value = payload.get(key) if isinstance(payload, dict) else None
        if not isinstance(value, str) or not value:
            raise MintValidationError(f"MintRequested payload missing {key}")
        values.append(value)
    return values[0], values[1], values[2]


class MintSaga:
    """Owns `MintIntent` progression for `MintRequested` events."""

    def __init__(self, session_factory, chain: ChainClient, service_name: str = "storymint") -> None:
        self.session_factory = session_factory
        self.chain = chain
        self.service_name = service_name
        self.handlers = {
            "pending": self._submit,
            "submitted": self._await_confirmation,
            "confirmed": self._finished,
            "failed": self._already_failed,
        }

    async def execute(self, payload: dict) -> MintIntentView:
        """Advance the story's intent as far as the chain allows.

        Returns once the intent is `confirmed`. Raises
        `TransactionPendingError` while the chain has not mined the
        transaction and `TransactionRevertedError` when it reverted.
        """

        story_id, _, _ = parse_mint_payload(payload)
        intent_id = intent_id_for(story_id)
        with tracer.start_as_current_span("mint_saga.execute") as span:
            span.set_attribute("storymint.story_id", story_id)
            self._ensure_intent(intent_id, story_id)
            while True:
                intent = self._load(intent_id)
                advanced = await self.handlers[intent.status](intent, payload)
                if not advanced:
                    return MintIntentView.model_validate(intent)

    def get_intent(self, story_id: str) -> MintIntentView | None:
        with self.session_factory() as db:
            intent = db.get(MintIntent, intent_id_for(story_id))
            return MintIntentView.model_validate(intent) if intent is not None else None

    def _ensure_intent(self, intent_id: str, story_id: str) -> None:
        with self.session_factory() as db:
            if db.get(MintIntent, intent_id) is not None:
                return
            db.add(MintIntent(intent_id=intent_id, story_id=story_id, status="pending", state_version=0))
            try:
                db.commit()
            except IntegrityError:
                # Created concurrently; the existing row is the one to resume.
                db.rollback()
                return
            logger.info("mint_intent_created intent_id=%s", intent_id)

    def _load(self, intent_id: str) -> MintIntent:
        with self.session_factory() as db:
            intent = db.execute(
                select(MintIntent).where(MintIntent.intent_id == intent_id).execution_options(populate_existing=True)
            ).scalar_one()
            return intent

    def _transition(self, db, intent: MintIntent, new_status: str, guard=None, **values) -> None:
        """Apply one validated intent transition with optimistic concurrency."""

        validate_transition(intent.status, new_status)
        conditions = [
            MintIntent.intent_id == intent.intent_id,
            MintIntent.status == intent.status,
            MintIntent.state_version == intent.state_version,
        ]
        if guard is not None:
            conditions.append(guard)
        result = db.execute(
            update(MintIntent)
            .where(*conditions)
            .values(status=new_status, state_version=intent.state_version + 1, **values)
        )
        if result.rowcount != 1:
            raise RuntimeError(
                f"concurrent update of mint intent {intent.intent_id} "
                f"(expected {intent.status} v{intent.state_version})"
            )
        saga_transitions_total.labels(
            service=self.service_name, from_state=intent.status, to_state=new_status
        ).inc()
        logger.info("mint_intent_transition intent_id=%s from=%s to=%s", intent.intent_id, intent.status, new_status)

    async def _submit(self, intent: MintIntent, payload: dict) -> bool:
        if intent.tx_hash:
            # Already submitted; only the status is behind.
            with self.session_factory() as db:
                self._transition(db, intent, "submitted")
                db.commit()
            return True
        _, wallet, metadata_uri = parse_mint_payload(payload)
        logger.info("mint_submit story_id=%s wallet=%s", intent.story_id, wallet)
        try:
            tx_hash = await self.chain.submit_mint_transaction(wallet, metadata_uri)
        except Exception:
            chain_calls_total.labels(service=self.service_name, operation="submit", outcome="error").inc()
            raise
        chain_calls_total.labels(service=self.service_name, operation="submit", outcome="ok").inc()
        with self.session_factory() as db:
            self._transition(db, intent, "submitted", guard=MintIntent.tx_hash.is_(None), tx_hash=tx_hash)
            db.commit()
        return True

    async def _await_confirmation(self, intent: MintIntent, payload: dict) -> bool:
        if not intent.tx_hash:
            raise ChainError("Missing txHash in submitted state")
        try:
            receipt = await self.chain.get_transaction_status(intent.tx_hash)
        except Exception:
            chain_calls_total.labels(service=self.service_name, operation="status", outcome="error").inc()
            raise
        chain_calls_total.labels(service=self.service_name, operation="status", outcome=receipt.status).inc()

        if receipt.status == "confirmed":
            with self.session_factory() as db:
                self._transition(
                    db, intent, "confirmed", token_id=receipt.token_id, block_number=receipt.block_number
                )
                self._write_back_minted(db, intent, receipt.token_id, payload)
                db.commit()
            logger.info("mint_confirmed story_id=%s token_id=%s", intent.story_id, receipt.token_id)
            return True

        if receipt.status == "reverted":
            with self.session_factory() as db:
                self._transition(db, intent, "failed", block_number=receipt.block_number)
                update_story_record(db, intent.story_id, "failed")
                db.commit()
            raise TransactionRevertedError("Transaction reverted on-chain")

        raise TransactionPendingError(receipt.block_number)

    async def _finished(self, intent: MintIntent, payload: dict) -> bool:
        """Re-apply the confirmed result for a redelivered or re-admitted event.

        The story may have been moved back to `minting` and a new ledger
        record admitted for it; both are settled from the stored receipt.
        """

        with self.session_factory() as db:
            self._write_back_minted(db, intent, intent.token_id, payload)
            db.commit()
        logger.info("mint_result_applied story_id=%s token_id=%s", intent.story_id, intent.token_id)
        return False

    def _write_back_minted(self, db, intent: MintIntent, token_id: str | None, payload: dict) -> None:
        update_story_record(db, intent.story_id, "minted", nft_token_id=token_id, nft_tx_hash=intent.tx_hash)
        content_hash = payload.get("contentHash")
        author_address = payload.get("authorAddress")
        if content_hash and author_address:
            mark_record_minted(db, content_hash, author_address, intent.tx_hash, token_id)

    async def _already_failed(self, intent: MintIntent, payload: dict) -> bool:
        # Redelivered after a revert: stay terminal instead of reporting success.
        raise TransactionRevertedError(f"Mint intent {intent.intent_id} already failed")

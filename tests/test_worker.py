"""Worker loop: event dispatch, error classification and terminal write-back."""

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import select, update

from storymint.common.config import settings
from storymint.common.db import utcnow
from storymint.common.errors import ChainSubmissionError
from storymint.common.hashing import story_content_hash
from storymint.common.outbox import claim_next, enqueue_event
from storymint.common.scheduler import ExponentialPollScheduler, FixedPollScheduler, make_scheduler
from storymint.services.minting.models import IdempotencyRecord, MintIntent, OutboxEvent, Story
from storymint.services.minting.saga import MintSaga
from storymint.services.minting.worker import MintWorker

from conftest import TX_HASH, WALLET, FakeChain


def _worker(session_factory, chain) -> MintWorker:
    saga = MintSaga(session_factory, chain, service_name="test")
    return MintWorker(session_factory, saga, scheduler=FixedPollScheduler(0), service_name="test")


def _state(session_factory):
    with session_factory() as db:
        event = db.execute(select(OutboxEvent)).scalar_one()
        intent = db.get(MintIntent, "mint_story-1")
        story = db.get(Story, "story-1")
        record = db.execute(select(IdempotencyRecord)).scalar_one()
    return event, intent, story, record


def test_empty_queue_is_not_productive(worker):
    assert asyncio.run(worker.process_next()) is False


def test_two_pending_polls_then_confirmed(session_factory, admitted):
    chain = FakeChain(["pending", "pending", "confirmed"])
    worker = _worker(session_factory, chain)

    for expected_pending_attempts in (1, 2):
        assert asyncio.run(worker.process_next()) is True
        event, intent, _, _ = _state(session_factory)
        assert event.status == "pending"
        assert event.pending_attempts == expected_pending_attempts
        assert event.attempts == 0
        assert intent.status == "submitted"

    assert asyncio.run(worker.process_next()) is True

    event, intent, story, record = _state(session_factory)
    assert event.status == "completed"
    assert event.completed_at is not None
    assert intent.status == "confirmed"
    assert intent.token_id == "42"
    assert story.status == "minted"
    assert record.status == "MINTED"
    assert len(chain.submit_calls) == 1


def test_reverted_transaction_fails_event(session_factory, admitted):
    worker = _worker(session_factory, FakeChain(["reverted"]))

    asyncio.run(worker.process_next())

    event, intent, story, record = _state(session_factory)
    assert event.status == "failed"
    assert event.attempts == 0
    assert event.last_error == "Transaction reverted on-chain"
    assert intent.status == "failed"
    assert story.status == "failed"
    assert record.status == "FAILED"
    assert record.error == "Transaction reverted on-chain"
    assert asyncio.run(worker.process_next()) is False


def test_hard_errors_exhaust_after_twenty_attempts(session_factory, admitted):
    chain = FakeChain(submit_error=ChainSubmissionError("rpc down"))
    worker = _worker(session_factory, chain)

    for _ in range(19):
        asyncio.run(worker.process_next())
    event, _, story, record = _state(session_factory)
    assert event.status == "pending"
    assert event.attempts == 19
    assert record.status == "PENDING"

    asyncio.run(worker.process_next())

    event, intent, story, record = _state(session_factory)
    assert event.status == "failed"
    assert event.attempts == 20
    assert intent.status == "pending"
    assert story.status == "failed"
    assert record.status == "FAILED"
    assert record.error == "rpc down"
    assert len(chain.submit_calls) == 20


def test_unknown_event_type_is_unhandled(session_factory, worker):
    with session_factory() as db:
        enqueue_event(db, OutboxEvent, "StoryDeleted", "story-9", {"storyId": "story-9"})
        db.commit()

    assert asyncio.run(worker.process_next()) is True

    with session_factory() as db:
        event = db.execute(select(OutboxEvent)).scalar_one()
    assert event.status == "unhandled"
    assert "StoryDeleted" in event.last_error


def test_malformed_payload_fails_without_retry(session_factory, worker):
    with session_factory() as db:
        enqueue_event(db, OutboxEvent, "MintRequested", "story-9", {"storyId": "story-9"})
        db.commit()

    asyncio.run(worker.process_next())

    with session_factory() as db:
        event = db.execute(select(OutboxEvent)).scalar_one()
    assert event.status == "failed"
    assert event.attempts == 0


def test_run_forever_survives_loop_errors(monkeypatch, worker):
    calls = {"n": 0}

    async def flaky_process_next():
        calls["n"] += 1
        if calls["n"] == 1:
            raise RuntimeError("database unavailable")
        if calls["n"] >= 3:
            raise asyncio.CancelledError()
        return False

    monkeypatch.setattr(worker, "process_next", flaky_process_next)

    with pytest.raises(asyncio.CancelledError):
        asyncio.run(worker.run_forever())
    assert calls["n"] == 3


def test_fixed_scheduler_ignores_outcome():
    scheduler = FixedPollScheduler(2.0)

    assert scheduler.next_delay(True) == 2.0
    assert scheduler.next_delay(False) == 2.0


def test_exponential_scheduler_backs_off_and_resets():
    scheduler = ExponentialPollScheduler(1.0, 8.0)

    delays = [scheduler.next_delay(False) for _ in range(6)]

    assert all(1.0 <= delay <= 8.0 for delay in delays)
    assert scheduler.idle_polls == 6
    assert scheduler.next_delay(True) == 1.0
    assert scheduler.idle_polls == 0


def test_make_scheduler_rejects_unknown_strategy():
    assert make_scheduler("fixed").name == "fixed"
    assert make_scheduler("exponential").name == "exponential"
    with pytest.raises(ValueError):
        make_scheduler("cron")


def test_readmission_of_minted_story_settles_without_resubmitting(session_factory, ledger, admitted):
    chain = FakeChain(["confirmed"])
    worker = _worker(session_factory, chain)
    asyncio.run(worker.process_next())

    edited_hash = story_content_hash("My Tale", "Once upon a time, edited.", WALLET)
    second = ledger.request_mint(
        edited_hash, WALLET, "My Tale", story_id="story-1", metadata_uri="ipfs://story-1"
    )
    assert second.accepted
    with session_factory() as db:
        assert db.get(Story, "story-1").status == "minting"

    asyncio.run(worker.process_next())

    with session_factory() as db:
        story = db.get(Story, "story-1")
        statuses = db.execute(select(OutboxEvent.status)).scalars().all()
        record = db.execute(
            select(IdempotencyRecord).where(IdempotencyRecord.content_hash == edited_hash)
        ).scalar_one()
    assert statuses == ["completed", "completed"]
    assert story.status == "minted"
    assert story.nft_token_id == "42"
    assert record.status == "MINTED"
    assert record.token_id == "42"
    assert record.tx_hash == TX_HASH
    assert len(chain.submit_calls) == 1

    again = ledger.request_mint(edited_hash, WALLET, "My Tale", story_id="story-1", metadata_uri="ipfs://story-1")
    assert again.status == "MINTED"


def test_lost_claim_skips_failure_write_back(monkeypatch, session_factory, admitted):
    chain = FakeChain(submit_error=ChainSubmissionError("rpc down"))
    worker = _worker(session_factory, chain)
    real_execute = worker.saga.execute

    async def slow_execute(payload):
        # Lease expires mid-flight and another worker reclaims the event.
        with session_factory() as db:
            db.execute(update(OutboxEvent).values(processed_at=utcnow() - timedelta(hours=1)))
            db.commit()
        with session_factory() as db:
            assert claim_next(db, OutboxEvent, processing_timeout_seconds=600) is not None
            db.commit()
        await real_execute(payload)

    monkeypatch.setattr(worker.saga, "execute", slow_execute)
    monkeypatch.setattr(settings, "outbox_max_attempts", 1)

    asyncio.run(worker.process_next())

    event, _, story, record = _state(session_factory)
    assert event.status == "processing"
    assert event.attempts == 0
    assert story.status == "minting"
    assert record.status == "PENDING"

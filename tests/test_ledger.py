"""Idempotency ledger: admission, duplicates, retries and lost races."""

import pytest
from sqlalchemy import func, select

from storymint.common.errors import MintValidationError
from storymint.services.minting import ledger as ledger_module
from storymint.services.minting.ledger import mark_record_failed, mark_record_minted
from storymint.services.minting.models import IdempotencyRecord, MintIntent, OutboxEvent, Story

from conftest import TX_HASH, WALLET


def _count(session_factory, model) -> int:
    with session_factory() as db:
        return db.execute(select(func.count()).select_from(model)).scalar_one()


def _fail(session_factory, content_hash, error="Transaction reverted on-chain"):
    with session_factory() as db:
        assert mark_record_failed(db, content_hash, WALLET.lower(), error)
        db.commit()


def test_new_request_is_admitted_and_queued(session_factory, admitted, content_hash):
    assert admitted.status == "PENDING"
    assert admitted.message == "Mint initiated"
    assert admitted.record.content_hash == content_hash
    assert admitted.record.author_address == WALLET.lower()

    with session_factory() as db:
        event = db.execute(select(OutboxEvent)).scalar_one()
        story = db.get(Story, "story-1")
    assert event.event_type == "MintRequested"
    assert event.status == "pending"
    assert event.payload["storyId"] == "story-1"
    assert event.payload["authorWallet"] == WALLET.lower()
    assert event.payload["metadataUri"] == "ipfs://story-1"
    assert event.payload["contentHash"] == content_hash
    assert story.status == "minting"


def test_request_without_story_is_rejected(session_factory, ledger, content_hash):
    with pytest.raises(MintValidationError, match="storyId"):
        ledger.request_mint(content_hash, WALLET, "My Tale")

    assert _count(session_factory, IdempotencyRecord) == 0
    assert _count(session_factory, OutboxEvent) == 0


def test_retry_without_story_leaves_record_failed(session_factory, ledger, admitted, content_hash):
    _fail(session_factory, content_hash)

    with pytest.raises(MintValidationError):
        ledger.request_mint(content_hash, WALLET, "My Tale")

    with session_factory() as db:
        record = db.execute(select(IdempotencyRecord)).scalar_one()
    assert record.status == "FAILED"
    assert _count(session_factory, OutboxEvent) == 1

    decision = ledger.request_mint(
        content_hash, WALLET, "My Tale", story_id="story-1", metadata_uri="ipfs://story-1"
    )
    assert decision.accepted
    assert decision.message == "Mint retry initiated"
    assert _count(session_factory, OutboxEvent) == 2


def test_repeated_requests_while_pending_are_rejected(session_factory, ledger, admitted, content_hash):
    for _ in range(3):
        decision = ledger.request_mint(
            content_hash, WALLET, "My Tale", story_id="story-1", metadata_uri="ipfs://story-1"
        )
        assert not decision.accepted
        assert decision.status == "PENDING"
        assert decision.message == "Mint already in progress"

    assert _count(session_factory, IdempotencyRecord) == 1
    assert _count(session_factory, OutboxEvent) == 1


def test_key_is_normalized_before_lookup(session_factory, ledger, admitted, content_hash):
    decision = ledger.request_mint(
        content_hash.upper(), "  " + WALLET.upper(), "My Tale", story_id="story-1", metadata_uri="ipfs://story-1"
    )

    assert decision.status == "PENDING"
    assert not decision.accepted
    assert _count(session_factory, IdempotencyRecord) == 1


def test_minted_record_is_terminal(session_factory, ledger, admitted, content_hash):
    with session_factory() as db:
        assert mark_record_minted(db, content_hash, WALLET.lower(), TX_HASH, "7")
        db.commit()

    for _ in range(2):
        decision = ledger.request_mint(
            content_hash, WALLET, "My Tale", story_id="story-1", metadata_uri="ipfs://story-1"
        )
        assert not decision.accepted
        assert decision.status == "MINTED"
        assert decision.message == "Story already minted"
        assert decision.record.tx_hash == TX_HASH
        assert decision.record.token_id == "7"

    with session_factory() as db:
        assert not mark_record_failed(db, content_hash, WALLET.lower(), "late failure")
        db.commit()
        record = db.execute(select(IdempotencyRecord)).scalar_one()
    assert record.status == "MINTED"


def test_failed_record_is_retried_once(session_factory, ledger, admitted, content_hash):
    _fail(session_factory, content_hash)

    decision = ledger.request_mint(
        content_hash, WALLET, "My Tale", story_id="story-1", metadata_uri="ipfs://story-1"
    )

    assert decision.accepted
    assert decision.message == "Mint retry initiated"
    assert decision.record.status == "PENDING"
    assert decision.record.error is None
    assert decision.record.retry_count == 1
    assert _count(session_factory, OutboxEvent) == 2

    again = ledger.request_mint(content_hash, WALLET, "My Tale", story_id="story-1", metadata_uri="ipfs://story-1")
    assert not again.accepted
    assert again.status == "PENDING"


def test_retry_reopens_failed_intent(session_factory, ledger, admitted, content_hash):
    with session_factory() as db:
        db.add(MintIntent(intent_id="mint_story-1", story_id="story-1", status="failed", tx_hash=TX_HASH))
        db.commit()
    _fail(session_factory, content_hash)

    ledger.request_mint(content_hash, WALLET, "My Tale", story_id="story-1", metadata_uri="ipfs://story-1")

    with session_factory() as db:
        intent = db.get(MintIntent, "mint_story-1")
    assert intent.status == "pending"
    assert intent.tx_hash is None
    assert intent.state_version == 1


def test_concurrent_retry_loser_reports_current_state(monkeypatch, session_factory, ledger, admitted, content_hash):
    _fail(session_factory, content_hash)
    winner = ledger.request_mint(
        content_hash, WALLET, "My Tale", story_id="story-1", metadata_uri="ipfs://story-1"
    )
    assert winner.accepted

    real_find = ledger_module._find
    calls = {"n": 0}

    def stale_find(db, content_hash, author_address):
        calls["n"] += 1
        record = real_find(db, content_hash, author_address)
        if calls["n"] == 1:
            # The losing request read the row before the winner committed.
            record.status = "FAILED"
        return record

    monkeypatch.setattr(ledger_module, "_find", stale_find)
    loser = ledger.request_mint(
        content_hash, WALLET, "My Tale", story_id="story-1", metadata_uri="ipfs://story-1"
    )

    assert not loser.accepted
    assert loser.status == "PENDING"
    assert loser.message == "Mint state changed by another request"
    assert _count(session_factory, OutboxEvent) == 2
    with session_factory() as db:
        record = db.execute(select(IdempotencyRecord)).scalar_one()
    assert record.retry_count == 1


def test_concurrent_create_loser_reads_winner(monkeypatch, session_factory, ledger, admitted, content_hash):
    real_find = ledger_module._find
    calls = {"n": 0}

    def racing_find(db, content_hash, author_address):
        calls["n"] += 1
        if calls["n"] == 1:
            return None
        return real_find(db, content_hash, author_address)

    monkeypatch.setattr(ledger_module, "_find", racing_find)
    decision = ledger.request_mint(
        content_hash, WALLET, "My Tale", story_id="story-1", metadata_uri="ipfs://story-1"
    )

    assert not decision.accepted
    assert decision.status == "PENDING"
    assert decision.message == "Mint already in progress"
    assert decision.record.record_id == admitted.record.record_id
    assert _count(session_factory, IdempotencyRecord) == 1
    assert _count(session_factory, OutboxEvent) == 1


def test_same_content_different_author_is_a_different_key(session_factory, ledger, admitted, content_hash):
    decision = ledger.request_mint(
        content_hash,
        "0x9b3a53ba88d8b1f8d2a4f5b7c8e3a1f2b5d6c7e8",
        "My Tale",
        story_id="story-2",
        metadata_uri="ipfs://story-2",
    )

    assert decision.accepted
    assert _count(session_factory, IdempotencyRecord) == 2


@pytest.mark.parametrize(
    "content_hash, author, title",
    [
        ("invalid", WALLET, "My Tale"),
        ("", WALLET, "My Tale"),
        ("a" * 64, "", "My Tale"),
        ("a" * 64, WALLET, "   "),
        ("a" * 64, WALLET, None),
        (123, WALLET, "My Tale"),
        ("a" * 64, WALLET, "x" * 101),
    ],
)
def test_invalid_requests_are_rejected(session_factory, ledger, content_hash, author, title):
    with pytest.raises(MintValidationError):
        ledger.request_mint(content_hash, author, title, story_id="story-1", metadata_uri="ipfs://story-1")

    assert _count(session_factory, IdempotencyRecord) == 0


def test_story_requires_metadata_uri(ledger):
    with pytest.raises(MintValidationError):
        ledger.request_mint("a" * 64, WALLET, "My Tale", story_id="story-1")


def test_check_status_is_author_scoped(ledger, admitted, content_hash):
    mine = ledger.check_status(content_hash, WALLET.upper())
    theirs = ledger.check_status(content_hash, "0x9b3a53ba88d8b1f8d2a4f5b7c8e3a1f2b5d6c7e8")

    assert mine.status == "PENDING"
    assert mine.message == "Mint is in progress"
    assert mine.record.content_hash == content_hash
    assert theirs.status == "NOT_MINTED"
    assert theirs.record is None


def test_check_status_requires_wallet(ledger, content_hash):
    with pytest.raises(MintValidationError):
        ledger.check_status(content_hash, "")

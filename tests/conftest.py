"""Shared fixtures: in-memory database, fake chain, wired ledger/saga/worker."""

import os

os.environ.setdefault("DATABASE_DSN", "sqlite://")
os.environ.setdefault("TRACING_ENABLED", "false")
os.environ.setdefault("MINT_WORKER_ENABLED", "false")
os.environ.setdefault("CHAIN_BACKEND", "simulated")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from storymint.common.db import Base
from storymint.common.hashing import story_content_hash
from storymint.common.scheduler import FixedPollScheduler
from storymint.services.minting.chain import TransactionReceipt
from storymint.services.minting.ledger import MintLedger
from storymint.services.minting.models import Story
from storymint.services.minting.saga import MintSaga
from storymint.services.minting.worker import MintWorker


WALLET = "0x742d35Cc6634C0532925a3b844Bc9e7595f0bEb0"
TX_HASH = "0x" + "ab" * 32


class FakeChain:
    """Scripted chain: statuses are returned in order, then `pending` forever."""

    def __init__(self, statuses=(), submit_error: Exception | None = None) -> None:
        self.statuses = list(statuses)
        self.submit_error = submit_error
        self.submit_calls: list[tuple[str, str]] = []
        self.status_calls: list[str] = []

    async def submit_mint_transaction(self, wallet_address: str, metadata_uri: str) -> str:
        self.submit_calls.append((wallet_address, metadata_uri))
        if self.submit_error is not None:
            raise self.submit_error
        return TX_HASH

    async def get_transaction_status(self, tx_hash: str) -> TransactionReceipt:
        self.status_calls.append(tx_hash)
        status = self.statuses.pop(0) if self.statuses else "pending"
        if status == "confirmed":
            return TransactionReceipt(status="confirmed", token_id="42", block_number=1234)
        return TransactionReceipt(status=status, block_number=None if status == "pending" else 1234)


@pytest.fixture()
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    try:
        yield sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture()
def ledger(session_factory):
    return MintLedger(session_factory, service_name="test")


@pytest.fixture()
def chain():
    return FakeChain()


@pytest.fixture()
def saga(session_factory, chain):
    return MintSaga(session_factory, chain, service_name="test")


@pytest.fixture()
def worker(session_factory, saga):
    return MintWorker(session_factory, saga, scheduler=FixedPollScheduler(0), service_name="test")


@pytest.fixture()
def story(session_factory):
    with session_factory() as db:
        row = Story(story_id="story-1", title="My Tale", author_address=WALLET.lower(), status="draft")
        db.add(row)
        db.commit()
    return row


@pytest.fixture()
def content_hash():
    return story_content_hash("My Tale", "Once upon a time.", WALLET)


@pytest.fixture()
def admitted(ledger, story, content_hash):
    """A story whose mint has been admitted and queued."""

    decision = ledger.request_mint(
        content_hash,
        WALLET,
        "My Tale",
        story_id=story.story_id,
        metadata_uri="ipfs://story-1",
    )
    assert decision.accepted
    return decision

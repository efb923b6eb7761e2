"""Chain interface consumed by the mint saga.

The saga only needs two primitives: submit a mint and ask for its status. The
RPC details live behind a chain gateway; `HttpChainClient` talks to it and
`SimulatedChainClient` stands in for it during local development.
"""

import itertools
from typing import Protocol
from uuid import uuid4

import httpx
from pydantic import BaseModel, ConfigDict, Field

from storymint.common.config import settings
from storymint.common.errors import ChainError, ChainSubmissionError
from storymint.common.logging import logger


class TransactionReceipt(BaseModel):
    """Chain-reported state of one transaction."""

    model_config = ConfigDict(populate_by_name=True, coerce_numbers_to_str=True)

    status: str
    token_id: str | None = Field(default=None, alias="tokenId")
    block_number: int | None = Field(default=None, alias="blockNumber")


class ChainClient(Protocol):
    async def submit_mint_transaction(self, wallet_address: str, metadata_uri: str) -> str: ...

    async def get_transaction_status(self, tx_hash: str) -> TransactionReceipt: ...


class HttpChainClient:
    """Chain gateway client over HTTP."""

    def __init__(self, base_url: str, timeout_seconds: float = 10.0) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds

    async def submit_mint_transaction(self, wallet_address: str, metadata_uri: str) -> str:
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                resp = await client.post(
                    f"{self.base_url}/transactions/mint",
                    json={"to": wallet_address, "uri": metadata_uri},
                )
                resp.raise_for_status()
        except httpx.HTTPError as exc:
            raise ChainSubmissionError(f"Mint submission failed: {exc}") from exc
        tx_hash = resp.json().get("transactionHash")
        if not tx_hash:
            raise ChainSubmissionError("Mint submission returned no transactionHash")
        return tx_hash

    async def get_transaction_status(self, tx_hash: str) -> TransactionReceipt:
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                resp = await client.get(f"{self.base_url}/transactions/{tx_hash}")
                resp.raise_for_status()
        except httpx.HTTPError as exc:
            raise ChainError(f"Transaction status lookup failed: {exc}") from exc
        return TransactionReceipt.model_validate(resp.json())


class SimulatedChainClient:
    """In-memory chain for local runs.

    Transactions confirm after `confirmations_after` status polls. A metadata
    URI containing `force-revert` produces a reverted transaction.
    """

    def __init__(self, confirmations_after: int = 2) -> None:
        self.confirmations_after = confirmations_after
        self._transactions: dict[str, dict] = {}
        self._token_ids = itertools.count(1)
        self._blocks = itertools.count(1_000)

    async def submit_mint_transaction(self, wallet_address: str, metadata_uri: str) -> str:
        tx_hash = "0x" + uuid4().hex + uuid4().hex
        self._transactions[tx_hash] = {
            "polls": 0,
            "revert": "force-revert" in metadata_uri,
            "to": wallet_address,
        }
        logger.info("simulated_mint_submitted tx_hash=%s to=%s", tx_hash, wallet_address)
        return tx_hash

    async def get_transaction_status(self, tx_hash: str) -> TransactionReceipt:
        tx = self._transactions.get(tx_hash)
        if tx is None:
            raise ChainError(f"Unknown transaction {tx_hash}")
        tx["polls"] += 1
        if tx["polls"] <= self.confirmations_after:
            return TransactionReceipt(status="pending")
        if tx["revert"]:
            return TransactionReceipt(status="reverted", block_number=next(self._blocks))
        if "token_id" not in tx:
            tx["token_id"] = str(next(self._token_ids))
            tx["block_number"] = next(self._blocks)
        return TransactionReceipt(status="confirmed", token_id=tx["token_id"], block_number=tx["block_number"])


def make_chain_client() -> ChainClient:
    """Build the chain client selected by `settings.chain_backend`."""

    if settings.chain_backend == "simulated":
        return SimulatedChainClient(settings.simulated_confirmations_after)
    return HttpChainClient(settings.chain_gateway_url, settings.chain_timeout_seconds)

"""Exception taxonomy shared by the ledger, the saga and the outbox worker.

The worker's top-level catch is the only place these are translated into
retry or terminal outbox decisions; everything else lets them propagate.
"""

PENDING_TX_MESSAGE = "Transaction still pending"


class MintValidationError(ValueError):
    """Malformed or missing request input. Never retried."""


class ChainError(RuntimeError):
    """Base class for failures reported by the chain interface."""


class ChainSubmissionError(ChainError):
    """The chain refused or failed to accept a mint transaction."""


class TransactionPendingError(ChainError):
    """The submitted transaction is not mined yet (soft error)."""

    def __init__(self, block_number: int | None = None) -> None:
        self.block_number = block_number
        super().__init__(f"{PENDING_TX_MESSAGE} (Block: {block_number or 'mempool'})")


class TransactionRevertedError(ChainError):
    """The transaction was mined and reverted. Terminal for the outbox event."""


def is_soft_error(exc: BaseException) -> bool:
    """Return True when `exc` means "chain has not confirmed yet"."""

    return isinstance(exc, TransactionPendingError) or PENDING_TX_MESSAGE in str(exc)


def is_terminal_error(exc: BaseException) -> bool:
    """Return True for failures that retrying the same event cannot fix."""

    return isinstance(exc, (TransactionRevertedError, MintValidationError))

"""Exceptions raised by the strategy engine and its collaborators."""
from __future__ import annotations


class StrategyEngineError(Exception):
    """Base class for all strategy engine failures."""

    retryable = False


class InvalidStrategy(StrategyEngineError):
    """A strategy definition failed validation at the repository boundary."""


class StaleData(StrategyEngineError):
    """Market data is older than the freshness bound."""

    retryable = True


class GasCeilingExceeded(StrategyEngineError):
    """Estimated gas fee is above the strategy's ceiling; nothing was submitted."""

    retryable = True

    def __init__(self, estimated_fee: float, max_gas_fee: float) -> None:
        super().__init__(f"estimated fee {estimated_fee} exceeds ceiling {max_gas_fee}")
        self.estimated_fee = estimated_fee
        self.max_gas_fee = max_gas_fee


class ChainError(StrategyEngineError):
    """The chain collaborator could not prepare or query a transaction."""


class SubmissionFailed(StrategyEngineError):
    """The transaction was rejected on submission or reverted on chain."""


class ConfirmationTimeout(StrategyEngineError):
    """No receipt arrived in time; the transaction may still confirm later."""

    def __init__(self, transaction_hash: str, timeout: float) -> None:
        super().__init__(f"no receipt for {transaction_hash} after {timeout:.0f}s")
        self.transaction_hash = transaction_hash
        self.timeout = timeout


class LeaseLost(StrategyEngineError):
    """Another worker owns the strategy lease."""


class RepositoryUnavailable(StrategyEngineError):
    """The persistence layer could not serve the request."""

    retryable = True

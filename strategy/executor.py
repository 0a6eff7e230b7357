"""Executes a single strategy action against the chain collaborator."""
from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from constants import (
    CONFIRMATION_GRACE_SECONDS,
    DEFAULT_CONFIRMATION_TIMEOUT,
    EXECUTION_SUCCESS,
    REASON_ASSET_MISMATCH,
    REASON_CONFIRMATION_TIMEOUT,
    REASON_GAS_CEILING,
    REASON_REVERTED,
)
from strategy.errors import ChainError, ConfirmationTimeout, StrategyEngineError, SubmissionFailed
from strategy.models import ExecutionResult, StrategyAction

SubmittedCallback = Callable[[str, Optional[float]], Awaitable[None]]


class ActionExecutor:
    """Gas-guarded, single-submission execution of one strategy action.

    The executor never retries. Every call ends in a terminal result: either the
    chain collaborator reports a receipt, or the bounded confirmation wait
    expires and the result is flagged for manual reconciliation.
    """

    def __init__(self, chain_client, confirmation_timeout: float = DEFAULT_CONFIRMATION_TIMEOUT) -> None:
        self.chain_client = chain_client
        self.confirmation_timeout = confirmation_timeout
        self.logger = logging.getLogger(__name__)
        self.logger.setLevel(logging.INFO)

    async def execute(
        self,
        strategy,
        action: StrategyAction,
        opportunity,
        on_submitted: Optional[SubmittedCallback] = None,
    ) -> ExecutionResult:
        if action.asset and opportunity.asset.upper() != action.asset.upper():
            return ExecutionResult.failed(REASON_ASSET_MISMATCH)

        try:
            tx = await self.chain_client.prepare(action.type, opportunity, action.amount_policy)
            estimated_fee = await self.chain_client.estimate_gas(tx)
        except ChainError as exc:
            self.logger.warning("[Strategy %s] could not prepare %s: %s", strategy.id, action.type, exc)
            return ExecutionResult.failed(str(exc))

        if strategy.max_gas_fee is not None and estimated_fee > strategy.max_gas_fee:
            self.logger.warning(
                "[Strategy %s] gas estimate %.6f above ceiling %.6f; not submitting",
                strategy.id,
                estimated_fee,
                strategy.max_gas_fee,
            )
            return ExecutionResult.failed(REASON_GAS_CEILING, amount=tx.amount)

        try:
            tx_hash = await self.chain_client.submit(tx)
        except SubmissionFailed as exc:
            return ExecutionResult.failed(f"submission failed: {exc}", amount=tx.amount)
        except StrategyEngineError as exc:
            self.logger.error("[Strategy %s] submission of %s failed: %s", strategy.id, action.type, exc)
            return ExecutionResult.failed(f"submission failed: {exc}", amount=tx.amount)

        if on_submitted is not None:
            try:
                await on_submitted(tx_hash, tx.amount)
            except StrategyEngineError as exc:
                self.logger.error("[Strategy %s] could not record submitted hash %s: %s", strategy.id, tx_hash, exc)

        try:
            confirmation = await asyncio.wait_for(
                self.chain_client.await_confirmation(tx_hash, self.confirmation_timeout),
                timeout=self.confirmation_timeout + CONFIRMATION_GRACE_SECONDS,
            )
        except (ConfirmationTimeout, asyncio.TimeoutError, ChainError) as exc:
            self.logger.error("[Strategy %s] no confirmation for %s: %s", strategy.id, tx_hash, exc)
            return ExecutionResult.failed(
                REASON_CONFIRMATION_TIMEOUT,
                transaction_hash=tx_hash,
                amount=tx.amount,
                needs_reconciliation=True,
            )

        if not confirmation.success:
            return ExecutionResult.failed(
                REASON_REVERTED,
                transaction_hash=tx_hash,
                gas_used=confirmation.gas_used,
                gas_fee=confirmation.gas_fee,
                amount=tx.amount,
            )

        self.logger.info(
            "[Strategy %s] %s confirmed: %s (gas fee %.6f)",
            strategy.id,
            action.type,
            tx_hash,
            confirmation.gas_fee,
        )
        return ExecutionResult(
            status=EXECUTION_SUCCESS,
            transaction_hash=tx_hash,
            gas_used=confirmation.gas_used,
            gas_fee=confirmation.gas_fee,
            amount=tx.amount,
        )

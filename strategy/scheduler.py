"""Lease-guarded scheduling of due strategies over a worker pool."""
import asyncio
import dataclasses
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Set, Tuple

from constants import (
    ACTION_DEPOSIT,
    ACTION_REBALANCE,
    ACTION_WITHDRAW,
    C_BLUE,
    C_GREEN,
    C_RED,
    C_RESET,
    C_YELLOW,
    DEFAULT_LEASE_TTL,
    DEFAULT_MAX_WORKERS,
    DEFAULT_PENDING_TIMEOUT,
    EXECUTION_INTERVALS,
    EXECUTION_SUCCESS,
    REASON_CONFIRMATION_TIMEOUT,
    REASON_ORPHANED,
    REASON_REVERTED,
    STRATEGY_ACTIVE,
    TRIGGER_PRICE,
)
from strategy.errors import LeaseLost, RepositoryUnavailable
from strategy.evaluator import ConditionEvaluator
from strategy.executor import ActionExecutor
from strategy.models import AmountPolicy, ExecutionResult, StrategyAction

STATE_IDLE = 'idle'
STATE_DUE = 'due'
STATE_EVALUATING = 'evaluating'
STATE_SKIPPED = 'skipped'
STATE_FIRING = 'firing'
STATE_RECORDING = 'recording'


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ExecutionScheduler:
    """Wakes on an interval, leases due strategies and runs them through the engine.

    Strategies and snapshots are re-read from the repository on every pass; the
    scheduler keeps only the due-queue and the per-strategy state used by the
    admin status command.
    """

    def __init__(
        self,
        repository,
        opportunity_feed,
        evaluator: ConditionEvaluator,
        executor: ActionExecutor,
        notifier=None,
        price_feed=None,
        chain_client=None,
        *,
        interval: float = 60,
        max_workers: int = DEFAULT_MAX_WORKERS,
        lease_ttl: float = DEFAULT_LEASE_TTL,
        pending_timeout: float = DEFAULT_PENDING_TIMEOUT,
        refresh_opportunities: bool = False,
        bot_data: Optional[dict] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.repository = repository
        self.opportunity_feed = opportunity_feed
        self.evaluator = evaluator
        self.executor = executor
        self.notifier = notifier
        self.price_feed = price_feed
        self.chain_client = chain_client
        self.interval = interval
        self.max_workers = max(1, max_workers)
        self.lease_ttl = lease_ttl
        self.pending_timeout = pending_timeout
        self.refresh_opportunities = refresh_opportunities
        self.bot_data = bot_data if bot_data is not None else {}
        self.clock = clock or _utcnow

        self.states: Dict[int, str] = {}
        self._queue: "asyncio.Queue[Tuple[int, bool]]" = asyncio.Queue()
        self._queued: Set[int] = set()
        self._forced: Set[int] = set()
        self._wake = asyncio.Event()
        self._workers: List[asyncio.Task] = []
        self._instance_id = uuid.uuid4().hex[:12]

    def owner_token(self, worker_index: int) -> str:
        return f"{self._instance_id}-w{worker_index}"

    async def start(self):
        """Starts the worker pool and runs the wake loop until cancelled."""
        self._workers = [
            asyncio.create_task(self._worker(index), name=f"strategy-worker-{index}")
            for index in range(self.max_workers)
        ]
        try:
            await self._run_main_loop()
        finally:
            await self.stop()

    async def stop(self):
        for task in self._workers:
            task.cancel()
        if self._workers:
            await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []

    async def _run_main_loop(self):
        """The main application loop."""
        while True:
            print("\n" + "=" * 50)
            print("Starting new strategy cycle...")
            self.bot_data['last_error'] = None
            try:
                enqueued = await self.run_cycle()
                print(f"{C_BLUE}Queued {enqueued} due strategies.{C_RESET}")
            except Exception as e:
                print(f"{C_RED}Error during strategy cycle: {e}{C_RESET}")
                self.bot_data['last_error'] = str(e)

            print(f"Cycle finished. Waiting up to {self.interval} seconds...")
            print("=" * 50)
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
            self._wake.clear()

    async def run_cycle(self) -> int:
        """Recovers stale rows, optionally refreshes opportunities and enqueues due strategies."""
        now = self.clock()
        await self.recover_stale_pending(now)

        if self.refresh_opportunities and self.opportunity_feed is not None:
            await self.opportunity_feed.refresh(now)

        due = await self.repository.list_due(now)
        enqueued = 0
        for strategy in due:
            if self._enqueue(strategy.id, forced=False):
                enqueued += 1

        self.bot_data['last_cycle_time'] = time.strftime('%Y-%m-%d %H:%M:%S UTC', time.gmtime())
        self.bot_data['due_last_cycle'] = len(due)
        return enqueued

    def trigger(self, strategy_id: int) -> bool:
        """Queues a strategy for immediate evaluation regardless of its schedule."""
        self._forced.add(strategy_id)
        queued = self._enqueue(strategy_id, forced=True)
        self._wake.set()
        return queued

    def _enqueue(self, strategy_id: int, forced: bool) -> bool:
        if strategy_id in self._queued:
            return False
        self._queued.add(strategy_id)
        self.states[strategy_id] = STATE_DUE
        self._queue.put_nowait((strategy_id, forced))
        return True

    @property
    def queue_size(self) -> int:
        return self._queue.qsize()

    async def _worker(self, worker_index: int):
        owner_token = self.owner_token(worker_index)
        while True:
            strategy_id, forced = await self._queue.get()
            self._queued.discard(strategy_id)
            forced = forced or strategy_id in self._forced
            self._forced.discard(strategy_id)
            try:
                await self.process_strategy(strategy_id, owner_token=owner_token, forced=forced)
            except Exception as e:
                print(f"{C_RED}[Strategy {strategy_id}] worker error: {e}{C_RESET}")
                self.bot_data['last_error'] = str(e)
            finally:
                self._queue.task_done()

    async def drain(self):
        """Processes everything currently queued on the calling task."""
        owner_token = self.owner_token(0)
        while not self._queue.empty():
            strategy_id, forced = self._queue.get_nowait()
            self._queued.discard(strategy_id)
            forced = forced or strategy_id in self._forced
            self._forced.discard(strategy_id)
            try:
                await self.process_strategy(strategy_id, owner_token=owner_token, forced=forced)
            finally:
                self._queue.task_done()

    async def process_strategy(
        self,
        strategy_id: int,
        *,
        owner_token: Optional[str] = None,
        forced: bool = False,
    ) -> Optional[List[ExecutionResult]]:
        """Leases, evaluates and (when firing) executes one strategy.

        Returns the execution results of a firing pass, an empty list when the
        strategy was skipped, or ``None`` when nothing was done.
        """
        owner_token = owner_token or self.owner_token(0)
        now = self.clock()

        if not await self.repository.lease(strategy_id, owner_token, self.lease_ttl, now):
            print(f"{C_YELLOW}[Strategy {strategy_id}] lease held elsewhere; skipping.{C_RESET}")
            return None

        claimed = False
        try:
            strategy = await self.repository.get_strategy(strategy_id)
            if strategy is None or strategy.status != STRATEGY_ACTIVE:
                return None
            if not forced and not self._is_due(strategy, now):
                return None

            # Claims this due time; later pops see the strategy as not due.
            await self.repository.reschedule(strategy_id, self._next_run(strategy))
            claimed = True
            self.states[strategy_id] = STATE_EVALUATING
            if forced:
                strategy = dataclasses.replace(strategy, next_scheduled_execution=None)
            opportunities = await self.opportunity_feed.get_snapshot(
                strategy.target_protocols,
                strategy.target_networks,
            )
            prices = await self._load_prices(strategy)
            evaluation = self.evaluator.evaluate(strategy, opportunities, now, prices)

            if not evaluation.fire:
                self.states[strategy_id] = STATE_SKIPPED
                print(f"[Strategy {strategy_id}] '{strategy.name}' skipped: {evaluation.reason}")
                return []

            self.states[strategy_id] = STATE_FIRING
            print(f"{C_GREEN}[Strategy {strategy_id}] '{strategy.name}' firing: {evaluation.reason}{C_RESET}")
            results = await self._fire(strategy, evaluation.selected_opportunity, owner_token)
            await self.repository.reschedule(strategy_id, self._next_run(strategy))
            return results
        except LeaseLost as e:
            print(f"{C_YELLOW}[Strategy {strategy_id}] {e}; aborting cycle.{C_RESET}")
            return None
        except RepositoryUnavailable as e:
            print(f"{C_RED}[Strategy {strategy_id}] repository unavailable: {e}{C_RESET}")
            self.bot_data['last_error'] = str(e)
            return None
        finally:
            if claimed or self.states.get(strategy_id) == STATE_DUE:
                self.states[strategy_id] = STATE_IDLE
            try:
                await self.repository.release(strategy_id, owner_token)
            except RepositoryUnavailable as e:
                print(f"{C_RED}[Strategy {strategy_id}] could not release lease: {e}{C_RESET}")

    @staticmethod
    def _is_due(strategy, now: datetime) -> bool:
        due_at = strategy.next_scheduled_execution
        return due_at is None or due_at <= now

    def _next_run(self, strategy) -> datetime:
        seconds = EXECUTION_INTERVALS.get(strategy.execution_interval, EXECUTION_INTERVALS['hourly'])
        return self.clock() + timedelta(seconds=seconds)

    async def _load_prices(self, strategy) -> dict:
        if strategy.trigger_type != TRIGGER_PRICE or self.price_feed is None:
            return {}
        return await self.price_feed.get_price_quotes([strategy.conditions.asset])

    async def _fire(self, strategy, selected, owner_token: str) -> List[ExecutionResult]:
        results: List[ExecutionResult] = []
        position_id = strategy.current_opportunity_id

        for action in strategy.actions:
            steps = await self._expand_action(strategy, action, selected, position_id)
            if not steps:
                continue
            carried_amount: Optional[float] = None
            for step_action, opportunity in steps:
                if step_action.type == ACTION_DEPOSIT and action.type == ACTION_REBALANCE and carried_amount:
                    step_action = dataclasses.replace(
                        step_action,
                        amount_policy=AmountPolicy(kind='fixed', amount=carried_amount),
                    )
                result = await self._run_step(strategy, step_action, opportunity, owner_token)
                results.append(result)
                if not result.succeeded:
                    return results
                if step_action.type == ACTION_DEPOSIT:
                    position_id = opportunity.id
                else:
                    position_id = None
                    carried_amount = result.amount

        return results

    async def _expand_action(self, strategy, action: StrategyAction, selected, position_id: Optional[int]):
        """Turns one configured action into concrete (action, opportunity) steps."""
        if action.type == ACTION_DEPOSIT:
            if selected is None:
                print(f"{C_YELLOW}[Strategy {strategy.id}] no opportunity selected for deposit.{C_RESET}")
                return []
            return [(action, selected)]

        if action.type == ACTION_WITHDRAW:
            current = await self._current_position(strategy, position_id)
            if current is None:
                print(f"[Strategy {strategy.id}] no current position; withdraw skipped.")
                return []
            return [(action, current)]

        if action.type == ACTION_REBALANCE:
            if selected is None:
                return []
            if position_id == selected.id:
                print(f"[Strategy {strategy.id}] already in opportunity {selected.id}; rebalance is a no-op.")
                return []
            deposit = StrategyAction(type=ACTION_DEPOSIT, asset=action.asset, amount_policy=action.amount_policy)
            current = await self._current_position(strategy, position_id)
            if current is None:
                return [(deposit, selected)]
            withdraw = StrategyAction(type=ACTION_WITHDRAW, asset=action.asset, amount_policy=AmountPolicy(kind='all'))
            return [(withdraw, current), (deposit, selected)]

        print(f"{C_RED}[Strategy {strategy.id}] unknown action type '{action.type}'.{C_RESET}")
        return []

    async def _current_position(self, strategy, position_id: Optional[int]):
        if position_id is None:
            return None
        return await self.repository.get_opportunity(position_id)

    async def _run_step(self, strategy, action: StrategyAction, opportunity, owner_token: str) -> ExecutionResult:
        if not await self.repository.lease(strategy.id, owner_token, self.lease_ttl, self.clock()):
            raise LeaseLost(f"lease on strategy {strategy.id} was taken over before {action.type}")
        execution_id = await self.repository.write_execution(
            strategy_id=strategy.id,
            action_type=action.type,
            opportunity_id=opportunity.id,
            owner_token=owner_token,
            now=self.clock(),
        )

        async def on_submitted(tx_hash: str, amount: Optional[float]) -> None:
            await self.repository.mark_submitted(execution_id, tx_hash, amount)

        result = await self.executor.execute(strategy, action, opportunity, on_submitted=on_submitted)

        self.states[strategy.id] = STATE_RECORDING
        succeeded = result.status == EXECUTION_SUCCESS
        await self.repository.complete_execution(
            execution_id,
            strategy.id,
            result,
            invested=(result.amount or 0.0) if succeeded and action.type == ACTION_DEPOSIT else 0.0,
            returned=(result.amount or 0.0) if succeeded and action.type == ACTION_WITHDRAW else 0.0,
            update_position=succeeded,
            position_id=opportunity.id if action.type == ACTION_DEPOSIT else None,
            executed_at=self.clock(),
        )
        self.states[strategy.id] = STATE_FIRING

        color = C_GREEN if succeeded else C_RED
        detail = result.transaction_hash if succeeded else result.error_message
        print(f"{color}[Strategy {strategy.id}] {action.type} on opportunity {opportunity.id}: {result.status} ({detail}){C_RESET}")

        await self._notify(strategy, result, action.type, opportunity)
        return result

    async def _notify(self, strategy, result: ExecutionResult, action_type: str, opportunity) -> None:
        if self.notifier is None:
            return
        try:
            await self.notifier.notify(
                strategy.user_id,
                strategy,
                result,
                action_type=action_type,
                opportunity=opportunity,
            )
        except Exception as e:
            print(f"{C_RED}[Strategy {strategy.id}] notification failed: {e}{C_RESET}")

    async def recover_stale_pending(self, now: Optional[datetime] = None) -> int:
        """Resolves pending rows left behind by an interrupted process.

        A row whose receipt lookup fails stays pending and is retried on the
        next cycle; the remaining rows are still resolved.
        """
        now = now or self.clock()
        stale = await self.repository.list_stale_pending(now - timedelta(seconds=self.pending_timeout))
        recovered = 0
        for execution in stale:
            try:
                if await self._recover_execution(execution, now):
                    recovered += 1
            except Exception as e:
                print(f"{C_RED}Could not recover stale execution {execution.id}: {e}{C_RESET}")
                self.bot_data['last_error'] = str(e)
        return recovered

    async def _recover_execution(self, execution, now: datetime) -> bool:
        result = await self._resolve_stale(execution)
        succeeded = result.status == EXECUTION_SUCCESS
        amount = result.amount or 0.0
        completed = await self.repository.complete_execution(
            execution.id,
            execution.strategy_id,
            result,
            invested=amount if succeeded and execution.action_type == ACTION_DEPOSIT else 0.0,
            returned=amount if succeeded and execution.action_type == ACTION_WITHDRAW else 0.0,
            update_position=succeeded,
            position_id=execution.opportunity_id if execution.action_type == ACTION_DEPOSIT else None,
            executed_at=now,
        )
        if not completed:
            return False
        print(f"{C_YELLOW}Recovered stale execution {execution.id} as {result.status}"
              f" ({result.error_message or result.transaction_hash}).{C_RESET}")

        strategy = await self.repository.get_strategy(execution.strategy_id)
        if strategy is not None:
            opportunity = None
            if execution.opportunity_id is not None:
                opportunity = await self.repository.get_opportunity(execution.opportunity_id)
            await self._notify(strategy, result, execution.action_type, opportunity)
        return True

    async def _resolve_stale(self, execution) -> ExecutionResult:
        if not execution.transaction_hash:
            return ExecutionResult.failed(REASON_ORPHANED, needs_reconciliation=True)

        receipt = None
        if self.chain_client is not None:
            receipt = await self.chain_client.get_receipt(execution.transaction_hash)

        if receipt is None:
            return ExecutionResult.failed(
                REASON_CONFIRMATION_TIMEOUT,
                transaction_hash=execution.transaction_hash,
                amount=execution.amount,
                needs_reconciliation=True,
            )
        if not receipt.success:
            return ExecutionResult.failed(
                REASON_REVERTED,
                transaction_hash=execution.transaction_hash,
                gas_used=receipt.gas_used,
                gas_fee=receipt.gas_fee,
                amount=execution.amount,
            )
        return ExecutionResult(
            status=EXECUTION_SUCCESS,
            transaction_hash=execution.transaction_hash,
            gas_used=receipt.gas_used,
            gas_fee=receipt.gas_fee,
            amount=execution.amount,
        )

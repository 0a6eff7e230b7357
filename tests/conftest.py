import asyncio
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from services.chain_client import ConfirmationResult, TransactionRequest
from storage import SQLiteRepository
from storage.models import OpportunityRecord, StrategyRecord
from strategy.models import AmountPolicy, ApyConditions, StrategyAction

NOW = datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class FakeChainClient:
    """In-memory stand-in for the web3 chain collaborator."""

    def __init__(self):
        self.fee = 0.001
        self.balance = 250.0
        self.prepare_error = None
        self.submit_error = None
        self.confirm_error = None
        self.confirm_delay = 0.0
        self.confirmation = ConfirmationResult(success=True, gas_used=21000, gas_fee=0.0005, block_number=1)
        self.receipts = {}
        self.prepared = []
        self.submitted = []

    async def prepare(self, action_type, opportunity, amount_policy):
        if self.prepare_error:
            raise self.prepare_error
        amount = self.balance if amount_policy.kind == 'all' else amount_policy.amount
        tx = TransactionRequest(
            action_type=action_type,
            to=opportunity.pool_address or '0xvault',
            call=None,
            amount=amount,
            amount_wei=int(amount * 10**6),
        )
        self.prepared.append(tx)
        return tx

    async def estimate_gas(self, tx):
        return self.fee

    async def submit(self, tx):
        if self.submit_error:
            raise self.submit_error
        self.submitted.append(tx)
        return f"0x{len(self.submitted):064x}"

    async def await_confirmation(self, tx_hash, timeout):
        if self.confirm_delay:
            await asyncio.sleep(self.confirm_delay)
        if self.confirm_error:
            raise self.confirm_error
        return self.confirmation

    async def get_receipt(self, tx_hash):
        return self.receipts.get(tx_hash)


class FakeNotifier:
    def __init__(self):
        self.calls = []
        self.error = None

    async def notify(self, user_id, strategy, result, *, action_type=None, opportunity=None):
        self.calls.append((user_id, strategy.id, result, action_type, opportunity))
        if self.error:
            raise self.error


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def chain_client():
    return FakeChainClient()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest_asyncio.fixture
async def repository(tmp_path):
    repo = SQLiteRepository(tmp_path / "strategies.db")
    yield repo
    await repo.close()


@pytest.fixture
def make_opportunity():
    counter = {'id': 0}

    def _make(**overrides) -> OpportunityRecord:
        counter['id'] += 1
        values = dict(
            id=counter['id'],
            protocol_id=1,
            protocol='aave-v3',
            network_id=1,
            network='base',
            asset='USDC',
            apy=5.0,
            tvl=10_000_000.0,
            risk_level='low',
            refreshed_at=NOW,
            pool_address='0x' + '1' * 40,
            asset_address='0x' + '2' * 40,
        )
        values.update(overrides)
        return OpportunityRecord(**values)

    return _make


@pytest.fixture
def make_strategy():
    def _make(**overrides) -> StrategyRecord:
        values = dict(
            id=1,
            name='Stable yield',
            description=None,
            status='active',
            trigger_type='apy-based',
            conditions=ApyConditions(min_apy=4.0),
            actions=[StrategyAction(type='deposit', asset='USDC', amount_policy=AmountPolicy(kind='fixed', amount=100.0))],
            target_protocols=[1, 2, 3],
            target_networks=[1],
            max_gas_fee=None,
            execution_interval='hourly',
            next_scheduled_execution=None,
            total_executions=0,
            total_invested=0.0,
            total_return=0.0,
            current_opportunity_id=None,
            user_id=7,
            created_at=NOW,
        )
        values.update(overrides)
        return StrategyRecord(**values)

    return _make

"""Dataclasses representing stored strategy, execution and opportunity records."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from strategy.models import Conditions, StrategyAction


@dataclass(slots=True)
class OpportunityRecord:
    id: int
    protocol_id: int
    protocol: str
    network_id: int
    network: str
    asset: str
    apy: float
    tvl: Optional[float]
    risk_level: str
    refreshed_at: datetime
    pool_address: Optional[str] = None
    asset_address: Optional[str] = None
    external_id: Optional[str] = None


@dataclass(slots=True)
class StrategyRecord:
    id: int
    name: str
    description: Optional[str]
    status: str
    trigger_type: str
    conditions: Conditions
    actions: list[StrategyAction]
    target_protocols: list[int]
    target_networks: list[int]
    max_gas_fee: Optional[float]
    execution_interval: str
    next_scheduled_execution: Optional[datetime]
    total_executions: int
    total_invested: float
    total_return: float
    current_opportunity_id: Optional[int]
    user_id: Optional[int]
    created_at: datetime


@dataclass(slots=True)
class StrategyExecutionRecord:
    id: int
    strategy_id: int
    action_type: str
    status: str
    created_at: datetime
    executed_at: Optional[datetime]
    transaction_hash: Optional[str]
    gas_used: Optional[int]
    gas_fee: Optional[float]
    amount: Optional[float]
    error_message: Optional[str]
    opportunity_id: Optional[int]
    needs_reconciliation: bool


@dataclass(slots=True)
class TelegramSubscriberRecord:
    id: int
    telegram_id: int
    username: Optional[str]
    user_id: Optional[int]
    subscribed: bool

"""Typed strategy conditions, actions and engine results.

Strategy conditions and actions are stored as JSON. They are parsed into the
tagged dataclasses below when a strategy crosses the repository boundary, so the
evaluator and executor never interpret raw dictionaries.
"""
from __future__ import annotations

import re
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Optional, Union

from constants import (
    ACTION_TYPES,
    EXECUTION_FAILED,
    EXECUTION_SUCCESS,
    RISK_RANK,
    TRIGGER_APY,
    TRIGGER_PRICE,
    TRIGGER_TIME,
)
from strategy.errors import InvalidStrategy

_AMOUNT_PATTERN = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([A-Za-z0-9.\-]*)\s*$")


@dataclass(slots=True)
class ApyConditions:
    min_apy: float
    max_risk: str = 'high'
    asset_types: list[str] = field(default_factory=list)


@dataclass(slots=True)
class PriceConditions:
    asset: str
    direction: str  # 'above' or 'below'
    price: float
    min_apy: float = 0.0
    max_risk: str = 'high'
    asset_types: list[str] = field(default_factory=list)


@dataclass(slots=True)
class TimeConditions:
    min_apy: float = 0.0
    max_risk: str = 'high'
    asset_types: list[str] = field(default_factory=list)


Conditions = Union[ApyConditions, PriceConditions, TimeConditions]


@dataclass(slots=True)
class AmountPolicy:
    kind: str  # 'fixed' or 'all'
    amount: Optional[float] = None

    def describe(self) -> str:
        if self.kind == 'all':
            return 'all'
        return f"{self.amount:g}"


@dataclass(slots=True)
class StrategyAction:
    type: str
    asset: Optional[str]
    amount_policy: AmountPolicy


@dataclass(slots=True)
class PriceQuote:
    asset: str
    price: float
    timestamp: datetime


@dataclass(slots=True)
class EvaluationResult:
    fire: bool
    reason: str
    selected_opportunity: Optional[Any] = None


@dataclass(slots=True)
class ExecutionResult:
    status: str
    transaction_hash: Optional[str] = None
    gas_used: Optional[int] = None
    gas_fee: Optional[float] = None
    amount: Optional[float] = None
    error_message: Optional[str] = None
    needs_reconciliation: bool = False

    @property
    def succeeded(self) -> bool:
        return self.status == EXECUTION_SUCCESS

    @classmethod
    def failed(cls, message: str, **kwargs: Any) -> "ExecutionResult":
        return cls(status=EXECUTION_FAILED, error_message=message, **kwargs)


def _parse_risk(value: Any) -> str:
    risk = str(value or 'high').lower()
    if risk not in RISK_RANK:
        raise InvalidStrategy(f"unknown risk level: {value!r}")
    return risk


def _parse_asset_types(value: Any) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, (list, tuple)):
        raise InvalidStrategy("asset_types must be a list")
    return [str(item).upper() for item in value]


def _parse_float(payload: dict, *keys: str, default: Optional[float] = None) -> Optional[float]:
    for key in keys:
        if key in payload and payload[key] is not None:
            try:
                return float(payload[key])
            except (TypeError, ValueError):
                raise InvalidStrategy(f"{key} must be a number") from None
    return default


def parse_conditions(trigger_type: str, payload: Optional[dict]) -> Conditions:
    """Builds the condition variant for ``trigger_type`` from a JSON payload.

    Both snake_case keys and the camelCase keys used by the dashboard
    (``minApy``, ``maxRisk``, ``assetTypes``) are accepted.
    """
    payload = payload or {}
    if not isinstance(payload, dict):
        raise InvalidStrategy("conditions must be an object")

    max_risk = _parse_risk(payload.get('max_risk', payload.get('maxRisk')))
    asset_types = _parse_asset_types(payload.get('asset_types', payload.get('assetTypes')))

    if trigger_type == TRIGGER_APY:
        min_apy = _parse_float(payload, 'min_apy', 'minApy')
        if min_apy is None:
            raise InvalidStrategy("apy-based strategies need a min_apy threshold")
        return ApyConditions(min_apy=min_apy, max_risk=max_risk, asset_types=asset_types)

    if trigger_type == TRIGGER_PRICE:
        asset = payload.get('asset')
        direction = str(payload.get('direction', '')).lower()
        price = _parse_float(payload, 'price', 'priceBound')
        if not asset:
            raise InvalidStrategy("price-based strategies need an asset")
        if direction not in ('above', 'below'):
            raise InvalidStrategy("price direction must be 'above' or 'below'")
        if price is None or price <= 0:
            raise InvalidStrategy("price-based strategies need a positive price bound")
        return PriceConditions(
            asset=str(asset).lower(),
            direction=direction,
            price=price,
            min_apy=_parse_float(payload, 'min_apy', 'minApy', default=0.0),
            max_risk=max_risk,
            asset_types=asset_types,
        )

    if trigger_type == TRIGGER_TIME:
        return TimeConditions(
            min_apy=_parse_float(payload, 'min_apy', 'minApy', default=0.0),
            max_risk=max_risk,
            asset_types=asset_types,
        )

    raise InvalidStrategy(f"unknown trigger type: {trigger_type!r}")


def parse_amount_policy(value: Any) -> AmountPolicy:
    if isinstance(value, AmountPolicy):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        if value <= 0:
            raise InvalidStrategy("amount must be positive")
        return AmountPolicy(kind='fixed', amount=float(value))
    if isinstance(value, str):
        if value.strip().lower() == 'all':
            return AmountPolicy(kind='all')
        match = _AMOUNT_PATTERN.match(value)
        if not match:
            raise InvalidStrategy(f"unparseable amount: {value!r}")
        return parse_amount_policy(float(match.group(1)))
    if isinstance(value, dict):
        kind = str(value.get('type', 'fixed')).lower()
        if kind == 'all':
            return AmountPolicy(kind='all')
        if kind == 'fixed':
            return parse_amount_policy(value.get('amount'))
        raise InvalidStrategy(f"unknown amount policy: {kind!r}")
    raise InvalidStrategy("amount_policy is required")


def parse_actions(payload: Any) -> list[StrategyAction]:
    """Parses the ordered action list.

    A bare object in the dashboard's shape (``depositAmount`` plus optional
    ``rebalancePeriod``) becomes a single deposit action.
    """
    if isinstance(payload, dict):
        if 'depositAmount' in payload:
            amount_text = str(payload['depositAmount'])
            match = _AMOUNT_PATTERN.match(amount_text)
            asset = match.group(2).upper() if match and match.group(2) else None
            payload = [{
                'type': 'deposit',
                'asset': asset,
                'amount_policy': amount_text,
            }]
        else:
            payload = [payload]
    if not isinstance(payload, list) or not payload:
        raise InvalidStrategy("actions must be a non-empty list")

    actions: list[StrategyAction] = []
    for item in payload:
        if not isinstance(item, dict):
            raise InvalidStrategy("each action must be an object")
        action_type = str(item.get('type', '')).lower()
        if action_type not in ACTION_TYPES:
            raise InvalidStrategy(f"unknown action type: {item.get('type')!r}")
        asset = item.get('asset')
        policy_value = item.get('amount_policy', item.get('amountPolicy', item.get('amount')))
        actions.append(
            StrategyAction(
                type=action_type,
                asset=str(asset).upper() if asset else None,
                amount_policy=parse_amount_policy(policy_value),
            )
        )
    return actions


def conditions_to_dict(conditions: Conditions) -> dict:
    return asdict(conditions)


def actions_to_list(actions: list[StrategyAction]) -> list[dict]:
    serialised = []
    for action in actions:
        policy = {'type': action.amount_policy.kind}
        if action.amount_policy.kind == 'fixed':
            policy['amount'] = action.amount_policy.amount
        serialised.append({'type': action.type, 'asset': action.asset, 'amount_policy': policy})
    return serialised

"""Pure trigger evaluation for yield strategies."""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Iterable, Mapping, Optional, Sequence

from constants import (
    ACTION_WITHDRAW,
    DEFAULT_FRESHNESS_BOUND,
    RISK_RANK,
    TRIGGER_APY,
    TRIGGER_PRICE,
    TRIGGER_TIME,
)
from strategy.models import EvaluationResult, PriceQuote

REASON_APY_MET = 'apy_threshold_met'
REASON_PRICE_CROSSED = 'price_bound_crossed'
REASON_SCHEDULE_DUE = 'schedule_due'
REASON_STALE_DATA = 'stale_data'
REASON_NO_MATCH = 'no_matching_opportunity'
REASON_APY_BELOW = 'apy_below_threshold'
REASON_PRICE_NOT_CROSSED = 'price_bound_not_crossed'
REASON_NOT_DUE = 'not_due'
REASON_UNKNOWN_TRIGGER = 'unknown_trigger'


class ConditionEvaluator:
    """Decides whether a strategy fires and which opportunity it acts on.

    The evaluator never fetches data and never mutates the strategy: market
    snapshots, price quotes and the current time are all inputs, so recorded
    snapshots replay to the same decision.
    """

    def __init__(self, freshness_bound: float = DEFAULT_FRESHNESS_BOUND) -> None:
        self.freshness_bound = timedelta(seconds=freshness_bound)

    def evaluate(
        self,
        strategy,
        opportunities: Sequence,
        now: datetime,
        prices: Optional[Mapping[str, PriceQuote]] = None,
    ) -> EvaluationResult:
        conditions = strategy.conditions

        if strategy.trigger_type == TRIGGER_APY:
            selected, reason = self.select_opportunity(strategy, conditions.min_apy, opportunities, now)
            if selected is None:
                return EvaluationResult(fire=False, reason=reason)
            return EvaluationResult(fire=True, reason=REASON_APY_MET, selected_opportunity=selected)

        if strategy.trigger_type == TRIGGER_PRICE:
            quote = (prices or {}).get(conditions.asset)
            if quote is None or not self.is_fresh(quote.timestamp, now):
                return EvaluationResult(fire=False, reason=REASON_STALE_DATA)
            if conditions.direction == 'above':
                crossed = quote.price >= conditions.price
            else:
                crossed = quote.price <= conditions.price
            if not crossed:
                return EvaluationResult(fire=False, reason=REASON_PRICE_NOT_CROSSED)
            return self._fire_with_selection(strategy, conditions.min_apy, opportunities, now, REASON_PRICE_CROSSED)

        if strategy.trigger_type == TRIGGER_TIME:
            due_at = strategy.next_scheduled_execution
            if due_at is not None and now < due_at:
                return EvaluationResult(fire=False, reason=REASON_NOT_DUE)
            return self._fire_with_selection(strategy, conditions.min_apy, opportunities, now, REASON_SCHEDULE_DUE)

        return EvaluationResult(fire=False, reason=REASON_UNKNOWN_TRIGGER)

    def _fire_with_selection(
        self,
        strategy,
        min_apy: float,
        opportunities: Sequence,
        now: datetime,
        fire_reason: str,
    ) -> EvaluationResult:
        selected, reason = self.select_opportunity(strategy, min_apy, opportunities, now)
        if selected is None and self._needs_opportunity(strategy):
            return EvaluationResult(fire=False, reason=reason)
        return EvaluationResult(fire=True, reason=fire_reason, selected_opportunity=selected)

    @staticmethod
    def _needs_opportunity(strategy) -> bool:
        return any(action.type != ACTION_WITHDRAW for action in strategy.actions)

    def select_opportunity(
        self,
        strategy,
        min_apy: float,
        opportunities: Iterable,
        now: datetime,
    ) -> tuple[Optional[object], str]:
        """Returns the best fresh opportunity in the strategy's target set.

        Highest APY wins; ties go to the lower risk level, then the lower
        protocol id, then the lower opportunity id.
        """
        conditions = strategy.conditions
        risk_ceiling = RISK_RANK.get(conditions.max_risk, max(RISK_RANK.values()))
        asset_types = set(conditions.asset_types)
        protocols = set(strategy.target_protocols)
        networks = set(strategy.target_networks)

        candidates = [
            opp for opp in opportunities
            if opp.protocol_id in protocols
            and opp.network_id in networks
            and RISK_RANK.get(opp.risk_level, risk_ceiling + 1) <= risk_ceiling
            and (not asset_types or opp.asset.upper() in asset_types)
        ]
        if not candidates:
            return None, REASON_NO_MATCH

        fresh = [opp for opp in candidates if self.is_fresh(opp.refreshed_at, now)]
        if not fresh:
            return None, REASON_STALE_DATA

        qualifying = [opp for opp in fresh if opp.apy >= min_apy]
        if not qualifying:
            return None, REASON_APY_BELOW

        best = min(
            qualifying,
            key=lambda opp: (-opp.apy, RISK_RANK[opp.risk_level], opp.protocol_id, opp.id),
        )
        return best, REASON_APY_MET

    def is_fresh(self, timestamp: Optional[datetime], now: datetime) -> bool:
        if timestamp is None:
            return False
        return now - timestamp <= self.freshness_bound

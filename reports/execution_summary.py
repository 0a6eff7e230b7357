"""Generate a daily summary of strategy executions and the best current opportunities."""
from __future__ import annotations

import html
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from constants import ACTION_DEPOSIT, ACTION_WITHDRAW, EXECUTION_FAILED, EXECUTION_PENDING, EXECUTION_SUCCESS
from storage.models import OpportunityRecord, StrategyExecutionRecord
from storage.sqlite_repository import SQLiteRepository


@dataclass
class StrategyRollup:
    strategy_id: int
    name: str
    successes: int = 0
    failures: int = 0
    pending: int = 0
    needs_reconciliation: int = 0
    invested: float = 0.0
    returned: float = 0.0
    gas_fees: float = 0.0
    failure_reasons: Dict[str, int] = field(default_factory=dict)

    def record(self, execution: StrategyExecutionRecord) -> None:
        if execution.status == EXECUTION_SUCCESS:
            self.successes += 1
            if execution.action_type == ACTION_DEPOSIT:
                self.invested += execution.amount or 0.0
            elif execution.action_type == ACTION_WITHDRAW:
                self.returned += execution.amount or 0.0
        elif execution.status == EXECUTION_FAILED:
            self.failures += 1
            reason = execution.error_message or "unknown"
            self.failure_reasons[reason] = self.failure_reasons.get(reason, 0) + 1
        elif execution.status == EXECUTION_PENDING:
            self.pending += 1
        if execution.needs_reconciliation:
            self.needs_reconciliation += 1
        self.gas_fees += execution.gas_fee or 0.0

    @property
    def total(self) -> int:
        return self.successes + self.failures + self.pending


@dataclass
class ExecutionSummaryResult:
    generated_at: datetime
    window_start: datetime
    rollups: List[StrategyRollup]
    top_opportunities: List[OpportunityRecord]
    total_executions: int
    message_text: Optional[str]

    @property
    def has_content(self) -> bool:
        return bool(self.message_text)


class ExecutionSummaryBuilder:
    """Assemble the once-per-day execution summary for the admin chat."""

    def __init__(self, *, repository: SQLiteRepository, max_opportunities: int = 3) -> None:
        self._repository = repository
        self._max_opportunities = max_opportunities

    async def build(self, *, window_hours: int = 24, now: Optional[datetime] = None) -> ExecutionSummaryResult:
        generated_at = now or datetime.now(timezone.utc)
        window_start = generated_at - timedelta(hours=window_hours)

        executions = await self._repository.fetch_executions(limit=1000, since=window_start)
        top_opportunities = await self._repository.fetch_top_opportunities(self._max_opportunities)

        if not executions:
            return ExecutionSummaryResult(
                generated_at=generated_at,
                window_start=window_start,
                rollups=[],
                top_opportunities=top_opportunities,
                total_executions=0,
                message_text=None,
            )

        rollups = await self._aggregate(executions)
        return ExecutionSummaryResult(
            generated_at=generated_at,
            window_start=window_start,
            rollups=rollups,
            top_opportunities=top_opportunities,
            total_executions=len(executions),
            message_text=self._render(generated_at, rollups, top_opportunities, len(executions)),
        )

    async def _aggregate(self, executions: List[StrategyExecutionRecord]) -> List[StrategyRollup]:
        rollups: Dict[int, StrategyRollup] = {}
        for execution in executions:
            rollup = rollups.get(execution.strategy_id)
            if rollup is None:
                strategy = await self._repository.get_strategy(execution.strategy_id)
                name = strategy.name if strategy else f"#{execution.strategy_id}"
                rollup = rollups[execution.strategy_id] = StrategyRollup(strategy_id=execution.strategy_id, name=name)
            rollup.record(execution)
        return sorted(rollups.values(), key=lambda r: (-r.total, r.strategy_id))

    def _render(
        self,
        generated_at: datetime,
        rollups: List[StrategyRollup],
        top_opportunities: List[OpportunityRecord],
        total_executions: int,
    ) -> str:
        successes = sum(r.successes for r in rollups)
        failures = sum(r.failures for r in rollups)
        flagged = sum(r.needs_reconciliation for r in rollups)

        lines = [
            f"<b>Strategy summary • {generated_at.strftime('%d %b %H:%M')} UTC</b>",
            f"Executions: {total_executions} | ✅ {successes} | ❌ {failures}",
        ]
        if flagged:
            lines.append(f"⚠️ {flagged} execution(s) need manual reconciliation")
        lines.append("")

        for rollup in rollups:
            line = f"• {html.escape(rollup.name)}: {rollup.successes}/{rollup.total} ok"
            if rollup.invested:
                line += f", in {rollup.invested:g}"
            if rollup.returned:
                line += f", out {rollup.returned:g}"
            if rollup.gas_fees:
                line += f", gas {rollup.gas_fees:.5f}"
            lines.append(line)
            if rollup.failure_reasons:
                top_reason = max(rollup.failure_reasons.items(), key=lambda item: item[1])[0]
                lines.append(f"  most common failure: {html.escape(top_reason)}")

        if top_opportunities:
            lines.append("")
            lines.append("<b>Top opportunities</b>")
            for opp in top_opportunities:
                lines.append(f"• {opp.protocol} {opp.asset} ({opp.network}): {opp.apy:.2f}% [{opp.risk_level}]")

        return "\n".join(lines)


__all__ = [
    "ExecutionSummaryBuilder",
    "ExecutionSummaryResult",
    "StrategyRollup",
]
